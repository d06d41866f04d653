"""
agents/__init__.py
LLM agents used by the settlement engine and their shared lookup tables.
"""

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "zh-TW": "Traditional Chinese (繁體中文)",
    "th": "Thai (ภาษาไทย)",
    "vi": "Vietnamese (Tiếng Việt)",
    "hi": "Hindi (हिन्दी)",
}


def language_name(locale: str) -> str:
    """Prompt-facing language name for a locale code, English when unknown."""
    return LANGUAGE_NAMES.get(locale, "English")
