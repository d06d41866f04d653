"""
agents/commentary/commentator.py
One-sentence commentary on a settled position.

Uses LiteLLM routed through OpenClaw. The model call is synchronous, so it
runs in a worker thread under COMMENTARY_TIMEOUT_SECONDS. Any failure is
raised as UpstreamUnavailable; the settlement engine degrades it to "".
"""

import asyncio
import logging

from smolagents import LiteLLMModel

from agents import language_name
from core.config import get_settings
from core.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)


def _get_model() -> LiteLLMModel:
    """Create a LiteLLM model instance pointed at OpenClaw."""
    settings = get_settings()
    return LiteLLMModel(
        model_id=f"openai/{settings.OPENCLAW_MODEL}",
        api_base=settings.OPENCLAW_BASE_URL,
        api_key=settings.OPENCLAW_API_KEY,
    )


def _call_llm(model: LiteLLMModel, prompt: str) -> str:
    """Make a single LLM call and return the text response."""
    messages = [{"role": "user", "content": prompt}]
    response = model(messages, stop_sequences=None)
    if hasattr(response, "content"):
        return response.content or ""
    return str(response)


def build_prompt(result: str, profit_percent: float, exit_reason: str, locale: str = "en") -> str:
    """Prompt asking for a single punchy sentence about the settlement."""
    language = language_name(locale)
    return f"""You are the platform's trading AI.
A user's trading position just settled.
Result: {result.upper()} ({profit_percent:.2f}% profit/loss).
Reason: {exit_reason}.

[Instructions]:
- If they WON: Be congratulatory but professional.
- If they LOST: Be comforting but hint that following the AI suggestions helps.
- If it was a STOP_LOSS: Remind them that risk management is key.
- YOUR RESPONSE MUST BE ENTIRELY IN {language}.
- Keep it to 1 short, punchy sentence.

Comment on this settlement."""


class SettlementCommentator:
    """Async, timeout-bounded wrapper around the commentary model."""

    def __init__(self, model: LiteLLMModel | None = None, timeout: float | None = None) -> None:
        settings = get_settings()
        self._model = model if model is not None else _get_model()
        self._timeout = timeout if timeout is not None else settings.COMMENTARY_TIMEOUT_SECONDS

    async def describe(
        self,
        result: str,
        profit_percent: float,
        exit_reason: str,
        locale: str = "en",
    ) -> str:
        prompt = build_prompt(result, profit_percent, exit_reason, locale)
        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(_call_llm, self._model, prompt),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable(f"Commentary timed out after {self._timeout}s") from exc
        except Exception as exc:
            raise UpstreamUnavailable(f"Commentary failed: {exc}") from exc

        return text.strip()


def build_commentator() -> SettlementCommentator | None:
    """Commentator when OpenClaw is configured, None otherwise."""
    if not get_settings().commentary_enabled:
        logger.info("Settlement commentary disabled: OpenClaw not configured")
        return None
    return SettlementCommentator()
