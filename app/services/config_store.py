"""
app/services/config_store.py
Resolves the combo tuning for a settlement.

The override lives as JSON under the `combo_config` SystemConfig key. The
resolved ComboConfig is cached for COMBO_CONFIG_CACHE_TTL_SECONDS; writes
through save_combo_config() invalidate the cache immediately.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.combo import DEFAULT_COMBO_CONFIG, ComboConfig
from core.config import get_settings
from core.constants import COMBO_CONFIG_KEY
from database.models import SystemConfig

logger = logging.getLogger(__name__)


class ComboConfigStore:
    """Timed cache in front of the combo_config record."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds is None:
            ttl_seconds = get_settings().COMBO_CONFIG_CACHE_TTL_SECONDS
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: ComboConfig | None = None
        self._loaded_at: float = 0.0

    def invalidate(self) -> None:
        self._cached = None

    async def current_combo_config(self, session: AsyncSession) -> ComboConfig:
        """Return the cached config, reloading it once the TTL has elapsed."""
        now = self._clock()
        if self._cached is not None and now - self._loaded_at < self._ttl:
            return self._cached

        self._cached = await load_combo_config(session)
        self._loaded_at = now
        return self._cached


async def load_combo_config(session: AsyncSession) -> ComboConfig:
    """Read the override record. Missing or malformed records give the defaults."""
    record = await session.get(SystemConfig, COMBO_CONFIG_KEY)
    if record is None:
        return DEFAULT_COMBO_CONFIG

    try:
        return ComboConfig.model_validate_json(record.value)
    except ValidationError as exc:
        logger.warning("Ignoring malformed %s record: %s", COMBO_CONFIG_KEY, exc)
        return DEFAULT_COMBO_CONFIG


async def save_combo_config(
    session: AsyncSession,
    config: ComboConfig,
    store: ComboConfigStore | None = None,
) -> ComboConfig:
    """Upsert the override record and drop any cached copy."""
    record = await session.get(SystemConfig, COMBO_CONFIG_KEY)
    payload = config.model_dump_json()

    if record is None:
        record = SystemConfig(key=COMBO_CONFIG_KEY, value=payload)
    else:
        record.value = payload
        record.updated_at = datetime.now(timezone.utc)

    session.add(record)
    await session.commit()

    if store is not None:
        store.invalidate()

    logger.info("Combo config updated: %s", payload)
    return config


_default_store: ComboConfigStore | None = None


def get_combo_config_store() -> ComboConfigStore:
    """Process-wide store shared by the monitor and the HTTP routes."""
    global _default_store
    if _default_store is None:
        _default_store = ComboConfigStore()
    return _default_store
