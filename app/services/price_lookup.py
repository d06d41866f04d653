"""
app/services/price_lookup.py
Latest index value per market category, read from the MarketIndex series.

Every lookup runs in its own short-lived session under a timeout so a slow
read only costs the one position that asked for it.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from core.config import get_settings
from core.exceptions import UpstreamUnavailable
from database.models import MarketIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceSnapshot:
    value: float
    timestamp: datetime


async def latest_index(session: AsyncSession, category: str) -> PriceSnapshot | None:
    """Most recent MarketIndex row for a category, or None."""
    row = (await session.execute(
        select(MarketIndex)
        .where(MarketIndex.category == category)
        .order_by(col(MarketIndex.timestamp).desc(), col(MarketIndex.id).desc())
        .limit(1)
    )).scalars().first()

    if row is None:
        return None
    return PriceSnapshot(value=row.value, timestamp=row.timestamp)


class PriceLookup:
    """Timeout-bounded access to the price series."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout if timeout is not None else get_settings().PRICE_LOOKUP_TIMEOUT_SECONDS

    async def latest(self, category: str) -> PriceSnapshot | None:
        """
        Latest value for `category`.

        Returns None when the category has no data yet. Raises
        UpstreamUnavailable when the read fails or exceeds the timeout.
        """
        try:
            return await asyncio.wait_for(self._read(category), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable(
                f"Price lookup for {category} timed out after {self._timeout}s"
            ) from exc
        except SQLAlchemyError as exc:
            raise UpstreamUnavailable(f"Price lookup for {category} failed: {exc}") from exc

    async def _read(self, category: str) -> PriceSnapshot | None:
        async with self._session_factory() as session:
            return await latest_index(session, category)


async def record_index(session: AsyncSession, category: str, value: float) -> MarketIndex:
    """Append a price point to a category's series."""
    point = MarketIndex(category=category, value=value)
    session.add(point)
    await session.commit()
    await session.refresh(point)
    logger.debug("Index %s = %.4f", category, value)
    return point
