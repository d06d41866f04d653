"""
app/services/notifier.py
Fire-and-forget events for the UI / notification layer.

Three events: balance_updated, bet_settled and margin_call. Delivery is
best-effort: callers go through emit_safely(), which logs and drops any
failure so a dead push channel can never hold up a settlement.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import httpx

from core.config import get_settings

logger = logging.getLogger(__name__)


class EventNotifier:
    """Base notifier: every event is a no-op."""

    async def balance_updated(self, user_id: int, new_balance: float) -> None:
        return None

    async def bet_settled(
        self,
        user_id: int,
        position_id: int,
        result: str,
        payout: int,
        exit_price: float,
        exit_reason: str,
        profit_percent: float,
        commentary: str = "",
    ) -> None:
        return None

    async def margin_call(
        self,
        user_id: int,
        position_id: int,
        category: str,
        profit_percent: float,
    ) -> None:
        return None

    async def close(self) -> None:
        return None


class LoggingNotifier(EventNotifier):
    """Writes every event to the log. Used when no webhook is configured."""

    async def balance_updated(self, user_id: int, new_balance: float) -> None:
        logger.info("[BALANCE] user=%d pts=%.2f", user_id, new_balance)

    async def bet_settled(
        self,
        user_id: int,
        position_id: int,
        result: str,
        payout: int,
        exit_price: float,
        exit_reason: str,
        profit_percent: float,
        commentary: str = "",
    ) -> None:
        logger.info(
            "[SETTLED] user=%d position=%d result=%s payout=%d exit=%.4f reason=%s pnl=%.2f%%",
            user_id, position_id, result, payout, exit_price, exit_reason, profit_percent,
        )

    async def margin_call(
        self,
        user_id: int,
        position_id: int,
        category: str,
        profit_percent: float,
    ) -> None:
        logger.warning(
            "[CRITICAL_MARGIN_CALL] user=%d position=%d %s approaching stop-loss (%.2f%%)",
            user_id, position_id, category, profit_percent,
        )


class WebhookNotifier(EventNotifier):
    """POSTs each event as JSON to the push gateway."""

    def __init__(self, url: str, timeout: float | None = None) -> None:
        if timeout is None:
            timeout = get_settings().EVENT_WEBHOOK_TIMEOUT_SECONDS
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout)

    async def _post(self, event: str, user_id: int, payload: dict[str, Any]) -> None:
        body = {
            "event": event,
            "user_id": user_id,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        resp = await self._client.post(self._url, json=body)
        resp.raise_for_status()

    async def balance_updated(self, user_id: int, new_balance: float) -> None:
        await self._post("balanceUpdate", user_id, {"pts": new_balance})

    async def bet_settled(
        self,
        user_id: int,
        position_id: int,
        result: str,
        payout: int,
        exit_price: float,
        exit_reason: str,
        profit_percent: float,
        commentary: str = "",
    ) -> None:
        await self._post("betSettled", user_id, {
            "position_id": position_id,
            "result": result,
            "payout": payout,
            "exit_price": exit_price,
            "exit_reason": exit_reason,
            "profit_percent": f"{profit_percent:.2f}",
            "commentary": commentary,
        })

    async def margin_call(
        self,
        user_id: int,
        position_id: int,
        category: str,
        profit_percent: float,
    ) -> None:
        await self._post("notification", user_id, {
            "type": "WARNING",
            "position_id": position_id,
            "message": (
                f"[CRITICAL_MARGIN_CALL]: {category} position is approaching Stop-Loss "
                f"(-{abs(profit_percent):.2f}%). Risk of liquidation high."
            ),
        })

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


async def emit_safely(send: Callable[..., Awaitable[None]], *args: Any, **kwargs: Any) -> bool:
    """Await a notifier call, logging instead of raising. Returns delivery success."""
    try:
        await send(*args, **kwargs)
        return True
    except Exception as exc:
        logger.warning("Event %s not delivered: %s", getattr(send, "__name__", send), exc)
        return False


def build_notifier() -> EventNotifier:
    """Webhook notifier when EVENT_WEBHOOK_URL is set, logging otherwise."""
    settings = get_settings()
    if settings.EVENT_WEBHOOK_URL:
        return WebhookNotifier(settings.EVENT_WEBHOOK_URL)
    return LoggingNotifier()


_notifier: EventNotifier | None = None


def get_notifier() -> EventNotifier:
    """Process-wide notifier shared by the monitor and the HTTP routes."""
    global _notifier
    if _notifier is None:
        _notifier = build_notifier()
    return _notifier


async def close_notifier() -> None:
    """Release the shared notifier's resources. Called on shutdown."""
    global _notifier
    if _notifier is not None:
        await _notifier.close()
        _notifier = None
