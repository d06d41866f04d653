"""
core/exceptions.py
Typed failures raised by the settlement services.

Services raise these; the position monitor and scheduler jobs catch, log and
move on, and the HTTP routes translate them into status codes.
"""


class SettlementError(Exception):
    """Base class for every engine failure."""

    retryable: bool = False


# ---------------------------------------------------------------------------
# NotFound
# ---------------------------------------------------------------------------

class NotFound(SettlementError):
    """A referenced record is missing."""


class PositionNotFound(NotFound):
    def __init__(self, position_id: int) -> None:
        super().__init__(f"Position {position_id} not found")
        self.position_id = position_id


class UserNotFound(NotFound):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class MarketNotFound(NotFound):
    def __init__(self, market_id: int) -> None:
        super().__init__(f"Market {market_id} not found")
        self.market_id = market_id


class MatchNotFound(NotFound):
    def __init__(self, match_id: int) -> None:
        super().__init__(f"Match {match_id} not found")
        self.match_id = match_id


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

class AlreadySettled(SettlementError):
    """The position left ACTIVE before this settlement got to it."""

    def __init__(self, position_id: int) -> None:
        super().__init__(f"Position {position_id} already settled")
        self.position_id = position_id


class ConcurrencyConflict(SettlementError):
    """Optimistic version check failed on a user balance write."""

    retryable = True

    def __init__(self, user_id: int, expected_version: int) -> None:
        super().__init__(
            f"User {user_id} was modified concurrently (expected version {expected_version})"
        )
        self.user_id = user_id
        self.expected_version = expected_version


# ---------------------------------------------------------------------------
# Upstream / storage
# ---------------------------------------------------------------------------

class UpstreamUnavailable(SettlementError):
    """Price lookup or commentary generation failed or timed out."""

    retryable = True


class SchemaDrift(SettlementError):
    """Storage is missing an expected table or column (mid-migration)."""


# ---------------------------------------------------------------------------
# Bet placement refusals
# ---------------------------------------------------------------------------

class InsufficientBalance(SettlementError):
    def __init__(self, user_id: int, balance: float, required: float) -> None:
        super().__init__(
            f"Insufficient balance for user {user_id}: have {balance:.2f}, need {required:.2f}"
        )
        self.user_id = user_id


class MarketClosed(SettlementError):
    """Bets are no longer accepted on this match."""
