"""
core/constants.py
Hard-coded settlement policy and system constants.
These values are NOT configurable via environment; they are the law.
Combo tuning is the one exception: it can be overridden at runtime through
the `combo_config` SystemConfig record (see app/services/config_store.py).
"""

from typing import Final

# ---------------------------------------------------------------------------
# Payout policy
# ---------------------------------------------------------------------------
DEFAULT_TAKE_PROFIT_PAYOUT: Final[float] = 0.30   # +30% of stake on take-profit
DEFAULT_STOP_LOSS_PAYOUT: Final[float] = 0.20     # -20% of stake on stop-loss
EXPIRY_MAX_GAIN_PCT: Final[float] = 100.0         # expiry gains capped at +100%
EXPIRY_WIPEOUT_PCT: Final[float] = -50.0          # below this, expiry pays nothing

# ---------------------------------------------------------------------------
# Risk triggers
# ---------------------------------------------------------------------------
MARGIN_CALL_RATIO: Final[float] = 0.80            # warn at 80% of stop-loss distance

# ---------------------------------------------------------------------------
# Combo / multiplier defaults
# ---------------------------------------------------------------------------
COMBO_CONFIG_KEY: Final[str] = "combo_config"
MULTIPLIER_INCREMENT: Final[float] = 0.1
BASE_MULTIPLIER: Final[float] = 1.0
MAX_MULTIPLIER: Final[float] = 3.0
MAX_COMBO_COUNT: Final[int] = 20
RESET_COMBO: Final[int] = 0
RESET_MULTIPLIER: Final[float] = 1.0

# ---------------------------------------------------------------------------
# Team aggregate
# ---------------------------------------------------------------------------
TEAM_SYNC_TOLERANCE: Final[float] = 0.01

# ---------------------------------------------------------------------------
# Hold durations (label -> minutes)
# ---------------------------------------------------------------------------
DEFAULT_HOLD_DURATION: Final[str] = "1H"
HOLD_DURATION_MINUTES: Final[dict[str, int]] = {
    "10M": 10,
    "30M": 30,
    "1H": 60,
    "12H": 720,
    "24H": 1440,
}

# ---------------------------------------------------------------------------
# Pari-mutuel match odds
# ---------------------------------------------------------------------------
BASE_HOME_ODDS: Final[float] = 2.0
BASE_DRAW_ODDS: Final[float] = 3.2
BASE_AWAY_ODDS: Final[float] = 2.0
LEADER_ODDS_FACTOR: Final[float] = 0.95
TRAILER_ODDS_FACTOR: Final[float] = 1.10
HEAVY_POOL_SHARE: Final[float] = 0.40
HEAVY_POOL_ODDS_FACTOR: Final[float] = 0.98

# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------
SYSTEM_VERSION: Final[str] = "v1.0-settlement-engine"
