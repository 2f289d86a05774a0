"""Kill switches and per-user trade limits checked before any trade."""

import logging
import threading
from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional

import config
from errors import ValidationError
from models import Venue

logger = logging.getLogger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class TradingLimits:
    """Daily volume resets at midnight UTC. Thread-safe."""

    def __init__(
        self,
        trading_enabled: bool = config.TRADING_ENABLED,
        arbitrage_enabled: bool = config.ARBITRAGE_ENABLED,
        settlement_enabled: bool = config.SETTLEMENT_ENABLED,
        venues_enabled: Optional[Dict[Venue, bool]] = None,
        max_single_trade: float = config.MAX_SINGLE_TRADE,
        max_daily_volume: float = config.MAX_DAILY_VOLUME,
        min_profit_margin_pct: float = config.MIN_PROFIT_MARGIN_PCT,
        today: Callable[[], date] = _utc_today,
    ):
        self.trading_enabled = trading_enabled
        self.arbitrage_enabled = arbitrage_enabled
        self.settlement_enabled = settlement_enabled
        self.venues_enabled = venues_enabled or {
            Venue.POLYMARKET: config.POLYMARKET_ENABLED,
            Venue.KALSHI: config.KALSHI_ENABLED,
        }
        self.max_single_trade = max_single_trade
        self.max_daily_volume = max_daily_volume
        self.min_profit_margin_pct = min_profit_margin_pct
        self._today = today
        self._lock = threading.Lock()
        self._daily: Dict[str, float] = {}
        self._day = today()

    def _roll_day(self) -> None:
        today = self._today()
        if today != self._day:
            self._daily.clear()
            self._day = today
            logger.info("Daily volumes reset for %s", today.isoformat())

    def check_arbitrage(self, user_id: str, amount: float, venues) -> None:
        """Raise ValidationError if this user may not trade ``amount`` now."""
        if not self.trading_enabled:
            raise ValidationError("trading_disabled", "Trading is currently disabled")
        if not self.arbitrage_enabled:
            raise ValidationError("arbitrage_disabled", "Arbitrage trading is currently disabled")
        for venue in venues:
            if not self.venues_enabled.get(Venue(venue), False):
                raise ValidationError(
                    "venue_disabled", f"{Venue(venue).value} trading is not enabled"
                )
        if amount <= 0:
            raise ValidationError("invalid_amount", "Investment amount must be positive")
        if amount > self.max_single_trade:
            raise ValidationError(
                "trade_limit",
                f"Trade exceeds maximum single trade limit ({amount:.2f} > {self.max_single_trade:.2f})",
            )
        with self._lock:
            self._roll_day()
            used = self._daily.get(user_id, 0.0)
        if used + amount > self.max_daily_volume:
            raise ValidationError(
                "daily_limit",
                f"Trade would exceed daily volume limit ({used:.2f} used of {self.max_daily_volume:.2f})",
            )

    def check_profit_margin(self, profit_pct: float) -> None:
        if profit_pct < self.min_profit_margin_pct:
            raise ValidationError(
                "insufficient_margin",
                f"Profit margin below minimum threshold ({profit_pct:.2f}% < {self.min_profit_margin_pct:.2f}%)",
            )

    def reserve_volume(self, user_id: str, amount: float) -> None:
        """Check and book ``amount`` against the daily limit in one step.

        Concurrent trades for one user cannot both pass the check and
        overshoot the limit. Undo with release_volume if the trade fails.
        """
        with self._lock:
            self._roll_day()
            used = self._daily.get(user_id, 0.0)
            if used + amount > self.max_daily_volume:
                raise ValidationError(
                    "daily_limit",
                    f"Trade would exceed daily volume limit ({used:.2f} used of {self.max_daily_volume:.2f})",
                )
            self._daily[user_id] = used + amount

    def release_volume(self, user_id: str, amount: float) -> None:
        with self._lock:
            self._roll_day()
            self._daily[user_id] = max(0.0, self._daily.get(user_id, 0.0) - amount)

    def remaining_daily_volume(self, user_id: str) -> float:
        with self._lock:
            self._roll_day()
            return max(0.0, self.max_daily_volume - self._daily.get(user_id, 0.0))
