"""Durable keyed store for opportunities, trades and market resolutions.

Records live in memory behind a lock. With a path, the full state is
written to JSON after every mutation (temp file + os.replace) and
reloaded on start, so the coordinator can resume after a restart.
"""

import json
import logging
import os
import threading
from datetime import datetime
from typing import Dict, List, Optional

from models import (
    MarketResolution, Opportunity, OpportunityStatus, Trade, TradeLeg,
    TradeStatus, Venue, utc_now,
)

logger = logging.getLogger(__name__)


def write_state(path: str, state: dict) -> None:
    """Persist ``state`` atomically to ``path``."""
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, default=str)
    os.replace(tmp, path)


def read_state(path: Optional[str]) -> dict:
    """Load a state file. Returns {} if there is none yet."""
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class TradeStore:
    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.RLock()
        self._opportunities: Dict[str, dict] = {}
        self._trades: Dict[str, dict] = {}
        self._markets: Dict[str, dict] = {}

        state = read_state(path)
        if state:
            self._opportunities = state.get("opportunities", {})
            self._trades = state.get("trades", {})
            self._markets = state.get("markets", {})
            logger.info(
                "Loaded trade state: %d opportunities, %d trades, %d markets",
                len(self._opportunities), len(self._trades), len(self._markets),
            )

    def _flush(self) -> None:
        if not self.path:
            return
        write_state(self.path, {
            "opportunities": self._opportunities,
            "trades": self._trades,
            "markets": self._markets,
        })

    # ------------------------
    # Opportunities
    # ------------------------
    def save_opportunity(self, opportunity: Opportunity) -> None:
        with self._lock:
            self._opportunities[opportunity.id] = opportunity.to_dict()
            self._flush()

    def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        with self._lock:
            data = self._opportunities.get(opportunity_id)
            return Opportunity.from_dict(data) if data else None

    def update_opportunity_status(
        self,
        opportunity_id: str,
        status: OpportunityStatus,
        expected: Optional[OpportunityStatus] = None,
    ) -> bool:
        """Set the status; with ``expected`` only if it currently matches."""
        with self._lock:
            data = self._opportunities.get(opportunity_id)
            if data is None:
                return False
            if expected is not None and data["status"] != OpportunityStatus(expected).value:
                return False
            data["status"] = OpportunityStatus(status).value
            self._flush()
            return True

    def find_expired_active_opportunities(self, now: Optional[datetime] = None) -> List[Opportunity]:
        now = now or utc_now()
        with self._lock:
            opps = [Opportunity.from_dict(d) for d in self._opportunities.values()]
        return [o for o in opps if o.status == OpportunityStatus.ACTIVE and o.is_expired(now)]

    # ------------------------
    # Trades
    # ------------------------
    def create_trade(self, trade: Trade) -> Trade:
        with self._lock:
            if trade.id in self._trades:
                raise KeyError(f"trade {trade.id} already exists")
            self._trades[trade.id] = trade.to_dict()
            self._flush()
        return trade

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        with self._lock:
            data = self._trades.get(trade_id)
            return Trade.from_dict(data) if data else None

    def update_trade(
        self,
        trade_id: str,
        expect: Optional[dict] = None,
        leg_updates: Optional[Dict[int, dict]] = None,
        **fields,
    ) -> Optional[Trade]:
        """Atomically apply field (and per-leg) updates to one trade.

        ``expect`` maps field names to the values they must currently hold;
        if any differs nothing is written and None is returned. This is how
        conditional state transitions are made race-free.
        """
        with self._lock:
            current = self._trades.get(trade_id)
            if current is None:
                return None
            trade = Trade.from_dict(current)
            for name, value in (expect or {}).items():
                if getattr(trade, name) != value:
                    return None
            for name, value in fields.items():
                if not hasattr(trade, name):
                    raise AttributeError(f"Trade has no field {name!r}")
                setattr(trade, name, value)
            for index, changes in (leg_updates or {}).items():
                leg: TradeLeg = trade.legs[index]
                for name, value in changes.items():
                    if not hasattr(leg, name):
                        raise AttributeError(f"TradeLeg has no field {name!r}")
                    setattr(leg, name, value)
            self._trades[trade_id] = trade.to_dict()
            self._flush()
            return trade

    def find_trades_by_status(self, status: TradeStatus) -> List[Trade]:
        wanted = TradeStatus(status).value
        with self._lock:
            return [Trade.from_dict(d) for d in self._trades.values() if d["status"] == wanted]

    def find_user_trades(
        self,
        user_id: str,
        status: Optional[TradeStatus] = None,
        settled: Optional[bool] = None,
        limit: int = 100,
    ) -> List[Trade]:
        """A user's trades, newest first."""
        with self._lock:
            trades = [Trade.from_dict(d) for d in self._trades.values() if d["user_id"] == user_id]
        if status is not None:
            trades = [t for t in trades if t.status == TradeStatus(status)]
        if settled is not None:
            trades = [t for t in trades if t.settled == settled]
        trades.sort(key=lambda t: t.created_at, reverse=True)
        return trades[:limit]

    # ------------------------
    # Market resolutions
    # ------------------------
    @staticmethod
    def _market_key(venue: Venue, market_id: str) -> str:
        return f"{Venue(venue).value}:{market_id}"

    def save_market(self, market: MarketResolution) -> None:
        with self._lock:
            self._markets[self._market_key(market.venue, market.market_id)] = market.to_dict()
            self._flush()

    def get_market(self, venue: Venue, market_id: str) -> Optional[MarketResolution]:
        with self._lock:
            data = self._markets.get(self._market_key(venue, market_id))
            return MarketResolution.from_dict(data) if data else None
