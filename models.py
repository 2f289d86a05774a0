"""Data models for the cross-venue arbitrage engine."""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from errors import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_in(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class Venue(str, Enum):
    POLYMARKET = "polymarket"
    KALSHI = "kalshi"


class Side(str, Enum):
    YES = "YES"
    NO = "NO"


class OpportunityStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EXECUTED = "executed"


class TradeStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"        # both orders live, waiting for fills
    COMPLETED = "completed"    # both legs filled, waiting for resolution
    SETTLED = "settled"
    FAILED = "failed"
    STALE = "stale"            # fill budget exhausted, needs a human

    @property
    def is_terminal(self) -> bool:
        return self in (TradeStatus.SETTLED, TradeStatus.FAILED, TradeStatus.STALE)


TRADE_TRANSITIONS: Dict[TradeStatus, tuple] = {
    TradeStatus.PENDING: (TradeStatus.PARTIAL, TradeStatus.FAILED),
    TradeStatus.PARTIAL: (TradeStatus.COMPLETED, TradeStatus.STALE),
    TradeStatus.COMPLETED: (TradeStatus.SETTLED,),
    TradeStatus.SETTLED: (),
    TradeStatus.FAILED: (),
    TradeStatus.STALE: (),
}


def check_transition(current: TradeStatus, target: TradeStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in TRADE_TRANSITIONS[TradeStatus(current)]:
        raise InvalidTransitionError(
            f"trade cannot move from {TradeStatus(current).value} to {target.value}"
        )


class OrderState(str, Enum):
    PENDING = "pending"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ---------------------------------------------------------------------------
# Opportunities and markets
# ---------------------------------------------------------------------------


@dataclass
class MarketRef:
    """One side of a detected mispricing."""
    venue: Venue
    external_id: str        # Polymarket condition id / Kalshi ticker
    side: Side
    price: float            # 0..1

    def to_dict(self) -> dict:
        return {
            "venue": Venue(self.venue).value,
            "external_id": self.external_id,
            "side": Side(self.side).value,
            "price": self.price,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MarketRef":
        return cls(
            venue=Venue(data["venue"]),
            external_id=data["external_id"],
            side=Side(data["side"]),
            price=float(data["price"]),
        )


@dataclass
class Opportunity:
    """Immutable snapshot produced by the scanner."""
    id: str
    market1: MarketRef
    market2: MarketRef
    spread: float               # percent
    potential_profit: float     # percent
    detected_at: datetime
    expires_at: datetime
    status: OpportunityStatus = OpportunityStatus.ACTIVE

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "market1": self.market1.to_dict(),
            "market2": self.market2.to_dict(),
            "spread": self.spread,
            "potential_profit": self.potential_profit,
            "detected_at": _dt_out(self.detected_at),
            "expires_at": _dt_out(self.expires_at),
            "status": OpportunityStatus(self.status).value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Opportunity":
        return cls(
            id=data["id"],
            market1=MarketRef.from_dict(data["market1"]),
            market2=MarketRef.from_dict(data["market2"]),
            spread=float(data["spread"]),
            potential_profit=float(data["potential_profit"]),
            detected_at=_dt_in(data["detected_at"]),
            expires_at=_dt_in(data["expires_at"]),
            status=OpportunityStatus(data["status"]),
        )


@dataclass
class MarketResolution:
    """Resolution state of an external market, kept in sync by another job."""
    venue: Venue
    market_id: str
    status: str = "open"            # "open" or "resolved"
    outcome: Optional[str] = None   # "yes" / "no" once resolved

    @property
    def is_resolved(self) -> bool:
        return self.status == "resolved" and self.outcome in ("yes", "no")

    def to_dict(self) -> dict:
        return {
            "venue": Venue(self.venue).value,
            "market_id": self.market_id,
            "status": self.status,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MarketResolution":
        return cls(
            venue=Venue(data["venue"]),
            market_id=data["market_id"],
            status=data.get("status", "open"),
            outcome=data.get("outcome"),
        )


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------


@dataclass
class TradeLeg:
    venue: Venue
    market_id: str
    side: Side
    amount: float                           # CRwN allocated to this leg
    price: float                            # snapshot price used as limit
    shares: float = 0.0
    execution_price: Optional[float] = None
    order_id: Optional[str] = None
    filled: bool = False
    filled_at: Optional[datetime] = None
    outcome: Optional[bool] = None          # True if the market resolved YES

    def payout(self) -> float:
        """Payout once resolved: 1 per share if the leg's side won."""
        if self.outcome is None:
            return 0.0
        won = self.outcome if Side(self.side) == Side.YES else not self.outcome
        return self.shares * 1.0 if won else 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["venue"] = Venue(self.venue).value
        data["side"] = Side(self.side).value
        data["filled_at"] = _dt_out(self.filled_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TradeLeg":
        kwargs = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        kwargs["venue"] = Venue(kwargs["venue"])
        kwargs["side"] = Side(kwargs["side"])
        kwargs["filled_at"] = _dt_in(kwargs.get("filled_at"))
        return cls(**kwargs)


_TRADE_DATETIMES = ("created_at", "executed_at", "settled_at")


@dataclass
class Trade:
    """The unit of work for one arbitrage execution. Never deleted."""
    id: str
    user_id: str
    opportunity_id: str
    legs: List[TradeLeg]
    investment_amount: float
    expected_profit: float
    status: TradeStatus = TradeStatus.PENDING
    actual_profit: Optional[float] = None
    escrow_lock_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    executed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    settled: bool = False
    # Retry counters live on the record so a restart resumes the budget.
    fill_attempts: int = 0
    resolution_attempts: int = 0
    escrow_released: bool = False
    profit_credited: bool = False

    @property
    def order_ids(self) -> List[Optional[str]]:
        return [leg.order_id for leg in self.legs]

    @property
    def all_filled(self) -> bool:
        return all(leg.filled for leg in self.legs)

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["legs"] = [leg.to_dict() for leg in self.legs]
        data["status"] = TradeStatus(self.status).value
        for name in _TRADE_DATETIMES:
            data[name] = _dt_out(data[name])
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Trade":
        kwargs = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        kwargs["legs"] = [TradeLeg.from_dict(leg) for leg in kwargs["legs"]]
        kwargs["status"] = TradeStatus(kwargs["status"])
        for name in _TRADE_DATETIMES:
            if name in kwargs:
                kwargs[name] = _dt_in(kwargs[name])
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


@dataclass
class EscrowLock:
    id: str
    user_id: str
    amount: float
    purpose: str
    reference_id: str
    status: str = "locked"          # "locked" or "released"
    release_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EscrowLock":
        return cls(**data)


@dataclass
class LockResult:
    success: bool
    lock_id: Optional[str] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Venue order value objects
# ---------------------------------------------------------------------------


@dataclass
class OrderRequest:
    venue: Venue
    market_id: str
    side: Side
    amount: float                       # CRwN to spend
    limit_price: Optional[float] = None
    client_order_id: Optional[str] = None


@dataclass
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    shares: float = 0.0
    execution_price: Optional[float] = None
    status: OrderState = OrderState.PENDING
    error: Optional[str] = None


@dataclass
class OrderStatus:
    order_id: str
    state: OrderState
    shares: float = 0.0
    filled_shares: float = 0.0
    execution_price: Optional[float] = None

    @property
    def fill_pct(self) -> float:
        return (self.filled_shares / self.shares * 100.0) if self.shares > 0 else 0.0


@dataclass
class RateLimitState:
    remaining: int
    reset_at: float     # epoch seconds
    limit: int


# ---------------------------------------------------------------------------
# Results returned across the execution boundary
# ---------------------------------------------------------------------------


@dataclass
class ArbitrageTradeResult:
    success: bool
    trade_id: Optional[str] = None
    market1_order_id: Optional[str] = None
    market2_order_id: Optional[str] = None
    expected_profit: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class CloseResult:
    success: bool
    profit: Optional[float] = None
    market1_payout: Optional[float] = None
    market2_payout: Optional[float] = None
    error: Optional[str] = None


@dataclass
class PnLResult:
    trade_id: str
    investment_amount: float
    market1_cost: float
    market2_cost: float
    market1_payout: float
    market2_payout: float
    total_payout: float
    profit_loss: float
    profit_pct: float
    realized: bool
