"""Tests for the arbitrage coordinator: execution saga, monitors, settlement."""

import json
import os
import sys
from datetime import date, timedelta
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from circuit_breaker import CircuitBreaker
from coordinator import ArbitrageCoordinator, allocate
from errors import CircuitOpenError, EscrowError, OrderRejectedError, VenueError
from escrow import LocalEscrow
from limits import TradingLimits
from models import (
    MarketRef, MarketResolution, Opportunity, OpportunityStatus, OrderResult,
    OrderState, OrderStatus, Side, TradeStatus, Venue, utc_now,
)
from rate_limiter import AdaptiveRateLimiter
from trade_store import TradeStore

POLY_MARKET = "0xcond"
KALSHI_MARKET = "PRES-2028-DEM"


class _FakeVenue:
    """In-memory venue: records calls, answers with scripted states."""

    def __init__(self, venue, place_error=None, states=None, default_state=OrderState.FILLED,
                 cancel_result=True, cancel_error=None, events=None):
        self.venue = venue
        self.breaker = CircuitBreaker(venue.value)
        self.limiter = AdaptiveRateLimiter(venue.value, 100)
        self.place_error = place_error
        self.states = list(states or [])
        self.default_state = default_state
        self.cancel_result = cancel_result
        self.cancel_error = cancel_error
        self.events = events if events is not None else []
        self.placed = []
        self.cancelled = []
        self.status_calls = 0

    def place(self, request):
        self.events.append(f"place:{self.venue.value}")
        self.placed.append(request)
        if self.place_error:
            raise self.place_error
        return OrderResult(
            success=True,
            order_id=f"{self.venue.value}-{len(self.placed)}",
            shares=round(request.amount / request.limit_price, 2),
            execution_price=request.limit_price,
            status=OrderState.PENDING,
        )

    def status(self, order_id):
        self.status_calls += 1
        state = self.states.pop(0) if self.states else self.default_state
        if isinstance(state, Exception):
            raise state
        return OrderStatus(order_id=order_id, state=state)

    def cancel(self, order_id):
        self.events.append(f"cancel:{self.venue.value}")
        self.cancelled.append(order_id)
        if self.cancel_error:
            raise self.cancel_error
        return self.cancel_result


class _OverlappingVenue(_FakeVenue):
    """Runs ``during_place`` once from inside its first placement."""

    def __init__(self, venue, **kwargs):
        super().__init__(venue, **kwargs)
        self.during_place = None
        self.overlapped = []

    def place(self, request):
        if self.during_place is not None:
            during, self.during_place = self.during_place, None
            self.overlapped.append(during())
        return super().place(request)


class _RecordingEscrow(LocalEscrow):
    def __init__(self, events):
        super().__init__()
        self.events = events
        self.fail_credits = 0

    def lock(self, user_id, amount, purpose, reference_id):
        self.events.append("lock")
        return super().lock(user_id, amount, purpose, reference_id)

    def release(self, lock_id, reason):
        self.events.append("release")
        return super().release(lock_id, reason)

    def credit(self, user_id, amount, reason):
        if self.fail_credits:
            self.fail_credits -= 1
            raise EscrowError("ledger unavailable")
        return super().credit(user_id, amount, reason)


def _make_opportunity(opp_id="opp_1", p1=0.45, p2=0.50, profit_pct=5.26, expires_in=300,
                      status=OpportunityStatus.ACTIVE):
    now = utc_now()
    return Opportunity(
        id=opp_id,
        market1=MarketRef(Venue.POLYMARKET, POLY_MARKET, Side.YES, p1),
        market2=MarketRef(Venue.KALSHI, KALSHI_MARKET, Side.NO, p2),
        spread=round((1 - p1 - p2) * 100, 2),
        potential_profit=profit_pct,
        detected_at=now,
        expires_at=now + timedelta(seconds=expires_in),
        status=status,
    )


def _make_limits(**overrides):
    kwargs = dict(
        trading_enabled=True,
        arbitrage_enabled=True,
        settlement_enabled=True,
        venues_enabled={Venue.POLYMARKET: True, Venue.KALSHI: True},
        max_single_trade=1000.0,
        max_daily_volume=5000.0,
        min_profit_margin_pct=2.0,
        today=lambda: date(2026, 1, 1),
    )
    kwargs.update(overrides)
    return TradingLimits(**kwargs)


def _make_env(poly=None, kalshi=None, opportunity=None, balance=5000.0, limits=None,
              launcher=None, max_fill_attempts=3, max_resolution_attempts=3,
              store=None, escrow=None, audit_logfile=None):
    events = []
    store = store or TradeStore()
    if opportunity is not False:
        store.save_opportunity(opportunity or _make_opportunity())
    if escrow is None:
        escrow = _RecordingEscrow(events)
        escrow.deposit("user_1", balance)
    poly = poly or _FakeVenue(Venue.POLYMARKET, events=events)
    kalshi = kalshi or _FakeVenue(Venue.KALSHI, events=events)
    sleeps = []
    coordinator = ArbitrageCoordinator(
        store=store,
        escrow=escrow,
        adapters={Venue.POLYMARKET: poly, Venue.KALSHI: kalshi},
        limits=limits or _make_limits(),
        fill_poll_interval_s=5,
        max_fill_attempts=max_fill_attempts,
        resolution_poll_interval_s=5,
        max_resolution_attempts=max_resolution_attempts,
        sleep=sleeps.append,
        launcher=launcher or (lambda fn: fn()),
        audit_logfile=audit_logfile,
    )
    return SimpleNamespace(
        coordinator=coordinator, store=store, escrow=escrow,
        poly=poly, kalshi=kalshi, sleeps=sleeps, events=events,
    )


def _resolve_markets(store, poly_outcome="yes", kalshi_outcome="yes"):
    store.save_market(MarketResolution(Venue.POLYMARKET, POLY_MARKET, "resolved", poly_outcome))
    store.save_market(MarketResolution(Venue.KALSHI, KALSHI_MARKET, "resolved", kalshi_outcome))


def _read_audit(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


# ---------- allocation ----------


def test_allocate_proportional_to_price():
    assert allocate(1000.0, 0.45, 0.50) == (473.68, 526.32)


# ---------- happy path ----------


def test_happy_path_settles_and_credits_profit(tmp_path):
    audit = str(tmp_path / "audit.jsonl")
    env = _make_env(audit_logfile=audit)
    _resolve_markets(env.store)

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert result.success, result.error
    assert result.market1_order_id == "polymarket-1"
    assert result.market2_order_id == "kalshi-1"
    assert result.expected_profit == pytest.approx(52.63)

    assert env.poly.placed[0].amount == pytest.approx(473.68)
    assert env.kalshi.placed[0].amount == pytest.approx(526.32)
    assert env.poly.placed[0].client_order_id == f"{result.trade_id}-1"
    assert env.kalshi.placed[0].client_order_id == f"{result.trade_id}-2"

    trade = env.store.get_trade(result.trade_id)
    assert trade.status == TradeStatus.SETTLED
    assert trade.settled
    assert trade.actual_profit == pytest.approx(52.62, abs=0.05)
    assert trade.legs[0].outcome is True
    assert trade.escrow_released and trade.profit_credited

    assert env.escrow.locked_balance("user_1") == pytest.approx(0.0)
    assert env.escrow.available_balance("user_1") == pytest.approx(5052.62, abs=0.05)
    assert env.store.get_opportunity("opp_1").status == OpportunityStatus.EXECUTED
    assert env.coordinator.limits.remaining_daily_volume("user_1") == pytest.approx(4000.0)

    actions = [row["action"] for row in _read_audit(audit)]
    assert actions[:2] == ["escrow_lock", "orders_placed"]
    assert "settled" in actions and "profit_credited" in actions


def test_escrow_locked_before_any_order():
    env = _make_env()
    env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)
    assert env.events[0] == "lock"
    assert {"place:polymarket", "place:kalshi"} == set(env.events[1:3])


def test_settlement_happens_once():
    env = _make_env()
    _resolve_markets(env.store)
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id
    balance = env.escrow.available_balance("user_1")

    again = env.coordinator.close_positions(trade_id)

    assert not again.success
    assert "already settled" in again.error
    assert env.escrow.available_balance("user_1") == balance


# ---------- rollback ----------


def test_one_leg_rejected_rolls_back():
    env = _make_env(kalshi=_FakeVenue(
        Venue.KALSHI, place_error=OrderRejectedError("kalshi", "insufficient balance"),
    ))

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert not result.success
    assert result.error_code == "placement_failed"
    assert "insufficient balance" in result.error
    assert env.poly.cancelled == ["polymarket-1"]

    trade = env.store.get_trade(result.trade_id)
    assert trade.status == TradeStatus.FAILED
    assert trade.order_ids == [None, None]
    assert "insufficient balance" in trade.error

    assert env.escrow.available_balance("user_1") == pytest.approx(5000.0)
    assert env.escrow.locked_balance("user_1") == pytest.approx(0.0)
    assert env.store.get_opportunity("opp_1").status == OpportunityStatus.ACTIVE
    assert env.coordinator.limits.remaining_daily_volume("user_1") == pytest.approx(5000.0)


def test_rollback_cancels_before_release():
    env = _make_env(kalshi=_FakeVenue(Venue.KALSHI, place_error=VenueError("kalshi", "503")))
    env.kalshi.events = env.events
    env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)
    assert env.events[-2:] == ["cancel:polymarket", "release"]


def test_rollback_errors_are_collected():
    events = []
    poly = _FakeVenue(
        Venue.POLYMARKET, cancel_error=VenueError("polymarket", "cancel timed out"), events=events,
    )
    kalshi = _FakeVenue(Venue.KALSHI, place_error=VenueError("kalshi", "503"), events=events)
    env = _make_env(poly=poly, kalshi=kalshi)

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert "rollback errors" in result.error
    assert "cancel timed out" in result.error
    # Escrow is still released after the failed cancel
    assert env.escrow.available_balance("user_1") == pytest.approx(5000.0)


def test_refused_cancel_is_a_rollback_error():
    poly = _FakeVenue(Venue.POLYMARKET, cancel_result=False)
    kalshi = _FakeVenue(Venue.KALSHI, place_error=VenueError("kalshi", "503"))
    env = _make_env(poly=poly, kalshi=kalshi)
    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)
    assert "refused by venue" in result.error


def test_both_legs_fail_releases_escrow_only():
    poly = _FakeVenue(Venue.POLYMARKET, place_error=VenueError("polymarket", "down"))
    kalshi = _FakeVenue(Venue.KALSHI, place_error=VenueError("kalshi", "down"))
    env = _make_env(poly=poly, kalshi=kalshi)

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert not result.success
    assert poly.cancelled == [] and kalshi.cancelled == []
    assert env.escrow.available_balance("user_1") == pytest.approx(5000.0)


def test_escrow_failure_places_nothing():
    env = _make_env(balance=100.0)

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert not result.success
    assert result.error_code == "escrow_failed"
    assert env.poly.placed == [] and env.kalshi.placed == []
    trade = env.store.get_trade(result.trade_id)
    assert trade.status == TradeStatus.FAILED
    assert trade.error.startswith("Escrow lock failed")
    assert env.store.get_opportunity("opp_1").status == OpportunityStatus.ACTIVE
    assert env.coordinator.limits.remaining_daily_volume("user_1") == pytest.approx(5000.0)


def test_open_placement_circuit_fails_fast():
    env = _make_env()
    env.coordinator.placement_breaker.trip()

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert result.error_code == "circuit_open"
    assert env.poly.placed == []
    assert env.escrow.available_balance("user_1") == pytest.approx(5000.0)


def test_open_venue_circuit_is_reported_as_circuit_open():
    kalshi = _FakeVenue(Venue.KALSHI, place_error=CircuitOpenError("kalshi", 60))
    env = _make_env(kalshi=kalshi)

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert result.error_code == "circuit_open"
    assert env.poly.cancelled == ["polymarket-1"]
    assert env.escrow.available_balance("user_1") == pytest.approx(5000.0)
    assert env.coordinator.placement_breaker.failure_count == 0


def test_overlapping_execution_of_one_opportunity_places_once():
    poly = _OverlappingVenue(Venue.POLYMARKET)
    env = _make_env(poly=poly)
    poly.during_place = lambda: env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    first = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert first.success
    second = poly.overlapped[0]
    assert not second.success
    assert second.error_code == "opportunity_inactive"
    assert len(poly.placed) == 1 and len(env.kalshi.placed) == 1
    assert env.escrow.locked_balance("user_1") == pytest.approx(1000.0)


def test_overlapping_trades_cannot_overshoot_daily_volume():
    poly = _OverlappingVenue(Venue.POLYMARKET)
    env = _make_env(poly=poly, limits=_make_limits(max_daily_volume=1500.0))
    env.store.save_opportunity(_make_opportunity("opp_2"))
    poly.during_place = lambda: env.coordinator.execute_arbitrage("user_1", "opp_2", 1000.0)

    first = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    assert first.success
    assert poly.overlapped[0].error_code == "daily_limit"
    assert env.store.get_opportunity("opp_2").status == OpportunityStatus.ACTIVE
    assert env.coordinator.limits.remaining_daily_volume("user_1") == pytest.approx(500.0)


# ---------- validation ----------


def test_unknown_opportunity():
    env = _make_env(opportunity=False)
    result = env.coordinator.execute_arbitrage("user_1", "missing", 100.0)
    assert result.error_code == "opportunity_not_found"
    assert result.trade_id is None
    assert env.events == []


def test_expired_opportunity_is_flipped():
    env = _make_env(opportunity=_make_opportunity(expires_in=-1))
    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 100.0)
    assert result.error_code == "opportunity_expired"
    assert env.store.get_opportunity("opp_1").status == OpportunityStatus.EXPIRED


def test_inactive_opportunity():
    env = _make_env(opportunity=_make_opportunity(status=OpportunityStatus.EXECUTED))
    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 100.0)
    assert result.error_code == "opportunity_inactive"


def test_margin_below_minimum():
    env = _make_env(opportunity=_make_opportunity(profit_pct=1.0))
    assert env.coordinator.execute_arbitrage("user_1", "opp_1", 100.0).error_code == "insufficient_margin"


def test_prices_without_arbitrage():
    env = _make_env(opportunity=_make_opportunity(p1=0.55, p2=0.50))
    assert env.coordinator.execute_arbitrage("user_1", "opp_1", 100.0).error_code == "no_arbitrage"


def test_kill_switch_blocks_before_any_write():
    env = _make_env(limits=_make_limits(trading_enabled=False))
    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 100.0)
    assert result.error_code == "trading_disabled"
    assert env.store.find_user_trades("user_1") == []


# ---------- fill monitor ----------


def test_fill_budget_exhausted_marks_stale(tmp_path):
    audit = str(tmp_path / "audit.jsonl")
    poly = _FakeVenue(Venue.POLYMARKET, default_state=OrderState.PENDING)
    env = _make_env(poly=poly, max_fill_attempts=3, audit_logfile=audit)

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    trade = env.store.get_trade(result.trade_id)
    assert trade.status == TradeStatus.STALE
    assert trade.fill_attempts == 3
    assert "Fill timeout" in trade.error
    assert poly.status_calls == 3
    assert env.sleeps == [5, 5, 5]
    assert any(row["action"] == "stale_alert" for row in _read_audit(audit))


def test_status_error_consumes_one_attempt():
    poly = _FakeVenue(Venue.POLYMARKET, states=[VenueError("polymarket", "502"), OrderState.FILLED])
    env = _make_env(poly=poly, max_fill_attempts=5)

    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)

    trade = env.store.get_trade(result.trade_id)
    assert trade.fill_attempts == 2
    assert trade.all_filled
    assert trade.status == TradeStatus.COMPLETED


def test_cancelled_leg_marks_stale():
    kalshi = _FakeVenue(Venue.KALSHI, default_state=OrderState.CANCELLED)
    env = _make_env(kalshi=kalshi, max_fill_attempts=10)
    result = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0)
    trade = env.store.get_trade(result.trade_id)
    assert trade.status == TradeStatus.STALE
    assert "cancelled" in trade.error


def test_monitor_start_is_reentrant_noop():
    launched = []
    env = _make_env(launcher=launched.append)
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id

    assert len(launched) == 1
    assert env.coordinator.start_fill_monitor(trade_id) is False
    assert len(launched) == 1

    launched[0]()
    assert env.store.get_trade(trade_id).status == TradeStatus.COMPLETED
    # The finished monitor left the registry; the resolution watch is queued
    assert env.coordinator.active_monitors == 1
    assert env.coordinator.start_resolution_watch(trade_id) is False


# ---------- resolution watch and settlement ----------


def test_resolution_timeout_leaves_trade_completed():
    env = _make_env(max_resolution_attempts=4)
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id

    trade = env.store.get_trade(trade_id)
    assert trade.status == TradeStatus.COMPLETED
    assert trade.resolution_attempts == 4
    assert not trade.settled
    assert env.escrow.locked_balance("user_1") == pytest.approx(1000.0)


def test_close_positions_after_late_resolution():
    env = _make_env()
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id
    _resolve_markets(env.store, poly_outcome="no", kalshi_outcome="no")

    closed = env.coordinator.close_positions(trade_id)

    assert closed.success
    assert closed.market1_payout == 0.0
    assert closed.market2_payout == pytest.approx(1052.64)
    assert closed.profit == pytest.approx(52.64)


def test_close_positions_before_resolution():
    env = _make_env()
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id
    closed = env.coordinator.close_positions(trade_id)
    assert not closed.success
    assert env.store.get_trade(trade_id).status == TradeStatus.COMPLETED


def test_settlement_kill_switch():
    env = _make_env(limits=_make_limits(settlement_enabled=False))
    _resolve_markets(env.store)
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id
    assert env.store.get_trade(trade_id).status == TradeStatus.COMPLETED
    assert "disabled" in env.coordinator.close_positions(trade_id).error


def test_failed_credit_is_retried_on_resume():
    env = _make_env()
    env.escrow.fail_credits = 1
    _resolve_markets(env.store)
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id

    trade = env.store.get_trade(trade_id)
    assert trade.status == TradeStatus.SETTLED
    assert trade.escrow_released and not trade.profit_credited
    assert env.escrow.available_balance("user_1") == pytest.approx(5000.0)

    assert env.coordinator.resume_monitoring()["finalized"] == 1
    assert env.escrow.available_balance("user_1") == pytest.approx(5052.62, abs=0.05)
    assert env.coordinator.resume_monitoring()["finalized"] == 0
    assert env.escrow.available_balance("user_1") == pytest.approx(5052.62, abs=0.05)


def test_missing_escrow_lock_is_flagged_once():
    env = _make_env(max_resolution_attempts=1)
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id
    env.store.update_trade(trade_id, escrow_lock_id="esc_missing")
    _resolve_markets(env.store)

    assert env.coordinator.close_positions(trade_id).success

    trade = env.store.get_trade(trade_id)
    assert trade.escrow_released
    assert trade.profit_credited
    assert env.coordinator.resume_monitoring()["finalized"] == 0


# ---------- restart ----------


def test_resume_monitoring_picks_up_partial_trade():
    launched = []
    first = _make_env(launcher=launched.append)
    trade_id = first.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id
    assert first.store.get_trade(trade_id).status == TradeStatus.PARTIAL

    # New process over the same store and ledger
    _resolve_markets(first.store)
    second = _make_env(store=first.store, escrow=first.escrow, opportunity=False)
    counts = second.coordinator.resume_monitoring()

    assert counts["fill"] == 1
    assert first.store.get_trade(trade_id).status == TradeStatus.SETTLED


# ---------- queries ----------


def test_calculate_pnl_expected_then_realized():
    env = _make_env()
    trade_id = env.coordinator.execute_arbitrage("user_1", "opp_1", 1000.0).trade_id

    expected = env.coordinator.calculate_pnl(trade_id)
    assert not expected.realized
    assert expected.total_payout == pytest.approx(1052.62)
    assert expected.profit_loss == pytest.approx(52.62)

    _resolve_markets(env.store)
    env.coordinator.close_positions(trade_id)
    realized = env.coordinator.calculate_pnl(trade_id)
    assert realized.realized
    assert realized.market2_payout == 0.0
    assert realized.profit_pct == pytest.approx(5.26)

    assert env.coordinator.calculate_pnl("missing") is None


def test_get_user_trades_and_expire():
    env = _make_env()
    env.coordinator.execute_arbitrage("user_1", "opp_1", 500.0)
    env.store.save_opportunity(_make_opportunity("opp_old", expires_in=-5))

    assert len(env.coordinator.get_user_trades("user_1")) == 1
    assert env.coordinator.get_user_trades("user_1", status=TradeStatus.SETTLED) == []
    assert env.coordinator.expire_opportunities() == 1
    assert env.store.get_opportunity("opp_old").status == OpportunityStatus.EXPIRED


def test_health_snapshot():
    env = _make_env()
    snapshot = env.coordinator.health_snapshot()
    assert [b["name"] for b in snapshot["breakers"]] == ["arbitrage", "polymarket", "kalshi"]
    assert snapshot["rate_limits"]["kalshi"]["remaining"] == 100
