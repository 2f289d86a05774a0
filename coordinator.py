"""Two-leg arbitrage execution across Polymarket and Kalshi.

Handles:
- Pre-trade validation (kill switches, limits, opportunity freshness)
- Escrow lock, then parallel placement of both legs
- Rollback of whatever succeeded when a leg fails (saga compensation)
- Fill monitoring and market-resolution watching with bounded retries
- Settlement: payout, escrow release and profit credit, exactly once
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from circuit_breaker import CircuitBreaker
from config import (
    FILL_POLL_INTERVAL_S, MAX_FILL_ATTEMPTS,
    MAX_RESOLUTION_ATTEMPTS, RESOLUTION_POLL_INTERVAL_S,
)
from errors import (
    CircuitOpenError, EscrowError, EscrowLockNotFoundError, LegCircuitOpenError,
    LegPlacementError, OrderRejectedError, ValidationError,
)
from escrow import EscrowService
from limits import TradingLimits
from logger import log_trade_event
from models import (
    ArbitrageTradeResult, CloseResult, LockResult, OpportunityStatus,
    OrderRequest, OrderResult, OrderState, PnLResult, Trade, TradeLeg,
    TradeStatus, Venue, check_transition, utc_now,
)
from trade_store import TradeStore
from venue_adapter import VenueAdapter

logger = logging.getLogger(__name__)

ESCROW_PURPOSE = "arbitrage_trade"


def _thread_launcher(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, daemon=True).start()


def allocate(investment: float, price1: float, price2: float) -> Tuple[float, float]:
    """Split an investment across two legs in proportion to their prices.

    Both legs then buy the same number of shares, so exactly one pays out
    ``investment / (price1 + price2)`` whichever way the event resolves.
    """
    amount1 = round(investment * price1 / (price1 + price2), 2)
    return amount1, round(investment - amount1, 2)


class ArbitrageCoordinator:
    def __init__(
        self,
        store: TradeStore,
        escrow: EscrowService,
        adapters: Dict[Venue, VenueAdapter],
        limits: Optional[TradingLimits] = None,
        placement_breaker: Optional[CircuitBreaker] = None,
        fill_poll_interval_s: float = FILL_POLL_INTERVAL_S,
        max_fill_attempts: int = MAX_FILL_ATTEMPTS,
        resolution_poll_interval_s: float = RESOLUTION_POLL_INTERVAL_S,
        max_resolution_attempts: int = MAX_RESOLUTION_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
        launcher: Callable[[Callable[[], None]], None] = _thread_launcher,
        audit_logfile: Optional[str] = None,
    ):
        self.store = store
        self.escrow = escrow
        self.adapters = adapters
        self.limits = limits or TradingLimits()
        self.placement_breaker = placement_breaker or CircuitBreaker("arbitrage")
        self.fill_poll_interval_s = fill_poll_interval_s
        self.max_fill_attempts = max_fill_attempts
        self.resolution_poll_interval_s = resolution_poll_interval_s
        self.max_resolution_attempts = max_resolution_attempts
        self._sleep = sleep
        self._launcher = launcher
        self.audit_logfile = audit_logfile
        self._monitor_lock = threading.Lock()
        self._active: Set[Tuple[str, str]] = set()

    # ------------------------
    # Execution
    # ------------------------
    def execute_arbitrage(
        self, user_id: str, opportunity_id: str, investment_amount: float
    ) -> ArbitrageTradeResult:
        """Execute one arbitrage opportunity. Never raises.

        Escrow is locked before any order goes out. If either leg fails,
        the leg that succeeded is cancelled and the escrow released, and
        the trade is marked failed with every rollback error attached.
        """
        try:
            opportunity = self._validate(user_id, opportunity_id, investment_amount)
            self._claim(user_id, opportunity, investment_amount)
        except ValidationError as e:
            logger.warning(
                "Arbitrage %s rejected for %s: [%s] %s",
                opportunity_id, user_id, e.code, e,
            )
            return ArbitrageTradeResult(success=False, error=str(e), error_code=e.code)

        try:
            return self._run_saga(user_id, opportunity, investment_amount)
        except Exception as e:
            logger.exception("Unexpected error executing arbitrage %s", opportunity_id)
            return ArbitrageTradeResult(
                success=False, error=f"Unexpected error: {e}", error_code="internal_error",
            )

    def _validate(self, user_id: str, opportunity_id: str, amount: float):
        opportunity = self.store.get_opportunity(opportunity_id)
        venues = (
            [opportunity.market1.venue, opportunity.market2.venue]
            if opportunity else list(self.adapters)
        )
        self.limits.check_arbitrage(user_id, amount, venues)

        if opportunity is None:
            raise ValidationError("opportunity_not_found", "Opportunity not found")
        if opportunity.status != OpportunityStatus.ACTIVE:
            raise ValidationError(
                "opportunity_inactive",
                f"Opportunity is no longer active ({opportunity.status.value})",
            )
        if opportunity.is_expired():
            self.store.update_opportunity_status(
                opportunity_id, OpportunityStatus.EXPIRED, expected=OpportunityStatus.ACTIVE,
            )
            raise ValidationError("opportunity_expired", "Opportunity has expired")

        self.limits.check_profit_margin(opportunity.potential_profit)

        p1, p2 = opportunity.market1.price, opportunity.market2.price
        if not (0 < p1 < 1 and 0 < p2 < 1):
            raise ValidationError("invalid_prices", f"Leg prices out of range: {p1}, {p2}")
        if p1 + p2 >= 1:
            raise ValidationError(
                "no_arbitrage", f"Combined cost {p1 + p2:.4f} leaves no arbitrage",
            )
        for venue in venues:
            if venue not in self.adapters:
                raise ValidationError("venue_unavailable", f"No adapter for {Venue(venue).value}")
        return opportunity

    def _claim(self, user_id: str, opportunity, amount: float) -> None:
        """Take the opportunity and book daily volume before any funds move.

        The opportunity flips ACTIVE -> EXECUTED by compare-and-set, so of
        two overlapping requests only one gets past this point.
        """
        if not self.store.update_opportunity_status(
            opportunity.id, OpportunityStatus.EXECUTED, expected=OpportunityStatus.ACTIVE,
        ):
            raise ValidationError(
                "opportunity_inactive", "Opportunity was taken by another trade",
            )
        try:
            self.limits.reserve_volume(user_id, amount)
        except ValidationError:
            self._release_claim(user_id, opportunity.id, 0.0)
            raise

    def _release_claim(self, user_id: str, opportunity_id: str, amount: float) -> None:
        if amount:
            self.limits.release_volume(user_id, amount)
        self.store.update_opportunity_status(
            opportunity_id, OpportunityStatus.ACTIVE, expected=OpportunityStatus.EXECUTED,
        )

    def _run_saga(self, user_id: str, opportunity, investment: float) -> ArbitrageTradeResult:
        m1, m2 = opportunity.market1, opportunity.market2
        amount1, amount2 = allocate(investment, m1.price, m2.price)
        guaranteed_payout = investment / (m1.price + m2.price)
        trade = Trade(
            id=f"arb_{uuid.uuid4().hex[:16]}",
            user_id=user_id,
            opportunity_id=opportunity.id,
            legs=[
                TradeLeg(venue=m1.venue, market_id=m1.external_id, side=m1.side,
                         amount=amount1, price=m1.price),
                TradeLeg(venue=m2.venue, market_id=m2.external_id, side=m2.side,
                         amount=amount2, price=m2.price),
            ],
            investment_amount=investment,
            expected_profit=round(guaranteed_payout - investment, 2),
        )
        self.store.create_trade(trade)
        logger.info(
            "Executing arb %s for %s | %.2f = %.2f on %s %s @ %.2f + %.2f on %s %s @ %.2f",
            trade.id, user_id, investment,
            amount1, m1.venue.value, m1.side.value, m1.price,
            amount2, m2.venue.value, m2.side.value, m2.price,
        )

        # Each completed step pushes the action that undoes it.
        compensations: List[Tuple[str, Callable[[], object]]] = [(
            "release opportunity claim",
            lambda: self._release_claim(user_id, opportunity.id, investment),
        )]

        try:
            lock = self.escrow.lock(user_id, investment, ESCROW_PURPOSE, trade.id)
        except EscrowError as e:
            lock = LockResult(success=False, error=str(e))
        if not lock.success:
            error = f"Escrow lock failed: {lock.error}"
            self._rollback(trade.id, compensations)
            self._transition(trade.id, TradeStatus.PENDING, TradeStatus.FAILED, error=error)
            log_trade_event(self.audit_logfile, trade.id, "escrow_lock", False, error=lock.error)
            logger.error("Arb %s aborted: %s", trade.id, error)
            return ArbitrageTradeResult(
                success=False, trade_id=trade.id, error=error, error_code="escrow_failed",
            )

        self.store.update_trade(trade.id, escrow_lock_id=lock.lock_id)
        log_trade_event(
            self.audit_logfile, trade.id, "escrow_lock", True,
            lock_id=lock.lock_id, amount=investment,
        )
        compensations.append((
            "release escrow",
            lambda: self.escrow.release(lock.lock_id, f"Arbitrage trade {trade.id} failed"),
        ))

        try:
            results = self.placement_breaker.execute(
                lambda: self._place_both(trade), f"arb {trade.id} placement"
            )
        except Exception as e:
            outcomes = e.outcomes if isinstance(e, (LegPlacementError, LegCircuitOpenError)) else []
            for index, (result, err) in enumerate(outcomes):
                if err is None:
                    adapter = self.adapters[trade.legs[index].venue]
                    compensations.append((
                        f"cancel leg {index + 1} order {result.order_id}",
                        lambda a=adapter, oid=result.order_id: a.cancel(oid),
                    ))
            rollback_errors = self._rollback(trade.id, compensations)
            error = f"Order placement failed: {e}"
            if rollback_errors:
                error += "; rollback errors: " + "; ".join(rollback_errors)
                logger.critical(
                    "Arb %s rollback incomplete, MANUAL INTERVENTION REQUIRED: %s",
                    trade.id, "; ".join(rollback_errors),
                )
            self._transition(trade.id, TradeStatus.PENDING, TradeStatus.FAILED, error=error)
            log_trade_event(
                self.audit_logfile, trade.id, "rollback", not rollback_errors,
                error=str(e), rollback_errors=rollback_errors,
            )
            return ArbitrageTradeResult(
                success=False,
                trade_id=trade.id,
                error=error,
                error_code="circuit_open" if isinstance(e, CircuitOpenError) else "placement_failed",
            )

        now = utc_now()
        leg_updates = {}
        for index, result in enumerate(results):
            filled = result.status == OrderState.FILLED
            leg_updates[index] = {
                "order_id": result.order_id,
                "shares": result.shares,
                "execution_price": result.execution_price,
                "filled": filled,
                "filled_at": now if filled else None,
            }
        self._transition(
            trade.id, TradeStatus.PENDING, TradeStatus.PARTIAL,
            leg_updates=leg_updates, executed_at=now,
        )
        log_trade_event(
            self.audit_logfile, trade.id, "orders_placed", True,
            order_ids=[r.order_id for r in results],
            shares=[r.shares for r in results],
        )
        logger.info(
            "Arb %s placed: orders %s / %s, expected profit %.2f",
            trade.id, results[0].order_id, results[1].order_id, trade.expected_profit,
        )

        self.start_fill_monitor(trade.id)
        return ArbitrageTradeResult(
            success=True,
            trade_id=trade.id,
            market1_order_id=results[0].order_id,
            market2_order_id=results[1].order_id,
            expected_profit=trade.expected_profit,
        )

    def _place_one(self, trade: Trade, index: int) -> OrderResult:
        leg = trade.legs[index]
        request = OrderRequest(
            venue=leg.venue,
            market_id=leg.market_id,
            side=leg.side,
            amount=leg.amount,
            limit_price=leg.price,
            client_order_id=f"{trade.id}-{index + 1}",
        )
        return self.adapters[leg.venue].place(request)

    def _place_both(self, trade: Trade) -> List[OrderResult]:
        """Place both legs in parallel and wait for both before deciding."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(self._place_one, trade, index)
                for index in range(len(trade.legs))
            ]
            outcomes = []
            for index, future in enumerate(futures):
                try:
                    result = future.result()
                except Exception as e:
                    outcomes.append((None, e))
                    continue
                if not result.success or not result.order_id:
                    venue = trade.legs[index].venue.value
                    outcomes.append((None, OrderRejectedError(
                        venue, result.error or "order not accepted",
                    )))
                else:
                    outcomes.append((result, None))

        for _, err in outcomes:
            # A venue circuit that short-circuited is not a placement failure.
            if isinstance(err, CircuitOpenError):
                raise LegCircuitOpenError(err, outcomes)
        if any(err is not None for _, err in outcomes):
            raise LegPlacementError(outcomes)
        return [result for result, _ in outcomes]

    def _rollback(self, trade_id: str, compensations) -> List[str]:
        """Run compensations newest first. Returns every error hit."""
        errors = []
        for name, action in reversed(compensations):
            try:
                if action() is False:
                    errors.append(f"{name}: refused by venue")
                    logger.error("Arb %s rollback step refused: %s", trade_id, name)
                else:
                    logger.info("Arb %s rolled back: %s", trade_id, name)
            except Exception as e:
                errors.append(f"{name}: {e}")
                logger.error("Arb %s rollback step failed: %s: %s", trade_id, name, e)
        return errors

    def _transition(
        self,
        trade_id: str,
        current: TradeStatus,
        target: TradeStatus,
        leg_updates: Optional[dict] = None,
        **fields,
    ) -> Optional[Trade]:
        """Move a trade from ``current`` to ``target`` only if it is still there."""
        check_transition(current, target)
        return self.store.update_trade(
            trade_id,
            expect={"status": current},
            leg_updates=leg_updates,
            status=target,
            **fields,
        )

    # ------------------------
    # Monitors
    # ------------------------
    @property
    def active_monitors(self) -> int:
        with self._monitor_lock:
            return len(self._active)

    def start_fill_monitor(self, trade_id: str) -> bool:
        """Start watching fills. Returns False if one is already running."""
        return self._launch("fill", trade_id, self.monitor_fills)

    def start_resolution_watch(self, trade_id: str) -> bool:
        """Start watching market resolution. Returns False if already running."""
        return self._launch("resolution", trade_id, self.wait_for_resolution)

    def _launch(self, kind: str, trade_id: str, target: Callable[[str], None]) -> bool:
        key = (kind, trade_id)
        with self._monitor_lock:
            if key in self._active:
                logger.debug("%s monitor already running for %s", kind, trade_id)
                return False
            self._active.add(key)

        def run():
            try:
                target(trade_id)
            except Exception:
                logger.exception("%s monitor for %s crashed", kind, trade_id)
            finally:
                with self._monitor_lock:
                    self._active.discard(key)

        self._launcher(run)
        return True

    def monitor_fills(self, trade_id: str) -> None:
        """Poll unfilled legs until both fill or the attempt budget runs out."""
        while True:
            trade = self.store.get_trade(trade_id)
            if trade is None:
                logger.warning("Fill monitor: trade %s not found", trade_id)
                return
            if trade.status != TradeStatus.PARTIAL:
                return
            if trade.all_filled:
                self._complete(trade)
                return
            if trade.fill_attempts >= self.max_fill_attempts:
                self._mark_stale(
                    trade, f"Fill timeout after {trade.fill_attempts} attempts",
                )
                return

            leg_updates = {}
            dead_legs = []
            for index, leg in enumerate(trade.legs):
                if leg.filled or not leg.order_id:
                    continue
                try:
                    status = self.adapters[leg.venue].status(leg.order_id)
                except Exception as e:
                    logger.warning(
                        "Fill check for %s leg %d (%s) failed: %s",
                        trade_id, index + 1, leg.order_id, e,
                    )
                    continue
                if status.state == OrderState.FILLED:
                    leg_updates[index] = {
                        "filled": True,
                        "filled_at": utc_now(),
                        "shares": status.filled_shares or leg.shares,
                        "execution_price": status.execution_price or leg.execution_price,
                    }
                elif status.state in (OrderState.CANCELLED, OrderState.FAILED):
                    dead_legs.append(f"leg {index + 1} order {leg.order_id} {status.state.value}")
                else:
                    logger.debug(
                        "Arb %s leg %d %s (%.0f%% filled)",
                        trade_id, index + 1, status.state.value, status.fill_pct,
                    )

            updated = self.store.update_trade(
                trade_id,
                expect={"status": TradeStatus.PARTIAL, "fill_attempts": trade.fill_attempts},
                leg_updates=leg_updates,
                fill_attempts=trade.fill_attempts + 1,
            )
            if updated is None:
                continue
            if dead_legs:
                self._mark_stale(updated, "; ".join(dead_legs))
                return
            if updated.all_filled:
                self._complete(updated)
                return
            self._sleep(self.fill_poll_interval_s)

    def _complete(self, trade: Trade) -> None:
        if self._transition(trade.id, TradeStatus.PARTIAL, TradeStatus.COMPLETED) is None:
            return
        logger.info("Arb %s: both legs filled, waiting for resolution", trade.id)
        log_trade_event(self.audit_logfile, trade.id, "filled", True)
        self.start_resolution_watch(trade.id)

    def _mark_stale(self, trade: Trade, reason: str) -> None:
        if self._transition(trade.id, TradeStatus.PARTIAL, TradeStatus.STALE, error=reason) is None:
            return
        logger.critical(
            "Arb %s STALE (%s) - open orders %s, MANUAL INTERVENTION REQUIRED",
            trade.id, reason, trade.order_ids,
        )
        log_trade_event(
            self.audit_logfile, trade.id, "stale_alert", False,
            reason=reason, order_ids=trade.order_ids,
            filled=[leg.filled for leg in trade.legs],
        )

    def wait_for_resolution(self, trade_id: str) -> None:
        """Poll both markets until resolved, then settle.

        Gives up after the attempt budget; the trade stays completed and is
        picked up again by resume_monitoring.
        """
        while True:
            trade = self.store.get_trade(trade_id)
            if trade is None or trade.status != TradeStatus.COMPLETED:
                return
            if trade.resolution_attempts >= self.max_resolution_attempts:
                logger.warning(
                    "Arb %s: markets unresolved after %d checks, leaving completed",
                    trade_id, trade.resolution_attempts,
                )
                return

            try:
                if self._markets_resolved(trade):
                    result = self.close_positions(trade_id)
                    if result.success:
                        return
                    logger.warning("Arb %s settlement deferred: %s", trade_id, result.error)
            except Exception as e:
                logger.warning("Resolution check for %s failed: %s", trade_id, e)

            updated = self.store.update_trade(
                trade_id,
                expect={"status": TradeStatus.COMPLETED},
                resolution_attempts=trade.resolution_attempts + 1,
            )
            if updated is None:
                return
            self._sleep(self.resolution_poll_interval_s)

    def _markets_resolved(self, trade: Trade) -> bool:
        for leg in trade.legs:
            market = self.store.get_market(leg.venue, leg.market_id)
            if market is None or not market.is_resolved:
                return False
        return True

    # ------------------------
    # Settlement
    # ------------------------
    def close_positions(self, trade_id: str) -> CloseResult:
        """Settle a completed trade once both markets have resolved.

        The only path that credits funds. Settlement is one conditional
        transition, so a second call cannot pay out twice.
        """
        if not self.limits.settlement_enabled:
            return CloseResult(success=False, error="Settlement is currently disabled")
        trade = self.store.get_trade(trade_id)
        if trade is None:
            return CloseResult(success=False, error="Trade not found")
        if trade.status != TradeStatus.COMPLETED:
            return CloseResult(success=False, error="Trade already settled or not completed")

        outcomes = {}
        for index, leg in enumerate(trade.legs):
            market = self.store.get_market(leg.venue, leg.market_id)
            if market is None or not market.is_resolved:
                return CloseResult(success=False, error="Markets not yet resolved")
            outcomes[index] = market.outcome == "yes"

        for index, leg in enumerate(trade.legs):
            leg.outcome = outcomes[index]
        payouts = [leg.payout() for leg in trade.legs]
        profit = round(sum(payouts) - trade.investment_amount, 2)

        settled = self._transition(
            trade_id, TradeStatus.COMPLETED, TradeStatus.SETTLED,
            leg_updates={i: {"outcome": o} for i, o in outcomes.items()},
            actual_profit=profit,
            settled=True,
            settled_at=utc_now(),
        )
        if settled is None:
            return CloseResult(success=False, error="Trade already settled or not completed")

        logger.info(
            "Arb %s settled: payouts %.2f + %.2f, profit %.2f",
            trade_id, payouts[0], payouts[1], profit,
        )
        log_trade_event(
            self.audit_logfile, trade_id, "settled", True,
            payouts=payouts, profit=profit,
        )
        try:
            self._finalize_settlement(settled)
        except Exception as e:
            # Settlement is recorded; resume_monitoring finishes the rest.
            logger.error("Arb %s settled but finalization failed: %s", trade_id, e)
        return CloseResult(
            success=True,
            profit=profit,
            market1_payout=payouts[0],
            market2_payout=payouts[1],
        )

    def _finalize_settlement(self, trade: Trade) -> None:
        """Release escrow and credit profit, each at most once."""
        if not trade.escrow_released:
            lock_id = trade.escrow_lock_id
            if not lock_id:
                lock = self.escrow.get_lock_by_reference(trade.id)
                lock_id = lock.id if lock else None
            if lock_id:
                try:
                    self.escrow.release(lock_id, f"Arbitrage trade {trade.id} settled")
                    log_trade_event(self.audit_logfile, trade.id, "escrow_release", True, lock_id=lock_id)
                except EscrowLockNotFoundError as e:
                    # Retrying cannot succeed; flag it once and move on.
                    logger.critical(
                        "Arb %s escrow lock %s missing at settlement, MANUAL REVIEW REQUIRED: %s",
                        trade.id, lock_id, e,
                    )
                    log_trade_event(
                        self.audit_logfile, trade.id, "escrow_release", False,
                        lock_id=lock_id, error=str(e),
                    )
            else:
                logger.warning("Arb %s has no escrow lock to release", trade.id)
            self.store.update_trade(trade.id, escrow_released=True)

        profit = trade.actual_profit or 0.0
        if profit <= 0 or trade.profit_credited:
            return
        claimed = self.store.update_trade(
            trade.id, expect={"profit_credited": False}, profit_credited=True,
        )
        if claimed is None:
            return
        try:
            self.escrow.credit(trade.user_id, profit, f"Arbitrage profit for trade {trade.id}")
        except Exception:
            self.store.update_trade(trade.id, profit_credited=False)
            raise
        log_trade_event(self.audit_logfile, trade.id, "profit_credited", True, amount=profit)

    # ------------------------
    # Queries and maintenance
    # ------------------------
    def calculate_pnl(self, trade_id: str) -> Optional[PnLResult]:
        """P&L for a trade: realized once settled, expected before that.

        Before settlement each market payout is what that leg pays if it
        wins, and the total is the payout guaranteed whichever leg wins.
        """
        trade = self.store.get_trade(trade_id)
        if trade is None:
            return None
        leg1, leg2 = trade.legs
        if trade.settled:
            payout1, payout2 = leg1.payout(), leg2.payout()
            total = payout1 + payout2
        else:
            payout1, payout2 = leg1.shares, leg2.shares
            total = min(payout1, payout2)
        profit_loss = total - trade.investment_amount
        profit_pct = profit_loss / trade.investment_amount * 100 if trade.investment_amount else 0.0
        return PnLResult(
            trade_id=trade.id,
            investment_amount=trade.investment_amount,
            market1_cost=leg1.amount,
            market2_cost=leg2.amount,
            market1_payout=round(payout1, 2),
            market2_payout=round(payout2, 2),
            total_payout=round(total, 2),
            profit_loss=round(profit_loss, 2),
            profit_pct=round(profit_pct, 2),
            realized=trade.settled,
        )

    def get_user_trades(
        self,
        user_id: str,
        status: Optional[TradeStatus] = None,
        settled: Optional[bool] = None,
        limit: int = 100,
    ) -> List[Trade]:
        return self.store.find_user_trades(user_id, status=status, settled=settled, limit=limit)

    def expire_opportunities(self, now: Optional[datetime] = None) -> int:
        """Flip every active opportunity past its expiry to expired."""
        count = 0
        for opportunity in self.store.find_expired_active_opportunities(now):
            if self.store.update_opportunity_status(
                opportunity.id, OpportunityStatus.EXPIRED, expected=OpportunityStatus.ACTIVE,
            ):
                count += 1
        if count:
            logger.info("Expired %d opportunities", count)
        return count

    def resume_monitoring(self) -> Dict[str, int]:
        """Pick up in-flight trades after a restart."""
        counts = {"fill": 0, "resolution": 0, "finalized": 0, "pending": 0}
        for trade in self.store.find_trades_by_status(TradeStatus.PARTIAL):
            if self.start_fill_monitor(trade.id):
                counts["fill"] += 1
        for trade in self.store.find_trades_by_status(TradeStatus.COMPLETED):
            if self.start_resolution_watch(trade.id):
                counts["resolution"] += 1
        for trade in self.store.find_trades_by_status(TradeStatus.SETTLED):
            owes_credit = (trade.actual_profit or 0.0) > 0 and not trade.profit_credited
            if trade.escrow_released and not owes_credit:
                continue
            try:
                self._finalize_settlement(trade)
                counts["finalized"] += 1
            except Exception as e:
                logger.error("Arb %s finalization retry failed: %s", trade.id, e)
        for trade in self.store.find_trades_by_status(TradeStatus.PENDING):
            # Interrupted mid-placement: venue state is unknown.
            counts["pending"] += 1
            logger.critical(
                "Arb %s left pending by a restart (escrow %s), MANUAL REVIEW REQUIRED",
                trade.id, trade.escrow_lock_id,
            )
            log_trade_event(
                self.audit_logfile, trade.id, "pending_on_restart", False,
                lock_id=trade.escrow_lock_id,
            )
        logger.info(
            "Resumed %d fill monitors, %d resolution watches, finalized %d settlements",
            counts["fill"], counts["resolution"], counts["finalized"],
        )
        return counts

    def health_snapshot(self) -> dict:
        """Breaker and rate-limit state for operators."""
        breakers = [self.placement_breaker.snapshot()]
        rate_limits = {}
        for venue, adapter in self.adapters.items():
            breakers.append(adapter.breaker.snapshot())
            state = adapter.limiter.snapshot()
            rate_limits[Venue(venue).value] = {
                "remaining": state.remaining,
                "limit": state.limit,
                "reset_at": state.reset_at,
                "wait_s": adapter.limiter.estimated_wait(),
            }
        return {"breakers": breakers, "rate_limits": rate_limits}
