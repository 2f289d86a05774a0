"""Cross-venue arbitrage engine for Polymarket and Kalshi.

Buys YES on one venue and NO on the other when the two prices sum to
less than $1.00, so one leg pays out whichever way the event resolves.
Opportunities are written to the trade store by the scanner; this entry
point executes, monitors and settles them.

Usage:
    python main.py execute USER_ID OPPORTUNITY_ID AMOUNT
    python main.py status TRADE_ID | --user USER_ID
    python main.py settle TRADE_ID
    python main.py recover
    python main.py expire
    python main.py breakers
    python main.py deposit USER_ID AMOUNT

Configure via .env file (see .env.example).
"""

import argparse
import logging
import time

import config
from coordinator import ArbitrageCoordinator
from display import (
    print_close_result,
    print_health,
    print_pnl,
    print_trade,
    print_trade_result,
    print_trade_table,
)
from escrow import LocalEscrow
from kalshi.trading import KalshiAdapter
from limits import TradingLimits
from logger import get_logfile_path, log_session_start, setup_logging
from models import TradeStatus, Venue
from polymarket.clob import PolymarketAdapter
from trade_store import TradeStore

main_logger = logging.getLogger(__name__)


def build_coordinator(logfile: str) -> ArbitrageCoordinator:
    """Wire the store, escrow ledger and both venue adapters."""
    return ArbitrageCoordinator(
        store=TradeStore(config.TRADE_STATE_FILE),
        escrow=LocalEscrow(config.ESCROW_STATE_FILE),
        adapters={
            Venue.POLYMARKET: PolymarketAdapter(),
            Venue.KALSHI: KalshiAdapter(),
        },
        limits=TradingLimits(),
        audit_logfile=logfile,
    )


def _wait_for_monitors(coordinator: ArbitrageCoordinator) -> None:
    """Keep the process alive while fill/resolution monitors run."""
    if not coordinator.active_monitors:
        return
    print(f"\n  Monitoring {coordinator.active_monitors} trade(s). Press Ctrl+C to detach.")
    try:
        while coordinator.active_monitors:
            time.sleep(1.0)
    except KeyboardInterrupt:
        print("\n  Detached. Run 'recover' to resume monitoring.")


def _cmd_execute(coordinator: ArbitrageCoordinator, args) -> int:
    result = coordinator.execute_arbitrage(args.user_id, args.opportunity_id, args.amount)
    print_trade_result(result)
    if result.success:
        _wait_for_monitors(coordinator)
    return 0 if result.success else 1


def _cmd_status(coordinator: ArbitrageCoordinator, args) -> int:
    if args.trade_id:
        trade = coordinator.store.get_trade(args.trade_id)
        if trade is None:
            print(f"  Trade {args.trade_id} not found.")
            return 1
        print_trade(trade)
        print_pnl(coordinator.calculate_pnl(trade.id))
        return 0
    if not args.user:
        print("  Give a TRADE_ID or --user USER_ID.")
        return 2
    status = TradeStatus(args.status) if args.status else None
    trades = coordinator.get_user_trades(args.user, status=status, limit=args.limit)
    print_trade_table(trades)
    print(f"\n  Daily volume left: {coordinator.limits.remaining_daily_volume(args.user):.2f}")
    return 0


def _cmd_settle(coordinator: ArbitrageCoordinator, args) -> int:
    result = coordinator.close_positions(args.trade_id)
    print_close_result(args.trade_id, result)
    return 0 if result.success else 1


def _cmd_recover(coordinator: ArbitrageCoordinator, args) -> int:
    counts = coordinator.resume_monitoring()
    print(
        f"\n  Resumed: {counts['fill']} fill monitors, {counts['resolution']} resolution "
        f"watches, {counts['finalized']} settlements finalized, "
        f"{counts['pending']} pending trades need review"
    )
    _wait_for_monitors(coordinator)
    return 0


def _cmd_expire(coordinator: ArbitrageCoordinator, args) -> int:
    count = coordinator.expire_opportunities()
    print(f"\n  Expired {count} opportunities.")
    return 0


def _cmd_breakers(coordinator: ArbitrageCoordinator, args) -> int:
    breakers = [coordinator.placement_breaker] + [
        a.breaker for a in coordinator.adapters.values()
    ]
    for breaker in breakers:
        if args.reset in (breaker.name, "all"):
            breaker.reset()
        if args.trip in (breaker.name, "all"):
            breaker.trip()
    print_health(coordinator.health_snapshot())
    return 0


def _cmd_deposit(coordinator: ArbitrageCoordinator, args) -> int:
    coordinator.escrow.deposit(args.user_id, args.amount)
    print(f"\n  {args.user_id}: {coordinator.escrow.available_balance(args.user_id):.2f} available")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cross-venue arbitrage engine")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("execute", help="execute an opportunity")
    p.add_argument("user_id")
    p.add_argument("opportunity_id")
    p.add_argument("amount", type=float)
    p.set_defaults(func=_cmd_execute)

    p = sub.add_parser("status", help="show a trade or a user's trades")
    p.add_argument("trade_id", nargs="?")
    p.add_argument("--user")
    p.add_argument("--status", choices=[s.value for s in TradeStatus])
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=_cmd_status)

    p = sub.add_parser("settle", help="settle a completed trade")
    p.add_argument("trade_id")
    p.set_defaults(func=_cmd_settle)

    p = sub.add_parser("recover", help="resume monitors after a restart")
    p.set_defaults(func=_cmd_recover)

    p = sub.add_parser("expire", help="expire stale opportunities")
    p.set_defaults(func=_cmd_expire)

    p = sub.add_parser("breakers", help="show, reset or trip circuit breakers")
    p.add_argument("--reset", metavar="NAME", help="breaker name or 'all'")
    p.add_argument("--trip", metavar="NAME", help="breaker name or 'all'")
    p.set_defaults(func=_cmd_breakers)

    p = sub.add_parser("deposit", help="credit the local escrow ledger")
    p.add_argument("user_id")
    p.add_argument("amount", type=float)
    p.set_defaults(func=_cmd_deposit)
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logfile = get_logfile_path()

    log_session_start(logfile, {
        "command": args.command,
        "app_env": config.APP_ENV,
        "trading_enabled": config.TRADING_ENABLED,
        "arbitrage_enabled": config.ARBITRAGE_ENABLED,
        "settlement_enabled": config.SETTLEMENT_ENABLED,
        "max_single_trade": config.MAX_SINGLE_TRADE,
        "max_daily_volume": config.MAX_DAILY_VOLUME,
        "min_profit_margin_pct": config.MIN_PROFIT_MARGIN_PCT,
        "max_fill_attempts": config.MAX_FILL_ATTEMPTS,
        "max_resolution_attempts": config.MAX_RESOLUTION_ATTEMPTS,
    })
    main_logger.debug("Audit log: %s", logfile)

    coordinator = build_coordinator(logfile)
    return args.func(coordinator, args)


if __name__ == "__main__":
    raise SystemExit(main())
