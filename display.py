"""Display helpers for terminal output with box-drawing characters."""

from typing import List

from models import ArbitrageTradeResult, CloseResult, PnLResult, Trade

BOX_W = 68


def _box_top(label: str = "", w: int = BOX_W) -> str:
    if label:
        pad = w - len(label) - 2
        return "+" + "- " + label + " " + "-" * max(pad, 0) + "+"
    return "+" + "-" * (w + 2) + "+"


def _box_mid(w: int = BOX_W) -> str:
    return "|" + "-" * (w + 2) + "|"


def _box_bot(w: int = BOX_W) -> str:
    return "+" + "-" * (w + 2) + "+"


def _box_line(text: str, w: int = BOX_W) -> str:
    return "| " + text.ljust(w) + " |"


def print_trade_result(result: ArbitrageTradeResult) -> None:
    """Print the outcome of an execute_arbitrage call."""
    tag = "PLACED" if result.success else "FAILED"
    trade_id = result.trade_id or "no trade"
    print(f"\n{_box_top(f'{tag} - {trade_id}')}")
    if result.success:
        print(_box_line(f"Leg 1 order:     {result.market1_order_id}"))
        print(_box_line(f"Leg 2 order:     {result.market2_order_id}"))
        print(_box_line(f"Expected profit: {result.expected_profit:.2f}"))
    else:
        print(_box_line(f"Code:  {result.error_code}"))
        # Wrap long consolidated errors
        error = result.error or ""
        for i in range(0, len(error), BOX_W - 7):
            prefix = "Error: " if i == 0 else "       "
            print(_box_line(prefix + error[i:i + BOX_W - 7]))
    print(_box_bot())


def print_trade(trade: Trade) -> None:
    """Print one trade with both legs."""
    print(f"\n{_box_top(f'{trade.status.value.upper()} - {trade.id}')}")
    print(_box_line(f"User:        {trade.user_id}"))
    print(_box_line(f"Opportunity: {trade.opportunity_id}"))
    print(_box_line(f"Investment:  {trade.investment_amount:.2f}"))
    print(_box_mid())

    for i, leg in enumerate(trade.legs, 1):
        status_icon = "[OK]" if leg.filled else "[..]"
        venue = leg.venue.value[:10].ljust(10)
        market = leg.market_id[:20].ljust(20)
        print(_box_line(
            f"  {status_icon} {i} {venue} {market} {leg.side.value:<3} "
            f"{leg.amount:>8.2f} @ {leg.price:.2f}"
        ))
        if leg.order_id:
            print(_box_line(f"         order {leg.order_id}  shares {leg.shares:.2f}"))

    print(_box_mid())
    print(_box_line(f"Expected profit: {trade.expected_profit:.2f}"))
    if trade.actual_profit is not None:
        print(_box_line(f"Actual profit:   {trade.actual_profit:.2f}"))
    print(_box_line(f"Fill checks:     {trade.fill_attempts}   Resolution checks: {trade.resolution_attempts}"))
    if trade.error:
        print(_box_line(f"Error: {trade.error[:BOX_W - 7]}"))
    print(_box_bot())


def print_trade_table(trades: List[Trade]) -> None:
    if not trades:
        print("\n  No trades.")
        return
    print(f"\n  {'ID':<22} {'STATUS':<10} {'INVESTED':>10} {'EXPECTED':>10} {'ACTUAL':>10}")
    for t in trades:
        actual = f"{t.actual_profit:.2f}" if t.actual_profit is not None else "-"
        print(
            f"  {t.id:<22} {t.status.value:<10} {t.investment_amount:>10.2f} "
            f"{t.expected_profit:>10.2f} {actual:>10}"
        )


def print_close_result(trade_id: str, result: CloseResult) -> None:
    if not result.success:
        print(f"\n  Settlement of {trade_id} failed: {result.error}")
        return
    print(f"\n{_box_top(f'SETTLED - {trade_id}')}")
    print(_box_line(f"Leg 1 payout: {result.market1_payout:.2f}"))
    print(_box_line(f"Leg 2 payout: {result.market2_payout:.2f}"))
    print(_box_line(f"Profit:       {result.profit:.2f}"))
    print(_box_bot())


def print_pnl(pnl: PnLResult) -> None:
    tag = "REALIZED" if pnl.realized else "EXPECTED"
    print(f"\n{_box_top(f'{tag} P&L - {pnl.trade_id}')}")
    print(_box_line(f"Cost:    {pnl.market1_cost:.2f} + {pnl.market2_cost:.2f} = {pnl.investment_amount:.2f}"))
    print(_box_line(f"Payout:  {pnl.market1_payout:.2f} / {pnl.market2_payout:.2f} -> {pnl.total_payout:.2f}"))
    print(_box_line(f"P&L:     {pnl.profit_loss:+.2f}  ({pnl.profit_pct:+.2f}%)"))
    print(_box_bot())


def print_health(snapshot: dict) -> None:
    """Print breaker and rate-limit state."""
    print(f"\n{_box_top('CIRCUIT BREAKERS')}")
    for b in snapshot["breakers"]:
        line = f"  {b['name']:<12} {b['state']:<10} failures={b['failures']}"
        if b["retry_in"]:
            line += f"  retry in {b['retry_in']:.0f}s"
        print(_box_line(line))
    print(_box_mid())
    for venue, rl in snapshot["rate_limits"].items():
        print(_box_line(
            f"  {venue:<12} {rl['remaining']}/{rl['limit']} remaining  wait {rl['wait_s']:.1f}s"
        ))
    print(_box_bot())
