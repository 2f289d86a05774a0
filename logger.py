"""JSONL audit trail for trade lifecycle events."""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from config import LOG_DIR

_logger = logging.getLogger(__name__)


def _utc_ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ensure_log_dir(log_dir: str = LOG_DIR):
    os.makedirs(log_dir, exist_ok=True)


def get_logfile_path(log_dir: str = LOG_DIR) -> str:
    """Generate an audit logfile path for the current session."""
    ensure_log_dir(log_dir)
    ts = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    return os.path.join(log_dir, f"arb_trades_{ts}.jsonl")


def append_log(path: str, row: dict) -> None:
    """Append a JSON line to the logfile."""
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(row, default=str) + "\n")
    except OSError as e:
        _logger.error("Failed to write log: %s", e)


def log_trade_event(
    logfile: Optional[str],
    trade_id: str,
    action: str,
    success: bool = True,
    **details,
) -> None:
    """Record one lifecycle step of a trade.

    ``action`` is e.g. escrow_lock, orders_placed, rollback, stale_alert,
    settled, profit_credited. No-op without a logfile.
    """
    if not logfile:
        return
    row = {
        "log_type": "trade_event",
        "ts": _utc_ts(),
        "trade_id": trade_id,
        "action": action,
        "success": success,
    }
    row.update(details)
    append_log(logfile, row)


def log_session_start(logfile: str, config: dict) -> None:
    """Log session startup with configuration snapshot."""
    append_log(logfile, {
        "log_type": "session_start",
        "ts": _utc_ts(),
        **config,
    })


def setup_logging(level: int = logging.INFO) -> None:
    """Configure Python logging for the engine."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
