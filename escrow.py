"""Escrow interface and a local ledger implementing it.

The coordinator only ever holds a lock id. Whether funds are at risk is
decided here: a lock moves available balance into locked balance, and a
release moves it back. Release is idempotent.
"""

import logging
import threading
import uuid
from typing import Dict, Optional

from errors import EscrowError, EscrowLockNotFoundError
from models import EscrowLock, LockResult
from trade_store import read_state, write_state

logger = logging.getLogger(__name__)


class EscrowService:
    """Contract the coordinator depends on."""

    def lock(self, user_id: str, amount: float, purpose: str, reference_id: str) -> LockResult:
        raise NotImplementedError

    def release(self, lock_id: str, reason: str) -> None:
        """Release a lock. Releasing an already-released lock is a no-op."""
        raise NotImplementedError

    def credit(self, user_id: str, amount: float, reason: str) -> None:
        raise NotImplementedError

    def get_lock_by_reference(self, reference_id: str) -> Optional[EscrowLock]:
        raise NotImplementedError


class LocalEscrow(EscrowService):
    """In-process escrow ledger, optionally persisted to a JSON file."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.RLock()
        state = read_state(path)
        self._balances: Dict[str, float] = {k: float(v) for k, v in state.get("balances", {}).items()}
        self._locked: Dict[str, float] = {k: float(v) for k, v in state.get("locked", {}).items()}
        self._locks: Dict[str, EscrowLock] = {
            k: EscrowLock.from_dict(v) for k, v in state.get("locks", {}).items()
        }

    def _flush(self) -> None:
        if not self.path:
            return
        write_state(self.path, {
            "balances": self._balances,
            "locked": self._locked,
            "locks": {k: v.to_dict() for k, v in self._locks.items()},
        })

    def deposit(self, user_id: str, amount: float) -> None:
        with self._lock:
            self._balances[user_id] = self._balances.get(user_id, 0.0) + amount
            self._flush()

    def available_balance(self, user_id: str) -> float:
        with self._lock:
            return self._balances.get(user_id, 0.0)

    def locked_balance(self, user_id: str) -> float:
        with self._lock:
            return self._locked.get(user_id, 0.0)

    def lock(self, user_id: str, amount: float, purpose: str, reference_id: str) -> LockResult:
        if amount <= 0:
            return LockResult(success=False, error="Lock amount must be positive")
        with self._lock:
            available = self._balances.get(user_id, 0.0)
            if available < amount:
                return LockResult(
                    success=False,
                    error=f"Insufficient balance: {available:.2f} available, {amount:.2f} required",
                )
            lock = EscrowLock(
                id=f"lock_{uuid.uuid4().hex[:16]}",
                user_id=user_id,
                amount=amount,
                purpose=purpose,
                reference_id=reference_id,
            )
            self._balances[user_id] = available - amount
            self._locked[user_id] = self._locked.get(user_id, 0.0) + amount
            self._locks[lock.id] = lock
            self._flush()
        logger.info("Escrow locked %.2f for %s (%s, ref %s)", amount, user_id, lock.id, reference_id)
        return LockResult(success=True, lock_id=lock.id)

    def release(self, lock_id: str, reason: str) -> None:
        with self._lock:
            lock = self._locks.get(lock_id)
            if lock is None:
                raise EscrowLockNotFoundError(f"Escrow lock {lock_id} not found")
            if lock.status == "released":
                logger.debug("Escrow %s already released, ignoring (%s)", lock_id, reason)
                return
            self._locked[lock.user_id] = self._locked.get(lock.user_id, 0.0) - lock.amount
            self._balances[lock.user_id] = self._balances.get(lock.user_id, 0.0) + lock.amount
            lock.status = "released"
            lock.release_reason = reason
            self._flush()
        logger.info("Escrow released %s (%.2f): %s", lock_id, lock.amount, reason)

    def credit(self, user_id: str, amount: float, reason: str) -> None:
        if amount <= 0:
            raise EscrowError("Credit amount must be positive")
        with self._lock:
            self._balances[user_id] = self._balances.get(user_id, 0.0) + amount
            self._flush()
        logger.info("Credited %.2f to %s: %s", amount, user_id, reason)

    def get_lock(self, lock_id: str) -> Optional[EscrowLock]:
        with self._lock:
            return self._locks.get(lock_id)

    def get_lock_by_reference(self, reference_id: str) -> Optional[EscrowLock]:
        with self._lock:
            for lock in self._locks.values():
                if lock.reference_id == reference_id:
                    return lock
        return None
