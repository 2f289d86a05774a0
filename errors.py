"""Exception taxonomy for the arbitrage engine."""

from typing import List, Optional, Tuple


class ArbitrageError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(ArbitrageError):
    """Pre-trade check failed; nothing has been written or locked."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class EscrowError(ArbitrageError):
    """Escrow refused or failed to lock, release or credit funds."""


class InvalidTransitionError(ArbitrageError):
    """A trade was asked to move to a state its current state forbids."""


class VenueError(ArbitrageError):
    """A venue call failed (transport error or non-2xx response)."""

    def __init__(self, venue: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{venue}: {message}")
        self.venue = venue
        self.status_code = status_code


class OrderRejectedError(VenueError):
    """The order was refused, either locally (zero size) or by the venue."""


class CircuitOpenError(ArbitrageError):
    """Raised instead of calling a dependency whose circuit is open.

    Deliberately not a VenueError: the venue was not called at all.
    """

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            f"circuit '{name}' is open, retry in {retry_in:.0f}s"
        )
        self.name = name
        self.retry_in = retry_in


class LegPlacementError(ArbitrageError):
    """At least one leg of a dual placement failed.

    ``outcomes`` holds one ``(result, error)`` pair per leg, in leg order;
    exactly one of the two is set.
    """

    def __init__(self, outcomes: List[Tuple[object, Optional[BaseException]]]):
        reasons = [
            f"leg {i + 1}: {err}" for i, (_, err) in enumerate(outcomes) if err is not None
        ]
        super().__init__("; ".join(reasons))
        self.outcomes = outcomes


class EscrowLockNotFoundError(EscrowError):
    """The escrow service has no lock with the given id."""


class LegCircuitOpenError(CircuitOpenError):
    """A leg of a dual placement was short-circuited by its venue's breaker.

    Carries the per-leg ``outcomes`` like LegPlacementError so legs that
    did go out can still be rolled back.
    """

    def __init__(self, cause: CircuitOpenError, outcomes: List[Tuple[object, Optional[BaseException]]]):
        super().__init__(cause.name, cause.retry_in)
        self.outcomes = outcomes
