"""Venue-agnostic order adapter.

Every external call goes through the venue's circuit breaker, then its
rate limiter, then the HTTP request. Subclasses only describe the
venue-specific payloads and how to read the venue's answers.
"""

import json
import logging
from typing import Any, Dict, Optional

import requests

from circuit_breaker import CircuitBreaker
from config import HTTP_TIMEOUT_S
from errors import OrderRejectedError, VenueError
from models import OrderRequest, OrderResult, OrderStatus, Venue
from rate_limiter import AdaptiveRateLimiter

logger = logging.getLogger(__name__)


class VenueAdapter:
    """Base class for Polymarket / Kalshi adapters."""

    venue: Venue

    def __init__(
        self,
        base_url: str,
        breaker: CircuitBreaker,
        limiter: AdaptiveRateLimiter,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_S,
    ):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.limiter = limiter
        self.session = session or requests.Session()
        self.timeout = timeout

    # ------------------------
    # Public contract
    # ------------------------
    def place(self, request: OrderRequest) -> OrderResult:
        raise NotImplementedError

    def status(self, order_id: str) -> OrderStatus:
        raise NotImplementedError

    def cancel(self, order_id: str) -> bool:
        raise NotImplementedError

    # ------------------------
    # Helpers
    # ------------------------
    def _reject(self, message: str) -> OrderRejectedError:
        logger.warning("[%s] Order rejected locally: %s", self.venue.value, message)
        return OrderRejectedError(self.venue.value, message)

    def _auth_headers(self, method: str, path: str, body: Optional[str] = None) -> Dict[str, str]:
        """Per-request authentication headers. Override per venue.

        ``body`` is the exact serialized payload that will be sent.
        """
        return {}

    def _request(
        self,
        method: str,
        path: str,
        label: str,
        body: Any = None,
        params: Optional[dict] = None,
    ) -> Any:
        """Breaker -> limiter -> HTTP. Returns the decoded JSON body.

        Raises VenueError on transport errors and non-2xx responses, and
        CircuitOpenError when the breaker short-circuits.
        """
        return self.breaker.execute(
            lambda: self._send(method, path, body, params),
            f"{self.venue.value} {label}",
        )

    def _send(self, method: str, path: str, body: Any, params: Optional[dict]) -> Any:
        self.limiter.acquire()
        # Serialize once so signed and sent bytes are the same.
        data = json.dumps(body, separators=(",", ":")) if body is not None else None
        headers = {"Content-Type": "application/json"}
        headers.update(self._auth_headers(method, path, data))
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url,
                data=data, params=params, headers=headers, timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise VenueError(self.venue.value, f"{method} {path} failed: {e}") from e

        self.limiter.update_from_headers(resp.headers)

        if not resp.ok:
            raise VenueError(
                self.venue.value,
                f"{method} {path} -> {resp.status_code}: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise VenueError(
                self.venue.value, f"{method} {path} returned invalid JSON"
            ) from e


def _error_text(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or resp.reason or "").strip()[:200]
    if isinstance(data, dict):
        for key in ("errorMsg", "error", "message", "detail"):
            value = data.get(key)
            if isinstance(value, dict):
                value = value.get("message") or value.get("code")
            if value:
                return str(value)
    return str(data)[:200]
