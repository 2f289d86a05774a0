"""Kalshi order adapter (Trade API v2 portfolio endpoints)."""

import logging
import math
from typing import Dict, Optional

import requests

from circuit_breaker import CircuitBreaker
from config import HTTP_TIMEOUT_S, KALSHI_API_BASE, KALSHI_RATE_LIMIT
from kalshi.auth import KalshiAuth
from models import OrderRequest, OrderResult, OrderState, OrderStatus, Side, Venue
from rate_limiter import AdaptiveRateLimiter
from venue_adapter import VenueAdapter

logger = logging.getLogger(__name__)

ORDERS_PATH = "/portfolio/orders"

_STATE_MAP = {
    "executed": OrderState.FILLED,
    "canceled": OrderState.CANCELLED,
    "cancelled": OrderState.CANCELLED,
}


def contracts_for(amount: float, price_cents: int) -> int:
    """Whole contracts an amount buys at a price in cents (each pays $1)."""
    if price_cents <= 0:
        return 0
    return int(math.floor(amount * 100 / price_cents + 1e-9))


def _count(order: dict, *names) -> float:
    for name in names:
        value = order.get(name)
        if value is not None:
            return float(value)
    return 0.0


def normalize_order(order_id: str, order: dict) -> OrderStatus:
    """Map a Kalshi order payload onto the venue-agnostic OrderStatus."""
    filled = _count(order, "fill_count", "quantity_closed")
    remaining = _count(order, "remaining_count", "quantity_open")
    total = _count(order, "initial_count") or filled + remaining
    raw = str(order.get("status", "")).lower()

    state = _STATE_MAP.get(raw)
    if state is None:
        if total > 0 and remaining == 0 and filled > 0:
            state = OrderState.FILLED
        elif filled > 0:
            state = OrderState.PARTIALLY_FILLED
        else:
            state = OrderState.PENDING

    side = str(order.get("side", "yes")).lower()
    price_cents = order.get("no_price") if side == "no" else order.get("yes_price")
    return OrderStatus(
        order_id=order_id,
        state=state,
        shares=total,
        filled_shares=filled,
        execution_price=price_cents / 100 if price_cents else None,
    )


class KalshiAdapter(VenueAdapter):
    venue = Venue.KALSHI

    def __init__(
        self,
        auth: Optional[KalshiAuth] = None,
        breaker: Optional[CircuitBreaker] = None,
        limiter: Optional[AdaptiveRateLimiter] = None,
        session: Optional[requests.Session] = None,
        base_url: str = KALSHI_API_BASE,
        timeout: float = HTTP_TIMEOUT_S,
    ):
        super().__init__(
            base_url,
            breaker or CircuitBreaker("kalshi"),
            limiter or AdaptiveRateLimiter("Kalshi", KALSHI_RATE_LIMIT),
            session=session,
            timeout=timeout,
        )
        self._auth = auth

    @property
    def auth(self) -> KalshiAuth:
        if self._auth is None:
            self._auth = KalshiAuth.from_env()
        return self._auth

    def _auth_headers(self, method: str, path: str, body=None) -> Dict[str, str]:
        return self.auth.sign(method, path)

    def place(self, request: OrderRequest) -> OrderResult:
        if request.limit_price is None:
            raise self._reject("Kalshi limit orders need a price")
        price_cents = int(round(request.limit_price * 100))
        if not 1 <= price_cents <= 99:
            raise self._reject(f"limit price must be 1-99 cents, got {price_cents}")
        count = contracts_for(request.amount, price_cents)
        if count < 1:
            raise self._reject(
                f"amount {request.amount} at {price_cents}c buys zero contracts"
            )

        side = "yes" if Side(request.side) == Side.YES else "no"
        body = {
            "ticker": request.market_id,
            "action": "buy",
            "side": side,
            "type": "limit",
            "count": count,
            f"{side}_price": price_cents,
        }
        if request.client_order_id:
            body["client_order_id"] = request.client_order_id

        resp = self._request("POST", ORDERS_PATH, "order placement", body=body)
        order = resp.get("order") or {}
        order_id = order.get("order_id")
        logger.info(
            "[Kalshi] Placed order %s: %s x%d @ %dc on %s",
            order_id, side, count, price_cents, request.market_id,
        )
        status = normalize_order(order_id, order)
        return OrderResult(
            success=True,
            order_id=order_id,
            shares=float(count),
            execution_price=status.execution_price or price_cents / 100,
            status=status.state,
        )

    def status(self, order_id: str) -> OrderStatus:
        resp = self._request("GET", f"{ORDERS_PATH}/{order_id}", "order status")
        return normalize_order(order_id, resp.get("order") or {})

    def cancel(self, order_id: str) -> bool:
        self._request("DELETE", f"{ORDERS_PATH}/{order_id}", "order cancel")
        logger.info("[Kalshi] Cancelled order %s", order_id)
        return True
