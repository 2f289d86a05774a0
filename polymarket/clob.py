"""Polymarket CLOB order adapter.

Orders are EIP-712 signed with py-clob-client and submitted over REST
with L2 (HMAC) headers. Orderbook reads are public; everything under
/order and /data needs authentication.
"""

import logging
import math
from typing import Dict, Optional, Tuple

import requests
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import OrderArgs, OrderType, RequestArgs
from py_clob_client.headers.headers import create_level_2_headers
from py_clob_client.order_builder.constants import BUY
from py_clob_client.utilities import order_to_json

from circuit_breaker import CircuitBreaker
from config import (
    HTTP_TIMEOUT_S, POLY_CHAIN_ID, POLY_CLOB_BASE, POLY_FUNDER_ADDRESS,
    POLY_PRIVATE_KEY, POLY_RATE_LIMIT, POLY_SIGNATURE_TYPE,
)
from errors import OrderRejectedError, VenueError
from models import OrderRequest, OrderResult, OrderState, OrderStatus, Side, Venue
from rate_limiter import AdaptiveRateLimiter
from venue_adapter import VenueAdapter

logger = logging.getLogger(__name__)

ORDER_PATH = "/order"
GET_ORDER_PATH = "/data/order/"
MARKET_PATH = "/markets/"

# Sizes are sent in micro-units and must land on a 0.01 share lot.
MICRO = 1_000_000
LOT_MICRO = 10_000

_clob_client = None


def get_clob_client():
    """Initialize and return the Polymarket CLOB client used for signing."""
    global _clob_client
    if _clob_client is not None:
        return _clob_client
    if not POLY_PRIVATE_KEY:
        raise RuntimeError("POLY_PRIVATE_KEY not set")

    kwargs = {
        "host": POLY_CLOB_BASE,
        "key": POLY_PRIVATE_KEY,
        "chain_id": POLY_CHAIN_ID,
        "signature_type": POLY_SIGNATURE_TYPE,
    }
    if POLY_SIGNATURE_TYPE in (1, 2) and POLY_FUNDER_ADDRESS:
        kwargs["funder"] = POLY_FUNDER_ADDRESS

    client = ClobClient(**kwargs)
    client.set_api_creds(client.create_or_derive_api_creds())
    _clob_client = client
    return _clob_client


class ClobSigner:
    """Builds signed order payloads and L2 auth headers."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_clob_client()
        return self._client

    @property
    def owner(self) -> str:
        return self.client.creds.api_key

    def sign_order(self, token_id: str, price: float, size: float) -> dict:
        signed = self.client.create_order(
            OrderArgs(token_id=token_id, price=price, size=size, side=BUY)
        )
        return order_to_json(signed, self.owner, OrderType.GTC)

    def headers(self, method: str, path: str, body: Optional[str] = None) -> Dict[str, str]:
        """L2 headers. ``body`` is the serialized JSON exactly as it goes out."""
        return create_level_2_headers(
            self.client.signer,
            self.client.creds,
            RequestArgs(method=method, request_path=path, body=body, serialized_body=body),
        )


def to_native_units(amount: float, price: float) -> Tuple[int, int]:
    """Translate a CRwN amount at a 0..1 price into (price_cents, size_micro).

    Size is rounded down to the lot; a result of zero is returned as-is
    and left to the caller to reject.
    """
    price_cents = int(round(price * 100))
    if price_cents <= 0:
        return price_cents, 0
    shares_micro = int(math.floor(amount * 100 / price_cents * MICRO))
    return price_cents, shares_micro - shares_micro % LOT_MICRO


def normalize_order(order_id: str, data: dict) -> OrderStatus:
    """Map a CLOB order payload onto the venue-agnostic OrderStatus."""
    raw = (data.get("status") or "").upper()
    original = float(data.get("original_size") or data.get("originalSize") or 0)
    matched = float(data.get("size_matched") or data.get("sizeMatched") or 0)
    price = data.get("price") or data.get("avgPrice")

    if raw in ("MATCHED", "FILLED") or (original > 0 and matched >= original):
        state = OrderState.FILLED
    elif raw in ("CANCELED", "CANCELLED"):
        state = OrderState.CANCELLED
    elif raw in ("UNMATCHED", "FAILED", "REJECTED"):
        state = OrderState.FAILED
    elif matched > 0:
        state = OrderState.PARTIALLY_FILLED
    else:
        state = OrderState.PENDING

    return OrderStatus(
        order_id=order_id,
        state=state,
        shares=original,
        filled_shares=matched,
        execution_price=float(price) if price else None,
    )


class PolymarketAdapter(VenueAdapter):
    venue = Venue.POLYMARKET

    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        limiter: Optional[AdaptiveRateLimiter] = None,
        signer: Optional[ClobSigner] = None,
        session: Optional[requests.Session] = None,
        base_url: str = POLY_CLOB_BASE,
        timeout: float = HTTP_TIMEOUT_S,
    ):
        super().__init__(
            base_url,
            breaker or CircuitBreaker("polymarket"),
            limiter or AdaptiveRateLimiter("Polymarket", POLY_RATE_LIMIT),
            session=session,
            timeout=timeout,
        )
        self.signer = signer or ClobSigner()
        self._token_cache: Dict[Tuple[str, str], str] = {}

    def _auth_headers(self, method: str, path: str, body: Optional[str] = None) -> Dict[str, str]:
        if path.startswith(MARKET_PATH):
            return {}
        return self.signer.headers(method, path, body)

    def resolve_token(self, condition_id: str, side: Side) -> str:
        """Find the outcome token id for YES/NO of a condition."""
        key = (condition_id, Side(side).value)
        if key in self._token_cache:
            return self._token_cache[key]

        market = self._request("GET", f"{MARKET_PATH}{condition_id}", "market lookup")
        wanted = "yes" if Side(side) == Side.YES else "no"
        for token in market.get("tokens") or []:
            outcome = str(token.get("outcome", "")).upper()
            if token.get("token_id"):
                self._token_cache[(condition_id, outcome)] = str(token["token_id"])
        token_id = self._token_cache.get(key)
        if not token_id:
            raise VenueError(self.venue.value, f"no {wanted.upper()} token for market {condition_id}")
        return token_id

    def place(self, request: OrderRequest) -> OrderResult:
        if request.limit_price is None:
            raise self._reject("Polymarket orders need a limit price")
        price_cents, size_micro = to_native_units(request.amount, request.limit_price)
        if not 1 <= price_cents <= 99:
            raise self._reject(f"price {request.limit_price} outside 1-99 cents")
        if size_micro <= 0:
            raise self._reject(
                f"amount {request.amount} at {price_cents}c rounds to zero shares"
            )

        token_id = self.resolve_token(request.market_id, request.side)
        price = price_cents / 100
        size = size_micro / MICRO
        body = self.signer.sign_order(token_id, price, size)
        resp = self._request("POST", ORDER_PATH, "order placement", body=body)

        if not resp.get("success", False):
            error = resp.get("errorMsg") or resp.get("error") or str(resp)
            raise OrderRejectedError(self.venue.value, error)

        order_id = resp.get("orderID") or resp.get("id")
        # The CLOB has no client order id field; keep the mapping in the log.
        logger.info(
            "[Polymarket] Placed order %s (client id %s): %s %.2f shares @ %dc",
            order_id, request.client_order_id, Side(request.side).value, size, price_cents,
        )
        status = str(resp.get("status", "")).lower()
        return OrderResult(
            success=True,
            order_id=order_id,
            shares=size,
            execution_price=price,
            status=OrderState.FILLED if status == "matched" else OrderState.PENDING,
        )

    def status(self, order_id: str) -> OrderStatus:
        data = self._request("GET", f"{GET_ORDER_PATH}{order_id}", "order status")
        return normalize_order(order_id, data or {})

    def cancel(self, order_id: str) -> bool:
        """Cancel an order. Returns True if the venue confirmed it."""
        resp = self._request(
            "DELETE", ORDER_PATH, "order cancel", body={"orderID": order_id}
        )
        not_canceled = resp.get("not_canceled") or {}
        if order_id in not_canceled:
            logger.warning(
                "[Polymarket] Cancel refused for %s: %s", order_id, not_canceled[order_id]
            )
            return False
        logger.info("[Polymarket] Cancelled order %s", order_id)
        return True
