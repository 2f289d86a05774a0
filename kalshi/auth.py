"""Kalshi request signing (RSA-PSS, Trade API v2).

Every request carries three headers:
- KALSHI-ACCESS-KEY: API key id
- KALSHI-ACCESS-TIMESTAMP: unix epoch milliseconds
- KALSHI-ACCESS-SIGNATURE: base64 RSA-PSS/SHA-256 over timestamp + METHOD + path

The signed path is the full API path without query parameters.
"""

import base64
import logging
import time
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from config import KALSHI_API_BASE, KALSHI_API_KEY_ID, KALSHI_PRIVATE_KEY, KALSHI_PRIVATE_KEY_PATH

logger = logging.getLogger(__name__)


class KalshiAuthError(Exception):
    pass


def load_private_key(pem: str):
    # Env vars often carry the PEM with literal "\n" sequences.
    pem = pem.replace("\\n", "\n").strip()
    return serialization.load_pem_private_key(pem.encode(), password=None)


class KalshiAuth:
    def __init__(
        self,
        api_key_id: str,
        private_key,
        api_base: str = KALSHI_API_BASE,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key_id = api_key_id
        self._private_key = private_key
        self._path_prefix = urlparse(api_base).path.rstrip("/")
        self._clock = clock

    @classmethod
    def from_env(cls) -> "KalshiAuth":
        if not KALSHI_API_KEY_ID:
            raise KalshiAuthError("KALSHI_API_KEY_ID not set")
        pem: Optional[str] = KALSHI_PRIVATE_KEY
        if not pem and KALSHI_PRIVATE_KEY_PATH:
            with open(KALSHI_PRIVATE_KEY_PATH, "r", encoding="utf-8") as f:
                pem = f.read()
        if not pem:
            raise KalshiAuthError("KALSHI_PRIVATE_KEY or KALSHI_PRIVATE_KEY_PATH not set")
        try:
            key = load_private_key(pem)
        except (ValueError, TypeError) as e:
            raise KalshiAuthError(f"failed to parse Kalshi private key: {e}") from e
        logger.info("Kalshi RSA key loaded for key id %s...", KALSHI_API_KEY_ID[:8])
        return cls(KALSHI_API_KEY_ID, key)

    def sign(self, method: str, path: str) -> Dict[str, str]:
        """Return auth headers for ``method`` on ``path`` (relative to the API base)."""
        timestamp = str(int(self._clock() * 1000))
        full_path = self._path_prefix + path.split("?", 1)[0]
        message = timestamp + method.upper() + full_path
        signature = self._private_key.sign(
            message.encode(),
            padding.PSS(
                mgf=padding.MGF1(hashes.SHA256()),
                salt_length=padding.PSS.DIGEST_LENGTH,
            ),
            hashes.SHA256(),
        )
        return {
            "KALSHI-ACCESS-KEY": self.api_key_id,
            "KALSHI-ACCESS-TIMESTAMP": timestamp,
            "KALSHI-ACCESS-SIGNATURE": base64.b64encode(signature).decode(),
        }
