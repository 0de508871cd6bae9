"""
HMAC-SHA512 request signing for authenticated Kraken REST calls.

API-Sign = base64(HMAC-SHA512(base64decode(secret), path + SHA256(nonce + body)))
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

from krakengrid.errors import ConfigError


class Signer:
    def __init__(self, api_key: Optional[str], api_secret: Optional[str]) -> None:
        self.api_key = api_key
        self.api_secret = api_secret

    def sign(self, url_path: str, post_data: str, nonce: int) -> str:
        if not self.api_secret:
            raise ConfigError("API secret is not configured")
        try:
            secret_key = base64.b64decode(self.api_secret)
        except (binascii.Error, ValueError) as exc:
            raise ConfigError(f"API secret is not valid base64: {exc}") from exc

        sha256_hash = hashlib.sha256((str(nonce) + post_data).encode("utf-8")).digest()
        message = url_path.encode("utf-8") + sha256_hash
        signature = hmac.new(secret_key, message, hashlib.sha512).digest()
        return base64.b64encode(signature).decode("ascii")

    def auth_headers(self, url_path: str, post_data: str, nonce: int) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigError("API key is not configured")
        return {
            "API-Key": self.api_key,
            "API-Sign": self.sign(url_path, post_data, nonce),
            "Content-Type": "application/x-www-form-urlencoded",
        }


def format_post_data(params: Mapping[str, object]) -> str:
    """URL-encode params in insertion order, skipping None values."""
    pairs = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append((key, str(value)))
    return urlencode(pairs)
