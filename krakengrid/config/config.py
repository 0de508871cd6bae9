"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# local.env holds developer credentials; .env is the conventional fallback.
load_dotenv("local.env")
load_dotenv()

KRAKEN_REST_URL = "https://api.kraken.com"
KRAKEN_WS_PUBLIC_URL = "wss://ws.kraken.com/v2"
KRAKEN_WS_PRIVATE_URL = "wss://ws-auth.kraken.com/v2"
DEFAULT_SYMBOL = "BTC/USD"


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    api_key: str | None
    api_secret: str | None
    rest_url: str = KRAKEN_REST_URL
    ws_public_url: str = KRAKEN_WS_PUBLIC_URL
    ws_private_url: str = KRAKEN_WS_PRIVATE_URL
    default_symbol: str = DEFAULT_SYMBOL
    http_timeout: float = 10.0
    request_timeout: float = 30.0
    heartbeat_sec: float = 30.0
    reconnect_base_sec: float = 1.0
    reconnect_max_attempts: int = 5
    resubscribe_on_reconnect: bool = True
    metrics_port: int = 0
    log_level: str = "INFO"
    log_file: str | None = None

    def dump(self) -> dict:
        """Return a dict of settings for logging, with secrets masked."""
        data = self.__dict__.copy()
        for key in ("api_key", "api_secret"):
            if data.get(key):
                data[key] = "***"
        return data

    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        cfg = cls(
            api_key=os.getenv("KRAKEN_API_KEY") or None,
            api_secret=os.getenv("KRAKEN_API_PRIVATE_KEY") or None,
            rest_url=os.getenv("KRAKEN_REST_URL", KRAKEN_REST_URL),
            ws_public_url=os.getenv("KRAKEN_WS_PUBLIC_URL", KRAKEN_WS_PUBLIC_URL),
            ws_private_url=os.getenv("KRAKEN_WS_PRIVATE_URL", KRAKEN_WS_PRIVATE_URL),
            default_symbol=os.getenv("KRAKEN_DEFAULT_SYMBOL", DEFAULT_SYMBOL),
            http_timeout=_float_env("KRAKEN_HTTP_TIMEOUT", 10.0),
            request_timeout=_float_env("KRAKEN_REQUEST_TIMEOUT", 30.0),
            heartbeat_sec=_float_env("KRAKEN_HEARTBEAT_SEC", 30.0),
            reconnect_base_sec=_float_env("KRAKEN_RECONNECT_BASE_SEC", 1.0),
            reconnect_max_attempts=_int_env("KRAKEN_RECONNECT_MAX_ATTEMPTS", 5),
            resubscribe_on_reconnect=env_bool("KRAKEN_RESUBSCRIBE_ON_RECONNECT", True),
            metrics_port=_int_env("KRAKEN_METRICS_PORT", 0),
            log_level=os.getenv("KRAKEN_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("KRAKEN_LOG_FILE") or None,
        )
        _sanity_check(cfg)
        return cfg


def _sanity_check(cfg: Settings) -> None:
    """
    Log the effective settings once at startup so overrides are obvious.
    """
    import json
    import logging

    logger = logging.getLogger("krakengrid")
    payload = {
        "event": "config_loaded",
        "rest_url": cfg.rest_url,
        "ws_public_url": cfg.ws_public_url,
        "ws_private_url": cfg.ws_private_url,
        "default_symbol": cfg.default_symbol,
        "has_credentials": cfg.has_credentials(),
    }
    logger.info(json.dumps(payload))
