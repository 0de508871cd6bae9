"""
Error taxonomy for connectivity and order construction.

Connection-level failures (NetworkError) are recovered locally by the reconnect
policy. Request-level failures (RequestTimeoutError, OrderRejectedError) surface
only to the caller awaiting that request.
"""

from __future__ import annotations

from typing import List, Optional


class KrakenGridError(Exception):
    """Base class for all krakengrid errors."""


class ConfigError(KrakenGridError):
    """Missing or invalid credentials/configuration."""


class AuthError(KrakenGridError):
    """WebSocket token fetch failed."""


class NetworkError(KrakenGridError):
    """Transport-level open/close/send failure."""


class ProtocolError(KrakenGridError):
    """Malformed inbound payload."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class RequestTimeoutError(KrakenGridError):
    """Correlated request not answered before its deadline."""

    def __init__(self, message: str, req_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.req_id = req_id


class OrderRejectedError(KrakenGridError):
    """Exchange answered a correlated request with an error."""

    def __init__(self, message: str, req_id: Optional[int] = None, method: Optional[str] = None) -> None:
        super().__init__(message)
        self.req_id = req_id
        self.method = method


class ValidationError(KrakenGridError):
    """Order failed validation; only raised by ensure_valid()."""

    def __init__(self, reasons: List[str]) -> None:
        super().__init__("; ".join(reasons))
        self.reasons = list(reasons)
