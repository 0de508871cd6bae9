"""
Execution layer: connection lifecycle and order request correlation.

- Channel: one WebSocket endpoint with state machine, heartbeat and reconnects
- ReconnectPolicy: per-channel exponential backoff
- RequestCorrelator: req_id allocation, pending table and timeouts
- SessionManager: public + private channels behind a single surface
"""

from krakengrid.execution.channel import Channel, VALID_TRANSITIONS
from krakengrid.execution.reconnect import ReconnectConfig, ReconnectPolicy
from krakengrid.execution.request_correlator import RequestCorrelator, next_req_id
from krakengrid.execution.session_manager import SessionManager

__all__ = [
    "Channel",
    "VALID_TRANSITIONS",
    "ReconnectConfig",
    "ReconnectPolicy",
    "RequestCorrelator",
    "next_req_id",
    "SessionManager",
]
