"""
Infrastructure package.

This package contains request signing, nonce generation, the WebSocket
token client, the transport and logging configuration.
"""

from krakengrid.infra.logging_cfg import build_logger, log_event
from krakengrid.infra.nonce import NonceGenerator
from krakengrid.infra.signer import Signer, format_post_data
from krakengrid.infra.token_provider import TokenProvider
from krakengrid.infra.transport import Transport, TransportHandlers, WebsocketTransport

__all__ = [
    "build_logger",
    "log_event",
    "NonceGenerator",
    "Signer",
    "format_post_data",
    "TokenProvider",
    "Transport",
    "TransportHandlers",
    "WebsocketTransport",
]
