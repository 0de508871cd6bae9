"""
Injectable WebSocket transport.

Channel drives a Transport through open/send/close and receives callbacks
for inbound frames and closure. All callbacks for one transport are invoked
from its single reader task, so they never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from krakengrid.errors import NetworkError
from krakengrid.infra.logging_cfg import log_event

log = logging.getLogger("krakengrid")


@dataclass
class TransportHandlers:
    on_message: Callable[[str], None]
    on_close: Callable[[Optional[int], str], None]
    on_error: Optional[Callable[[Exception], None]] = None


class Transport(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def open(self, url: str, handlers: TransportHandlers) -> None:
        """Open the connection; raise NetworkError if it cannot be established."""
        ...

    async def send(self, data: str) -> None:
        """Send one text frame; raise NetworkError if the transport is not open."""
        ...

    async def close(self) -> None: ...


class WebsocketTransport:
    """Transport backed by the websockets asyncio client."""

    def __init__(self, open_timeout: float = 10.0, name: str = "ws") -> None:
        self._open_timeout = open_timeout
        self._name = name
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Optional[TransportHandlers] = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def open(self, url: str, handlers: TransportHandlers) -> None:
        if self.is_open:
            return
        self._handlers = handlers
        try:
            # application-level ping is sent by Channel
            self._ws = await websockets.connect(url, ping_interval=None, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            self._ws = None
            raise NetworkError(f"{self._name} connection error: {exc}") from exc
        self._reader = asyncio.create_task(self._read_loop(self._ws), name=f"{self._name}-reader")

    async def send(self, data: str) -> None:
        if self._ws is None:
            raise NetworkError(f"{self._name} transport is not open")
        try:
            await self._ws.send(data)
        except (ConnectionClosed, OSError) as exc:
            raise NetworkError(f"{self._name} send failed: {exc}") from exc

    async def close(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close()
        except (ConnectionClosed, OSError) as exc:
            log_event(log, "transport_close_error", level=logging.DEBUG, channel=self._name, err=str(exc))
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            await asyncio.gather(reader, return_exceptions=True)

    async def _read_loop(self, ws) -> None:
        handlers = self._handlers
        code: Optional[int] = None
        reason = ""
        try:
            async for raw in ws:
                if isinstance(raw, (bytes, bytearray)):
                    raw = raw.decode("utf-8", errors="replace")
                handlers.on_message(raw)
        except ConnectionClosed as exc:
            reason = str(exc)
        except Exception as exc:
            reason = str(exc)
            if handlers.on_error is not None:
                handlers.on_error(exc)
            # nothing reads this socket any more
            try:
                await ws.close(code=1011, reason="reader failed")
            except (ConnectionClosed, OSError) as close_exc:
                log_event(log, "transport_close_error", level=logging.DEBUG, channel=self._name, err=str(close_exc))
        finally:
            code = getattr(ws, "close_code", None)
            self._ws = None
            handlers.on_close(code, reason)
