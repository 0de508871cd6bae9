"""
Channel: one WebSocket endpoint with its lifecycle, heartbeat and reconnects.

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED (-> AUTHENTICATING -> AUTHENTICATED)
    any open state -> DISCONNECTED on close, ERROR on failure
    ERROR -> CONNECTING (retry) or DISCONNECTED

The private channel fetches a session token while CONNECTING and reaches
AUTHENTICATED as soon as the transport opens; the token is presented on every
request rather than in a handshake. The token lives exactly as long as one
connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING, Union

from krakengrid.core.event_bus import EventBus, EventType
from krakengrid.core.models import ChannelKind, ChannelState
from krakengrid.errors import AuthError, ConfigError, KrakenGridError, NetworkError, ProtocolError
from krakengrid.execution.reconnect import ReconnectPolicy
from krakengrid.infra.logging_cfg import log_event
from krakengrid.infra.transport import Transport, TransportHandlers

if TYPE_CHECKING:
    from krakengrid.infra.token_provider import TokenProvider
    from krakengrid.monitoring.metrics import SessionMetrics

log = logging.getLogger("krakengrid")

DEFAULT_HEARTBEAT_SEC = 30.0
PING = json.dumps({"method": "ping"})


VALID_TRANSITIONS: Dict[ChannelState, List[ChannelState]] = {
    ChannelState.DISCONNECTED: [
        ChannelState.CONNECTING,
    ],
    ChannelState.CONNECTING: [
        ChannelState.CONNECTED,
        ChannelState.ERROR,         # token fetch or transport open failed
        ChannelState.DISCONNECTED,  # disconnect() while connecting
    ],
    ChannelState.CONNECTED: [
        ChannelState.AUTHENTICATING,
        ChannelState.DISCONNECTED,
        ChannelState.ERROR,
    ],
    ChannelState.AUTHENTICATING: [
        ChannelState.AUTHENTICATED,
        ChannelState.DISCONNECTED,
        ChannelState.ERROR,
    ],
    ChannelState.AUTHENTICATED: [
        ChannelState.DISCONNECTED,
        ChannelState.ERROR,
    ],
    ChannelState.ERROR: [
        ChannelState.CONNECTING,
        ChannelState.DISCONNECTED,
    ],
}

MessageHandler = Callable[[Dict[str, Any]], None]
OpenHandler = Callable[[bool], Union[Awaitable[None], None]]


def is_liveness_message(msg: Dict[str, Any]) -> bool:
    return msg.get("method") == "pong" or msg.get("channel") == "heartbeat"


class Channel:
    """
    A single public or private WebSocket connection.

    on_message receives every decoded non-liveness message. on_open is called
    (and awaited if it is a coroutine function) after each successful open with
    reconnected=True when the open came from the automatic reconnect loop.
    """

    def __init__(
        self,
        kind: ChannelKind,
        url: str,
        transport: Transport,
        bus: Optional[EventBus] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SEC,
        token_provider: Optional["TokenProvider"] = None,
        has_credentials: Callable[[], bool] = lambda: False,
        on_message: Optional[MessageHandler] = None,
        on_open: Optional[OpenHandler] = None,
        metrics: Optional["SessionMetrics"] = None,
    ) -> None:
        self.kind = kind
        self.name = kind.value
        self.url = url
        self.transport = transport
        self.bus = bus
        self.heartbeat_interval = heartbeat_interval
        self.token_provider = token_provider
        self._has_credentials = has_credentials
        self._on_message_cb = on_message
        self._on_open_cb = on_open
        self.metrics = metrics

        self.policy = reconnect_policy or ReconnectPolicy(name=self.name)
        if self.policy.on_exhausted is None:
            self.policy.on_exhausted = self._on_reconnect_exhausted

        self._state = ChannelState.DISCONNECTED
        self._token: Optional[str] = None
        self._closing = False
        self._connect_lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self.last_message_at: Optional[float] = None
        if self.metrics:
            self.metrics.set_channel_state(self.name, self._state)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def is_private(self) -> bool:
        return self.kind is ChannelKind.PRIVATE

    @property
    def ready_state(self) -> ChannelState:
        """State a successful open settles in for this kind of channel."""
        return ChannelState.AUTHENTICATED if self.is_private else ChannelState.CONNECTED

    def _transition(self, to_state: ChannelState, reason: Optional[str] = None) -> bool:
        from_state = self._state
        if to_state == from_state:
            return False
        if to_state not in VALID_TRANSITIONS.get(from_state, []):
            log_event(
                log,
                "channel_invalid_transition",
                level=logging.WARNING,
                channel=self.name,
                from_state=from_state.value,
                to_state=to_state.value,
            )
            return False
        self._state = to_state
        log_event(
            log,
            "channel_state",
            level=logging.DEBUG,
            channel=self.name,
            from_state=from_state.value,
            to_state=to_state.value,
            reason=reason,
        )
        if self.metrics:
            self.metrics.set_channel_state(self.name, to_state)
        if self.bus:
            self.bus.emit(EventType.CHANNEL_STATUS, source=self.name, channel=self.name, state=to_state)
        return True

    def _publish_error(self, err: Exception) -> None:
        if self.bus:
            self.bus.emit(EventType.ERROR, source=self.name, channel=self.name, error=err)

    # -------------------------------------------------------------------------
    # Connect / disconnect
    # -------------------------------------------------------------------------

    async def connect(self, reconnected: bool = False) -> None:
        """
        Open the channel.

        Raises ConfigError (private channel without credentials), AuthError
        (token fetch failed) or NetworkError (transport failed to open).
        A channel that is already open is left as it is.
        """
        async with self._connect_lock:
            if self._state.is_open:
                return
            if self.is_private and not self._has_credentials():
                raise ConfigError("API credentials are required for the private channel")

            self._closing = False
            self._cancel_reconnect()
            self._transition(ChannelState.CONNECTING)

            if self.is_private:
                try:
                    token = await self._fetch_token()
                except AuthError as exc:
                    self._transition(ChannelState.ERROR, reason=str(exc))
                    self._publish_error(exc)
                    raise
                if self._closing:
                    self._transition(ChannelState.DISCONNECTED, reason="disconnect requested")
                    return
                self._token = token

            handlers = TransportHandlers(
                on_message=self._on_message,
                on_close=self._on_close,
                on_error=self._on_transport_error,
            )
            try:
                await self.transport.open(self.url, handlers)
            except NetworkError as exc:
                self._token = None
                self._transition(ChannelState.ERROR, reason=str(exc))
                self._publish_error(exc)
                raise
            if self._closing:
                await self.transport.close()
                self._token = None
                self._transition(ChannelState.DISCONNECTED, reason="disconnect requested")
                return

            self._transition(ChannelState.CONNECTED)
            if self.is_private:
                self._transition(ChannelState.AUTHENTICATING)
                self._transition(ChannelState.AUTHENTICATED)
            self.policy.reset()
            self.last_message_at = time.monotonic()
            self._start_heartbeat()
            log_event(log, "channel_open", channel=self.name, url=self.url, reconnected=reconnected)

        if self._on_open_cb is not None:
            result = self._on_open_cb(reconnected)
            if asyncio.iscoroutine(result):
                await result

    async def _fetch_token(self) -> str:
        if self.token_provider is None:
            raise AuthError("No token provider configured for the private channel")
        return await self.token_provider.fetch_token()

    async def disconnect(self) -> None:
        """Close the channel without scheduling a reconnect. Safe to call repeatedly."""
        self._closing = True
        self._cancel_reconnect()
        self._cancel_heartbeat()
        self.policy.reset()
        self._token = None
        if self.transport.is_open:
            await self.transport.close()
        self._transition(ChannelState.DISCONNECTED, reason="disconnect requested")

    async def send(self, message: Union[Dict[str, Any], str]) -> None:
        if not self._state.is_open:
            raise NetworkError(f"{self.name} channel is not connected")
        data = message if isinstance(message, str) else json.dumps(message)
        await self.transport.send(data)

    # -------------------------------------------------------------------------
    # Transport callbacks
    # -------------------------------------------------------------------------

    def _on_message(self, raw: str) -> None:
        self.last_message_at = time.monotonic()
        try:
            msg = json.loads(raw)
        except ValueError as exc:
            self._on_protocol_error(ProtocolError(f"malformed JSON: {exc}", raw=raw))
            return
        if not isinstance(msg, dict):
            self._on_protocol_error(ProtocolError("expected a JSON object", raw=raw))
            return
        if is_liveness_message(msg):
            return
        if self._on_message_cb is None:
            return
        try:
            self._on_message_cb(msg)
        except Exception as exc:
            log_event(
                log,
                "message_handler_error",
                level=logging.ERROR,
                channel=self.name,
                err=str(exc),
                error_type=type(exc).__name__,
            )
            self._publish_error(exc)

    def _on_protocol_error(self, err: ProtocolError) -> None:
        log_event(log, "protocol_error", level=logging.WARNING, channel=self.name, err=str(err), raw=(err.raw or "")[:200])
        if self.metrics:
            self.metrics.protocol_errors.labels(channel=self.name).inc()
        self._publish_error(err)

    def _on_transport_error(self, exc: Exception) -> None:
        log_event(log, "transport_error", level=logging.ERROR, channel=self.name, err=str(exc))
        self._publish_error(NetworkError(str(exc)))

    def _on_close(self, code: Optional[int], reason: str) -> None:
        self._token = None
        self._cancel_heartbeat()
        requested = self._closing
        self._transition(ChannelState.DISCONNECTED, reason=reason or None)
        log_event(
            log,
            "channel_closed",
            level=logging.INFO if requested else logging.WARNING,
            channel=self.name,
            code=code,
            reason=reason,
            requested=requested,
        )
        if not requested:
            self._schedule_reconnect()

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._cancel_heartbeat()
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name=f"{self.name}-heartbeat")

    def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not (self._state.is_open and self.transport.is_open):
                return
            try:
                await self.transport.send(PING)
            except NetworkError as exc:
                log_event(log, "heartbeat_send_failed", level=logging.WARNING, channel=self.name, err=str(exc))
                continue
            if self.metrics:
                self.metrics.heartbeats_sent.labels(channel=self.name).inc()

    # -------------------------------------------------------------------------
    # Reconnect
    # -------------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        delay = self.policy.next_delay()
        if delay is None:
            return
        if self.metrics:
            self.metrics.reconnect_attempts.labels(channel=self.name).inc()
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name=f"{self.name}-reconnect")

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closing:
            return
        try:
            await self.connect(reconnected=True)
        except KrakenGridError as exc:
            log_event(
                log,
                "reconnect_failed",
                level=logging.WARNING,
                channel=self.name,
                attempt=self.policy.attempts,
                err=str(exc),
                error_type=type(exc).__name__,
            )
            if not self._closing:
                self._schedule_reconnect()

    def _on_reconnect_exhausted(self, attempts: int) -> None:
        if self.metrics:
            self.metrics.reconnect_exhausted.labels(channel=self.name).inc()
        if self.bus:
            self.bus.emit(EventType.RECONNECT_EXHAUSTED, source=self.name, channel=self.name, attempts=attempts)
