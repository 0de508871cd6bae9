"""
SessionManager: the single connectivity surface for the rest of the app.

Owns the public channel (market data), the private channel (orders), the
request correlator bound to the private channel and the set of active
subscriptions. Consumers receive status, ticker and order-response events
through the EventBus passed in at construction.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from krakengrid.config.config import Settings
from krakengrid.core.event_bus import EventBus, EventType
from krakengrid.core.models import ChannelKind, ChannelState, OrderParams, OrderResponse
from krakengrid.errors import AuthError, NetworkError
from krakengrid.execution.channel import Channel
from krakengrid.execution.reconnect import ReconnectConfig, ReconnectPolicy
from krakengrid.execution.request_correlator import RequestCorrelator
from krakengrid.infra.logging_cfg import log_event
from krakengrid.infra.token_provider import TokenProvider
from krakengrid.infra.transport import Transport, WebsocketTransport
from krakengrid.monitoring.metrics import SessionMetrics
from krakengrid.strategy.order_builder import ensure_valid

log = logging.getLogger("krakengrid")

TICKER_CHANNEL = "ticker"


class SessionManager:
    """
    Usage:
        bus = EventBus()
        session = SessionManager(settings, bus, token_provider=provider)
        await session.start()
        await session.connect_public()
        await session.subscribe_ticker("BTC/USD")
        response = await session.submit_order(params)
        await session.close()
    """

    def __init__(
        self,
        settings: Settings,
        bus: Optional[EventBus] = None,
        public_transport: Optional[Transport] = None,
        private_transport: Optional[Transport] = None,
        token_provider: Optional[TokenProvider] = None,
        metrics: Optional[SessionMetrics] = None,
    ) -> None:
        self.settings = settings
        self.bus = bus or EventBus()
        self.metrics = metrics
        self.token_provider = token_provider
        self._subscriptions: Set[Tuple[str, str]] = set()
        self._bus_task: Optional[asyncio.Task] = None

        reconnect_cfg = ReconnectConfig(
            base_delay_sec=settings.reconnect_base_sec,
            max_attempts=settings.reconnect_max_attempts,
        )
        self.public = Channel(
            ChannelKind.PUBLIC,
            settings.ws_public_url,
            public_transport or WebsocketTransport(name="public"),
            bus=self.bus,
            reconnect_policy=ReconnectPolicy(reconnect_cfg, name="public"),
            heartbeat_interval=settings.heartbeat_sec,
            on_message=self._handle_public_message,
            on_open=self._on_public_open,
            metrics=metrics,
        )
        self.private = Channel(
            ChannelKind.PRIVATE,
            settings.ws_private_url,
            private_transport or WebsocketTransport(name="private"),
            bus=self.bus,
            reconnect_policy=ReconnectPolicy(reconnect_cfg, name="private"),
            heartbeat_interval=settings.heartbeat_sec,
            token_provider=token_provider,
            has_credentials=settings.has_credentials,
            on_message=self._handle_private_message,
            metrics=metrics,
        )
        self.correlator = RequestCorrelator(self.private.send, timeout=settings.request_timeout, metrics=metrics)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start dispatching bus events in the background."""
        if self._bus_task is None or self._bus_task.done():
            self._bus_task = asyncio.create_task(self.bus.start(), name="event-bus")

    async def connect_public(self) -> None:
        await self.public.connect()

    async def connect_private(self) -> None:
        await self.private.connect()

    def _channel(self, kind: ChannelKind) -> Channel:
        return self.public if kind is ChannelKind.PUBLIC else self.private

    async def reconnect(self, kind: ChannelKind) -> None:
        """Explicit recovery, e.g. after automatic reconnects were exhausted."""
        channel = self._channel(kind)
        channel.policy.reset()
        log_event(log, "reconnect_requested", channel=channel.name)
        await channel.connect(reconnected=True)

    def status(self) -> Dict[str, ChannelState]:
        return {"public": self.public.state, "private": self.private.state}

    async def disconnect(self) -> None:
        """
        Fail every pending request, close both channels and forget
        subscriptions. Calling it again is harmless.
        """
        failed = self.correlator.fail_all("WebSocket disconnected")
        await self.public.disconnect()
        await self.private.disconnect()
        self._subscriptions.clear()
        log_event(log, "session_disconnected", failed_requests=failed)

    async def close(self) -> None:
        await self.disconnect()
        if self.token_provider is not None:
            await self.token_provider.close()
        await self.bus.drain()
        self.bus.stop()
        if self._bus_task is not None:
            self._bus_task.cancel()
            await asyncio.gather(self._bus_task, return_exceptions=True)
            self._bus_task = None

    # -------------------------------------------------------------------------
    # Market data subscriptions
    # -------------------------------------------------------------------------

    @property
    def subscriptions(self) -> Set[Tuple[str, str]]:
        return set(self._subscriptions)

    async def subscribe_ticker(self, symbol: str) -> bool:
        """Subscribe once per symbol; returns False when already subscribed."""
        key = (TICKER_CHANNEL, symbol)
        if key in self._subscriptions:
            return False
        if not self.public.state.is_open:
            await self.public.connect()
        await self.public.send(_subscription_message("subscribe", [symbol]))
        self._subscriptions.add(key)
        log_event(log, "subscribed", channel=TICKER_CHANNEL, symbol=symbol)
        return True

    async def unsubscribe_ticker(self, symbol: str) -> bool:
        key = (TICKER_CHANNEL, symbol)
        if key not in self._subscriptions:
            return False
        self._subscriptions.discard(key)
        if self.public.state.is_open:
            await self.public.send(_subscription_message("unsubscribe", [symbol]))
        log_event(log, "unsubscribed", channel=TICKER_CHANNEL, symbol=symbol)
        return True

    async def _on_public_open(self, reconnected: bool) -> None:
        if not (reconnected and self.settings.resubscribe_on_reconnect and self._subscriptions):
            return
        symbols = sorted(symbol for channel, symbol in self._subscriptions if channel == TICKER_CHANNEL)
        try:
            await self.public.send(_subscription_message("subscribe", symbols))
        except NetworkError as exc:
            # the channel's own close handling will retry and replay again
            log_event(log, "resubscribe_failed", level=logging.WARNING, symbols=symbols, err=str(exc))
            return
        log_event(log, "resubscribed", channel=TICKER_CHANNEL, symbols=symbols)

    # -------------------------------------------------------------------------
    # Inbound dispatch
    # -------------------------------------------------------------------------

    def _handle_public_message(self, msg: Dict[str, Any]) -> None:
        self.bus.emit(EventType.MESSAGE, source="public", channel="public", message=msg)
        if msg.get("method") == TICKER_CHANNEL or msg.get("channel") == TICKER_CHANNEL:
            for ticker in _ticker_entries(msg):
                symbol = ticker.get("symbol")
                if self.metrics and symbol:
                    self.metrics.ticker_updates.labels(symbol=symbol).inc()
                self.bus.emit(EventType.TICKER, source="public", symbol=symbol, ticker=ticker, message=msg)

    def _handle_private_message(self, msg: Dict[str, Any]) -> None:
        self.bus.emit(EventType.MESSAGE, source="private", channel="private", message=msg)
        if self.correlator.handle_message(msg):
            self.bus.emit(EventType.ORDER_RESPONSE, source="private", response=OrderResponse.from_message(msg))

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def _ensure_private(self) -> str:
        if self.private.state != ChannelState.AUTHENTICATED:
            await self.private.connect()
        token = self.private.token
        if not token:
            raise AuthError("Private channel has no session token")
        return token

    async def submit_order(self, params: OrderParams) -> OrderResponse:
        """
        Send add_order and wait for the exchange's answer.

        Connects the private channel first if needed. Raises ConfigError,
        AuthError, NetworkError, RequestTimeoutError or OrderRejectedError.
        """
        token = await self._ensure_private()
        payload = {**params.to_dict(), "token": token}
        log_event(log, "order_submit", side=params.side, order_type=params.order_type, symbol=params.symbol)
        return await self.correlator.send("add_order", payload)

    async def submit_orders(self, orders: Iterable[OrderParams]) -> List[OrderResponse]:
        """Validate every order before sending any, then submit in order."""
        checked = [ensure_valid(o) for o in orders]
        results: List[OrderResponse] = []
        for params in checked:
            results.append(await self.submit_order(params))
        return results

    async def cancel_order(self, order_id: str) -> OrderResponse:
        if not order_id:
            raise ValueError("order_id is required")
        token = await self._ensure_private()
        log_event(log, "order_cancel", order_id=order_id)
        return await self.correlator.send("cancel_order", {"order_id": [order_id], "token": token})


def _subscription_message(method: str, symbols: List[str]) -> Dict[str, Any]:
    return {"method": method, "params": {"channel": TICKER_CHANNEL, "symbol": symbols}}


def _ticker_entries(msg: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Ticker updates carry a list of per-symbol entries under "data"."""
    data = msg.get("data")
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if isinstance(data, dict):
        return [data]
    return []
