"""
Tests for Channel lifecycle.

Tests cover:
- Public and private connect sequences
- Credential and token failures
- Inbound message handling (liveness, malformed JSON, failing callbacks)
- Heartbeat
- Unexpected close -> reconnect -> exhaustion
- Caller-initiated disconnect
"""

import asyncio
import json
from typing import Any, Dict, List

import pytest

from krakengrid.core.event_bus import EventBus, EventType
from krakengrid.core.models import ChannelKind, ChannelState
from krakengrid.errors import AuthError, ConfigError, NetworkError
from krakengrid.execution.channel import VALID_TRANSITIONS, Channel
from krakengrid.execution.reconnect import ReconnectConfig, ReconnectPolicy

from conftest import FakeTokenProvider, FakeTransport, wait_until


def make_channel(
    kind: ChannelKind = ChannelKind.PUBLIC,
    transport: FakeTransport = None,
    bus: EventBus = None,
    token_provider: FakeTokenProvider = None,
    has_credentials: bool = True,
    max_attempts: int = 5,
    heartbeat_interval: float = 0,
    received: List[Dict[str, Any]] = None,
) -> Channel:
    return Channel(
        kind,
        f"wss://{kind.value}.test",
        transport or FakeTransport(),
        bus=bus,
        reconnect_policy=ReconnectPolicy(
            ReconnectConfig(base_delay_sec=0.01, max_attempts=max_attempts), name=kind.value
        ),
        heartbeat_interval=heartbeat_interval,
        token_provider=token_provider,
        has_credentials=lambda: has_credentials,
        on_message=received.append if received is not None else None,
    )


def status_states(bus: EventBus, channel: str = None) -> List[ChannelState]:
    return [
        e.data["state"]
        for e in bus.get_history(EventType.CHANNEL_STATUS)
        if channel is None or e.data["channel"] == channel
    ]


class TestTransitions:
    def test_table_has_every_state(self):
        assert set(VALID_TRANSITIONS) == set(ChannelState)

    def test_invalid_transition_is_rejected(self):
        channel = make_channel()
        assert channel._transition(ChannelState.AUTHENTICATED) is False
        assert channel.state == ChannelState.DISCONNECTED


class TestConnect:
    @pytest.mark.asyncio
    async def test_public_connect(self):
        bus = EventBus()
        transport = FakeTransport()
        channel = make_channel(transport=transport, bus=bus)

        await channel.connect()
        await bus.drain()

        assert channel.state == ChannelState.CONNECTED
        assert transport.opened_urls == ["wss://public.test"]
        assert status_states(bus) == [ChannelState.CONNECTING, ChannelState.CONNECTED]
        assert channel.token is None

    @pytest.mark.asyncio
    async def test_private_connect_fetches_token_and_authenticates(self):
        bus = EventBus()
        tokens = FakeTokenProvider()
        channel = make_channel(ChannelKind.PRIVATE, bus=bus, token_provider=tokens)

        await channel.connect()
        await bus.drain()

        assert channel.state == ChannelState.AUTHENTICATED
        assert channel.token == "tok-1"
        assert status_states(bus) == [
            ChannelState.CONNECTING,
            ChannelState.CONNECTED,
            ChannelState.AUTHENTICATING,
            ChannelState.AUTHENTICATED,
        ]

    @pytest.mark.asyncio
    async def test_connect_when_open_is_noop(self):
        transport = FakeTransport()
        channel = make_channel(transport=transport)
        await channel.connect()
        await channel.connect()
        assert len(transport.opened_urls) == 1

    @pytest.mark.asyncio
    async def test_private_without_credentials(self):
        transport = FakeTransport()
        tokens = FakeTokenProvider()
        channel = make_channel(ChannelKind.PRIVATE, transport=transport, token_provider=tokens, has_credentials=False)

        with pytest.raises(ConfigError):
            await channel.connect()
        assert tokens.calls == 0
        assert transport.opened_urls == []
        assert channel.state == ChannelState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_token_failure_goes_to_error(self):
        bus = EventBus()
        transport = FakeTransport()
        channel = make_channel(
            ChannelKind.PRIVATE, transport=transport, bus=bus, token_provider=FakeTokenProvider(fail=True)
        )

        with pytest.raises(AuthError):
            await channel.connect()
        await bus.drain()

        assert channel.state == ChannelState.ERROR
        assert transport.opened_urls == []
        assert len(bus.get_history(EventType.ERROR)) == 1

    @pytest.mark.asyncio
    async def test_transport_failure_goes_to_error(self):
        channel = make_channel(ChannelKind.PRIVATE, transport=FakeTransport(always_fail=True),
                               token_provider=FakeTokenProvider())
        with pytest.raises(NetworkError):
            await channel.connect()
        assert channel.state == ChannelState.ERROR
        assert channel.token is None

    @pytest.mark.asyncio
    async def test_connect_again_after_error(self):
        transport = FakeTransport(fail_opens=1)
        channel = make_channel(transport=transport)
        with pytest.raises(NetworkError):
            await channel.connect()
        await channel.connect()
        assert channel.state == ChannelState.CONNECTED


class TestInbound:
    @pytest.mark.asyncio
    async def test_messages_forwarded(self):
        received = []
        transport = FakeTransport()
        channel = make_channel(transport=transport, received=received)
        await channel.connect()

        transport.deliver({"channel": "ticker", "data": [{"symbol": "BTC/USD"}]})
        assert received == [{"channel": "ticker", "data": [{"symbol": "BTC/USD"}]}]

    @pytest.mark.asyncio
    async def test_liveness_messages_not_forwarded(self):
        received = []
        transport = FakeTransport()
        channel = make_channel(transport=transport, received=received)
        await channel.connect()
        channel.last_message_at = 0.0

        transport.deliver({"method": "pong"})
        transport.deliver({"channel": "heartbeat"})

        assert received == []
        assert channel.last_message_at > 0.0

    @pytest.mark.asyncio
    async def test_malformed_json_dropped(self):
        bus = EventBus()
        received = []
        transport = FakeTransport()
        channel = make_channel(transport=transport, bus=bus, received=received)
        await channel.connect()

        transport.deliver("{not json")
        transport.deliver("[1, 2]")
        transport.deliver({"channel": "status"})
        await bus.drain()

        assert received == [{"channel": "status"}]
        assert len(bus.get_history(EventType.ERROR)) == 2
        assert channel.state == ChannelState.CONNECTED

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_channel_open(self):
        bus = EventBus()
        received = []

        def handler(msg):
            if msg.get("boom"):
                raise TypeError("unhashable type: 'list'")
            received.append(msg)

        transport = FakeTransport()
        channel = Channel(ChannelKind.PUBLIC, "wss://public.test", transport, bus=bus, heartbeat_interval=0,
                          on_message=handler)
        await channel.connect()

        transport.deliver({"boom": True})
        transport.deliver({"channel": "status"})
        await bus.drain()

        assert received == [{"channel": "status"}]
        assert channel.state == ChannelState.CONNECTED
        assert transport.is_open
        errors = bus.get_history(EventType.ERROR)
        assert len(errors) == 1
        assert isinstance(errors[0].data["error"], TypeError)


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_sends_ping_while_open(self):
        transport = FakeTransport()
        channel = make_channel(transport=transport, heartbeat_interval=0.01)
        await channel.connect()

        assert await wait_until(lambda: len(transport.sent) >= 2)
        assert all(json.loads(s) == {"method": "ping"} for s in transport.sent)
        await channel.disconnect()

    @pytest.mark.asyncio
    async def test_stops_after_disconnect(self):
        transport = FakeTransport()
        channel = make_channel(transport=transport, heartbeat_interval=0.01)
        await channel.connect()
        await channel.disconnect()
        count = len(transport.sent)
        await asyncio.sleep(0.05)
        assert len(transport.sent) == count


class TestReconnect:
    @pytest.mark.asyncio
    async def test_unexpected_close_reconnects(self):
        transport = FakeTransport()
        tokens = FakeTokenProvider()
        channel = make_channel(ChannelKind.PRIVATE, transport=transport, token_provider=tokens)
        await channel.connect()

        transport.drop()
        assert channel.state == ChannelState.DISCONNECTED
        assert channel.token is None

        assert await wait_until(lambda: channel.state == ChannelState.AUTHENTICATED)
        assert channel.token == "tok-2"
        assert len(transport.opened_urls) == 2
        assert channel.policy.attempts == 0

    @pytest.mark.asyncio
    async def test_exhaustion_publishes_event(self):
        bus = EventBus()
        transport = FakeTransport()
        channel = make_channel(transport=transport, bus=bus, max_attempts=2)
        await channel.connect()

        transport.always_fail = True
        transport.drop()

        assert await wait_until(lambda: channel.policy.exhausted)
        await bus.drain()
        exhausted = bus.get_history(EventType.RECONNECT_EXHAUSTED)
        assert len(exhausted) == 1
        assert exhausted[0].data == {"channel": "public", "attempts": 2}
        # one initial open plus two retries, then nothing more
        await asyncio.sleep(0.05)
        assert len(transport.opened_urls) == 3
        assert not channel.reconnect_pending

    @pytest.mark.asyncio
    async def test_recover_after_exhaustion_with_explicit_connect(self):
        transport = FakeTransport()
        channel = make_channel(transport=transport, max_attempts=1)
        await channel.connect()
        transport.always_fail = True
        transport.drop()
        assert await wait_until(lambda: channel.policy.exhausted)

        transport.always_fail = False
        channel.policy.reset()
        await channel.connect()
        assert channel.state == ChannelState.CONNECTED


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_does_not_reconnect(self):
        transport = FakeTransport()
        tokens = FakeTokenProvider()
        channel = make_channel(ChannelKind.PRIVATE, transport=transport, token_provider=tokens)
        await channel.connect()

        await channel.disconnect()
        await asyncio.sleep(0.05)

        assert channel.state == ChannelState.DISCONNECTED
        assert channel.token is None
        assert len(transport.opened_urls) == 1
        assert not channel.reconnect_pending

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        bus = EventBus()
        transport = FakeTransport()
        channel = make_channel(transport=transport, bus=bus)
        await channel.connect()

        await channel.disconnect()
        await channel.disconnect()
        await bus.drain()

        assert transport.close_calls == 1
        assert status_states(bus).count(ChannelState.DISCONNECTED) == 1

    @pytest.mark.asyncio
    async def test_disconnect_cancels_scheduled_reconnect(self):
        transport = FakeTransport()
        channel = make_channel(transport=transport)
        channel.policy.config.base_delay_sec = 0.2
        await channel.connect()

        transport.drop()
        assert channel.reconnect_pending
        await channel.disconnect()
        await asyncio.sleep(0.3)

        assert len(transport.opened_urls) == 1
        assert channel.policy.attempts == 0

    @pytest.mark.asyncio
    async def test_send_when_closed(self):
        channel = make_channel()
        with pytest.raises(NetworkError):
            await channel.send({"method": "ping"})
