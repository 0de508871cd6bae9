"""
Prometheus metrics for session observability.

Organized into: connectivity, requests, market data.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from krakengrid.core.models import ChannelState

# Numeric encoding of ChannelState for the channel_state gauge
STATE_VALUES = {
    ChannelState.DISCONNECTED: 0,
    ChannelState.CONNECTING: 1,
    ChannelState.CONNECTED: 2,
    ChannelState.AUTHENTICATING: 3,
    ChannelState.AUTHENTICATED: 4,
    ChannelState.ERROR: -1,
}


class SessionMetrics:
    """Metrics for both channels and the request correlator."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Connectivity ===
        self.channel_state = Gauge(
            'channel_state',
            'Channel lifecycle state (-1 error, 0 disconnected .. 4 authenticated)',
            labelnames=['channel'],
            registry=reg
        )
        self.reconnect_attempts = Counter(
            'reconnect_attempts_total',
            'Automatic reconnect attempts scheduled',
            labelnames=['channel'],
            registry=reg
        )
        self.reconnect_exhausted = Counter(
            'reconnect_exhausted_total',
            'Times a channel gave up reconnecting',
            labelnames=['channel'],
            registry=reg
        )
        self.protocol_errors = Counter(
            'protocol_errors_total',
            'Malformed inbound messages dropped',
            labelnames=['channel'],
            registry=reg
        )
        self.heartbeats_sent = Counter(
            'heartbeats_sent_total',
            'Ping messages sent',
            labelnames=['channel'],
            registry=reg
        )

        # === Requests ===
        self.requests_sent = Counter(
            'requests_sent_total',
            'Correlated requests sent on the private channel',
            labelnames=['method'],
            registry=reg
        )
        self.request_outcomes = Counter(
            'request_outcomes_total',
            'Correlated request outcomes',
            labelnames=['method', 'outcome'],
            registry=reg
        )
        self.request_latency_ms = Histogram(
            'request_latency_ms',
            'Time from send to settlement (milliseconds)',
            labelnames=['method'],
            buckets=[10, 25, 50, 100, 250, 500, 1000, 5000, 30000],
            registry=reg
        )

        # === Market data ===
        self.ticker_updates = Counter(
            'ticker_updates_total',
            'Ticker messages received',
            labelnames=['symbol'],
            registry=reg
        )

    def set_channel_state(self, channel: str, state: ChannelState) -> None:
        self.channel_state.labels(channel=channel).set(STATE_VALUES.get(state, 0))


def start_metrics_server(metrics: SessionMetrics, port: int) -> None:
    """Expose metrics over HTTP; port 0 disables the endpoint."""
    if port > 0:
        start_http_server(port, registry=metrics.registry)
