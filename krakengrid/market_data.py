"""
Market data consumer: latest ticker per symbol fed from the session's EventBus.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from krakengrid.core.event_bus import Event, EventBus, EventType, Subscription
from krakengrid.infra.logging_cfg import log_event

log = logging.getLogger("krakengrid")

DEFAULT_TTL_MS = 5000


@dataclass
class PriceQuote:
    price: float
    received_at: float  # clock() seconds


def _to_float(val: Any) -> float:
    try:
        return float(val)
    except (TypeError, ValueError):
        return 0.0


def reference_price(ticker: Dict[str, Any]) -> float:
    """Last trade, else the bid/ask mid; 0.0 when the ticker carries neither."""
    last = _to_float(ticker.get("last"))
    if last > 0:
        return last
    bid = _to_float(ticker.get("bid"))
    ask = _to_float(ticker.get("ask"))
    if bid > 0 and ask > 0:
        return (bid + ask) / 2.0
    return 0.0


class TickerCache:
    """
    Keeps the latest ticker and reference price per symbol.

    A price older than ttl_ms is stale: current_price() hides it unless the
    caller passes allow_stale=True. Tickers without a usable price keep the
    previous quote.
    """

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS, clock: Optional[Callable[[], float]] = None) -> None:
        self.ttl_ms = ttl_ms
        self._clock = clock or time.monotonic
        self._quotes: Dict[str, PriceQuote] = {}
        self._tickers: Dict[str, Dict[str, Any]] = {}
        self._subscription: Optional[Subscription] = None
        self._bus: Optional[EventBus] = None

    def attach(self, bus: EventBus) -> None:
        if self._subscription is not None:
            return
        self._bus = bus
        self._subscription = bus.subscribe(EventType.TICKER, self._on_ticker, name="ticker_cache")

    def detach(self) -> None:
        if self._bus is not None and self._subscription is not None:
            self._bus.unsubscribe(EventType.TICKER, self._subscription)
        self._subscription = None
        self._bus = None

    def _on_ticker(self, event: Event) -> None:
        symbol = event.data.get("symbol")
        if symbol:
            self.update(symbol, event.data.get("ticker") or {})

    def update(self, symbol: str, ticker: Dict[str, Any]) -> None:
        self._tickers[symbol] = dict(ticker)
        price = reference_price(ticker)
        if price <= 0:
            return
        self._quotes[symbol] = PriceQuote(price, self._clock())
        log_event(log, "ticker_price", level=logging.DEBUG, symbol=symbol, price=price)

    def age_ms(self, symbol: str) -> Optional[int]:
        quote = self._quotes.get(symbol)
        if quote is None:
            return None
        return int((self._clock() - quote.received_at) * 1000)

    def is_stale(self, symbol: str) -> bool:
        age = self.age_ms(symbol)
        return age is None or age >= self.ttl_ms

    def current_price(self, symbol: str, allow_stale: bool = False) -> Optional[float]:
        quote = self._quotes.get(symbol)
        if quote is None:
            return None
        if not allow_stale and self.is_stale(symbol):
            return None
        return quote.price

    def ticker(self, symbol: str) -> Optional[Dict[str, Any]]:
        t = self._tickers.get(symbol)
        return dict(t) if t is not None else None

    def symbols(self) -> List[str]:
        return sorted(self._tickers)
