"""
Entry point wiring all components.

    python -m krakengrid.main                      # stream ticker for the default symbol
    python -m krakengrid.main --grid grid.json     # preview the orders a grid maps to
    python -m krakengrid.main --grid grid.json --submit --quantity 0.01
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, List, Optional

from krakengrid.config.config import Settings
from krakengrid.config.config_validator import validate_and_log
from krakengrid.core.event_bus import Event, EventBus, EventType
from krakengrid.core.models import OrderBuildContext, OrderParams
from krakengrid.errors import KrakenGridError
from krakengrid.execution.session_manager import SessionManager
from krakengrid.infra.logging_cfg import build_logger, log_event
from krakengrid.infra.nonce import NonceGenerator
from krakengrid.infra.signer import Signer
from krakengrid.infra.token_provider import TokenProvider
from krakengrid.market_data import TickerCache
from krakengrid.monitoring.metrics import SessionMetrics, start_metrics_server
from krakengrid.strategy.order_builder import create_order_preview, map_grid_to_orders, validate_order

PRICE_WAIT_SEC = 10.0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kraken grid order client")
    parser.add_argument("--grid", help="JSON file holding grid[col][row] -> [blocks]")
    parser.add_argument("--symbol", help="Trading pair (defaults to KRAKEN_DEFAULT_SYMBOL)")
    parser.add_argument("--quantity", default="0.001", help="Order quantity as a decimal string")
    parser.add_argument("--price", type=float, help="Reference price instead of waiting for the ticker")
    parser.add_argument("--submit", action="store_true", help="Send the orders (default is preview only)")
    return parser.parse_args(argv)


def load_grid(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


async def wait_for_price(cache: TickerCache, symbol: str, timeout: float = PRICE_WAIT_SEC) -> Optional[float]:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        price = cache.current_price(symbol)
        if price is not None:
            return price
        await asyncio.sleep(0.25)
    return None


async def run_grid(
    session: SessionManager,
    cache: TickerCache,
    args: argparse.Namespace,
    symbol: str,
    log,
) -> int:
    price = args.price or await wait_for_price(cache, symbol)
    if not price:
        log.error(json.dumps({"event": "no_reference_price", "symbol": symbol}))
        return 1

    context = OrderBuildContext(symbol=symbol, current_price=price, quantity=args.quantity)
    orders: List[OrderParams] = map_grid_to_orders(load_grid(args.grid), context)
    invalid = 0
    for params in orders:
        reasons = validate_order(params)
        log_event(log, "order_preview", preview=create_order_preview(params), errors=reasons or None)
        if reasons:
            invalid += 1

    if not args.submit:
        log_event(log, "simulation_complete", orders=len(orders), invalid=invalid, reference_price=price)
        return 0 if invalid == 0 else 1
    if invalid:
        log.error(json.dumps({"event": "submit_aborted", "invalid": invalid}))
        return 1

    responses = await session.submit_orders(orders)
    for resp in responses:
        log_event(log, "order_accepted", method=resp.method, order_id=resp.order_id, req_id=resp.req_id)
    return 0


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = Settings.load()
    log = build_logger("krakengrid", level=cfg.log_level, file_path=cfg.log_file)

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        return 1

    metrics = SessionMetrics()
    start_metrics_server(metrics, cfg.metrics_port)

    bus = EventBus()
    token_provider = None
    if cfg.has_credentials():
        token_provider = TokenProvider(
            cfg.rest_url,
            Signer(cfg.api_key, cfg.api_secret),
            NonceGenerator(),
            timeout=cfg.http_timeout,
        )
    session = SessionManager(cfg, bus, token_provider=token_provider, metrics=metrics)
    cache = TickerCache()
    cache.attach(bus)

    def _on_exhausted(event: Event) -> None:
        log.critical(json.dumps({"event": "channel_unavailable", **{k: str(v) for k, v in event.data.items()}}))

    bus.subscribe(EventType.RECONNECT_EXHAUSTED, _on_exhausted, name="main_exhausted")

    symbol = args.symbol or cfg.default_symbol
    log.info(json.dumps({"event": "startup", "symbol": symbol, "submit": args.submit}))

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    exit_code = 0
    try:
        await session.start()
        await session.subscribe_ticker(symbol)
        if args.grid:
            exit_code = await run_grid(session, cache, args, symbol, log)
        else:
            await stop_event.wait()
    except KrakenGridError as exc:
        log.error(json.dumps({"event": "fatal_error", "error_type": type(exc).__name__, "err": str(exc)}))
        exit_code = 1
    except asyncio.CancelledError:
        log.info("Shutdown signal received, cleaning up...")
    finally:
        log.info("Closing connections...")
        cache.detach()
        await session.close()
        log.info("Shutdown complete")
    return exit_code


def cli() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    cli()
