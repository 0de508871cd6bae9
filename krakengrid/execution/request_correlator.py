"""
RequestCorrelator: matches private-channel responses to outbound requests.

Each outbound add_order/cancel_order gets a req_id from a process-wide
counter and a future that is settled exactly once: by the matching response,
by its deadline, by a synchronous send failure, or by fail_all() on
disconnect. Whatever comes second is a no-op.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from krakengrid.core.models import OrderResponse
from krakengrid.errors import NetworkError, OrderRejectedError, RequestTimeoutError
from krakengrid.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from krakengrid.monitoring.metrics import SessionMetrics

log = logging.getLogger("krakengrid")

DEFAULT_REQUEST_TIMEOUT_SEC = 30.0

# Shared across every correlator in the process so req_ids are never reused.
# next() on itertools.count is atomic under the GIL and never blocks.
_REQ_IDS = itertools.count(1)


def next_req_id() -> int:
    return next(_REQ_IDS)


@dataclass
class PendingRequest:
    req_id: int
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    created_at: float


SendFn = Callable[[str], Awaitable[None]]


class RequestCorrelator:
    def __init__(
        self,
        send: SendFn,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC,
        metrics: Optional["SessionMetrics"] = None,
    ) -> None:
        self._send = send
        self.timeout = timeout
        self.metrics = metrics
        self._pending: Dict[int, PendingRequest] = {}

    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, req_id: int) -> bool:
        return req_id in self._pending

    async def send(self, method: str, params: Dict[str, Any]) -> OrderResponse:
        """
        Transmit {"method", "params", "req_id"} and wait for the outcome.

        Raises OrderRejectedError, RequestTimeoutError or NetworkError.
        """
        loop = asyncio.get_running_loop()
        req_id = next_req_id()
        fut: asyncio.Future = loop.create_future()
        timer = loop.call_later(self.timeout, self._expire, req_id)
        self._pending[req_id] = PendingRequest(req_id, method, fut, timer, time.monotonic())
        if self.metrics:
            self.metrics.requests_sent.labels(method=method).inc()

        payload = json.dumps({"method": method, "params": params, "req_id": req_id})
        try:
            await self._send(payload)
        except Exception as exc:
            log_event(log, "request_send_failed", level=logging.ERROR, req_id=req_id, method=method, err=str(exc))
            err = exc if isinstance(exc, NetworkError) else NetworkError(f"send failed: {exc}")
            self._settle(req_id, exc=err, outcome="send_failed")
        else:
            log_event(log, "request_sent", level=logging.DEBUG, req_id=req_id, method=method)

        try:
            return await fut
        except asyncio.CancelledError:
            self._discard(req_id)
            raise

    def handle_message(self, msg: Dict[str, Any]) -> bool:
        """Settle the pending entry matching msg["req_id"]; False when nothing matched."""
        req_id = msg.get("req_id")
        if req_id is None:
            return False
        if not isinstance(req_id, int) or isinstance(req_id, bool):
            log_event(log, "response_bad_req_id", level=logging.WARNING, req_id=repr(req_id)[:50], method=msg.get("method"))
            return False
        if req_id not in self._pending:
            log_event(log, "response_unmatched", level=logging.DEBUG, req_id=req_id, method=msg.get("method"))
            return False

        response = OrderResponse.from_message(msg)
        if response.success:
            return self._settle(req_id, result=response, outcome="success")
        entry_method = self._pending[req_id].method
        err = OrderRejectedError(response.error or "Unknown error", req_id=req_id, method=entry_method)
        return self._settle(req_id, exc=err, outcome="rejected")

    def fail_all(self, reason: str = "WebSocket disconnected") -> int:
        """Fail every pending request once; returns how many were failed."""
        count = 0
        for req_id in list(self._pending):
            if self._settle(req_id, exc=NetworkError(reason), outcome="disconnected"):
                count += 1
        if count:
            log_event(log, "requests_failed_on_disconnect", level=logging.WARNING, count=count, reason=reason)
        return count

    def _expire(self, req_id: int) -> None:
        entry = self._pending.get(req_id)
        if entry is None:
            return
        log_event(log, "request_timeout", level=logging.WARNING, req_id=req_id, method=entry.method, timeout_sec=self.timeout)
        self._settle(req_id, exc=RequestTimeoutError(f"{entry.method} request timed out", req_id=req_id), outcome="timeout")

    def _discard(self, req_id: int) -> None:
        entry = self._pending.pop(req_id, None)
        if entry is not None:
            entry.timer.cancel()

    def _settle(
        self,
        req_id: int,
        result: Optional[OrderResponse] = None,
        exc: Optional[BaseException] = None,
        outcome: str = "success",
    ) -> bool:
        entry = self._pending.pop(req_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if self.metrics:
            self.metrics.request_outcomes.labels(method=entry.method, outcome=outcome).inc()
            self.metrics.request_latency_ms.labels(method=entry.method).observe(
                (time.monotonic() - entry.created_at) * 1000.0
            )
        if entry.future.done():
            return False
        if exc is not None:
            entry.future.set_exception(exc)
        else:
            entry.future.set_result(result)
        return True
