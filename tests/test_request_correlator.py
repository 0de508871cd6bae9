"""
Tests for RequestCorrelator.

Tests cover:
- req_id allocation and payload shape
- Success / rejection settlement
- Timeouts and late responses
- Send failures
- fail_all on disconnect
- Metrics recording
"""

import asyncio
import json
from typing import List

import pytest
from prometheus_client import CollectorRegistry

from krakengrid.errors import NetworkError, OrderRejectedError, RequestTimeoutError
from krakengrid.execution.request_correlator import RequestCorrelator, next_req_id
from krakengrid.monitoring.metrics import SessionMetrics


class RecordingSender:
    """Captures outbound payloads."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[dict] = []
        self.fail = fail

    async def __call__(self, data: str) -> None:
        if self.fail:
            raise NetworkError("socket closed")
        self.sent.append(json.loads(data))


async def started(correlator: RequestCorrelator, method: str = "add_order", params=None):
    """Start a send and let it reach the await on its future."""
    task = asyncio.create_task(correlator.send(method, params or {"symbol": "BTC/USD"}))
    await asyncio.sleep(0)
    return task


class TestSend:
    @pytest.mark.asyncio
    async def test_payload_shape(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0)
        task = await started(correlator, "add_order", {"symbol": "BTC/USD", "token": "t"})

        msg = sender.sent[0]
        assert msg["method"] == "add_order"
        assert msg["params"] == {"symbol": "BTC/USD", "token": "t"}
        assert isinstance(msg["req_id"], int)
        assert correlator.pending_count() == 1

        correlator.handle_message({"method": "add_order", "req_id": msg["req_id"], "success": True})
        await task

    @pytest.mark.asyncio
    async def test_req_ids_are_distinct_and_increasing(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0)
        tasks = [await started(correlator) for _ in range(5)]
        ids = [m["req_id"] for m in sender.sent]
        assert len(set(ids)) == 5
        assert ids == sorted(ids)
        correlator.fail_all()
        await asyncio.gather(*tasks, return_exceptions=True)

    def test_counter_is_shared_across_correlators(self):
        a = next_req_id()
        b = next_req_id()
        assert b > a


class TestSettlement:
    @pytest.mark.asyncio
    async def test_success_resolves_with_response(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0)
        task = await started(correlator)
        req_id = sender.sent[0]["req_id"]

        matched = correlator.handle_message({
            "method": "add_order",
            "req_id": req_id,
            "success": True,
            "result": {"order_id": "OABC-123"},
        })
        response = await task

        assert matched is True
        assert response.success
        assert response.order_id == "OABC-123"
        assert correlator.pending_count() == 0

    @pytest.mark.asyncio
    async def test_success_flag_absent_and_no_error(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0)
        task = await started(correlator)
        correlator.handle_message({"method": "add_order", "req_id": sender.sent[0]["req_id"], "result": {}})
        assert (await task).success

    @pytest.mark.asyncio
    async def test_rejection_raises_with_error_text(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0)
        task = await started(correlator, "cancel_order")
        req_id = sender.sent[0]["req_id"]

        correlator.handle_message({
            "method": "cancel_order",
            "req_id": req_id,
            "success": False,
            "error": "EOrder:Unknown order",
        })
        with pytest.raises(OrderRejectedError, match="EOrder:Unknown order") as exc_info:
            await task
        assert exc_info.value.req_id == req_id
        assert exc_info.value.method == "cancel_order"

    @pytest.mark.asyncio
    async def test_unknown_req_id_is_ignored(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0)
        task = await started(correlator)

        assert correlator.handle_message({"method": "add_order", "req_id": 999_999_999, "success": True}) is False
        assert correlator.handle_message({"channel": "heartbeat"}) is False
        assert correlator.pending_count() == 1

        correlator.fail_all()
        with pytest.raises(NetworkError):
            await task

    @pytest.mark.asyncio
    async def test_non_integer_req_id_is_ignored(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0)
        task = await started(correlator)
        req_id = sender.sent[0]["req_id"]

        assert correlator.handle_message({"req_id": [req_id], "success": True}) is False
        assert correlator.handle_message({"req_id": {"id": req_id}}) is False
        assert correlator.handle_message({"req_id": str(req_id), "success": True}) is False
        assert correlator.pending_count() == 1

        assert correlator.handle_message({"method": "add_order", "req_id": req_id, "success": True}) is True
        response = await task
        assert response.success


class TestTimeout:
    @pytest.mark.asyncio
    async def test_times_out(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=0.05)
        with pytest.raises(RequestTimeoutError):
            await correlator.send("add_order", {})
        assert correlator.pending_count() == 0

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_is_ignored(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=0.05)
        task = await started(correlator)
        req_id = sender.sent[0]["req_id"]

        with pytest.raises(RequestTimeoutError):
            await task
        assert correlator.handle_message({"method": "add_order", "req_id": req_id, "success": True}) is False


class TestFailures:
    @pytest.mark.asyncio
    async def test_send_failure_settles_immediately(self):
        correlator = RequestCorrelator(RecordingSender(fail=True), timeout=5.0)
        with pytest.raises(NetworkError):
            await asyncio.wait_for(correlator.send("add_order", {}), timeout=1.0)
        assert correlator.pending_count() == 0

    @pytest.mark.asyncio
    async def test_fail_all_settles_each_once(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=5.0)
        tasks = [await started(correlator) for _ in range(3)]

        assert correlator.fail_all("WebSocket disconnected") == 3
        assert correlator.fail_all("WebSocket disconnected") == 0

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, NetworkError) for r in results)
        assert all(str(r) == "WebSocket disconnected" for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_no_pending_entry(self):
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=5.0)
        task = await started(correlator)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert correlator.pending_count() == 0


class TestMetrics:
    @pytest.mark.asyncio
    async def test_outcomes_recorded(self):
        registry = CollectorRegistry()
        metrics = SessionMetrics(registry)
        sender = RecordingSender()
        correlator = RequestCorrelator(sender, timeout=1.0, metrics=metrics)

        task = await started(correlator)
        correlator.handle_message({"method": "add_order", "req_id": sender.sent[0]["req_id"], "success": True})
        await task

        assert registry.get_sample_value("requests_sent_total", {"method": "add_order"}) == 1.0
        assert registry.get_sample_value(
            "request_outcomes_total", {"method": "add_order", "outcome": "success"}
        ) == 1.0
        assert registry.get_sample_value("request_latency_ms_count", {"method": "add_order"}) == 1.0
