"""
Pytest configuration and shared fakes.
Adds the repo root to sys.path so tests can import krakengrid without installing it.
"""

import asyncio
import base64
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from krakengrid.config.config import Settings  # noqa: E402
from krakengrid.errors import AuthError, NetworkError  # noqa: E402
from krakengrid.infra.transport import TransportHandlers  # noqa: E402

TEST_SECRET = base64.b64encode(b"krakengrid-test-secret-0123456789").decode("ascii")


class FakeTransport:
    """In-memory Transport: records sent frames and lets tests inject inbound ones."""

    def __init__(self, fail_opens: int = 0, always_fail: bool = False) -> None:
        self.fail_opens = fail_opens
        self.always_fail = always_fail
        self.fail_send = False
        self.opened_urls: List[str] = []
        self.sent: List[str] = []
        self.close_calls = 0
        self._handlers: Optional[TransportHandlers] = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, url: str, handlers: TransportHandlers) -> None:
        self.opened_urls.append(url)
        if self.always_fail or self.fail_opens > 0:
            self.fail_opens = max(0, self.fail_opens - 1)
            raise NetworkError("connection refused")
        self._handlers = handlers
        self._open = True

    async def send(self, data: str) -> None:
        if not self._open or self.fail_send:
            raise NetworkError("transport is not open")
        self.sent.append(data)

    async def close(self) -> None:
        self.close_calls += 1
        if self._open:
            self._open = False
            self._handlers.on_close(1000, "client close")

    # --- test helpers ---

    def deliver(self, msg: Union[Dict[str, Any], str]) -> None:
        raw = msg if isinstance(msg, str) else json.dumps(msg)
        self._handlers.on_message(raw)

    def drop(self, code: int = 1006, reason: str = "abnormal closure") -> None:
        """Simulate the server side going away."""
        self._open = False
        self._handlers.on_close(code, reason)

    def sent_json(self) -> List[Dict[str, Any]]:
        return [json.loads(s) for s in self.sent]

    def last_sent(self) -> Dict[str, Any]:
        return json.loads(self.sent[-1])


class FakeTokenProvider:
    """TokenProvider stand-in returning tok-1, tok-2, ..."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self.closed = False

    async def fetch_token(self) -> str:
        self.calls += 1
        if self.fail:
            raise AuthError("Kraken API error: EAPI:Invalid key")
        return f"tok-{self.calls}"

    async def close(self) -> None:
        self.closed = True


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    """Poll predicate until it is true or timeout elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        api_key="test-key",
        api_secret=TEST_SECRET,
        heartbeat_sec=0,
        reconnect_base_sec=0.01,
        reconnect_max_attempts=5,
        request_timeout=1.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()
