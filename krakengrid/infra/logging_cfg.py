"""
Structured logging for the client.

Every component logs through the "krakengrid" logger with a compact JSON
message built by log_event(). build_logger() renders those messages on a rich
console and, optionally, appends JSON lines to a file from a background thread
so the event loop never waits on disk.
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional

from rich.logging import RichHandler

# Events that repeat every few seconds while a channel is flapping
NOISY_EVENTS: FrozenSet[str] = frozenset({"heartbeat_send_failed", "reconnect_scheduled", "protocol_error"})


class JsonFormatter(logging.Formatter):
    """One JSON object per line for the log file."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": record.created,
            "ts_iso": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, separators=(",", ":"))


class AsyncQueueHandler(logging.Handler):
    """
    Hands records to a writer thread that forwards them to target.

    A full queue drops the record and counts it; the count is reported on close.
    """

    def __init__(self, target: logging.Handler, max_queue_size: int = 10000) -> None:
        super().__init__()
        self.target = target
        self.dropped = 0
        self._records: "queue.Queue[logging.LogRecord]" = queue.Queue(maxsize=max_queue_size)
        self._stopping = threading.Event()
        self._writer = threading.Thread(target=self._drain_forever, name="krakengrid-log-writer", daemon=True)
        self._writer.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._stopping.is_set():
            return
        try:
            self._records.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def _drain_forever(self) -> None:
        while True:
            try:
                record = self._records.get(timeout=0.1)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue
            try:
                self.target.emit(record)
            except Exception:
                self.handleError(record)

    def close(self) -> None:
        if self._stopping.is_set():
            return
        self._stopping.set()
        self._writer.join(timeout=2.0)
        if self.dropped:
            sys.stderr.write(f"[krakengrid] {self.dropped} log records dropped (queue full)\n")
        self.target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets one of each noisy JSON event through per cooldown window.

    The window is tracked per (event, channel) so public and private channel
    warnings do not hide each other.
    """

    def __init__(self, cooldown_sec: float = 30.0, events: Optional[Iterable[str]] = None) -> None:
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events) if events is not None else NOISY_EVENTS
        self._last_passed: Dict[tuple, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (ValueError, TypeError):
            return True
        if not isinstance(data, dict) or data.get("event") not in self.events:
            return True
        key = (data["event"], data.get("channel"))
        now = time.monotonic()
        last = self._last_passed.get(key)
        if last is not None and now - last < self.cooldown_sec:
            return False
        self._last_passed[key] = now
        return True


def _resolve_level(level) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def build_logger(
    name: str = "krakengrid",
    level: int | str = logging.INFO,
    file_path: Optional[str] = None,
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure and return the named logger.

    Calling it again only updates the level; handlers are attached once.
    """
    lvl = _resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(lvl)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(lvl)
        return logger

    console = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    console.setFormatter(logging.Formatter("%(message)s"))
    console.setLevel(lvl)
    if throttle_warnings:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        to_file: logging.Handler = logging.FileHandler(file_path, encoding="utf-8")
        to_file.setFormatter(JsonFormatter())
        if async_file:
            to_file = AsyncQueueHandler(to_file)
        to_file.setLevel(lvl)
        logger.addHandler(to_file)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data) -> None:
    """log_event(log, "request_sent", req_id=3, method="add_order")"""
    logger.log(level, json.dumps({"event": event, **data}, default=str))
