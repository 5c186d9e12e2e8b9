# linkgrab/infra/log_relay.py
"""
Owner log relay.

A ``logging.Handler`` that keeps the most recent records (default 100, each
cut to one Telegram message) in memory. When the buffer goes from empty to
non-empty the owner gets a single "New logs available" ping; ``/logs`` (and
shutdown) sends the whole buffer, packed into as few messages as possible.

Records emitted while the relay itself is talking to Telegram are dropped,
so a failing send can't feed back into the buffer.
"""
from __future__ import annotations

import asyncio
import contextvars
import logging
from collections import deque
from threading import Lock
from typing import Awaitable, Callable

from linkgrab.infra.tasks import safe_create_task

MAX_RECORD_LENGTH = 4096

Sender = Callable[[str], Awaitable[object]]

_relaying: contextvars.ContextVar[bool] = contextvars.ContextVar("log_relay_active", default=False)


def _truncate(text: str, limit: int = MAX_RECORD_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def pack_records(records: list[str], limit: int = MAX_RECORD_LENGTH) -> list[str]:
    """Join records with blank lines into messages of at most *limit* chars."""
    messages: list[str] = []
    current = ""
    for record in records:
        piece = record + "\n\n"
        if current and len(current) + len(piece) > limit:
            messages.append(current.rstrip("\n"))
            current = ""
        current += piece
    if current:
        messages.append(current.rstrip("\n"))
    return messages


class OwnerLogRelay(logging.Handler):
    def __init__(self, capacity: int = 100, level: int | str = logging.WARNING):
        super().__init__(level)
        self._records: deque[str] = deque(maxlen=capacity)
        self._buffer_lock = Lock()
        self._sender: Sender | None = None
        self.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    def bind(self, sender: Sender | None) -> None:
        """Set (or clear) the coroutine function that delivers text to the owner."""
        self._sender = sender

    @property
    def pending(self) -> int:
        with self._buffer_lock:
            return len(self._records)

    def emit(self, record: logging.LogRecord) -> None:
        if _relaying.get():
            return
        try:
            text = _truncate(self.format(record))
        except Exception:
            self.handleError(record)
            return

        with self._buffer_lock:
            was_empty = not self._records
            self._records.append(text)

        if was_empty:
            self._notify("New logs available")

    def _notify(self, text: str) -> None:
        if self._sender is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        safe_create_task(self._send(text), name="log_relay_notice")

    async def _send(self, text: str) -> None:
        _relaying.set(True)
        if self._sender is not None:
            await self._sender(text)

    def drain(self) -> list[str]:
        with self._buffer_lock:
            records = list(self._records)
            self._records.clear()
        return records

    async def send_all(self) -> int:
        """
        Send every buffered record to the owner and clear the buffer.

        Returns:
            Number of messages sent.
        """
        if self._sender is None:
            return 0
        token = _relaying.set(True)
        try:
            messages = pack_records(self.drain()) or ["No logs available"]
            for message in messages:
                await self._sender(message)
            return len(messages)
        finally:
            _relaying.reset(token)
