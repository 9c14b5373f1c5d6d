"""Per-task token buffering for the progress stream."""

from __future__ import annotations

import asyncio
from typing import Callable

DEFAULT_FLUSH_CHARS = 50
DEFAULT_FLUSH_INTERVAL = 0.1


class TokenBuffer:
    """Accumulates one task's tokens and flushes them in batches.

    A flush happens as soon as the buffer holds `max_chars` characters, or
    `interval` seconds after the first unflushed character, whichever comes
    first. `close()` force-flushes whatever is left.
    """

    def __init__(
        self,
        task_id: str,
        on_flush: Callable[[str, str], None],
        max_chars: int = DEFAULT_FLUSH_CHARS,
        interval: float = DEFAULT_FLUSH_INTERVAL,
    ):
        self.task_id = task_id
        self.on_flush = on_flush
        self.max_chars = max_chars
        self.interval = interval
        self._parts: list[str] = []
        self._size = 0
        self._timer: asyncio.TimerHandle | None = None
        self.flush_count = 0

    def feed(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        self._size += len(text)
        if self._size >= self.max_chars:
            self.flush()
        elif self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(self.interval, self.flush)

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._parts:
            return
        text = "".join(self._parts)
        self._parts.clear()
        self._size = 0
        self.flush_count += 1
        self.on_flush(self.task_id, text)

    def close(self) -> None:
        self.flush()
