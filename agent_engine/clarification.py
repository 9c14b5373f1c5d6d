"""Blocking human-in-the-loop clarification with a bounded wait."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Mapping

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0


class ClarificationGate:
    """Pending clarification requests keyed by session id.

    `wait` suspends the asking agent turn until `resolve` supplies answers
    for the same session or the timeout elapses. `resolve` may be called
    from any thread.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._pending: dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()

    async def wait(self, session_id: str, timeout: float | None = None) -> dict[str, str] | None:
        """Wait for answers. Returns None on timeout."""
        future = asyncio.get_running_loop().create_future()
        with self._lock:
            previous = self._pending.get(session_id)
            self._pending[session_id] = future
        if previous is not None and not previous.done():
            logger.warning(f"Replacing unanswered clarification for session {session_id}")
            previous.get_loop().call_soon_threadsafe(_set_result, previous, None)

        try:
            return await asyncio.wait_for(future, timeout if timeout is not None else self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Clarification for session {session_id} timed out")
            return None
        finally:
            with self._lock:
                if self._pending.get(session_id) is future:
                    del self._pending[session_id]

    def resolve(self, session_id: str, answers: Mapping[str, str]) -> bool:
        """Deliver answers to a waiting session. False if nothing is pending."""
        with self._lock:
            future = self._pending.pop(session_id, None)
        if future is None or future.done():
            return False
        future.get_loop().call_soon_threadsafe(_set_result, future, dict(answers))
        logger.info(f"Clarification for session {session_id} answered ({len(answers)} answers)")
        return True

    def is_pending(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._pending

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)


def _set_result(future: asyncio.Future, value: dict[str, str] | None) -> None:
    if not future.done():
        future.set_result(value)
