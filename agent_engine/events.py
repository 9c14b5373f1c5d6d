"""Typed progress events emitted to the consumer-facing stream."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from typing import Callable, Literal, Protocol, Union

from pydantic import BaseModel, Field

from agent_engine.schemas import AddedSection, ClarificationQuestion, Tier

logger = logging.getLogger(__name__)

MAX_EVENTS_PER_SESSION = 1000


class OutlineSection(BaseModel):
    id: str
    title: str
    depends_on: list[str] = Field(default_factory=list)


class OutlineEvent(BaseModel):
    type: Literal["outline"] = "outline"
    report_title: str
    sections: list[OutlineSection]


class SectionStartedEvent(BaseModel):
    type: Literal["section_started"] = "section_started"
    section_id: str
    title: str
    tier: Tier


class SectionTokenBatchEvent(BaseModel):
    type: Literal["section_token_batch"] = "section_token_batch"
    section_id: str
    text: str


class SectionCompleteEvent(BaseModel):
    type: Literal["section_complete"] = "section_complete"
    section_id: str
    title: str
    success: bool
    completed: int
    total: int


class SectionAddedEvent(BaseModel):
    type: Literal["section_added"] = "section_added"
    section: AddedSection


class ClarificationRequestEvent(BaseModel):
    type: Literal["clarification_request"] = "clarification_request"
    session_id: str
    questions: list[ClarificationQuestion]


StreamEvent = Union[
    OutlineEvent,
    SectionStartedEvent,
    SectionTokenBatchEvent,
    SectionCompleteEvent,
    SectionAddedEvent,
    ClarificationRequestEvent,
]

EventSink = Callable[[StreamEvent], None]


class DagProgress(Protocol):
    """Callbacks the DAG executor reports through."""

    def on_task_start(self, task_id: str, title: str, tier: Tier) -> None: ...

    def on_task_tokens(self, task_id: str, text: str) -> None: ...

    def on_task_complete(self, task_id: str, title: str, success: bool, completed: int, total: int) -> None: ...

    def on_section_added(self, section: AddedSection) -> None: ...


class EventProgress:
    """DagProgress adapter that turns callbacks into typed stream events."""

    def __init__(self, emit: EventSink):
        self.emit = emit

    def on_task_start(self, task_id: str, title: str, tier: Tier) -> None:
        self.emit(SectionStartedEvent(section_id=task_id, title=title, tier=tier))

    def on_task_tokens(self, task_id: str, text: str) -> None:
        self.emit(SectionTokenBatchEvent(section_id=task_id, text=text))

    def on_task_complete(self, task_id: str, title: str, success: bool, completed: int, total: int) -> None:
        self.emit(
            SectionCompleteEvent(
                section_id=task_id,
                title=title,
                success=success,
                completed=completed,
                total=total,
            )
        )

    def on_section_added(self, section: AddedSection) -> None:
        self.emit(SectionAddedEvent(section=section))


class EventLog:
    """Bounded per-session buffer of emitted events, drained by the broker."""

    def __init__(self, max_events: int = MAX_EVENTS_PER_SESSION):
        self._events: dict[str, deque[StreamEvent]] = defaultdict(lambda: deque(maxlen=max_events))
        self._lock = threading.Lock()

    def sink(self, session_id: str) -> EventSink:
        def emit(event: StreamEvent) -> None:
            with self._lock:
                self._events[session_id].append(event)
            logger.debug(f"[{session_id}] {event.type}")

        return emit

    def drain(self, session_id: str) -> list[StreamEvent]:
        with self._lock:
            events = self._events.pop(session_id, None)
        return list(events) if events else []
