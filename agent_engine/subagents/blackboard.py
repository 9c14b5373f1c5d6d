"""Shared record of finished section outputs within one delegation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from agent_engine.schemas import SubAgentTask

OTHER_WORK_SUMMARY_CHARS = 400


@dataclass
class BlackboardEntry:
    task_title: str
    content: str
    success: bool = True
    completed_at: float = field(default_factory=time.time)


class Blackboard:
    """In-memory store of completed task outputs, keyed by task id.

    Written only by the executor after a task finishes, so tasks never
    see a sibling's partial output.
    """

    def __init__(self) -> None:
        self._entries: dict[str, BlackboardEntry] = {}

    def write(self, task_id: str, content: str, task_title: str, success: bool = True) -> None:
        self._entries[task_id] = BlackboardEntry(task_title=task_title, content=content, success=success)

    def read(self, task_id: str) -> BlackboardEntry | None:
        return self._entries.get(task_id)

    def summarize(self, max_chars_per_entry: int = 500, exclude: set[str] | None = None) -> str:
        """Condensed listing of successful work, each entry truncated."""
        lines = []
        for task_id, entry in self._entries.items():
            if not entry.success or (exclude and task_id in exclude):
                continue
            content = entry.content
            if len(content) > max_chars_per_entry:
                content = content[:max_chars_per_entry] + "..."
            lines.append(f"- **{entry.task_title}** ({task_id}): {content}")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._entries)


def build_context(task: SubAgentTask, blackboard: Blackboard) -> str:
    """Context injected into a sub-agent's prompt.

    Full output of each explicit dependency (or a failure marker), then a
    condensed summary of other finished work.
    """
    parts = []
    deps = [d for d in task.depends_on if blackboard.read(d) is not None]
    if deps:
        parts.append("## Prerequisites: Completed Task Results\n")
        for dep_id in deps:
            entry = blackboard.read(dep_id)
            if entry.success:
                parts.append(f"### {entry.task_title}\n{entry.content}\n")
            else:
                parts.append(
                    f"### {entry.task_title}\n"
                    f"[This prerequisite FAILED and produced no usable findings: {entry.content}]\n"
                )

    others = blackboard.summarize(OTHER_WORK_SUMMARY_CHARS, exclude=set(task.depends_on))
    if others:
        parts.append("## Other Completed Work (for reference)\n")
        parts.append(others)

    return "\n".join(parts)
