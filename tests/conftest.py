"""Pytest configuration and fixtures for Agent Engine tests."""

import asyncio
import time
from pathlib import Path
from typing import Any

import pytest

from agent_engine.builtin_tools import register_builtin_tools
from agent_engine.embeddings import EmbeddingUnavailableError, cosine_similarity
from agent_engine.executor import ToolExecutor
from agent_engine.indexer import ToolIndex
from agent_engine.llm import Completion
from agent_engine.schemas import SubAgentResult, SubAgentTask, Tier, ToolManifestEntry
from agent_engine.store import SqliteStore

DIMENSIONS = 32


def _bucket(word: str) -> int:
    return sum(ord(c) for c in word) % DIMENSIONS


class FakeEmbeddings:
    """Deterministic bag-of-words embeddings.

    Texts sharing words get similar vectors. Flags simulate backend failures.
    """

    name = "fake"

    def __init__(self, fail_batch: bool = False, fail_query: bool = False):
        self.fail_batch = fail_batch
        self.fail_query = fail_query
        self.batch_calls: list[list[str]] = []
        self.embed_calls: list[str] = []

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * DIMENSIONS
        for word in text.lower().split():
            vector[_bucket(word.strip(".,:;!?\"'()"))] += 1.0
        return vector

    def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        if self.fail_query:
            raise EmbeddingUnavailableError("query embedding down")
        return self._vector(text)

    def embed_batch(self, texts):
        self.batch_calls.append(list(texts))
        if self.fail_batch:
            raise EmbeddingUnavailableError("batch embedding down")
        return [self._vector(t) for t in texts]

    def similarity(self, a, b) -> float:
        return cosine_similarity(a, b)


class FakeCompletion:
    """Completion client replaying scripted turns and recording each call."""

    def __init__(self, responses: list[Completion] | None = None, tokens: list[str] | None = None):
        self.responses = list(responses or [])
        self.tokens = tokens or []
        self.calls: list[dict[str, Any]] = []

    async def complete(self, messages, tools, tier, on_token=None) -> Completion:
        self.calls.append({"messages": list(messages), "tools": tools, "tier": tier})
        if on_token is not None:
            for token in self.tokens:
                on_token(token)
        if not self.responses:
            return Completion(text="done")
        return self.responses.pop(0)


class RecordingProgress:
    """DagProgress that records (kind, task_id, timestamp) tuples."""

    def __init__(self):
        self.events: list[tuple[str, str, float]] = []
        self.tokens: dict[str, list[str]] = {}
        self.completions: list[tuple[str, bool, int, int]] = []
        self.added = []

    def on_task_start(self, task_id, title, tier) -> None:
        self.events.append(("start", task_id, time.monotonic()))

    def on_task_tokens(self, task_id, text) -> None:
        self.tokens.setdefault(task_id, []).append(text)

    def on_task_complete(self, task_id, title, success, completed, total) -> None:
        self.events.append(("complete", task_id, time.monotonic()))
        self.completions.append((task_id, success, completed, total))

    def on_section_added(self, section) -> None:
        self.added.append(section)

    def index_of(self, kind: str, task_id: str) -> int:
        return next(i for i, e in enumerate(self.events) if e[0] == kind and e[1] == task_id)


class ScriptedRunner:
    """Sub-agent runner whose per-task delay and outcome are scripted."""

    def __init__(self, delays: dict[str, float] | None = None, fail: set[str] | None = None):
        self.delays = delays or {}
        self.fail = fail or set()
        self.contexts: dict[str, str] = {}
        self.active = 0
        self.max_active = 0

    async def run(self, task: SubAgentTask, tier: Tier, context, on_token, on_section) -> SubAgentResult:
        self.contexts[task.id] = context
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(task.id, 0.01))
            if task.id in self.fail:
                raise RuntimeError(f"{task.id} exploded")
            on_token(f"findings for {task.title}")
            return SubAgentResult(
                task_id=task.id,
                title=task.title,
                success=True,
                content=f"Content of {task.title}",
                model_used=tier,
            )
        finally:
            self.active -= 1


class TierRecorder:
    """Tier getter/setter recording every set call."""

    def __init__(self, tier: Tier = Tier.STANDARD):
        self.tier = tier
        self.sets: list[Tier] = []

    def get(self) -> Tier:
        return self.tier

    def set(self, tier: Tier) -> None:
        self.sets.append(tier)
        self.tier = tier


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def sample_entries() -> list[ToolManifestEntry]:
    """A small catalog of remote-style tools."""
    return [
        ToolManifestEntry(name="webSearch", description="search the web for X", category="research"),
        ToolManifestEntry(name="readFile", description="read a file", category="fs"),
        ToolManifestEntry(name="writeFile", description="write content to a file", category="fs"),
    ]


@pytest.fixture
def store_db_path(tmp_path: Path) -> Path:
    """Create a temporary path for the store database."""
    return tmp_path / "engine.db"


@pytest.fixture
def sqlite_store(store_db_path: Path) -> SqliteStore:
    return SqliteStore(db_path=store_db_path)


@pytest.fixture
def keyword_index(sample_entries) -> ToolIndex:
    index = ToolIndex()
    index.register_all(sample_entries)
    return index


@pytest.fixture
def executor() -> ToolExecutor:
    """Router with the built-in tools registered into a keyword index."""
    router = ToolExecutor(ToolIndex())
    register_builtin_tools(router)
    return router
