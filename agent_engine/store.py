"""SQLite-backed skill, memory, profile and goal store.

Implements the minimal read/write contract the meta-tools need. Deployments
without a store get `NotConfiguredStore`, whose reads return nothing and whose
writes raise `StoreUnavailableError`; callers check `available` first.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, Sequence

from agent_engine.embeddings import EmbeddingProvider, EmbeddingUnavailableError
from agent_engine.schemas import (
    EpisodeSummary,
    GoalRecord,
    GoalStatus,
    MemoryRecord,
    MemoryScope,
    MemoryType,
    ProfileEntry,
    SkillRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".agent_engine" / "engine.db"

# Vector scores below this are not considered matches
VECTOR_MATCH_THRESHOLD = 0.3
# Memories at least this similar are linked on store
VECTOR_LINK_THRESHOLD = 0.75
KEYWORD_LINK_THRESHOLD = 0.5
MAX_LINKS_PER_MEMORY = 3
# Score multiplier per followed edge in deep search
HOP_DECAY = 0.7


class StoreUnavailableError(Exception):
    """Raised when a write hits a store that is not configured."""

    pass


class SkillStore(Protocol):
    available: bool

    def search_skills(self, query: str, limit: int = 10) -> list[SkillRecord]: ...

    def get_skill_by_name(self, name: str) -> SkillRecord | None: ...

    def create_skill(
        self,
        name: str,
        description: str,
        category: str,
        instructions: str,
        code: str | None = None,
        created_by: str = "agent",
    ) -> SkillRecord: ...

    def increment_usage(self, skill_id: str) -> None: ...


class MemoryStore(Protocol):
    available: bool

    def search_memories(
        self, query: str, scope: MemoryScope, owner_id: str | None, limit: int = 5
    ) -> list[MemoryRecord]: ...

    def deep_search(
        self, query: str, scope: MemoryScope, owner_id: str | None, limit: int = 8, hops: int = 3
    ) -> list[MemoryRecord]: ...

    def store_memory(
        self,
        scope: MemoryScope,
        owner_id: str | None,
        memory_type: MemoryType,
        content: str,
        importance: float = 0.5,
        source: str = "explicit",
    ) -> MemoryRecord: ...

    def search_episodes(
        self, query: str, user_id: str | None, team_id: str | None, limit: int = 3
    ) -> list[EpisodeSummary]: ...


class ProfileStore(Protocol):
    available: bool

    def search_profile(self, user_id: str, query: str, limit: int = 5) -> list[ProfileEntry]: ...

    def upsert_profile(
        self, user_id: str, key: str, value: str, confidence: float
    ) -> tuple[ProfileEntry, bool]: ...


class GoalStore(Protocol):
    available: bool

    def create_goal(
        self,
        description: str,
        priority: str,
        scope: MemoryScope,
        scope_owner_id: str | None,
        source_session_id: str | None = None,
    ) -> GoalRecord: ...

    def get_goal(self, goal_id: str) -> GoalRecord | None: ...

    def list_active_goals(self, limit: int = 50) -> list[GoalRecord]: ...

    def update_goal(
        self,
        goal_id: str,
        status: GoalStatus | None = None,
        description: str | None = None,
        priority: str | None = None,
    ) -> GoalRecord: ...

    def record_goal_update(
        self, goal_id: str, previous: str, new: str, source_session_id: str | None = None
    ) -> None: ...


class EngineStore(SkillStore, MemoryStore, ProfileStore, GoalStore, Protocol):
    """All record contracts the meta-tools use, served by one backend."""


def _query_words(text: str) -> list[str]:
    return [w for w in re.split(r"\W+", text.lower()) if len(w) >= 3]


def keyword_score(query: str, text: str) -> float:
    """Score text against a query by substring and word overlap, in [0, 1]."""
    query_lower = query.lower().strip()
    text_lower = text.lower()
    if not query_lower:
        return 0.0
    if query_lower in text_lower:
        return 1.0
    words = _query_words(query_lower)
    if not words:
        return 0.0
    return sum(1 for w in words if w in text_lower) / len(words)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _now_us() -> int:
    return int(time.time() * 1000000)


class NotConfiguredStore:
    """Store variant for hosts without a database."""

    available = False

    def _unavailable(self, what: str) -> StoreUnavailableError:
        return StoreUnavailableError(f"{what} is not configured on this host")

    # Skills
    def search_skills(self, query: str, limit: int = 10) -> list[SkillRecord]:
        return []

    def get_skill_by_name(self, name: str) -> SkillRecord | None:
        return None

    def create_skill(self, name, description, category, instructions, code=None, created_by="agent"):
        raise self._unavailable("Skill store")

    def increment_usage(self, skill_id: str) -> None:
        raise self._unavailable("Skill store")

    # Memory
    def search_memories(self, query, scope, owner_id, limit=5) -> list[MemoryRecord]:
        return []

    def deep_search(self, query, scope, owner_id, limit=8, hops=3) -> list[MemoryRecord]:
        return []

    def store_memory(self, scope, owner_id, memory_type, content, importance=0.5, source="explicit"):
        raise self._unavailable("Memory store")

    def search_episodes(self, query, user_id, team_id, limit=3) -> list[EpisodeSummary]:
        return []

    # Profile
    def search_profile(self, user_id, query, limit=5) -> list[ProfileEntry]:
        return []

    def upsert_profile(self, user_id, key, value, confidence):
        raise self._unavailable("Profile store")

    # Goals
    def create_goal(self, description, priority, scope, scope_owner_id, source_session_id=None):
        raise self._unavailable("Goal store")

    def get_goal(self, goal_id: str) -> GoalRecord | None:
        return None

    def list_active_goals(self, limit: int = 50) -> list[GoalRecord]:
        return []

    def update_goal(self, goal_id, status=None, description=None, priority=None):
        raise self._unavailable("Goal store")

    def record_goal_update(self, goal_id, previous, new, source_session_id=None) -> None:
        raise self._unavailable("Goal store")


class SqliteStore:
    """Skill, memory, profile and goal records in one SQLite database."""

    available = True

    def __init__(
        self,
        db_path: Path | str | None = None,
        embeddings: EmbeddingProvider | None = None,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            embeddings: Optional provider for vector similarity; keyword
                matching is used without one
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.embeddings = embeddings
        self._lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS skills (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL,
                    category TEXT NOT NULL,
                    instructions TEXT NOT NULL,
                    code TEXT,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_by TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_skills_name ON skills (name COLLATE NOCASE);
                CREATE TABLE IF NOT EXISTS skill_versions (
                    skill_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    snapshot_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    PRIMARY KEY (skill_id, version)
                );
                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    scope TEXT NOT NULL,
                    owner_id TEXT,
                    type TEXT NOT NULL,
                    content TEXT NOT NULL,
                    importance REAL NOT NULL,
                    source TEXT NOT NULL,
                    vector_json TEXT,
                    created_at INTEGER NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories (scope, owner_id);
                CREATE TABLE IF NOT EXISTS memory_links (
                    source_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    strength REAL NOT NULL,
                    PRIMARY KEY (source_id, target_id)
                );
                CREATE TABLE IF NOT EXISTS episodes (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    team_id TEXT,
                    summary TEXT NOT NULL,
                    period_start TEXT NOT NULL,
                    period_end TEXT,
                    topics_json TEXT NOT NULL,
                    decisions_json TEXT NOT NULL,
                    vector_json TEXT
                );
                CREATE TABLE IF NOT EXISTS profile (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (user_id, key)
                );
                CREATE TABLE IF NOT EXISTS goals (
                    id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    scope_owner_id TEXT,
                    source_session_id TEXT,
                    created_at INTEGER NOT NULL
                );
                CREATE TABLE IF NOT EXISTS goal_updates (
                    goal_id TEXT NOT NULL,
                    previous_description TEXT NOT NULL,
                    new_description TEXT NOT NULL,
                    source_session_id TEXT,
                    created_at INTEGER NOT NULL
                );
            """)
            conn.commit()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _embed(self, text: str) -> list[float] | None:
        if self.embeddings is None:
            return None
        try:
            return self.embeddings.embed(text)
        except EmbeddingUnavailableError as e:
            logger.warning(f"Embedding unavailable, storing without vector: {e}")
            return None

    # --- Skills ---

    @staticmethod
    def _skill_from_row(row: sqlite3.Row) -> SkillRecord:
        return SkillRecord(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            category=row["category"],
            instructions=row["instructions"],
            code=row["code"],
            usage_count=row["usage_count"],
            is_active=bool(row["is_active"]),
            created_by=row["created_by"],
        )

    def search_skills(self, query: str, limit: int = 10) -> list[SkillRecord]:
        """Case-insensitive substring search over active skills."""
        pattern = f"%{_escape_like(query.strip().lower())}%"
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM skills
                    WHERE is_active = 1 AND (
                        LOWER(name) LIKE ? ESCAPE '\\'
                        OR LOWER(description) LIKE ? ESCAPE '\\'
                        OR LOWER(category) LIKE ? ESCAPE '\\'
                    )
                    ORDER BY usage_count DESC, created_at DESC
                    LIMIT ?
                    """,
                    (pattern, pattern, pattern, limit),
                ).fetchall()
        return [self._skill_from_row(r) for r in rows]

    def get_skill_by_name(self, name: str) -> SkillRecord | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM skills WHERE is_active = 1 AND name = ? COLLATE NOCASE",
                    (name.strip(),),
                ).fetchone()
        return self._skill_from_row(row) if row else None

    def create_skill(
        self,
        name: str,
        description: str,
        category: str,
        instructions: str,
        code: str | None = None,
        created_by: str = "agent",
    ) -> SkillRecord:
        """Create a skill and its version 1 snapshot."""
        skill_id = uuid.uuid4().hex
        now = _now_us()
        snapshot = json.dumps({"name": name, "description": description, "instructions": instructions})

        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO skills (id, name, description, category, instructions, code,
                                        usage_count, is_active, created_by, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, 1, ?, ?)
                    """,
                    (skill_id, name, description, category, instructions, code, created_by, now),
                )
                conn.execute(
                    "INSERT INTO skill_versions (skill_id, version, snapshot_json, created_at) VALUES (?, 1, ?, ?)",
                    (skill_id, snapshot, now),
                )
                conn.commit()

        logger.info(f"Created skill '{name}' ({skill_id})")
        return SkillRecord(
            id=skill_id,
            name=name,
            description=description,
            category=category,
            instructions=instructions,
            code=code,
            created_by=created_by,
        )

    def increment_usage(self, skill_id: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("UPDATE skills SET usage_count = usage_count + 1 WHERE id = ?", (skill_id,))
                conn.commit()

    def skill_versions(self, skill_id: str) -> list[dict]:
        """Version snapshots for a skill, oldest first."""
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT version, snapshot_json FROM skill_versions WHERE skill_id = ? ORDER BY version",
                    (skill_id,),
                ).fetchall()
        return [{"version": r["version"], **json.loads(r["snapshot_json"])} for r in rows]

    # --- Memory ---

    @staticmethod
    def _memory_from_row(row: sqlite3.Row, score: float = 0.0, hops: int = 0) -> MemoryRecord:
        return MemoryRecord(
            id=row["id"],
            scope=MemoryScope(row["scope"]),
            owner_id=row["owner_id"],
            type=MemoryType(row["type"]),
            content=row["content"],
            importance=row["importance"],
            score=score,
            hops=hops,
        )

    def _scope_rows(self, conn: sqlite3.Connection, scope: MemoryScope, owner_id: str | None) -> list[sqlite3.Row]:
        if owner_id is None:
            return conn.execute(
                "SELECT * FROM memories WHERE scope = ? AND owner_id IS NULL", (scope.value,)
            ).fetchall()
        return conn.execute(
            "SELECT * FROM memories WHERE scope = ? AND owner_id = ?", (scope.value, owner_id)
        ).fetchall()

    def _score_rows(self, query: str, rows: Sequence[sqlite3.Row]) -> list[tuple[sqlite3.Row, float]]:
        query_vector = self._embed(query)
        scored = []
        for row in rows:
            if query_vector is not None and row["vector_json"]:
                score = self.embeddings.similarity(query_vector, json.loads(row["vector_json"]))
                if score < VECTOR_MATCH_THRESHOLD:
                    continue
            else:
                score = keyword_score(query, row["content"])
                if score <= 0:
                    continue
            scored.append((row, score))
        scored.sort(key=lambda pair: pair[1] * (0.5 + pair[0]["importance"] / 2), reverse=True)
        return scored

    def search_memories(
        self,
        query: str,
        scope: MemoryScope,
        owner_id: str | None,
        limit: int = 5,
    ) -> list[MemoryRecord]:
        """Single-pass similarity (or keyword) search within one scope."""
        with self._lock:
            with self._get_connection() as conn:
                rows = self._scope_rows(conn, scope, owner_id)
        return [self._memory_from_row(r, score) for r, score in self._score_rows(query, rows)[:limit]]

    def deep_search(
        self,
        query: str,
        scope: MemoryScope,
        owner_id: str | None,
        limit: int = 8,
        hops: int = 3,
    ) -> list[MemoryRecord]:
        """Multi-hop associative recall.

        Starts from the direct matches and follows memory links up to
        `hops` edges away, decaying the score by link strength and
        HOP_DECAY per edge. Each memory keeps its best score.
        """
        seeds = self.search_memories(query, scope, owner_id, limit=limit)
        best: dict[str, MemoryRecord] = {m.id: m for m in seeds}
        frontier = list(seeds)

        with self._lock:
            with self._get_connection() as conn:
                for hop in range(1, hops + 1):
                    next_frontier: list[MemoryRecord] = []
                    for memory in frontier:
                        links = conn.execute(
                            """
                            SELECT m.*, l.strength FROM memory_links l
                            JOIN memories m ON m.id = l.target_id
                            WHERE l.source_id = ?
                            """,
                            (memory.id,),
                        ).fetchall()
                        for row in links:
                            score = memory.score * row["strength"] * HOP_DECAY
                            existing = best.get(row["id"])
                            if existing is not None and existing.score >= score:
                                continue
                            linked = self._memory_from_row(row, score, hop)
                            best[linked.id] = linked
                            next_frontier.append(linked)
                    if not next_frontier:
                        break
                    frontier = next_frontier

        return sorted(best.values(), key=lambda m: m.score, reverse=True)[:limit]

    def store_memory(
        self,
        scope: MemoryScope,
        owner_id: str | None,
        memory_type: MemoryType,
        content: str,
        importance: float = 0.5,
        source: str = "explicit",
    ) -> MemoryRecord:
        """Store a memory and link it to its closest neighbours in the same scope."""
        memory_id = uuid.uuid4().hex
        vector = self._embed(content)

        with self._lock:
            with self._get_connection() as conn:
                neighbours = []
                for row in self._scope_rows(conn, scope, owner_id):
                    if vector is not None and row["vector_json"]:
                        strength = self.embeddings.similarity(vector, json.loads(row["vector_json"]))
                        threshold = VECTOR_LINK_THRESHOLD
                    else:
                        strength = keyword_score(content, row["content"])
                        threshold = KEYWORD_LINK_THRESHOLD
                    if strength >= threshold:
                        neighbours.append((row["id"], strength))
                neighbours.sort(key=lambda pair: pair[1], reverse=True)

                conn.execute(
                    """
                    INSERT INTO memories (id, scope, owner_id, type, content, importance, source, vector_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory_id,
                        scope.value,
                        owner_id,
                        memory_type.value,
                        content,
                        importance,
                        source,
                        json.dumps(vector) if vector is not None else None,
                        _now_us(),
                    ),
                )
                for neighbour_id, strength in neighbours[:MAX_LINKS_PER_MEMORY]:
                    conn.executemany(
                        "INSERT OR REPLACE INTO memory_links (source_id, target_id, strength) VALUES (?, ?, ?)",
                        [(memory_id, neighbour_id, strength), (neighbour_id, memory_id, strength)],
                    )
                conn.commit()

        logger.debug(f"Stored memory {memory_id} in {scope.value} with {min(len(neighbours), MAX_LINKS_PER_MEMORY)} links")
        return MemoryRecord(
            id=memory_id,
            scope=scope,
            owner_id=owner_id,
            type=memory_type,
            content=content,
            importance=importance,
        )

    def link_memories(self, source_id: str, target_id: str, strength: float = 1.0) -> None:
        """Create a bidirectional association between two memories.

        `store_memory` links related memories on its own; this is the write
        path for associations an external curator decides on.
        """
        with self._lock:
            with self._get_connection() as conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO memory_links (source_id, target_id, strength) VALUES (?, ?, ?)",
                    [(source_id, target_id, strength), (target_id, source_id, strength)],
                )
                conn.commit()

    def store_episode(
        self,
        summary: str,
        period_start: datetime,
        period_end: datetime | None = None,
        topics: list[str] | None = None,
        decisions: list[str] | None = None,
        user_id: str | None = None,
        team_id: str | None = None,
    ) -> str:
        """Record a conversation-period summary.

        Episodes are written by whatever summarizes finished conversations;
        the engine itself only reads them through `search_episodes`.
        """
        episode_id = uuid.uuid4().hex
        vector = self._embed(summary)
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO episodes (id, user_id, team_id, summary, period_start, period_end,
                                          topics_json, decisions_json, vector_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        episode_id,
                        user_id,
                        team_id,
                        summary,
                        period_start.isoformat(),
                        period_end.isoformat() if period_end else None,
                        json.dumps(topics or []),
                        json.dumps(decisions or []),
                        json.dumps(vector) if vector is not None else None,
                    ),
                )
                conn.commit()
        return episode_id

    def search_episodes(
        self,
        query: str,
        user_id: str | None,
        team_id: str | None,
        limit: int = 3,
    ) -> list[EpisodeSummary]:
        """Search episode summaries visible to a user/team (plus unowned ones)."""
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM episodes
                    WHERE (user_id IS NULL AND team_id IS NULL) OR user_id = ? OR team_id = ?
                    """,
                    (user_id, team_id),
                ).fetchall()

        query_vector = self._embed(query)
        episodes = []
        for row in rows:
            searchable = " ".join([row["summary"], *json.loads(row["topics_json"])])
            if query_vector is not None and row["vector_json"]:
                similarity = self.embeddings.similarity(query_vector, json.loads(row["vector_json"]))
            else:
                similarity = keyword_score(query, searchable)
            episodes.append(
                EpisodeSummary(
                    summary=row["summary"],
                    period_start=datetime.fromisoformat(row["period_start"]),
                    period_end=datetime.fromisoformat(row["period_end"]) if row["period_end"] else None,
                    topics=json.loads(row["topics_json"]),
                    decisions=json.loads(row["decisions_json"]),
                    similarity=similarity,
                )
            )
        episodes.sort(key=lambda e: e.similarity, reverse=True)
        return episodes[:limit]

    # --- Profile ---

    @staticmethod
    def _profile_from_row(row: sqlite3.Row) -> ProfileEntry:
        return ProfileEntry(
            id=row["id"],
            user_id=row["user_id"],
            key=row["key"],
            value=row["value"],
            confidence=row["confidence"],
        )

    def search_profile(self, user_id: str, query: str, limit: int = 5) -> list[ProfileEntry]:
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT * FROM profile WHERE user_id = ?", (user_id,)).fetchall()
        scored = [(r, keyword_score(query, f"{r['key']} {r['value']}")) for r in rows]
        scored = [pair for pair in scored if pair[1] > 0]
        scored.sort(key=lambda pair: (pair[1], pair[0]["confidence"]), reverse=True)
        return [self._profile_from_row(r) for r, _ in scored[:limit]]

    def upsert_profile(
        self,
        user_id: str,
        key: str,
        value: str,
        confidence: float,
    ) -> tuple[ProfileEntry, bool]:
        """Create or update a profile entry. Returns (entry, created)."""
        now = _now_us()
        with self._lock:
            with self._get_connection() as conn:
                existing = conn.execute(
                    "SELECT id FROM profile WHERE user_id = ? AND key = ?", (user_id, key)
                ).fetchone()
                if existing:
                    entry_id = existing["id"]
                    conn.execute(
                        "UPDATE profile SET value = ?, confidence = ?, updated_at = ? WHERE id = ?",
                        (value, confidence, now, entry_id),
                    )
                else:
                    entry_id = uuid.uuid4().hex
                    conn.execute(
                        """
                        INSERT INTO profile (id, user_id, key, value, confidence, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (entry_id, user_id, key, value, confidence, now),
                    )
                conn.commit()

        entry = ProfileEntry(id=entry_id, user_id=user_id, key=key, value=value, confidence=confidence)
        return entry, existing is None

    # --- Goals ---

    @staticmethod
    def _goal_from_row(row: sqlite3.Row) -> GoalRecord:
        return GoalRecord(
            id=row["id"],
            description=row["description"],
            priority=row["priority"],
            status=GoalStatus(row["status"]),
            scope=MemoryScope(row["scope"]),
            scope_owner_id=row["scope_owner_id"],
            source_session_id=row["source_session_id"],
        )

    def create_goal(
        self,
        description: str,
        priority: str,
        scope: MemoryScope,
        scope_owner_id: str | None,
        source_session_id: str | None = None,
    ) -> GoalRecord:
        goal = GoalRecord(
            id=uuid.uuid4().hex,
            description=description,
            priority=priority,
            scope=scope,
            scope_owner_id=scope_owner_id,
            source_session_id=source_session_id,
        )
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO goals (id, description, priority, status, scope, scope_owner_id,
                                       source_session_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        goal.id,
                        description,
                        priority,
                        goal.status.value,
                        scope.value,
                        scope_owner_id,
                        source_session_id,
                        _now_us(),
                    ),
                )
                conn.commit()
        return goal

    def get_goal(self, goal_id: str) -> GoalRecord | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()
        return self._goal_from_row(row) if row else None

    def list_active_goals(self, limit: int = 50) -> list[GoalRecord]:
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM goals WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                    (GoalStatus.ACTIVE.value, limit),
                ).fetchall()
        return [self._goal_from_row(r) for r in rows]

    def update_goal(
        self,
        goal_id: str,
        status: GoalStatus | None = None,
        description: str | None = None,
        priority: str | None = None,
    ) -> GoalRecord:
        updates: dict[str, str] = {}
        if status is not None:
            updates["status"] = status.value
        if description is not None:
            updates["description"] = description
        if priority is not None:
            updates["priority"] = priority

        with self._lock:
            with self._get_connection() as conn:
                if updates:
                    assignments = ", ".join(f"{column} = ?" for column in updates)
                    conn.execute(
                        f"UPDATE goals SET {assignments} WHERE id = ?",
                        (*updates.values(), goal_id),
                    )
                    conn.commit()
                row = conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()

        if row is None:
            raise KeyError(f"Goal not found: {goal_id}")
        return self._goal_from_row(row)

    def record_goal_update(
        self,
        goal_id: str,
        previous: str,
        new: str,
        source_session_id: str | None = None,
    ) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO goal_updates (goal_id, previous_description, new_description,
                                              source_session_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (goal_id, previous, new, source_session_id, _now_us()),
                )
                conn.commit()


def create_store(
    enabled: bool,
    db_path: Path | str | None = None,
    embeddings: EmbeddingProvider | None = None,
) -> SqliteStore | NotConfiguredStore:
    """Build the configured store variant."""
    if not enabled:
        return NotConfiguredStore()
    try:
        return SqliteStore(db_path=db_path, embeddings=embeddings)
    except (OSError, sqlite3.Error) as e:
        logger.warning(f"Store unavailable at {db_path}: {e}")
        return NotConfiguredStore()
