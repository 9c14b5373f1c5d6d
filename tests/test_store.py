"""Tests for the SQLite store and the not-configured variant."""

import sqlite3
from datetime import datetime, timezone

import pytest

from agent_engine.store import (
    NotConfiguredStore,
    SqliteStore,
    StoreUnavailableError,
    create_store,
    keyword_score,
)
from agent_engine.schemas import GoalStatus, MemoryScope, MemoryType

from tests.conftest import FakeEmbeddings


class TestKeywordScore:
    """Substring and word-overlap scoring."""

    def test_substring_scores_one(self):
        assert keyword_score("deadline", "The project deadline is Friday") == 1.0

    def test_partial_word_overlap(self):
        assert keyword_score("deadline next week", "deadline is Friday") == pytest.approx(1 / 3)

    def test_short_words_ignored(self):
        assert keyword_score("a b", "nothing here") == 0.0

    def test_empty_query(self):
        assert keyword_score("   ", "text") == 0.0


class TestSkills:
    """Skill library operations."""

    def test_create_and_get_case_insensitive(self, sqlite_store):
        skill = sqlite_store.create_skill("ETF Analysis", "Analyze an ETF", "finance", "Step 1...")

        found = sqlite_store.get_skill_by_name("etf analysis")
        assert found is not None
        assert found.id == skill.id
        assert found.instructions == "Step 1..."

    def test_search_matches_name_description_category(self, sqlite_store):
        sqlite_store.create_skill("ETF Analysis", "Analyze an ETF", "finance", "...")
        sqlite_store.create_skill("Trip Planner", "Plan a trip", "travel", "...")

        assert [s.name for s in sqlite_store.search_skills("etf")] == ["ETF Analysis"]
        assert [s.name for s in sqlite_store.search_skills("travel")] == ["Trip Planner"]
        assert sqlite_store.search_skills("nothing like this") == []

    def test_search_treats_wildcards_literally(self, sqlite_store):
        """'%' and '_' in a query match only themselves."""
        sqlite_store.create_skill("ETF Analysis", "Analyze an ETF", "finance", "...")
        sqlite_store.create_skill("Growth Tracker", "Track 100% growth", "metrics", "...")
        sqlite_store.create_skill("snake_case Linter", "Fix identifiers", "code", "...")

        assert sqlite_store.search_skills("%") == [sqlite_store.get_skill_by_name("Growth Tracker")]
        assert [s.name for s in sqlite_store.search_skills("_")] == ["snake_case Linter"]
        assert sqlite_store.search_skills("e_f") == []

    def test_version_one_snapshot(self, sqlite_store):
        skill = sqlite_store.create_skill("ETF Analysis", "Analyze an ETF", "finance", "Step 1")

        versions = sqlite_store.skill_versions(skill.id)
        assert versions == [
            {"version": 1, "name": "ETF Analysis", "description": "Analyze an ETF", "instructions": "Step 1"}
        ]

    def test_increment_usage(self, sqlite_store):
        skill = sqlite_store.create_skill("ETF Analysis", "Analyze an ETF", "finance", "...")
        sqlite_store.increment_usage(skill.id)
        sqlite_store.increment_usage(skill.id)

        assert sqlite_store.get_skill_by_name("ETF Analysis").usage_count == 2

    def test_duplicate_name_rejected(self, sqlite_store):
        sqlite_store.create_skill("ETF Analysis", "Analyze an ETF", "finance", "...")
        with pytest.raises(sqlite3.IntegrityError):
            sqlite_store.create_skill("etf analysis", "Again", "finance", "...")


class TestMemories:
    """Scoped memory storage, search and deep recall."""

    def test_scope_isolation(self, sqlite_store):
        sqlite_store.store_memory(MemoryScope.PERSONAL, "u1", MemoryType.FACT, "Prefers dark roast coffee")
        sqlite_store.store_memory(MemoryScope.PERSONAL, "u2", MemoryType.FACT, "Prefers green tea")

        u1 = sqlite_store.search_memories("prefers", MemoryScope.PERSONAL, "u1")
        assert [m.content for m in u1] == ["Prefers dark roast coffee"]
        assert sqlite_store.search_memories("prefers", MemoryScope.GLOBAL, None) == []

    def test_importance_breaks_ties(self, sqlite_store):
        sqlite_store.store_memory(MemoryScope.GLOBAL, None, MemoryType.FACT, "Release is in May", importance=0.1)
        sqlite_store.store_memory(MemoryScope.GLOBAL, None, MemoryType.FACT, "Release freeze in May", importance=0.9)

        results = sqlite_store.search_memories("release", MemoryScope.GLOBAL, None)
        assert results[0].content == "Release freeze in May"

    def test_deep_search_follows_links_with_decay(self, sqlite_store):
        a = sqlite_store.store_memory(MemoryScope.GLOBAL, None, MemoryType.FACT, "The project deadline is Friday")
        b = sqlite_store.store_memory(MemoryScope.GLOBAL, None, MemoryType.FACT, "Standup moved to Monday")
        sqlite_store.link_memories(a.id, b.id, strength=1.0)

        results = sqlite_store.deep_search("deadline", MemoryScope.GLOBAL, None)

        by_id = {m.id: m for m in results}
        assert by_id[a.id].hops == 0
        assert by_id[a.id].score == pytest.approx(1.0)
        assert by_id[b.id].hops == 1
        assert by_id[b.id].score == pytest.approx(0.7)

    def test_store_auto_links_related_memories(self, sqlite_store):
        first = sqlite_store.store_memory(MemoryScope.GLOBAL, None, MemoryType.KNOWLEDGE, "alpha beta gamma")
        sqlite_store.store_memory(MemoryScope.GLOBAL, None, MemoryType.KNOWLEDGE, "alpha beta gamma delta")

        results = sqlite_store.deep_search("delta", MemoryScope.GLOBAL, None)

        linked = next(m for m in results if m.id == first.id)
        assert linked.hops == 1

    def test_vector_search(self, store_db_path):
        store = SqliteStore(db_path=store_db_path, embeddings=FakeEmbeddings())
        store.store_memory(MemoryScope.GLOBAL, None, MemoryType.FACT, "quarterly revenue grew strongly")
        store.store_memory(MemoryScope.GLOBAL, None, MemoryType.FACT, "office plants need water")

        results = store.search_memories("quarterly revenue", MemoryScope.GLOBAL, None)

        assert results[0].content == "quarterly revenue grew strongly"

    def test_episodes(self, sqlite_store):
        sqlite_store.store_episode(
            "Discussed the pricing migration",
            datetime(2024, 3, 1, tzinfo=timezone.utc),
            topics=["pricing"],
            decisions=["Move to usage-based pricing"],
            user_id="u1",
        )
        sqlite_store.store_episode("Someone else's chat", datetime(2024, 3, 2, tzinfo=timezone.utc), user_id="u2")

        episodes = sqlite_store.search_episodes("pricing", "u1", None)

        assert len(episodes) == 1
        assert episodes[0].decisions == ["Move to usage-based pricing"]
        assert episodes[0].similarity == 1.0


class TestProfileAndGoals:
    """Profile upsert and goal lifecycle."""

    def test_upsert_profile(self, sqlite_store):
        entry, created = sqlite_store.upsert_profile("u1", "timezone", "Europe/Madrid", 0.8)
        assert created is True

        updated, created = sqlite_store.upsert_profile("u1", "timezone", "Europe/Paris", 0.9)
        assert created is False
        assert updated.id == entry.id

        found = sqlite_store.search_profile("u1", "timezone")
        assert [(p.value, p.confidence) for p in found] == [("Europe/Paris", 0.9)]

    def test_goal_lifecycle(self, sqlite_store):
        goal = sqlite_store.create_goal("Ship v2", "high", MemoryScope.PERSONAL, "u1", "s1")
        assert [g.id for g in sqlite_store.list_active_goals()] == [goal.id]

        completed = sqlite_store.update_goal(goal.id, status=GoalStatus.COMPLETED)
        assert completed.status == GoalStatus.COMPLETED
        assert sqlite_store.list_active_goals() == []

    def test_update_missing_goal(self, sqlite_store):
        with pytest.raises(KeyError):
            sqlite_store.update_goal("nope", status=GoalStatus.PAUSED)

    def test_record_goal_update(self, sqlite_store, store_db_path):
        goal = sqlite_store.create_goal("Ship v2", "high", MemoryScope.PERSONAL, "u1")
        sqlite_store.record_goal_update(goal.id, "Ship v2", "Ship v2 by June", "s1")

        with sqlite3.connect(store_db_path) as conn:
            rows = conn.execute("SELECT previous_description, new_description FROM goal_updates").fetchall()
        assert rows == [("Ship v2", "Ship v2 by June")]


class TestNotConfigured:
    """The store variant for hosts without a database."""

    def test_reads_are_empty(self):
        store = NotConfiguredStore()
        assert store.available is False
        assert store.search_skills("x") == []
        assert store.get_skill_by_name("x") is None
        assert store.search_memories("x", MemoryScope.GLOBAL, None) == []
        assert store.list_active_goals() == []

    def test_writes_raise(self):
        store = NotConfiguredStore()
        with pytest.raises(StoreUnavailableError, match="not configured"):
            store.store_memory(MemoryScope.GLOBAL, None, MemoryType.FACT, "x")
        with pytest.raises(StoreUnavailableError):
            store.create_skill("n", "d", "c", "i")

    def test_create_store_disabled(self, store_db_path):
        assert isinstance(create_store(False, store_db_path), NotConfiguredStore)

    def test_create_store_unusable_path(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        store = create_store(True, blocker / "engine.db")

        assert isinstance(store, NotConfiguredStore)
