"""Capability registry with similarity search and keyword fallback."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable, Mapping

from agent_engine.embeddings import EmbeddingProvider
from agent_engine.policies import is_tool_allowed
from agent_engine.schemas import SKILL_PREFIX, ToolManifestEntry, ToolSearchResult, ToolSource
from agent_engine.store import NotConfiguredStore, SkillStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 64

# Semantic mode
NAME_MATCH_BONUS = 0.15
DESCRIPTION_MATCH_BONUS = 0.10
SEMANTIC_TIER_BONUS = 0.30
SEMANTIC_MIN_SCORE = 0.35

# Keyword mode
KEYWORD_NAME_SCORE = 1.0
KEYWORD_DESCRIPTION_SCORE = 0.7
KEYWORD_CATEGORY_SCORE = 0.5
WORD_OVERLAP_WEIGHT = 0.6
KEYWORD_TIER_BONUS = 2.0

SKILL_RELEVANCE = 0.7

TIER_MARKER = re.compile(r"\btier\s*(\d+)\b", re.IGNORECASE)

# Word equivalences for keyword matching
KEYWORD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "online": ("web", "internet"),
    "internet": ("web", "online"),
    "browse": ("web",),
    "look": ("search", "find"),
    "lookup": ("search", "find"),
    "find": ("search",),
    "query": ("search",),
    "open": ("read",),
    "load": ("read",),
    "save": ("write",),
    "time": ("date", "clock"),
    "date": ("time",),
    "sleep": ("wait", "pause"),
    "pause": ("wait",),
}


def _entry_text(entry: ToolManifestEntry) -> str:
    return f"{entry.name} {entry.description} {entry.category}"


def _query_tier(query: str) -> str | None:
    match = TIER_MARKER.search(query)
    return match.group(1) if match else None


def _has_tier_tag(description: str, tier: str) -> bool:
    return re.search(rf"\btier\s*{tier}\b", description, re.IGNORECASE) is not None


def _word_overlap(query: str, haystack: str) -> float:
    """Fraction of query words (3+ chars) found in the haystack, counting synonyms."""
    words = [w for w in re.split(r"\W+", query.lower()) if len(w) >= 3]
    if not words:
        return 0.0
    hits = 0
    for word in words:
        candidates = (word, *KEYWORD_SYNONYMS.get(word, ()))
        if any(c in haystack for c in candidates):
            hits += 1
    return hits / len(words)


class ToolIndex:
    """Catalog of built-in tools answering natural-language capability queries.

    Vectors are computed lazily on first search after any registration or
    provider change. If embedding fails the index falls back to keyword
    scoring until the entry set or provider changes again.
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider | None = None,
        skill_store: SkillStore | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._entries: dict[str, ToolManifestEntry] = {}
        self._embeddings = embeddings
        self._skill_store = skill_store or NotConfiguredStore()
        self.batch_size = batch_size

        # Bumped on every change that invalidates vectors
        self._generation = 0
        self._indexed_generation = -1
        self._vectors: dict[str, list[float]] | None = None
        self._build_future: asyncio.Future | None = None
        self._build_generation = -1
        self.build_count = 0

    def _invalidate(self) -> None:
        self._generation += 1
        self._vectors = None

    def register(self, entry: ToolManifestEntry) -> None:
        """Add or replace an entry by name."""
        self._entries[entry.name] = entry
        self._invalidate()

    def register_all(self, entries: Iterable[ToolManifestEntry]) -> None:
        for entry in entries:
            self._entries[entry.name] = entry
        self._invalidate()

    def get(self, name: str) -> ToolManifestEntry | None:
        return self._entries.get(name)

    def get_all_built_in(self) -> list[ToolManifestEntry]:
        return [e for e in self._entries.values() if e.source == ToolSource.BUILT_IN]

    def get_schema(self, tool_name: str) -> dict | None:
        """Input schema of a built-in tool; None for skills and unknown names."""
        if tool_name.startswith(SKILL_PREFIX):
            return None
        entry = self._entries.get(tool_name)
        return entry.input_schema if entry else None

    def set_embedding_provider(self, provider: EmbeddingProvider | None) -> None:
        """Install or swap the similarity backend; drops cached vectors."""
        self._embeddings = provider
        self._invalidate()

    def set_skill_store(self, store: SkillStore | None) -> None:
        self._skill_store = store or NotConfiguredStore()

    @property
    def mode(self) -> str:
        """'semantic' unless there is no provider or the last build failed."""
        if self._embeddings is None:
            return "keyword"
        if self._indexed_generation == self._generation and self._vectors is None:
            return "keyword"
        return "semantic"

    def __len__(self) -> int:
        return len(self._entries)

    # --- Index build ---

    async def _build_index(self, generation: int) -> dict[str, list[float]] | None:
        entries = list(self._entries.values())
        provider = self._embeddings
        self.build_count += 1
        logger.info(f"Building capability index over {len(entries)} tools")

        vectors: dict[str, list[float]] | None = {}
        try:
            for start in range(0, len(entries), self.batch_size):
                batch = entries[start:start + self.batch_size]
                embedded = await asyncio.to_thread(provider.embed_batch, [_entry_text(e) for e in batch])
                for entry, vector in zip(batch, embedded):
                    vectors[entry.name] = vector
        except Exception as e:
            logger.warning(f"Capability index build failed, using keyword search: {e}")
            vectors = None

        if generation == self._generation:
            self._vectors = vectors
            self._indexed_generation = generation
            if vectors is not None:
                logger.info(f"Capability index ready ({len(vectors)} vectors)")
        return vectors

    async def _ensure_index(self) -> dict[str, list[float]] | None:
        """Return current vectors, building them once if stale.

        Concurrent callers await the same in-flight build. A cancelled
        caller leaves the build running for the others.
        """
        while self._embeddings is not None:
            generation = self._generation
            if self._indexed_generation == generation:
                return self._vectors
            if self._build_future is None or self._build_generation != generation:
                self._build_generation = generation
                self._build_future = asyncio.ensure_future(self._build_index(generation))
            future = self._build_future
            try:
                vectors = await asyncio.shield(future)
            except asyncio.CancelledError:
                if not future.cancelled():
                    raise
                logger.warning("Capability index build was cancelled, starting a new one")
                if self._build_future is future:
                    self._build_future = None
                continue
            except Exception as e:
                logger.warning(f"Capability index build errored, using keyword search: {e}")
                if self._build_future is future:
                    self._build_future = None
                return None
            if generation == self._generation:
                return vectors
            # Entries or provider changed mid-build
        return None

    # --- Scoring ---

    def _semantic_results(
        self,
        query: str,
        query_vector: list[float],
        vectors: Mapping[str, list[float]],
        entries: list[ToolManifestEntry],
    ) -> list[ToolSearchResult]:
        query_lower = query.lower()
        tier = _query_tier(query)
        results = []
        for entry in entries:
            vector = vectors.get(entry.name)
            if vector is None:
                continue
            score = self._embeddings.similarity(query_vector, vector)
            if query_lower in entry.name.lower():
                score += NAME_MATCH_BONUS
            elif query_lower in entry.description.lower():
                score += DESCRIPTION_MATCH_BONUS
            if tier and _has_tier_tag(entry.description, tier):
                score += SEMANTIC_TIER_BONUS
            if score > SEMANTIC_MIN_SCORE:
                results.append(self._to_result(entry, score))
        return results

    def _keyword_results(self, query: str, entries: list[ToolManifestEntry]) -> list[ToolSearchResult]:
        query_lower = query.lower().strip()
        tier = _query_tier(query)
        results = []
        for entry in entries:
            score = 0.0
            if query_lower and query_lower in entry.name.lower():
                score = KEYWORD_NAME_SCORE
            elif query_lower and query_lower in entry.description.lower():
                score = KEYWORD_DESCRIPTION_SCORE
            elif query_lower and query_lower in entry.category.lower():
                score = KEYWORD_CATEGORY_SCORE
            score += WORD_OVERLAP_WEIGHT * _word_overlap(query_lower, _entry_text(entry).lower())
            if tier and _has_tier_tag(entry.description, tier):
                score += KEYWORD_TIER_BONUS
            if score > 0:
                results.append(self._to_result(entry, score))
        return results

    @staticmethod
    def _to_result(entry: ToolManifestEntry, score: float) -> ToolSearchResult:
        return ToolSearchResult(
            name=entry.name,
            description=entry.description,
            category=entry.category,
            source=entry.source,
            source_id=entry.source_id,
            relevance_score=round(score, 4),
        )

    async def _skill_results(
        self, query: str, tool_config: Mapping[str, bool] | None, limit: int
    ) -> list[ToolSearchResult]:
        if not self._skill_store.available:
            return []
        try:
            skills = await asyncio.to_thread(self._skill_store.search_skills, query, limit)
        except Exception as e:
            logger.warning(f"Skill store search failed, discovery limited to built-ins: {e}")
            return []

        results = []
        for skill in skills:
            name = f"{SKILL_PREFIX}{skill.name}"
            if not is_tool_allowed(tool_config, name):
                continue
            results.append(
                ToolSearchResult(
                    name=name,
                    description=skill.description,
                    category=skill.category,
                    source=ToolSource.SKILL,
                    source_id=skill.id,
                    relevance_score=SKILL_RELEVANCE,
                )
            )
        return results

    async def search(
        self,
        query: str,
        tool_config: Mapping[str, bool] | None = None,
        limit: int = 10,
    ) -> list[ToolSearchResult]:
        """Rank registered tools and stored skills against a query.

        Never raises: embedding and skill store failures degrade to keyword
        scoring and built-ins only.
        """
        allowed = [e for e in self._entries.values() if is_tool_allowed(tool_config, e.name)]

        results: list[ToolSearchResult] | None = None
        vectors = await self._ensure_index()
        if vectors is not None:
            try:
                query_vector = await asyncio.to_thread(self._embeddings.embed, query)
            except Exception as e:
                logger.warning(f"Query embedding failed, using keyword search for this call: {e}")
            else:
                results = self._semantic_results(query, query_vector, vectors, allowed)
        if results is None:
            results = self._keyword_results(query, allowed)

        results.extend(await self._skill_results(query, tool_config, limit))
        results.sort(key=lambda r: r.relevance_score, reverse=True)
        return results[:limit]
