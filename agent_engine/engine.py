"""Wires settings into one running engine: index, router, store, models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from agent_engine.agent import AgentLoop, AgentRunResult
from agent_engine.builtin_tools import register_builtin_tools
from agent_engine.clarification import ClarificationGate
from agent_engine.config import EngineSettings, get_settings
from agent_engine.embeddings import SharedEmbeddingHandle, get_shared_embeddings
from agent_engine.events import EventLog
from agent_engine.executor import HttpWorkerDispatcher, ToolExecutor
from agent_engine.indexer import ToolIndex
from agent_engine.llm import CompletionClient, OllamaCompletionClient
from agent_engine.meta_tools import MetaToolDispatcher, Orchestration, TierControl
from agent_engine.policies import AgentRole
from agent_engine.prompt_engine import ORCHESTRATOR_PROMPT
from agent_engine.schemas import Tier, ToolContext
from agent_engine.store import EngineStore, create_store
from agent_engine.subagents import AgentSubAgentRunner

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Everything a session needs, shared across sessions."""

    settings: EngineSettings
    index: ToolIndex
    executor: ToolExecutor
    store: EngineStore
    completion: CompletionClient
    clarification: ClarificationGate
    events: EventLog = field(default_factory=EventLog)
    embedding_handle: SharedEmbeddingHandle | None = None
    session_tiers: dict[str, Tier] = field(default_factory=dict)

    def tier_control(self, session_id: str) -> TierControl:
        """Tier getter/setter backed by the per-session tier table."""

        def get() -> Tier:
            return self.session_tiers.get(session_id, Tier.STANDARD)

        def set_(tier: Tier) -> None:
            self.session_tiers[session_id] = tier

        return TierControl(get=get, set=set_)

    def sub_agent_dispatcher(
        self,
        agent_id: str,
        context: ToolContext,
        tool_config: Mapping[str, bool] | None = None,
    ) -> MetaToolDispatcher:
        """Dispatch layer for a sub-agent: no orchestration, no clarification."""
        return MetaToolDispatcher(
            self.index,
            self.executor,
            self.store,
            role=AgentRole.SUB_AGENT,
            context=context.model_copy(update={"agent_id": agent_id}),
            tool_config=tool_config,
            discovery_limit=self.settings.discovery_limit,
        )

    def dispatcher(
        self,
        session_id: str,
        user_id: str | None = None,
        team_id: str | None = None,
        tool_config: Mapping[str, bool] | None = None,
        tier: TierControl | None = None,
    ) -> MetaToolDispatcher:
        """Orchestrator dispatch layer for one session."""
        context = ToolContext(session_id=session_id, user_id=user_id, team_id=team_id)
        runner = AgentSubAgentRunner(
            self.completion,
            lambda agent_id: self.sub_agent_dispatcher(agent_id, context, tool_config),
            max_iterations=self.settings.sub_agent_max_iterations,
        )
        orchestration = Orchestration(
            runner=runner,
            max_concurrent=self.settings.max_concurrent_subagents,
            flush_chars=self.settings.stream_flush_chars,
            flush_interval=self.settings.stream_flush_interval,
        )
        return MetaToolDispatcher(
            self.index,
            self.executor,
            self.store,
            role=AgentRole.ORCHESTRATOR,
            context=context,
            tool_config=tool_config,
            orchestration=orchestration,
            clarification=self.clarification,
            tier=tier or self.tier_control(session_id),
            emit=self.events.sink(session_id),
            discovery_limit=self.settings.discovery_limit,
        )

    async def run_turn(
        self,
        session_id: str,
        message: str,
        user_id: str | None = None,
        team_id: str | None = None,
        tool_config: Mapping[str, bool] | None = None,
    ) -> AgentRunResult:
        """Run one orchestrator turn for a user message."""
        dispatcher = self.dispatcher(session_id, user_id, team_id, tool_config)
        loop = AgentLoop(
            self.completion,
            dispatcher,
            tier=self.session_tiers.get(session_id, Tier.STANDARD),
            max_iterations=self.settings.orchestrator_max_iterations,
            name=f"orchestrator:{session_id}",
        )
        dispatcher.tier = TierControl(get=loop.get_tier, set=loop.set_tier)

        result = await loop.run([{"role": "user", "content": message}], system_prompt=ORCHESTRATOR_PROMPT)
        self.session_tiers[session_id] = loop.get_tier()
        logger.info(
            f"[{session_id}] turn finished: {result.iterations} iterations, "
            f"{result.tool_calls} tool calls"
        )
        return result

    def close(self) -> None:
        if self.embedding_handle is not None:
            self.embedding_handle.release()
            self.embedding_handle = None


def build_engine(
    settings: EngineSettings | None = None,
    completion: CompletionClient | None = None,
) -> Engine:
    """Build an engine from settings.

    Missing capabilities degrade rather than fail: no embedding backend
    means keyword discovery, an unusable store means the not-configured
    variant.
    """
    settings = settings or get_settings()

    handle = None
    embeddings = None
    if settings.embedding_backend != "none":
        handle = get_shared_embeddings(
            settings.embedding_backend,
            settings.ollama_base_url,
            settings.ollama_embedding_model,
        )
        embeddings = handle.acquire()

    store = create_store(settings.store_enabled, settings.resolved_db_path, embeddings)
    index = ToolIndex(
        embeddings=embeddings,
        skill_store=store if store.available else None,
        batch_size=settings.index_batch_size,
    )

    dispatcher = HttpWorkerDispatcher(settings.worker_url) if settings.worker_url else None
    executor = ToolExecutor(index, dispatcher)
    register_builtin_tools(executor)

    completion = completion or OllamaCompletionClient(
        tier_models=settings.tier_models,
        base_url=settings.ollama_base_url,
        timeout=settings.completion_timeout,
    )

    logger.info(
        f"Engine ready: {len(index)} tools, discovery mode {index.mode}, "
        f"store {'available' if store.available else 'not configured'}"
    )
    return Engine(
        settings=settings,
        index=index,
        executor=executor,
        store=store,
        completion=completion,
        clarification=ClarificationGate(settings.clarification_timeout),
        embedding_handle=handle,
    )


# Global engine instance
_engine: Engine | None = None


def get_engine() -> Engine:
    """Get or create the global engine instance."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine
