"""Meta-tool dispatch layer: the only operations a model sees."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ValidationError

from agent_engine.builtin_tools import format_current_time
from agent_engine.clarification import ClarificationGate
from agent_engine.events import ClarificationRequestEvent, EventProgress, EventSink, OutlineEvent, OutlineSection
from agent_engine.executor import ToolExecutor
from agent_engine.indexer import ToolIndex
from agent_engine.policies import AgentRole, get_policy, is_tool_allowed
from agent_engine.prompt_engine import (
    CLARIFICATION_TIMEOUT_MESSAGE,
    build_report,
    format_clarification_answers,
    format_discovery,
    format_skill,
    report_metadata,
)
from agent_engine.schemas import (
    SKILL_PREFIX,
    AskUserInput,
    CreateSkillInput,
    DelegateTasksInput,
    DiscoverToolsInput,
    ExecuteToolInput,
    GetCurrentTimeInput,
    GoalAction,
    GoalRecord,
    GoalStatus,
    ManageGoalInput,
    MemoryScope,
    SearchMemoryInput,
    StoreMemoryInput,
    Tier,
    ToolContext,
    ToolResult,
    UpdateProfileInput,
)
from agent_engine.store import EngineStore, NotConfiguredStore, StoreUnavailableError
from agent_engine.subagents import DagExecutor, DelegationConfigError, SubAgentRunner, resolve_dependencies

logger = logging.getLogger(__name__)

MEMORY_RESULTS_PER_SCOPE = 5
DEEP_SEARCH_LIMIT = 8
DEEP_SEARCH_HOPS = 3
PROFILE_RESULTS = 5
EPISODE_RESULTS = 3
EPISODE_MIN_SIMILARITY = 0.3
ACTIVE_GOAL_SCAN = 50


@dataclass
class TierControl:
    """Getter/setter for the orchestrating agent's model tier."""

    get: Callable[[], Tier]
    set: Callable[[Tier], None]


@dataclass
class Orchestration:
    """What delegate_tasks needs to fan out into sub-agents."""

    runner: SubAgentRunner
    max_concurrent: int = 10
    flush_chars: int = 50
    flush_interval: float = 0.1


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


META_TOOL_DEFINITIONS: dict[str, dict[str, Any]] = {
    "discover_tools": {
        "description": (
            "Search for available tools and skills by describing what you need. "
            "Use this BEFORE execute_tool to find the right tool for a task."
        ),
        "input_schema": _schema(
            {"query": {"type": "string", "description": "Natural-language description of the capability you need."}},
            ["query"],
        ),
    },
    "execute_tool": {
        "description": (
            "Execute a discovered tool by name. For skills, use the name returned by "
            'discover_tools (e.g. "skill:ETF Analysis").'
        ),
        "input_schema": _schema(
            {
                "tool": {"type": "string", "description": "The exact tool name from discover_tools results."},
                "input": {"type": "object", "description": "Input parameters for the tool."},
            },
            ["tool", "input"],
        ),
    },
    "search_memory": {
        "description": (
            "Search persistent memory: facts, knowledge, profile and past conversations across personal, "
            "team and global scopes. Set deep=true for multi-hop associative recall."
        ),
        "input_schema": _schema(
            {
                "query": {"type": "string"},
                "scope": {"type": "string", "description": '"personal", "team", "global", or omit for all.'},
                "deep": {"type": "boolean"},
            },
            ["query"],
        ),
    },
    "store_memory": {
        "description": "Store information worth remembering across sessions.",
        "input_schema": _schema(
            {
                "content": {"type": "string"},
                "type": {"type": "string", "enum": ["knowledge", "decision", "fact", "pattern"]},
                "scope": {"type": "string", "enum": ["personal", "team", "global"]},
                "importance": {"type": "number", "description": "0.0 to 1.0, defaults to 0.5."},
            },
            ["content"],
        ),
    },
    "manage_goal": {
        "description": "Create, update, complete or pause a tracked goal.",
        "input_schema": _schema(
            {
                "action": {"type": "string", "enum": ["create", "update", "complete", "pause"]},
                "id": {"type": "string"},
                "description": {"type": "string"},
                "priority": {"type": "string"},
                "scope": {"type": "string", "enum": ["personal", "team"]},
            },
            ["action"],
        ),
    },
    "update_profile": {
        "description": "Store or update a keyed fact about the user.",
        "input_schema": _schema(
            {"key": {"type": "string"}, "value": {"type": "string"}, "confidence": {"type": "number"}},
            ["key", "value"],
        ),
    },
    "create_skill": {
        "description": "Save a reusable step-by-step procedure to the skill library.",
        "input_schema": _schema(
            {
                "name": {"type": "string"},
                "description": {"type": "string"},
                "category": {"type": "string"},
                "instructions": {"type": "string"},
                "codeSnippet": {"type": "string"},
            },
            ["name", "description", "category", "instructions"],
        ),
    },
    "get_current_time": {
        "description": "Get the current date, time, day of week and timezone.",
        "input_schema": _schema({"timezone": {"type": "string", "description": "Optional IANA timezone."}}, []),
    },
    "delegate_tasks": {
        "description": (
            "Split a large request into report sections researched in parallel by sub-agents. "
            "Sections may depend on other sections by id."
        ),
        "input_schema": _schema(
            {
                "reportTitle": {"type": "string"},
                "sections": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string"},
                            "title": {"type": "string"},
                            "description": {"type": "string"},
                            "dependsOn": {"type": "array", "items": {"type": "string"}},
                            "tier": {"type": "string", "enum": ["fast", "standard", "heavy"]},
                            "toolHints": {"type": "array", "items": {"type": "string"}},
                        },
                        "required": ["id", "title"],
                    },
                },
            },
            ["reportTitle", "sections"],
        ),
    },
    "ask_user": {
        "description": "Ask the user one batch of clarifying questions and wait for the answers.",
        "input_schema": _schema(
            {
                "questions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string"},
                            "prompt": {"type": "string"},
                            "options": {"type": "array", "items": {"type": "object"}},
                            "allowFreeText": {"type": "boolean"},
                        },
                        "required": ["id", "prompt"],
                    },
                },
            },
            ["questions"],
        ),
    },
}


def _validation_message(tool_name: str, error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "input"
        problems.append(f"{location}: {item['msg']}")
    return f"Invalid input for {tool_name}: " + "; ".join(problems)


def _format_day(value) -> str:
    return f"{value.strftime('%b')} {value.day}"


class MetaToolDispatcher:
    """Validates and routes meta-tool calls for one agent.

    delegate_tasks is offered only with an orchestration context and a tier
    control; ask_user only with a clarification gate. Neither is ever offered
    to the SUB_AGENT role. Every call returns a ToolResult.
    """

    def __init__(
        self,
        index: ToolIndex,
        executor: ToolExecutor,
        store: EngineStore | None = None,
        role: AgentRole = AgentRole.ORCHESTRATOR,
        context: ToolContext | None = None,
        tool_config: Mapping[str, bool] | None = None,
        orchestration: Orchestration | None = None,
        clarification: ClarificationGate | None = None,
        tier: TierControl | None = None,
        emit: EventSink | None = None,
        discovery_limit: int = 10,
    ):
        self.index = index
        self.executor = executor
        self.store = store or NotConfiguredStore()
        self.role = role
        self.context = context or ToolContext()
        self.tool_config = dict(tool_config or {})
        self.orchestration = orchestration
        self.clarification = clarification
        self.tier = tier
        self.emit = emit
        self.discovery_limit = discovery_limit

        self._handlers: dict[str, tuple[type[BaseModel], Callable[[Any], Awaitable[ToolResult]]]] = {
            "discover_tools": (DiscoverToolsInput, self._discover_tools),
            "execute_tool": (ExecuteToolInput, self._execute_tool),
            "search_memory": (SearchMemoryInput, self._search_memory),
            "store_memory": (StoreMemoryInput, self._store_memory),
            "manage_goal": (ManageGoalInput, self._manage_goal),
            "update_profile": (UpdateProfileInput, self._update_profile),
            "create_skill": (CreateSkillInput, self._create_skill),
            "get_current_time": (GetCurrentTimeInput, self._get_current_time),
            "delegate_tasks": (DelegateTasksInput, self._delegate_tasks),
            "ask_user": (AskUserInput, self._ask_user),
        }

    def available_tools(self) -> list[str]:
        names = []
        for name in get_policy(self.role).allowed_meta_tools:
            if name == "delegate_tasks" and (self.orchestration is None or self.tier is None):
                continue
            if name == "ask_user" and self.clarification is None:
                continue
            names.append(name)
        return names

    def definitions(self) -> list[dict[str, Any]]:
        return [{"name": name, **META_TOOL_DEFINITIONS[name]} for name in self.available_tools()]

    async def dispatch(self, name: str, tool_input: dict[str, Any] | None) -> ToolResult:
        if name not in self.available_tools():
            return ToolResult(
                success=False,
                output=f'Unknown tool "{name}". Use discover_tools to find available tools, then execute_tool to run them.',
            )

        model, handler = self._handlers[name]
        try:
            params = model.model_validate(tool_input or {})
        except ValidationError as e:
            return ToolResult(success=False, output=_validation_message(name, e))

        try:
            return await handler(params)
        except StoreUnavailableError as e:
            return ToolResult(success=False, output=str(e))
        except Exception as e:
            logger.warning(f"Meta-tool {name} failed: {e}", exc_info=True)
            return ToolResult(success=False, output=f"{name} failed: {e}")

    async def _call_store(self, method: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(method, *args)

    # --- Discovery and execution ---

    async def _discover_tools(self, params: DiscoverToolsInput) -> ToolResult:
        results = await self.index.search(params.query, self.tool_config, self.discovery_limit)
        return ToolResult(
            success=True,
            output=format_discovery(params.query, results),
            data={"results": [r.model_dump(mode="json") for r in results]},
        )

    async def _execute_tool(self, params: ExecuteToolInput) -> ToolResult:
        if not is_tool_allowed(self.tool_config, params.tool):
            return ToolResult(success=False, output=f'Tool "{params.tool}" is not enabled for this agent.')
        if params.tool.startswith(SKILL_PREFIX):
            return await self._execute_skill(params.tool[len(SKILL_PREFIX):].strip())
        return await self.executor.execute(params.tool, params.input, self.context)

    async def _execute_skill(self, name: str) -> ToolResult:
        if not self.store.available:
            return ToolResult(success=False, output="The skill library is not configured on this host.")
        skill = await self._call_store(self.store.get_skill_by_name, name)
        if skill is None:
            return ToolResult(success=False, output=f'Skill "{name}" not found.')
        await self._call_store(self.store.increment_usage, skill.id)
        return ToolResult(success=True, output=format_skill(skill), data={"skill_id": skill.id})

    # --- Memory, profile, goals, skills ---

    def _scope_owner(self, scope: MemoryScope) -> str | None:
        if scope == MemoryScope.PERSONAL:
            return self.context.user_id
        if scope == MemoryScope.TEAM:
            return self.context.team_id
        return None

    async def _search_memory(self, params: SearchMemoryInput) -> ToolResult:
        if not self.store.available:
            return ToolResult(success=True, output="Memory search is not configured.")

        requested = (params.scope or "").lower()
        if requested and requested != "all":
            try:
                scopes = [MemoryScope(requested)]
            except ValueError:
                return ToolResult(success=False, output="Scope must be one of: personal, team, global.")
        else:
            scopes = [MemoryScope.PERSONAL, MemoryScope.TEAM, MemoryScope.GLOBAL]

        lines: list[str] = []
        for scope in scopes:
            owner = self._scope_owner(scope)
            if scope != MemoryScope.GLOBAL and owner is None:
                continue
            try:
                if params.deep:
                    memories = await self._call_store(
                        self.store.deep_search, params.query, scope, owner, DEEP_SEARCH_LIMIT, DEEP_SEARCH_HOPS
                    )
                    for m in memories:
                        confidence = "high" if m.score >= 0.7 else "medium" if m.score >= 0.4 else "low"
                        lines.append(f"- [{scope.value}/{confidence}] {m.content}")
                else:
                    memories = await self._call_store(
                        self.store.search_memories, params.query, scope, owner, MEMORY_RESULTS_PER_SCOPE
                    )
                    lines.extend(f"- [{scope.value}/{m.type.value}] {m.content}" for m in memories)
            except Exception as e:
                logger.warning(f"Memory search in {scope.value} scope failed: {e}")

        if self.context.user_id:
            try:
                entries = await self._call_store(
                    self.store.search_profile, self.context.user_id, params.query, PROFILE_RESULTS
                )
                lines.extend(f"- [profile] {p.key}: {p.value}" for p in entries)
            except Exception as e:
                logger.warning(f"Profile search failed: {e}")

        try:
            episodes = await self._call_store(
                self.store.search_episodes, params.query, self.context.user_id, self.context.team_id, EPISODE_RESULTS
            )
        except Exception as e:
            logger.debug(f"Episodic search failed: {e}")
            episodes = []
        for ep in episodes:
            if ep.similarity <= EPISODE_MIN_SIMILARITY:
                continue
            topics = f" Topics: {', '.join(ep.topics)}." if ep.topics else ""
            decisions = f" Decisions: {'; '.join(ep.decisions)}." if ep.decisions else ""
            lines.append(f"- [episode/{_format_day(ep.period_start)}] {ep.summary}{topics}{decisions}")

        if not lines:
            return ToolResult(success=True, output="No matching memories found.")
        return ToolResult(success=True, output="\n".join(lines), data={"count": len(lines)})

    async def _store_memory(self, params: StoreMemoryInput) -> ToolResult:
        owner = self._scope_owner(params.scope)
        if params.scope != MemoryScope.GLOBAL and owner is None:
            return ToolResult(
                success=False,
                output=f"Cannot store a {params.scope.value} memory without a {params.scope.value} context.",
            )
        if not self.store.available:
            return ToolResult(success=False, output="Memory store is not configured on this host.")

        entry = await self._call_store(
            self.store.store_memory, params.scope, owner, params.type, params.content, params.importance, "explicit"
        )
        logger.info(f"Stored memory {entry.id} (scope={params.scope.value}, type={params.type.value})")
        return ToolResult(
            success=True,
            output=(
                f"Memory stored (id: {entry.id}, type: {params.type.value}, scope: {params.scope.value}, "
                f"importance: {params.importance}). This information will be available in future conversations."
            ),
            data={"id": entry.id},
        )

    async def _update_profile(self, params: UpdateProfileInput) -> ToolResult:
        if not self.context.user_id:
            return ToolResult(success=False, output="No user context to associate profile data with.")
        if not self.store.available:
            return ToolResult(success=False, output="Profile store is not configured on this host.")

        entry, created = await self._call_store(
            self.store.upsert_profile, self.context.user_id, params.key, params.value, params.confidence
        )
        action = "created" if created else "updated"
        return ToolResult(
            success=True,
            output=(
                f'Profile {action}: "{params.key}" = "{params.value}" (confidence: {params.confidence}). '
                "This will be remembered across all conversations."
            ),
            data={"id": entry.id, "created": created},
        )

    async def _manage_goal(self, params: ManageGoalInput) -> ToolResult:
        if not self.store.available:
            return ToolResult(success=False, output="Goal tracking is not configured on this host.")

        if params.action == GoalAction.CREATE:
            if not params.description:
                return ToolResult(success=False, output="Description is required to create a goal.")
            owner = (
                self.context.team_id or self.context.user_id
                if params.scope == MemoryScope.TEAM
                else self.context.user_id
            )
            priority = params.priority or "medium"
            goal = await self._call_store(
                self.store.create_goal, params.description, priority, params.scope, owner, self.context.session_id
            )
            return ToolResult(
                success=True,
                output=f'Goal created (id: {goal.id}, priority: {priority}, scope: {params.scope.value}): "{goal.description}"',
                data={"id": goal.id},
            )

        goal = await self._find_goal(params)
        if isinstance(goal, ToolResult):
            return goal

        status = {GoalAction.COMPLETE: GoalStatus.COMPLETED, GoalAction.PAUSE: GoalStatus.PAUSED}.get(params.action)
        new_description = params.description if params.id and params.description else None
        updated = await self._call_store(
            self.store.update_goal, goal.id, status, new_description, params.priority
        )
        if new_description and new_description != goal.description:
            await self._call_store(
                self.store.record_goal_update, goal.id, goal.description, new_description, self.context.session_id
            )

        verb = {GoalAction.COMPLETE: "completed", GoalAction.PAUSE: "paused"}.get(params.action, "updated")
        return ToolResult(
            success=True,
            output=f'Goal {verb} (id: {goal.id}): "{updated.description}"',
            data={"id": goal.id, "status": updated.status.value},
        )

    async def _find_goal(self, params: ManageGoalInput) -> GoalRecord | ToolResult:
        """Look a goal up by id, or match an active goal by description."""
        if params.id:
            goal = await self._call_store(self.store.get_goal, params.id)
            if goal is None:
                return ToolResult(success=False, output=f'Goal with id "{params.id}" not found.')
            return goal

        if not params.description:
            return ToolResult(
                success=False,
                output=f"Goal ID is required for {params.action.value}. Check the active goals to find the goal ID.",
            )

        goals = await self._call_store(self.store.list_active_goals, ACTIVE_GOAL_SCAN)
        needle = params.description.lower()
        for goal in goals:
            haystack = goal.description.lower()
            if needle in haystack or haystack in needle:
                return goal
        listing = "\n".join(f"- {g.id}: {g.description}" for g in goals)
        return ToolResult(
            success=False,
            output=f'No active goal found matching "{params.description}". Available goals:\n{listing}',
        )

    async def _create_skill(self, params: CreateSkillInput) -> ToolResult:
        if not self.store.available:
            return ToolResult(success=False, output="The skill library is not configured on this host.")

        existing = await self._call_store(self.store.get_skill_by_name, params.name)
        if existing is not None:
            return ToolResult(
                success=False,
                output=(
                    f'A skill named "{params.name}" already exists (id: {existing.id}). '
                    "Choose a different name or update the existing skill."
                ),
            )

        agent_id = self.context.agent_id
        created_by = f"agent:{agent_id}" if agent_id and agent_id != "chat" else "agent"
        skill = await self._call_store(
            self.store.create_skill,
            params.name,
            params.description,
            params.category,
            params.instructions,
            params.code,
            created_by,
        )
        return ToolResult(
            success=True,
            output=(
                f'Skill "{skill.name}" created successfully (id: {skill.id}, category: {skill.category}). '
                f'It is now discoverable via discover_tools and can be loaded with execute_tool using "{SKILL_PREFIX}{skill.name}".'
            ),
            data={"id": skill.id},
        )

    async def _get_current_time(self, params: GetCurrentTimeInput) -> ToolResult:
        return ToolResult(success=True, output=format_current_time(params.timezone))

    # --- Orchestration ---

    async def _delegate_tasks(self, params: DelegateTasksInput) -> ToolResult:
        try:
            resolve_dependencies(params.sections)
        except DelegationConfigError as e:
            return ToolResult(success=False, output=f"Delegation rejected: {e}")

        if self.emit is not None:
            self.emit(
                OutlineEvent(
                    report_title=params.report_title,
                    sections=[
                        OutlineSection(id=s.id, title=s.title, depends_on=s.depends_on) for s in params.sections
                    ],
                )
            )

        executor = DagExecutor(
            self.orchestration.runner,
            progress=EventProgress(self.emit) if self.emit is not None else None,
            max_concurrent=self.orchestration.max_concurrent,
            flush_chars=self.orchestration.flush_chars,
            flush_interval=self.orchestration.flush_interval,
        )

        previous = self.tier.get()
        if previous != Tier.HEAVY:
            self.tier.set(Tier.HEAVY)
        try:
            results = await executor.run(params.sections)
        except Exception as e:
            logger.error(f"Delegation '{params.report_title}' aborted: {e}", exc_info=True)
            return ToolResult(success=False, output=f"Delegation failed: {e}")
        finally:
            self.tier.set(previous)

        added = [section for result in results for section in result.added_sections]
        return ToolResult(
            success=True,
            output=build_report(params.report_title, results, added),
            data=report_metadata(params.report_title, results, added),
        )

    async def _ask_user(self, params: AskUserInput) -> ToolResult:
        session_id = self.context.session_id
        if not session_id:
            return ToolResult(success=False, output="ask_user requires a session to deliver questions to.")

        previous = self.tier.get() if self.tier is not None else None
        if previous is not None and previous != Tier.HEAVY:
            self.tier.set(Tier.HEAVY)
        try:
            waiter = asyncio.ensure_future(self.clarification.wait(session_id))
            try:
                # Let the gate register before the request becomes visible
                await asyncio.sleep(0)
                if self.emit is not None:
                    self.emit(ClarificationRequestEvent(session_id=session_id, questions=params.questions))
                answers = await waiter
            except BaseException:
                waiter.cancel()
                # Unregister before the failure surfaces
                await asyncio.gather(waiter, return_exceptions=True)
                raise
        finally:
            if previous is not None:
                self.tier.set(previous)

        if answers is None:
            return ToolResult(success=True, output=CLARIFICATION_TIMEOUT_MESSAGE, data={"timed_out": True})
        return ToolResult(
            success=True,
            output=format_clarification_answers(params.questions, answers),
            data={"answers": answers},
        )
