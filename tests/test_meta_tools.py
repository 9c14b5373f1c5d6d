"""Tests for the meta-tool dispatch layer."""

import asyncio

import pytest

from agent_engine.builtin_tools import register_builtin_tools
from agent_engine.clarification import ClarificationGate
from agent_engine.events import ClarificationRequestEvent, OutlineEvent, SectionCompleteEvent, SectionStartedEvent
from agent_engine.executor import ToolExecutor
from agent_engine.indexer import ToolIndex
from agent_engine.meta_tools import MetaToolDispatcher, Orchestration, TierControl
from agent_engine.policies import ORCHESTRATION_META_TOOLS, AgentRole
from agent_engine.schemas import Tier, ToolContext
from agent_engine.store import NotConfiguredStore
from agent_engine.subagents import SchedulerError

from tests.conftest import ScriptedRunner, TierRecorder


SECTIONS = [
    {"id": "a", "title": "Market size"},
    {"id": "b", "title": "Competitors", "dependsOn": ["a"]},
]


@pytest.fixture
def router():
    router = ToolExecutor(ToolIndex())
    register_builtin_tools(router)
    return router


@pytest.fixture
def make_dispatcher(router, sqlite_store):
    """Build a dispatcher over the built-in router and a temp SQLite store."""

    def make(**kwargs):
        kwargs.setdefault("store", sqlite_store)
        kwargs.setdefault("context", ToolContext(session_id="s1", user_id="u1", team_id="t1"))
        return MetaToolDispatcher(router.index, router, **kwargs)

    return make


def tier_control(recorder: TierRecorder) -> TierControl:
    return TierControl(get=recorder.get, set=recorder.set)


class TestToolSurface:
    """Which meta-tools each role sees."""

    def test_sub_agent_never_gets_orchestration_tools(self, make_dispatcher):
        """Even with orchestration wiring present, a sub-agent cannot delegate or ask."""
        dispatcher = make_dispatcher(
            role=AgentRole.SUB_AGENT,
            orchestration=Orchestration(runner=ScriptedRunner()),
            clarification=ClarificationGate(),
            tier=tier_control(TierRecorder()),
        )

        names = {d["name"] for d in dispatcher.definitions()}
        assert names.isdisjoint(ORCHESTRATION_META_TOOLS)
        assert "discover_tools" in names

    def test_orchestrator_needs_wiring_for_orchestration_tools(self, make_dispatcher):
        assert "delegate_tasks" not in make_dispatcher().available_tools()

        wired = make_dispatcher(
            orchestration=Orchestration(runner=ScriptedRunner()),
            clarification=ClarificationGate(),
            tier=tier_control(TierRecorder()),
        )
        assert {"delegate_tasks", "ask_user"} <= set(wired.available_tools())

    def test_definitions_carry_schemas(self, make_dispatcher):
        for definition in make_dispatcher().definitions():
            assert definition["input_schema"]["type"] == "object"
            assert definition["description"]

    @pytest.mark.asyncio
    async def test_unknown_meta_tool(self, make_dispatcher):
        result = await make_dispatcher(role=AgentRole.SUB_AGENT).dispatch("delegate_tasks", {})
        assert not result.success
        assert 'Unknown tool "delegate_tasks"' in result.output

    @pytest.mark.asyncio
    async def test_invalid_input(self, make_dispatcher):
        result = await make_dispatcher().dispatch("discover_tools", {})
        assert not result.success
        assert result.output.startswith("Invalid input for discover_tools: query")


class TestDiscoverAndExecute:
    """discover_tools and execute_tool."""

    @pytest.mark.asyncio
    async def test_discover(self, make_dispatcher):
        result = await make_dispatcher().dispatch("discover_tools", {"query": "what time is it"})

        assert result.success
        assert "getDateTime" in result.output
        assert result.data["results"][0]["name"] == "getDateTime"

    @pytest.mark.asyncio
    async def test_discover_respects_tool_config(self, make_dispatcher):
        result = await make_dispatcher(tool_config={"wait": True}).dispatch("discover_tools", {"query": "time"})

        assert all(r["name"] == "wait" for r in result.data["results"])

    @pytest.mark.asyncio
    async def test_execute(self, make_dispatcher):
        result = await make_dispatcher().dispatch(
            "execute_tool", {"tool": "getDateTime", "input": {"timezone": "UTC"}}
        )
        assert result.success

    @pytest.mark.asyncio
    async def test_execute_blocked_by_tool_config(self, make_dispatcher):
        result = await make_dispatcher(tool_config={"wait": True}).dispatch(
            "execute_tool", {"tool": "getDateTime", "input": {}}
        )
        assert not result.success
        assert "not enabled" in result.output

    @pytest.mark.asyncio
    async def test_execute_unknown_tool(self, make_dispatcher):
        result = await make_dispatcher().dispatch("execute_tool", {"tool": "teleport", "input": {}})
        assert not result.success
        assert 'Unknown tool "teleport"' in result.output

    @pytest.mark.asyncio
    async def test_execute_skill_returns_instructions(self, make_dispatcher, sqlite_store):
        sqlite_store.create_skill("Weekly Report", "Write the weekly report", "writing", "1. Gather\n2. Write")

        result = await make_dispatcher().dispatch("execute_tool", {"tool": "skill:weekly report", "input": {}})

        assert result.success
        assert result.output.startswith("# Skill: Weekly Report")
        assert "1. Gather" in result.output
        assert sqlite_store.get_skill_by_name("Weekly Report").usage_count == 1

    @pytest.mark.asyncio
    async def test_execute_skill_without_store(self, make_dispatcher):
        result = await make_dispatcher(store=NotConfiguredStore()).dispatch(
            "execute_tool", {"tool": "skill:anything", "input": {}}
        )
        assert not result.success
        assert "not configured" in result.output


class TestMemoryProfileGoals:
    """Memory, profile and goal meta-tools."""

    @pytest.mark.asyncio
    async def test_search_without_store_is_not_a_failure(self, make_dispatcher):
        result = await make_dispatcher(store=NotConfiguredStore()).dispatch("search_memory", {"query": "x"})
        assert result.success
        assert result.output == "Memory search is not configured."

    @pytest.mark.asyncio
    async def test_store_then_search(self, make_dispatcher):
        dispatcher = make_dispatcher()
        stored = await dispatcher.dispatch(
            "store_memory", {"content": "The launch date is March 3", "type": "fact", "scope": "team"}
        )
        assert stored.success

        found = await dispatcher.dispatch("search_memory", {"query": "launch date"})
        assert "- [team/fact] The launch date is March 3" in found.output

    @pytest.mark.asyncio
    async def test_search_nothing_found(self, make_dispatcher):
        result = await make_dispatcher().dispatch("search_memory", {"query": "unicorns"})
        assert result.success
        assert result.output == "No matching memories found."

    @pytest.mark.asyncio
    async def test_personal_memory_requires_user(self, make_dispatcher):
        result = await make_dispatcher(context=ToolContext(session_id="s1")).dispatch(
            "store_memory", {"content": "secret", "scope": "personal"}
        )
        assert not result.success
        assert "without a personal context" in result.output

    @pytest.mark.asyncio
    async def test_deep_search_labels_confidence(self, make_dispatcher):
        dispatcher = make_dispatcher()
        await dispatcher.dispatch("store_memory", {"content": "Budget approved for Q3", "scope": "global"})

        result = await dispatcher.dispatch("search_memory", {"query": "budget", "scope": "global", "deep": True})

        assert "- [global/high] Budget approved for Q3" in result.output

    @pytest.mark.asyncio
    async def test_invalid_scope(self, make_dispatcher):
        result = await make_dispatcher().dispatch("search_memory", {"query": "x", "scope": "galaxy"})
        assert not result.success

    @pytest.mark.asyncio
    async def test_update_profile(self, make_dispatcher):
        dispatcher = make_dispatcher()

        created = await dispatcher.dispatch("update_profile", {"key": "role", "value": "analyst", "confidence": 7})
        updated = await dispatcher.dispatch("update_profile", {"key": "role", "value": "lead"})

        assert created.data["created"] is True
        assert "(confidence: 1.0)" in created.output
        assert updated.data["created"] is False
        assert "Profile updated" in updated.output

    @pytest.mark.asyncio
    async def test_update_profile_requires_user(self, make_dispatcher):
        result = await make_dispatcher(context=ToolContext()).dispatch("update_profile", {"key": "k", "value": "v"})
        assert not result.success

    @pytest.mark.asyncio
    async def test_goal_complete_by_description(self, make_dispatcher, sqlite_store):
        dispatcher = make_dispatcher()
        created = await dispatcher.dispatch("manage_goal", {"action": "create", "description": "Ship the v2 API"})
        assert created.success

        done = await dispatcher.dispatch("manage_goal", {"action": "complete", "description": "v2 api"})

        assert done.success
        assert done.data["status"] == "completed"
        assert sqlite_store.list_active_goals() == []

    @pytest.mark.asyncio
    async def test_goal_update_by_id_records_change(self, make_dispatcher, store_db_path):
        import sqlite3

        dispatcher = make_dispatcher()
        created = await dispatcher.dispatch("manage_goal", {"action": "create", "description": "Ship v2"})

        updated = await dispatcher.dispatch(
            "manage_goal", {"action": "update", "id": created.data["id"], "description": "Ship v2 by June"}
        )

        assert updated.success
        assert '"Ship v2 by June"' in updated.output
        with sqlite3.connect(store_db_path) as conn:
            rows = conn.execute("SELECT previous_description, new_description FROM goal_updates").fetchall()
        assert rows == [("Ship v2", "Ship v2 by June")]

    @pytest.mark.asyncio
    async def test_goal_not_found(self, make_dispatcher):
        dispatcher = make_dispatcher()
        await dispatcher.dispatch("manage_goal", {"action": "create", "description": "Ship v2"})

        by_id = await dispatcher.dispatch("manage_goal", {"action": "pause", "id": "missing"})
        by_text = await dispatcher.dispatch("manage_goal", {"action": "pause", "description": "learn piano"})
        neither = await dispatcher.dispatch("manage_goal", {"action": "pause"})

        assert not by_id.success
        assert "Available goals" in by_text.output
        assert "Goal ID is required" in neither.output

    @pytest.mark.asyncio
    async def test_create_skill(self, make_dispatcher, sqlite_store):
        dispatcher = make_dispatcher(context=ToolContext(agent_id="sub-agent:a"))
        params = {
            "name": "ETF Analysis",
            "description": "Analyze an ETF",
            "category": "finance",
            "instructions": "Step 1",
            "codeSnippet": "print(1)",
        }

        first = await dispatcher.dispatch("create_skill", params)
        second = await dispatcher.dispatch("create_skill", params)

        assert first.success
        assert "skill:ETF Analysis" in first.output
        skill = sqlite_store.get_skill_by_name("ETF Analysis")
        assert skill.created_by == "agent:sub-agent:a"
        assert skill.code == "print(1)"
        assert not second.success
        assert "already exists" in second.output

    @pytest.mark.asyncio
    async def test_get_current_time(self, make_dispatcher):
        result = await make_dispatcher().dispatch("get_current_time", {"timezone": "Nowhere/Special"})
        assert result.success
        assert "not recognized" in result.output


class TestDelegateTasks:
    """delegate_tasks: validation, report and tier handling."""

    @pytest.fixture
    def events(self):
        return []

    def _dispatcher(self, make_dispatcher, events, recorder, runner=None):
        return make_dispatcher(
            orchestration=Orchestration(runner=runner or ScriptedRunner()),
            tier=tier_control(recorder),
            emit=events.append,
        )

    @pytest.mark.asyncio
    async def test_report_contains_sections_and_statuses(self, make_dispatcher, events):
        recorder = TierRecorder()
        dispatcher = self._dispatcher(make_dispatcher, events, recorder)

        result = await dispatcher.dispatch("delegate_tasks", {"reportTitle": "Market study", "sections": SECTIONS})

        assert result.success
        assert "# Market study" in result.output
        assert "## Market size\nStatus: complete" in result.output
        assert "## Competitors\nStatus: complete" in result.output
        assert result.data["completed"] == 2
        assert isinstance(events[0], OutlineEvent)
        assert [e.section_id for e in events if isinstance(e, SectionStartedEvent)] == ["a", "b"]
        assert [e.completed for e in events if isinstance(e, SectionCompleteEvent)] == [1, 2]

    @pytest.mark.asyncio
    async def test_tier_restored_once_after_success(self, make_dispatcher, events):
        recorder = TierRecorder(Tier.STANDARD)
        dispatcher = self._dispatcher(make_dispatcher, events, recorder)

        await dispatcher.dispatch("delegate_tasks", {"reportTitle": "R", "sections": SECTIONS})

        assert recorder.sets == [Tier.HEAVY, Tier.STANDARD]
        assert recorder.tier == Tier.STANDARD

    @pytest.mark.asyncio
    async def test_tier_restored_once_after_failure(self, make_dispatcher, events):
        class BrokenRunner:
            async def run(self, task, tier, context, on_token, on_section):
                raise SchedulerError("no event loop capacity")

        recorder = TierRecorder(Tier.FAST)
        dispatcher = self._dispatcher(make_dispatcher, events, recorder, BrokenRunner())

        result = await dispatcher.dispatch("delegate_tasks", {"reportTitle": "R", "sections": SECTIONS})

        assert not result.success
        assert result.output.startswith("Delegation failed:")
        assert recorder.sets.count(Tier.FAST) == 1
        assert recorder.sets[-1] == Tier.FAST

    @pytest.mark.asyncio
    async def test_already_heavy_is_not_escalated(self, make_dispatcher, events):
        recorder = TierRecorder(Tier.HEAVY)
        dispatcher = self._dispatcher(make_dispatcher, events, recorder)

        await dispatcher.dispatch("delegate_tasks", {"reportTitle": "R", "sections": SECTIONS})

        assert recorder.sets == [Tier.HEAVY]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", [(0, 1), (1, 0)])
    async def test_cycle_rejected_before_side_effects(self, make_dispatcher, events, order):
        recorder = TierRecorder()
        runner = ScriptedRunner()
        dispatcher = self._dispatcher(make_dispatcher, events, recorder, runner)
        cyclic = [
            {"id": "a", "title": "A", "dependsOn": ["b"]},
            {"id": "b", "title": "B", "dependsOn": ["a"]},
        ]

        result = await dispatcher.dispatch(
            "delegate_tasks", {"reportTitle": "R", "sections": [cyclic[i] for i in order]}
        )

        assert not result.success
        assert "Circular dependency" in result.output
        assert recorder.sets == []
        assert events == []
        assert runner.contexts == {}

    @pytest.mark.asyncio
    async def test_empty_sections_rejected(self, make_dispatcher, events):
        dispatcher = self._dispatcher(make_dispatcher, events, TierRecorder())
        result = await dispatcher.dispatch("delegate_tasks", {"reportTitle": "R", "sections": []})
        assert not result.success

    @pytest.mark.asyncio
    async def test_failed_section_marked_in_report(self, make_dispatcher, events):
        recorder = TierRecorder()
        dispatcher = self._dispatcher(make_dispatcher, events, recorder, ScriptedRunner(fail={"a"}))

        result = await dispatcher.dispatch("delegate_tasks", {"reportTitle": "R", "sections": SECTIONS})

        assert result.success
        assert "## Market size\nStatus: failed" in result.output
        assert result.data["failed"] == 1


class TestAskUser:
    """ask_user: blocking wait, answers and timeout."""

    @pytest.mark.asyncio
    async def test_timeout_proceeds_with_defaults(self, make_dispatcher):
        recorder = TierRecorder(Tier.STANDARD)
        dispatcher = make_dispatcher(clarification=ClarificationGate(timeout=0.05), tier=tier_control(recorder))

        result = await dispatcher.dispatch("ask_user", {"questions": [{"id": "q1", "prompt": "Which market?"}]})

        assert result.success
        assert "proceed with reasonable defaults" in result.output
        assert result.data == {"timed_out": True}
        assert recorder.sets == [Tier.HEAVY, Tier.STANDARD]

    @pytest.mark.asyncio
    async def test_answers_are_mapped_to_labels(self, make_dispatcher):
        gate = ClarificationGate(timeout=5)
        events = []

        def emit(event):
            events.append(event)
            if isinstance(event, ClarificationRequestEvent):
                asyncio.get_running_loop().call_soon(gate.resolve, event.session_id, {"q1": "eu"})

        dispatcher = make_dispatcher(clarification=gate, tier=tier_control(TierRecorder()), emit=emit)
        questions = [
            {
                "id": "q1",
                "prompt": "Which market?",
                "options": [{"id": "eu", "label": "Europe"}, {"id": "us", "label": "United States"}],
            }
        ]

        result = await dispatcher.dispatch("ask_user", {"questions": questions})

        assert result.success
        assert "Q: Which market?\nA: Europe" in result.output
        assert "Proceed immediately" in result.output
        assert events[0].session_id == "s1"

    @pytest.mark.asyncio
    async def test_requires_session(self, make_dispatcher):
        dispatcher = make_dispatcher(context=ToolContext(), clarification=ClarificationGate(timeout=0.05))
        result = await dispatcher.dispatch("ask_user", {"questions": [{"id": "q1", "prompt": "?"}]})
        assert not result.success

    @pytest.mark.asyncio
    async def test_emit_failure_leaves_nothing_pending(self, make_dispatcher):
        """A question batch that cannot be delivered is not left waiting for answers."""
        gate = ClarificationGate(timeout=5)
        recorder = TierRecorder(Tier.STANDARD)

        def emit(event):
            raise RuntimeError("channel closed")

        dispatcher = make_dispatcher(clarification=gate, tier=tier_control(recorder), emit=emit)

        result = await dispatcher.dispatch("ask_user", {"questions": [{"id": "q1", "prompt": "Which?"}]})

        assert not result.success
        assert "channel closed" in result.output
        assert not gate.is_pending("s1")
        assert not gate.resolve("s1", {"q1": "yes"})
        assert recorder.sets == [Tier.HEAVY, Tier.STANDARD]
