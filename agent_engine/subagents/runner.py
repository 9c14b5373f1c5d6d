"""Sub-agent runners: how one delegated section gets executed."""

from __future__ import annotations

import logging
from typing import Callable, Protocol

from agent_engine.agent import AgentLoop, ToolDispatcher
from agent_engine.llm import CompletionClient, TokenCallback
from agent_engine.prompt_engine import build_sub_agent_message, build_sub_agent_prompt, extract_additional_findings
from agent_engine.schemas import SubAgentResult, SubAgentTask, Tier

logger = logging.getLogger(__name__)

SectionCallback = Callable[[str, str], None]

DEFAULT_SUB_AGENT_ITERATIONS = 10


class SubAgentRunner(Protocol):
    """Executes one section.

    `on_token` receives streamed output; `on_section(title, content)` may be
    called at any point to append a section to the plan.
    """

    async def run(
        self,
        task: SubAgentTask,
        tier: Tier,
        context: str,
        on_token: TokenCallback,
        on_section: SectionCallback,
    ) -> SubAgentResult: ...


class AgentSubAgentRunner:
    """Runs each section as its own agent loop.

    `dispatcher_factory(agent_id)` must build a sub-agent dispatch layer,
    which never carries delegate_tasks or ask_user.
    """

    def __init__(
        self,
        completion: CompletionClient,
        dispatcher_factory: Callable[[str], ToolDispatcher],
        max_iterations: int = DEFAULT_SUB_AGENT_ITERATIONS,
    ):
        self.completion = completion
        self.dispatcher_factory = dispatcher_factory
        self.max_iterations = max_iterations

    async def run(
        self,
        task: SubAgentTask,
        tier: Tier,
        context: str,
        on_token: TokenCallback,
        on_section: SectionCallback,
    ) -> SubAgentResult:
        agent_id = f"sub-agent:{task.id}"
        loop = AgentLoop(
            self.completion,
            self.dispatcher_factory(agent_id),
            tier=tier,
            max_iterations=self.max_iterations,
            name=agent_id,
        )
        outcome = await loop.run(
            [{"role": "user", "content": build_sub_agent_message(task)}],
            system_prompt=build_sub_agent_prompt(task, context),
            on_token=on_token,
        )

        findings = extract_additional_findings(outcome.content)
        if findings:
            on_section("Additional Findings", findings)

        return SubAgentResult(
            task_id=task.id,
            title=task.title,
            success=True,
            content=outcome.content,
            model_used=tier,
            iterations=outcome.iterations,
            tools_used=outcome.tools_used,
        )
