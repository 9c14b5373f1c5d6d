"""Iterative completion -> tool call -> tool result loop."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_engine.llm import CompletionClient, TokenCallback, ToolCall
from agent_engine.schemas import Tier, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 25

MAX_ITERATIONS_MESSAGE = (
    "I reached the maximum number of tool-use iterations. Here is what I found so far. "
    "Please try again with a more specific request."
)

INVOKE_BLOCK = re.compile(r'<invoke\s+name="([^"]+)">(.*?)</invoke>', re.DOTALL)
PARAMETER = re.compile(r'<parameter\s+name="([^"]+)">(.*?)</parameter>', re.DOTALL)


class ToolDispatcher(Protocol):
    """What the loop needs from a dispatch layer."""

    def definitions(self) -> list[dict[str, Any]]: ...

    async def dispatch(self, name: str, tool_input: dict[str, Any]) -> ToolResult: ...


@dataclass
class AgentRunResult:
    content: str
    iterations: int
    tool_calls: int = 0
    tools_used: list[str] = field(default_factory=list)


def parse_xml_tool_calls(text: str) -> list[ToolCall]:
    """Recover tool calls a model wrote as <invoke> markup instead of structured calls.

    For execute_tool the `input` parameter is JSON and is nested under the
    inner tool name; other tools take every parameter as an input field.
    """
    calls = []
    for index, match in enumerate(INVOKE_BLOCK.finditer(text)):
        name, body = match.group(1), match.group(2)
        params = {key: value.strip() for key, value in PARAMETER.findall(body)}

        if name == "execute_tool":
            raw_input = params.get("input", "")
            try:
                inner = json.loads(raw_input) if raw_input else {}
            except json.JSONDecodeError:
                inner = {"raw": raw_input}
            calls.append(ToolCall(name=name, input={"tool": params.get("tool", ""), "input": inner}, id=f"xml_{index}"))
            continue

        tool_input: dict[str, Any] = {}
        for key, value in params.items():
            try:
                tool_input[key] = json.loads(value)
            except json.JSONDecodeError:
                tool_input[key] = value
        calls.append(ToolCall(name=name, input=tool_input, id=f"xml_{index}"))
    return calls


def strip_xml_tool_calls(text: str) -> str:
    return INVOKE_BLOCK.sub("", text).strip()


class AgentLoop:
    """Runs one agent turn against a dispatch layer.

    The tier is read on every iteration, so a meta-tool that escalates it
    affects the following completions.
    """

    def __init__(
        self,
        completion: CompletionClient,
        dispatcher: ToolDispatcher,
        tier: Tier = Tier.STANDARD,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        name: str = "agent",
    ):
        self.completion = completion
        self.dispatcher = dispatcher
        self.tier = tier
        self.max_iterations = max_iterations
        self.name = name

    def get_tier(self) -> Tier:
        return self.tier

    def set_tier(self, tier: Tier) -> None:
        if tier != self.tier:
            logger.info(f"[{self.name}] tier {self.tier.value} -> {tier.value}")
        self.tier = tier

    async def run(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str | None = None,
        on_token: TokenCallback | None = None,
    ) -> AgentRunResult:
        working = []
        if system_prompt:
            working.append({"role": "system", "content": system_prompt})
        working.extend(messages)

        tool_calls_count = 0
        tools_used: list[str] = []

        for iteration in range(self.max_iterations):
            response = await self.completion.complete(working, self.dispatcher.definitions(), self.tier, on_token)

            calls = response.tool_calls
            content = response.text
            if not calls and content:
                calls = parse_xml_tool_calls(content)
                if calls:
                    content = strip_xml_tool_calls(content)
                    logger.info(f"[{self.name}] Recovered {len(calls)} tool call(s) from XML text")

            if not calls:
                return AgentRunResult(
                    content=content,
                    iterations=iteration + 1,
                    tool_calls=tool_calls_count,
                    tools_used=tools_used,
                )

            working.append({
                "role": "assistant",
                "content": content,
                "tool_calls": [{"function": {"name": c.name, "arguments": c.input}} for c in calls],
            })

            for call in calls:
                tool_calls_count += 1
                logger.debug(f"[{self.name}] calling {call.name}")
                result = await self.dispatcher.dispatch(call.name, call.input)
                if result.success:
                    used = call.input.get("tool") if call.name == "execute_tool" else call.name
                    if used and used not in tools_used:
                        tools_used.append(used)
                working.append({"role": "tool", "content": result.output, "tool_name": call.name})

        logger.warning(f"[{self.name}] Reached max iterations ({self.max_iterations})")
        return AgentRunResult(
            content=MAX_ITERATIONS_MESSAGE,
            iterations=self.max_iterations,
            tool_calls=tool_calls_count,
            tools_used=tools_used,
        )
