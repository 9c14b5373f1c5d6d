"""Access and tier policies for orchestrators and sub-agents."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from agent_engine.schemas import SubAgentTask, Tier


class AgentRole(str, Enum):
    """Who is driving a dispatch layer."""

    ORCHESTRATOR = "orchestrator"
    SUB_AGENT = "sub_agent"


CORE_META_TOOLS = [
    "discover_tools",
    "execute_tool",
    "search_memory",
    "store_memory",
    "manage_goal",
    "update_profile",
    "create_skill",
    "get_current_time",
]
ORCHESTRATION_META_TOOLS = ["delegate_tasks", "ask_user"]


@dataclass
class Policy:
    """Meta-tool access policy for one agent role."""

    role: AgentRole
    description: str
    allowed_meta_tools: list[str] = field(default_factory=list)


POLICIES: dict[AgentRole, Policy] = {
    AgentRole.ORCHESTRATOR: Policy(
        role=AgentRole.ORCHESTRATOR,
        description="Top-level agent; may delegate and ask the user",
        allowed_meta_tools=CORE_META_TOOLS + ORCHESTRATION_META_TOOLS,
    ),
    AgentRole.SUB_AGENT: Policy(
        role=AgentRole.SUB_AGENT,
        description="Delegated section worker; never delegates or blocks on a human",
        allowed_meta_tools=list(CORE_META_TOOLS),
    ),
}


def get_policy(role: AgentRole) -> Policy:
    """Get policy by role."""
    return POLICIES[role]


def is_meta_tool_allowed(role: AgentRole, tool_name: str) -> bool:
    """Check if a meta-tool may be handed to an agent with the given role."""
    return tool_name in get_policy(role).allowed_meta_tools


def is_tool_allowed(tool_config: Mapping[str, bool] | None, tool_name: str) -> bool:
    """Apply ToolConfig allow-list semantics.

    An empty or missing config allows everything; otherwise only names
    explicitly mapped to True are allowed.
    """
    if not tool_config:
        return True
    return tool_config.get(tool_name) is True


# --- Tier selection ---

HEAVY_SIGNALS = (
    "synthesize",
    "analyze deeply",
    "compare and contrast",
    "creative",
    "executive summary",
    "strategic",
    "comprehensive analysis",
)
FAST_SIGNALS = (
    "list",
    "extract",
    "lookup",
    "fetch",
    "format",
    "count",
    "simple",
    "summarize briefly",
    "check if",
)
SHORT_DESCRIPTION_CHARS = 80


def auto_select_tier(task: SubAgentTask) -> Tier:
    """Pick the cheapest tier likely to handle a sub-agent task."""
    if task.tier is not None:
        return task.tier

    desc = task.description.lower()
    if any(signal in desc for signal in HEAVY_SIGNALS):
        return Tier.HEAVY
    if any(signal in desc for signal in FAST_SIGNALS):
        return Tier.FAST
    if len(desc) < SHORT_DESCRIPTION_CHARS and len(task.tool_hints) <= 1:
        return Tier.FAST
    return Tier.STANDARD
