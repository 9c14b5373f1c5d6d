"""Pydantic schemas for the agent engine: manifest, results, tasks, records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Tier(str, Enum):
    """Model quality/cost levels."""

    FAST = "fast"
    STANDARD = "standard"
    HEAVY = "heavy"


class ExecutionTarget(str, Enum):
    """Where a tool runs."""

    LOCAL = "local"
    REMOTE = "remote"


class ToolSource(str, Enum):
    """Origin of a discoverable capability."""

    BUILT_IN = "built-in"
    SKILL = "skill"


class MemoryScope(str, Enum):
    """Visibility scope of memory, profile and goal records."""

    PERSONAL = "personal"
    TEAM = "team"
    GLOBAL = "global"


class MemoryType(str, Enum):
    """Kinds of memory entries."""

    KNOWLEDGE = "knowledge"
    DECISION = "decision"
    FACT = "fact"
    PATTERN = "pattern"


class GoalAction(str, Enum):
    """Actions accepted by manage_goal."""

    CREATE = "create"
    UPDATE = "update"
    COMPLETE = "complete"
    PAUSE = "pause"


class GoalStatus(str, Enum):
    """Goal lifecycle states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


SKILL_PREFIX = "skill:"


# --- Capability registry ---


class ToolManifestEntry(BaseModel):
    """A registered built-in tool."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: str
    category: str
    input_schema: dict[str, Any] = Field(default_factory=dict)
    execution_target: ExecutionTarget = ExecutionTarget.LOCAL
    source: ToolSource = ToolSource.BUILT_IN
    source_id: str | None = None


class ToolSearchResult(BaseModel):
    """A ranked discovery match."""

    name: str
    description: str
    category: str
    source: ToolSource
    source_id: str | None = None
    relevance_score: float


class ToolResult(BaseModel):
    """Uniform result shape for every tool and meta-tool."""

    success: bool
    output: str
    data: dict[str, Any] | None = None


class ToolContext(BaseModel):
    """Caller identity passed through to the execution router."""

    node_id: str = "local"
    agent_id: str = "chat"
    session_id: str | None = None
    user_id: str | None = None
    team_id: str | None = None


# --- Delegation ---


class SubAgentTask(BaseModel):
    """A node in a delegation graph."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: str = ""
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    tier: Tier | None = None
    tool_hints: list[str] = Field(default_factory=list, alias="toolHints")


class AddedSection(BaseModel):
    """A section a sub-agent appended to the plan while running."""

    id: str
    title: str
    content: str


class SubAgentResult(BaseModel):
    """Outcome of one delegation node."""

    task_id: str
    title: str
    success: bool
    content: str
    model_used: Tier
    iterations: int = 0
    tools_used: list[str] = Field(default_factory=list)
    added_sections: list[AddedSection] = Field(default_factory=list)


# --- Clarification ---


class ClarificationOption(BaseModel):
    """A clickable answer choice."""

    id: str
    label: str


class ClarificationQuestion(BaseModel):
    """One question in an ask_user batch."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    options: list[ClarificationOption] = Field(default_factory=list)
    allow_free_text: bool = Field(default=True, alias="allowFreeText")


# --- External store records ---


class SkillRecord(BaseModel):
    """A stored skill."""

    id: str
    name: str
    description: str
    category: str
    instructions: str = ""
    code: str | None = None
    usage_count: int = 0
    is_active: bool = True
    created_by: str = "agent"


class MemoryRecord(BaseModel):
    """A memory entry, optionally annotated with a search score."""

    id: str
    scope: MemoryScope
    owner_id: str | None = None
    type: MemoryType = MemoryType.KNOWLEDGE
    content: str
    importance: float = 0.5
    score: float = 0.0
    hops: int = 0


class EpisodeSummary(BaseModel):
    """A summarized conversation period."""

    summary: str
    period_start: datetime
    period_end: datetime | None = None
    topics: list[str] = Field(default_factory=list)
    decisions: list[str] = Field(default_factory=list)
    similarity: float = 0.0


class ProfileEntry(BaseModel):
    """A keyed fact about a user."""

    id: str
    user_id: str
    key: str
    value: str
    confidence: float = 0.8


class GoalRecord(BaseModel):
    """A tracked goal."""

    id: str
    description: str
    priority: str = "medium"
    status: GoalStatus = GoalStatus.ACTIVE
    scope: MemoryScope = MemoryScope.PERSONAL
    scope_owner_id: str | None = None
    source_session_id: str | None = None


# --- Meta-tool inputs ---


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


class _MetaInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class DiscoverToolsInput(_MetaInput):
    query: str = Field(..., min_length=1)


class ExecuteToolInput(_MetaInput):
    tool: str = Field(..., min_length=1)
    input: dict[str, Any] = Field(default_factory=dict)


class SearchMemoryInput(_MetaInput):
    query: str = Field(..., min_length=1)
    scope: str | None = None
    deep: bool = False


class StoreMemoryInput(_MetaInput):
    content: str = Field(..., min_length=1)
    type: MemoryType = MemoryType.KNOWLEDGE
    scope: MemoryScope = MemoryScope.GLOBAL
    importance: float = 0.5

    @field_validator("importance")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return _clamp_unit(v)


class UpdateProfileInput(_MetaInput):
    key: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1)
    confidence: float = 0.8

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return _clamp_unit(v)


class ManageGoalInput(_MetaInput):
    action: GoalAction
    id: str | None = None
    description: str | None = None
    priority: str | None = None
    scope: MemoryScope = MemoryScope.PERSONAL


class CreateSkillInput(_MetaInput):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    instructions: str = Field(..., min_length=1)
    code: str | None = Field(default=None, alias="codeSnippet")


class GetCurrentTimeInput(_MetaInput):
    timezone: str | None = None


class DelegateTasksInput(_MetaInput):
    report_title: str = Field(..., min_length=1, alias="reportTitle")
    sections: list[SubAgentTask] = Field(..., min_length=1)


class AskUserInput(_MetaInput):
    questions: list[ClarificationQuestion] = Field(..., min_length=1)


# --- HTTP contracts ---


class MetaToolRequest(BaseModel):
    """Invoke a meta-tool on behalf of a session."""

    session_id: str = Field(..., pattern=r"^[a-zA-Z0-9_-]+$")
    user_id: str | None = None
    team_id: str | None = None
    tool_config: dict[str, bool] = Field(default_factory=dict)
    input: dict[str, Any] = Field(default_factory=dict)


class DiscoverRequest(BaseModel):
    """Raw capability search."""

    query: str = Field(..., min_length=1)
    tool_config: dict[str, bool] = Field(default_factory=dict)
    limit: int = Field(default=10, ge=1, le=100)


class DiscoverResponse(BaseModel):
    results: list[ToolSearchResult]
    mode: str


class ClarifyRequest(BaseModel):
    """Answers to a pending clarification batch."""

    session_id: str = Field(..., pattern=r"^[a-zA-Z0-9_-]+$")
    answers: dict[str, str]


class ClarifyResponse(BaseModel):
    session_id: str
    resolved: bool


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    broker: str = "healthy"
    registered_tools: int = 0
    embedding_mode: str = "keyword"
    store_available: bool = False
    pending_clarifications: int = 0


class ChatRequest(BaseModel):
    """One user message for an orchestrator turn."""

    session_id: str = Field(..., pattern=r"^[a-zA-Z0-9_-]+$")
    message: str = Field(..., min_length=1)
    user_id: str | None = None
    team_id: str | None = None
    tool_config: dict[str, bool] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    session_id: str
    content: str
    iterations: int
    tool_calls: int
    tools_used: list[str] = Field(default_factory=list)
    tier: Tier
