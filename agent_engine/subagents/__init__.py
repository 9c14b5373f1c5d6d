"""Delegation: sub-agent runners and the DAG executor."""

from agent_engine.subagents.dag import (
    CyclicDependencyError,
    DagExecutor,
    DelegationConfigError,
    SchedulerError,
    resolve_dependencies,
)
from agent_engine.subagents.runner import AgentSubAgentRunner, SubAgentRunner

__all__ = [
    "AgentSubAgentRunner",
    "CyclicDependencyError",
    "DagExecutor",
    "DelegationConfigError",
    "SchedulerError",
    "SubAgentRunner",
    "resolve_dependencies",
]
