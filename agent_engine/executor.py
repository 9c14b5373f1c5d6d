"""Execution router: runs tools locally or hands them to a remote worker."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol

import httpx

from agent_engine.indexer import ToolIndex
from agent_engine.schemas import ExecutionTarget, ToolContext, ToolManifestEntry, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]

REMOTE_TIMEOUT = 300.0


class RemoteDispatcher(Protocol):
    """Sends a tool call to a worker node."""

    async def dispatch(
        self, tool_name: str, tool_input: dict[str, Any], context: ToolContext
    ) -> ToolResult: ...


class HttpWorkerDispatcher:
    """Remote dispatcher posting tool calls to a worker's HTTP endpoint."""

    def __init__(self, base_url: str, timeout: float = REMOTE_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def dispatch(
        self, tool_name: str, tool_input: dict[str, Any], context: ToolContext
    ) -> ToolResult:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/tools/execute",
                json={"tool": tool_name, "input": tool_input, "context": context.model_dump()},
            )
            response.raise_for_status()
            return ToolResult.model_validate(response.json())


def missing_required(schema: dict[str, Any] | None, tool_input: dict[str, Any]) -> list[str]:
    """Required schema properties absent from the input."""
    if not schema:
        return []
    return [key for key in schema.get("required", []) if key not in tool_input]


class ToolExecutor:
    """Routes a tool name to its local handler or to the remote dispatcher.

    The manifest's execution target decides the route. Failures are
    returned as unsuccessful ToolResults, never raised.
    """

    def __init__(self, index: ToolIndex | None = None, dispatcher: RemoteDispatcher | None = None):
        self.index = index
        self.dispatcher = dispatcher
        self._local: dict[str, ToolHandler] = {}

    def register_local(self, entry: ToolManifestEntry, handler: ToolHandler) -> None:
        """Register a locally executed tool (and its manifest entry if an index is attached)."""
        self._local[entry.name] = handler
        if self.index is not None:
            self.index.register(entry)

    def has_local(self, name: str) -> bool:
        return name in self._local

    def set_dispatcher(self, dispatcher: RemoteDispatcher | None) -> None:
        self.dispatcher = dispatcher

    def route(self, tool_name: str) -> str:
        """Return 'local', 'remote' or 'unknown' for a tool name."""
        entry = self.index.get(tool_name) if self.index is not None else None
        if entry is not None and entry.execution_target == ExecutionTarget.REMOTE:
            return "remote"
        if tool_name in self._local:
            return "local"
        return "unknown"

    async def execute(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        route = self.route(tool_name)
        if route == "unknown":
            return ToolResult(
                success=False,
                output=f'Unknown tool "{tool_name}". Use discover_tools to find available tools.',
            )

        schema = self.index.get_schema(tool_name) if self.index is not None else None
        missing = missing_required(schema, tool_input)
        if missing:
            return ToolResult(
                success=False,
                output=f'Missing required input for "{tool_name}": {", ".join(missing)}',
            )

        try:
            if route == "remote":
                if self.dispatcher is None:
                    return ToolResult(
                        success=False,
                        output=f'Tool "{tool_name}" requires a worker node, but no worker is available.',
                    )
                logger.debug(f"Dispatching {tool_name} to remote worker")
                return await self.dispatcher.dispatch(tool_name, tool_input, context)

            logger.debug(f"Executing {tool_name} locally")
            return await self._local[tool_name](tool_input, context)
        except Exception as e:
            logger.warning(f"Tool {tool_name} failed: {e}")
            return ToolResult(success=False, output=f'Error executing "{tool_name}": {e}')
