"""Completion client abstraction and the Ollama chat implementation."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol

import httpx

from agent_engine.schemas import Tier

logger = logging.getLogger(__name__)

OLLAMA_BASE_URL = "http://localhost:11434"
OLLAMA_TIMEOUT = 120.0

TokenCallback = Callable[[str], None]


class CompletionUnavailableError(Exception):
    """Raised when the completion host is unreachable or errors."""

    pass


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    name: str
    input: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass
class Completion:
    """One model turn: text plus any structured tool calls."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


class CompletionClient(Protocol):
    """Opaque completion capability used by the agent loop."""

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tier: Tier,
        on_token: TokenCallback | None = None,
    ) -> Completion: ...


def _to_ollama_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
            },
        }
        for tool in tools
    ]


def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
    calls = []
    for raw in raw_calls:
        function = raw.get("function", {})
        arguments = function.get("arguments", {})
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                arguments = {}
        if function.get("name"):
            calls.append(ToolCall(name=function["name"], input=arguments or {}))
    return calls


class OllamaCompletionClient:
    """Streams chat completions from a local Ollama server, one model per tier."""

    def __init__(
        self,
        tier_models: Mapping[Tier, str],
        base_url: str = OLLAMA_BASE_URL,
        timeout: float = OLLAMA_TIMEOUT,
    ):
        self.tier_models = dict(tier_models)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def model_for(self, tier: Tier) -> str:
        return self.tier_models.get(tier) or self.tier_models[Tier.STANDARD]

    async def _stream_chat(
        self,
        payload: dict[str, Any],
        timeout: float,
        on_token: TokenCallback | None,
    ) -> Completion:
        completion = Completion()
        parts: list[str] = []
        async with httpx.AsyncClient(timeout=timeout) as client:
            async with client.stream("POST", f"{self.base_url}/api/chat", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    chunk = json.loads(line)
                    message = chunk.get("message", {})
                    token = message.get("content", "")
                    if token:
                        parts.append(token)
                        if on_token is not None:
                            on_token(token)
                    completion.tool_calls.extend(_parse_tool_calls(message.get("tool_calls", [])))
                    if chunk.get("done"):
                        break
        completion.text = "".join(parts)
        return completion

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tier: Tier,
        on_token: TokenCallback | None = None,
    ) -> Completion:
        """Run one streamed chat turn. Retries once on timeout."""
        payload = {
            "model": self.model_for(tier),
            "messages": messages,
            "tools": _to_ollama_tools(tools),
            "stream": True,
        }

        try:
            return await self._stream_chat(payload, self.timeout, on_token)

        except httpx.ConnectError as e:
            logger.error(f"Failed to connect to Ollama: {e}")
            raise CompletionUnavailableError("Ollama service unavailable") from e

        except httpx.TimeoutException as e:
            logger.warning("Ollama request timed out, retrying once...")
            try:
                return await self._stream_chat(payload, self.timeout * 1.5, on_token)
            except (httpx.HTTPError, json.JSONDecodeError) as retry_error:
                logger.error(f"Ollama retry failed: {retry_error}")
                raise CompletionUnavailableError("Ollama request timed out after retry") from e

        except httpx.HTTPStatusError as e:
            logger.error(f"Ollama HTTP error: {e}")
            raise CompletionUnavailableError(f"Ollama returned error: {e.response.status_code}") from e

        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error(f"Ollama stream failed: {e}")
            raise CompletionUnavailableError(f"Ollama stream failed: {e}") from e

    async def health(self) -> bool:
        """Check if the Ollama service answers."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                return response.status_code == 200
        except httpx.HTTPError:
            return False
