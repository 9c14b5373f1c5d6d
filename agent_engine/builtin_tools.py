"""Built-in environment tools: getDateTime, getSystemInfo, wait."""

from __future__ import annotations

import asyncio
import json
import os
import platform
import socket
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent_engine.executor import ToolExecutor
from agent_engine.schemas import ToolContext, ToolManifestEntry, ToolResult

MAX_WAIT_SECONDS = 300.0
MIN_WAIT_SECONDS = 0.1


def resolve_timezone(name: str | None) -> tuple[ZoneInfo | timezone, bool]:
    """Resolve an IANA name. Returns (tz, recognized); unknown names give UTC."""
    if not name:
        return datetime.now().astimezone().tzinfo or timezone.utc, True
    try:
        return ZoneInfo(name), True
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc, False


def format_current_time(tz_name: str | None = None, now: datetime | None = None) -> str:
    """Human-readable current time block used by get_current_time."""
    tz, recognized = resolve_timezone(tz_name)
    now = now or datetime.now(timezone.utc)

    if not recognized:
        utc_now = now.astimezone(timezone.utc)
        return (
            f"Current time (UTC): {utc_now.strftime('%a, %d %b %Y %H:%M:%S')} GMT\n"
            f'Note: timezone "{tz_name}" was not recognized, showing UTC.'
        )

    local = now.astimezone(tz)
    label = tz_name or local.tzname() or "UTC"
    hour = local.strftime("%I").lstrip("0")
    return "\n".join([
        f"Current time: {local.strftime('%A, %B')} {local.day}, {local.year} at "
        f"{hour}:{local.strftime('%M:%S %p')} {local.tzname()}",
        f"Day of week: {local.strftime('%A')}",
        f"Month: {local.strftime('%B')}",
        f"Year: {local.year}",
        f"Timezone: {label} ({local.tzname()})",
        f"ISO 8601: {now.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')}",
        f"Unix timestamp: {int(now.timestamp() * 1000)}",
    ])


async def get_date_time(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    tz, recognized = resolve_timezone(tool_input.get("timezone"))
    now = datetime.now(tz)
    payload = {
        "iso": now.isoformat(),
        "formatted": now.strftime("%A, %B %d, %Y at %I:%M:%S %p %Z"),
        "timezone": tool_input.get("timezone") if recognized and tool_input.get("timezone") else now.tzname(),
        "dayOfWeek": now.strftime("%A"),
        "unixTimestamp": int(now.timestamp()),
    }
    return ToolResult(success=True, output=json.dumps(payload), data=payload)


async def get_system_info(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    payload = {
        "nodeId": context.node_id,
        "hostname": socket.gethostname(),
        "platform": platform.system().lower(),
        "arch": platform.machine(),
        "cpus": os.cpu_count(),
        "python": platform.python_version(),
    }
    if hasattr(os, "getloadavg"):
        payload["loadAverage"] = list(os.getloadavg())
    return ToolResult(success=True, output=json.dumps(payload), data=payload)


async def wait(tool_input: dict[str, Any], context: ToolContext) -> ToolResult:
    try:
        seconds = float(tool_input.get("seconds") or 1)
    except (TypeError, ValueError):
        seconds = 1.0
    seconds = min(max(seconds, MIN_WAIT_SECONDS), MAX_WAIT_SECONDS)
    await asyncio.sleep(seconds)
    return ToolResult(success=True, output=f"Waited {seconds:g} seconds.")


BUILTIN_TOOLS: list[tuple[ToolManifestEntry, Any]] = [
    (
        ToolManifestEntry(
            name="getDateTime",
            description="Get the current date, time, timezone, day of week, and Unix timestamp.",
            category="environment",
            input_schema={
                "type": "object",
                "properties": {
                    "timezone": {"type": "string", "description": "Optional IANA timezone (e.g. America/New_York)."},
                },
            },
        ),
        get_date_time,
    ),
    (
        ToolManifestEntry(
            name="getSystemInfo",
            description="Get information about the current node: OS, hostname, CPU count and load.",
            category="environment",
            input_schema={"type": "object", "properties": {}},
        ),
        get_system_info,
    ),
    (
        ToolManifestEntry(
            name="wait",
            description="Pause execution for a number of seconds. Useful for polling and retry patterns.",
            category="environment",
            input_schema={
                "type": "object",
                "properties": {
                    "seconds": {"type": "number", "description": "Seconds to wait (max 300)."},
                },
                "required": ["seconds"],
            },
        ),
        wait,
    ),
]


def register_builtin_tools(executor: ToolExecutor) -> None:
    """Register every built-in tool with the router (and its index)."""
    for entry, handler in BUILTIN_TOOLS:
        executor.register_local(entry, handler)
