"""MCP server exposing capability discovery and execution."""

import os

from mcp.server.fastmcp import FastMCP
import httpx

mcp = FastMCP("agent-engine")
BROKER = os.environ.get("AGENT_ENGINE_BROKER_URL", "http://localhost:8000")
SESSION_ID = "mcp"


@mcp.tool()
async def discover_tools(query: str, limit: int = 10) -> dict:
    """Find tools and skills for a capability described in plain language.

    Returns ranked candidates with name, description, category and relevance score.
    """
    async with httpx.AsyncClient(timeout=30.0) as client:
        r = await client.post(f"{BROKER}/discover", json={"query": query, "limit": limit})
        return r.json()


@mcp.tool()
async def execute_tool(tool: str, input: dict | None = None) -> dict:
    """Execute a tool found with discover_tools.

    Args:
        tool: Tool name exactly as returned by discover_tools
        input: Tool input matching its input schema
    """
    async with httpx.AsyncClient(timeout=120.0) as client:
        r = await client.post(f"{BROKER}/meta/execute_tool", json={
            "session_id": SESSION_ID,
            "input": {"tool": tool, "input": input or {}},
        })
        return r.json()


if __name__ == "__main__":
    mcp.run()
