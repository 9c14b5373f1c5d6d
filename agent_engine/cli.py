"""CLI for Agent Engine - broker, capability discovery and MCP server."""

from __future__ import annotations

import asyncio

import click

from agent_engine import __version__


@click.group()
@click.version_option(version=__version__, prog_name="agent-engine")
def main() -> None:
    """Agent Engine - meta-tool dispatch and sub-agent delegation.

    Discover registered tools by describing what you need, or run the
    broker that agent front-ends talk to.
    """
    pass


@main.command()
@click.option("--port", default=8000, help="Port to run the broker on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(port: int, host: str, reload: bool) -> None:
    """Start the Agent Engine HTTP broker."""
    import uvicorn

    click.echo(f"Starting Agent Engine broker on {host}:{port}")
    uvicorn.run(
        "agent_engine.broker:app",
        host=host,
        port=port,
        reload=reload,
    )


@main.command()
def tools() -> None:
    """List the built-in tools registered on this node."""
    from agent_engine.engine import get_engine

    engine = get_engine()
    entries = sorted(engine.index.get_all_built_in(), key=lambda e: e.name)

    if not entries:
        click.echo("No tools registered.")
        return

    click.echo(f"Registered tools ({len(entries)}):")
    for entry in entries:
        click.echo(f"  - {entry.name} [{entry.category}, {entry.execution_target.value}]: {entry.description}")


@main.command()
@click.argument("query")
@click.option("--limit", "-n", default=10, type=click.IntRange(1, 100), help="Maximum number of results")
@click.option("--keyword-only", is_flag=True, help="Skip embeddings and use keyword scoring")
@click.option("--raw", is_flag=True, help="Output raw JSON")
def discover(query: str, limit: int, keyword_only: bool, raw: bool) -> None:
    """Find tools for a capability described in natural language.

    \b
    Example:
        agent-engine discover "look things up online"
        agent-engine discover "what time is it" --limit 3 --raw
    """
    from agent_engine.engine import get_engine

    engine = get_engine()
    if keyword_only:
        engine.index.set_embedding_provider(None)

    results = asyncio.run(engine.index.search(query, {}, limit))

    if raw:
        import json
        payload = {"mode": engine.index.mode, "results": [r.model_dump(mode="json") for r in results]}
        click.echo(json.dumps(payload, indent=2))
        return

    click.echo(f"\n{'=' * 60}")
    click.echo(f"Discover: {query}")
    click.echo(f"Mode: {engine.index.mode}")
    click.echo(f"{'=' * 60}\n")

    if results:
        for i, result in enumerate(results, 1):
            click.echo(f"  {i}. {result.name} ({result.category}, score: {result.relevance_score:.3f})")
            click.echo(f"     {result.description}")
    else:
        click.echo("No matching tools found.")


@main.command()
@click.option("--tz", default=None, help="IANA timezone, e.g. Europe/Madrid")
def time(tz: str | None) -> None:
    """Show the current time the way agents see it."""
    from agent_engine.builtin_tools import format_current_time

    click.echo(format_current_time(tz))


@main.command()
def mcp() -> None:
    """Run the MCP server.

    This command starts the MCP server which exposes discover_tools and
    execute_tool to MCP clients. The broker must be running.

    \b
    Configure in .mcp.json:
        {
            "mcpServers": {
                "agent-engine": {
                    "command": "agent-engine",
                    "args": ["mcp"]
                }
            }
        }
    """
    from mcp_agent_engine.server import mcp as mcp_server
    mcp_server.run()


if __name__ == "__main__":
    main()
