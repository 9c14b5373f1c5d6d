"""HTTP broker exposing the meta-tool layer to chat front-ends and workers."""

from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from agent_engine import __version__
from agent_engine.config import get_settings
from agent_engine.engine import Engine, get_engine
from agent_engine.llm import CompletionUnavailableError
from agent_engine.schemas import (
    ChatRequest,
    ChatResponse,
    ClarifyRequest,
    ClarifyResponse,
    DiscoverRequest,
    DiscoverResponse,
    ErrorResponse,
    HealthResponse,
    MetaToolRequest,
    ToolResult,
)

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    title="Agent Engine Broker",
    description="Meta-tool dispatch, capability discovery and clarification for agent sessions",
    version=__version__,
)


@app.post("/meta/{tool_name}", response_model=ToolResult)
async def invoke_meta_tool(
    tool_name: str,
    request: MetaToolRequest,
    engine: Engine = Depends(get_engine),
) -> ToolResult:
    """Invoke one meta-tool for a session.

    Tool failures come back as a ToolResult with success=False; only a
    meta-tool name the orchestrator cannot see is an HTTP error.
    """
    dispatcher = engine.dispatcher(
        request.session_id,
        user_id=request.user_id,
        team_id=request.team_id,
        tool_config=request.tool_config,
    )
    if tool_name not in dispatcher.available_tools():
        raise HTTPException(status_code=404, detail=f"Unknown meta-tool: {tool_name}")

    logger.info(f"[{request.session_id}] meta-tool {tool_name}")
    result = await dispatcher.dispatch(tool_name, request.input)
    if not result.success:
        logger.info(f"[{request.session_id}] {tool_name} failed: {result.output[:200]}")
    return result


@app.post("/discover", response_model=DiscoverResponse)
async def discover(request: DiscoverRequest, engine: Engine = Depends(get_engine)) -> DiscoverResponse:
    """Raw capability search, without the model-facing formatting."""
    results = await engine.index.search(request.query, request.tool_config, request.limit)
    return DiscoverResponse(results=results, mode=engine.index.mode)


@app.post("/clarify", response_model=ClarifyResponse)
async def clarify(request: ClarifyRequest, engine: Engine = Depends(get_engine)) -> ClarifyResponse:
    """Answer a pending clarification batch."""
    if not engine.clarification.resolve(request.session_id, request.answers):
        raise HTTPException(
            status_code=404,
            detail=f"No pending clarification for session: {request.session_id}",
        )
    return ClarifyResponse(session_id=request.session_id, resolved=True)


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, engine: Engine = Depends(get_engine)) -> ChatResponse:
    """Run one orchestrator turn."""
    logger.info(f"[{request.session_id}] chat turn ({len(request.message)} chars)")
    try:
        result = await engine.run_turn(
            request.session_id,
            request.message,
            user_id=request.user_id,
            team_id=request.team_id,
            tool_config=request.tool_config,
        )
    except CompletionUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return ChatResponse(
        session_id=request.session_id,
        content=result.content,
        iterations=result.iterations,
        tool_calls=result.tool_calls,
        tools_used=result.tools_used,
        tier=engine.tier_control(request.session_id).get(),
    )


@app.get("/sessions/{session_id}/events")
async def session_events(session_id: str, engine: Engine = Depends(get_engine)) -> list[dict]:
    """Drain the stream events emitted for a session since the last call."""
    return [event.model_dump(mode="json") for event in engine.events.drain(session_id)]


@app.get("/health", response_model=HealthResponse)
async def health(engine: Engine = Depends(get_engine)) -> HealthResponse:
    """Report registry size, discovery mode and store availability."""
    return HealthResponse(
        broker="healthy",
        registered_tools=len(engine.index),
        embedding_mode=engine.index.mode,
        store_available=engine.store.available,
        pending_clarifications=engine.clarification.pending_count,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail=str(exc),
            error_code="INTERNAL_ERROR",
        ).model_dump(),
    )
