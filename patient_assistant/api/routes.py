"""FastAPI route definitions for the patient assistant API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from patient_assistant.api.auth import current_patient
from patient_assistant.api.schemas import (
    ChatRequest,
    ChatResponse,
    ClearHistoryResponse,
    HealthResponse,
    ToolsResponse,
)
from patient_assistant.config import HISTORY_PAGE_SIZE
from patient_assistant.prompts import tool_listing

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_state(request: Request, name: str):
    """Retrieve a collaborator built in the FastAPI lifespan (see ``server.py``)."""
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return value


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
@router.get("/chat/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(
    request: ChatRequest,
    http_request: Request,
    patient_id: str = Depends(current_patient),
):
    """Send a message to the assistant and get its answer.

    ``pipeline.run()`` is synchronous and blocking (context reads, the
    model call, the records backend), so it is offloaded with
    ``asyncio.to_thread`` to keep the event loop responsive.  The pipeline
    degrades store and model failures into an answer itself.
    """
    pipeline = _get_state(http_request, "pipeline")
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        turn = await asyncio.to_thread(pipeline.run, patient_id, request.message)
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse.from_turn(turn)


@router.get("/chat/history")
async def chat_history(
    http_request: Request,
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=200),
    page: int = Query(1, ge=1),
    before: str | None = Query(None, description="Return turns strictly older than this turn id"),
    patient_id: str = Depends(current_patient),
) -> list[dict[str, Any]]:
    """One page of the patient's conversation, oldest first."""
    projector = _get_state(http_request, "projector")
    turns = await asyncio.to_thread(projector.project, patient_id, page, limit, before)
    return [turn.to_wire() for turn in turns]


@router.post("/chat/clear-history", response_model=ClearHistoryResponse)
async def clear_history(http_request: Request, patient_id: str = Depends(current_patient)):
    store = _get_state(http_request, "store")
    removed = await asyncio.to_thread(store.clear, patient_id)
    if removed is None:
        return ClearHistoryResponse(
            success=False,
            message="Conversation history is temporarily unavailable. Please try again later.",
        )
    return ClearHistoryResponse(success=True, message=f"Cleared {removed} messages from your history.")


@router.get("/chat/tools", response_model=ToolsResponse)
async def list_tools(http_request: Request):
    """Action names and the context-free system prompt."""
    dispatcher = _get_state(http_request, "dispatcher")
    return ToolsResponse(**tool_listing(dispatcher.catalog))
