"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from patient_assistant.models import ActionEnvelope, Turn


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    message: str = Field(..., min_length=1, max_length=2000, description="The patient's message")


class ChatResponse(_CamelModel):
    """The assistant's answer, plus the action it ran (if any)."""

    answer: str = Field(..., description="Text to show the patient")
    action: str | None = None
    parameters: dict[str, Any] | None = None
    action_result: ActionEnvelope | None = None
    raw_data: Any = None

    @classmethod
    def from_turn(cls, turn: Turn) -> ChatResponse:
        return cls(
            answer=turn.content,
            action=turn.action,
            parameters=turn.parameters,
            action_result=turn.action_result,
            raw_data=turn.raw_data,
        )


class ClearHistoryResponse(BaseModel):
    success: bool
    message: str


class ToolsResponse(_CamelModel):
    tools: list[str]
    system_prompt: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "patient-assistant"
