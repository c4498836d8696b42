"""Core data model: conversation turns, action envelopes and the tagged
result of interpreting a model completion.

Turns and envelopes are pydantic models serialised with camelCase keys so
the stored form and the HTTP form are the same document.  Turns are
frozen: a correction is a new turn, never an edit.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]


def canonical_json(value: Any) -> str:
    """Deterministic JSON used for storage and byte-level comparisons."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str,
    )


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys and unset fields dropped."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ActionEnvelope(_WireModel):
    """Uniform result of a capability invocation."""

    success: bool
    data: Any = None
    message: str | None = None
    error: str | None = None
    # "ValidationError" or "DispatchError" on failures
    error_type: str | None = None

    @classmethod
    def ok(cls, data: Any = None, message: str | None = None) -> ActionEnvelope:
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(
        cls,
        error: str,
        message: str | None = None,
        *,
        error_type: str = "DispatchError",
    ) -> ActionEnvelope:
        return cls(success=False, error=error, message=message or error, error_type=error_type)


class Turn(_WireModel):
    """One message (user or assistant) in a patient's conversation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str = Field(..., min_length=1)
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    action: str | None = None
    parameters: dict[str, Any] | None = None
    action_result: ActionEnvelope | None = None
    raw_data: Any = None

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _action_fields_travel_together(self) -> Turn:
        present = [
            self.action is not None,
            self.parameters is not None,
            self.action_result is not None,
        ]
        if any(present) and self.role != "assistant":
            raise ValueError("only assistant turns may carry an action")
        if any(present) and not all(present):
            raise ValueError("action, parameters and actionResult must be set together")
        return self

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    def canonical(self) -> str:
        return canonical_json(self.to_wire())

    @classmethod
    def from_canonical(cls, payload: str) -> Turn:
        return cls.model_validate(json.loads(payload))


# ── Interpretation of a model completion ─────────────────────────────


@dataclass(frozen=True)
class NoAction:
    """The completion is plain conversation (or a guard suppressed the action)."""

    text: str
    reason: str = "conversation"


@dataclass(frozen=True)
class Action:
    """The completion asks for exactly one capability invocation."""

    text: str
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    source: str = "grammar"


@dataclass(frozen=True)
class ParseFailure:
    """An action was signalled but could not be recovered; handled as no-action."""

    text: str
    detail: str


Interpretation = NoAction | Action | ParseFailure
