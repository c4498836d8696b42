"""Capability catalog: the actions the assistant may invoke.

Each action declares a pydantic parameter model (the schema the dispatcher
validates against and the prompt advertises) and a handler that calls the
records backend and returns an ``ActionEnvelope`` with a human-readable
``message`` the assistant can show as its answer.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from patient_assistant.errors import DispatchError, ValidationError
from patient_assistant.models import ActionEnvelope
from patient_assistant.services.backend_client import BackendAPIError, PatientRecords, record_id

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "Cancelled by patient"


# ── Parameter schemas ────────────────────────────────────────────────


class ActionParams(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class NoParams(ActionParams):
    pass


class BookAppointmentParams(ActionParams):
    therapist_id: str = Field(..., min_length=1, description="ID of the therapist")
    appointment_date: datetime = Field(..., description="Date and time, ISO-8601")
    duration: int = Field(..., ge=15, le=180, description="Duration in minutes (15-180)")
    notes: str | None = Field(None, description="Notes for the appointment")


class CancelAppointmentParams(ActionParams):
    appointment_id: str = Field(..., min_length=1, description="ID of the appointment to cancel")
    cancellation_reason: str | None = Field(None, description="Reason for cancellation")


# ── Formatting helpers ───────────────────────────────────────────────


def format_dt(value: Any) -> str:
    """Render an ISO-8601 value as 'Mon 17 Feb 2026 at 10:30'; unparseable values pass through."""
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return str(value)
    return dt.strftime("%a %d %b %Y at %H:%M")


def therapist_name(therapist: dict[str, Any] | str | None) -> str:
    if not isinstance(therapist, dict):
        return "your therapist"
    name = f"{therapist.get('firstName', '')} {therapist.get('lastName', '')}".strip()
    return f"Dr. {name}" if name else "your therapist"


def describe_therapist(therapist: dict[str, Any]) -> str:
    return (
        f"- {therapist_name(therapist)} ({therapist.get('specialization', 'General')})"
        f" - ID: {record_id(therapist)}"
    )


def describe_appointment(apt: dict[str, Any]) -> str:
    return (
        f"- {format_dt(apt.get('appointmentDate'))} with {therapist_name(apt.get('therapistId'))}"
        f" ({apt.get('status', 'scheduled')}, {apt.get('duration', '?')} min) - ID: {record_id(apt)}"
    )


def _name_tokens(text: str) -> list[str]:
    return [t for t in re.findall(r"[a-z]+", text.lower()) if t != "dr"]


def resolve_therapist(reference: str, therapists: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Find a therapist by ID, or by name when exactly one directory entry matches."""
    for therapist in therapists:
        if record_id(therapist) == reference:
            return therapist

    wanted = _name_tokens(reference)
    if not wanted:
        return None
    matches = []
    for therapist in therapists:
        tokens = _name_tokens(f"{therapist.get('firstName', '')} {therapist.get('lastName', '')}")
        if tokens and all(token in tokens for token in wanted):
            matches.append(therapist)
    return matches[0] if len(matches) == 1 else None


# ── Handlers ─────────────────────────────────────────────────────────


def list_therapists(records: PatientRecords, patient_id: str, params: NoParams) -> ActionEnvelope:
    therapists = records.list_therapists()
    if not therapists:
        return ActionEnvelope.ok([], "No therapists are available right now.")
    lines = [f"Found {len(therapists)} therapists:"]
    lines.extend(describe_therapist(t) for t in therapists)
    return ActionEnvelope.ok(therapists, "\n".join(lines))


def list_appointments(records: PatientRecords, patient_id: str, params: NoParams) -> ActionEnvelope:
    appointments = sorted(
        records.list_appointments(patient_id),
        key=lambda apt: str(apt.get("appointmentDate", "")),
    )
    if not appointments:
        return ActionEnvelope.ok([], "You have no appointments.")
    lines = [f"Found {len(appointments)} appointments:"]
    lines.extend(describe_appointment(apt) for apt in appointments)
    return ActionEnvelope.ok(appointments, "\n".join(lines))


def resolve_booking(records: PatientRecords, params: BookAppointmentParams) -> BookAppointmentParams:
    """Replace a therapist name with the directory ID it refers to."""
    therapist = resolve_therapist(params.therapist_id, records.list_therapists())
    if therapist is None:
        raise DispatchError(f"Therapist not found: {params.therapist_id}")
    return params.model_copy(update={"therapist_id": record_id(therapist)})


def book_appointment(
    records: PatientRecords, patient_id: str, params: BookAppointmentParams,
) -> ActionEnvelope:
    # Directory is cached; params already carry a resolved ID
    therapist = resolve_therapist(params.therapist_id, records.list_therapists())
    if therapist is None:
        raise DispatchError(f"Therapist not found: {params.therapist_id}")

    payload: dict[str, Any] = {
        "therapistId": record_id(therapist),
        "appointmentDate": params.appointment_date.isoformat(),
        "duration": params.duration,
    }
    if params.notes:
        payload["notes"] = params.notes

    created = records.create_appointment(patient_id, payload)
    message = (
        f"Appointment booked with {therapist_name(therapist)} on "
        f"{format_dt(params.appointment_date)} for {params.duration} minutes "
        f"(ID: {record_id(created) or 'N/A'})."
    )
    return ActionEnvelope.ok(created, message)


def cancel_appointment(
    records: PatientRecords, patient_id: str, params: CancelAppointmentParams,
) -> ActionEnvelope:
    try:
        appointment = records.find_appointment(params.appointment_id)
    except BackendAPIError as exc:
        if exc.not_found:
            raise DispatchError(f"Appointment not found: {params.appointment_id}") from exc
        raise

    if record_id(appointment.get("patientId")) != patient_id:
        raise DispatchError("You can only cancel your own appointments")
    if appointment.get("status") == "cancelled":
        raise DispatchError(f"Appointment {params.appointment_id} is already cancelled")

    updated = records.update_appointment(
        params.appointment_id,
        {
            "status": "cancelled",
            "cancellationReason": params.cancellation_reason or DEFAULT_CANCELLATION_REASON,
        },
    )
    message = (
        f"Your appointment on {format_dt(appointment.get('appointmentDate'))} with "
        f"{therapist_name(appointment.get('therapistId'))} has been cancelled "
        f"(ID: {params.appointment_id})."
    )
    return ActionEnvelope.ok(updated, message)


def get_profile(records: PatientRecords, patient_id: str, params: NoParams) -> ActionEnvelope:
    profile = records.find_patient(patient_id)
    message = (
        "Patient profile:\n"
        f"- Name: {profile.get('firstName', '')} {profile.get('lastName', '')}\n"
        f"- Email: {profile.get('email', 'Not provided')}\n"
        f"- Phone: {profile.get('phone') or 'Not provided'}\n"
        f"- Address: {profile.get('address') or 'Not provided'}"
    )
    return ActionEnvelope.ok(profile, message)


# ── Catalog ──────────────────────────────────────────────────────────


Handler = Callable[[PatientRecords, str, Any], ActionEnvelope]
# Maps validated params to the exact arguments the handler acts on
Resolver = Callable[[PatientRecords, Any], ActionParams]


@dataclass(frozen=True)
class ActionSpec:
    name: str
    description: str
    params_model: type[ActionParams]
    handler: Handler
    resolver: Resolver | None = None

    @property
    def requires_parameters(self) -> bool:
        return any(f.is_required() for f in self.params_model.model_fields.values())

    def validate(self, parameters: dict[str, Any] | None) -> ActionParams:
        """Return validated parameters or raise ``ValidationError`` with a readable message."""
        try:
            return self.params_model.model_validate(parameters or {})
        except PydanticValidationError as exc:
            raise ValidationError(_readable_errors(self.params_model, exc)) from exc

    def signature(self) -> str:
        parts = []
        for name, info in self.params_model.model_fields.items():
            alias = info.alias or name
            kind = _type_label(info.annotation)
            flag = "required" if info.is_required() else "optional"
            hint = f" - {info.description}" if info.description else ""
            parts.append(f"    - {alias} ({kind}, {flag}){hint}")
        return "\n".join(parts) if parts else "    (no parameters)"

    def tool_schema(self) -> dict[str, Any]:
        schema = self.params_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        return {"name": self.name, "description": self.description, "input_schema": schema}


def _type_label(annotation: Any) -> str:
    if annotation is datetime:
        return "ISO-8601 string"
    if annotation is int:
        return "integer"
    return "string"


def _readable_errors(model: type[ActionParams], exc: PydanticValidationError) -> str:
    aliases = {name: info.alias or name for name, info in model.model_fields.items()}
    missing: list[str] = []
    invalid: list[str] = []
    for err in exc.errors():
        field = str(err["loc"][0]) if err["loc"] else "parameters"
        field = aliases.get(field, field)
        if err["type"] == "missing":
            missing.append(field)
        else:
            invalid.append(f"{field}: {err['msg']}")
    parts = []
    if missing:
        parts.append("Missing required parameter(s): " + ", ".join(missing))
    if invalid:
        parts.append("Invalid parameter(s): " + "; ".join(invalid))
    return ". ".join(parts) or "Invalid parameters"


class ActionCatalog:
    """Name → ActionSpec registry."""

    def __init__(self, specs: list[ActionSpec]):
        self._specs = {spec.name: spec for spec in specs}

    def get(self, name: str) -> ActionSpec | None:
        return self._specs.get(name)

    def names(self) -> list[str]:
        return list(self._specs)

    def requires_parameters(self, name: str) -> bool:
        spec = self._specs.get(name)
        return spec.requires_parameters if spec else False

    def describe(self) -> str:
        blocks = []
        for i, spec in enumerate(self._specs.values(), start=1):
            blocks.append(f"{i}. {spec.name} - {spec.description}\n{spec.signature()}")
        return "\n".join(blocks)

    def tool_schemas(self) -> list[dict[str, Any]]:
        return [spec.tool_schema() for spec in self._specs.values()]


CATALOG = ActionCatalog(
    [
        ActionSpec(
            "list_therapists",
            "List all available therapists with their specializations",
            NoParams,
            list_therapists,
        ),
        ActionSpec(
            "book_appointment",
            "Book an appointment with a therapist for the logged-in patient",
            BookAppointmentParams,
            book_appointment,
            resolver=resolve_booking,
        ),
        ActionSpec(
            "list_appointments",
            "List the logged-in patient's appointments",
            NoParams,
            list_appointments,
        ),
        ActionSpec(
            "cancel_appointment",
            "Cancel one of the logged-in patient's appointments",
            CancelAppointmentParams,
            cancel_appointment,
        ),
        ActionSpec(
            "get_profile",
            "Show the logged-in patient's profile",
            NoParams,
            get_profile,
        ),
    ]
)
