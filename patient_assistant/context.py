"""Gather everything the model should know before answering a message.

Five independent reads run concurrently on a small thread pool:

* semantically related past turns (ConversationStore)
* the visible window of recent turns (HistoryProjector)
* the patient's appointments, the therapist directory and the profile
  (records backend)

Each read fails on its own to an empty value.  The results are rendered
into a bounded text digest for the system prompt.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from patient_assistant.config import CONTEXT_MAX_CHARS, SEMANTIC_TOP_K, WINDOW_TURNS
from patient_assistant.history import HistoryProjector, reconstruct_turn
from patient_assistant.models import Turn
from patient_assistant.phrases import APPOINTMENT_LISTING, THERAPIST_LISTING, PhraseClassifier, classifier
from patient_assistant.services.backend_client import PatientRecords
from patient_assistant.services.conversation_store import ConversationStore
from patient_assistant.tools.catalog import describe_appointment, describe_therapist

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXCERPT_MAX_CHARS = 300
TRUNCATION_MARKER = "\n[context truncated]"
# Reads issued concurrently by ContextRetriever.build
CONTEXT_READS = 5

_LISTING_ACTIONS = {
    "list_therapists": THERAPIST_LISTING,
    "list_appointments": APPOINTMENT_LISTING,
}


@dataclass(frozen=True)
class ContextSnapshot:
    digest: str
    recent: list[Turn] = field(default_factory=list)
    delivered: frozenset[str] = frozenset()
    excerpts: list[Turn] = field(default_factory=list)
    patient: dict[str, Any] | None = None
    appointments: list[dict[str, Any]] = field(default_factory=list)
    therapists: list[dict[str, Any]] = field(default_factory=list)


def delivered_listings(window: list[Turn], phrases: PhraseClassifier = classifier) -> frozenset[str]:
    """Listings (therapists / appointments) the assistant already showed in *window*."""
    delivered: set[str] = set()
    for turn in window:
        if turn.role != "assistant":
            continue
        if turn.action in _LISTING_ACTIONS and turn.action_result and turn.action_result.success:
            delivered.add(_LISTING_ACTIONS[turn.action])
        kind = phrases.listing_kind(turn.content)
        if kind:
            delivered.add(kind)
    return frozenset(delivered)


def _excerpt(turn: Turn) -> str:
    speaker = "Patient" if turn.role == "user" else "Assistant"
    text = " ".join(turn.content.split())
    if len(text) > EXCERPT_MAX_CHARS:
        text = text[: EXCERPT_MAX_CHARS - 3] + "..."
    return f"- [{turn.timestamp:%Y-%m-%d}] {speaker}: {text}"


def render_digest(
    patient_id: str,
    patient: dict[str, Any] | None,
    excerpts: list[Turn],
    appointments: list[dict[str, Any]],
    therapists: list[dict[str, Any]],
) -> str:
    sections: list[str] = []

    lines = ["## Patient"]
    if patient:
        name = f"{patient.get('firstName', '')} {patient.get('lastName', '')}".strip()
        lines.append(f"- Name: {name or 'Unknown'} (ID: {patient_id})")
        if patient.get("email"):
            lines.append(f"- Email: {patient['email']}")
    else:
        lines.append(f"- ID: {patient_id}")
    sections.append("\n".join(lines))

    if excerpts:
        sections.append("## Relevant past conversation\n" + "\n".join(_excerpt(t) for t in excerpts))

    if appointments:
        sections.append(
            "## Current appointments\n" + "\n".join(describe_appointment(a) for a in appointments)
        )
    else:
        sections.append("## Current appointments\n- None")

    if therapists:
        sections.append(
            "## Available therapists\n" + "\n".join(describe_therapist(t) for t in therapists)
        )

    return "\n\n".join(sections)


def bounded_digest(
    patient_id: str,
    patient: dict[str, Any] | None,
    excerpts: list[Turn],
    appointments: list[dict[str, Any]],
    therapists: list[dict[str, Any]],
    max_chars: int = CONTEXT_MAX_CHARS,
) -> str:
    """Render the digest, shedding content until it fits in *max_chars*.

    Drop order: least relevant excerpt, oldest appointment, last therapist,
    then a hard cut.  *excerpts* is most-relevant first and *appointments*
    oldest first.
    """
    excerpts, appointments, therapists = list(excerpts), list(appointments), list(therapists)
    digest = render_digest(patient_id, patient, excerpts, appointments, therapists)
    while len(digest) > max_chars:
        if excerpts:
            excerpts.pop()
        elif appointments:
            appointments.pop(0)
        elif therapists:
            therapists.pop()
        else:
            break
        digest = render_digest(patient_id, patient, excerpts, appointments, therapists)

    if len(digest) > max_chars:
        digest = digest[: max(0, max_chars - len(TRUNCATION_MARKER))] + TRUNCATION_MARKER
    return digest


class ContextRetriever:
    """Build a ``ContextSnapshot`` for one incoming message."""

    def __init__(
        self,
        store: ConversationStore,
        records: PatientRecords,
        projector: HistoryProjector | None = None,
        *,
        top_k: int = SEMANTIC_TOP_K,
        window_turns: int = WINDOW_TURNS,
        max_chars: int = CONTEXT_MAX_CHARS,
        phrases: PhraseClassifier = classifier,
    ):
        self._store = store
        self._records = records
        self._projector = projector or HistoryProjector(store)
        self._top_k = top_k
        self._window_turns = window_turns
        self._max_chars = max_chars
        self._phrases = phrases

    def build(self, patient_id: str, message: str) -> ContextSnapshot:
        # Per-message pool: concurrent requests do not share workers
        with ThreadPoolExecutor(max_workers=CONTEXT_READS, thread_name_prefix="context") as pool:
            futures = {
                "excerpts": pool.submit(self._related_turns, patient_id, message),
                "recent": pool.submit(self._projector.recent, patient_id, self._window_turns),
                "appointments": pool.submit(self._records.list_appointments, patient_id),
                "therapists": pool.submit(self._records.list_therapists),
                "patient": pool.submit(self._records.find_patient, patient_id),
            }

            recent: list[Turn] = _settle("recent window", futures["recent"], [])
            appointments = sorted(
                _settle("appointments", futures["appointments"], []),
                key=lambda apt: str(apt.get("appointmentDate", "")),
            )
            therapists = _settle("therapists", futures["therapists"], [])
            patient = _settle("patient profile", futures["patient"], None)
            related = _settle("related turns", futures["excerpts"], [])

        # Turns already in the visible window add nothing as excerpts
        window_ids = {t.id for t in recent}
        excerpts = [t for t in related if t.id not in window_ids]

        digest = bounded_digest(
            patient_id, patient, excerpts, appointments, therapists, max_chars=self._max_chars,
        )
        logger.debug(
            "Context for %s: %d excerpts, %d recent, %d appointments, %d therapists, %d chars",
            patient_id, len(excerpts), len(recent), len(appointments), len(therapists), len(digest),
        )
        return ContextSnapshot(
            digest=digest,
            recent=recent,
            delivered=delivered_listings(recent, self._phrases),
            excerpts=excerpts,
            patient=patient,
            appointments=appointments,
            therapists=therapists,
        )

    def _related_turns(self, patient_id: str, message: str) -> list[Turn]:
        entries = self._store.query_semantic(patient_id, message, self._top_k)
        return [reconstruct_turn(e, patient_id) for e in entries]


def _settle(label: str, future: Future[T], default: T) -> T:
    try:
        return future.result()
    except Exception as exc:
        logger.warning("Context read '%s' failed: %s", label, exc)
        return default
