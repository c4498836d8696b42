"""Shared test fixtures for the Patient Assistant test suite."""

from __future__ import annotations

import copy
import os
import re
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

JWT_TEST_SECRET = "test-jwt-secret-at-least-32-bytes-long"


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any test module is imported, so config.py won't fail
    on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("JWT_SECRET", JWT_TEST_SECRET)
    os.environ.setdefault("METRICS_ENABLED", "false")


# ── In-memory Chroma collection ──────────────────────────────────────


def _words(text: str) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", (text or "").lower()))


class FakeCollection:
    """Enough of ``chromadb.Collection`` for the conversation store.

    Semantic queries rank by word overlap.  ``fail_next`` makes the next N
    calls raise, ``down`` makes every call raise.
    """

    def __init__(self):
        self.rows: dict[str, tuple[str, dict[str, Any]]] = {}
        self.fail_next = 0
        self.down = False
        self.calls: list[str] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.down:
            raise ConnectionError("chroma is down")
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("transient chroma failure")

    @staticmethod
    def _matches(metadata: dict[str, Any], where: dict[str, Any] | None) -> bool:
        return all(metadata.get(k) == v for k, v in (where or {}).items())

    def add(self, ids, documents, metadatas):
        self._enter("add")
        for id_, doc, meta in zip(ids, documents, metadatas, strict=True):
            self.rows[id_] = (doc, dict(meta))

    def get(self, where=None, limit=None, offset=None, include=None):
        self._enter("get")
        # Insertion order, like Chroma
        hits = [(i, d, m) for i, (d, m) in list(self.rows.items()) if self._matches(m, where)]
        hits = hits[offset or 0:]
        if limit is not None:
            hits = hits[:limit]
        return {
            "ids": [h[0] for h in hits],
            "documents": [h[1] for h in hits],
            "metadatas": [h[2] for h in hits],
        }

    def query(self, query_texts, n_results=10, where=None, include=None):
        self._enter("query")
        wanted = _words(query_texts[0])
        hits = [(i, d, m) for i, (d, m) in list(self.rows.items()) if self._matches(m, where)]
        scored = sorted(hits, key=lambda h: -len(wanted & _words(h[1])))[:n_results]
        return {
            "ids": [[h[0] for h in scored]],
            "documents": [[h[1] for h in scored]],
            "metadatas": [[h[2] for h in scored]],
            "distances": [[1.0 / (1 + len(wanted & _words(h[1]))) for h in scored]],
        }

    def delete(self, ids=None, where=None):
        self._enter("delete")
        for id_ in list(ids or []):
            self.rows.pop(id_, None)
        if where:
            for id_, (_, meta) in list(self.rows.items()):
                if self._matches(meta, where):
                    del self.rows[id_]


# ── In-memory records backend ────────────────────────────────────────

SMITH = {
    "_id": "t1",
    "firstName": "John",
    "lastName": "Smith",
    "specialization": "Anxiety & Depression",
    "isActive": True,
}
JONES = {
    "_id": "t2",
    "firstName": "Sarah",
    "lastName": "Jones",
    "specialization": "Family Therapy",
    "isActive": True,
}


class FakeRecords:
    """Implements the ``PatientRecords`` protocol over dictionaries."""

    def __init__(self):
        self.therapists = [copy.deepcopy(SMITH), copy.deepcopy(JONES)]
        self.patients = {
            "p1": {"_id": "p1", "firstName": "Alice", "lastName": "Doe", "email": "alice@example.com"},
            "p2": {"_id": "p2", "firstName": "Bob", "lastName": "Roe", "email": "bob@example.com"},
        }
        self.appointments = {
            "abc123": {
                "_id": "abc123",
                "patientId": "p1",
                "therapistId": copy.deepcopy(SMITH),
                "appointmentDate": "2026-11-03T10:00:00.000Z",
                "duration": 60,
                "status": "scheduled",
            },
            "bob-apt": {
                "_id": "bob-apt",
                "patientId": "p2",
                "therapistId": copy.deepcopy(JONES),
                "appointmentDate": "2026-11-04T09:00:00.000Z",
                "duration": 30,
                "status": "scheduled",
            },
        }
        self.calls: list[tuple[str, tuple]] = []

    def _not_found(self, what: str):
        from patient_assistant.services.backend_client import BackendAPIError

        return BackendAPIError(f"Client error 404: {what} not found", status_code=404)

    def list_therapists(self):
        self.calls.append(("list_therapists", ()))
        return copy.deepcopy(self.therapists)

    def list_appointments(self, patient_id):
        self.calls.append(("list_appointments", (patient_id,)))
        return [copy.deepcopy(a) for a in self.appointments.values() if a["patientId"] == patient_id]

    def find_appointment(self, appointment_id):
        self.calls.append(("find_appointment", (appointment_id,)))
        if appointment_id not in self.appointments:
            raise self._not_found("Appointment")
        return copy.deepcopy(self.appointments[appointment_id])

    def create_appointment(self, patient_id, payload):
        self.calls.append(("create_appointment", (patient_id, payload)))
        apt_id = f"apt{len(self.appointments) + 1}"
        record = {"_id": apt_id, "patientId": patient_id, "status": "scheduled", **payload}
        self.appointments[apt_id] = record
        return copy.deepcopy(record)

    def update_appointment(self, appointment_id, changes):
        self.calls.append(("update_appointment", (appointment_id, changes)))
        self.appointments[appointment_id].update(changes)
        return copy.deepcopy(self.appointments[appointment_id])

    def find_patient(self, patient_id):
        self.calls.append(("find_patient", (patient_id,)))
        if patient_id not in self.patients:
            raise self._not_found("Patient")
        return copy.deepcopy(self.patients[patient_id])

    def called(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def fake_collection():
    return FakeCollection()


@pytest.fixture
def store(fake_collection):
    from patient_assistant.services.conversation_store import ConversationStore

    return ConversationStore(collection=fake_collection)


@pytest.fixture
def records():
    return FakeRecords()


@pytest.fixture
def make_turn():
    """Factory for turns with strictly increasing timestamps."""
    from patient_assistant.models import Turn

    base = datetime(2026, 10, 1, 9, 0, tzinfo=UTC)
    counter = {"n": 0}

    def _make(content: str, role: str = "user", patient_id: str = "p1", **kwargs) -> Turn:
        counter["n"] += 1
        kwargs.setdefault("timestamp", base + timedelta(minutes=counter["n"]))
        return Turn(patient_id=patient_id, role=role, content=content, **kwargs)

    return _make


@pytest.fixture
def make_token():
    """Factory for signed bearer tokens."""
    import jwt

    from patient_assistant.config import JWT_SECRET

    def _make(sub: str = "p1", role: str = "patient", secret: str = JWT_SECRET, **claims) -> str:
        payload = {"sub": sub, "role": role, "email": f"{sub}@example.com", **claims}
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make
