"""HTTP client for the appointment / therapist / patient records backend,
with retry logic, timeout handling and a TTL cache for slow-changing data.

The backend owns the records and their validation; this client is the only
place the assistant reads or writes them.  Every operation is keyed by a
patient, therapist or appointment identifier.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

from patient_assistant.config import BACKEND_BASE_URL, BACKEND_SERVICE_TOKEN
from patient_assistant.services.cache import TTLCache
from patient_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0

_CK_THERAPISTS = "therapists"
_CK_PATIENT = "patient:"


class BackendAPIError(Exception):
    """Raised when a records backend call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class PatientRecords(Protocol):
    """Read/write operations the assistant needs from the records backend."""

    def list_therapists(self) -> list[dict[str, Any]]: ...

    def list_appointments(self, patient_id: str) -> list[dict[str, Any]]: ...

    def find_appointment(self, appointment_id: str) -> dict[str, Any]: ...

    def create_appointment(self, patient_id: str, payload: dict[str, Any]) -> dict[str, Any]: ...

    def update_appointment(self, appointment_id: str, changes: dict[str, Any]) -> dict[str, Any]: ...

    def find_patient(self, patient_id: str) -> dict[str, Any]: ...


def record_id(record: dict[str, Any] | str | None) -> str | None:
    """Return the identifier of a (possibly populated) record reference.

    The backend returns references either as a bare id string or as a
    populated sub-document carrying ``_id`` / ``id``.
    """
    if record is None:
        return None
    if isinstance(record, str):
        return record
    value = record.get("_id") or record.get("id")
    return str(value) if value is not None else None


class BackendClient:
    """Thin wrapper around the records REST API with automatic retries.

    Therapist directory and patient profiles are cached with a TTL;
    appointments are always read fresh and writes invalidate nothing else
    because appointment data is never cached.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        cache: TTLCache | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self._base_url = base_url or BACKEND_BASE_URL
        token = token or BACKEND_SERVICE_TOKEN
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=self._base_url,
            headers=headers,
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._cache = cache or TTLCache()

    def close(self) -> None:
        self._client.close()

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        """Execute an HTTP request with exponential-backoff retries."""
        operation = f"{method} {path.split('/')[1] if '/' in path else path}"
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            t0 = time.perf_counter()
            try:
                response = self._client.request(method, path, json=json_body)
                if response.status_code >= 500:
                    raise BackendAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise BackendAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success("backend", operation, latency_ms=(time.perf_counter() - t0) * 1000)
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                metrics.record_failure("backend", operation, error_type=type(exc).__name__)
                logger.warning(
                    "Backend attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except BackendAPIError as exc:
                metrics.record_failure("backend", operation, error_type=str(exc.status_code))
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Backend server error on attempt %d/%d. Retrying…", attempt, MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise BackendAPIError(f"Backend request failed after {MAX_RETRIES} attempts: {last_error}")

    @staticmethod
    def _as_list(data: Any) -> list[dict[str, Any]]:
        if isinstance(data, dict):
            data = data.get("data", data.get("collection", []))
        return list(data or [])

    @staticmethod
    def _as_record(data: Any) -> dict[str, Any]:
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            return data["data"]
        return data

    # ── Therapists ───────────────────────────────────────────────────

    def list_therapists(self) -> list[dict[str, Any]]:
        """Active therapists (cached)."""

        def _load() -> list[dict[str, Any]]:
            therapists = self._as_list(self._request("GET", "/therapists"))
            return [t for t in therapists if t.get("isActive", True)]

        return self._cache.get_or_load(_CK_THERAPISTS, _load)

    # ── Appointments (never cached) ──────────────────────────────────

    def list_appointments(self, patient_id: str) -> list[dict[str, Any]]:
        return self._as_list(self._request("GET", f"/appointments/patient/{patient_id}"))

    def find_appointment(self, appointment_id: str) -> dict[str, Any]:
        return self._as_record(self._request("GET", f"/appointments/{appointment_id}"))

    def create_appointment(self, patient_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = {**payload, "patientId": patient_id}
        created = self._as_record(self._request("POST", "/appointments", json_body=body))
        logger.info("Booked appointment %s for patient %s", record_id(created), patient_id)
        return created

    def update_appointment(self, appointment_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        updated = self._as_record(
            self._request("PATCH", f"/appointments/{appointment_id}", json_body=changes)
        )
        logger.info("Updated appointment %s (%s)", appointment_id, ", ".join(sorted(changes)))
        return updated

    # ── Patients ─────────────────────────────────────────────────────

    def find_patient(self, patient_id: str) -> dict[str, Any]:
        """Patient profile without credentials (cached)."""

        def _load() -> dict[str, Any]:
            profile = dict(self._as_record(self._request("GET", f"/patients/{patient_id}")))
            profile.pop("password", None)
            return profile

        return self._cache.get_or_load(f"{_CK_PATIENT}{patient_id}", _load)
