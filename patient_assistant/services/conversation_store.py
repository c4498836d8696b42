"""Durable, patient-partitioned conversation log on top of ChromaDB.

One Chroma entry per turn:

* ``id``        the turn id
* ``document``  ``"<Role>: <content>"`` (what gets embedded for semantic recall)
* ``metadata``  ``patientId``, ``role``, ``timestamp`` (ISO), ``timestampMs``,
  ``seq`` (0 user / 1 assistant), ``action`` and ``turnJson``, the
  canonical JSON of the whole turn

Chroma failures never propagate.  Every operation is retried once; after that reads
return ``[]`` and writes are dropped with a warning, so a Chroma outage
costs the assistant its memory but not its ability to answer.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from patient_assistant.config import (
    CHROMA_COLLECTION,
    CHROMA_HOST,
    CHROMA_PORT,
    CHROMA_RECONNECT_SECONDS,
    HISTORY_SCAN_LIMIT,
)
from patient_assistant.models import Turn
from patient_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLE_LABELS = {"user": "Patient", "assistant": "Assistant"}
ATTEMPTS = 2


@dataclass(frozen=True)
class StoredEntry:
    """A raw row as returned by the collection."""

    id: str
    document: str
    metadata: dict[str, Any] = field(default_factory=dict)
    distance: float | None = None


def entry_document(turn: Turn) -> str:
    return f"{ROLE_LABELS[turn.role]}: {turn.content}"


def entry_metadata(turn: Turn) -> dict[str, Any]:
    # Chroma metadata values must be scalars and may not be None
    metadata: dict[str, Any] = {
        "patientId": turn.patient_id,
        "role": turn.role,
        "timestamp": turn.timestamp.isoformat(),
        "timestampMs": turn.timestamp_ms,
        "seq": 0 if turn.role == "user" else 1,
        "turnJson": turn.canonical(),
    }
    if turn.action:
        metadata["action"] = turn.action
    return metadata


class ConversationStore:
    """Append/query/get/clear conversation turns, always scoped to one patient."""

    def __init__(
        self,
        collection: Any = None,
        *,
        host: str | None = None,
        port: int | None = None,
        collection_name: str | None = None,
        reconnect_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._collection = collection
        self._injected = collection is not None
        self._host = host or CHROMA_HOST
        self._port = port or CHROMA_PORT
        self._collection_name = collection_name or CHROMA_COLLECTION
        self._reconnect_seconds = (
            CHROMA_RECONNECT_SECONDS if reconnect_seconds is None else reconnect_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._last_connect_attempt: float | None = None

    # ── Connection ───────────────────────────────────────────────────

    def _get_collection(self) -> Any:
        """Return the collection, connecting lazily; ``None`` while unavailable."""
        if self._collection is not None:
            return self._collection

        with self._lock:
            if self._collection is not None:
                return self._collection
            now = self._clock()
            if (
                self._last_connect_attempt is not None
                and now - self._last_connect_attempt < self._reconnect_seconds
            ):
                return None
            self._last_connect_attempt = now

            t0 = time.perf_counter()
            try:
                import chromadb  # noqa: PLC0415 - heavy import, only needed once connected

                client = chromadb.HttpClient(host=self._host, port=self._port)
                self._collection = client.get_or_create_collection(
                    name=self._collection_name,
                    metadata={"hnsw:space": "cosine"},
                )
            except Exception as exc:
                metrics.record_failure(
                    "chroma", "connect",
                    error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                logger.warning(
                    "ChromaDB unavailable at %s:%d (%s); retrying in %.0fs",
                    self._host, self._port, exc, self._reconnect_seconds,
                )
                return None

            metrics.record_success("chroma", "connect", latency_ms=(time.perf_counter() - t0) * 1000)
            logger.info(
                "Connected to ChromaDB collection %r at %s:%d",
                self._collection_name, self._host, self._port,
            )
            return self._collection

    @property
    def available(self) -> bool:
        return self._get_collection() is not None

    def _run(self, operation: str, call: Callable[[Any], T], default: T) -> T:
        """Run *call* against the collection with one retry, degrading to *default*."""
        for attempt in range(1, ATTEMPTS + 1):
            collection = self._get_collection()
            if collection is None:
                logger.warning("Conversation store unavailable; %s skipped", operation)
                return default

            t0 = time.perf_counter()
            try:
                result = call(collection)
            except Exception as exc:
                metrics.record_failure(
                    "chroma", operation,
                    error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                logger.warning(
                    "Chroma %s failed on attempt %d/%d: %s", operation, attempt, ATTEMPTS, exc,
                )
                continue

            metrics.record_success("chroma", operation, latency_ms=(time.perf_counter() - t0) * 1000)
            return result

        if not self._injected:
            # Force a (throttled) reconnect on the next call
            with self._lock:
                self._collection = None
        logger.warning("Chroma %s degraded after %d attempts", operation, ATTEMPTS)
        return default

    # ── Operations ───────────────────────────────────────────────────

    def append(self, patient_id: str, turn: Turn) -> bool:
        """Persist *turn*; returns ``False`` when the write was dropped."""
        if turn.patient_id != patient_id:
            raise ValueError(f"turn {turn.id} belongs to another patient")

        def _add(collection: Any) -> bool:
            collection.add(
                ids=[turn.id],
                documents=[entry_document(turn)],
                metadatas=[entry_metadata(turn)],
            )
            return True

        return self._run("append", _add, False)

    def query_semantic(self, patient_id: str, query_text: str, k: int) -> list[StoredEntry]:
        """The *k* entries of this patient closest to *query_text*, most relevant first."""
        if not query_text.strip() or k <= 0:
            return []

        def _query(collection: Any) -> list[StoredEntry]:
            result = collection.query(
                query_texts=[query_text],
                n_results=k,
                where={"patientId": patient_id},
                include=["documents", "metadatas", "distances"],
            )
            ids = (result.get("ids") or [[]])[0]
            documents = (result.get("documents") or [[]])[0]
            metadatas = (result.get("metadatas") or [[]])[0]
            distances = (result.get("distances") or [[]])[0] or [None] * len(ids)
            return [
                StoredEntry(id=i, document=d or "", metadata=m or {}, distance=dist)
                for i, d, m, dist in zip(ids, documents, metadatas, distances, strict=False)
            ]

        return _own_rows(patient_id, self._run("query", _query, []))

    def get_all(self, patient_id: str, page_size: int = HISTORY_SCAN_LIMIT) -> list[StoredEntry]:
        """Every entry of this patient, in no particular order.

        Rows are fetched ``page_size`` at a time until a short page comes
        back, so long histories are read in full rather than truncated.
        """
        page_size = max(page_size, 1)

        def _get(collection: Any) -> list[StoredEntry]:
            entries: list[StoredEntry] = []
            while True:
                result = collection.get(
                    where={"patientId": patient_id},
                    limit=page_size,
                    offset=len(entries),
                    include=["documents", "metadatas"],
                )
                ids = result.get("ids") or []
                documents = result.get("documents") or [""] * len(ids)
                metadatas = result.get("metadatas") or [{}] * len(ids)
                entries.extend(
                    StoredEntry(id=i, document=d or "", metadata=m or {})
                    for i, d, m in zip(ids, documents, metadatas, strict=False)
                )
                if len(ids) < page_size:
                    return entries

        return _own_rows(patient_id, self._run("get", _get, []))

    def clear(self, patient_id: str) -> int | None:
        """Delete every entry of this patient.

        Returns the number of removed entries, or ``None`` when the store
        could not be reached.
        """

        def _clear(collection: Any) -> int:
            ids = collection.get(where={"patientId": patient_id}, include=[]).get("ids") or []
            if ids:
                collection.delete(ids=ids)
            return len(ids)

        removed = self._run("clear", _clear, None)
        if removed is not None:
            logger.info("Cleared %d conversation entries for patient %s", removed, patient_id)
        return removed


def _own_rows(patient_id: str, entries: list[StoredEntry]) -> list[StoredEntry]:
    own = [e for e in entries if e.metadata.get("patientId") == patient_id]
    if len(own) != len(entries):
        logger.error(
            "Dropped %d conversation entries not owned by patient %s",
            len(entries) - len(own), patient_id,
        )
    return own
