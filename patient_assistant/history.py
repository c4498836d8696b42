"""Rebuild ordered, paginated conversation history from stored entries."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from patient_assistant.config import HISTORY_PAGE_SIZE, HISTORY_SCAN_LIMIT
from patient_assistant.models import Turn
from patient_assistant.services.conversation_store import ROLE_LABELS, ConversationStore, StoredEntry

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, UTC)


def turn_order(turn: Turn) -> tuple[datetime, int]:
    """Chronological key; a user turn sorts before the reply stamped at the same instant."""
    return turn.timestamp, 0 if turn.role == "user" else 1


def _entry_timestamp(metadata: dict) -> datetime:
    iso = metadata.get("timestamp")
    if isinstance(iso, str):
        try:
            parsed = datetime.fromisoformat(iso.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        except ValueError:
            pass
    millis = metadata.get("timestampMs")
    if isinstance(millis, int | float):
        return datetime.fromtimestamp(millis / 1000, UTC)
    return _EPOCH


def reconstruct_turn(entry: StoredEntry, patient_id: str) -> Turn:
    """Prefer the embedded canonical turn; fall back to document text plus ``role``."""
    payload = entry.metadata.get("turnJson")
    if isinstance(payload, str) and payload:
        try:
            return Turn.from_canonical(payload)
        except ValueError as exc:
            logger.warning("Stored turn %s is not valid canonical JSON: %s", entry.id, exc)

    role = entry.metadata.get("role")
    if role not in ROLE_LABELS:
        role = "assistant"
    content = entry.document
    prefix = f"{ROLE_LABELS[role]}: "
    if content.startswith(prefix):
        content = content[len(prefix):]
    return Turn(
        id=entry.id,
        patient_id=patient_id,
        role=role,
        content=content,
        timestamp=_entry_timestamp(entry.metadata),
    )


def merge_history(loaded: Iterable[Turn], incoming: Iterable[Turn]) -> list[Turn]:
    """Integrate a freshly fetched page into an already-loaded list, deduplicated by id."""
    by_id: dict[str, Turn] = {}
    for turn in (*loaded, *incoming):
        by_id.setdefault(turn.id, turn)
    return sorted(by_id.values(), key=turn_order)


class HistoryProjector:
    """Read-side view of a patient's conversation."""

    def __init__(self, store: ConversationStore, scan_limit: int = HISTORY_SCAN_LIMIT):
        self._store = store
        self._scan_limit = scan_limit

    def load(self, patient_id: str) -> list[Turn]:
        entries = self._store.get_all(patient_id, page_size=self._scan_limit)
        return sorted((reconstruct_turn(e, patient_id) for e in entries), key=turn_order)

    def project(
        self,
        patient_id: str,
        page: int = 1,
        page_size: int = HISTORY_PAGE_SIZE,
        before: str | None = None,
    ) -> list[Turn]:
        """One page of turns, oldest first.

        Page 1 is the newest ``page_size`` turns, page 2 the slice before it
        and so on.  With ``before`` (a turn id) the page is the
        ``page_size`` turns strictly older than that turn and ``page`` is
        ignored; an unknown cursor yields an empty page.
        """
        if page_size <= 0:
            return []
        turns = self.load(patient_id)

        if before is not None:
            end = next((i for i, t in enumerate(turns) if t.id == before), None)
            if end is None:
                logger.info("History cursor %s not found for patient %s", before, patient_id)
                return []
        else:
            end = len(turns) - (max(page, 1) - 1) * page_size

        if end <= 0:
            return []
        return turns[max(0, end - page_size):end]

    def recent(self, patient_id: str, n: int) -> list[Turn]:
        """The last *n* turns, oldest first."""
        if n <= 0:
            return []
        return self.load(patient_id)[-n:]
