"""Phrase classifier for model prose.

Kept separate from the ACTION/PARAMETERS grammar so the two heuristics the
interpreter relies on (is the assistant still collecting details? is it
re-rendering a list?) can be tuned and tested on their own.
"""

from __future__ import annotations

import re

CLARIFICATION_PHRASES: tuple[str, ...] = (
    "which therapist",
    "what date",
    "what time",
    "how long should",
    "please provide",
    "missing",
    "required",
)

THERAPIST_LISTING = "therapists"
APPOINTMENT_LISTING = "appointments"

_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$", re.MULTILINE)
_DOCTOR_RE = re.compile(r"\bdr\.?\s+[a-z]", re.IGNORECASE)
_APPOINTMENT_MARKERS_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}"
    r"|\b\d{1,2}:\d{2}\b"
    r"|\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+\d{1,2}\b"
    r"|\b\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\b"
    r"|\b(?:scheduled|confirmed|cancelled|completed)\b",
    re.IGNORECASE,
)

# A listing needs at least this many bullet lines of the same kind
MIN_LISTING_ITEMS = 2


class PhraseClassifier:
    """Pattern-based classification of assistant prose."""

    def __init__(self, clarification_phrases: tuple[str, ...] = CLARIFICATION_PHRASES):
        alternation = "|".join(re.escape(p) for p in clarification_phrases)
        self._clarification_re = re.compile(rf"\b(?:{alternation})\b", re.IGNORECASE)

    def clarification_phrase(self, text: str) -> str | None:
        """Return the first clarification phrase found in *text*, if any."""
        match = self._clarification_re.search(text or "")
        return match.group(0).lower() if match else None

    def is_clarification(self, text: str) -> bool:
        return self.clarification_phrase(text) is not None

    def listing_kind(self, text: str) -> str | None:
        """Return ``"appointments"`` / ``"therapists"`` when *text* renders such a list."""
        items = _BULLET_RE.findall(text or "")
        if len(items) < MIN_LISTING_ITEMS:
            return None
        appointment_items = sum(1 for item in items if _APPOINTMENT_MARKERS_RE.search(item))
        if appointment_items >= MIN_LISTING_ITEMS:
            return APPOINTMENT_LISTING
        doctor_items = sum(1 for item in items if _DOCTOR_RE.search(item))
        if doctor_items >= MIN_LISTING_ITEMS:
            return THERAPIST_LISTING
        return None


classifier = PhraseClassifier()
