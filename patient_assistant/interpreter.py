"""Turn a free-text model completion into a tagged ``Interpretation``.

The model is instructed to answer either in natural language or with::

    ACTION: <action_name>
    PARAMETERS: {"key": "value"}

Models do not always comply, so the grammar is layered.  In order, first
match wins:

1. clarification guard  - the assistant is still collecting details
2. repetition guard     - the prose re-renders a listing already delivered
3. native tool call     - when the model supports structured tool use
4. ``ACTION:`` line plus the ``PARAMETERS:`` block that follows it
5. parameter normalisation, then ``"key": "value"`` pair recovery
6. parameter-less actions default to ``{}``
7. keyword heuristics when no ``ACTION:`` token is present at all

Every tier is a plain function so it can be exercised in isolation.  The
text handed back to the user never contains the directive lines.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from patient_assistant.errors import ParseError
from patient_assistant.models import Action, Interpretation, NoAction, ParseFailure
from patient_assistant.phrases import PhraseClassifier, classifier
from patient_assistant.tools.catalog import CATALOG, ActionCatalog

logger = logging.getLogger(__name__)

ACTION_RE = re.compile(r"\bACTION:[ \t]*(.+)", re.IGNORECASE)
# Block ends at a blank line or a line starting with a capital letter.
PARAMETERS_RE = re.compile(r"\b(?i:PARAMETERS):\s*([\s\S]+?)(?=\n\s*\n|\n[A-Z]|$)")
_ACTION_LINE_RE = re.compile(r"\bACTION:[^\n]*", re.IGNORECASE)
_FENCE_LINE_RE = re.compile(r"^[ \t]*```[a-zA-Z]*[ \t]*$", re.MULTILINE)
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_STRING_PAIR_RE = re.compile(r'"([^"]+)"\s*:\s*"([^"]*)"')
_SCALAR_PAIR_RE = re.compile(r'"([^"]+)"\s*:\s*(-?\d+(?:\.\d+)?|true|false|null)\b')
# "list therapists", "show you the available therapists"
_LIST_THERAPISTS_RE = re.compile(r"\b(?:list|show)(?:\s+[a-z]+){0,3}?\s+therapists\b")
# Written by models that mean "no action"
NO_ACTION_NAMES = frozenset({"none", "null", "no_action", "n"})


# ── Tier helpers ─────────────────────────────────────────────────────


def strip_directives(text: str) -> str:
    """Remove ACTION lines and PARAMETERS blocks, leaving the prose."""
    text = text or ""
    cleaned = _ACTION_LINE_RE.sub("", PARAMETERS_RE.sub("", text))
    if cleaned != text:
        # Fences that wrapped the directives
        cleaned = _FENCE_LINE_RE.sub("", cleaned)
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def normalize_action_name(raw: str) -> str | None:
    """``"[List-Therapists]"`` → ``"list_therapists"``; ``None`` if no name is present."""
    match = _NAME_RE.search(raw.replace("`", " ").replace("*", " "))
    if not match:
        return None
    return match.group(0).lower().replace("-", "_")


def normalize_parameters(block: str) -> dict[str, Any]:
    """Collapse the block to one line, brace-wrap it if needed and parse it as JSON."""
    candidate = _FENCE_RE.sub("", block.strip())
    candidate = " ".join(candidate.split())
    if not candidate.startswith("{"):
        candidate = f"{{{candidate}}}"
    elif "}" in candidate:
        candidate = candidate[: candidate.rfind("}") + 1]
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ParseError(f"parameters are not valid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise ParseError("parameters are not a JSON object")
    return parsed


def recover_pairs(block: str) -> dict[str, Any]:
    """Salvage ``"key": "value"`` (and bare scalar) pairs from broken JSON."""
    recovered: dict[str, Any] = {}
    for key, value in _STRING_PAIR_RE.findall(block):
        recovered.setdefault(key, value)
    for key, value in _SCALAR_PAIR_RE.findall(block):
        if key not in recovered:
            recovered[key] = json.loads(value)
    return recovered


def parse_parameters(block: str) -> dict[str, Any]:
    try:
        return normalize_parameters(block)
    except ParseError as exc:
        recovered = recover_pairs(block)
        logger.info("Recovered %d parameter(s) after %s", len(recovered), exc)
        return recovered


def infer_intent(text: str) -> str | None:
    """Last-resort keyword mapping to a parameter-less action."""
    lowered = (text or "").lower()
    words = set(re.findall(r"[a-z]+", lowered))
    if _LIST_THERAPISTS_RE.search(lowered):
        return "list_therapists"
    if "my" in words and any(w.startswith("appointment") for w in words):
        return "list_appointments"
    if "my" in words and "profile" in words:
        return "get_profile"
    return None


# ── Interpreter ──────────────────────────────────────────────────────


class ResponseInterpreter:
    """Apply the tiers above to one completion.  Never raises."""

    def __init__(
        self,
        catalog: ActionCatalog = CATALOG,
        phrases: PhraseClassifier = classifier,
    ):
        self._catalog = catalog
        self._phrases = phrases

    def interpret(
        self,
        text: str,
        *,
        delivered: Iterable[str] = (),
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> Interpretation:
        """Interpret *text*.

        ``delivered`` names the listings (``"therapists"``,
        ``"appointments"``) already shown in the visible window;
        ``tool_calls`` carries native tool calls when the model made any.
        """
        try:
            return self._interpret(text or "", frozenset(delivered), tool_calls or [])
        except Exception as exc:
            logger.exception("Interpreter failed; treating completion as plain text")
            return ParseFailure(text=_safe_strip(text), detail=f"{type(exc).__name__}: {exc}")

    def _interpret(
        self,
        raw: str,
        delivered: frozenset[str],
        tool_calls: list[dict[str, Any]],
    ) -> Interpretation:
        cleaned = strip_directives(raw)
        listing = self._phrases.listing_kind(cleaned)
        repeats_listing = listing is not None and listing in delivered

        phrase = self._phrases.clarification_phrase(cleaned)
        if phrase and not repeats_listing:
            logger.debug("Clarification guard matched %r", phrase)
            return NoAction(cleaned, reason="clarification")

        if repeats_listing:
            logger.debug("Repetition guard: %s listing already delivered", listing)
            return NoAction(cleaned, reason="repetition")

        if tool_calls:
            call = tool_calls[0]
            name = normalize_action_name(str(call.get("name", "")))
            if name:
                return Action(cleaned, name, dict(call.get("args") or {}), source="tool_call")

        action_match = ACTION_RE.search(raw)
        if action_match:
            name = normalize_action_name(action_match.group(1))
            if name is None:
                return ParseFailure(cleaned, "ACTION line without an action name")
            if name in NO_ACTION_NAMES:
                return NoAction(cleaned)

            params_match = PARAMETERS_RE.search(raw, action_match.end()) or PARAMETERS_RE.search(raw)
            if params_match is None:
                if self._catalog.requires_parameters(name):
                    return ParseFailure(cleaned, f"{name} requires parameters but none were given")
                return Action(cleaned, name, {})
            return Action(cleaned, name, parse_parameters(params_match.group(1)))

        inferred = infer_intent(raw)
        if inferred:
            logger.debug("Keyword fallback inferred %s", inferred)
            return Action(cleaned, inferred, {}, source="heuristic")

        return NoAction(cleaned)


def _safe_strip(text: str | None) -> str:
    try:
        return strip_directives(text or "")
    except Exception:
        return text or ""
