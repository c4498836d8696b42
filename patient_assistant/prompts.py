"""System prompt and message window for the patient assistant."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from patient_assistant.config import WINDOW_TURNS
from patient_assistant.models import ActionEnvelope, Turn, canonical_json
from patient_assistant.services.backend_client import record_id
from patient_assistant.tools.catalog import CATALOG, ActionCatalog

SYSTEM_PROMPT_TEMPLATE = """You are the patient assistant of a therapy practice's healthcare management system.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The current time is **{current_time} UTC**.
Use this to resolve relative dates like "tomorrow" or "next Monday" into ISO-8601 date-times.

## Your Role
You help the logged-in patient with:
1. **Listing therapists** and their specializations
2. **Booking** appointments with a therapist
3. **Viewing** their appointments
4. **Cancelling** one of their appointments
5. **Viewing** their profile

## What You Know About This Patient
{context}

## Available Actions
{actions}

## How To Run An Action
When (and only when) you have everything an action needs, reply with exactly:

ACTION: <action_name>
PARAMETERS: <JSON object on one line>

Example:
ACTION: cancel_appointment
PARAMETERS: {{"appointmentId": "abc123", "cancellationReason": "Cancelled by patient"}}

Use `PARAMETERS: {{}}` for actions without parameters.  Run at most one action per reply.
If something required is missing, ask for it in plain language instead and do NOT write an ACTION line.

## Rules
- **NEVER** ask again for information the patient already gave in the conversation above.
- **NEVER** repeat a therapist or appointment list you already showed; refer to it instead.
- **NEVER** invent IDs. Only use therapist and appointment IDs that appear in this prompt or the conversation.
- When the patient names a therapist or appointment, take its ID from the context above.
- Booking durations are 15 to 180 minutes; default to 60 when the patient does not care.
- **NEVER** give medical advice, diagnoses, or treatment recommendations.
- **NEVER** share other patients' information.
- Keep answers short, warm and professional.
"""


def get_system_prompt(
    context: str = "",
    catalog: ActionCatalog = CATALOG,
    now: datetime | None = None,
) -> str:
    """Build the complete system prompt with the context digest and current date injected."""
    now = now or datetime.now(UTC)
    return SYSTEM_PROMPT_TEMPLATE.format(
        context=context or "(no context available)",
        actions=catalog.describe(),
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
    )


def summarize_result(envelope: ActionEnvelope) -> str:
    """One line describing an action outcome, keeping the IDs the model may need later."""
    if not envelope.success:
        return f"failed: {envelope.error}"
    data = envelope.data
    if isinstance(data, list):
        ids = [i for i in (record_id(item) for item in data if isinstance(item, dict)) if i]
        suffix = f" (IDs: {', '.join(ids[:10])})" if ids else ""
        return f"succeeded, {len(data)} item(s){suffix}"
    if isinstance(data, dict) and record_id(data):
        return f"succeeded (ID: {record_id(data)})"
    return "succeeded"


def annotate(turn: Turn) -> str:
    """Assistant turn content plus a note of the action it ran, if any."""
    if turn.action is None or turn.action_result is None:
        return turn.content
    note = (
        f"[Previous action: {turn.action} "
        f"{canonical_json(turn.parameters or {})} -> {summarize_result(turn.action_result)}]"
    )
    return f"{turn.content}\n\n{note}" if turn.content else note


class PromptAssembler:
    """Turn a context snapshot and the new message into model input."""

    def __init__(
        self,
        catalog: ActionCatalog = CATALOG,
        *,
        window_turns: int = WINDOW_TURNS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._catalog = catalog
        self._window_turns = window_turns
        self._clock = clock

    def system_prompt(self, digest: str) -> str:
        return get_system_prompt(digest, self._catalog, self._clock())

    def messages(self, window: list[Turn], message: str) -> list[BaseMessage]:
        """The last ``window_turns`` turns, starting with a patient turn, then *message*."""
        turns = window[-self._window_turns:] if self._window_turns > 0 else []
        while turns and turns[0].role == "assistant":
            turns = turns[1:]

        history: list[BaseMessage] = []
        for turn in turns:
            if turn.role == "user":
                history.append(HumanMessage(content=turn.content))
            else:
                history.append(AIMessage(content=annotate(turn)))
        history.append(HumanMessage(content=message))
        return history

    def assemble(self, digest: str, window: list[Turn], message: str) -> tuple[str, list[BaseMessage]]:
        return self.system_prompt(digest), self.messages(window, message)


def tool_listing(catalog: ActionCatalog = CATALOG) -> dict[str, object]:
    """Action names and a context-free system prompt, for inspection endpoints."""
    return {"tools": catalog.names(), "systemPrompt": get_system_prompt(catalog=catalog)}
