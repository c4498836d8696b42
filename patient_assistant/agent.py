"""LangGraph chat pipeline for the patient assistant.

Architecture:
  One user message goes through a LangGraph StateGraph:

    1. **build_context**    - ContextRetriever: related turns, recent window,
                              appointments, therapists, profile
    2. **assemble_prompt**  - PromptAssembler: system prompt + message window
    3. **call_llm**         - LLMGateway (one retry on transient failures)
    4. **interpret**        - ResponseInterpreter → NoAction | Action | ParseFailure
    5. **dispatch**         - ActionDispatcher, only for ``Action``
    6. **merge**            - pick the answer, build the assistant turn
    7. **store**            - append the user and the assistant turn

  Routing:
    call_llm → (completion?)  → interpret → (action?) → dispatch → merge
                                          → (none?)   → merge
             → (upstream failed?) → merge (apologetic answer)
    merge → store → END

  Every path ends in ``store``: both turns of a round-trip are recorded
  even when the model is unavailable.  Conversation memory lives in the
  ConversationStore, not in a LangGraph checkpointer.
"""

from __future__ import annotations

import logging
from typing import Any

from langchain_core.messages import BaseMessage
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from patient_assistant.context import ContextRetriever, ContextSnapshot
from patient_assistant.errors import TransientUpstreamError, UpstreamError
from patient_assistant.history import HistoryProjector
from patient_assistant.interpreter import ResponseInterpreter
from patient_assistant.models import Action, ActionEnvelope, Interpretation, Turn
from patient_assistant.prompts import PromptAssembler
from patient_assistant.services.backend_client import PatientRecords
from patient_assistant.services.conversation_store import ConversationStore
from patient_assistant.services.llm_gateway import Completion, LLMGateway
from patient_assistant.tools.dispatcher import ActionDispatcher

logger = logging.getLogger(__name__)

APOLOGY_ANSWER = (
    "I'm sorry, I'm having trouble responding right now. Please try again in a moment."
)
FALLBACK_ANSWER = "I'm sorry, I didn't quite understand that. Could you rephrase your request?"


# ── State schema ─────────────────────────────────────────────────────


class ChatState(TypedDict, total=False):
    """The state that flows through the graph for one round-trip.

    ``upstream_error`` is set by ``call_llm`` when the model could not be
    reached; the conditional edge then skips interpretation entirely.
    """

    patient_id: str
    message: str
    user_turn: Turn
    snapshot: ContextSnapshot
    system_prompt: str
    prompt_messages: list[BaseMessage]
    completion: Completion | None
    upstream_error: str | None
    interpretation: Interpretation | None
    envelope: ActionEnvelope | None
    # Validated and resolved parameters the action ran with
    arguments: dict[str, Any]
    assistant_turn: Turn


# ── Conditional edges ────────────────────────────────────────────────


def route_after_llm(state: ChatState) -> str:
    if state.get("completion") is None:
        return "merge"
    return "interpret"


def route_after_interpret(state: ChatState) -> str:
    if isinstance(state.get("interpretation"), Action):
        return "dispatch"
    return "merge"


# ── Merge ────────────────────────────────────────────────────────────


def merge_answer(
    interpretation: Interpretation | None,
    envelope: ActionEnvelope | None,
    *,
    upstream_failed: bool = False,
) -> str:
    """Choose the text shown to the patient.

    An executed action speaks through its envelope message; otherwise the
    cleaned model prose is used.  The result is never empty.
    """
    if upstream_failed or interpretation is None:
        return APOLOGY_ANSWER
    if envelope is not None and envelope.message:
        return envelope.message
    return interpretation.text.strip() or FALLBACK_ANSWER


# ── Pipeline ─────────────────────────────────────────────────────────


class ChatPipeline:
    """Compiled StateGraph plus the collaborators its nodes close over."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        retriever: ContextRetriever,
        gateway: LLMGateway,
        dispatcher: ActionDispatcher,
        assembler: PromptAssembler | None = None,
        interpreter: ResponseInterpreter | None = None,
    ):
        self._store = store
        self._retriever = retriever
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._assembler = assembler or PromptAssembler(dispatcher.catalog)
        self._interpreter = interpreter or ResponseInterpreter(dispatcher.catalog)
        self._graph = self._build_graph()

    # ── Nodes ────────────────────────────────────────────────────────

    def _build_context(self, state: ChatState) -> dict[str, Any]:
        snapshot = self._retriever.build(state["patient_id"], state["message"])
        return {"snapshot": snapshot}

    def _assemble_prompt(self, state: ChatState) -> dict[str, Any]:
        snapshot = state["snapshot"]
        system_prompt, messages = self._assembler.assemble(
            snapshot.digest, snapshot.recent, state["message"],
        )
        return {"system_prompt": system_prompt, "prompt_messages": messages}

    def _call_llm(self, state: ChatState) -> dict[str, Any]:
        try:
            completion = self._gateway.invoke(state["system_prompt"], state["prompt_messages"])
        except TransientUpstreamError as exc:
            logger.warning("Model unavailable for patient %s: %s", state["patient_id"], exc)
            return {"completion": None, "upstream_error": str(exc)}
        except UpstreamError as exc:
            logger.error("Model request failed for patient %s: %s", state["patient_id"], exc)
            return {"completion": None, "upstream_error": str(exc)}
        return {"completion": completion, "upstream_error": None}

    def _interpret(self, state: ChatState) -> dict[str, Any]:
        completion = state["completion"]
        interpretation = self._interpreter.interpret(
            completion.text,
            delivered=state["snapshot"].delivered,
            tool_calls=completion.tool_calls,
        )
        logger.info(
            "Interpreted completion for %s as %s%s",
            state["patient_id"],
            type(interpretation).__name__,
            f" ({interpretation.name})" if isinstance(interpretation, Action) else "",
        )
        return {"interpretation": interpretation}

    def _dispatch(self, state: ChatState) -> dict[str, Any]:
        action = state["interpretation"]
        envelope, arguments = self._dispatcher.execute(
            action.name, action.parameters, state["patient_id"],
        )
        return {"envelope": envelope, "arguments": arguments}

    def _merge(self, state: ChatState) -> dict[str, Any]:
        interpretation = state.get("interpretation")
        envelope = state.get("envelope")
        answer = merge_answer(
            interpretation, envelope, upstream_failed=state.get("upstream_error") is not None,
        )

        fields: dict[str, Any] = {}
        if isinstance(interpretation, Action) and envelope is not None:
            fields = {
                "action": interpretation.name,
                "parameters": state.get("arguments", interpretation.parameters),
                "action_result": envelope,
                "raw_data": envelope.data if envelope.success else None,
            }
        turn = Turn(patient_id=state["patient_id"], role="assistant", content=answer, **fields)
        return {"assistant_turn": turn}

    def _store_turns(self, state: ChatState) -> dict[str, Any]:
        patient_id = state["patient_id"]
        self._store.append(patient_id, state["user_turn"])
        self._store.append(patient_id, state["assistant_turn"])
        return {}

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(ChatState)

        graph.add_node("build_context", self._build_context)
        graph.add_node("assemble_prompt", self._assemble_prompt)
        graph.add_node("call_llm", self._call_llm)
        graph.add_node("interpret", self._interpret)
        graph.add_node("dispatch", self._dispatch)
        graph.add_node("merge", self._merge)
        graph.add_node("store", self._store_turns)

        graph.set_entry_point("build_context")
        graph.add_edge("build_context", "assemble_prompt")
        graph.add_edge("assemble_prompt", "call_llm")
        graph.add_conditional_edges(
            "call_llm", route_after_llm, {"interpret": "interpret", "merge": "merge"},
        )
        graph.add_conditional_edges(
            "interpret", route_after_interpret, {"dispatch": "dispatch", "merge": "merge"},
        )
        graph.add_edge("dispatch", "merge")
        graph.add_edge("merge", "store")
        graph.add_edge("store", END)

        compiled = graph.compile()
        logger.debug("Chat pipeline compiled with %d actions", len(self._dispatcher.catalog.names()))
        return compiled

    # ── Entry point ──────────────────────────────────────────────────

    def run(self, patient_id: str, message: str) -> Turn:
        """Process one message and return the stored assistant turn."""
        # Created at receipt, stored last: the semantic query never sees it
        user_turn = Turn(patient_id=patient_id, role="user", content=message)
        try:
            final = self._graph.invoke(
                {"patient_id": patient_id, "message": message, "user_turn": user_turn},
            )
            return final["assistant_turn"]
        except Exception:
            logger.exception("Chat pipeline failed for patient %s", patient_id)
            reply = Turn(patient_id=patient_id, role="assistant", content=APOLOGY_ANSWER)
            self._store.append(patient_id, user_turn)
            self._store.append(patient_id, reply)
            return reply


# ── Assembly ─────────────────────────────────────────────────────────


def create_chat_pipeline(
    store: ConversationStore,
    records: PatientRecords,
    gateway: LLMGateway | None = None,
) -> tuple[ChatPipeline, HistoryProjector, ActionDispatcher]:
    """Wire one chat pipeline around long-lived store and records clients.

    Returns the pipeline together with the history projector and the
    dispatcher, which the HTTP layer also serves directly.
    """
    projector = HistoryProjector(store)
    dispatcher = ActionDispatcher(records)
    pipeline = ChatPipeline(
        store=store,
        retriever=ContextRetriever(store, records, projector),
        gateway=gateway or LLMGateway(),
        dispatcher=dispatcher,
    )
    logger.debug("Chat pipeline created")
    return pipeline, projector, dispatcher
