"""Patient Assistant: a chat interface to a therapy practice's records.

Architecture Overview
=====================

Every patient message runs through one **LangGraph** pipeline
(``agent.py``):

1. **Context**: related past turns from the ChromaDB conversation store,
   the recent window, and live appointments / therapists / profile from
   the records backend, rendered into a bounded digest.
2. **Prompt**: persona, date, digest, the action catalog and the
   ``ACTION:`` / ``PARAMETERS:`` output contract.
3. **Model**: Claude via ``langchain-anthropic``, one retry on transient
   failures, hard timeout.
4. **Interpretation**: a layered grammar turns the completion into
   ``NoAction``, ``Action`` or ``ParseFailure``.
5. **Dispatch**: at most one validated action, always answered with an
   ``ActionEnvelope``.
6. **Storage**: the user turn and the assistant turn are appended to the
   conversation store.

Key Design Decisions
--------------------
- **Degrade, don't fail**: a down vector store or model still yields an
  answer; only a bad bearer token aborts a request.
- **Patient isolation**: every store read is filtered by ``patientId`` and
  re-checked on the way out.
- **Injected clients**: store, records backend and model gateway are built
  once in the FastAPI lifespan and passed to the pipeline.
- **Dual Interface**: FastAPI server (production) + CLI chat loop
  (development).

Package Structure
-----------------
- ``patient_assistant/agent.py`` - LangGraph StateGraph pipeline
- ``patient_assistant/config.py`` - Centralized configuration
- ``patient_assistant/context.py`` - ContextRetriever and digest rendering
- ``patient_assistant/prompts.py`` - System prompt and message window
- ``patient_assistant/interpreter.py`` - Layered response grammar
- ``patient_assistant/phrases.py`` - Clarification / listing classifier
- ``patient_assistant/history.py`` - History projection and pagination
- ``patient_assistant/models.py`` - Turns, envelopes, interpretations
- ``patient_assistant/errors.py`` - Error taxonomy
- ``patient_assistant/server.py`` - FastAPI application
- ``patient_assistant/main.py`` - CLI chat interface
- ``patient_assistant/services/`` - Chroma store, records client, LLM gateway, cache, metrics
- ``patient_assistant/tools/`` - Action catalog and dispatcher
- ``patient_assistant/api/`` - FastAPI routes, auth and Pydantic schemas
"""
