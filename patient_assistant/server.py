"""FastAPI server for the patient assistant.

Run with:
    uvicorn patient_assistant.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from patient_assistant.agent import create_chat_pipeline
from patient_assistant.api.routes import router
from patient_assistant.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from patient_assistant.services.backend_client import BackendClient
from patient_assistant.services.conversation_store import ConversationStore
from patient_assistant.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the long-lived clients once and store them in app state.

    The Chroma collection connects lazily on first use, so the API starts
    (and answers) even while the vector store is down.
    """
    logger.info("Building chat pipeline…")
    store = ConversationStore()
    records = BackendClient()
    pipeline, projector, dispatcher = create_chat_pipeline(store, records)

    application.state.store = store
    application.state.records = records
    application.state.projector = projector
    application.state.dispatcher = dispatcher
    application.state.pipeline = pipeline
    logger.info("Pipeline ready.")
    yield

    records.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Patient Assistant",
    description=(
        "Healthcare chat assistant: list therapists, book and cancel "
        "appointments and view the patient profile in natural language."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the web client) ────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header so clients can
    quote it when reporting a problem.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Patient Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Patient Assistant API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "patient_assistant.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
