"""FastAPI server for the Luxe Dental assistant.

Run with:
    uvicorn dental_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from dental_agent.agent import ClinicAgent
from dental_agent.api.routes import router
from dental_agent.compactor import ContextCompactor
from dental_agent.config import (
    CORS_ORIGINS,
    DEFAULT_TENANT_ID,
    SERVER_HOST,
    SERVER_PORT,
    STORE_BACKEND,
    WHATSAPP_PHONE_NUMBER_ID,
)
from dental_agent.services.conversation import ConversationService
from dental_agent.services.llm_client import get_llm_client
from dental_agent.services.metrics import metrics
from dental_agent.services.store import create_store
from dental_agent.services.whatsapp_client import get_whatsapp_client

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the store, gateway, agent and ingestion service once
    and keep them in app state.
    """
    logger.info("Building clinic agent (store backend: %s)…", STORE_BACKEND)
    store = create_store(STORE_BACKEND, DEFAULT_TENANT_ID, WHATSAPP_PHONE_NUMBER_ID)
    gateway = get_llm_client()
    agent = ClinicAgent(gateway, store)

    application.state.store = store
    application.state.agent = agent
    application.state.compactor = ContextCompactor(store, gateway)
    application.state.conversation_service = ConversationService(store, agent)
    application.state.whatsapp = get_whatsapp_client()
    if not application.state.whatsapp.configured:
        logger.warning("WhatsApp credentials missing; replies will not be delivered")
    logger.info("Agent ready.")
    yield
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Luxe Dental Assistant",
    description=(
        "WhatsApp receptionist for Luxury Dental — answers questions, books, "
        "reschedules and cancels appointments."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────
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
    """Attach a unique request ID to every request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Luxe Dental Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Luxe Dental API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "dental_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
