"""
Slack channel memory - HTTP API

Thin FastAPI layer over MemorySystem for the bot/response service:
- POST /v1/messages            ingest a Slack message (idempotent)
- POST /v1/context             build (and format) a context bundle
- POST /v1/search              hybrid search
- GET  /v1/channels/{id}/window recent in-memory window of a channel
- GET  /health, GET /metrics
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import logging
import threading
import time

import psutil
import schedule
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from core.errors import HybridSearchError, TransientError
from main import MemorySystem, configure_logging
from models.context import ContextBundle, ContextOptions, SearchOptions
from models.message import Message, ScoredMessage
import config


logger = logging.getLogger(__name__)

SEARCH_UNAVAILABLE = "Sorry, I'm having trouble searching past conversations right now. Please try again in a moment."


# ============================================================================
# Request / Response Models
# ============================================================================

class MessageRequest(BaseModel):
    """A Slack message event"""
    channel_id: str = Field(..., description="Slack channel id")
    user_id: str = Field(..., description="Slack user id of the author")
    message_text: str
    message_ts: str = Field(..., description="Slack message timestamp")
    thread_ts: Optional[str] = None
    parent_user_ts: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ContextRequest(BaseModel):
    channel_id: str
    query: Optional[str] = None
    options: ContextOptions = Field(default_factory=ContextOptions)


class ContextResponse(BaseModel):
    bundle: ContextBundle
    formatted: str


class SearchRequest(BaseModel):
    query: str
    options: SearchOptions = Field(default_factory=SearchOptions)
    rerank: bool = False
    diversity_weight: Optional[float] = Field(None, ge=0.0, le=1.0)
    user_preferences: Dict[str, float] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    results: List[ScoredMessage]
    count: int


class HealthResponse(BaseModel):
    status: str
    store: Dict[str, Any]
    cache: Dict[str, Any]
    timestamp: str


# ============================================================================
# Scheduled Maintenance (archive, embedding backfill, compaction)
# ============================================================================

_scheduler_running = False
_startup_time = time.time()


def _scheduler_thread(system: MemorySystem, loop: asyncio.AbstractEventLoop):
    """Thread that hands scheduled maintenance to the event loop."""
    def _report(future):
        if not future.cancelled() and future.exception() is not None:
            logger.error("[Maintenance] Failed: %r", future.exception())

    def _submit():
        future = asyncio.run_coroutine_threadsafe(system.run_maintenance(), loop)
        future.add_done_callback(_report)

    scheduler = schedule.Scheduler()
    # Daily at 04:00 UTC (low traffic) plus every 6 hours for busy workspaces
    scheduler.every().day.at("04:00").do(_submit)
    scheduler.every(6).hours.do(_submit)

    logger.info("[Scheduler] Maintenance scheduler started (04:00 UTC + every 6h)")
    while _scheduler_running:
        scheduler.run_pending()
        time.sleep(1)
    logger.info("[Scheduler] Maintenance scheduler stopped")


# ============================================================================
# FastAPI App
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global _scheduler_running, _startup_time

    configure_logging()
    _startup_time = time.time()
    logger.info("[Startup] Channel memory API starting (db=%s)", config.LANCEDB_PATH)

    system = await MemorySystem.create()
    app.state.system = system

    _scheduler_running = True
    scheduler = threading.Thread(
        target=_scheduler_thread, args=(system, asyncio.get_running_loop()), daemon=True
    )
    scheduler.start()

    yield

    logger.info("[Shutdown] Channel memory API shutting down")
    _scheduler_running = False
    scheduler.join(timeout=5)
    await system.close()
    app.state.system = None


app = FastAPI(
    title="Slack Channel Memory API",
    description="Hybrid retrieval and context building for a Slack bot",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_system(request: Request) -> MemorySystem:
    system = getattr(request.app.state, "system", None)
    if system is None:
        raise HTTPException(status_code=503, detail="Memory system is not ready")
    return system


# ============================================================================
# Health & Info Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(system: MemorySystem = Depends(get_system)):
    """Health check endpoint"""
    health = await system.health()
    return HealthResponse(
        status="healthy" if health["healthy"] else "degraded",
        store=health["store"],
        cache=health["cache"],
        timestamp=datetime.now(timezone.utc).isoformat()
    )


@app.get("/metrics")
async def get_metrics(system: MemorySystem = Depends(get_system)):
    """Pool, cache, embedding, window and outbox metrics plus process memory."""
    memory_info = psutil.Process().memory_info()
    return {
        "uptime_seconds": round(time.time() - _startup_time, 1),
        "memory": {
            "rss_mb": round(memory_info.rss / 1024 / 1024, 1),
            "vms_mb": round(memory_info.vms / 1024 / 1024, 1),
        },
        **system.metrics(),
        "config": {
            "env": config.APP_ENV,
            "embedding_provider": config.EMBEDDING_PROVIDER,
            "embedding_dimension": config.EMBEDDING_DIMENSION,
        },
    }


# ============================================================================
# Memory Endpoints
# ============================================================================

@app.post("/v1/messages", response_model=Message)
async def ingest_message(request: MessageRequest, system: MemorySystem = Depends(get_system)):
    """Store a Slack message. Re-sending the same message returns the stored copy."""
    try:
        message = await system.ingest_message(request.model_dump())
    except TransientError as e:
        logger.warning("[API] Ingestion unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Message store unavailable, please retry")
    return message.model_copy(update={"embedding": None})


@app.post("/v1/context", response_model=ContextResponse)
async def build_context(request: ContextRequest, system: MemorySystem = Depends(get_system)):
    """Build a context bundle. Always answers; failures yield an empty bundle."""
    bundle = await system.build_context(request.channel_id, request.query, request.options)
    for messages in (bundle.recent_messages, bundle.relevant_messages, bundle.thread_context or []):
        for m in messages:
            m.embedding = None
    return ContextResponse(bundle=bundle, formatted=system.format_context(bundle))


@app.post("/v1/search", response_model=SearchResponse)
async def search(request: SearchRequest, system: MemorySystem = Depends(get_system)):
    """Hybrid keyword + semantic search."""
    try:
        results = await system.search(request.query, request.options)
    except (HybridSearchError, TransientError) as e:
        logger.error("[API] Search failed: %s", e)
        raise HTTPException(
            status_code=503,
            detail={"message": SEARCH_UNAVAILABLE, "retry_after": 5},
            headers={"Retry-After": "5"},
        )

    if request.rerank:
        results = system.search_engine.rerank(
            results,
            request.query,
            diversity_weight=request.diversity_weight,
            user_preferences=request.user_preferences,
        )

    results = [
        r.model_copy(update={"message": r.message.model_copy(update={"embedding": None})})
        for r in results
    ]
    return SearchResponse(results=results, count=len(results))


@app.get("/v1/channels/{channel_id}/window", response_model=List[Message])
async def channel_window(channel_id: str, limit: Optional[int] = None, system: MemorySystem = Depends(get_system)):
    """Recent messages held in the in-memory channel window."""
    return system.get_window(channel_id, limit)


@app.get("/")
async def root():
    """Root endpoint with API info"""
    return {
        "name": "Slack Channel Memory API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host=config.API_HOST, port=config.API_PORT)
