"""Main FastAPI application and server startup."""

import logging

from fastapi import FastAPI, Depends

from tiered_recall.config.settings import Settings
from tiered_recall.engine import MemoryEngine

from . import deps
from .deps import get_engine
from .schemas import HealthResponse
from .sessions import admin_router, router as sessions_router


logger = logging.getLogger(__name__)

app = FastAPI(
    title="Tiered Recall API",
    description="Tiered conversational memory with two-pass recognition",
    version="0.1.0",
)

app.include_router(sessions_router)
app.include_router(admin_router)


@app.on_event("startup")
async def startup_event():
    """Initialize the engine on startup unless one was injected."""
    if deps._engine is None:
        deps.set_engine(MemoryEngine.from_settings(Settings.from_env()))


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    if deps._engine is not None:
        await deps._engine.aclose()
        deps.set_engine(None)


@app.get("/health", response_model=HealthResponse)
async def health(engine: MemoryEngine = Depends(get_engine)):
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        components={
            "store": engine.store is not None,
            "index": engine.index is not None,
            "recognition": engine.coordinator.enabled,
            "generator": engine.generator.is_available(),
        },
        indexed_turns=len(engine.index),
    )
