"""
Regulation Engine - FastAPI Application

Main entry point for the Regulation Engine backend.

Architecture:
- BehaviorEvent -> SignalComputationEngine -> CandidateSignal (consent-gated, provenance-linked)
- BehaviorEvent -> ActiveSignalSurfacer -> ActiveSignal (ephemeral, explainable)
- RegulationEvent -> TrustStateMachine -> RegulationState (trust score, derived level)
- Preset -> PresetService -> RegulationParameter overrides (reversible)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .database import SessionLocal, init_db
from .routers import (
    active_signals_router,
    behavior_events_router,
    consent_router,
    internal_router,
    parameters_router,
    presets_router,
    regulation_router,
    signals_router,
)
from .services.lifecycle import invalidation_dispatcher
from .services.surfacing import SignalDefinitionRegistry


logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def seed_signal_definitions() -> int:
    db = SessionLocal()
    try:
        created = SignalDefinitionRegistry(db).seed_defaults()
        db.commit()
        return created
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and signal definitions on startup."""
    init_db()
    seed_signal_definitions()
    yield
    # Let queued invalidations land before the process exits
    if not invalidation_dispatcher.flush(timeout=10):
        logger.warning(f"Shutting down with pending invalidations: {invalidation_dispatcher.stats()}")


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Regulation Engine",
    description="""
    Regulation Engine - Behavioral Regulation and Signal Backend

    Turns a user's behavior events into consent-gated, explainable signals and
    keeps a per-user trust score with a derived strictness level.

    ## Components
    1. **Consent Registry**: per-category opt-in, Safe Mode brake
    2. **Signal Computation Engine**: versioned pure rules, provenance and audit
    3. **Active Signal Surfacer**: short-lived signals with a plain explanation
    4. **Trust State Machine**: trust score fold and level thresholds
    5. **Presets**: reversible parameter bundles

    ## Key Principles
    - No consent, no signal (absence, not error)
    - Every candidate signal names the events it came from
    - Levels are always a function of the trust score
    - Nothing is blocked or modified by the engine itself
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(consent_router)
app.include_router(behavior_events_router)
app.include_router(signals_router)
app.include_router(active_signals_router)
app.include_router(regulation_router)
app.include_router(parameters_router)
app.include_router(presets_router)
app.include_router(internal_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Regulation Engine",
        "version": VERSION,
        "description": "Behavioral regulation and signal engine",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


# For running with: python -m regulation_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
