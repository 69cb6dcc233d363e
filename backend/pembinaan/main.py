"""
Pembinaan Engine - FastAPI Application

Server-side engine behind the school's BK (guidance counseling) module.

Components:
- ViolationCatalog / ViolationMatcher: classify a free-text report (kasus)
- EscalationWorkflow: pending -> in_progress[light|severe] -> completed | archived
- SlotScheduler: counselor slots, booked at most once per key
- ReservationLedger: booking approval, attendance and completion
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import DEFAULT_TIME_SLOTS, LOG_LEVEL
from .database import init_db
from .exceptions import PembinaanError
from .routers import cases_router, catalog_router, reservations_router, schedule_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Pembinaan Engine",
    description="""
    Violation classification, escalation workflow and counseling slot booking.

    ## Flow
    1. **Report**: free-text description -> catalog match (exact, keyword, category, none)
    2. **Escalate**: light (BK counseling) or severe (Waka review)
    3. **Book**: counselor slot reserved atomically, never double-booked
    4. **Resolve**: attendance, completion, administrative decision or archive
    """,
    version=__version__,
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


@app.exception_handler(PembinaanError)
async def pembinaan_error_handler(request: Request, exc: PembinaanError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": {"error": exc.kind, "message": exc.message}},
    )


# Include routers
app.include_router(catalog_router)
app.include_router(cases_router)
app.include_router(schedule_router)
app.include_router(reservations_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Pembinaan Engine",
        "version": __version__,
        "docs": "/docs",
        "time_slots": DEFAULT_TIME_SLOTS,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# For running with: python -m pembinaan.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
