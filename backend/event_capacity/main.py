"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from event_capacity.config import settings
from event_capacity.database import Base, engine
from event_capacity.errors import ReservationError
from event_capacity import scheduler

# Import routers
from event_capacity.routers import events, join_requests, waitlist, maintenance

# Import all models so Base.metadata knows about them
from event_capacity.models.event import Event                          # noqa: F401
from event_capacity.models.participant import EventParticipant         # noqa: F401
from event_capacity.models.join_request import JoinRequest             # noqa: F401
from event_capacity.models.request_transition import RequestTransition  # noqa: F401

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Event Capacity",
    description="Join requests, capacity holds, and waitlists for bounded-capacity events",
    version="0.1.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(events.router, prefix="/api/events", tags=["Events"])
app.include_router(join_requests.router, prefix="/api/events", tags=["JoinRequests"])
app.include_router(waitlist.router, prefix="/api/events", tags=["Waitlist"])
app.include_router(maintenance.router, prefix="/api/maintenance", tags=["Maintenance"])


@app.exception_handler(ReservationError)
def reservation_error_handler(request: Request, exc: ReservationError):
    """Render domain errors as ``{"detail": {"error": code, "message": ..., ...}}``."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


@app.on_event("startup")
def on_startup():
    """Create database tables on startup (for SQLite dev mode) and start the sweeper."""
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    if settings.SWEEPER_ENABLED:
        scheduler.init_scheduler()


@app.on_event("shutdown")
def on_shutdown():
    scheduler.shutdown_scheduler()


@app.get("/api/health")
def health_check():
    return {"status": "ok"}
