"""
Club Night API Server

FastAPI server for session scheduling, RSVPs and member notifications.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from clubnight.api.routes import router, limiter as routes_limiter
from clubnight.database import db
from clubnight.services.notification_service import get_notification_dispatcher
from clubnight.services.reminder_scheduler import ReminderScheduler
from clubnight.utils.constants import DEFAULT_CLUB_TIMEZONE
from clubnight.utils.datetime_utils import load_club_clock
from clubnight.utils.env_utils import get_bool_env, get_str_env

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# An unknown timezone is fatal: every deadline depends on it
CLUB_TIMEZONE = get_str_env("CLUB_TIMEZONE", DEFAULT_CLUB_TIMEZONE)
ENABLE_REMINDER_SCHEDULER = get_bool_env("ENABLE_REMINDER_SCHEDULER", default=True)

clock = load_club_clock(CLUB_TIMEZONE)
dispatcher = get_notification_dispatcher()
scheduler = ReminderScheduler(dispatcher, clock)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info(f"Starting up Club Night API (club timezone {clock.timezone_name})...")

    # Initialize database (create tables if they don't exist)
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Top up recurring sessions before the first reminder scan
    try:
        refreshed = await scheduler.refresh_recurrences()
        logger.info(
            f"Recurring sessions refreshed: {refreshed['created']} occurrence(s) created "
            f"across {refreshed['parents']} series"
        )
    except Exception as e:
        logger.error(f"Failed to refresh recurring sessions: {e}", exc_info=True)

    if not dispatcher.is_enabled():
        logger.warning("No notification channel configured; notifications are recorded but not delivered")

    if ENABLE_REMINDER_SCHEDULER:
        try:
            scheduler.start()
        except Exception as e:
            logger.error(f"Failed to start reminder scheduler: {e}", exc_info=True)
    else:
        logger.info("Reminder scheduler disabled via ENABLE_REMINDER_SCHEDULER")

    yield  # App is running

    # Shutdown
    logger.info("Shutting down Club Night API...")

    try:
        await scheduler.stop()
    except Exception as e:
        logger.error(f"Error stopping reminder scheduler: {e}", exc_info=True)


app = FastAPI(
    title="Club Night API",
    description="API for club session scheduling, RSVPs and member notifications",
    version="1.0.0",
    lifespan=lifespan,
)

# Process-wide collaborators for route dependencies
app.state.clock = clock
app.state.dispatcher = dispatcher
app.state.scheduler = scheduler

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware, origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/health")
async def health():
    """Liveness check with the scheduler and channel state."""
    return {
        "status": "ok",
        "club_timezone": clock.timezone_name,
        "scheduler_running": scheduler.running,
        "notifications_enabled": dispatcher.is_enabled(),
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
