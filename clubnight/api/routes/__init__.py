"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, error translation) lives here; every
sub-router imports what it needs from this package.
"""

import logging
import os

from fastapi import APIRouter, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

from clubnight.services.errors import (
    DependencyError,
    NotFoundError,
    PolicyError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
limiter = Limiter(key_func=get_remote_address, enabled=not IS_TEST_ENV)

# ---------------------------------------------------------------------------
# Domain error translation
# ---------------------------------------------------------------------------
DOMAIN_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (PolicyError, 409),
    (DependencyError, 503),
)


def http_error_for(e: Exception, action: str) -> HTTPException:
    """
    Map a service exception to an HTTPException.

    Domain errors keep their message; anything else is logged and becomes a 500.
    """
    for error_cls, status_code in DOMAIN_ERROR_STATUS:
        if isinstance(e, error_cls):
            if status_code == 503:
                logger.warning(f"Dependency failure while {action}: {e}")
            return HTTPException(status_code=status_code, detail=str(e))
    logger.error(f"Error {action}: {str(e)}", exc_info=True)
    return HTTPException(status_code=500, detail=f"Error {action}")


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from clubnight.api.routes.auth import router as auth_router  # noqa: E402
from clubnight.api.routes.users import router as users_router  # noqa: E402
from clubnight.api.routes.sessions import router as sessions_router  # noqa: E402
from clubnight.api.routes.rsvp import router as rsvp_router  # noqa: E402
from clubnight.api.routes.notifications import router as notifications_router  # noqa: E402
from clubnight.api.routes.admin import router as admin_router  # noqa: E402

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(sessions_router)
router.include_router(rsvp_router)
router.include_router(notifications_router)
router.include_router(admin_router)
