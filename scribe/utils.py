import logging
import secrets
from typing import Optional

from fastapi import Depends, Header

from .errors import unauthorized
from .models import User
from .settings.config import settings
from .users import current_active_user

logger = logging.getLogger(__name__)


# Dependency to enforce a logged-in session
async def require_authenticated_user(user: User = Depends(current_active_user)) -> User:
    if not user:
        raise unauthorized("Not authenticated")
    return user


# Dependency for cron / scheduler callers of the worker endpoints
async def require_worker_key(authorization: Optional[str] = Header(default=None)) -> None:
    expected = settings.WORKER_API_KEY
    if not expected:
        logger.warning("WORKER_API_KEY is not configured; rejecting worker request")
        raise unauthorized("Worker access is not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise unauthorized("Missing bearer token")
    if not secrets.compare_digest(token.strip().encode(), expected.encode()):
        raise unauthorized("Invalid worker key")
