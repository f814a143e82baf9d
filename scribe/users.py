"""Session auth for the end-user endpoints (fastapi-users, JWT in a cookie).

Only session verification and the login/logout pair are exposed; accounts are
provisioned elsewhere and share the ``user`` table.
"""
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi_users import FastAPIUsers
from fastapi_users.authentication import AuthenticationBackend, CookieTransport, JWTStrategy
from fastapi_users.db import SQLAlchemyUserDatabase
from fastapi_users.manager import BaseUserManager, IntegerIDMixin
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .models import User
from .settings.config import settings

logger = logging.getLogger(__name__)


def _session_secret() -> str:
    secret = settings.SECRET.strip()
    if not secret or secret == "CHANGE_ME_SECRET":
        raise RuntimeError("SECRET must be set to a strong value before the API can verify sessions")
    return secret


SECRET = _session_secret()


async def get_user_db(session: AsyncSession = Depends(get_db)):
    yield SQLAlchemyUserDatabase(session, User)


class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = SECRET
    verification_token_secret = SECRET

    async def on_after_login(self, user: User, request: Optional[Request] = None, response=None):
        logger.info("User %s signed in", user.id)


async def get_user_manager(user_db=Depends(get_user_db)):
    yield UserManager(user_db)


cookie_transport = CookieTransport(
    cookie_name=settings.SESSION_COOKIE_NAME,
    cookie_max_age=settings.SESSION_LIFETIME_SECONDS,
    cookie_secure=settings.COOKIE_SECURE,
    cookie_httponly=True,
)


def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(secret=SECRET, lifetime_seconds=settings.SESSION_LIFETIME_SECONDS)


auth_backend = AuthenticationBackend(name="jwt", transport=cookie_transport, get_strategy=get_jwt_strategy)

fastapi_users = FastAPIUsers[User, int](get_user_manager, [auth_backend])

# resolves to None instead of raising so callers can shape the 401 body themselves
current_active_user = fastapi_users.current_user(active=True, optional=True)
