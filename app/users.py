import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi_users import FastAPIUsers
from fastapi_users.manager import BaseUserManager, IntegerIDMixin
from fastapi_users.authentication import BearerTransport, AuthenticationBackend, JWTStrategy
from fastapi_users.db import SQLAlchemyUserDatabase
from .models import User
from .database import get_db
from .settings.config import settings


logger = logging.getLogger(__name__)


SECRET = (settings.SECRET or "").strip()
if not SECRET or SECRET == "CHANGE_ME_SECRET":
    raise RuntimeError(
        "SECRET environment variable must be set to a strong value; the default placeholder is not allowed."
    )

# -------------------------
# Database Dependency
# -------------------------
async def get_user_db(session=Depends(get_db)):
    yield SQLAlchemyUserDatabase(session, User)

# -------------------------
# User Manager
# -------------------------
class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = SECRET
    verification_token_secret = SECRET

    async def on_after_register(self, user: User, request: Optional[Request] = None):
        logger.info("User %s registered with role %s", user.id, user.role)

    async def on_after_login(self, user: User, request: Optional[Request] = None, response=None):
        await self.user_db.update(user, {"last_login": datetime.now(timezone.utc)})

    async def on_after_forgot_password(self, user: User, token: str, request: Optional[Request] = None):
        logger.info("Password reset requested for user %s", user.id)

async def get_user_manager(user_db=Depends(get_user_db)):
    yield UserManager(user_db)

# -------------------------
# Authentication Backend
# -------------------------
bearer_transport = BearerTransport(tokenUrl="api/auth/jwt/login")

def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(secret=SECRET, lifetime_seconds=settings.JWT_LIFETIME_SECONDS)

auth_backend = AuthenticationBackend(
    name="jwt",
    transport=bearer_transport,
    get_strategy=get_jwt_strategy,
)

# -------------------------
# FastAPI Users instance
# -------------------------
fastapi_users = FastAPIUsers[User, int](
    get_user_manager,
    [auth_backend],
)

# Inactive users are still resolved so the access layer can answer NOT_ACTIVE
# instead of a generic 401.
current_user_optional = fastapi_users.current_user(optional=True)
