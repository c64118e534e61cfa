"""Shared FastAPI dependencies."""

from fastapi import Request

from creditflow.core.config import get_settings
from creditflow.core.exceptions import ForbiddenError, StorageFailureError, UnauthorizedError
from creditflow.core.logging import get_logger
from creditflow.core.pricing import PricingConfig, load_pricing
from creditflow.core.security import load_session_cookie
from creditflow.models.user import User
from creditflow.services.engine import CreditEngine

SESSION_COOKIE_NAME = "creditflow_session"

log = get_logger(__name__)

# Swapped as a whole on pricing reload; never mutated in place.
_engine: CreditEngine | None = None


def set_engine(engine: CreditEngine | None) -> None:
    global _engine
    _engine = engine


def get_engine() -> CreditEngine:
    """Dependency: the engine built at startup."""
    if _engine is None:
        raise StorageFailureError("Credit engine not initialised")
    return _engine


def reload_pricing(path: str | None = None) -> PricingConfig:
    """Load a new pricing snapshot and swap in an engine built on it."""
    engine = get_engine()
    pricing = load_pricing(path or get_settings().pricing_config_path)
    set_engine(engine.with_pricing(pricing))
    log.info("pricing_reloaded", plans=[p.key for p in pricing.plans])
    return pricing


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await User.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


async def require_admin(request: Request) -> User:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if getattr(user, "role", "user") != "admin":
        raise ForbiddenError("Admin only")
    return user
