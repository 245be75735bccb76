import asyncio
import time
import uuid
from typing import Callable

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from app.config import settings
from app.core.batches.gateway import PersistenceGateway
from app.core.batches.service import BatchService
from app.core.collections.service import CollectionService
from app.db.models.user import User
from app.utils.exceptions import (
    ForbiddenException,
    ServiceNotConfiguredException,
    TooManyRequestsException,
    UnauthorizedException,
)
from app.utils.security import decode_token

# Tokens are issued by the external auth service; this only wires the bearer scheme.
reusable_oauth2 = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


_rate_limit_lock = asyncio.Lock()
_rate_limit_counters: dict[tuple[int, str], int] = {}


async def rate_limit(request: Request) -> None:
    if not settings.RATE_LIMIT_ENABLED:
        return

    client_host = (request.client.host if request.client else None) or "unknown"
    window_seconds = max(1, int(settings.RATE_LIMIT_WINDOW_SECONDS))
    limit = max(1, int(settings.RATE_LIMIT_REQUESTS_PER_WINDOW))
    bucket = int(time.monotonic() // window_seconds)
    key = (bucket, client_host)

    async with _rate_limit_lock:
        current = _rate_limit_counters.get(key, 0) + 1
        _rate_limit_counters[key] = current

        # Best-effort cleanup of previous window for the same host
        _rate_limit_counters.pop((bucket - 1, client_host), None)

    if current > limit:
        raise TooManyRequestsException(
            details={
                "window_seconds": window_seconds,
                "limit": limit,
            }
        )


def _state_attr(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise ServiceNotConfiguredException(f"Application component not initialized: {name}")
    return value


def get_gateway(request: Request) -> PersistenceGateway:
    return _state_attr(request, "gateway")


def get_batch_service(request: Request) -> BatchService:
    return _state_attr(request, "batch_service")


def get_collection_service(request: Request) -> CollectionService:
    return _state_attr(request, "collection_service")


async def get_current_user(
    token: str = Depends(reusable_oauth2),
    gateway: PersistenceGateway = Depends(get_gateway),
) -> User:
    payload = decode_token(token)
    if not payload:
        raise UnauthorizedException("Could not validate credentials")

    sub = payload.get("sub")
    try:
        user_id = uuid.UUID(str(sub))
    except (TypeError, ValueError):
        raise UnauthorizedException("Could not validate credentials")

    user = await gateway.get_user(user_id)
    if not user:
        raise UnauthorizedException("User not found")
    if not user.is_active:
        raise ForbiddenException("User account is not active")
    return user


def require_role(*roles: str) -> Callable:
    allowed = frozenset(roles)

    async def _dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise ForbiddenException(
                f"Access denied. Only {' or '.join(r.upper() for r in roles)} role can perform this action.",
                details={"role": user.role},
            )
        return user

    return _dependency


require_collector = require_role("collector")
require_recycler = require_role("recycler")
require_collector_or_recycler = require_role("collector", "recycler")
