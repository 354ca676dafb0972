import asyncio
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service.config import get_settings
from access_service.database import get_session
from access_service.errors import NotFound, PermissionDenied, TokenError, Unauthenticated
from access_service.logger import logger
from access_service.services import gate
from access_service.services.resolver import Principal, PrincipalResolver
from access_service.services.tokens import TokenService

ACCESS_COOKIE = "access_token"


@lru_cache()
def get_token_service() -> TokenService:
    return TokenService.from_settings()


def get_resolve_timeout() -> float:
    return get_settings().resolve_timeout_seconds


async def get_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    token = request.cookies.get(ACCESS_COOKIE)
    if token and token.startswith("Bearer "):
        token = token[7:]
    return token or None


async def authenticate(
    request: Request,
    token: Optional[str] = Depends(get_token),
    tokens: TokenService = Depends(get_token_service),
) -> int:
    if not token:
        logger.warning("Request without access token", extra={"path": request.url.path})
        raise TokenError(TokenError.MALFORMED)
    try:
        payload = tokens.verify(token)
    except TokenError as e:
        logger.warning("Token rejected", extra={"path": request.url.path, "token_error": e.kind})
        raise
    return payload.principal_id


async def get_current_principal(
    user_id: int = Depends(authenticate),
    db: AsyncSession = Depends(get_session),
    timeout: float = Depends(get_resolve_timeout),
) -> Optional[Principal]:
    """Resolve the authenticated user, or ``None`` when that is not possible.

    ``None`` makes every gate check deny, so timeouts and store failures
    fail closed.
    """
    try:
        principal = await asyncio.wait_for(PrincipalResolver(db).resolve(user_id), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Principal resolution timed out", extra={"user_id": user_id, "timeout": timeout})
        return None
    except DBAPIError as e:
        logger.error("Principal resolution failed", extra={"user_id": user_id, "error": str(e)})
        return None
    except NotFound:
        logger.warning("Token subject no longer exists", extra={"user_id": user_id})
        return None

    if not principal.is_active:
        logger.warning("Inactive user presented a valid token", extra={"user_id": user_id})
        return None
    return principal


def _enforce(decision: gate.Decision, principal: Optional[Principal], key: str) -> None:
    if decision.allowed:
        return
    if decision.reason == gate.UNAUTHENTICATED:
        raise Unauthenticated()
    logger.warning(
        "Access denied",
        extra={"user_id": principal.id if principal else None, "reason": decision.reason, key: list(decision.required)}
    )
    message = "Insufficient permissions." if key == "required_permissions" else "Insufficient role permissions."
    raise PermissionDenied(message, **{key: list(decision.required)})


async def require_user(principal: Optional[Principal] = Depends(get_current_principal)) -> Principal:
    if principal is None:
        raise Unauthenticated()
    return principal


def require_permission(*names: str):
    """Route dependency: the principal must hold at least one of ``names``."""
    async def checker(principal: Optional[Principal] = Depends(get_current_principal)) -> Principal:
        _enforce(gate.require_permission(principal, names), principal, "required_permissions")
        return principal
    return checker


def require_role(*names: str):
    """Route dependency: the principal must hold at least one of the role ``names``."""
    async def checker(principal: Optional[Principal] = Depends(get_current_principal)) -> Principal:
        _enforce(gate.require_role(principal, names), principal, "required_roles")
        return principal
    return checker
