"""Request context resolution.

Stub implementation: the tenant comes from the customer slug header and the
acting user from a "Bearer <user_id>[:<role>,<role>]" token. Real JWT
validation happens upstream of this service.
"""

from fastapi import HTTPException, status

from backend.app.db import context
from backend.app.db.context import ActingUser, RequestContext


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def parse_authorization(authorization: str | None) -> ActingUser | None:
    """Extract the acting user from an authorization header.

    Args:
        authorization: Authorization header (e.g., "Bearer u1:admin")

    Returns:
        Acting user, or None for anonymous requests

    Raises:
        HTTPException: If authorization is invalid
    """
    if not authorization:
        return None

    if not authorization.startswith("Bearer "):
        raise _unauthorized("Invalid authorization header format")

    token = authorization[7:].strip()  # Strip "Bearer "
    if not token:
        raise _unauthorized("Empty bearer token")

    user_id, _, roles = token.partition(":")
    if not user_id:
        raise _unauthorized("Invalid token format (expected user_id[:role,role])")

    return ActingUser(
        id=user_id,
        roles=tuple(role.strip() for role in roles.split(",") if role.strip()),
    )


def context_from_headers(tenant_slug: str | None, authorization: str | None) -> RequestContext:
    """Build the request context for one inbound request.

    Raises:
        HTTPException: If authorization is invalid
    """
    tenant_id = tenant_slug.strip() if tenant_slug and tenant_slug.strip() else None
    return RequestContext(tenant_id=tenant_id, user=parse_authorization(authorization))


async def get_current_context() -> RequestContext:
    """Dependency returning the context bound by the tenant context middleware."""
    return context.current() or RequestContext()


async def get_acting_context() -> RequestContext:
    """Dependency for mutations: the bound context, which must carry a user.

    Raises:
        HTTPException: 401 if the request is anonymous
    """
    ctx = await get_current_context()
    if ctx.user is None:
        raise _unauthorized("Authentication required")
    return ctx
