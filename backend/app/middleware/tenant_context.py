"""Tenant context middleware."""

import logging
from typing import Any

from fastapi import HTTPException
from starlette.datastructures import Headers
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from backend.app.api.auth import context_from_headers
from backend.app.db import context

logger = logging.getLogger(__name__)


class TenantContextMiddleware:
    """Bind the request context for the whole extent of each HTTP request.

    Everything the request does, including tasks it spawns, sees the tenant
    from the customer slug header and the acting user from the bearer token.
    """

    def __init__(self, app: ASGIApp, tenant_header: str = "x-customer-slug") -> None:
        """Initialize tenant context middleware.

        Args:
            app: Wrapped ASGI application
            tenant_header: Header carrying the tenant identifier
        """
        self.app = app
        self.tenant_header = tenant_header

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        try:
            ctx = context_from_headers(headers.get(self.tenant_header), headers.get("authorization"))
        except HTTPException as e:
            body: dict[str, Any] = {"detail": e.detail}
            response = JSONResponse(body, status_code=e.status_code, headers=e.headers)
            await response(scope, receive, send)
            return

        logger.debug(f"Request bound to tenant {ctx.tenant_id}")
        with context.bind(ctx):
            await self.app(scope, receive, send)
