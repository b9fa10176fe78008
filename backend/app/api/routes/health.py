"""Operational endpoints.

- /health: liveness, always ok while the process runs
- /healthz: checks the document store is reachable
- /metrics: Prometheus exposition
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from backend.app.config import get_settings
from backend.app.db.engine import get_resolver
from backend.app.db.resolver import StorageTargetResolver

router = APIRouter()


async def check_store(resolver: StorageTargetResolver) -> tuple[bool, str]:
    """Check document store connectivity.

    Returns:
        (is_ok, status_message)
    """
    try:
        await resolver.store.list_collections()
        return (True, "ok")
    except Exception as e:
        return (False, f"error: {type(e).__name__}")


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check for Docker/k8s.

    Returns:
        200 OK always (application is running)
    """
    return {"status": "ok"}


@router.get("/healthz", response_model=None)
async def healthz(
    resolver: Annotated[StorageTargetResolver, Depends(get_resolver)],
) -> dict[str, Any] | Response:
    """Health check endpoint.

    Returns:
        200 with component status if the store is reachable
        503 otherwise
    """
    store_ok, store_status = await check_store(resolver)

    response_body = {
        "status": "ok" if store_ok else "degraded",
        "components": {
            "store": store_status,
            "backend": "sql" if get_settings().database_url else "memory",
        },
    }

    if not store_ok:
        return Response(
            content=json.dumps(response_body),
            status_code=503,
            media_type="application/json",
        )

    return response_body


@router.get("/metrics")
async def metrics() -> Response:
    """Store verb latency, error, filter fallback and hook failure series."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
