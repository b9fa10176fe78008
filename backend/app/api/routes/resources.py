"""Generic entity endpoints backed by the query engine."""

import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import TypeAdapter, ValidationError

from backend.app.api.auth import get_acting_context, get_current_context
from backend.app.db.context import RequestContext
from backend.app.db.engine import get_resolver
from backend.app.db.entities import OWNER_FIELD
from backend.app.db.exceptions import AuthorizationError, UnknownEntityError
from backend.app.db.query import PopulateSpec, QueryDescriptor
from backend.app.db.resolver import EntityRepository, StorageTargetResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["resources"])

_populate_specs = TypeAdapter(list[PopulateSpec])

# Stamped by the repository, never taken from a request body
PROTECTED_FIELDS = frozenset({"id", OWNER_FIELD, "created_at", "updated_at"})


def _repository(
    resolver: StorageTargetResolver, entity_name: str, ctx: RequestContext
) -> EntityRepository:
    try:
        return resolver.repository(entity_name, ctx)
    except UnknownEntityError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


def _parse_populate(populate: str | None) -> str | list[PopulateSpec] | None:
    """Accept "roles,branches" or a JSON list of populate specs."""
    if not populate or not populate.lstrip().startswith("["):
        return populate
    try:
        return _populate_specs.validate_python(json.loads(populate))
    except (ValueError, ValidationError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid populate specification",
        ) from e


@router.get("/{entity_name}")
async def list_entities(
    entity_name: str,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    resolver: Annotated[StorageTargetResolver, Depends(get_resolver)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int | None, Query(ge=1)] = None,
    sort: str | None = None,
    select: str | None = None,
    populate: str | None = None,
    query: str | None = None,
    branch: str | None = None,
) -> dict[str, Any]:
    """List records of any registered entity type.

    Args:
        entity_name: Entity type name (e.g. "Post")
        ctx: Request context (tenant, acting user)
        resolver: Storage target resolver
        page: 1-based page number
        limit: Page size
        sort: Sort fields, "-" prefix for descending
        select: Comma-separated projection
        populate: Comma-separated paths or JSON list of populate specs
        query: URL-encoded JSON list of filter objects
        branch: Branch restriction

    Returns:
        Paged envelope (results, page, limit, totalPages, totalResults)
    """
    repository = _repository(resolver, entity_name, ctx)
    descriptor = QueryDescriptor(
        page=page,
        limit=limit,
        sort=sort,
        select=select,
        populate=_parse_populate(populate),
        query=query,
        branch=branch,
    )
    results = await repository.advanced_results(descriptor)
    return results.model_dump(by_alias=True)


@router.get("/{entity_name}/{record_id}")
async def get_entity(
    entity_name: str,
    record_id: str,
    ctx: Annotated[RequestContext, Depends(get_current_context)],
    resolver: Annotated[StorageTargetResolver, Depends(get_resolver)],
) -> dict[str, Any]:
    """Get one record by id."""
    repository = _repository(resolver, entity_name, ctx)
    record = await repository.find_by_id(record_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{repository.entity.name} {record_id} not found",
        )
    for name in repository.entity.private_fields:
        record.pop(name, None)
    return record


@router.patch("/{entity_name}/{record_id}")
async def update_entity(
    entity_name: str,
    record_id: str,
    changes: Annotated[dict[str, Any], Body()],
    ctx: Annotated[RequestContext, Depends(get_acting_context)],
    resolver: Annotated[StorageTargetResolver, Depends(get_resolver)],
) -> dict[str, Any]:
    """Update fields of one record, subject to ownership authorization.

    Requires an authenticated user. Operators, identity and ownership fields
    in the body are ignored.
    """
    repository = _repository(resolver, entity_name, ctx)
    fields = {
        k: v for k, v in changes.items() if not k.startswith("$") and k not in PROTECTED_FIELDS
    }
    try:
        record = await repository.update_by_id(record_id, fields)
    except AuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{repository.entity.name} {record_id} not found",
        )
    for name in repository.entity.private_fields:
        record.pop(name, None)
    return record
