"""Generic listing queries ("advanced results").

One call filters, sorts, paginates, projects and expands relations for any
entity type, then annotates owned records with ``can_edit``.
"""

import copy
import json
import logging
import math
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field

from backend.app.db.documents import (
    Document,
    SortSpec,
    get_path,
    is_valid_identifier,
    parse_projection,
    parse_sort,
    set_path,
)
from backend.app.db.entities import OWNER_FIELD, EntityType
from backend.app.utils.metrics import metrics

if TYPE_CHECKING:
    from backend.app.db.resolver import EntityRepository

logger = logging.getLogger(__name__)

DEFAULT_SORT: SortSpec = [("created_at", -1)]
BRANCHES_FIELD = "branches"


class PopulateSpec(BaseModel):
    """Relation expansion for one reference path."""

    path: str
    model: str | None = None
    select: str | None = None
    populate: "str | list[PopulateSpec] | None" = None


PopulateSpec.model_rebuild()


class QueryDescriptor(BaseModel):
    """Options for a listing query."""

    page: int = Field(default=1, ge=1)
    limit: int | None = Field(default=None, ge=1)
    sort: str | None = None
    select: str | None = None
    populate: str | list[PopulateSpec] | None = None
    query: str | list[dict[str, Any]] | None = None
    branch: str | None = None
    overrides: dict[str, Any] = Field(default_factory=dict)


class PagedResults(BaseModel):
    """One page of a listing query."""

    model_config = ConfigDict(populate_by_name=True)

    results: list[dict[str, Any]]
    page: int
    limit: int
    total_pages: int = Field(serialization_alias="totalPages")
    total_results: int = Field(serialization_alias="totalResults")


def parse_structured_filter(raw: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Decode a structured filter into its list of condition groups.

    Strings may be URL-encoded JSON.

    Raises:
        ValueError: If the filter is not a JSON list of objects
    """
    parsed: Any = raw
    if isinstance(raw, str):
        parsed = json.loads(unquote(raw))

    if not isinstance(parsed, list):
        raise ValueError(f"Structured filter must be a list, got {type(parsed).__name__}")
    for entry in parsed:
        if not isinstance(entry, dict):
            raise ValueError(f"Structured filter entries must be objects, got {type(entry).__name__}")
    return parsed


def _condition(entity: EntityType, key: str, value: Any) -> tuple[bool, Any]:
    if isinstance(value, list):
        return True, {"$in": value}
    if isinstance(value, str):
        if entity.is_reference(key):
            if is_valid_identifier(value):
                return True, value
            logger.info(f"Dropping condition on {entity.name}.{key}: invalid identifier {value!r}")
            return False, None
        return True, {"$regex": re.escape(value), "$options": "i"}
    return True, value


def translate_entry(entity: EntityType, entry: dict[str, Any]) -> dict[str, Any]:
    """Translate one structured-filter object into store conditions."""
    conditions: dict[str, Any] = {}
    for key, value in entry.items():
        if key.startswith("$"):
            logger.warning(f"Dropping operator key {key!r} from structured filter on {entity.name}")
            continue
        keep, condition = _condition(entity, key, value)
        if keep:
            conditions[key] = condition
    return conditions


def build_filter(
    entity: EntityType,
    query: str | list[dict[str, Any]] | None = None,
    overrides: dict[str, Any] | None = None,
    branch: str | None = None,
) -> dict[str, Any]:
    """Build the store filter for a listing query.

    The base filter is ``overrides`` plus the branch restriction. Every
    structured-filter group is ANDed with it, so overrides always hold. A
    malformed structured filter is logged and the base filter alone is used.

    Args:
        entity: Entity type being queried
        query: Structured filter (list of objects or URL-encoded JSON)
        overrides: Conditions that always apply
        branch: Restrict to records whose ``branches`` contain this branch id

    Returns:
        Filter in the store's operator dialect
    """
    base: dict[str, Any] = dict(overrides or {})
    if branch and branch.strip():
        base[BRANCHES_FIELD] = {"$in": [branch]}

    if not query:
        return base

    try:
        entries = parse_structured_filter(query)
    except ValueError as e:
        logger.warning(
            f"Malformed structured filter for {entity.name}, using overrides only: {e}",
            extra={"structured": {"entity": entity.name, "query": str(query)[:200]}},
        )
        metrics.inc_filter_fallback(entity.name)
        return base

    return {"$and": [base, *(translate_entry(entity, entry) for entry in entries)]}


def resolve_sort(sort: str | None) -> SortSpec:
    """Normalize a sort string, always ending with an ``id`` tiebreaker.

    Bare numeric tokens ("-1", "1") mean the default newest-first order.
    """
    spec = [(name, direction) for name, direction in parse_sort(sort) if not name.isdigit()]
    if not spec:
        spec = list(DEFAULT_SORT)
    if all(name != "id" for name, _ in spec):
        spec.append(("id", 1))
    return spec


def normalize_populate(populate: str | list[PopulateSpec] | None) -> list[PopulateSpec]:
    """Turn "roles,branches" style populate strings into specs."""
    if not populate:
        return []
    if isinstance(populate, str):
        return [PopulateSpec(path=path.strip()) for path in populate.split(",") if path.strip()]
    return list(populate)


def _strip_private(entity: EntityType, documents: list[Document]) -> None:
    for document in documents:
        for name in entity.private_fields:
            document.pop(name, None)


def _collect_ids(documents: list[Document], path: str) -> list[str]:
    ids: list[str] = []
    for document in documents:
        value = get_path(document, path)
        if isinstance(value, str):
            ids.append(value)
        elif isinstance(value, list):
            ids.extend(item for item in value if isinstance(item, str))
    return list(dict.fromkeys(ids))


async def expand_relations(
    repository: "EntityRepository",
    documents: list[Document],
    specs: list[PopulateSpec],
    depth: int = 0,
) -> list[Document]:
    """Replace reference identifiers in ``documents`` with the referenced records.

    Related records are fetched through repositories in the same request
    context, so expansion never crosses tenants. Nested specs recurse until
    ``max_populate_depth``. Unknown paths or models are skipped. Missing single
    references become None and missing array entries are dropped.
    """
    resolver = repository.resolver
    if depth >= resolver.max_populate_depth:
        logger.warning(
            f"Populate depth limit {resolver.max_populate_depth} reached on {repository.entity.name}"
        )
        return documents

    for spec in specs:
        model = spec.model or repository.entity.references.get(spec.path)
        related_entity = resolver.registry.find(model)
        if related_entity is None:
            logger.info(
                f"Skipping populate of {repository.entity.name}.{spec.path}: "
                f"unknown relation model {model!r}"
            )
            continue

        ids = _collect_ids(documents, spec.path)
        if not ids:
            continue

        related_repo = resolver.repository(related_entity, repository.ctx)
        related = await related_repo.find({"id": {"$in": ids}}, select=spec.select)
        _strip_private(related_entity, related)
        nested = normalize_populate(spec.populate)
        if nested:
            await expand_relations(related_repo, related, nested, depth + 1)

        by_id = {record["id"]: record for record in related}
        for document in documents:
            value = get_path(document, spec.path)
            if isinstance(value, str):
                set_path(document, spec.path, copy.deepcopy(by_id.get(value)))
            elif isinstance(value, list):
                expanded = [
                    copy.deepcopy(by_id[item]) if isinstance(item, str) else item
                    for item in value
                    if not isinstance(item, str) or item in by_id
                ]
                set_path(document, spec.path, expanded)
    return documents


async def advanced_results(
    repository: "EntityRepository", descriptor: QueryDescriptor
) -> PagedResults:
    """Run a listing query against ``repository``.

    Args:
        repository: Tenant-bound repository of the entity to list
        descriptor: Filter, pagination, sort, select and populate options

    Returns:
        The requested page with total counts
    """
    entity = repository.entity
    resolver = repository.resolver
    limit = descriptor.limit or resolver.default_page_limit
    skip = (descriptor.page - 1) * limit

    filter_ = build_filter(entity, descriptor.query, descriptor.overrides, descriptor.branch)
    sort = resolve_sort(descriptor.sort)

    # Owned records always load their creator; it is dropped again after can_edit
    projection = parse_projection(descriptor.select)
    internal_owner = False
    if projection and entity.ownership:
        if any(projection.values()):
            internal_owner = projection.get(OWNER_FIELD) != 1
            projection[OWNER_FIELD] = 1
        elif OWNER_FIELD in projection:
            del projection[OWNER_FIELD]
            projection = projection or None
            internal_owner = True

    results = await repository.find(filter_, select=projection, sort=sort, skip=skip, limit=limit)

    specs = normalize_populate(descriptor.populate)
    if specs:
        await expand_relations(repository, results, specs)

    total = await repository.count(filter_)

    if entity.ownership:
        await resolver.ownership.augment(results, repository.ctx.user, repository.ctx)

    _strip_private(entity, results)
    if internal_owner:
        for record in results:
            record.pop(OWNER_FIELD, None)

    logger.debug(
        f"Listed {len(results)} of {total} {entity.name} records from {repository.target}",
        extra={
            "structured": {
                "target": repository.target,
                "page": descriptor.page,
                "limit": limit,
                "total": total,
            }
        },
    )

    return PagedResults(
        results=results,
        page=descriptor.page,
        limit=limit,
        total_pages=math.ceil(total / limit),
        total_results=total,
    )
