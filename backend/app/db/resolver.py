"""Storage target resolution and tenant-bound repositories.

Every entity-type data access goes through ``StorageTargetResolver.repository``,
which bakes the physical target for the active tenant into an
``EntityRepository``. Store handles are cached process-wide and never handed
out directly, so nothing can reach a tenant's data without resolving through
here.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, TypeVar

from backend.app.db import context
from backend.app.db.context import RequestContext
from backend.app.db.documents import Document, new_document_id, parse_projection, parse_sort
from backend.app.db.entities import OWNER_FIELD, EntityRegistry, EntityType
from backend.app.db.hooks import LifecycleEvent, LifecycleHooks
from backend.app.db.ownership import OwnershipResolver
from backend.app.db.query import PagedResults, QueryDescriptor, advanced_results
from backend.app.db.store import Collection, DocumentStore
from backend.app.db.targets import physical_target_name
from backend.app.utils.logging import StructuredStoreLogger
from backend.app.utils.metrics import metrics

if TYPE_CHECKING:
    from backend.app.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _with_updated_at(update: dict[str, Any]) -> dict[str, Any]:
    if not any(key.startswith("$") for key in update):
        return {"$set": {**update, "updated_at": utcnow_iso()}}
    stamped = dict(update)
    stamped["$set"] = {**update.get("$set", {}), "updated_at": utcnow_iso()}
    return stamped


class StorageTargetResolver:
    """Routes entity-type operations to per-tenant physical targets."""

    def __init__(
        self,
        store: DocumentStore,
        registry: EntityRegistry,
        *,
        hooks: LifecycleHooks | None = None,
        admin_role_title: str = "admin",
        default_page_limit: int = 20,
        max_populate_depth: int = 5,
    ) -> None:
        """Initialize resolver.

        Args:
            store: Underlying document store
            registry: Known entity types
            hooks: Lifecycle hooks fired after writes (optional)
            admin_role_title: Role title treated as administrator for ownership
            default_page_limit: Page size when a query descriptor has none
            max_populate_depth: Maximum relation expansion depth
        """
        self.store = store
        self.registry = registry
        self.hooks = hooks
        self.ownership = OwnershipResolver(self, admin_role_title=admin_role_title)
        self.default_page_limit = default_page_limit
        self.max_populate_depth = max_populate_depth
        self._handles: dict[str, Collection] = {}
        self._lock = asyncio.Lock()
        self._store_logger = StructuredStoreLogger()

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        registry: EntityRegistry,
        settings: "Settings",
        hooks: LifecycleHooks | None = None,
    ) -> "StorageTargetResolver":
        return cls(
            store,
            registry,
            hooks=hooks,
            admin_role_title=settings.admin_role_title,
            default_page_limit=settings.default_page_limit,
            max_populate_depth=settings.max_populate_depth,
        )

    def entity(self, entity: EntityType | str) -> EntityType:
        if isinstance(entity, EntityType):
            return entity
        return self.registry.get(entity)

    def target_for(self, entity: EntityType | str, ctx: RequestContext | None = None) -> str:
        """Physical target name for ``entity`` under ``ctx`` (or the bound context)."""
        bound = ctx if ctx is not None else context.current()
        tenant_id = bound.tenant_id if bound is not None else None
        return physical_target_name(self.entity(entity), tenant_id)

    def repository(
        self, entity: EntityType | str, ctx: RequestContext | None = None
    ) -> "EntityRepository":
        """Get a repository bound to the tenant's physical target.

        Args:
            entity: Entity type or its registered name
            ctx: Explicit request context; defaults to the bound context, and
                to an untenanted context outside any binding

        Returns:
            Repository whose every verb operates on the resolved target
        """
        resolved = self.entity(entity)
        bound = ctx if ctx is not None else (context.current() or RequestContext())
        target = physical_target_name(resolved, bound.tenant_id)
        return EntityRepository(self, resolved, target, bound)

    async def collection(self, target: str) -> Collection:
        """Get the cached store handle for ``target``, creating it once.

        Concurrent first access for the same target yields a single handle.
        """
        handle = self._handles.get(target)
        if handle is not None:
            return handle

        async with self._lock:
            handle = self._handles.get(target)
            if handle is None:
                handle = await self.store.get_collection(target)
                self._handles[target] = handle
                logger.debug(f"Resolved storage target {target}")
        return handle

    async def invoke(
        self,
        target: str,
        verb: str,
        tenant_id: str | None,
        call: Callable[[Collection], Awaitable[T]],
    ) -> T:
        """Run one store verb against ``target`` with logging and metrics.

        Store errors propagate unchanged.
        """
        start = time.perf_counter()
        try:
            handle = await self.collection(target)
            result = await call(handle)
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            metrics.inc_error(verb)
            metrics.record_latency(verb, "error", latency_ms)
            self._store_logger.log_operation(
                target, verb, "error", latency_ms, tenant_id=tenant_id, error_reason=type(e).__name__
            )
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        metrics.record_latency(verb, "success", latency_ms)
        self._store_logger.log_operation(target, verb, "success", latency_ms, tenant_id=tenant_id)
        return result


class EntityRepository:
    """Data access for one entity type on one resolved physical target."""

    def __init__(
        self,
        resolver: StorageTargetResolver,
        entity: EntityType,
        target: str,
        ctx: RequestContext,
    ) -> None:
        self.resolver = resolver
        self.entity = entity
        self.target = target
        self.ctx = ctx

    def __repr__(self) -> str:
        return f"EntityRepository(entity={self.entity.name!r}, target={self.target!r})"

    async def _invoke(self, verb: str, call: Callable[[Collection], Awaitable[T]]) -> T:
        return await self.resolver.invoke(self.target, verb, self.ctx.tenant_id, call)

    def _emit(self, action: str, document: Document | None) -> None:
        if document is None or self.resolver.hooks is None:
            return
        self.resolver.hooks.emit(LifecycleEvent(action, self.entity, document, self.ctx))

    def _new_document(self, data: dict[str, Any]) -> Document:
        now = utcnow_iso()
        document = dict(data)
        document.setdefault("id", new_document_id())
        document.setdefault("created_at", now)
        document["updated_at"] = now
        if self.entity.ownership and not document.get(OWNER_FIELD) and self.ctx.user is not None:
            document[OWNER_FIELD] = self.ctx.user.id
        return document

    # Writes

    async def create(self, data: dict[str, Any]) -> Document:
        """Create one document."""
        document = self._new_document(data)
        created = await self._invoke("create", lambda c: c.insert_one(document))
        self._emit("create", created)
        return created

    async def insert_many(self, items: list[dict[str, Any]]) -> list[Document]:
        """Create several documents."""
        documents = [self._new_document(item) for item in items]
        created = await self._invoke("insert_many", lambda c: c.insert_many(documents))
        for document in created:
            self._emit("create", document)
        return created

    async def update_one(self, filter_: dict[str, Any], update: dict[str, Any]) -> Document | None:
        """Update the first matching document."""
        stamped = _with_updated_at(update)
        updated = await self._invoke("update_one", lambda c: c.update_one(filter_, stamped))
        self._emit("update", updated)
        return updated

    async def find_one_and_update(
        self, filter_: dict[str, Any], update: dict[str, Any]
    ) -> Document | None:
        """Update the first matching document after the ownership check.

        Raises:
            AuthorizationError: If the acting user may not edit the document
        """
        existing = await self.find_one(filter_)
        if existing is None:
            return None
        await self.resolver.ownership.ensure_can_edit(existing, self.entity, self.ctx)
        return await self.update_one({"id": existing["id"]}, update)

    async def update_by_id(self, document_id: str, update: dict[str, Any]) -> Document | None:
        """Update a document by id after the ownership check.

        Raises:
            AuthorizationError: If the acting user may not edit the document
        """
        return await self.find_one_and_update({"id": document_id}, update)

    async def update_many(self, filter_: dict[str, Any], update: dict[str, Any]) -> int:
        """Update all matching documents."""
        stamped = _with_updated_at(update)
        return await self._invoke("update_many", lambda c: c.update_many(filter_, stamped))

    async def delete_one(self, filter_: dict[str, Any]) -> Document | None:
        """Delete the first matching document."""
        deleted = await self._invoke("delete_one", lambda c: c.delete_one(filter_))
        self._emit("delete", deleted)
        return deleted

    async def delete_by_id(self, document_id: str) -> Document | None:
        """Delete a document by id."""
        return await self.delete_one({"id": document_id})

    async def delete_many(self, filter_: dict[str, Any]) -> int:
        """Delete all matching documents."""
        return await self._invoke("delete_many", lambda c: c.delete_many(filter_))

    # Reads

    async def find(
        self,
        filter_: dict[str, Any] | None = None,
        *,
        select: str | dict[str, int] | None = None,
        sort: str | dict[str, int] | list[tuple[str, int]] | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Document]:
        """Find matching documents."""
        projection = select if isinstance(select, dict) else parse_projection(select)
        sort_spec = parse_sort(sort)
        return await self._invoke(
            "find",
            lambda c: c.find(filter_, projection=projection, sort=sort_spec, skip=skip, limit=limit),
        )

    async def find_one(
        self,
        filter_: dict[str, Any] | None = None,
        *,
        select: str | dict[str, int] | None = None,
    ) -> Document | None:
        """Find the first matching document."""
        projection = select if isinstance(select, dict) else parse_projection(select)
        return await self._invoke("find_one", lambda c: c.find_one(filter_, projection=projection))

    async def find_by_id(
        self, document_id: str, *, select: str | dict[str, int] | None = None
    ) -> Document | None:
        """Find a document by id."""
        return await self.find_one({"id": document_id}, select=select)

    async def count(self, filter_: dict[str, Any] | None = None) -> int:
        """Count matching documents."""
        return await self._invoke("count", lambda c: c.count(filter_))

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]:
        """Run an aggregation pipeline."""
        return await self._invoke("aggregate", lambda c: c.aggregate(pipeline))

    async def advanced_results(self, descriptor: QueryDescriptor | None = None) -> PagedResults:
        """Run a paginated, filtered, populated listing query."""
        return await advanced_results(self, descriptor or QueryDescriptor())
