"""SQL implementation of the document store.

Each physical target is its own table of ``(id, data)`` rows, with the
document kept as JSON (JSONB on PostgreSQL). Tables are created on first use.
Filters, sorting and paging are compiled to SQL by ``JsonFilterCompiler``.

Read-modify-write verbs lock the rows they change: ``SELECT ... FOR UPDATE`` on
PostgreSQL, and immediate (write-locking) transactions on SQLite.
"""

import asyncio
from typing import Any

from sqlalchemy import (
    JSON,
    Column,
    MetaData,
    Select,
    String,
    Table,
    delete,
    event,
    func,
    insert,
    inspect,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from backend.app.db.documents import Document, SortSpec, apply_update, project, run_pipeline
from backend.app.db.sql_filters import JsonFilterCompiler
from backend.app.db.store import validate_target_name

DocumentJSON = JSON().with_variant(JSONB(), "postgresql")


def use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock when it begins.

    pysqlite/aiosqlite defer BEGIN until the first write, so a read followed by
    a write in one transaction could interleave with another writer.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlCollection:
    """SQL implementation of Collection."""

    def __init__(self, name: str, engine: AsyncEngine, table: Table) -> None:
        self.name = name
        self._engine = engine
        self._table = table
        self._filters = JsonFilterCompiler(table, engine.dialect.name)

    def _select(
        self,
        filter_: dict[str, Any] | None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> Select:
        query = select(self._table.c.id, self._table.c.data).where(self._filters.where(filter_))
        order = self._filters.order_by(sort)
        if order:
            query = query.order_by(*order)
        if skip:
            query = query.offset(skip)
        if limit is not None:
            query = query.limit(limit)
        return query

    async def _locked(
        self, conn: AsyncConnection, filter_: dict[str, Any], limit: int | None = None
    ) -> list[Document]:
        query = self._select(filter_, sort=[("id", 1)], limit=limit).with_for_update()
        result = await conn.execute(query)
        return [row.data for row in result]

    async def insert_one(self, document: Document) -> Document:
        """Insert a document."""
        async with self._engine.begin() as conn:
            await conn.execute(insert(self._table).values(id=document["id"], data=document))
        return document

    async def insert_many(self, documents: list[Document]) -> list[Document]:
        """Insert several documents in one transaction."""
        if not documents:
            return []
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(self._table), [{"id": doc["id"], "data": doc} for doc in documents]
            )
        return documents

    async def find(
        self,
        filter_: dict[str, Any] | None = None,
        *,
        projection: dict[str, int] | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Document]:
        """Find matching documents."""
        async with self._engine.connect() as conn:
            result = await conn.execute(self._select(filter_, sort, skip, limit))
            return [project(row.data, projection) for row in result]

    async def find_one(
        self,
        filter_: dict[str, Any] | None = None,
        *,
        projection: dict[str, int] | None = None,
        sort: SortSpec | None = None,
    ) -> Document | None:
        """Find the first matching document."""
        found = await self.find(filter_, projection=projection, sort=sort, limit=1)
        return found[0] if found else None

    async def update_one(self, filter_: dict[str, Any], update_: dict[str, Any]) -> Document | None:
        """Update the first matching document."""
        async with self._engine.begin() as conn:
            found = await self._locked(conn, filter_, limit=1)
            if not found:
                return None
            updated = apply_update(found[0], update_)
            await conn.execute(
                update(self._table).where(self._table.c.id == found[0]["id"]).values(data=updated)
            )
        return updated

    async def update_many(self, filter_: dict[str, Any], update_: dict[str, Any]) -> int:
        """Update all matching documents."""
        async with self._engine.begin() as conn:
            found = await self._locked(conn, filter_)
            for doc in found:
                await conn.execute(
                    update(self._table)
                    .where(self._table.c.id == doc["id"])
                    .values(data=apply_update(doc, update_))
                )
        return len(found)

    async def delete_one(self, filter_: dict[str, Any]) -> Document | None:
        """Delete the first matching document."""
        async with self._engine.begin() as conn:
            found = await self._locked(conn, filter_, limit=1)
            if not found:
                return None
            await conn.execute(delete(self._table).where(self._table.c.id == found[0]["id"]))
        return found[0]

    async def delete_many(self, filter_: dict[str, Any]) -> int:
        """Delete all matching documents."""
        async with self._engine.begin() as conn:
            result = await conn.execute(delete(self._table).where(self._filters.where(filter_)))
            return result.rowcount

    async def count(self, filter_: dict[str, Any] | None = None) -> int:
        """Count matching documents."""
        query = select(func.count()).select_from(self._table).where(self._filters.where(filter_))
        async with self._engine.connect() as conn:
            return (await conn.execute(query)).scalar_one()

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]:
        """Run an aggregation pipeline.

        A leading ``$match`` stage runs in SQL; the remaining stages run on the
        matched documents.
        """
        filter_: dict[str, Any] | None = None
        if pipeline and "$match" in pipeline[0]:
            filter_, pipeline = pipeline[0]["$match"], pipeline[1:]
        async with self._engine.connect() as conn:
            result = await conn.execute(self._select(filter_))
            documents = [row.data for row in result]
        return run_pipeline(documents, pipeline)


class SqlDocumentStore:
    """SQL implementation of DocumentStore."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._collections: dict[str, SqlCollection] = {}
        self._lock = asyncio.Lock()
        if engine.dialect.name == "sqlite":
            use_immediate_transactions(engine)

    def _table(self, name: str) -> Table:
        return Table(
            name,
            self._metadata,
            Column("id", String(64), primary_key=True),
            Column("data", DocumentJSON, nullable=False),
        )

    async def get_collection(self, name: str) -> SqlCollection:
        """Get or create the table backing ``name``."""
        validate_target_name(name)
        collection = self._collections.get(name)
        if collection is not None:
            return collection

        async with self._lock:
            collection = self._collections.get(name)
            if collection is None:
                table = self._table(name)
                async with self._engine.begin() as conn:
                    await conn.run_sync(table.create, checkfirst=True)
                collection = SqlCollection(name, self._engine, table)
                self._collections[name] = collection
        return collection

    async def list_collections(self) -> list[str]:
        """List tables."""
        async with self._engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        return sorted(names)
