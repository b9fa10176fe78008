"""In-memory implementation of the document store."""

import asyncio
import copy
from typing import Any

from backend.app.db.documents import (
    Document,
    SortSpec,
    apply_update,
    matches,
    project,
    run_pipeline,
    sort_documents,
)
from backend.app.db.store import validate_target_name


class InMemoryCollection:
    """In-memory implementation of Collection.

    Every verb yields to the event loop once, so callers see the same
    suspension points they would with a networked store.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._documents: dict[str, Document] = {}

    async def insert_one(self, document: Document) -> Document:
        """Insert a document."""
        await asyncio.sleep(0)
        if document["id"] in self._documents:
            raise ValueError(f"Duplicate id {document['id']} in {self.name}")
        self._documents[document["id"]] = copy.deepcopy(document)
        return copy.deepcopy(document)

    async def insert_many(self, documents: list[Document]) -> list[Document]:
        """Insert several documents."""
        return [await self.insert_one(document) for document in documents]

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
        await asyncio.sleep(0)
        found = [doc for doc in self._documents.values() if matches(doc, filter_)]
        if sort:
            found = sort_documents(found, sort)
        found = found[skip:]
        if limit is not None:
            found = found[:limit]
        return [project(doc, projection) for doc in found]

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

    async def update_one(self, filter_: dict[str, Any], update: dict[str, Any]) -> Document | None:
        """Update the first matching document."""
        await asyncio.sleep(0)
        for doc_id, doc in self._documents.items():
            if matches(doc, filter_):
                updated = apply_update(doc, update)
                self._documents[doc_id] = updated
                return copy.deepcopy(updated)
        return None

    async def update_many(self, filter_: dict[str, Any], update: dict[str, Any]) -> int:
        """Update all matching documents."""
        await asyncio.sleep(0)
        count = 0
        for doc_id, doc in list(self._documents.items()):
            if matches(doc, filter_):
                self._documents[doc_id] = apply_update(doc, update)
                count += 1
        return count

    async def delete_one(self, filter_: dict[str, Any]) -> Document | None:
        """Delete the first matching document."""
        await asyncio.sleep(0)
        for doc_id, doc in self._documents.items():
            if matches(doc, filter_):
                del self._documents[doc_id]
                return doc
        return None

    async def delete_many(self, filter_: dict[str, Any]) -> int:
        """Delete all matching documents."""
        await asyncio.sleep(0)
        doomed = [doc_id for doc_id, doc in self._documents.items() if matches(doc, filter_)]
        for doc_id in doomed:
            del self._documents[doc_id]
        return len(doomed)

    async def count(self, filter_: dict[str, Any] | None = None) -> int:
        """Count matching documents."""
        await asyncio.sleep(0)
        return sum(1 for doc in self._documents.values() if matches(doc, filter_))

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]:
        """Run an aggregation pipeline."""
        await asyncio.sleep(0)
        return run_pipeline(list(self._documents.values()), pipeline)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore."""

    def __init__(self) -> None:
        self._collections: dict[str, InMemoryCollection] = {}

    async def get_collection(self, name: str) -> InMemoryCollection:
        """Get or create a collection."""
        validate_target_name(name)
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    async def list_collections(self) -> list[str]:
        """List collection names."""
        return sorted(self._collections)
