"""Document store protocol interfaces.

The store is the primitive layer the storage target resolver routes to. It
knows nothing about tenants or entity types: it only exposes named physical
collections of JSON-like documents keyed by ``id``.
"""

import re
from typing import Any, Protocol

from backend.app.db.documents import Document, SortSpec
from backend.app.db.exceptions import InvalidTargetError

TARGET_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_\-]{0,62}$")


def validate_target_name(name: str) -> str:
    """Check a physical target name before a store creates it.

    Raises:
        InvalidTargetError: If the name is empty, too long or has unsafe characters
    """
    if not name or not TARGET_NAME_PATTERN.match(name):
        raise InvalidTargetError(name, "expected 1-63 characters of [A-Za-z0-9_-]")
    return name


class Collection(Protocol):
    """One physical collection."""

    name: str

    async def insert_one(self, document: Document) -> Document:
        """Insert a document that already carries its ``id``.

        Args:
            document: Document to insert

        Returns:
            The stored document
        """
        ...

    async def insert_many(self, documents: list[Document]) -> list[Document]:
        """Insert several documents.

        Args:
            documents: Documents to insert

        Returns:
            The stored documents, in input order
        """
        ...

    async def find(
        self,
        filter_: dict[str, Any] | None = None,
        *,
        projection: dict[str, int] | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Document]:
        """Find matching documents.

        Args:
            filter_: Filter in the Mongo-style operator dialect
            projection: Inclusion/exclusion projection
            sort: Sort spec as (field, direction) pairs
            skip: Number of matches to skip
            limit: Maximum number of documents to return

        Returns:
            Matching documents (copies)
        """
        ...

    async def find_one(
        self,
        filter_: dict[str, Any] | None = None,
        *,
        projection: dict[str, int] | None = None,
        sort: SortSpec | None = None,
    ) -> Document | None:
        """Find the first matching document, or None."""
        ...

    async def update_one(self, filter_: dict[str, Any], update: dict[str, Any]) -> Document | None:
        """Update the first matching document.

        Returns:
            The updated document, or None if nothing matched
        """
        ...

    async def update_many(self, filter_: dict[str, Any], update: dict[str, Any]) -> int:
        """Update all matching documents.

        Returns:
            Number of documents updated
        """
        ...

    async def delete_one(self, filter_: dict[str, Any]) -> Document | None:
        """Delete the first matching document.

        Returns:
            The deleted document, or None if nothing matched
        """
        ...

    async def delete_many(self, filter_: dict[str, Any]) -> int:
        """Delete all matching documents.

        Returns:
            Number of documents deleted
        """
        ...

    async def count(self, filter_: dict[str, Any] | None = None) -> int:
        """Count matching documents."""
        ...

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]:
        """Run an aggregation pipeline over the collection."""
        ...


class DocumentStore(Protocol):
    """Store of named physical collections."""

    async def get_collection(self, name: str) -> Collection:
        """Get (creating if needed) the collection called ``name``.

        Args:
            name: Physical target name

        Returns:
            Collection handle

        Raises:
            InvalidTargetError: If the name cannot be used
        """
        ...

    async def list_collections(self) -> list[str]:
        """List physical collection names."""
        ...
