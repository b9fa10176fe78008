"""Database engine, document store and resolver factories."""

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from backend.app.config import Settings, get_settings
from backend.app.db.entities import EntityRegistry
from backend.app.db.hooks import LifecycleHooks, NotificationBroadcaster, install_default_listeners
from backend.app.db.inmemory import InMemoryDocumentStore
from backend.app.db.resolver import StorageTargetResolver
from backend.app.db.sql_store import SqlDocumentStore
from backend.app.db.store import DocumentStore
from backend.app.models.entities import build_registry


def create_async_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create async SQLAlchemy engine from settings.

    Raises:
        ValueError: If DATABASE_URL is unset or empty.
    """
    database_url = settings.database_url

    if not database_url:
        raise ValueError(
            "DATABASE_URL must be set to a valid connection string. "
            "Please configure the database_url setting."
        )

    # Convert postgresql:// to postgresql+asyncpg://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return create_async_engine(database_url, pool_pre_ping=True, echo=False)


def create_document_store(settings: Settings) -> DocumentStore:
    """Create the document store for the configured backend.

    Returns:
        SQL-backed store when DATABASE_URL is set, otherwise an in-memory store
    """
    if settings.database_url:
        return SqlDocumentStore(create_async_engine_from_settings(settings))
    return InMemoryDocumentStore()


# Global store, created on first use
_store: DocumentStore | None = None


def get_document_store() -> DocumentStore:
    """Get global document store instance."""
    global _store
    if _store is None:
        _store = create_document_store(get_settings())
    return _store


# Global resolver, created on first use
_resolver: StorageTargetResolver | None = None
_broadcaster: NotificationBroadcaster | None = None


def get_broadcaster() -> NotificationBroadcaster:
    """Get global notification broadcaster instance."""
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = NotificationBroadcaster()
    return _broadcaster


def create_resolver(
    store: DocumentStore,
    settings: Settings,
    registry: EntityRegistry | None = None,
    broadcaster: NotificationBroadcaster | None = None,
) -> StorageTargetResolver:
    """Create a resolver with the activity and notification listeners installed."""
    hooks = LifecycleHooks()
    resolver = StorageTargetResolver.from_settings(
        store, registry or build_registry(), settings, hooks=hooks
    )
    install_default_listeners(hooks, resolver, broadcaster)
    return resolver


def get_resolver() -> StorageTargetResolver:
    """Get global storage target resolver instance."""
    global _resolver
    if _resolver is None:
        _resolver = create_resolver(get_document_store(), get_settings(), broadcaster=get_broadcaster())
    return _resolver
