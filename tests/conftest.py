"""Shared pytest fixtures for all test suites."""

import pytest

from backend.app.config import Settings
from backend.app.db.context import ActingUser, RequestContext
from backend.app.db.engine import create_resolver
from backend.app.db.entities import EntityRegistry
from backend.app.db.hooks import NotificationBroadcaster
from backend.app.db.inmemory import InMemoryDocumentStore
from backend.app.db.resolver import StorageTargetResolver
from backend.app.models.entities import build_registry


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults, independent of the environment."""
    return Settings(_env_file=None, database_url=None)


@pytest.fixture
def registry() -> EntityRegistry:
    return build_registry()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def resolver(store: InMemoryDocumentStore, registry: EntityRegistry) -> StorageTargetResolver:
    """Resolver without lifecycle listeners."""
    return StorageTargetResolver(store, registry)


@pytest.fixture
def broadcaster() -> NotificationBroadcaster:
    return NotificationBroadcaster()


@pytest.fixture
def hooked_resolver(
    store: InMemoryDocumentStore,
    registry: EntityRegistry,
    settings: Settings,
    broadcaster: NotificationBroadcaster,
) -> StorageTargetResolver:
    """Resolver with the activity tracker and notification emitter installed."""
    return create_resolver(store, settings, registry, broadcaster)


@pytest.fixture
def admin() -> ActingUser:
    return ActingUser(id="admin-1", roles=("Admin",))


@pytest.fixture
def school_a(admin: ActingUser) -> RequestContext:
    return RequestContext(tenant_id="school-a", user=admin)


@pytest.fixture
def school_b(admin: ActingUser) -> RequestContext:
    return RequestContext(tenant_id="school-b", user=admin)
