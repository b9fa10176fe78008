"""Tests for tenant isolation across concurrent operations."""

import asyncio

import pytest

from backend.app.db import context
from backend.app.db.context import ActingUser, RequestContext
from backend.app.db.query import QueryDescriptor
from backend.app.db.resolver import StorageTargetResolver


async def _write_then_read(resolver: StorageTargetResolver, tenant: str, titles: list[str]) -> list[str]:
    """One request: writes posts through the carrier-bound context, then lists them."""

    async def handler() -> list[str]:
        repo = resolver.repository("Post")
        for title in titles:
            await repo.create({"title": title})
            await asyncio.sleep(0)
        # Resolve again after suspension points; must still see the same tenant
        page = await resolver.repository("Post").advanced_results(QueryDescriptor(limit=100))
        return sorted(r["title"] for r in page.results)

    ctx = RequestContext(tenant_id=tenant, user=ActingUser(id=f"{tenant}-admin", roles=("admin",)))
    return await context.arun(ctx, handler)


@pytest.mark.asyncio
async def test_interleaved_operations_stay_in_their_tenant(resolver: StorageTargetResolver) -> None:
    a_titles = [f"a{i}" for i in range(5)]
    b_titles = [f"b{i}" for i in range(7)]

    seen_a, seen_b = await asyncio.gather(
        _write_then_read(resolver, "school-a", a_titles),
        _write_then_read(resolver, "school-b", b_titles),
    )

    assert seen_a == a_titles
    assert seen_b == b_titles
    assert await resolver.store.list_collections() == ["school-a_posts", "school-b_posts"]


@pytest.mark.asyncio
async def test_records_are_invisible_across_tenants(resolver: StorageTargetResolver) -> None:
    a = RequestContext(tenant_id="school-a")
    b = RequestContext(tenant_id="school-b")
    post = await resolver.repository("Post", a).create({"title": "private"})

    assert await resolver.repository("Post", b).find_by_id(post["id"]) is None
    assert await resolver.repository("Post", b).count() == 0
    assert await resolver.repository("Post", b).delete_by_id(post["id"]) is None
    assert await resolver.repository("Post", a).count() == 1


@pytest.mark.asyncio
async def test_tenant_is_never_stored_on_records(resolver: StorageTargetResolver) -> None:
    post = await resolver.repository("Post", RequestContext(tenant_id="school-a")).create({"title": "x"})

    assert "school-a" not in post.values()
    assert set(post) == {"id", "title", "created_at", "updated_at"}


@pytest.mark.asyncio
async def test_repository_keeps_tenant_after_binding_changes(resolver: StorageTargetResolver) -> None:
    with context.bind("school-a"):
        repo = resolver.repository("Post")

    with context.bind("school-b"):
        await repo.create({"title": "x"})

    assert await resolver.repository("Post", RequestContext(tenant_id="school-a")).count() == 1
    assert await resolver.repository("Post", RequestContext(tenant_id="school-b")).count() == 0
