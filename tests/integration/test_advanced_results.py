"""Integration tests for paginated listing queries."""

import json

import pytest
import pytest_asyncio

from backend.app.db.context import ActingUser, RequestContext
from backend.app.db.entities import EntityRegistry, EntityType
from backend.app.db.inmemory import InMemoryDocumentStore
from backend.app.db.query import PopulateSpec, QueryDescriptor
from backend.app.db.resolver import StorageTargetResolver

CTX = RequestContext(tenant_id="school-a", user=ActingUser(id="admin-1", roles=("admin",)))


@pytest_asyncio.fixture
async def posts(resolver: StorageTargetResolver) -> list[dict]:
    """25 posts in school-a created with increasing timestamps."""
    repo = resolver.repository("Post", CTX)
    return await repo.insert_many(
        [
            {
                "title": f"Post {i:02d}",
                "status": "published" if i % 2 else "draft",
                "created_at": f"2024-01-01T00:00:{i:02d}+00:00",
            }
            for i in range(1, 26)
        ]
    )


class TestPagination:
    """Pagination and totals."""

    @pytest.mark.asyncio
    async def test_second_page_of_ten(self, resolver: StorageTargetResolver, posts: list[dict]) -> None:
        page = await resolver.repository("Post", CTX).advanced_results(
            QueryDescriptor(page=2, limit=10, sort="created_at")
        )

        assert [r["title"] for r in page.results] == [f"Post {i:02d}" for i in range(11, 21)]
        assert page.page == 2
        assert page.limit == 10
        assert page.total_pages == 3
        assert page.total_results == 25

    @pytest.mark.asyncio
    async def test_defaults_newest_first_with_default_limit(
        self, resolver: StorageTargetResolver, posts: list[dict]
    ) -> None:
        page = await resolver.repository("Post", CTX).advanced_results()

        assert page.limit == 20
        assert len(page.results) == 20
        assert page.results[0]["title"] == "Post 25"
        assert page.total_pages == 2

    @pytest.mark.asyncio
    async def test_page_past_the_end_is_empty(
        self, resolver: StorageTargetResolver, posts: list[dict]
    ) -> None:
        page = await resolver.repository("Post", CTX).advanced_results(QueryDescriptor(page=9, limit=10))

        assert page.results == []
        assert page.total_results == 25

    @pytest.mark.asyncio
    async def test_empty_target(self, resolver: StorageTargetResolver) -> None:
        page = await resolver.repository("Post", CTX).advanced_results()

        assert page.results == []
        assert page.total_pages == 0
        assert page.total_results == 0

    @pytest.mark.asyncio
    async def test_equal_sort_keys_do_not_repeat_across_pages(self, resolver: StorageTargetResolver) -> None:
        repo = resolver.repository("Post", CTX)
        await repo.insert_many([{"title": "same", "created_at": "2024"} for _ in range(7)])

        seen = []
        for page_number in (1, 2, 3):
            page = await repo.advanced_results(QueryDescriptor(page=page_number, limit=3))
            seen.extend(r["id"] for r in page.results)

        assert len(seen) == len(set(seen)) == 7


class TestFiltering:
    """Structured filters, overrides and projection."""

    @pytest.mark.asyncio
    async def test_structured_filter_and_total(
        self, resolver: StorageTargetResolver, posts: list[dict]
    ) -> None:
        page = await resolver.repository("Post", CTX).advanced_results(
            QueryDescriptor(query=json.dumps([{"status": "PUBLISHED"}]), limit=5)
        )

        assert page.total_results == 13
        assert page.total_pages == 3
        assert all(r["status"] == "published" for r in page.results)

    @pytest.mark.asyncio
    async def test_overrides_always_apply(self, resolver: StorageTargetResolver, posts: list[dict]) -> None:
        page = await resolver.repository("Post", CTX).advanced_results(
            QueryDescriptor(query=[{"status": "draft"}], overrides={"status": "published"})
        )

        assert page.total_results == 0

    @pytest.mark.asyncio
    async def test_malformed_filter_lists_override_matches(
        self, resolver: StorageTargetResolver, posts: list[dict]
    ) -> None:
        page = await resolver.repository("Post", CTX).advanced_results(
            QueryDescriptor(query="%5Bnot json", overrides={"status": "draft"})
        )

        assert page.total_results == 12

    @pytest.mark.asyncio
    async def test_select_keeps_id_and_hides_internal_creator(
        self, resolver: StorageTargetResolver, posts: list[dict]
    ) -> None:
        page = await resolver.repository("Post", CTX).advanced_results(
            QueryDescriptor(select="title", limit=1)
        )

        assert page.results == [{"id": posts[-1]["id"], "title": "Post 25", "can_edit": True}]

    @pytest.mark.asyncio
    async def test_branch_restriction(self, resolver: StorageTargetResolver) -> None:
        repo = resolver.repository("User", CTX)
        await repo.insert_many(
            [
                {"username": "a", "branches": ["b1", "b2"]},
                {"username": "b", "branches": ["b2"]},
                {"username": "c"},
            ]
        )

        page = await repo.advanced_results(QueryDescriptor(branch="b1"))

        assert [r["username"] for r in page.results] == ["a"]


class TestPopulate:
    """Relation expansion."""

    @pytest_asyncio.fixture
    async def school(self, resolver: StorageTargetResolver) -> dict[str, dict]:
        roles = resolver.repository("Role", CTX)
        admin_role = await roles.create({"title": "admin"})
        customers = resolver.repository("Customer", CTX)
        branch = await customers.create({"name": "North"})
        users = resolver.repository("User", CTX)
        teacher = await users.create(
            {"username": "teach", "password": "secret", "roles": [admin_role["id"]], "branches": [branch["id"]]}
        )
        student = await users.create({"username": "stud", "password": "secret", "roles": []})
        taxi = await resolver.repository("Taxi", CTX).create(
            {
                "name": "5B",
                "branch": branch["id"],
                "users": [teacher["id"], "missing-user", student["id"]],
            }
        )
        return {"role": admin_role, "branch": branch, "teacher": teacher, "student": student, "taxi": taxi}

    @pytest.mark.asyncio
    async def test_flat_populate(self, resolver: StorageTargetResolver, school: dict[str, dict]) -> None:
        page = await resolver.repository("Taxi", CTX).advanced_results(QueryDescriptor(populate="branch,users"))

        taxi = page.results[0]
        assert taxi["branch"]["name"] == "North"
        assert [u["username"] for u in taxi["users"]] == ["teach", "stud"]
        assert all("password" not in u for u in taxi["users"])

    @pytest.mark.asyncio
    async def test_nested_structured_populate_with_select(
        self, resolver: StorageTargetResolver, school: dict[str, dict]
    ) -> None:
        descriptor = QueryDescriptor(
            populate=[
                PopulateSpec(
                    path="users",
                    model="User",
                    select="username,roles",
                    populate=[PopulateSpec(path="roles", select="title")],
                )
            ]
        )

        page = await resolver.repository("Taxi", CTX).advanced_results(descriptor)

        teacher = page.results[0]["users"][0]
        assert teacher == {
            "id": school["teacher"]["id"],
            "username": "teach",
            "roles": [{"id": school["role"]["id"], "title": "admin"}],
        }
        # Unpopulated reference stays an identifier
        assert page.results[0]["branch"] == school["branch"]["id"]

    @pytest.mark.asyncio
    async def test_missing_single_reference_becomes_none(self, resolver: StorageTargetResolver) -> None:
        repo = resolver.repository("Taxi", CTX)
        await repo.create({"name": "orphan", "branch": "gone"})

        page = await repo.advanced_results(QueryDescriptor(populate="branch"))

        assert page.results[0]["branch"] is None

    @pytest.mark.asyncio
    async def test_unknown_path_and_model_are_skipped(
        self, resolver: StorageTargetResolver, school: dict[str, dict]
    ) -> None:
        descriptor = QueryDescriptor(
            populate=[PopulateSpec(path="nonexistent"), PopulateSpec(path="branch", model="Widget")]
        )

        page = await resolver.repository("Taxi", CTX).advanced_results(descriptor)

        assert page.results[0]["branch"] == school["branch"]["id"]

    @pytest.mark.asyncio
    async def test_populate_stays_in_tenant(
        self, resolver: StorageTargetResolver, school: dict[str, dict]
    ) -> None:
        other = RequestContext(tenant_id="school-b", user=CTX.user)
        await resolver.repository("Taxi", other).create({"name": "X", "branch": school["branch"]["id"]})

        page = await resolver.repository("Taxi", other).advanced_results(QueryDescriptor(populate="branch"))

        assert page.results[0]["branch"] is None

    @pytest.mark.asyncio
    async def test_depth_guard_stops_self_references(self) -> None:
        node = EntityType(name="Node", references={"parent": "Node"})
        resolver = StorageTargetResolver(InMemoryDocumentStore(), EntityRegistry([node]), max_populate_depth=2)
        repo = resolver.repository(node, CTX)
        await repo.create({"id": "n0", "created_at": "1"})
        await repo.create({"id": "n1", "parent": "n0", "created_at": "2"})
        await repo.create({"id": "n2", "parent": "n1", "created_at": "3"})
        await repo.create({"id": "n3", "parent": "n2", "created_at": "4"})

        deep = PopulateSpec(path="parent", populate=[PopulateSpec(path="parent", populate="parent")])
        page = await repo.advanced_results(QueryDescriptor(populate=[deep], limit=1))

        n3 = page.results[0]
        assert n3["id"] == "n3"
        assert n3["parent"]["id"] == "n2"
        assert n3["parent"]["parent"]["id"] == "n1"
        # Third level exceeds the limit and stays an identifier
        assert n3["parent"]["parent"]["parent"] == "n0"


class TestOwnershipAugmentation:
    """can_edit annotation of listed records."""

    @pytest.mark.asyncio
    async def test_can_edit_reflects_acting_user(self, resolver: StorageTargetResolver) -> None:
        users = resolver.repository("User", CTX)
        await users.create({"id": "admin-1", "roles": ["admin"]})
        await users.create({"id": "teacher-1", "roles": ["teacher"]})
        teacher_ctx = RequestContext(tenant_id="school-a", user=ActingUser(id="teacher-1", roles=("teacher",)))

        await resolver.repository("Post", CTX).create({"title": "by admin", "created_at": "1"})
        await resolver.repository("Post", teacher_ctx).create({"title": "by teacher", "created_at": "2"})

        as_teacher = await resolver.repository("Post", teacher_ctx).advanced_results()
        as_admin = await resolver.repository("Post", CTX).advanced_results()

        assert {r["title"]: r["can_edit"] for r in as_teacher.results} == {
            "by admin": False,
            "by teacher": True,
        }
        assert {r["title"]: r["can_edit"] for r in as_admin.results} == {
            "by admin": True,
            "by teacher": False,
        }

    @pytest.mark.asyncio
    async def test_creator_can_edit_with_populated_creator(self, resolver: StorageTargetResolver) -> None:
        await resolver.repository("User", CTX).create({"id": "teacher-1", "username": "ty", "roles": ["teacher"]})
        teacher_ctx = RequestContext(tenant_id="school-a", user=ActingUser(id="teacher-1", roles=("teacher",)))
        await resolver.repository("Post", teacher_ctx).create({"title": "mine"})

        page = await resolver.repository("Post", teacher_ctx).advanced_results(
            QueryDescriptor(populate=[PopulateSpec(path="created_by", model="User", select="username")])
        )

        record = page.results[0]
        assert record["created_by"] == {"id": "teacher-1", "username": "ty"}
        assert record["can_edit"] is True

    @pytest.mark.asyncio
    async def test_admin_verdict_with_populated_creator(self, resolver: StorageTargetResolver) -> None:
        users = resolver.repository("User", CTX)
        await users.create({"id": "admin-1", "roles": ["admin"]})
        await users.create({"id": "teacher-1", "roles": ["teacher"]})
        teacher_ctx = RequestContext(tenant_id="school-a", user=ActingUser(id="teacher-1", roles=("teacher",)))
        await resolver.repository("Post", teacher_ctx).create({"title": "by teacher"})
        other_admin = RequestContext(tenant_id="school-a", user=ActingUser(id="admin-2", roles=("admin",)))
        await resolver.repository("Post", CTX).create({"title": "by admin"})

        page = await resolver.repository("Post", other_admin).advanced_results(
            QueryDescriptor(populate=[PopulateSpec(path="created_by", model="User")])
        )

        assert {r["title"]: r["can_edit"] for r in page.results} == {
            "by admin": True,
            "by teacher": False,
        }

    @pytest.mark.asyncio
    async def test_excluding_creator_keeps_verdict(self, resolver: StorageTargetResolver) -> None:
        await resolver.repository("User", CTX).create({"id": "admin-1", "roles": ["admin"]})
        await resolver.repository("Post", CTX).create({"title": "by admin"})
        teacher_ctx = RequestContext(tenant_id="school-a", user=ActingUser(id="teacher-1", roles=("teacher",)))
        repo = resolver.repository("Post", teacher_ctx)

        plain = await repo.advanced_results()
        excluded = await repo.advanced_results(QueryDescriptor(select="-created_by"))
        mixed = await repo.advanced_results(QueryDescriptor(select="title,-created_by"))

        assert plain.results[0]["can_edit"] is False
        assert excluded.results[0]["can_edit"] is False
        assert "created_by" not in excluded.results[0]
        assert excluded.results[0]["title"] == "by admin"
        assert mixed.results[0] == {"id": plain.results[0]["id"], "title": "by admin", "can_edit": False}

    @pytest.mark.asyncio
    async def test_entities_without_ownership_are_not_annotated(
        self, resolver: StorageTargetResolver
    ) -> None:
        await resolver.repository("Role", CTX).create({"title": "admin"})

        page = await resolver.repository("Role", CTX).advanced_results()

        assert "can_edit" not in page.results[0]
