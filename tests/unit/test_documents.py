"""Unit tests for document matching, projection, sorting and updates."""

import pytest

from backend.app.db.documents import (
    apply_update,
    is_valid_identifier,
    matches,
    new_document_id,
    parse_projection,
    parse_sort,
    project,
    run_pipeline,
    sort_documents,
)

DOC = {
    "id": "p1",
    "title": "Spring Fair",
    "views": 10,
    "tags": ["event", "school"],
    "author": {"name": "Sam"},
    "status": "draft",
}


class TestMatches:
    """Filter evaluation."""

    def test_empty_filter_matches_everything(self) -> None:
        assert matches(DOC, None)
        assert matches(DOC, {})

    def test_exact_and_nested_paths(self) -> None:
        assert matches(DOC, {"status": "draft"})
        assert matches(DOC, {"author.name": "Sam"})
        assert not matches(DOC, {"author.name": "Alex"})

    def test_array_field_matches_any_element(self) -> None:
        assert matches(DOC, {"tags": "school"})
        assert matches(DOC, {"tags": {"$in": ["other", "event"]}})
        assert not matches(DOC, {"tags": {"$in": ["other"]}})

    def test_comparison_operators(self) -> None:
        assert matches(DOC, {"views": {"$gte": 10, "$lt": 11}})
        assert not matches(DOC, {"views": {"$gt": 10}})
        assert not matches(DOC, {"missing": {"$gt": 0}})

    def test_regex_with_case_insensitive_option(self) -> None:
        assert matches(DOC, {"title": {"$regex": "spring", "$options": "i"}})
        assert not matches(DOC, {"title": {"$regex": "spring"}})

    def test_logical_operators(self) -> None:
        assert matches(DOC, {"$and": [{"status": "draft"}, {"views": 10}]})
        assert not matches(DOC, {"$and": [{"status": "draft"}, {"views": 11}]})
        assert matches(DOC, {"$or": [{"status": "published"}, {"views": 10}]})
        assert not matches(DOC, {"$nor": [{"status": "draft"}]})

    def test_exists_ne_nin_all(self) -> None:
        assert matches(DOC, {"title": {"$exists": True}})
        assert matches(DOC, {"deleted_at": {"$exists": False}})
        assert matches(DOC, {"status": {"$ne": "published"}})
        assert matches(DOC, {"status": {"$nin": ["published", "archived"]}})
        assert matches(DOC, {"tags": {"$all": ["school", "event"]}})

    def test_none_matches_missing_or_null(self) -> None:
        assert matches(DOC, {"deleted_at": None})
        assert not matches(DOC, {"status": None})

    def test_unsupported_operator_raises(self) -> None:
        with pytest.raises(ValueError, match="Unsupported filter operator"):
            matches(DOC, {"views": {"$where": "1"}})


def test_parse_sort_forms() -> None:
    assert parse_sort("-created_at,title") == [("created_at", -1), ("title", 1)]
    assert parse_sort("-created_at title") == [("created_at", -1), ("title", 1)]
    assert parse_sort({"views": -1}) == [("views", -1)]
    assert parse_sort(None) == []


def test_sort_documents_is_stable_with_missing_first() -> None:
    docs = [
        {"id": "a", "rank": 2},
        {"id": "b"},
        {"id": "c", "rank": 1},
        {"id": "d", "rank": 2},
    ]

    ordered = sort_documents(docs, [("rank", 1)])
    assert [d["id"] for d in ordered] == ["b", "c", "a", "d"]

    descending = sort_documents(docs, [("rank", -1), ("id", 1)])
    assert [d["id"] for d in descending] == ["a", "d", "c", "b"]


def test_projection_inclusion_keeps_id() -> None:
    assert project(DOC, {"title": 1}) == {"id": "p1", "title": "Spring Fair"}
    assert project(DOC, {"author.name": 1}) == {"id": "p1", "author": {"name": "Sam"}}


def test_projection_exclusion() -> None:
    result = project(DOC, parse_projection("-tags,-author"))

    assert "tags" not in result
    assert "author" not in result
    assert result["title"] == "Spring Fair"


def test_projection_returns_copy() -> None:
    result = project(DOC, None)
    result["tags"].append("changed")

    assert DOC["tags"] == ["event", "school"]


def test_parse_projection() -> None:
    assert parse_projection("title, status") == {"title": 1, "status": 1}
    assert parse_projection("-password") == {"password": 0}
    assert parse_projection("") is None


class TestApplyUpdate:
    """Update operators."""

    def test_plain_mapping_is_set(self) -> None:
        updated = apply_update(DOC, {"status": "published"})

        assert updated["status"] == "published"
        assert DOC["status"] == "draft"

    def test_operators(self) -> None:
        updated = apply_update(
            DOC,
            {
                "$inc": {"views": 5},
                "$push": {"tags": "fair"},
                "$unset": {"author": ""},
                "$set": {"meta.pinned": True},
            },
        )

        assert updated["views"] == 15
        assert updated["tags"] == ["event", "school", "fair"]
        assert "author" not in updated
        assert updated["meta"] == {"pinned": True}

    def test_add_to_set_and_pull(self) -> None:
        updated = apply_update(DOC, {"$addToSet": {"tags": {"$each": ["school", "new"]}}})
        assert updated["tags"] == ["event", "school", "new"]

        pulled = apply_update(updated, {"$pull": {"tags": {"$in": ["event", "new"]}}})
        assert pulled["tags"] == ["school"]

    def test_unsupported_operator_raises(self) -> None:
        with pytest.raises(ValueError, match="Unsupported update operator"):
            apply_update(DOC, {"$rename": {"title": "name"}})


def test_run_pipeline_group_and_count() -> None:
    docs = [
        {"id": "1", "status": "draft", "views": 1},
        {"id": "2", "status": "published", "views": 4},
        {"id": "3", "status": "published", "views": 5},
    ]

    grouped = run_pipeline(
        docs,
        [
            {"$match": {"views": {"$gt": 1}}},
            {"$group": {"_id": "$status", "total": {"$sum": "$views"}, "n": {"$sum": 1}}},
        ],
    )
    assert grouped == [{"_id": "published", "total": 9, "n": 2}]

    assert run_pipeline(docs, [{"$match": {"status": "draft"}}, {"$count": "drafts"}]) == [
        {"drafts": 1}
    ]


def test_identifiers() -> None:
    assert is_valid_identifier(new_document_id())
    assert is_valid_identifier("507f1f77bcf86cd799439011")
    assert is_valid_identifier("9b2f1c9e-3c4d-4a5b-8e6f-7a8b9c0d1e2f")
    assert not is_valid_identifier("not-an-id")
    assert not is_valid_identifier("")
