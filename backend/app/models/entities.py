"""School platform entity declarations."""

from typing import Any

from backend.app.db.entities import EntityRegistry, EntityType, NotificationRule

POST_PUBLISHED = "published"
POST_ARCHIVED = "archived"


def _post_update_title(doc: dict[str, Any]) -> str:
    if doc.get("status") == POST_PUBLISHED:
        return f'Post "{doc.get("title")}" has been published'
    return f'Post "{doc.get("title")}" has been updated'


def _post_activity(doc: dict[str, Any], action: str) -> str:
    title = doc.get("title")
    if doc.get("status") == POST_PUBLISHED and doc.get("published_at"):
        return f"Published post: {title}"
    if doc.get("status") == POST_ARCHIVED:
        return f"Archived post: {title}"
    return f"Created new post: {title}" if action == "create" else f"Updated post: {title}"


def _taxi_activity(doc: dict[str, Any], action: str) -> str:
    name = doc.get("name")
    return f"Created new class: {name}" if action == "create" else f"Updated class: {name}"


User = EntityType(
    name="User",
    references={
        "customers": "Customer",
        "roles": "Role",
        "taxis": "Taxi",
        "branches": "Customer",
        "default_branch": "Customer",
    },
    name_field="username",
    private_fields=frozenset({"password"}),
    activity=True,
)

Role = EntityType(name="Role", name_field="title")

Customer = EntityType(
    name="Customer",
    references={
        "parent_customer": "Customer",
        "administrator": "User",
        "manager": "User",
    },
    ownership=True,
    notifications=(
        NotificationRule("create", lambda doc: f"New Customer {doc.get('name')} has been created"),
    ),
)

Taxi = EntityType(
    name="Taxi",
    references={"branch": "Customer", "users": "User"},
    ownership=True,
    activity=True,
    notifications=(
        NotificationRule("create", lambda doc: f"New Taxi {doc.get('name')} has been created"),
    ),
    describe_activity=_taxi_activity,
)

Classroom = EntityType(
    name="Classroom",
    references={"branch": "Customer"},
    ownership=True,
)

Session = EntityType(
    name="Session",
    references={
        "taxi": "Taxi",
        "classroom": "Classroom",
        "students": "User",
        "teachers": "User",
        "parent_id": "Session",
    },
    ownership=True,
    notifications=(
        NotificationRule("create", lambda doc: f"New Session for {doc.get('start_date')} has been created"),
    ),
)

Post = EntityType(
    name="Post",
    references={"author": "User"},
    ownership=True,
    name_field="title",
    activity=True,
    notifications=(
        NotificationRule("create", lambda doc: f'New Post "{doc.get("title")}" has been created'),
        NotificationRule("update", _post_update_title),
    ),
    describe_activity=_post_activity,
)

Activity = EntityType(name="Activity", references={"performed_by": "User"}, name_field="entity_name")

Notification = EntityType(name="Notification", name_field="title")

AssignmentStudent = EntityType(
    name="AssignmentStudent",
    collection="assignments-students",
    references={"student": "User", "taxi": "Taxi"},
    ownership=True,
)

AssignmentStaff = EntityType(
    name="AssignmentStaff",
    collection="assignments-staff",
    references={"staff": "User", "taxi": "Taxi"},
    ownership=True,
)

File = EntityType(name="File", collection="File", ownership=True)

SCHOOL_ENTITIES = [
    User,
    Role,
    Customer,
    Taxi,
    Classroom,
    Session,
    Post,
    Activity,
    Notification,
    AssignmentStudent,
    AssignmentStaff,
    File,
]


def build_registry() -> EntityRegistry:
    """Registry holding every school platform entity type."""
    return EntityRegistry(SCHOOL_ENTITIES)
