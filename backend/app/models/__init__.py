"""Models package - re-exports for convenience."""

from backend.app.models.entities import (
    SCHOOL_ENTITIES,
    Activity,
    AssignmentStaff,
    AssignmentStudent,
    Classroom,
    Customer,
    File,
    Notification,
    Post,
    Role,
    Session,
    Taxi,
    User,
    build_registry,
)

__all__ = [
    "SCHOOL_ENTITIES",
    "build_registry",
    # Entity types
    "User",
    "Role",
    "Customer",
    "Taxi",
    "Classroom",
    "Session",
    "Post",
    "Activity",
    "Notification",
    "AssignmentStudent",
    "AssignmentStaff",
    "File",
]
