"""Entity type declarations and registry."""

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from backend.app.db.exceptions import UnknownEntityError

OWNER_FIELD = "created_by"


@dataclass(frozen=True)
class NotificationRule:
    """Emit a notification after a write.

    ``title`` may be a fixed string or a callable taking the written document.
    ``condition`` (optional) receives the document and must return True for the
    notification to be emitted.
    """

    action: str
    title: str | Callable[[dict[str, Any]], str]
    condition: Callable[[dict[str, Any]], bool] | None = None

    def render_title(self, document: dict[str, Any]) -> str:
        if callable(self.title):
            return self.title(document)
        return self.title


@dataclass(frozen=True)
class EntityType:
    """Logical schema backed by one physical storage target per tenant.

    Attributes:
        name: Entity type name (e.g. "Post"); the default target base name is
            derived from it
        collection: Explicit base-name override for the physical target
        references: Fields holding identifiers of other entity types
            (field name -> entity type name); used for filter identifier
            matching and populate
        ownership: Records carry ``created_by`` and get ``can_edit``
        name_field: Field used as the human-readable name in activity entries
        private_fields: Fields never returned from queries
        activity: Record create/update/delete in the activity log
        notifications: Notification rules applied after writes
        describe_activity: Builds the activity entry details from the
            document and action; defaults to "Created new Post: Title" style text
    """

    name: str
    collection: str | None = None
    references: dict[str, str] = field(default_factory=dict)
    ownership: bool = False
    name_field: str = "name"
    private_fields: frozenset[str] = frozenset()
    activity: bool = False
    notifications: tuple[NotificationRule, ...] = ()
    describe_activity: Callable[[dict[str, Any], str], str] | None = None

    def __hash__(self) -> int:
        return hash(self.name)

    def is_reference(self, field_name: str) -> bool:
        return field_name in self.references

    def rules_for(self, action: str) -> list[NotificationRule]:
        return [rule for rule in self.notifications if rule.action == action]


class EntityRegistry:
    """Registry of entity types by name.

    Lookups are case-insensitive so populate specs may use either "User" or
    "user".
    """

    def __init__(self, entities: list[EntityType] | None = None) -> None:
        self._entities: dict[str, EntityType] = {}
        for entity in entities or []:
            self.register(entity)

    def register(self, entity: EntityType) -> EntityType:
        """Register an entity type; re-registering the same name replaces it."""
        self._entities[entity.name.lower()] = entity
        return entity

    def get(self, name: str) -> EntityType:
        """Get entity type by name.

        Raises:
            UnknownEntityError: If no entity type has this name
        """
        entity = self._entities.get(name.lower())
        if entity is None:
            raise UnknownEntityError(name)
        return entity

    def find(self, name: str | None) -> EntityType | None:
        if not name:
            return None
        return self._entities.get(name.lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._entities

    def __iter__(self) -> Iterator[EntityType]:
        return iter(self._entities.values())
