"""Data-access exceptions."""


class DataAccessError(Exception):
    """Base exception for the tenant-aware data-access layer."""

    pass


class InvalidTargetError(DataAccessError, ValueError):
    """Raised by a store when a physical target name cannot be used."""

    def __init__(self, target: str, reason: str) -> None:
        self.target = target
        super().__init__(f"Invalid storage target '{target}': {reason}")


class UnknownEntityError(DataAccessError, KeyError):
    """Raised when an entity type is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown entity type '{name}'")

    def __str__(self) -> str:
        return str(self.args[0])


class AuthorizationError(DataAccessError):
    """Raised when the acting user may not modify a record."""

    def __init__(self, entity: str, record_id: str | None) -> None:
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"Not authorized to modify {entity} {record_id}")
