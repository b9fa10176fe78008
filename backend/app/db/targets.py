"""Physical storage target naming.

Names are a persisted contract: documents already live under them, so any
change to these rules is a data migration.
"""

from backend.app.db.entities import EntityType

VOWELS = frozenset("aeiou")


def pluralize_collection_name(name: str) -> str:
    """Pluralize a lower-cased entity name.

    Consonant + "y" becomes "ies"; anything not already ending in "s" gets an
    "s"; names ending in "s" are left alone.
    """
    if name.endswith("y") and len(name) > 1 and name[-2].lower() not in VOWELS:
        return name[:-1] + "ies"
    if not name.endswith("s"):
        return name + "s"
    return name


def resolve_base_name(entity: EntityType) -> str:
    """Return the explicit collection override or the pluralized entity name."""
    if entity.collection:
        return entity.collection
    return pluralize_collection_name(entity.name.lower())


def physical_target_name(entity: EntityType, tenant_id: str | None) -> str:
    """Compute the physical target for ``entity`` under ``tenant_id``.

    Args:
        entity: Entity type
        tenant_id: Bound tenant id, or None for untenanted access

    Returns:
        ``{tenant_id}_{base}`` when a tenant is bound, else ``{base}``
    """
    base = resolve_base_name(entity)
    if tenant_id:
        return f"{tenant_id}_{base}"
    return base
