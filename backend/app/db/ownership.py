"""Ownership authorization for records that carry a creator."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from backend.app.db.context import ActingUser, RequestContext
from backend.app.db.documents import Document
from backend.app.db.entities import OWNER_FIELD, EntityType
from backend.app.db.exceptions import AuthorizationError

if TYPE_CHECKING:
    from backend.app.db.resolver import StorageTargetResolver

logger = logging.getLogger(__name__)

USER_ENTITY = "User"
ROLE_ENTITY = "Role"
CAN_EDIT_FIELD = "can_edit"


def creator_of(record: Document) -> str | None:
    """Return the creator id of ``record``, also when the creator was populated."""
    creator = record.get(OWNER_FIELD)
    if isinstance(creator, dict):
        creator = creator.get("id")
    return str(creator) if creator else None


class OwnershipResolver:
    """Decides whether the acting user may modify a record.

    Rules, in order:
    - a record without a creator is editable
    - without an acting user (system or maintenance work) it is editable
    - the creator may always edit
    - otherwise both the creator and the acting user must hold the admin role

    Creators are looked up in the same tenant as the operation. A creator that
    cannot be resolved is treated as not editable.
    """

    def __init__(self, resolver: "StorageTargetResolver", admin_role_title: str = "admin") -> None:
        self.resolver = resolver
        self.admin_role_title = admin_role_title

    async def creator_roles(
        self,
        creator_id: str,
        ctx: RequestContext,
        cache: dict[str, tuple[str, ...] | None] | None = None,
    ) -> tuple[str, ...] | None:
        """Resolve a creator's role titles in the tenant of ``ctx``.

        Args:
            creator_id: User id stored on the record
            ctx: Request context selecting the tenant
            cache: Per-call memo shared across records of one result page

        Returns:
            Role titles, or None when the creator cannot be resolved
        """
        if cache is not None and creator_id in cache:
            return cache[creator_id]

        roles = await self._load_roles(creator_id, ctx)
        if cache is not None:
            cache[creator_id] = roles
        return roles

    async def _load_roles(self, creator_id: str, ctx: RequestContext) -> tuple[str, ...] | None:
        registry = self.resolver.registry
        user_entity = registry.find(USER_ENTITY)
        if user_entity is None:
            logger.warning(f"Cannot resolve creator {creator_id}: no {USER_ENTITY} entity registered")
            return None

        user = await self.resolver.repository(user_entity, ctx).find_by_id(creator_id)
        if user is None:
            logger.info(f"Creator {creator_id} not found in tenant {ctx.tenant_id}")
            return None

        entries = [str(role) for role in user.get("roles") or []]
        if not entries:
            return ()

        # Role entries are either Role ids or literal titles
        role_entity = registry.find(ROLE_ENTITY)
        if role_entity is None:
            return tuple(entries)

        found = await self.resolver.repository(role_entity, ctx).find({"id": {"$in": entries}})
        titles_by_id = {role["id"]: role.get("title", "") for role in found}
        return tuple(titles_by_id.get(entry, entry) for entry in entries)

    def _is_admin(self, roles: tuple[str, ...]) -> bool:
        admin = self.admin_role_title.lower()
        return any(role.lower() == admin for role in roles)

    async def can_edit(
        self,
        record: Document,
        acting_user: ActingUser | None,
        ctx: RequestContext,
        cache: dict[str, tuple[str, ...] | None] | None = None,
    ) -> bool:
        """Check whether ``acting_user`` may modify ``record``."""
        creator_id = creator_of(record)
        if creator_id is None:
            return True
        if acting_user is None:
            return True
        if creator_id == acting_user.id:
            return True
        if not self._is_admin(acting_user.roles):
            return False

        creator_roles = await self.creator_roles(creator_id, ctx, cache)
        if creator_roles is None:
            return False
        return self._is_admin(creator_roles)

    async def ensure_can_edit(
        self, record: Document, entity: EntityType, ctx: RequestContext
    ) -> None:
        """Gate a modification.

        Raises:
            AuthorizationError: If the acting user may not modify ``record``
        """
        if not await self.can_edit(record, ctx.user, ctx):
            logger.warning(
                f"Denied update of {entity.name} {record.get('id')}",
                extra={
                    "structured": {
                        "entity": entity.name,
                        "record_id": record.get("id"),
                        "tenant_id": ctx.tenant_id,
                        "user_id": ctx.user.id if ctx.user else None,
                    }
                },
            )
            raise AuthorizationError(entity.name, record.get("id"))

    async def augment(
        self, records: list[Document], acting_user: ActingUser | None, ctx: RequestContext
    ) -> list[Document]:
        """Add ``can_edit`` to records and to owned sub-documents.

        Sub-documents are elements of array fields whose elements carry a
        creator. Records are modified in place and returned.
        """
        cache: dict[str, tuple[str, ...] | None] = {}
        targets: list[dict[str, Any]] = []
        for record in records:
            targets.append(record)
            for value in record.values():
                if isinstance(value, list):
                    targets.extend(
                        item for item in value if isinstance(item, dict) and OWNER_FIELD in item
                    )

        # Warm the creator cache once per distinct creator before fanning out
        if acting_user is not None and self._is_admin(acting_user.roles):
            creators = {creator_of(target) for target in targets} - {None, acting_user.id}
            await asyncio.gather(*(self.creator_roles(c, ctx, cache) for c in creators if c))

        verdicts = await asyncio.gather(
            *(self.can_edit(target, acting_user, ctx, cache) for target in targets)
        )
        for target, verdict in zip(targets, verdicts):
            target[CAN_EDIT_FIELD] = verdict
        return records
