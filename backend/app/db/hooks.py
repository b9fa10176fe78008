"""Entity lifecycle hooks: activity log and notifications.

Repositories emit a ``LifecycleEvent`` after each successful create, update or
delete. Listeners run as background asyncio tasks in a copy of the emitting
task's context, so they write to the same tenant. A failing listener is
logged and counted; it never fails the write that triggered it.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from backend.app.db.context import RequestContext
from backend.app.db.documents import Document
from backend.app.db.entities import EntityType
from backend.app.utils.metrics import metrics

if TYPE_CHECKING:
    from backend.app.db.resolver import StorageTargetResolver

logger = logging.getLogger(__name__)

ACTIVITY_ENTITY = "Activity"
NOTIFICATION_ENTITY = "Notification"

Listener = Callable[["LifecycleEvent"], Awaitable[None]]


@dataclass(frozen=True)
class LifecycleEvent:
    """A completed write."""

    action: str  # create | update | delete
    entity: EntityType
    document: Document
    ctx: RequestContext


def _listener_name(listener: Listener) -> str:
    return getattr(listener, "name", None) or getattr(listener, "__name__", type(listener).__name__)


class LifecycleHooks:
    """Dispatches lifecycle events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Listener:
        self._listeners.append(listener)
        return listener

    def emit(self, event: LifecycleEvent) -> None:
        """Schedule every listener for ``event`` without waiting for it."""
        for listener in self._listeners:
            task = asyncio.get_running_loop().create_task(self._dispatch(listener, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _dispatch(self, listener: Listener, event: LifecycleEvent) -> None:
        name = _listener_name(listener)
        try:
            await listener(event)
        except Exception as e:
            metrics.inc_hook_failure(name)
            logger.error(
                f"Lifecycle listener {name} failed for {event.action} "
                f"{event.entity.name} {event.document.get('id')}: {e}",
                exc_info=True,
                extra={
                    "structured": {
                        "listener": name,
                        "action": event.action,
                        "entity": event.entity.name,
                        "tenant_id": event.ctx.tenant_id,
                    }
                },
            )

    async def drain(self) -> None:
        """Wait until all scheduled listeners (and those they schedule) finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


def _performer(event: LifecycleEvent) -> str:
    document = event.document
    for field_name in ("modified_by", "created_by", "author"):
        if document.get(field_name):
            return str(document[field_name])
    if event.ctx.user is not None:
        return event.ctx.user.id
    return str(document.get("id"))


class ActivityTracker:
    """Records writes on activity-tracked entity types in the activity log."""

    name = "activity_tracker"

    _VERBS = {"create": "Created new", "update": "Updated", "delete": "Deleted"}

    def __init__(self, resolver: "StorageTargetResolver") -> None:
        self.resolver = resolver

    def details(self, event: LifecycleEvent, entity_name: str) -> str:
        if event.entity.describe_activity is not None and event.action != "delete":
            return event.entity.describe_activity(event.document, event.action)
        return f"{self._VERBS[event.action]} {event.entity.name}: {entity_name}"

    async def __call__(self, event: LifecycleEvent) -> None:
        if not event.entity.activity:
            return

        document = event.document
        entity_name = document.get(event.entity.name_field) or f"{event.entity.name} {document.get('id')}"
        activity = {
            "action_type": event.action,
            "entity_type": event.entity.name,
            "entity_id": document.get("id"),
            "entity_name": entity_name,
            "performed_by": _performer(event),
            "details": self.details(event, entity_name),
        }
        await self.resolver.repository(ACTIVITY_ENTITY, event.ctx).create(activity)


class NotificationBroadcaster:
    """In-process fan-out of notification messages to subscriber queues."""

    def __init__(self, maxsize: int = 100) -> None:
        self.maxsize = maxsize
        self._queues: set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._queues.discard(queue)

    def publish(self, message: dict[str, Any]) -> int:
        """Deliver ``message`` to every subscriber.

        Returns:
            Number of subscribers the message was delivered to
        """
        delivered = 0
        for queue in list(self._queues):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Notification subscriber queue full, dropping message")
        return delivered


class NotificationEmitter:
    """Writes notification records for entity notification rules."""

    name = "notification_emitter"

    def __init__(
        self, resolver: "StorageTargetResolver", broadcaster: NotificationBroadcaster | None = None
    ) -> None:
        self.resolver = resolver
        self.broadcaster = broadcaster

    async def __call__(self, event: LifecycleEvent) -> None:
        for rule in event.entity.rules_for(event.action):
            if rule.condition is not None and not rule.condition(event.document):
                continue

            notification = await self.resolver.repository(NOTIFICATION_ENTITY, event.ctx).create(
                {
                    "notification_type": event.entity.name,
                    "title": rule.render_title(event.document),
                    "content": "",
                    "sent_at": datetime.now(timezone.utc).isoformat(),
                    "distributor": "system",
                }
            )
            if self.broadcaster is not None:
                self.broadcaster.publish({"type": "NEW_NOTIFICATION", "payload": notification})


def install_default_listeners(
    hooks: LifecycleHooks,
    resolver: "StorageTargetResolver",
    broadcaster: NotificationBroadcaster | None = None,
) -> None:
    """Subscribe the activity tracker and notification emitter."""
    hooks.subscribe(ActivityTracker(resolver))
    hooks.subscribe(NotificationEmitter(resolver, broadcaster))
