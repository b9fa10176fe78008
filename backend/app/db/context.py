"""Request context for tenancy enforcement.

The context for one inbound operation (tenant id + acting user) is bound with
``run``/``arun``/``bind`` and read anywhere below with ``get``/``current``.
Binding uses a ``ContextVar``, so every asyncio task sees its own value and
tasks spawned inside an operation inherit the operation's binding.
"""

from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class ActingUser:
    """Authenticated user performing the operation.

    Roles are role titles, already resolved by the auth layer.
    """

    id: str
    roles: tuple[str, ...] = ()

    def has_role(self, title: str) -> bool:
        return any(role.lower() == title.lower() for role in self.roles)


@dataclass(frozen=True)
class RequestContext:
    """Request context containing tenant and user identity.

    Used to pick the physical storage target and to authorize mutations.
    """

    tenant_id: str | None = None
    user: ActingUser | None = None


_current: ContextVar[RequestContext | None] = ContextVar("request_context", default=None)


def _coerce(ctx: RequestContext | str | None) -> RequestContext | None:
    if isinstance(ctx, str):
        return RequestContext(tenant_id=ctx)
    return ctx


@contextmanager
def bind(ctx: RequestContext | str | None) -> Iterator[RequestContext | None]:
    """Bind ``ctx`` for the extent of the ``with`` block."""
    bound = _coerce(ctx)
    token = _current.set(bound)
    try:
        yield bound
    finally:
        _current.reset(token)


def run(ctx: RequestContext | str | None, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call ``fn`` with ``ctx`` bound as the ambient request context."""
    with bind(ctx):
        return fn(*args, **kwargs)


async def arun(
    ctx: RequestContext | str | None,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await ``fn`` with ``ctx`` bound as the ambient request context.

    The binding survives every suspension point inside ``fn`` and is inherited
    by tasks created while it is active.
    """
    with bind(ctx):
        return await fn(*args, **kwargs)


def current() -> RequestContext | None:
    """Return the bound request context, or None outside any binding."""
    return _current.get()


def get() -> str | None:
    """Return the bound tenant id, or None when unset."""
    ctx = _current.get()
    return ctx.tenant_id if ctx is not None else None
