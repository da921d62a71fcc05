"""Request context carrying a deadline and trace information.

The context travels from client to server and is used by the server to
enforce response deadlines.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional

_DEFAULT_TIMEOUT = timedelta(seconds=10)


def ten_seconds_from_now() -> datetime:
    """Return the default deadline: ten seconds from now, in UTC."""
    return datetime.now(timezone.utc) + _DEFAULT_TIMEOUT


@dataclass(frozen=True)
class Context:
    """Request-scoped information such as the deadline and trace context.

    A context should not be stored in a server implementation, because it
    differs for every request.
    """

    deadline: datetime = field(default_factory=ten_seconds_from_now)
    trace_context: Any = None

    @classmethod
    def current(cls) -> "Context":
        """Return the context of the active request, or a fresh default one."""
        active = _active_context.get()
        if active is not None:
            return active
        return cls()


_active_context: contextvars.ContextVar[Optional[Context]] = contextvars.ContextVar(
    "rpcweave_active_context", default=None
)


def current() -> Context:
    """Return the context of the active request, or a fresh default one."""
    return Context.current()


@contextmanager
def use_context(context: Context) -> Iterator[Context]:
    """Make ``context`` the active request context for the enclosed block."""
    token = _active_context.set(context)
    try:
        yield context
    finally:
        _active_context.reset(token)