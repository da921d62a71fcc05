"""Messages exchanged between clients and servers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar, Union

from rpcweave.context import Context

T = TypeVar("T")


class ErrorKind(enum.Enum):
    """The category of failure a server reports when it aborts a request."""

    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"
    CONNECTION_REFUSED = "ConnectionRefused"
    CONNECTION_RESET = "ConnectionReset"
    CONNECTION_ABORTED = "ConnectionAborted"
    NOT_CONNECTED = "NotConnected"
    ADDR_IN_USE = "AddrInUse"
    ADDR_NOT_AVAILABLE = "AddrNotAvailable"
    BROKEN_PIPE = "BrokenPipe"
    ALREADY_EXISTS = "AlreadyExists"
    WOULD_BLOCK = "WouldBlock"
    INVALID_INPUT = "InvalidInput"
    INVALID_DATA = "InvalidData"
    TIMED_OUT = "TimedOut"
    WRITE_ZERO = "WriteZero"
    INTERRUPTED = "Interrupted"
    UNSUPPORTED = "Unsupported"
    UNEXPECTED_EOF = "UnexpectedEof"
    OUT_OF_MEMORY = "OutOfMemory"
    OTHER = "Other"

    def __str__(self) -> str:
        return self.value


@dataclass(eq=True, unsafe_hash=True)
class ServerError(Exception):
    """The server aborted the request early, e.g. due to request throttling."""

    kind: ErrorKind
    detail: str

    def __post_init__(self) -> None:
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.kind}: {self.detail}"


@dataclass
class Request(Generic[T]):
    """A request from a client to a server."""

    context: Context
    id: int
    message: T

    def deadline(self) -> datetime:
        """Return the deadline for this request."""
        return self.context.deadline


@dataclass
class Cancel:
    """A command to cancel an in-flight request, sent when a response is abandoned."""

    request_id: int
    trace_context: Any = field(default=None)


ClientMessage = Union[Request, Cancel]


@dataclass(frozen=True)
class Response(Generic[T]):
    """A response from a server to a client.

    ``message`` holds the response body, or a :class:`ServerError` if the
    request failed.
    """

    request_id: int
    message: Union[T, ServerError]

    @property
    def is_error(self) -> bool:
        """True if the server aborted the request."""
        return isinstance(self.message, ServerError)