"""The client side handle that sends requests to the dispatch task."""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Generic, List, Optional, TypeVar

from rpcweave.context import Context
from rpcweave.in_flight import DeadlineExceededError
from rpcweave.messages import ServerError

T = TypeVar("T")


@dataclass
class Config:
    """Settings that control the behaviour of the client."""

    max_in_flight_requests: int = 1_000
    pending_request_buffer: int = 100


class RpcError(Exception):
    """A cross-cutting failure that can occur during any RPC."""


class Disconnected(RpcError):
    """The client disconnected from the server."""

    def __init__(self) -> None:
        super().__init__("the client disconnected from the server")


class DeadlineExceeded(RpcError):
    """The request exceeded its deadline."""

    def __init__(self) -> None:
        super().__init__("the request exceeded its deadline")


class ServerAborted(RpcError):
    """The server aborted request processing."""

    def __init__(self, error: ServerError) -> None:
        super().__init__("the server aborted request processing")
        self.error = error


@dataclass
class DispatchRequest:
    """A request handed from a :class:`Channel` to the dispatch task."""

    ctx: Context
    request_id: int
    request: Any
    response_completion: "asyncio.Future[Any]"
    request_name: str = ""


class _Mailbox(Generic[T]):
    """A FIFO that either side can close.

    Senders see :class:`Disconnected` once the receiver has gone; the
    receiver sees ``None`` once senders are gone and the queue is drained.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._items: Deque[T] = deque()
        self._maxsize = maxsize
        self._closed = False
        self._receiver_closed = False
        self._getters: List[asyncio.Future] = []
        self._putters: List[asyncio.Future] = []

    def __len__(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def receiver_closed(self) -> bool:
        return self._receiver_closed

    @staticmethod
    def _wake(waiters: List[asyncio.Future]) -> None:
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        waiters.clear()

    def _full(self) -> bool:
        return bool(self._maxsize) and len(self._items) >= self._maxsize

    async def put(self, item: T) -> None:
        while True:
            if self._receiver_closed or self._closed:
                raise Disconnected()
            if not self._full():
                break
            waiter = asyncio.get_running_loop().create_future()
            self._putters.append(waiter)
            await waiter
        self._items.append(item)
        self._wake(self._getters)

    def put_nowait(self, item: T) -> bool:
        """Enqueue without waiting; return False if the item was dropped."""
        if self._receiver_closed or self._closed or self._full():
            return False
        self._items.append(item)
        self._wake(self._getters)
        return True

    async def get(self) -> Optional[T]:
        while not self._items:
            if self._closed:
                return None
            waiter = asyncio.get_running_loop().create_future()
            self._getters.append(waiter)
            await waiter
        item = self._items.popleft()
        self._wake(self._putters)
        return item

    def get_nowait(self) -> Optional[T]:
        """Dequeue an item, ``None`` if closed and drained, or raise ``asyncio.QueueEmpty``."""
        if self._items:
            item = self._items.popleft()
            self._wake(self._putters)
            return item
        if self._closed:
            return None
        raise asyncio.QueueEmpty()

    def close(self) -> None:
        """Close the sending side."""
        self._closed = True
        self._wake(self._getters)
        self._wake(self._putters)

    def close_receiver(self) -> None:
        """Close the receiving side; pending items are discarded."""
        self._receiver_closed = True
        self._items.clear()
        self._wake(self._putters)


class Channel:
    """Sends requests to the dispatch task and waits for their responses.

    Shallow copies share the same mailboxes and request-ID counter.
    """

    def __init__(self, config: Optional[Config] = None) -> None:
        config = config or Config()
        self.to_dispatch: _Mailbox[DispatchRequest] = _Mailbox(config.pending_request_buffer)
        self.cancellations: _Mailbox[int] = _Mailbox()
        self._request_ids = itertools.count()

    def __repr__(self) -> str:
        return f"Channel(pending={len(self.to_dispatch)})"

    async def call(self, ctx: Context, request_name: str, request: Any) -> Any:
        """Send ``request`` and return the response body.

        Raises :class:`Disconnected`, :class:`DeadlineExceeded` or
        :class:`ServerAborted`. If the call is abandoned before a response
        arrives, a cancellation is sent for the request.
        """
        request_id = next(self._request_ids)
        response = asyncio.get_running_loop().create_future()
        try:
            await self.to_dispatch.put(
                DispatchRequest(ctx, request_id, request, response, request_name)
            )
            await asyncio.wait((response,))
        except BaseException:
            # Close the receiver before cancelling, so dispatch skips the
            # request even if it has not yet seen it.
            response.cancel()
            self.cancel(request_id)
            raise
        return self._unwrap(response)

    @staticmethod
    def _unwrap(response: "asyncio.Future[Any]") -> Any:
        if response.cancelled():
            raise Disconnected()
        error = response.exception()
        if isinstance(error, DeadlineExceededError):
            raise DeadlineExceeded() from error
        if error is not None:
            raise error
        message = response.result().message
        if isinstance(message, ServerError):
            raise ServerAborted(message) from message
        return message

    def cancel(self, request_id: int) -> None:
        """Ask the dispatch task to cancel the request with ``request_id``."""
        self.cancellations.put_nowait(request_id)

    def close(self) -> None:
        """Stop sending requests; the dispatch task winds down once drained."""
        self.to_dispatch.close()
        self.cancellations.close()