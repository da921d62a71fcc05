"""Request dispatch: moves requests from a :class:`Channel` onto a transport.

A transport is any object with ``async send(message)`` and
``async receive()``; ``receive`` returns ``None`` once the peer has closed
its side. If the transport also has ``async flush()``, it is called whenever
no more messages are waiting to be written.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from rpcweave.channel import Channel, Config, DispatchRequest
from rpcweave.context import Context
from rpcweave.in_flight import InFlightRequests
from rpcweave.messages import Cancel, Request, Response

logger = logging.getLogger(__name__)


class _Transport(Protocol):
    async def send(self, message: Any) -> None:
        ...

    async def receive(self) -> Optional[Response]:
        ...


class ChannelError(Exception):
    """A critical transport failure that disconnects the client."""

    _MESSAGES = {
        "read": "could not read from the transport",
        "write": "could not write to the transport",
        "flush": "could not flush the transport",
    }

    def __init__(self, operation: str, source: Optional[BaseException] = None) -> None:
        try:
            message = self._MESSAGES[operation]
        except KeyError:
            raise ValueError(f"unknown transport operation {operation!r}") from None
        super().__init__(message)
        self.operation = operation
        self.source = source


class RequestDispatch:
    """Writes requests to the wire, handles cancellations and routes responses."""

    def __init__(
        self, transport: _Transport, channel: Channel, config: Optional[Config] = None
    ) -> None:
        self.transport = transport
        self.config = config or Config()
        self.pending_requests = channel.to_dispatch
        self.canceled_requests = channel.cancellations
        self.in_flight_requests = InFlightRequests()
        self._completions: Dict[int, "asyncio.Future[Any]"] = {}
        self._capacity = asyncio.Event()

    def __repr__(self) -> str:
        return f"RequestDispatch(in_flight={len(self.in_flight_requests)})"

    async def next_request(self) -> Optional[DispatchRequest]:
        """Return the next live pending request, or ``None`` once the channel is closed.

        Waits while the in-flight limit is reached. Requests whose callers
        have already given up are skipped.
        """
        while len(self.in_flight_requests) >= self.config.max_in_flight_requests:
            logger.info(
                "At in-flight request capacity (%d/%d).",
                len(self.in_flight_requests),
                self.config.max_in_flight_requests,
            )
            self._capacity.clear()
            await self._capacity.wait()
        while True:
            request = await self.pending_requests.get()
            if request is None:
                return None
            if request.response_completion.done():
                logger.info("AbortRequest id=%d", request.request_id)
                continue
            return request

    async def next_cancellation(self) -> Optional[Tuple[Context, int]]:
        """Return the context and ID of the next cancelled in-flight request.

        Cancellations for requests no longer in flight are skipped. Returns
        ``None`` once the channel is closed.
        """
        while True:
            request_id = await self.canceled_requests.get()
            if request_id is None:
                return None
            ctx = self.in_flight_requests.cancel_request(request_id)
            if ctx is not None:
                self._release(request_id)
                return ctx, request_id

    async def write_request(self) -> bool:
        """Write the next pending request; return False once the channel is closed."""
        while True:
            request = await self.next_request()
            if request is None:
                return False
            if await self._send_request(request):
                return True

    async def write_cancel(self) -> bool:
        """Write the next cancellation; return False once the channel is closed."""
        cancellation = await self.next_cancellation()
        if cancellation is None:
            return False
        ctx, request_id = cancellation
        await self._send_cancel(ctx, request_id)
        return True

    def complete(self, response: Response) -> bool:
        """Hand a server response to its caller; return True if the request was in flight."""
        found = self.in_flight_requests.complete_request(response)
        if found:
            logger.info("ReceiveResponse id=%d", response.request_id)
            self._release(response.request_id)
        else:
            logger.debug("No in-flight request found for request_id = %d.", response.request_id)
        return found

    async def run(self) -> None:
        """Drive the client until the read half or both write halves close.

        Raises :class:`ChannelError` if the transport fails. When it returns or
        raises, every caller still waiting sees the client as disconnected.
        """
        reading: Optional[asyncio.Task] = None
        requesting: Optional[asyncio.Task] = None
        cancelling: Optional[asyncio.Task] = None
        requests_open = cancels_open = True
        try:
            while True:
                self._expire()
                if not requests_open and not cancels_open and self.in_flight_requests.is_empty():
                    await self._flush()
                    logger.info("Shutdown: write half closed, and no requests in flight.")
                    return
                if reading is None:
                    reading = asyncio.ensure_future(self._receive())
                if requests_open and requesting is None:
                    requesting = asyncio.ensure_future(self.next_request())
                if cancels_open and cancelling is None:
                    cancelling = asyncio.ensure_future(self.next_cancellation())
                waiting = [t for t in (reading, requesting, cancelling) if t is not None]
                done, _ = await asyncio.wait(
                    waiting,
                    timeout=self._time_to_next_deadline(),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                wrote = False
                if requesting is not None and requesting in done:
                    request = requesting.result()
                    requesting = None
                    if request is None:
                        requests_open = False
                    else:
                        wrote = await self._send_request(request) or wrote
                if cancelling is not None and cancelling in done:
                    cancellation = cancelling.result()
                    cancelling = None
                    if cancellation is None:
                        cancels_open = False
                    else:
                        await self._send_cancel(*cancellation)
                        wrote = True
                if reading in done:
                    response = reading.result()
                    reading = None
                    if response is None:
                        logger.info("Shutdown: read half closed, so shutting down.")
                        return
                    self.complete(response)
                if wrote and not len(self.pending_requests) and not len(self.canceled_requests):
                    await self._flush()
        finally:
            await self._shutdown((reading, requesting, cancelling))

    async def _send_request(self, request: DispatchRequest) -> bool:
        if request.response_completion.done():
            logger.info("AbortRequest id=%d", request.request_id)
            return False
        ctx = request.ctx
        # Track the request before writing it, so a cancellation that arrives
        # while the write is in progress still finds it.
        self.in_flight_requests.insert_request(
            request.request_id, ctx, request.response_completion
        )
        self._completions[request.request_id] = request.response_completion
        message = Request(
            context=Context(deadline=ctx.deadline, trace_context=ctx.trace_context),
            id=request.request_id,
            message=request.request,
        )
        await self._send(message)
        logger.info(
            "SendRequest %s id=%d deadline=%s",
            request.request_name,
            request.request_id,
            ctx.deadline.isoformat(),
        )
        return True

    async def _send_cancel(self, ctx: Context, request_id: int) -> None:
        await self._send(Cancel(request_id=request_id, trace_context=ctx.trace_context))
        logger.info("CancelRequest id=%d", request_id)

    async def _send(self, message: Any) -> None:
        try:
            await self.transport.send(message)
        except Exception as error:
            raise ChannelError("write", error) from error

    async def _receive(self) -> Optional[Response]:
        try:
            return await self.transport.receive()
        except Exception as error:
            raise ChannelError("read", error) from error

    async def _flush(self) -> None:
        flush = getattr(self.transport, "flush", None)
        if flush is None:
            return
        try:
            await flush()
        except Exception as error:
            raise ChannelError("flush", error) from error

    def _release(self, request_id: int) -> None:
        self._completions.pop(request_id, None)
        self._capacity.set()

    def _expire(self) -> None:
        for request_id in self.in_flight_requests.pop_expired():
            logger.error("DeadlineExceeded id=%d", request_id)
            self._release(request_id)

    def _time_to_next_deadline(self) -> Optional[float]:
        deadline = self.in_flight_requests.next_deadline()
        if deadline is None:
            return None
        return max(0.0, (deadline - datetime.now(timezone.utc)).total_seconds())

    async def _shutdown(self, tasks: Iterable[Optional[asyncio.Task]]) -> None:
        running = [task for task in tasks if task is not None]
        for task in running:
            task.cancel()
        results = await asyncio.gather(*running, return_exceptions=True)
        abandoned: List["asyncio.Future[Any]"] = [
            result.response_completion
            for result in results
            if isinstance(result, DispatchRequest)
        ]
        abandoned.extend(self._completions.values())
        self._completions.clear()
        while True:
            try:
                request = self.pending_requests.get_nowait()
            except asyncio.QueueEmpty:
                break
            if request is None:
                break
            abandoned.append(request.response_completion)
        for completion in abandoned:
            completion.cancel()
        self.pending_requests.close_receiver()
        self.canceled_requests.close_receiver()


@dataclass
class NewClient:
    """A client channel together with the dispatch that must run for it to work."""

    client: Channel
    dispatch: RequestDispatch
    task: Optional["asyncio.Task[None]"] = field(default=None, init=False)

    def __repr__(self) -> str:
        return "NewClient"

    def spawn(self) -> Channel:
        """Run the dispatch in the background and return the client channel."""
        self.task = asyncio.get_running_loop().create_task(self._drive())
        return self.client

    async def _drive(self) -> None:
        try:
            await self.dispatch.run()
        except ChannelError as error:
            logger.warning("Connection broken: %r", error, exc_info=error)


def new_client(config: Optional[Config], transport: _Transport) -> NewClient:
    """Return a channel and the dispatch that serves its requests over ``transport``."""
    config = config or Config()
    channel = Channel(config)
    return NewClient(channel, RequestDispatch(transport, channel, config))