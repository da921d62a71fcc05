import asyncio
import copy

import pytest

from rpcweave.channel import (
    Channel,
    Config,
    DeadlineExceeded,
    Disconnected,
    DispatchRequest,
    RpcError,
    ServerAborted,
)
from rpcweave.context import Context
from rpcweave.in_flight import DeadlineExceededError
from rpcweave.messages import ErrorKind, Response, ServerError


def test_config_defaults():
    config = Config()
    assert config.max_in_flight_requests == 1_000
    assert config.pending_request_buffer == 100


def test_error_messages():
    assert str(Disconnected()) == "the client disconnected from the server"
    assert str(DeadlineExceeded()) == "the request exceeded its deadline"
    error = ServerError(ErrorKind.OTHER, "busy")
    aborted = ServerAborted(error)
    assert str(aborted) == "the server aborted request processing"
    assert aborted.error == error
    assert isinstance(aborted, RpcError)


@pytest.mark.asyncio
async def test_stage_request():
    channel = Channel()
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    staged = await channel.to_dispatch.get()
    assert isinstance(staged, DispatchRequest)
    assert staged.request_id == 0
    assert staged.request == "hi"
    assert staged.request_name == "World.hello"
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_response_completes_call():
    channel = Channel()
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    staged = await channel.to_dispatch.get()
    staged.response_completion.set_result(Response(request_id=0, message="well done"))
    assert await task == "well done"


@pytest.mark.asyncio
async def test_dispatch_response_cancels_on_drop():
    channel = Channel()
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    staged = await channel.to_dispatch.get()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert staged.response_completion.cancelled()
    assert channel.cancellations.get_nowait() == 0


@pytest.mark.asyncio
async def test_dispatch_response_doesnt_cancel_after_complete():
    channel = Channel()
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    staged = await channel.to_dispatch.get()
    staged.response_completion.set_result(Response(request_id=0, message="well done"))
    await task
    channel.close()
    assert await channel.cancellations.get() is None


@pytest.mark.asyncio
async def test_request_ids_increase_and_are_shared_by_copies():
    channel = Channel()
    other = copy.copy(channel)
    first = asyncio.create_task(channel.call(Context(), "a", 1))
    second = asyncio.create_task(other.call(Context(), "b", 2))
    ids = {(await channel.to_dispatch.get()).request_id for _ in range(2)}
    assert ids == {0, 1}
    for task in (first, second):
        task.cancel()
    results = await asyncio.gather(first, second, return_exceptions=True)
    assert all(isinstance(r, asyncio.CancelledError) for r in results)


@pytest.mark.asyncio
async def test_server_error_raises_server_aborted():
    channel = Channel()
    error = ServerError(ErrorKind.WOULD_BLOCK, "throttled")
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    staged = await channel.to_dispatch.get()
    staged.response_completion.set_result(Response(request_id=0, message=error))
    with pytest.raises(ServerAborted) as raised:
        await task
    assert raised.value.error == error


@pytest.mark.asyncio
async def test_deadline_error_raises_deadline_exceeded():
    channel = Channel()
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    staged = await channel.to_dispatch.get()
    staged.response_completion.set_exception(DeadlineExceededError())
    (outcome,) = await asyncio.gather(task, return_exceptions=True)
    assert isinstance(outcome, DeadlineExceeded)
    assert isinstance(outcome, RpcError)
    assert str(outcome) == "the request exceeded its deadline"


@pytest.mark.asyncio
async def test_completion_dropped_by_dispatch_is_disconnected():
    channel = Channel()
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    staged = await channel.to_dispatch.get()
    staged.response_completion.cancel()
    (outcome,) = await asyncio.gather(task, return_exceptions=True)
    assert isinstance(outcome, Disconnected)
    assert isinstance(outcome, RpcError)
    assert str(outcome) == "the client disconnected from the server"


@pytest.mark.asyncio
async def test_closed_receiver_disconnects_and_cancels():
    channel = Channel()
    channel.to_dispatch.close_receiver()
    with pytest.raises(Disconnected):
        await channel.call(Context(), "World.hello", "hi")
    assert channel.cancellations.get_nowait() == 0


@pytest.mark.asyncio
async def test_closed_channel_drains_then_ends():
    channel = Channel()
    task = asyncio.create_task(channel.call(Context(), "World.hello", "hi"))
    await asyncio.sleep(0)
    channel.close()
    staged = await channel.to_dispatch.get()
    assert staged.request == "hi"
    assert await channel.to_dispatch.get() is None
    staged.response_completion.set_result(Response(request_id=0, message="ok"))
    assert await task == "ok"


@pytest.mark.asyncio
async def test_pending_buffer_bounds_sends():
    channel = Channel(Config(pending_request_buffer=1))
    first = asyncio.create_task(channel.call(Context(), "a", 1))
    second = asyncio.create_task(channel.call(Context(), "b", 2))
    await asyncio.sleep(0)
    assert len(channel.to_dispatch) == 1
    assert (await channel.to_dispatch.get()).request == 1
    assert (await channel.to_dispatch.get()).request == 2
    for task in (first, second):
        task.cancel()
    results = await asyncio.gather(first, second, return_exceptions=True)
    assert all(isinstance(r, asyncio.CancelledError) for r in results)