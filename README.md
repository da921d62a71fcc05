# rpcweave

rpcweave is a small RPC framework for asyncio. You declare a service as a
Python class of `async def` methods. The framework builds request and
response types for it, a client stub with one coroutine per RPC, and a
serving object that routes incoming requests to your implementation.
Requests from one client share one transport. Each request carries a
deadline and a trace context. A call that is abandoned sends a cancellation
message.

## Installation

```
pip install rpcweave
```

The package needs only the standard library.

## Modules

- `rpcweave.context`: `Context(deadline, trace_context)` travels with every
  request. `current()` (also `Context.current()`) returns the context made
  active with `use_context(context)`. When none is active it returns a fresh
  one whose deadline is `ten_seconds_from_now()` in UTC.
- `rpcweave.messages`: the messages that go over the wire. These are
  `Request` (`context`, `id`, `message`, and `deadline()`),
  `Cancel(request_id, trace_context)`, `Response(request_id, message)` (with
  `is_error`), and `ServerError(kind, detail)`, an exception whose `kind` is
  an `ErrorKind`.
- `rpcweave.in_flight`: `InFlightRequests` tracks the requests that have
  been sent and not yet answered. It completes their futures with the
  response, or fails them with `DeadlineExceededError` from
  `pop_expired(now)`. Inserting a duplicate ID raises `AlreadyExistsError`.
- `rpcweave.channel`: `Channel` is the client-side handle.
  `await channel.call(ctx, request_name, request)` sends a request and
  returns the response body. Failures raise a subclass of `RpcError`:
  - `Disconnected`: the dispatcher went away before answering.
  - `DeadlineExceeded`: no response arrived before the deadline.
  - `ServerAborted`: the server answered with a `ServerError`, which is
    kept in `.error`.

  A call that is cancelled while waiting sends a cancellation for its
  request. `channel.close()` stops new requests. `Config` sets
  `max_in_flight_requests` (default 1000) and `pending_request_buffer`
  (default 100).
- `rpcweave.dispatch`: `RequestDispatch.run()` writes pending requests and
  cancellations to the transport, passes responses to their callers, and
  expires requests past their deadline. `new_client(config, transport)`
  returns a `NewClient(client, dispatch)`. `NewClient.spawn()` runs the
  dispatcher as a task and returns the client. If the transport fails, the
  dispatcher raises `ChannelError` (`operation` is `"read"`, `"write"` or
  `"flush"`). `spawn()` logs that error as a broken connection. Once the
  dispatcher stops, every caller still waiting gets `Disconnected`.
- `rpcweave.definition`: `parse_service(cls)` checks a service class and
  returns a `ServiceDefinition` of `RpcMethod`s. `snake_to_camel` gives each
  RPC its variant name, so `two_part` becomes `TwoPart`.
  `parse_derive_serde(options, serde_enabled)` reads a `derive_serde`
  option. Invalid definitions raise `ServiceDefinitionError`, whose `errors`
  lists every problem found.
- `rpcweave.service`: the `service` and `server` decorators, `Serve` and
  `ServiceClient`.

## Transports

A transport is any object with `async send(message)` and
`async receive()`. `send` is given `Request` and `Cancel` messages.
`receive` returns the next `Response`, or `None` once the peer has closed.
If the transport has `async flush()`, the dispatcher calls it whenever no
more messages are waiting to be written.

## Defining a service

```python
from rpcweave.service import service, server


@service
class World:
    async def hello(self, name: str) -> str:
        """Returns a greeting for name."""
```

Each RPC takes `self` and then its arguments. Arguments may not have
default values and may not be variadic. The definition is checked when the
decorator runs, and `ServiceDefinitionError` is raised in these cases:

- An RPC is named `new`, `serve`, `Request`, `Response` or `Client`.
- An RPC has an argument called `ctx`.
- Two RPCs map to the same CamelCase name.

The decorator attaches the following to the class:

- `World.Request.Hello` and `World.Response.Hello`: frozen dataclasses.
  The response variant holds a `value` field.
- `World.Client`: the client stub.
- `serve()`: returns a `Serve` for an implementation.

## Implementing it

An implementation subclasses the service. Each RPC takes the request
context after `self`:

```python
@server
class HelloServer(World):
    async def hello(self, ctx, name: str) -> str:
        return f"Hello, {name}!"
```

`server` checks that every RPC is implemented. For each `async def` RPC it
records a future type, such as `HelloServer.HelloFut`. An RPC written with
plain `def` must return an awaitable, and the class must then declare its
`<Rpc>Fut` attribute itself.

`HelloServer().serve()` returns a `Serve`:

- `method(request)` gives the request's full name, such as `"World.hello"`.
- `serve(ctx, request)` calls the matching method and returns an awaitable
  that resolves to the response variant.

## Calling it

The example below pairs a client with a server in the same process:

```python
import asyncio

from rpcweave.channel import Config
from rpcweave.context import current
from rpcweave.messages import Request, Response


class LoopbackTransport:
    def __init__(self, handler):
        self._handler = handler
        self._responses = asyncio.Queue()

    async def send(self, message):
        if isinstance(message, Request):
            reply = await self._handler.serve(message.context, message.message)
            await self._responses.put(Response(message.id, reply))

    async def receive(self):
        return await self._responses.get()


async def main():
    transport = LoopbackTransport(HelloServer().serve())
    client = World.Client.new(Config(), transport).spawn()
    print(await client.hello(current(), "Stim"))


asyncio.run(main())
```

## What it does not do

- rpcweave has no network transports and does not serialize messages. You
  supply the transport.
- There is no server-side loop that reads requests from a transport, runs
  them, applies their deadlines and honours `Cancel` messages. A server
  calls `Serve.serve` itself, as the loopback example does.
- `trace_context` is carried along with each request but is never created
  or interpreted, and it is not exported to any tracing system.

## Running the tests

```
pip install -e ".[test]"
pytest
```