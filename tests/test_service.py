import asyncio
from typing import Awaitable

import pytest

from rpcweave.channel import Channel, Config, ServerAborted
from rpcweave.context import Context
from rpcweave.definition import ServiceDefinitionError
from rpcweave.messages import ErrorKind, Request, Response, ServerError
from rpcweave.service import Serve, ServiceClient, server, service


@service
class Foo:
    async def two_part(self, s: str, i: int) -> tuple[str, int]: ...

    async def bar(self, s: str) -> str: ...

    async def baz(self) -> None: ...


@server
class FooServer(Foo):
    async def two_part(self, ctx, s, i):
        return (s, i)

    async def bar(self, ctx, s):
        return s

    async def baz(self, ctx):
        return None


async def _ready(value):
    return value


class FooReady(Foo):
    TwoPartFut = Awaitable[tuple[str, int]]
    BarFut = Awaitable[str]
    BazFut = Awaitable[None]

    def two_part(self, ctx, s, i):
        return _ready((s, i))

    def bar(self, ctx, s):
        return _ready(s)

    def baz(self, ctx):
        return _ready(None)


class _MemoryTransport:
    def __init__(self, outgoing, incoming):
        self.outgoing = outgoing
        self.incoming = incoming

    async def send(self, message):
        await self.outgoing.put(message)

    async def receive(self):
        return await self.incoming.get()


async def _run_server(handler, requests, responses, reply=None):
    while True:
        message = await requests.get()
        if message is None:
            return
        if isinstance(message, Request):
            if reply is None:
                body = await handler.serve(message.context, message.message)
            else:
                body = reply
            await responses.put(Response(message.id, body))


def test_type_generation_works():
    class FooImpl(Foo):
        async def two_part(self, ctx, s, i):
            return (s, i)

        async def bar(self, ctx, s):
            return s

        async def baz(self, ctx):
            return None

    impl = server(FooImpl)
    assert impl.TwoPartFut == Awaitable[tuple[str, int]]
    assert impl.BarFut == Awaitable[str]
    assert impl.BazFut == Awaitable[None]


@pytest.mark.asyncio
async def test_att_service_trait_with_ready_futures():
    handler = FooReady().serve()
    assert await handler.serve(Context(), Foo.Request.TwoPart("s", 3)) == Foo.Response.TwoPart(
        ("s", 3)
    )
    assert await handler.serve(Context(), Foo.Request.Bar("x")) == Foo.Response.Bar("x")
    assert await handler.serve(Context(), Foo.Request.Baz()) == Foo.Response.Baz(None)


@pytest.mark.asyncio
async def test_server_handler_wraps_results():
    handler = FooServer().serve()
    response = await handler.serve(Context(), Foo.Request.Bar("hello"))
    assert isinstance(response, Foo.Response)
    assert response.value == "hello"


def test_serve_method_names_request():
    handler = Serve(FooServer())
    assert handler.method(Foo.Request.Bar("x")) == "Foo.bar"
    assert handler.method(Foo.Request.TwoPart("x", 1)) == "Foo.two_part"


def test_serve_rejects_foreign_request():
    handler = Serve(FooServer())
    with pytest.raises(TypeError):
        handler.method("not a request")


def test_serve_holds_service():
    impl = FooServer()
    assert impl.serve() == Serve(impl)


def test_request_variants_are_named_in_camel_case():
    class Camel:
        async def two_part(self, s: str, i: int) -> tuple[str, int]: ...

    defined = service(Camel)
    assert defined.Request.TwoPart.__name__ == "TwoPart"
    assert defined.Request.TwoPart("a", 1).s == "a"
    assert defined.Request.TwoPart("a", 1).i == 1
    assert defined.Client.__name__ == "CamelClient"


def test_syntax():
    class Syntax:
        async def TestCamelCaseDoesntConflict(self) -> None: ...

        async def hello(self) -> str: ...

        async def attr(self, s: str) -> str:
            """attr"""

        async def no_args_no_return(self): ...

        async def no_args(self) -> None: ...

        async def one_arg(self, one: str) -> int: ...

        async def two_args_no_return(self, one: str, two: int): ...

        async def two_args(self, one: str, two: int) -> str: ...

    defined = service(Syntax)
    assert hasattr(defined.Request, "Testcamelcasedoesntconflict")
    assert defined.Request.TwoArgs("a", 2) == defined.Request.TwoArgs(one="a", two=2)
    assert defined.Client.attr.__doc__ == "attr"
    assert defined.__service_definition__.request_names[1] == "Syntax.hello"


def test_server_rejects_sync_method_without_future_type():
    class Bad(Foo):
        async def two_part(self, ctx, s, i):
            return (s, i)

        def bar(self, ctx, s):
            return _ready(s)

        async def baz(self, ctx):
            return None

    with pytest.raises(ServiceDefinitionError) as excinfo:
        server(Bad)
    assert excinfo.value.errors == (
        "not all trait items implemented, missing: `BarFut`",
        "hint: `@server` only rewrites async fns, and `def bar` is not async",
    )


def test_server_accepts_sync_method_with_future_type():
    class Mixed(Foo):
        BarFut = Awaitable[str]

        async def two_part(self, ctx, s, i):
            return (s, i)

        def bar(self, ctx, s):
            return _ready(s)

        async def baz(self, ctx):
            return None

    assert server(Mixed) is Mixed
    assert Mixed.TwoPartFut == Awaitable[tuple[str, int]]


def test_server_reports_missing_rpc():
    class Partial(Foo):
        async def two_part(self, ctx, s, i):
            return (s, i)

        async def baz(self, ctx):
            return None

    with pytest.raises(ServiceDefinitionError) as excinfo:
        server(Partial)
    assert excinfo.value.errors == ("not all trait items implemented, missing: `bar`",)


def test_server_requires_service_subclass():
    class Plain:
        async def bar(self, ctx, s):
            return s

    with pytest.raises(TypeError):
        server(Plain)
    with pytest.raises(TypeError):
        server(Foo)


def test_service_rejects_new():
    class Clash:
        async def new(self) -> None: ...

    with pytest.raises(ServiceDefinitionError) as excinfo:
        service(Clash)
    assert "ClashClient.new" in str(excinfo.value)


def test_service_rejects_duplicate_variants():
    class Dup:
        async def foo(self) -> None: ...

        async def foo_(self) -> None: ...

    with pytest.raises(ServiceDefinitionError) as excinfo:
        service(Dup)
    assert "Foo" in excinfo.value.errors[0]


def test_service_rejects_ctx_argument():
    class CtxArg:
        async def hello(self, ctx: str) -> str: ...

    with pytest.raises(ServiceDefinitionError):
        service(CtxArg)


def test_unspecialised_client_cannot_be_created():
    with pytest.raises(TypeError):
        ServiceClient.new(Config(), object())


@pytest.mark.asyncio
async def test_client_method_checks_arguments():
    client = Foo.Client(Channel())
    with pytest.raises(TypeError):
        await client.bar(Context())


@pytest.mark.asyncio
async def test_client_round_trip():
    to_server, to_client = asyncio.Queue(), asyncio.Queue()
    server_task = asyncio.create_task(_run_server(FooServer().serve(), to_server, to_client))
    created = Foo.Client.new(Config(), _MemoryTransport(to_server, to_client))
    client = created.spawn()
    try:
        assert await client.bar(Context(), "hi") == "hi"
        assert await client.two_part(Context(), "a", 2) == ("a", 2)
        assert await client.baz(Context()) is None
    finally:
        await to_client.put(None)
        await to_server.put(None)
        await created.task
        await server_task


@pytest.mark.asyncio
async def test_client_reports_server_error():
    to_server, to_client = asyncio.Queue(), asyncio.Queue()
    error = ServerError(ErrorKind.OTHER, "busy")
    server_task = asyncio.create_task(
        _run_server(FooServer().serve(), to_server, to_client, reply=error)
    )
    created = Foo.Client.new(Config(), _MemoryTransport(to_server, to_client))
    client = created.spawn()
    try:
        with pytest.raises(ServerAborted) as excinfo:
            await client.bar(Context(), "hi")
        assert excinfo.value.error.detail == "busy"
    finally:
        await to_client.put(None)
        await to_server.put(None)
        await created.task
        await server_task