"""Turn service declarations into request types, client stubs and server handlers.

A service is declared as a class of ``async def`` methods, decorated with
:func:`service`. Each method is one RPC: its parameters after ``self`` are the
request arguments and its return annotation is the response type. The
decorator attaches to the class:

* ``Request`` and ``Response``: one frozen dataclass variant per RPC, named
  after the RPC in CamelCase (``Response`` variants hold a ``value`` field);
* ``Client``: a :class:`ServiceClient` subclass with one method per RPC that
  takes a :class:`~rpcweave.context.Context` before the RPC's arguments;
* ``serve()``: returns a :class:`Serve` handler for a service implementation.

Implementations subclass the service class and define each RPC with an extra
``ctx`` parameter after ``self``. :func:`server` checks such an implementation
and records a ``<Rpc>Fut`` type for every ``async def`` RPC it defines.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, make_dataclass
from typing import Any, Awaitable, Dict, List, Optional

from rpcweave.channel import Channel, Config
from rpcweave.context import Context
from rpcweave.definition import RpcMethod, ServiceDefinitionError, parse_service
from rpcweave.dispatch import NewClient, new_client

_GENERATED_ITEMS = ("Request", "Response", "Client")


@dataclass(frozen=True)
class _Variant:
    """Everything generated for one RPC."""

    rpc: RpcMethod
    request_type: type
    response_type: type
    request_name: str


async def _respond(pending: Awaitable[Any], response_type: type) -> Any:
    return response_type(await pending)


@dataclass
class Serve:
    """A serving function: maps a request variant onto the implementation's RPC."""

    service: Any

    def _variant(self, request: Any) -> _Variant:
        variants: Optional[Dict[type, _Variant]] = getattr(
            type(self.service), "__rpc_variants__", None
        )
        if variants is None:
            raise TypeError(f"{type(self.service).__name__} does not implement a service")
        try:
            return variants[type(request)]
        except KeyError:
            raise TypeError(
                f"{type(request).__name__} is not a request of "
                f"{type(self.service).__name__}"
            ) from None

    def method(self, request: Any) -> str:
        """Return the name of the RPC that ``request`` invokes, e.g. ``World.hello``."""
        return self._variant(request).request_name

    def serve(self, ctx: Context, request: Any) -> Awaitable[Any]:
        """Invoke the RPC for ``request``; the result resolves to a response variant."""
        variant = self._variant(request)
        handler = getattr(self.service, variant.rpc.name)
        pending = handler(ctx, *(getattr(request, name) for name in variant.rpc.arg_names))
        return _respond(pending, variant.response_type)


class ServiceClient:
    """Base of generated client stubs; every RPC method returns a coroutine."""

    __service__: Optional[type] = None

    def __init__(self, channel: Channel) -> None:
        self._channel = channel

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._channel!r})"

    @classmethod
    def new(cls, config: Optional[Config], transport: Any) -> NewClient:
        """Return a client stub sending over ``transport``, paired with its dispatch."""
        if cls.__service__ is None:
            raise TypeError("ServiceClient must be generated by @service before use")
        created = new_client(config, transport)
        return NewClient(cls(created.client), created.dispatch)

    async def _call(self, ctx: Context, variant: _Variant, request: Any) -> Any:
        response = await self._channel.call(ctx, variant.request_name, request)
        if not isinstance(response, variant.response_type):
            raise TypeError(
                f"unexpected response {type(response).__name__} to {variant.request_name}"
            )
        return response.value


def _client_method(variant: _Variant, client_name: str) -> Any:
    rpc = variant.rpc

    async def call(self: ServiceClient, ctx: Context, *args: Any, **kwargs: Any) -> Any:
        request = variant.request_type(*args, **kwargs)
        return await self._call(ctx, variant, request)

    call.__name__ = rpc.name
    call.__qualname__ = f"{client_name}.{rpc.name}"
    call.__doc__ = rpc.doc
    positional = inspect.Parameter.POSITIONAL_OR_KEYWORD
    call.__signature__ = inspect.Signature(  # type: ignore[attr-defined]
        [
            inspect.Parameter("self", positional),
            inspect.Parameter("ctx", positional, annotation=Context),
            *(
                inspect.Parameter(
                    name, positional,
                    annotation=inspect.Parameter.empty if ann is None else ann,
                )
                for name, ann in rpc.args
            ),
        ],
        return_annotation=rpc.output,
    )
    return call


def _check_generated_names(cls: type, rpcs: tuple) -> None:
    errors: List[str] = []
    seen: Dict[str, str] = {}
    for rpc in rpcs:
        if rpc.name in _GENERATED_ITEMS:
            errors.append(
                f"method name conflicts with generated item `{cls.__name__}.{rpc.name}`"
            )
        if "ctx" in rpc.arg_names:
            errors.append(
                f"argument `ctx` of `{rpc.name}` conflicts with the generated context parameter"
            )
        previous = seen.setdefault(rpc.camel_name, rpc.name)
        if previous != rpc.name:
            errors.append(
                f"methods `{previous}` and `{rpc.name}` both map to variant `{rpc.camel_name}`"
            )
    if errors:
        raise ServiceDefinitionError(errors)


def _variant_type(name: str, owner: type, fields: list, module: str) -> type:
    variant = make_dataclass(name, fields, bases=(owner,), frozen=True)
    variant.__module__ = module
    variant.__qualname__ = f"{owner.__qualname__}.{name}"
    setattr(owner, name, variant)
    return variant


def service(cls: type) -> type:
    """Generate request and response types, a client stub and ``serve`` for ``cls``."""
    definition = parse_service(cls)
    _check_generated_names(cls, definition.rpcs)
    module = cls.__module__

    request_base = type(
        definition.request_type_name,
        (),
        {"__module__": module, "__doc__": "The request sent from the client to the server."},
    )
    response_base = type(
        definition.response_type_name,
        (),
        {"__module__": module, "__doc__": "The response sent from the server to the client."},
    )

    variants: Dict[type, _Variant] = {}
    client_namespace: Dict[str, Any] = {
        "__module__": module,
        "__doc__": "The client stub that makes RPC calls to the server.",
        "__service__": cls,
    }
    for rpc, request_name in zip(definition.rpcs, definition.request_names):
        request_type = _variant_type(
            rpc.camel_name,
            request_base,
            [(name, Any if ann is None else ann) for name, ann in rpc.args],
            module,
        )
        response_type = _variant_type(
            rpc.camel_name,
            response_base,
            [("value", Any if rpc.output is None else rpc.output)],
            module,
        )
        variant = _Variant(rpc, request_type, response_type, request_name)
        variants[request_type] = variant
        client_namespace[rpc.name] = _client_method(variant, definition.client_name)

    client = type(definition.client_name, (ServiceClient,), client_namespace)

    def serve(self: Any) -> Serve:
        """Return a serving function for this service implementation."""
        return Serve(self)

    cls.__service_definition__ = definition  # type: ignore[attr-defined]
    cls.__service_class__ = cls  # type: ignore[attr-defined]
    cls.__rpc_variants__ = variants  # type: ignore[attr-defined]
    cls.Request = request_base  # type: ignore[attr-defined]
    cls.Response = response_base  # type: ignore[attr-defined]
    cls.Client = client  # type: ignore[attr-defined]
    cls.serve = serve  # type: ignore[attr-defined]
    return cls


def server(cls: type) -> type:
    """Check a service implementation and record the future type of each async RPC.

    Every RPC must be implemented. An RPC defined with plain ``def`` must
    return an awaitable, and the class must then declare its ``<Rpc>Fut`` type
    itself; otherwise :class:`ServiceDefinitionError` is raised.
    """
    service_cls = getattr(cls, "__service_class__", None)
    if service_cls is None or service_cls is cls:
        raise TypeError(f"@server requires a subclass of a @service class, not {cls.__name__}")
    definition = service_cls.__service_definition__
    declared = vars(service_cls)
    errors: List[str] = []
    future_types: Dict[str, Any] = {}
    for rpc in definition.rpcs:
        if inspect.getattr_static(cls, rpc.name) is declared[rpc.name]:
            errors.append(f"not all trait items implemented, missing: `{rpc.name}`")
            continue
        own = cls.__dict__.get(rpc.name)
        if own is None:
            continue
        if inspect.iscoroutinefunction(own):
            future_types[rpc.future_type] = Awaitable[rpc.output]
        elif rpc.future_type not in cls.__dict__:
            errors.append(f"not all trait items implemented, missing: `{rpc.future_type}`")
            errors.append(
                f"hint: `@server` only rewrites async fns, and `def {rpc.name}` is not async"
            )
    if errors:
        raise ServiceDefinitionError(errors)
    for name, future_type in future_types.items():
        setattr(cls, name, future_type)
    return cls