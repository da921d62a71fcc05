"""Parsing and validation of service definitions.

A service is declared as a class whose public members are ``async def``
methods. Each method is one RPC: its parameters after ``self`` are the
request arguments and its return annotation is the response type.
"""

from __future__ import annotations

import inspect
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple, Union

_UNSUPPORTED_META = "service definitions do not support this meta item"
_MISSING = object()


class ServiceDefinitionError(Exception):
    """A service definition or its options are invalid.

    ``errors`` holds every problem found, in the order they were found.
    """

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: Tuple[str, ...] = tuple(errors)
        super().__init__("\n".join(self.errors))


def snake_to_camel(ident: str) -> str:
    """Convert a snake_case identifier to CamelCase, dropping every underscore."""
    parts: List[str] = []
    capitalize_next = True
    for char in ident:
        if char == "_":
            capitalize_next = True
        elif capitalize_next:
            parts.append(char.upper())
            capitalize_next = False
        else:
            parts.append(char.lower())
    return "".join(parts)


@dataclass(frozen=True)
class RpcMethod:
    """One RPC of a service: its name, arguments, response type and docs."""

    name: str
    args: Tuple[Tuple[str, Any], ...]
    output: Any = None
    doc: Optional[str] = None

    @property
    def camel_name(self) -> str:
        """The CamelCase name used for request and response variants."""
        return snake_to_camel(self.name)

    @property
    def future_type(self) -> str:
        """The name of the response future type for this RPC."""
        return f"{self.camel_name}Fut"

    @property
    def arg_names(self) -> Tuple[str, ...]:
        """The argument names, in declaration order."""
        return tuple(name for name, _ in self.args)


@dataclass(frozen=True)
class ServiceDefinition:
    """A parsed service: its name, RPCs and the names of the items built from it."""

    name: str
    rpcs: Tuple[RpcMethod, ...]
    doc: Optional[str] = None
    derive_serde: bool = False

    @property
    def client_name(self) -> str:
        return f"{self.name}Client"

    @property
    def server_name(self) -> str:
        return f"Serve{self.name}"

    @property
    def request_type_name(self) -> str:
        return f"{self.name}Request"

    @property
    def response_type_name(self) -> str:
        return f"{self.name}Response"

    @property
    def response_fut_name(self) -> str:
        return f"{self.name}ResponseFut"

    @property
    def request_names(self) -> Tuple[str, ...]:
        """The wire names of the RPCs, of the form ``Service.method``."""
        return tuple(f"{self.name}.{rpc.name}" for rpc in self.rpcs)


@dataclass(frozen=True)
class _Param:
    name: str
    annotation: Any
    has_default: bool
    variadic: str = ""


def _normalize_output(annotation: Any) -> Any:
    if annotation is _MISSING or annotation is None:
        return None
    if isinstance(annotation, str) and annotation.strip() == "None":
        return None
    return annotation


def _function_params(func: Any) -> Tuple[List[_Param], List[_Param], Any]:
    """Split a function's parameters into positional and the rest.

    Returns the positional parameters, the remaining parameters in
    declaration order, and the return annotation.
    """
    code = func.__code__
    names = code.co_varnames
    annotations = getattr(func, "__annotations__", None) or {}
    defaults = func.__defaults__ or ()
    kwdefaults = func.__kwdefaults__ or {}

    argcount = code.co_argcount
    kwonlycount = code.co_kwonlyargcount
    first_default = argcount - len(defaults)

    positional = [
        _Param(name, annotations.get(name, None), index >= first_default)
        for index, name in enumerate(names[:argcount])
    ]
    rest: List[_Param] = []
    index = argcount + kwonlycount
    if code.co_flags & inspect.CO_VARARGS:
        name = names[index]
        rest.append(_Param(name, annotations.get(name, None), False, "*"))
        index += 1
    rest.extend(
        _Param(name, annotations.get(name, None), name in kwdefaults)
        for name in names[argcount : argcount + kwonlycount]
    )
    if code.co_flags & inspect.CO_VARKEYWORDS:
        name = names[index]
        rest.append(_Param(name, annotations.get(name, None), False, "**"))
    return positional, rest, annotations.get("return", _MISSING)


def _parse_rpc(name: str, value: Any, errors: List[str]) -> RpcMethod:
    if isinstance(value, (staticmethod, classmethod)):
        raise ServiceDefinitionError([f"RPC `{name}` must be a plain async method"])
    if not inspect.isfunction(value):
        raise ServiceDefinitionError(
            [f"service definitions may only declare async RPC methods; `{name}` is not one"]
        )
    if not inspect.iscoroutinefunction(value):
        raise ServiceDefinitionError([f"RPC `{name}` must be declared with `async def`"])

    positional, rest, return_annotation = _function_params(value)
    if positional and positional[0].name == "self":
        params = positional[1:] + rest
    else:
        errors.append(f"RPC `{name}` must take `self` as its first parameter")
        params = positional + rest

    args: List[Tuple[str, Any]] = []
    for param in params:
        if param.variadic:
            errors.append(
                f"variadic parameters aren't allowed in RPC args "
                f"(`{param.variadic}{param.name}` in `{name}`)"
            )
        elif param.has_default:
            errors.append(
                f"default values aren't allowed in RPC args (`{param.name}` in `{name}`)"
            )
        else:
            args.append((param.name, param.annotation))

    return RpcMethod(
        name=name,
        args=tuple(args),
        output=_normalize_output(return_annotation),
        doc=inspect.getdoc(value),
    )


def parse_service(cls: type, derive_serde: bool = False) -> ServiceDefinition:
    """Parse the service declared by ``cls``.

    Raises :class:`ServiceDefinitionError` listing every problem found. RPCs
    may not be named ``new`` or ``serve``, which clash with generated items.
    """
    if not inspect.isclass(cls):
        raise TypeError(f"a service definition must be a class, not {type(cls).__name__}")
    service_name = cls.__name__
    errors: List[str] = []
    rpcs = [
        _parse_rpc(name, value, errors)
        for name, value in vars(cls).items()
        if not name.startswith("_")
    ]
    for rpc in rpcs:
        if rpc.name == "new":
            errors.append(
                f"method name conflicts with generated fn `{service_name}Client.new`"
            )
        if rpc.name == "serve":
            errors.append(f"method name conflicts with generated fn `{service_name}.serve`")
    if errors:
        raise ServiceDefinitionError(errors)
    doc = cls.__dict__.get("__doc__")
    return ServiceDefinition(
        name=service_name,
        rpcs=tuple(rpcs),
        doc=inspect.cleandoc(doc) if isinstance(doc, str) else None,
        derive_serde=bool(derive_serde),
    )


def parse_derive_serde(
    options: Union[Mapping, Iterable[Tuple[str, Any]]], serde_enabled: bool
) -> bool:
    """Read the ``derive_serde`` option, defaulting to ``serde_enabled``.

    ``options`` is a mapping or a sequence of ``(name, value)`` pairs.
    ``derive_serde`` may only be true when serialization is enabled.
    """
    items = options.items() if isinstance(options, Mapping) else options
    errors: List[str] = []
    chosen: Optional[bool] = None
    occurrences = 0
    for key, value in items:
        if "." in key or "::" in key or key != "derive_serde":
            errors.append(_UNSUPPORTED_META)
            continue
        occurrences += 1
        if value is True and serde_enabled:
            chosen = True
        elif value is True:
            errors.append(
                "`derive_serde = True` requires serialization support to be enabled first"
            )
        elif value is False:
            chosen = False
        else:
            errors.append("`derive_serde` expects a value of type `bool`")
    if occurrences > 1:
        errors.extend(
            f"`derive_serde` appears more than once (occurrence #{index})"
            for index in range(1, occurrences + 1)
        )
    if errors:
        raise ServiceDefinitionError(errors)
    return serde_enabled if chosen is None else chosen