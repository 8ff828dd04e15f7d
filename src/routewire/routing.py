from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from inspect import Parameter
from typing import Any, TypeVar

from routewire.binding import ParameterBinder, RouteParamDescriptor, make_request_logger
from routewire.markers import Inject, SourceMarker, find_marker, split_annotated
from routewire.pipes import ParamMetadata, PipeChain
from routewire.providers import (
    DependenciesExtractor,
    ProviderDependency,
    is_missing_annotation,
    parameter_annotation,
    resolved_type_hints,
    unwrap_optional,
)
from routewire.resolution import ResolutionContext

logger = logging.getLogger(__name__)

C = TypeVar("C", bound=type[Any])
F = TypeVar("F", bound=Callable[..., Any])

CONTROLLER_ATTR = "__routewire_controller__"
ROUTE_ATTR = "__routewire_route__"
PIPES_ATTR = "__routewire_pipes__"
MIDDLEWARE_ATTR = "__routewire_middleware__"
MIDDLEWARE_METHOD = "use"

_PATH_PARAM_PATTERN = re.compile(r"{([A-Za-z_][A-Za-z0-9_]*)}")


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    PATCH = "PATCH"


class HandlerStage(str, Enum):
    """Progress of one request through a route or middleware handler.

    Stages only move forward. A failure moves the request to ``FAILED`` and
    the stage that was being attempted is stored on the raised error as
    ``error.stage``.
    """

    IDLE = "idle"
    BODY_PARSED = "body_parsed"
    PARAMS_EXTRACTED = "params_extracted"
    PARAMS_CAST = "params_cast"
    PARAMS_PIPED = "params_piped"
    DEPENDENCIES_INJECTED = "dependencies_injected"
    HANDLER_INVOKED = "handler_invoked"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ControllerMeta:
    path: str
    middlewares: tuple[type[Any], ...] = ()


@dataclass(frozen=True, slots=True)
class RouteMeta:
    method: HttpMethod
    path: str
    middlewares: tuple[type[Any], ...] = ()
    status: HTTPStatus = HTTPStatus.OK


def controller(
    path: str = "/",
    *,
    middlewares: Sequence[type[Any]] = (),
    pipes: Sequence[type[Any]] = (),
) -> Callable[[C], C]:
    """Mark a class as a controller mounted under ``path``.

    ``middlewares`` run before every route of the controller, ``pipes``
    transform every parameter of its routes after the global pipes.
    """

    def decorator(cls: C) -> C:
        setattr(cls, CONTROLLER_ATTR, ControllerMeta(path=path, middlewares=tuple(middlewares)))
        if pipes:
            _add_pipes(cls, pipes)
        return cls

    return decorator


def _route(method: HttpMethod) -> Callable[..., Callable[[F], F]]:
    def route(
        path: str = "/",
        *,
        middlewares: Sequence[type[Any]] = (),
        pipes: Sequence[type[Any]] = (),
        status: HTTPStatus | int = HTTPStatus.OK,
    ) -> Callable[[F], F]:
        def decorator(func: F) -> F:
            setattr(
                func,
                ROUTE_ATTR,
                RouteMeta(
                    method=method,
                    path=path,
                    middlewares=tuple(middlewares),
                    status=HTTPStatus(status),
                ),
            )
            if pipes:
                _add_pipes(func, pipes)
            return func

        return decorator

    route.__name__ = method.value.lower()
    route.__doc__ = f"Mark a controller method as the handler of ``{method.value} path``."
    return route


get = _route(HttpMethod.GET)
post = _route(HttpMethod.POST)
put = _route(HttpMethod.PUT)
delete = _route(HttpMethod.DELETE)
patch = _route(HttpMethod.PATCH)


def use_pipes(*pipes: type[Any]) -> Callable[[F], F]:
    """Attach pipe classes to a controller class or a route method."""

    def decorator(target: F) -> F:
        _add_pipes(target, pipes)
        return target

    return decorator


def middleware() -> Callable[[C], C]:
    """Mark a class as middleware; its ``use`` method is bound like a route handler."""

    def decorator(cls: C) -> C:
        setattr(cls, MIDDLEWARE_ATTR, True)
        return cls

    return decorator


def _add_pipes(target: Any, pipes: Sequence[type[Any]]) -> None:
    existing: tuple[type[Any], ...] = target.__dict__.get(PIPES_ATTR, ())
    setattr(target, PIPES_ATTR, (*existing, *pipes))


def pipes_of(target: Any) -> tuple[type[Any], ...]:
    return getattr(target, "__dict__", {}).get(PIPES_ATTR, ())


def controller_meta(cls: type[Any]) -> ControllerMeta | None:
    return cls.__dict__.get(CONTROLLER_ATTR)


def is_middleware(cls: type[Any]) -> bool:
    return bool(cls.__dict__.get(MIDDLEWARE_ATTR, False))


def join_paths(*parts: str) -> str:
    segments = [segment for part in parts for segment in part.split("/") if segment]
    return "/" + "/".join(segments)


def compile_path(path: str) -> re.Pattern[str]:
    """Compile a ``/users/{id}`` template into a full-match regex with named groups."""
    pattern = ""
    position = 0
    for match in _PATH_PARAM_PATTERN.finditer(path):
        pattern += re.escape(path[position : match.start()])
        pattern += f"(?P<{match.group(1)}>[^/]+)"
        position = match.end()
    pattern += re.escape(path[position:])
    return re.compile(f"^{pattern}/?$")


@dataclass(slots=True)
class ScannedMethod:
    """Binding plan for one handler signature, built once at startup."""

    owner: str
    method_name: str
    descriptors: list[RouteParamDescriptor] = field(default_factory=list)
    dependencies: list[ProviderDependency] = field(default_factory=list)
    unbound: list[str] = field(default_factory=list)
    """Parameters with neither a source marker nor an injection marker."""
    conflicting: list[str] = field(default_factory=list)
    """Parameters carrying both a source marker and an injection marker."""

    @property
    def qualified_name(self) -> str:
        return f"{self.owner}.{self.method_name}"


class RouteScanner:
    """Turn handler signatures into parameter descriptors and injection lists."""

    def __init__(self, extractor: DependenciesExtractor | None = None) -> None:
        self._extractor = extractor or DependenciesExtractor()

    def scan_method(self, func: Callable[..., Any], *, owner: str) -> ScannedMethod:
        scanned = ScannedMethod(owner=owner, method_name=func.__name__)
        annotations, annotation_error = resolved_type_hints(func)
        parameters = DependenciesExtractor.parameters(func, skip_first_parameter=True)

        for index, parameter in enumerate(parameters):
            annotation = parameter_annotation(parameter, annotations)
            if is_missing_annotation(annotation):
                scanned.unbound.append(parameter.name)
                continue

            inner, metadata = split_annotated(annotation)
            source = find_marker(metadata, SourceMarker)
            inject = find_marker(metadata, Inject)

            if source is not None and inject is not None:
                scanned.conflicting.append(parameter.name)
                continue
            if source is not None:
                scanned.descriptors.append(self._describe_source(index, parameter, inner, source))
                continue
            if inject is not None:
                dependency = self._extractor.describe(
                    parameter=parameter,
                    index=index,
                    annotation=annotation,
                    annotation_error=annotation_error,
                )
                if dependency is not None:
                    scanned.dependencies.append(dependency)
                continue
            if parameter.default is Parameter.empty:
                scanned.unbound.append(parameter.name)

        return scanned

    @staticmethod
    def _describe_source(
        index: int,
        parameter: Parameter,
        declared_type: Any,
        marker: SourceMarker,
    ) -> RouteParamDescriptor:
        declared_type, nullable = unwrap_optional(declared_type)
        return RouteParamDescriptor(
            index=index,
            name=parameter.name,
            source=marker.source,
            key=marker.key,
            declared_type=declared_type,
            items_type=marker.items,
            enum_values=marker.enum,
            nullable=nullable,
            has_default=parameter.default is not Parameter.empty,
        )


def route_methods(cls: type[Any]) -> list[tuple[Callable[..., Any], RouteMeta]]:
    """Return the route handlers of a controller class in definition order."""
    members: dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        members.update(vars(klass))
    routes: list[tuple[Callable[..., Any], RouteMeta]] = []
    for member in members.values():
        meta = getattr(member, ROUTE_ATTR, None)
        if isinstance(meta, RouteMeta) and callable(member):
            routes.append((member, meta))
    return routes


@dataclass(kw_only=True)
class RouteDefinition:
    """A compiled route: where it is mounted and which handler serves it."""

    method: HttpMethod
    path: str
    pattern: re.Pattern[str]
    controller: type[Any]
    handler_name: str
    status: HTTPStatus
    middlewares: tuple[type[Any], ...]
    pipes: tuple[type[Any], ...]
    scanned: ScannedMethod

    def match(self, method: str, path: str) -> dict[str, str] | None:
        if method != self.method.value:
            return None
        found = self.pattern.match(path)
        if found is None:
            return None
        return found.groupdict()


class RouteHandler:
    """Run one route or middleware method against a request.

    Arguments are bound, cast, piped and injected in fixed order
    (see ``HandlerStage``); method-level injections are resolved per request
    in a fresh ``ResolutionContext``.
    """

    __slots__ = ("_binder", "_container", "_func", "_pipes", "_scanned", "debug")

    def __init__(
        self,
        func: Callable[..., Any],
        scanned: ScannedMethod,
        *,
        binder: ParameterBinder,
        pipes: PipeChain,
        container: Any,
        debug: bool = False,
    ) -> None:
        self._func = func
        self._scanned = scanned
        self._binder = binder
        self._pipes = pipes
        self._container = container
        self.debug = debug

    @property
    def scanned(self) -> ScannedMethod:
        return self._scanned

    async def __call__(self, request: Any) -> Any:
        stage = HandlerStage.IDLE
        request.source = self._scanned.owner
        descriptors = self._scanned.descriptors
        try:
            stage = HandlerStage.BODY_PARSED
            await self._binder.parse_body(descriptors, request)

            stage = HandlerStage.PARAMS_EXTRACTED
            raw_values = self._binder.extract(descriptors, request, logger=make_request_logger(request))

            stage = HandlerStage.PARAMS_CAST
            values = self._binder.cast(descriptors, raw_values)

            stage = HandlerStage.PARAMS_PIPED
            if self._pipes:
                for position, descriptor in enumerate(descriptors):
                    values[position] = await self._pipes.run(
                        values[position],
                        ParamMetadata(descriptor.source, descriptor.declared_type, descriptor.key),
                    )
            kwargs = {
                descriptor.name: value
                for descriptor, raw, value in zip(descriptors, raw_values, values)
                if raw is not None or not descriptor.has_default
            }

            stage = HandlerStage.DEPENDENCIES_INJECTED
            if self._scanned.dependencies:
                kwargs.update(
                    await self._container.aresolve_arguments(
                        self._scanned.dependencies,
                        owner=self._scanned.qualified_name,
                        context=ResolutionContext(),
                    ),
                )

            stage = HandlerStage.HANDLER_INVOKED
            result = self._func(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as error:
            if getattr(error, "stage", None) is None:
                error.stage = stage.value  # type: ignore[attr-defined]
            if self.debug:
                logger.debug(
                    "%s failed at %s: %s",
                    self._scanned.qualified_name,
                    stage.value,
                    error,
                )
            raise
        return result
