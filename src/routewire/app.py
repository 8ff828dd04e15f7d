from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from routewire.binding import ParameterBinder
from routewire.config import AppConfig
from routewire.container import Container
from routewire.exceptions import HttpError, InvalidRegistrationError
from routewire.pipes import PipeChain
from routewire.reporting import ErrorReport, ErrorReporter, LoggingErrorReporter
from routewire.request import Request, Response
from routewire.routing import (
    MIDDLEWARE_METHOD,
    RouteDefinition,
    RouteHandler,
    RouteScanner,
    compile_path,
    controller_meta,
    join_paths,
    pipes_of,
    route_methods,
)
from routewire.validator import WiringValidator

if TYPE_CHECKING:
    from typing_extensions import Self

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CompiledRoute:
    definition: RouteDefinition
    handler: RouteHandler
    middlewares: tuple[RouteHandler, ...]


class Application:
    """Wire controllers, middlewares, pipes and injections into a request handler.

    Building happens once: injections and classes are registered, the wiring
    validator runs (unless disabled), the provider registry is frozen, every
    controller, middleware and pipe is instantiated and each route is compiled
    into a ``RouteHandler``. After that ``handle`` serves requests.

    Examples:
        .. code-block:: python

            app = Application(AppConfig(controllers=[UserController]))
            await app.abuild()
            response = await app.handle(Request.from_url("GET", "/users/42"))

    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        container: Container | None = None,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.settings = self.config.settings
        self.container = container or Container(debug=self.settings.debug)
        self.reporter: ErrorReporter = reporter or LoggingErrorReporter()
        self._scanner = RouteScanner(self.container.extractor)
        self._binder = ParameterBinder(
            strict=self.settings.strict_validation,
            max_body_size=self.settings.max_body_size,
        )
        self._registered = False
        self._built = False
        self._instances: dict[type[Any], Any] = {}
        self._routes: list[CompiledRoute] = []
        self._global_middlewares: tuple[RouteHandler, ...] = ()
        self._middleware_handlers: dict[type[Any], RouteHandler] = {}

    @property
    def routes(self) -> tuple[RouteDefinition, ...]:
        """Compiled routes in registration order, for documentation generators."""
        return tuple(route.definition for route in self._routes)

    @property
    def built(self) -> bool:
        return self._built

    def build(self) -> Self:
        """Register, validate and instantiate everything synchronously."""
        if self._built:
            return self
        self._register()
        for cls in self._classes():
            self._instances[cls] = self.container.resolve(cls)
        self._compile()
        return self

    async def abuild(self) -> Self:
        """Like ``build``, awaiting async factories along the way."""
        if self._built:
            return self
        self._register()
        for cls in self._classes():
            self._instances[cls] = await self.container.aresolve(cls)
        self._compile()
        return self

    async def handle(self, request: Request) -> Response:
        """Match and serve one request; every failure becomes an error response."""
        return await self._serve(request, None)

    async def handle_route(self, definition: RouteDefinition, request: Request) -> Response:
        """Serve a request already routed to ``definition`` by an outer router.

        ``request.params`` must hold the path parameters extracted by that router.
        """
        for route in self._routes:
            if route.definition is definition:
                return await self._serve(request, route)
        msg = f"Route {definition.method.value} {definition.path} does not belong to this application."
        raise ValueError(msg)

    async def _serve(self, request: Request, route: CompiledRoute | None) -> Response:
        if not self._built:
            msg = "Application is not built. Call build() or abuild() first."
            raise RuntimeError(msg)
        if self.settings.debug:
            logger.debug("request %s %s", request.method, request.url)

        try:
            for handler in self._global_middlewares:
                result = await handler(request)
                if result is not None:
                    return _to_response(result, HTTPStatus.OK)

            if route is None:
                route, params = self._match(request)
                request.params = params

            for handler in route.middlewares:
                result = await handler(request)
                if result is not None:
                    return _to_response(result, HTTPStatus.OK)

            result = await route.handler(request)
            return _to_response(result, route.definition.status)
        except Exception as error:  # noqa: BLE001
            return self.reporter.report(ErrorReport.from_exception(error), request)

    def _match(self, request: Request) -> tuple[CompiledRoute, dict[str, str]]:
        for route in self._routes:
            params = route.definition.match(request.method, request.path)
            if params is not None:
                return route, params
        raise HttpError(HTTPStatus.NOT_FOUND, f"Cannot {request.method} {request.path}")

    def _register(self) -> None:
        if self._registered:
            return
        self._registered = True

        for injection in self.config.injections:
            if injection.has_value:
                self.container.add_instance(injection.provide, provides=injection.token)
            else:
                self.container.add_factory(
                    injection.factory,  # type: ignore[arg-type]
                    provides=injection.token,
                    deferred=injection.deferred,
                )

        for cls in self._classes():
            if self.container.registry.find(cls) is None:
                self.container.add_concrete(cls)
        discovered = self.container.register_marked_dependencies(self._handler_dependency_tokens())
        if discovered:
            logger.debug("registered injectables: %s", ", ".join(cls.__qualname__ for cls in discovered))

        if self.settings.enable_decorator_validation:
            WiringValidator(
                self.container,
                controllers=self.config.controllers,
                middlewares=self._middleware_classes(),
                pipes=self._pipe_classes(),
                scanner=self._scanner,
            ).raise_for_issues()
        else:
            logger.warning("Decorator validation is disabled")

        self.container.freeze()

    def _compile(self) -> None:
        global_pipes = self._pipe_instances(self.config.global_pipes)
        self._global_middlewares = tuple(self._middleware_handler(cls) for cls in self.config.middlewares)

        for cls in self.config.controllers:
            meta = controller_meta(cls)
            if meta is None:
                msg = f"'{cls.__qualname__}' is not decorated with @controller."
                raise InvalidRegistrationError(msg)

            instance = self._instances[cls]
            owner = cls.__qualname__
            for func, route_meta in route_methods(cls):
                path = join_paths(meta.path, route_meta.path)
                scanned = self._scanner.scan_method(func, owner=owner)
                chain = PipeChain(
                    global_pipes,
                    self._pipe_instances(pipes_of(cls)),
                    self._pipe_instances(pipes_of(func)),
                )
                definition = RouteDefinition(
                    method=route_meta.method,
                    path=path,
                    pattern=compile_path(path),
                    controller=cls,
                    handler_name=func.__name__,
                    status=route_meta.status,
                    middlewares=(*meta.middlewares, *route_meta.middlewares),
                    pipes=(*self.config.global_pipes, *pipes_of(cls), *pipes_of(func)),
                    scanned=scanned,
                )
                self._routes.append(
                    CompiledRoute(
                        definition=definition,
                        handler=self._handler(func.__get__(instance, cls), scanned, chain),
                        middlewares=tuple(self._middleware_handler(mw) for mw in definition.middlewares),
                    ),
                )
            logger.info("%s routes loaded", join_paths(meta.path))

        self._built = True

    def _handler(self, func: Callable[..., Any], scanned: Any, pipes: PipeChain) -> RouteHandler:
        return RouteHandler(
            func,
            scanned,
            binder=self._binder,
            pipes=pipes,
            container=self.container,
            debug=self.settings.debug,
        )

    def _middleware_handler(self, cls: type[Any]) -> RouteHandler:
        handler = self._middleware_handlers.get(cls)
        if handler is None:
            use = getattr(cls, MIDDLEWARE_METHOD, None)
            if not callable(use):
                msg = f"Middleware '{cls.__qualname__}' must implement use()."
                raise InvalidRegistrationError(msg)
            scanned = self._scanner.scan_method(use, owner=cls.__qualname__)
            instance = self._instances[cls]
            handler = self._handler(getattr(instance, MIDDLEWARE_METHOD), scanned, PipeChain())
            self._middleware_handlers[cls] = handler
        return handler

    def _pipe_instances(self, classes: Iterable[type[Any]]) -> list[Any]:
        return [self._instances[cls] for cls in classes]

    def _middleware_classes(self) -> list[type[Any]]:
        classes: list[type[Any]] = list(self.config.middlewares)
        for cls in self.config.controllers:
            meta = controller_meta(cls)
            if meta is not None:
                classes.extend(meta.middlewares)
            for _func, route_meta in route_methods(cls):
                classes.extend(route_meta.middlewares)
        return _unique(classes)

    def _pipe_classes(self) -> list[type[Any]]:
        classes: list[type[Any]] = list(self.config.global_pipes)
        for cls in self.config.controllers:
            classes.extend(pipes_of(cls))
            for func, _meta in route_methods(cls):
                classes.extend(pipes_of(func))
        return _unique(classes)

    def _handler_dependency_tokens(self) -> list[Any]:
        handlers: list[tuple[Callable[..., Any], str]] = []
        for cls in self.config.controllers:
            handlers.extend((func, cls.__qualname__) for func, _meta in route_methods(cls))
        for cls in self._middleware_classes():
            use = getattr(cls, MIDDLEWARE_METHOD, None)
            if callable(use):
                handlers.append((use, cls.__qualname__))
        return [
            dependency.token
            for func, owner in handlers
            for dependency in self._scanner.scan_method(func, owner=owner).dependencies
        ]

    def _classes(self) -> list[type[Any]]:
        """Every class the application instantiates: controllers, middlewares and pipes."""
        return _unique([*self.config.controllers, *self._middleware_classes(), *self._pipe_classes()])


def _unique(classes: Sequence[type[Any]]) -> list[type[Any]]:
    return list(dict.fromkeys(classes))


def _to_response(result: Any, status: HTTPStatus) -> Response:
    if isinstance(result, Response):
        return result
    return Response(status=status, body=result)


def create_app(
    config: AppConfig | None = None,
    *,
    container: Container | None = None,
    reporter: ErrorReporter | None = None,
) -> Application:
    """Create and synchronously build an ``Application``."""
    return Application(config, container=container, reporter=reporter).build()
