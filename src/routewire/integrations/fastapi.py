from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from routewire.request import Headers, QueryValue
from routewire.request import Request as RouteWireRequest

try:
    from fastapi import FastAPI, Request, Response
except ModuleNotFoundError as exc:  # pragma: no cover - exercised in optional import scenarios
    message = "FastAPI integration requires fastapi. Install with 'routewire[fastapi]'."
    raise ModuleNotFoundError(message) from exc

if TYPE_CHECKING:
    from routewire.app import Application
    from routewire.routing import RouteDefinition


async def to_routewire_request(request: Request) -> RouteWireRequest:
    """Convert a Starlette request routed by FastAPI into a routewire ``Request``."""
    query: dict[str, QueryValue] = {}
    for key, value in request.query_params.multi_items():
        existing = query.get(key)
        if existing is None:
            query[key] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            query[key] = [existing, value]

    return RouteWireRequest(
        method=request.method,
        path=request.url.path,
        headers=Headers(dict(request.headers)),
        query=query,
        params={key: str(value) for key, value in request.path_params.items()},
        body=await request.body(),
    )


def _build_endpoint(
    application: Application,
    definition: RouteDefinition,
) -> Callable[[Request], Awaitable[Response]]:
    async def endpoint(request: Request) -> Response:
        result = await application.handle_route(definition, await to_routewire_request(request))
        return Response(
            content=result.render(),
            status_code=int(result.status),
            headers=result.headers,
            media_type=result.media_type,
        )

    endpoint.__name__ = f"{definition.controller.__name__}_{definition.handler_name}"
    return endpoint


def setup_routewire(app: FastAPI, application: Application) -> None:
    """Mount every routewire route on a FastAPI app.

    FastAPI does the routing; each matched request is converted and served by
    the routewire handler chain (middlewares, binding, pipes, injection). The
    application is built synchronously first if needed.

    Examples:
        .. code-block:: python

            app = FastAPI()
            setup_routewire(app, Application(AppConfig(controllers=[UserController])))

    """
    if not application.built:
        application.build()

    for definition in application.routes:
        app.add_api_route(
            definition.path,
            _build_endpoint(application, definition),
            methods=[definition.method.value],
            name=f"{definition.controller.__name__}.{definition.handler_name}",
        )
