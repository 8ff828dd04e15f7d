from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from routewire.casting import TypeCaster
from routewire.exceptions import HttpError, PayloadTooLargeError
from routewire.markers import ParamSource
from routewire.request import Request

request_logger = logging.getLogger("routewire.request")

_CAST_SOURCES = frozenset({ParamSource.PARAMS, ParamSource.QUERY, ParamSource.HEADERS})


@dataclass(frozen=True, slots=True)
class RouteParamDescriptor:
    """Where one handler argument comes from and how to convert it.

    Descriptors are built once per handler when routes are scanned at
    startup; request handling only reads them.
    """

    index: int
    name: str
    source: ParamSource
    key: str | None = None
    declared_type: Any = None
    items_type: Any = None
    enum_values: Any = None
    nullable: bool = False
    has_default: bool = False
    """The handler declares a default, used when the request has no value."""

    @property
    def path(self) -> tuple[str, ...]:
        if self.key is None:
            return ("req", self.source.value)
        return ("req", self.source.value, self.key)

    @property
    def should_cast(self) -> bool:
        return self.key is not None and self.source in _CAST_SOURCES


def make_request_logger(request: Request) -> logging.LoggerAdapter[logging.Logger]:
    """Return the logger handed to ``Logger()`` parameters."""
    return logging.LoggerAdapter(
        request_logger,
        {"source": request.source, "method": request.method, "path": request.path},
    )


class ParameterBinder:
    """Pull raw argument values out of a request and cast them.

    Binding runs in three steps so callers can track progress: the JSON body
    is parsed (at most once, and only when a ``Body`` parameter needs it),
    raw values are extracted, then path, query and header values are cast to
    their declared types.
    """

    __slots__ = ("caster", "max_body_size", "strict")

    def __init__(self, *, strict: bool = False, max_body_size: int | None = None) -> None:
        self.strict = strict
        self.max_body_size = max_body_size
        self.caster = TypeCaster(strict=strict)

    async def bind(
        self,
        descriptors: Sequence[RouteParamDescriptor],
        request: Request,
        *,
        logger: logging.LoggerAdapter[logging.Logger] | None = None,
    ) -> list[Any]:
        await self.parse_body(descriptors, request)
        values = self.extract(descriptors, request, logger=logger)
        return self.cast(descriptors, values)

    async def parse_body(self, descriptors: Sequence[RouteParamDescriptor], request: Request) -> None:
        """Parse the JSON body when a ``Body`` parameter needs it.

        Raises:
            PayloadTooLargeError: If ``content-length`` exceeds ``max_body_size``.
            HttpError: In strict mode, if the body is not valid JSON. In lenient
                mode the body is left unset instead.

        """
        needs_body = any(descriptor.source is ParamSource.BODY for descriptor in descriptors)
        if not needs_body or request.method == "GET" or not request.is_json:
            return

        if self.max_body_size:
            size = request.content_length
            if size is not None and size > self.max_body_size:
                raise PayloadTooLargeError(size, self.max_body_size)

        try:
            await request.json()
        except ValueError as error:
            if self.strict:
                raise HttpError(400, f"Failed to parse JSON body: {error}") from error

    def extract(
        self,
        descriptors: Sequence[RouteParamDescriptor],
        request: Request,
        *,
        logger: logging.LoggerAdapter[logging.Logger] | None = None,
    ) -> list[Any]:
        """Return the raw value of every descriptor, ``None`` when missing."""
        return [self._extract_one(descriptor, request, logger) for descriptor in descriptors]

    def cast(self, descriptors: Sequence[RouteParamDescriptor], values: Sequence[Any]) -> list[Any]:
        cast_values: list[Any] = []
        for descriptor, value in zip(descriptors, values):
            if value is not None and descriptor.should_cast:
                value = self.caster.cast(
                    value,
                    descriptor.declared_type,
                    descriptor.key or descriptor.name,
                    items_type=descriptor.items_type,
                    enum_values=descriptor.enum_values,
                )
            cast_values.append(value)
        return cast_values

    def _extract_one(
        self,
        descriptor: RouteParamDescriptor,
        request: Request,
        logger: logging.LoggerAdapter[logging.Logger] | None,
    ) -> Any:
        source = descriptor.source
        key = descriptor.key

        if source is ParamSource.REQ:
            return request
        if source is ParamSource.LOGGER:
            return logger if logger is not None else make_request_logger(request)
        if source is ParamSource.BODY:
            return _lookup_path(request.parsed_body, key)
        if source is ParamSource.HEADERS:
            return request.headers if key is None else request.headers.get(key)
        if source is ParamSource.PARAMS:
            return request.params if key is None else request.params.get(key)
        return request.query if key is None else request.query.get(key)


def _lookup_path(value: Any, key: str | None) -> Any:
    """Follow a dotted key through nested mappings; any missing step yields ``None``."""
    if key is None:
        return value
    for part in key.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
        if value is None:
            return None
    return value
