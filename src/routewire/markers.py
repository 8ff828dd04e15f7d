from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any, NamedTuple, TypeVar, Union, get_args, get_origin

from routewire.scope import Scope

T = TypeVar("T")
_ANNOTATED_MARKER_MIN_ARGS = 2


class Inject(NamedTuple):
    """Mark an injection site with an explicit token and/or scope.

    Attach ``Inject`` metadata to ``typing.Annotated``. Without a token the
    annotated type itself is the token.

    Examples:
        .. code-block:: python

            def __init__(
                self,
                config: Annotated[dict[str, Any], Inject("CONFIG")],
                repo: Annotated[Repository, Inject(scope=Scope.LOCAL)],
            ) -> None: ...

    """

    token: Any = None
    scope: Scope | None = None


if TYPE_CHECKING:
    Injected = Union[T, T]  # noqa: UP007,PYI016
    Local = Union[T, T]  # noqa: UP007,PYI016
    DeepLocal = Union[T, T]  # noqa: UP007,PYI016

else:

    class Injected:
        """Mark a handler parameter for container-driven injection.

        At runtime ``Injected[T]`` resolves to ``Annotated[T, Inject()]``.
        """

        def __class_getitem__(cls, item: T) -> Annotated[T, Inject]:
            return _build_annotated((item, Inject()))

    class Local:
        """Inject ``T`` with ``Scope.LOCAL``."""

        def __class_getitem__(cls, item: T) -> Annotated[T, Inject]:
            return _build_annotated((item, Inject(scope=Scope.LOCAL)))

    class DeepLocal:
        """Inject ``T`` with ``Scope.DEEP_LOCAL``."""

        def __class_getitem__(cls, item: T) -> Annotated[T, Inject]:
            return _build_annotated((item, Inject(scope=Scope.DEEP_LOCAL)))


class ParamSource(str, Enum):
    """Where a handler argument's raw value comes from."""

    PARAMS = "params"
    QUERY = "query"
    HEADERS = "headers"
    BODY = "body"
    REQ = "req"
    LOGGER = "logger"


class SourceMarker(NamedTuple):
    """Route parameter marker produced by ``Param``, ``Query`` and friends."""

    source: ParamSource
    key: str | None = None
    items: Any = None
    enum: Any = None


def Param(name: str, *, enum: Any = None) -> SourceMarker:  # noqa: N802
    """Bind a path segment, e.g. ``id`` in ``/users/{id}``."""
    return SourceMarker(ParamSource.PARAMS, name, enum=enum)


def Query(  # noqa: N802
    name: str | None = None,
    *,
    items: Any = None,
    enum: Any = None,
) -> SourceMarker:
    """Bind a query string value, or the whole query mapping without a name.

    ``items`` sets the item type for array parameters when the annotation does
    not carry it (``list`` instead of ``list[int]``).
    """
    return SourceMarker(ParamSource.QUERY, name, items=items, enum=enum)


def Header(name: str | None = None, *, items: Any = None, enum: Any = None) -> SourceMarker:  # noqa: N802
    """Bind a request header (case-insensitive), or all headers without a name."""
    return SourceMarker(ParamSource.HEADERS, name, items=items, enum=enum)


def Body(name: str | None = None) -> SourceMarker:  # noqa: N802
    """Bind the parsed JSON body, or one of its top-level fields."""
    return SourceMarker(ParamSource.BODY, name)


def Req() -> SourceMarker:  # noqa: N802
    """Bind the ``Request`` object itself."""
    return SourceMarker(ParamSource.REQ)


def Logger() -> SourceMarker:  # noqa: N802
    """Bind the per-request ``logging.LoggerAdapter``."""
    return SourceMarker(ParamSource.LOGGER)


def split_annotated(annotation: Any) -> tuple[Any, tuple[Any, ...]]:
    """Return ``(inner_type, metadata)`` for ``Annotated`` hints, ``(hint, ())`` otherwise."""
    if get_origin(annotation) is not Annotated:
        return annotation, ()
    args = get_args(annotation)
    if len(args) < _ANNOTATED_MARKER_MIN_ARGS:  # pragma: no cover - Annotated always has metadata
        return annotation, ()
    return args[0], tuple(args[1:])


def find_marker(metadata: Sequence[Any], marker_type: type[T]) -> T | None:
    """Return the last marker of ``marker_type`` in ``Annotated`` metadata."""
    found: T | None = None
    for item in metadata:
        if isinstance(item, marker_type):
            found = item
    return found


def _build_annotated(params: tuple[object, ...]) -> Any:
    """Return Annotated[...] with a pre-built params tuple (Py 3.10+ compatible)."""
    try:
        return Annotated.__class_getitem__(params)  # type: ignore[attr-defined]
    except AttributeError:
        return Annotated.__getitem__(params)  # type: ignore[attr-defined]
