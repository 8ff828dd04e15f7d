from __future__ import annotations

import dataclasses
import inspect
import threading
from collections.abc import Sequence
from typing import Any, NamedTuple, Protocol, runtime_checkable

from pydantic import BaseModel, TypeAdapter, ValidationError

from routewire.exceptions import ValidationPipeError
from routewire.markers import ParamSource, split_annotated
from routewire.providers import unwrap_optional

_UNVALIDATED_SOURCES = frozenset({ParamSource.REQ, ParamSource.LOGGER})


class ParamMetadata(NamedTuple):
    """Describe the parameter a pipe is transforming."""

    source: ParamSource
    """Where the value came from (``params``, ``query``, ``body``...)."""
    declared_type: Any = None
    """Type annotation of the handler parameter, ``None`` when absent."""
    name: str | None = None
    """Key in the source, ``None`` for whole-source bindings."""


@runtime_checkable
class PipeTransform(Protocol):
    """Transform or validate a bound parameter value.

    ``transform`` may be sync or async; it returns the value passed to the
    next pipe and eventually to the handler, or raises to reject the request.
    """

    def transform(self, value: Any, metadata: ParamMetadata) -> Any: ...


class PipeChain:
    """Run the global, controller and method pipes of a route, in that order."""

    __slots__ = ("_pipes",)

    def __init__(
        self,
        global_pipes: Sequence[PipeTransform] = (),
        controller_pipes: Sequence[PipeTransform] = (),
        method_pipes: Sequence[PipeTransform] = (),
    ) -> None:
        self._pipes = (*global_pipes, *controller_pipes, *method_pipes)

    @property
    def pipes(self) -> tuple[PipeTransform, ...]:
        return self._pipes

    def __len__(self) -> int:
        return len(self._pipes)

    async def run(self, value: Any, metadata: ParamMetadata) -> Any:
        for pipe in self._pipes:
            value = pipe.transform(value, metadata)
            if inspect.isawaitable(value):
                value = await value
        return value


class ValidationPipe:
    """Validate pydantic models and dataclasses with ``pydantic.TypeAdapter``.

    Scalar and builtin container targets pass through untouched since the
    type caster already converted them. Model targets are validated from the
    bound value (usually the JSON body) and replaced by the validated
    instance. Failures raise ``ValidationPipeError`` (HTTP 400) with the
    messages of every failing field, keyed by dotted location.

    Use ``validation_pipe(strict=True)`` for a pipe class that disables
    pydantic's lenient coercion.
    """

    strict: bool = False

    _adapters: dict[Any, TypeAdapter[Any]] = {}
    _adapters_lock = threading.Lock()

    def transform(self, value: Any, metadata: ParamMetadata) -> Any:
        if metadata.source in _UNVALIDATED_SOURCES:
            return value
        target = _validation_target(metadata.declared_type)
        if target is None or value is None or isinstance(value, target):
            return value

        adapter = self._adapter(target)
        try:
            return adapter.validate_python(value, strict=self.strict)
        except ValidationError as error:
            raise ValidationPipeError(
                target.__name__ if isinstance(target, type) else metadata.source.value,
                _field_errors(error),
            ) from error

    @classmethod
    def _adapter(cls, target: Any) -> TypeAdapter[Any]:
        adapter = cls._adapters.get(target)
        if adapter is None:
            with cls._adapters_lock:
                adapter = cls._adapters.get(target)
                if adapter is None:
                    adapter = TypeAdapter(target)
                    cls._adapters[target] = adapter
        return adapter


def validation_pipe(*, strict: bool = False) -> type[ValidationPipe]:
    """Return a ``ValidationPipe`` subclass with its own configuration."""
    return type("ConfiguredValidationPipe", (ValidationPipe,), {"strict": strict})


def _validation_target(declared_type: Any) -> Any:
    inner, _metadata = split_annotated(declared_type)
    inner, _nullable = unwrap_optional(inner)
    if not isinstance(inner, type):
        return None
    if issubclass(inner, BaseModel) or dataclasses.is_dataclass(inner):
        return inner
    return None


def _field_errors(error: ValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "__root__"
        errors.setdefault(location, []).append(item["msg"])
    return errors
