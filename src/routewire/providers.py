from __future__ import annotations

import inspect
import types
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum, auto
from inspect import Parameter
from typing import Any, Union, get_args, get_origin, get_type_hints

from routewire.exceptions import DuplicateTokenError, InvalidRegistrationError, UnknownTokenError
from routewire.markers import Inject, find_marker, split_annotated
from routewire.resolution import token_name
from routewire.scope import Scope

_MISSING_ANNOTATION: Any = object()
_IMPLICIT_FIRST_PARAMETER_NAMES = {"self", "cls"}
_COROUTINE_RESULT_INDEX = 2
_COROUTINE_ARGUMENT_COUNT = 3
_NON_INJECTABLE_TYPES: frozenset[Any] = frozenset(
    {int, float, complex, str, bytes, bool, list, dict, set, tuple, frozenset, object, type(None)},
)


class ProviderKind(Enum):
    """Construction strategy of a provider."""

    CONSTRUCTOR = auto()
    """Instantiate a class with its resolved constructor dependencies."""

    VALUE = auto()
    """Return a value given at registration."""

    FACTORY = auto()
    """Call a sync or async factory with its resolved dependencies."""


@dataclass(frozen=True, slots=True)
class ProviderDependency:
    """One injectable parameter of a constructor, factory or handler.

    ``token`` is ``None`` when the parameter type could not be identified; in
    that case ``error`` explains why and resolving the owner fails.
    """

    name: str
    index: int
    token: Any
    scope: Scope | None = None
    nullable: bool = False
    has_default: bool = False
    annotation: Any = None
    error: str | None = None

    @property
    def is_resolvable(self) -> bool:
        return self.token is not None


@dataclass(kw_only=True)
class Provider:
    """The registered recipe for producing an instance for a token."""

    token: Any
    """The class or string key this provider is looked up by."""
    kind: ProviderKind
    concrete_type: type[Any] | None = None
    """Class instantiated by ``CONSTRUCTOR`` providers."""
    value: Any = None
    """Value returned by ``VALUE`` providers."""
    factory: Callable[..., Any] | None = None
    """Callable used by ``FACTORY`` providers."""
    dependencies: list[ProviderDependency] = field(default_factory=list)
    """Descriptor table of the constructor/factory parameters, built at registration."""
    scope: Scope = Scope.SHARED
    """Default scope when the injection site carries no tag."""
    is_async: bool = False
    """Whether the factory returns an awaitable."""
    deferred: bool = False
    """Whether the factory settles in the background behind a ``DeferredHandle``."""

    @property
    def name(self) -> str:
        return token_name(self.token)


class ProvidersRegistry:
    """Hold the providers known to a container, one per token.

    The registry is append-only while the application boots and read-only
    once ``freeze`` was called; providers never change shape mid-process.
    """

    def __init__(self) -> None:
        self._providers: dict[Any, Provider] = {}
        self._frozen = False

    def register(self, provider: Provider) -> None:
        """Add a provider, refusing duplicate tokens and late registrations."""
        if self._frozen:
            msg = f"Cannot register '{provider.name}': the provider registry is frozen."
            raise InvalidRegistrationError(msg)
        if provider.token in self._providers:
            raise DuplicateTokenError(provider.name)
        self._providers[provider.token] = provider

    def lookup(self, token: Any) -> Provider:
        """Return the provider registered for ``token``."""
        provider = self._providers.get(token)
        if provider is None:
            raise UnknownTokenError(token_name(token))
        return provider

    def find(self, token: Any) -> Provider | None:
        return self._providers.get(token)

    def values(self) -> list[Provider]:
        return list(self._providers.values())

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, token: object) -> bool:
        return token in self._providers

    def __len__(self) -> int:
        return len(self._providers)


@dataclass(slots=True)
class DependenciesExtractor:
    """Build dependency descriptors from constructor and factory signatures."""

    def extract_from_concrete_type(self, concrete_type: type[Any]) -> list[ProviderDependency]:
        """Extract dependencies from a class constructor."""
        if concrete_type.__init__ is object.__init__:
            return []
        return self.extract(
            concrete_type.__init__,
            owner_name=concrete_type.__qualname__,
            skip_first_parameter=True,
        )

    def extract_from_factory(self, factory: Callable[..., Any]) -> list[ProviderDependency]:
        """Extract dependencies from a factory callable."""
        return self.extract(
            factory,
            owner_name=provider_callable_name(factory),
            skip_first_parameter=False,
        )

    def extract(
        self,
        func: Callable[..., Any],
        *,
        owner_name: str,
        skip_first_parameter: bool,
    ) -> list[ProviderDependency]:
        """Extract every injectable parameter of ``func``.

        Unidentifiable required parameters are returned with ``token=None``
        so the wiring validator can report them all at startup.
        """
        parameters = self.parameters(func, skip_first_parameter=skip_first_parameter)
        annotations, annotation_error = resolved_type_hints(func)
        dependencies: list[ProviderDependency] = []

        for index, parameter in enumerate(parameters):
            annotation = parameter_annotation(parameter, annotations)
            dependency = self.describe(
                parameter=parameter,
                index=index,
                annotation=annotation,
                annotation_error=annotation_error,
            )
            if dependency is not None:
                dependencies.append(dependency)

        return dependencies

    def describe(
        self,
        *,
        parameter: Parameter,
        index: int,
        annotation: Any,
        annotation_error: Exception | None,
    ) -> ProviderDependency | None:
        """Describe one parameter, or return ``None`` when it is left to its default."""
        has_default = parameter.default is not Parameter.empty
        if annotation is _MISSING_ANNOTATION:
            if has_default:
                return None
            reason = "missing type annotation"
            if annotation_error is not None:
                reason = f"annotation error: {annotation_error}"
            return ProviderDependency(
                name=parameter.name,
                index=index,
                token=None,
                has_default=False,
                error=reason,
            )

        inner, metadata = split_annotated(annotation)
        inject = find_marker(metadata, Inject)
        inner, nullable = unwrap_optional(inner)
        explicit_token = inject.token if inject is not None else None
        scope = inject.scope if inject is not None else None

        if explicit_token is not None:
            return ProviderDependency(
                name=parameter.name,
                index=index,
                token=explicit_token,
                scope=scope,
                nullable=nullable,
                has_default=has_default,
                annotation=inner,
            )

        if not is_injectable_type(inner):
            if has_default:
                return None
            return ProviderDependency(
                name=parameter.name,
                index=index,
                token=None,
                nullable=nullable,
                annotation=inner,
                error=f"type {inner!r} cannot be injected without an Inject(token) marker",
            )

        return ProviderDependency(
            name=parameter.name,
            index=index,
            token=inner,
            scope=scope,
            nullable=nullable,
            has_default=has_default,
            annotation=inner,
        )

    @staticmethod
    def parameters(
        func: Callable[..., Any],
        *,
        skip_first_parameter: bool,
    ) -> tuple[Parameter, ...]:
        parameters = tuple(
            parameter
            for parameter in inspect.signature(func).parameters.values()
            if parameter.kind not in (Parameter.VAR_POSITIONAL, Parameter.VAR_KEYWORD)
        )
        if (
            skip_first_parameter
            and parameters
            and parameters[0].name in _IMPLICIT_FIRST_PARAMETER_NAMES
        ):
            return parameters[1:]
        return parameters


def resolved_type_hints(func: Callable[..., Any]) -> tuple[dict[str, Any], Exception | None]:
    try:
        return get_type_hints(func, include_extras=True), None
    except (AttributeError, NameError, TypeError) as error:
        return {}, error


def parameter_annotation(parameter: Parameter, annotations: dict[str, Any]) -> Any:
    annotation = annotations.get(parameter.name, _MISSING_ANNOTATION)
    if annotation is not _MISSING_ANNOTATION:
        return annotation
    raw_annotation = parameter.annotation
    if raw_annotation is not Parameter.empty and not isinstance(raw_annotation, str):
        return raw_annotation
    return _MISSING_ANNOTATION


def is_missing_annotation(annotation: Any) -> bool:
    return annotation is _MISSING_ANNOTATION


def unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    """Return ``(T, True)`` for ``T | None`` / ``Optional[T]``, ``(annotation, False)`` otherwise."""
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) == 1 and len(get_args(annotation)) == 2:  # noqa: PLR2004
            return args[0], True
    return annotation, False


def is_injectable_type(annotation: Any) -> bool:
    """Return whether a class annotation can serve as a token on its own."""
    return (
        isinstance(annotation, type)
        and not isinstance(annotation, types.GenericAlias)
        and annotation not in _NON_INJECTABLE_TYPES
    )


def is_async_factory(factory: Callable[..., Any]) -> bool:
    """Check whether a factory returns an awaitable."""
    unwrapped = inspect.unwrap(factory)
    if inspect.iscoroutinefunction(unwrapped):
        return True
    call = getattr(unwrapped, "__call__", None)  # noqa: B004
    if not inspect.isfunction(unwrapped) and inspect.iscoroutinefunction(call):
        return True
    return_annotation = resolved_type_hints(unwrapped)[0].get("return")
    return get_origin(return_annotation) in (Awaitable, Coroutine)


def factory_return_type(factory: Callable[..., Any]) -> Any:
    """Extract the produced type from a factory return annotation, if any."""
    return_annotation = resolved_type_hints(factory)[0].get("return", _MISSING_ANNOTATION)
    if return_annotation is _MISSING_ANNOTATION:
        return None
    origin = get_origin(return_annotation)
    args = get_args(return_annotation)
    if origin is Awaitable and len(args) == 1:
        return args[0]
    if origin is Coroutine and len(args) == _COROUTINE_ARGUMENT_COUNT:
        return args[_COROUTINE_RESULT_INDEX]
    return return_annotation


def provider_callable_name(provider: Callable[..., Any]) -> str:
    return getattr(provider, "__qualname__", repr(provider))
