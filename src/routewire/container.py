from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterable, Sequence
from typing import Any, TypeVar, overload

from routewire.deferred import DeferredHandle, DeferredTracker
from routewire.exceptions import (
    AsyncDependencyInSyncContextError,
    CircularDependencyError,
    InvalidRegistrationError,
    UnknownTokenError,
    UnresolvableDependencyError,
)
from routewire.providers import (
    DependenciesExtractor,
    Provider,
    ProviderDependency,
    ProviderKind,
    ProvidersRegistry,
    factory_return_type,
    is_async_factory,
    provider_callable_name,
)
from routewire.resolution import BuildStack, ResolutionContext, token_name
from routewire.scope import Scope, ScopeManager

logger = logging.getLogger(__name__)

T = TypeVar("T")
C = TypeVar("C", bound=type[Any])

INJECTABLE_ATTR = "__routewire_injectable__"


@overload
def injectable(cls: C, /) -> C: ...


@overload
def injectable(cls: None = None, /, *, scope: Scope = Scope.SHARED) -> Callable[[C], C]: ...


def injectable(
    cls: C | None = None,
    /,
    *,
    scope: Scope = Scope.SHARED,
) -> C | Callable[[C], C]:
    """Mark a class as injectable with a default scope.

    Marked classes need no explicit registration: ``register_marked_dependencies``
    registers every one reachable from the providers and handlers of an
    application.
    """

    def decorator(target: C) -> C:
        setattr(target, INJECTABLE_ATTR, scope)
        return target

    if cls is not None:
        return decorator(cls)
    return decorator


def injectable_scope(cls: Any) -> Scope | None:
    """Return the default scope of an ``@injectable`` class, ``None`` when unmarked."""
    return getattr(cls, "__dict__", {}).get(INJECTABLE_ATTR)


class Container:
    """Register providers and resolve dependency graphs on demand.

    Each container owns its provider registry, its SHARED instance cache and
    its deferred handles, so independent containers (one per test, for
    example) never see each other's instances.

    Examples:
        .. code-block:: python

            container = Container()
            container.add_concrete(Database)
            container.add_instance({"dsn": "sqlite://"}, provides="CONFIG")

            service = container.resolve(UserService)

    """

    __slots__ = ("_debug", "_deferred", "_extractor", "_registry", "_scopes")

    def __init__(self, *, debug: bool = False) -> None:
        self._debug = debug
        self._registry = ProvidersRegistry()
        self._scopes = ScopeManager()
        self._deferred = DeferredTracker()
        self._extractor = DependenciesExtractor()

        self.add_instance(self, provides=Container)

    @property
    def registry(self) -> ProvidersRegistry:
        return self._registry

    @property
    def scopes(self) -> ScopeManager:
        return self._scopes

    @property
    def deferred(self) -> DeferredTracker:
        return self._deferred

    @property
    def extractor(self) -> DependenciesExtractor:
        return self._extractor

    # Registration

    def add_concrete(
        self,
        concrete_type: C,
        *,
        provides: Any = None,
        scope: Scope = Scope.SHARED,
    ) -> C:
        """Register a class built from its constructor dependencies.

        Args:
            concrete_type: The class to instantiate.
            provides: Token to register under. Defaults to ``concrete_type``.
            scope: Default scope used when an injection site has no tag.

        Raises:
            InvalidRegistrationError: If ``concrete_type`` is not a concrete class.
            DuplicateTokenError: If the token is already registered.

        """
        if not inspect.isclass(concrete_type):
            msg = f"Concrete provider must be a class, got {concrete_type!r}."
            raise InvalidRegistrationError(msg)
        if inspect.isabstract(concrete_type):
            msg = f"Concrete provider '{concrete_type.__qualname__}' cannot be an abstract class."
            raise InvalidRegistrationError(msg)

        self._registry.register(
            Provider(
                token=concrete_type if provides is None else provides,
                kind=ProviderKind.CONSTRUCTOR,
                concrete_type=concrete_type,
                dependencies=self._extractor.extract_from_concrete_type(concrete_type),
                scope=scope,
            ),
        )
        return concrete_type

    def add_instance(self, value: Any, *, provides: Any) -> None:
        """Register a ready value under ``provides``."""
        if provides is None:
            msg = "Instance providers require an explicit provides= token."
            raise InvalidRegistrationError(msg)
        self._registry.register(Provider(token=provides, kind=ProviderKind.VALUE, value=value))

    def add_factory(
        self,
        factory: Callable[..., Any],
        *,
        provides: Any = None,
        scope: Scope = Scope.SHARED,
        deferred: bool = False,
    ) -> DeferredHandle | None:
        """Register a sync or async factory.

        Non-deferred factories are called with their resolved dependencies when
        the token is first needed. Deferred factories take no dependencies and
        start immediately in the background; consumers receive the value of the
        returned ``DeferredHandle`` at injection time, ``None`` until it settles.

        Raises:
            InvalidRegistrationError: If the token cannot be inferred, or a
                deferred factory declares required parameters.

        """
        if not callable(factory):
            msg = f"Factory provider must be callable, got {factory!r}."
            raise InvalidRegistrationError(msg)

        token = provides if provides is not None else factory_return_type(factory)
        if token is None:
            msg = (
                f"Unable to infer the provided token for factory "
                f"'{provider_callable_name(factory)}'. Add a return annotation or pass provides=."
            )
            raise InvalidRegistrationError(msg)

        dependencies = self._extractor.extract_from_factory(factory)
        if deferred:
            if dependencies:
                msg = (
                    f"Deferred factory '{provider_callable_name(factory)}' cannot declare "
                    "dependencies; it is started before the graph is resolvable."
                )
                raise InvalidRegistrationError(msg)
            provider = Provider(
                token=token,
                kind=ProviderKind.VALUE,
                factory=factory,
                is_async=True,
                deferred=True,
            )
            self._registry.register(provider)
            provider.value = self._deferred.register_deferred(token, factory)
            return provider.value

        self._registry.register(
            Provider(
                token=token,
                kind=ProviderKind.FACTORY,
                factory=factory,
                dependencies=dependencies,
                scope=scope,
                is_async=is_async_factory(factory),
            ),
        )
        return None

    @overload
    def injectable(self, concrete_type: C, /) -> C: ...

    @overload
    def injectable(
        self,
        concrete_type: None = None,
        /,
        *,
        provides: Any = None,
        scope: Scope = Scope.SHARED,
    ) -> Callable[[C], C]: ...

    def injectable(
        self,
        concrete_type: C | None = None,
        /,
        *,
        provides: Any = None,
        scope: Scope = Scope.SHARED,
    ) -> C | Callable[[C], C]:
        """Register a class as injectable, usable bare or as ``@container.injectable(...)``."""
        if concrete_type is not None:
            return self.add_concrete(concrete_type, provides=provides, scope=scope)

        def decorator(decorated: C) -> C:
            return self.add_concrete(decorated, provides=provides, scope=scope)

        return decorator

    def register_marked_dependencies(self, extra_tokens: Iterable[Any] = ()) -> list[type[Any]]:
        """Register every ``@injectable`` class reachable from the registered providers.

        ``extra_tokens`` seeds the walk with tokens that are not provider
        dependencies, such as handler-level injections. Unmarked classes are
        left alone; the wiring validator reports them if nothing provides them.
        """
        registered: list[type[Any]] = []
        pending = [
            dependency.token
            for provider in self._registry.values()
            for dependency in provider.dependencies
        ]
        pending.extend(extra_tokens)

        while pending:
            token = pending.pop()
            if not inspect.isclass(token) or token in self._registry:
                continue
            scope = injectable_scope(token)
            if scope is None:
                continue
            self.add_concrete(token, scope=scope)
            registered.append(token)
            pending.extend(dependency.token for dependency in self._registry.lookup(token).dependencies)

        return registered

    def freeze(self) -> None:
        """End the boot phase; later registrations raise ``InvalidRegistrationError``."""
        self._registry.freeze()

    # Resolution

    @overload
    def resolve(
        self,
        token: type[T],
        *,
        context: ResolutionContext | None = None,
        scope: Scope | None = None,
    ) -> T: ...

    @overload
    def resolve(
        self,
        token: Any,
        *,
        context: ResolutionContext | None = None,
        scope: Scope | None = None,
    ) -> Any: ...

    def resolve(
        self,
        token: Any,
        *,
        context: ResolutionContext | None = None,
        scope: Scope | None = None,
    ) -> Any:
        """Resolve ``token`` to an instance.

        Args:
            token: Class or string token.
            context: Context holding LOCAL instances of this top-level
                resolution. A fresh one is created when omitted.
            scope: Requested scope. Defaults to the provider's own default.

        Raises:
            UnknownTokenError: If the token or one of its dependencies is not registered.
            CircularDependencyError: If the graph loops back onto a token under construction.
            UnresolvableDependencyError: If a parameter type could not be identified.
            AsyncDependencyInSyncContextError: If an async factory is reached.

        """
        return self._resolve(
            token,
            context if context is not None else ResolutionContext(),
            BuildStack(),
            scope,
        )

    async def aresolve(
        self,
        token: Any,
        *,
        context: ResolutionContext | None = None,
        scope: Scope | None = None,
    ) -> Any:
        """Asynchronously resolve ``token``, awaiting async factories on the way."""
        return await self._aresolve(
            token,
            context if context is not None else ResolutionContext(),
            BuildStack(),
            scope,
        )

    def resolve_arguments(
        self,
        dependencies: Sequence[ProviderDependency],
        *,
        owner: str,
        context: ResolutionContext | None = None,
    ) -> dict[str, Any]:
        """Resolve method-level injections of a handler into keyword arguments."""
        return self._resolve_dependencies(
            dependencies,
            owner,
            context if context is not None else ResolutionContext(),
            BuildStack(),
            None,
        )

    async def aresolve_arguments(
        self,
        dependencies: Sequence[ProviderDependency],
        *,
        owner: str,
        context: ResolutionContext | None = None,
    ) -> dict[str, Any]:
        """Asynchronously resolve method-level injections of a handler."""
        return await self._aresolve_dependencies(
            dependencies,
            owner,
            context if context is not None else ResolutionContext(),
            BuildStack(),
            None,
        )

    def _resolve(
        self,
        token: Any,
        context: ResolutionContext,
        stack: BuildStack,
        scope: Scope | None,
    ) -> Any:
        provider = self._registry.lookup(token)
        effective = scope if scope is not None else provider.scope

        if provider.kind is ProviderKind.VALUE:
            return self._provided_value(provider)
        if effective is Scope.SHARED and self._scopes.has_shared(token):
            return self._scopes.get_shared(token)
        deep = effective is Scope.DEEP_LOCAL
        if effective.is_local and context.has(token, deep=deep):
            return context.get(token, deep=deep)
        if token in stack:
            raise CircularDependencyError(stack.chain(token))

        if effective is Scope.SHARED:
            with self._scopes.sync_lock(token):
                # Double-check: another thread may have finished while we waited
                if self._scopes.has_shared(token):
                    return self._scopes.get_shared(token)
                instance = self._build(provider, context, stack, effective)
                return self._scopes.store_shared(token, instance)

        instance = self._build(provider, context, stack, effective)
        context.store(token, instance, deep=deep)
        return instance

    async def _aresolve(
        self,
        token: Any,
        context: ResolutionContext,
        stack: BuildStack,
        scope: Scope | None,
    ) -> Any:
        provider = self._registry.lookup(token)
        effective = scope if scope is not None else provider.scope

        if provider.kind is ProviderKind.VALUE:
            return self._provided_value(provider)
        if effective is Scope.SHARED and self._scopes.has_shared(token):
            return self._scopes.get_shared(token)
        deep = effective is Scope.DEEP_LOCAL
        if effective.is_local and context.has(token, deep=deep):
            return context.get(token, deep=deep)
        if token in stack:
            raise CircularDependencyError(stack.chain(token))

        if effective is Scope.SHARED:
            async with self._scopes.async_guard(token):
                # Double-check: another task or thread may have finished while we waited
                if self._scopes.has_shared(token):
                    return self._scopes.get_shared(token)
                instance = await self._abuild(provider, context, stack, effective)
                return self._scopes.store_shared(token, instance)

        instance = await self._abuild(provider, context, stack, effective)
        context.store(token, instance, deep=deep)
        return instance

    def _build(
        self,
        provider: Provider,
        context: ResolutionContext,
        stack: BuildStack,
        scope: Scope,
    ) -> Any:
        if provider.kind is ProviderKind.FACTORY and provider.is_async:
            raise AsyncDependencyInSyncContextError(provider.name)

        stack.push(provider.token)
        try:
            kwargs = self._resolve_dependencies(
                provider.dependencies,
                provider.name,
                context,
                stack,
                scope,
            )
            instance = self._instantiate(provider, kwargs)
            if inspect.isawaitable(instance):
                if inspect.iscoroutine(instance):
                    instance.close()
                raise AsyncDependencyInSyncContextError(provider.name)
            return instance
        finally:
            stack.pop()

    async def _abuild(
        self,
        provider: Provider,
        context: ResolutionContext,
        stack: BuildStack,
        scope: Scope,
    ) -> Any:
        stack.push(provider.token)
        try:
            kwargs = await self._aresolve_dependencies(
                provider.dependencies,
                provider.name,
                context,
                stack,
                scope,
            )
            instance = self._instantiate(provider, kwargs)
            if inspect.isawaitable(instance):
                instance = await instance
            return instance
        finally:
            stack.pop()

    def _instantiate(self, provider: Provider, kwargs: dict[str, Any]) -> Any:
        if self._debug:
            logger.debug("load %s {%d}", provider.name, len(kwargs))
        if provider.kind is ProviderKind.CONSTRUCTOR:
            return provider.concrete_type(**kwargs)  # type: ignore[misc]
        return provider.factory(**kwargs)  # type: ignore[misc]

    def _resolve_dependencies(
        self,
        dependencies: Sequence[ProviderDependency],
        owner: str,
        context: ResolutionContext,
        stack: BuildStack,
        parent_scope: Scope | None,
    ) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for dependency in dependencies:
            child_scope = self._dependency_scope(dependency, owner, parent_scope)
            if child_scope is None:
                continue
            resolved[dependency.name] = self._resolve(dependency.token, context, stack, child_scope)
        return resolved

    async def _aresolve_dependencies(
        self,
        dependencies: Sequence[ProviderDependency],
        owner: str,
        context: ResolutionContext,
        stack: BuildStack,
        parent_scope: Scope | None,
    ) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for dependency in dependencies:
            child_scope = self._dependency_scope(dependency, owner, parent_scope)
            if child_scope is None:
                continue
            resolved[dependency.name] = await self._aresolve(
                dependency.token,
                context,
                stack,
                child_scope,
            )
        return resolved

    def _dependency_scope(
        self,
        dependency: ProviderDependency,
        owner: str,
        parent_scope: Scope | None,
    ) -> Scope | None:
        """Return the scope to resolve ``dependency`` with, or ``None`` to keep its default value."""
        if not dependency.is_resolvable:
            raise UnresolvableDependencyError(owner, dependency.name, dependency.error or "unknown")
        provider = self._registry.find(dependency.token)
        if provider is None:
            if dependency.has_default:
                return None
            raise UnknownTokenError(token_name(dependency.token))
        return ScopeManager.child_scope(
            parent_scope if parent_scope is not None else Scope.SHARED,
            dependency.scope,
            provider.scope,
        )

    def _provided_value(self, provider: Provider) -> Any:
        if provider.deferred:
            handle: DeferredHandle = provider.value
            return handle.value
        return provider.value
