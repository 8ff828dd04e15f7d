from __future__ import annotations

import logging
import types
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from routewire.exceptions import (
    CircularDependencyError,
    InvalidRegistrationError,
    MissingBindingError,
    RouteWireConfigurationError,
    UnknownTokenError,
    UnresolvableDependencyError,
    WiringValidationError,
)
from routewire.providers import ProviderDependency, ProviderKind
from routewire.resolution import token_name
from routewire.routing import (
    MIDDLEWARE_METHOD,
    RouteScanner,
    ScannedMethod,
    controller_meta,
    is_middleware,
    route_methods,
)

if TYPE_CHECKING:
    from routewire.container import Container

logger = logging.getLogger(__name__)

_OPAQUE_ANNOTATIONS: frozenset[Any] = frozenset({Any, object})


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """One wiring problem found at startup."""

    owner: str
    """Class or handler the problem was found in."""
    issue: str
    suggestion: str | None = None
    kind: type[RouteWireConfigurationError] = RouteWireConfigurationError
    """Exception class describing the problem."""


class WiringValidator:
    """Check the whole provider graph and every handler signature before serving.

    The validator walks every registered provider and every controller,
    middleware and pipe class once, collecting all issues instead of stopping
    at the first one, so a broken application reports everything it needs
    fixed in a single boot attempt.
    """

    def __init__(
        self,
        container: Container,
        *,
        controllers: Sequence[type[Any]] = (),
        middlewares: Sequence[type[Any]] = (),
        pipes: Sequence[type[Any]] = (),
        scanner: RouteScanner | None = None,
    ) -> None:
        self._container = container
        self._controllers = tuple(controllers)
        self._middlewares = tuple(middlewares)
        self._pipes = tuple(pipes)
        self._scanner = scanner or RouteScanner(container.extractor)
        self._issues: list[ValidationIssue] = []

    def validate(self) -> list[ValidationIssue]:
        """Run every check and return the collected issues (empty when wiring is sound)."""
        self._issues = []

        providers = self._container.registry.values()
        for provider in providers:
            for dependency in provider.dependencies:
                self._check_dependency(provider.name, dependency)

        completed: set[Any] = set()
        for provider in providers:
            self._check_cycles(provider.token, [], completed)

        for cls in self._controllers:
            self._check_controller(cls)
        for cls in self._middlewares:
            self._check_middleware(cls)
        for cls in self._pipes:
            self._check_pipe(cls)

        return list(self._issues)

    def raise_for_issues(self) -> None:
        """Validate, log the aggregated report and raise ``WiringValidationError`` on any issue."""
        issues = self.validate()
        if not issues:
            logger.info("Wiring validation passed")
            return
        logger.error(format_issues(issues))
        raise WiringValidationError(issues)

    def _add(
        self,
        owner: str,
        issue: str,
        suggestion: str | None,
        kind: type[RouteWireConfigurationError],
    ) -> None:
        self._issues.append(ValidationIssue(owner=owner, issue=issue, suggestion=suggestion, kind=kind))

    def _check_dependency(self, owner: str, dependency: ProviderDependency) -> None:
        if not dependency.is_resolvable:
            self._add(
                owner,
                f"Dependency '{dependency.name}' at position {dependency.index} cannot be identified "
                f"({dependency.error})",
                "Annotate the parameter with an importable class or use Inject(token)",
                UnresolvableDependencyError,
            )
            return

        provider = self._container.registry.find(dependency.token)
        if provider is None:
            if dependency.has_default:
                return
            name = token_name(dependency.token)
            if isinstance(dependency.token, str):
                self._add(
                    owner,
                    f"Injection token '{name}' is not registered",
                    f"Register the token in your app config: Injection(token='{name}', provide=...)",
                    UnknownTokenError,
                )
            else:
                self._add(
                    owner,
                    f"Dependency at position {dependency.index} ({owner} -> {name}) is not injectable",
                    f"Decorate {name} with @injectable() or list it in the app config",
                    UnknownTokenError,
                )
            return

        if provider.deferred and self._requires_nullable(dependency):
            name = token_name(dependency.token)
            self._add(
                owner,
                f"Deferred async injection '{name}' at parameter {dependency.index} must be typed as nullable",
                f"Annotate the parameter as Optional[...] for '{name}'",
                InvalidRegistrationError,
            )

    @staticmethod
    def _requires_nullable(dependency: ProviderDependency) -> bool:
        """Return whether a deferred injection site is class-typed and not nullable.

        Opaque annotations (``Any``, ``object``, generic aliases such as
        ``dict[str, Any]``, and mappings) are not checked.
        """
        annotation = dependency.annotation
        if dependency.nullable or annotation in _OPAQUE_ANNOTATIONS:
            return False
        if not isinstance(annotation, type) or isinstance(annotation, types.GenericAlias):
            return False
        return not issubclass(annotation, Mapping)

    def _check_cycles(self, token: Any, path: list[Any], completed: set[Any]) -> None:
        if token in completed:
            return
        provider = self._container.registry.find(token)
        if provider is None or provider.kind is ProviderKind.VALUE:
            completed.add(token)
            return

        path.append(token)
        for dependency in provider.dependencies:
            if not dependency.is_resolvable:
                continue
            if dependency.token in path:
                chain = [token_name(item) for item in path] + [token_name(dependency.token)]
                self._add(
                    token_name(token),
                    str(CircularDependencyError(chain)),
                    "Break the cycle by extracting the shared part into another provider",
                    CircularDependencyError,
                )
                continue
            self._check_cycles(dependency.token, path, completed)
        path.pop()
        completed.add(token)

    def _check_controller(self, cls: type[Any]) -> None:
        owner = cls.__qualname__
        if controller_meta(cls) is None:
            self._add(
                owner,
                "Class is not a controller",
                "Decorate the class with @controller(path)",
                InvalidRegistrationError,
            )
            return

        routes = route_methods(cls)
        if not routes:
            self._add(
                owner,
                "Controller has no route methods",
                "Add @get, @post, @put, @delete or @patch methods",
                InvalidRegistrationError,
            )
        for func, _meta in routes:
            self._check_handler(self._scanner.scan_method(func, owner=owner))

    def _check_middleware(self, cls: type[Any]) -> None:
        owner = cls.__qualname__
        if not is_middleware(cls):
            self._add(
                owner,
                "Class is not a middleware",
                "Decorate the class with @middleware()",
                InvalidRegistrationError,
            )
        use = getattr(cls, MIDDLEWARE_METHOD, None)
        if not callable(use):
            self._add(
                owner,
                "Middleware must implement use()",
                "Add a use() method bound like a route handler",
                InvalidRegistrationError,
            )
            return
        self._check_handler(self._scanner.scan_method(use, owner=owner))

    def _check_pipe(self, cls: type[Any]) -> None:
        if not callable(getattr(cls, "transform", None)):
            self._add(
                cls.__qualname__,
                "Pipe must implement transform(value, metadata)",
                "Add a transform() method returning the transformed value",
                InvalidRegistrationError,
            )

    def _check_handler(self, scanned: ScannedMethod) -> None:
        for name in scanned.unbound:
            self._add(
                scanned.owner,
                f"Parameter '{name}' in {scanned.method_name}() needs a decorator",
                "Annotate it with Param, Query, Header, Body, Req, Logger or an injection marker",
                MissingBindingError,
            )
        for name in scanned.conflicting:
            self._add(
                scanned.owner,
                f"Parameter '{name}' in {scanned.method_name}() is bound twice",
                "Keep either the source marker or the injection marker",
                MissingBindingError,
            )
        for dependency in scanned.dependencies:
            self._check_dependency(scanned.qualified_name, dependency)


def format_issues(issues: Sequence[ValidationIssue]) -> str:
    lines = ["Decorator validation errors:"]
    for issue in issues:
        lines.append(f"  - {issue.owner}: {issue.issue}.")
        if issue.suggestion:
            lines.append(f"    {issue.suggestion}.")
    return "\n".join(lines)
