from __future__ import annotations

from collections.abc import Sequence
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from routewire.validator import ValidationIssue


class RouteWireError(Exception):
    """Represent a base class for all routewire-specific failures.

    Catch this type when you want to handle any routewire error path without
    matching each concrete exception class individually.
    """


class RouteWireConfigurationError(RouteWireError):
    """Signal a wiring mistake that must abort application startup.

    Configuration errors are detected while providers, controllers and
    injections are registered or validated. They are never retried and no
    request is served once one has been raised.
    """


class InvalidRegistrationError(RouteWireConfigurationError):
    """Signal invalid registration input.

    Raised by ``Container.add_concrete``, ``Container.add_instance``,
    ``Container.add_factory`` and by ``Injection`` when arguments are invalid,
    and by any registration attempted after the registry was frozen.

    Typical fixes include passing a class to ``add_concrete``, giving exactly
    one of ``provide``/``factory`` for an injection, and registering every
    provider before the application is built.
    """


class DuplicateTokenError(RouteWireConfigurationError):
    """Signal a second registration under an already registered token.

    A token resolves to exactly one provider, so re-registration is refused
    instead of silently replacing the first provider.
    """

    def __init__(self, token_name: str) -> None:
        self.token_name = token_name
        super().__init__(f"Token '{token_name}' is already registered.")


class UnknownTokenError(RouteWireConfigurationError):
    """Signal that a token has no registered provider.

    Raised by ``ProvidersRegistry.lookup`` and by the resolver when a
    dependency (class or string token) was never registered.

    Typical fixes include decorating the class with ``@injectable()`` or
    adding ``Injection(token=..., provide=...)`` to the application config.
    """

    def __init__(self, token_name: str) -> None:
        self.token_name = token_name
        super().__init__(f"Injection token '{token_name}' is not registered.")


class CircularDependencyError(RouteWireConfigurationError):
    """Signal a dependency cycle in the provider graph.

    ``chain`` holds the whole build path followed by the token that closed the
    loop, e.g. ``["A", "B", "C", "A"]``.

    Typical fixes include breaking the cycle by moving the shared part into a
    third provider or injecting a factory instead of an instance.
    """

    def __init__(self, chain: Sequence[str]) -> None:
        self.chain = list(chain)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.chain)}")


class UnresolvableDependencyError(RouteWireConfigurationError):
    """Signal a provider parameter whose type cannot be identified.

    Common triggers are missing annotations, forward references that cannot
    be evaluated, and builtin scalar annotations without an ``Inject`` token.
    """

    def __init__(self, owner: str, parameter: str, reason: str) -> None:
        self.owner = owner
        self.parameter = parameter
        super().__init__(f"Cannot resolve parameter '{parameter}' of '{owner}': {reason}")


class MissingBindingError(RouteWireConfigurationError):
    """Signal a handler parameter without any source or injection marker.

    Every parameter of a route or middleware method must be annotated with
    one of ``Param``, ``Query``, ``Header``, ``Body``, ``Req``, ``Logger`` or
    an injection marker.
    """


class WiringValidationError(RouteWireConfigurationError):
    """Signal that the startup wiring validator found issues.

    ``issues`` holds every ``ValidationIssue`` collected during the pass so
    all misconfigurations are reported at once.
    """

    def __init__(self, issues: Sequence[ValidationIssue]) -> None:
        self.issues = list(issues)
        lines = [f"{issue.owner}: {issue.issue}" for issue in self.issues]
        super().__init__("Wiring validation failed:\n  " + "\n  ".join(lines))


class AsyncDependencyInSyncContextError(RouteWireError):
    """Signal sync resolution of an async dependency chain.

    Raised by ``Container.resolve`` when the selected provider graph contains
    an async factory.

    Typical fix is switching to ``await container.aresolve(...)`` or
    ``await application.abuild()``.
    """

    def __init__(self, token_name: str) -> None:
        self.token_name = token_name
        super().__init__(
            f"Provider '{token_name}' is asynchronous and cannot be resolved synchronously. "
            "Use aresolve() instead.",
        )


class HttpError(RouteWireError):
    """Signal a request failure carrying an HTTP status.

    Pipes and handlers raise it (or subclasses) to abort a request; the
    error reporter turns ``status``, ``message`` and ``data`` into the
    response payload.
    """

    def __init__(self, status: HTTPStatus | int, message: str, **data: Any) -> None:
        self.status = HTTPStatus(status)
        self.message = message
        self.data = data
        self.stage: str | None = None
        super().__init__(message)


class CastError(HttpError):
    """Signal a strict-mode type casting failure for one parameter.

    ``param_name`` names the parameter, including the item index for array
    items (``tags[2]``); ``raw_value`` is the offending input.
    """

    def __init__(self, param_name: str, expected: str, raw_value: Any) -> None:
        self.param_name = param_name
        self.raw_value = raw_value
        super().__init__(
            HTTPStatus.BAD_REQUEST,
            f"Parameter '{param_name}' expected {expected}, got '{raw_value}'",
        )


class PayloadTooLargeError(HttpError):
    """Signal a request body larger than ``max_body_size``."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            f"Request body size ({size} bytes) exceeds maximum allowed size ({limit} bytes)",
        )


class ValidationPipeError(HttpError):
    """Signal that ``ValidationPipe`` rejected a parameter value.

    ``errors`` maps each failing field location to its messages.
    """

    def __init__(self, target: str, errors: dict[str, list[str]]) -> None:
        self.errors = errors
        super().__init__(HTTPStatus.BAD_REQUEST, f"{target} validation failed", errors=errors)
