from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from routewire.exceptions import InvalidRegistrationError
from routewire.resolution import token_name

DEFAULT_MAX_BODY_SIZE = 10 * 1024 * 1024

_UNSET: Any = object()


class RouteWireSettings(BaseSettings):
    """Framework switches, read from ``ROUTEWIRE_*`` environment variables.

    Examples:
        .. code-block:: bash

            ROUTEWIRE_STRICT_VALIDATION=true ROUTEWIRE_MAX_BODY_SIZE=1048576 python app.py

    """

    model_config = SettingsConfigDict(env_prefix="ROUTEWIRE_", extra="ignore")

    enable_decorator_validation: bool = True
    """Run the wiring validator at startup and refuse to boot on any issue."""
    strict_validation: bool = False
    """Reject uncastable parameters and malformed JSON bodies with HTTP 400."""
    max_body_size: int = Field(default=DEFAULT_MAX_BODY_SIZE, ge=0)
    """Largest accepted JSON body in bytes, checked against ``content-length``. 0 disables the check."""
    debug: bool = False
    """Log provider instantiation and every handled request at DEBUG level."""


@dataclass(kw_only=True)
class Injection:
    """A custom provider declared in the application config.

    Give exactly one of ``provide`` (a ready value) or ``factory`` (a sync or
    async callable). ``deferred`` factories start in the background and are
    injected as their current value, ``None`` until they settle.
    """

    token: Any
    provide: Any = _UNSET
    factory: Callable[..., Any] | None = None
    deferred: bool = False

    def __post_init__(self) -> None:
        has_value = self.provide is not _UNSET
        if has_value == (self.factory is not None):
            msg = f"Injection '{token_name(self.token)}' needs exactly one of provide= or factory=."
            raise InvalidRegistrationError(msg)
        if self.deferred and self.factory is None:
            msg = f"Injection '{token_name(self.token)}' is deferred but has no factory."
            raise InvalidRegistrationError(msg)

    @property
    def has_value(self) -> bool:
        return self.provide is not _UNSET


@dataclass(kw_only=True)
class AppConfig:
    """Everything an ``Application`` is built from."""

    controllers: list[type[Any]] = field(default_factory=list)
    middlewares: list[type[Any]] = field(default_factory=list)
    """Global middlewares, run before every route in declaration order."""
    global_pipes: list[type[Any]] = field(default_factory=list)
    injections: list[Injection] = field(default_factory=list)
    settings: RouteWireSettings = field(default_factory=RouteWireSettings)
