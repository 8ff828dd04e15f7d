from __future__ import annotations

from typing import Any


def token_name(token: Any) -> str:
    """Return a readable name for a class or string token."""
    if isinstance(token, str):
        return token
    return getattr(token, "__qualname__", None) or getattr(token, "__name__", None) or repr(token)


_MISSING: Any = object()


class ResolutionContext:
    """Hold LOCAL and DEEP_LOCAL instances built during one top-level resolution.

    A context is created per top-level call (per request for handler
    injection) and dropped afterwards. It is never shared between concurrent
    flows, so it needs no locking.

    LOCAL and DEEP_LOCAL builds of the same token are kept apart: a
    DEEP_LOCAL instance owns a private subgraph, a LOCAL one shares its
    children with the SHARED cache.
    """

    __slots__ = ("_instances",)

    def __init__(self) -> None:
        self._instances: dict[tuple[Any, bool], Any] = {}

    def get(self, token: Any, default: Any = None, *, deep: bool = False) -> Any:
        return self._instances.get((token, deep), default)

    def store(self, token: Any, instance: Any, *, deep: bool = False) -> None:
        self._instances[(token, deep)] = instance

    def has(self, token: Any, *, deep: bool = False) -> bool:
        return (token, deep) in self._instances

    def __contains__(self, token: object) -> bool:
        return (token, False) in self._instances or (token, True) in self._instances

    def __len__(self) -> int:
        return len(self._instances)


class BuildStack:
    """Track tokens currently under construction, in order.

    Only used for cycle detection and diagnostics; it lives for one active
    resolution call.
    """

    __slots__ = ("_tokens",)

    def __init__(self) -> None:
        self._tokens: list[Any] = []

    def push(self, token: Any) -> None:
        self._tokens.append(token)

    def pop(self) -> Any:
        return self._tokens.pop()

    def __contains__(self, token: object) -> bool:
        return token in self._tokens

    def chain(self, token: Any) -> list[str]:
        """Return the whole build path followed by ``token``, e.g. ``["A", "B", "A"]``."""
        return [token_name(item) for item in self._tokens] + [token_name(token)]
