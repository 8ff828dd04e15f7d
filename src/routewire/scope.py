from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any


class Scope(str, Enum):
    """Select how an injected instance is reused.

    The scope is attached at the injection site (a constructor or handler
    parameter), not on the provider. Providers only carry a default used when
    the site does not say otherwise.
    """

    SHARED = "shared"
    """Build once per container and reuse for the lifetime of the process."""

    LOCAL = "local"
    """Build once per top-level resolution context and discard with it."""

    DEEP_LOCAL = "deepLocal"
    """Like ``LOCAL``, and force every untagged transitive dependency to be local too."""

    @property
    def is_local(self) -> bool:
        return self is not Scope.SHARED


_MISSING: Any = object()


class ScopeManager:
    """Own the process-wide SHARED cache and its once-only construction guards.

    The cache is write-once per token. First constructions are serialized per
    token with one ``threading.Lock`` shared by the sync and async paths, so a
    thread and a coroutine racing on the same token build it once. The async
    path also queues coroutines of one loop on an ``asyncio.Lock`` first.
    Readers of finished instances never lock.
    """

    def __init__(self) -> None:
        self._shared: dict[Any, Any] = {}
        self._sync_locks: dict[Any, threading.Lock] = {}
        self._sync_locks_lock = threading.Lock()
        self._async_locks: dict[Any, asyncio.Lock] = {}
        self._async_locks_lock = threading.Lock()

    def has_shared(self, token: Any) -> bool:
        return token in self._shared

    def get_shared(self, token: Any, default: Any = None) -> Any:
        return self._shared.get(token, default)

    def store_shared(self, token: Any, instance: Any) -> Any:
        """Store a finished SHARED instance unless one already exists.

        Returns the instance that ends up cached, which is the first one stored.
        """
        existing = self._shared.get(token, _MISSING)
        if existing is not _MISSING:
            return existing
        self._shared[token] = instance
        return instance

    def shared_tokens(self) -> list[Any]:
        return list(self._shared)

    def sync_lock(self, token: Any) -> threading.Lock:
        """Get or create the thread lock guarding the first construction of ``token``.

        Uses double-checked locking to minimize lock contention.
        """
        lock = self._sync_locks.get(token)
        if lock is None:
            with self._sync_locks_lock:
                lock = self._sync_locks.get(token)
                if lock is None:
                    lock = threading.Lock()
                    self._sync_locks[token] = lock
        return lock

    def async_lock(self, token: Any) -> asyncio.Lock:
        """Get or create the async lock guarding the first construction of ``token``."""
        lock = self._async_locks.get(token)
        if lock is None:
            with self._async_locks_lock:
                lock = self._async_locks.get(token)
                if lock is None:
                    lock = asyncio.Lock()
                    self._async_locks[token] = lock
        return lock

    @asynccontextmanager
    async def async_guard(self, token: Any) -> AsyncIterator[None]:
        """Hold the first-construction guard of ``token`` from a coroutine.

        The thread lock is taken without blocking the event loop: uncontended
        acquisition happens inline, contended acquisition waits in a worker
        thread.
        """
        async with self.async_lock(token):
            lock = self.sync_lock(token)
            if not lock.acquire(blocking=False):
                waiter = asyncio.ensure_future(asyncio.to_thread(lock.acquire))
                try:
                    await asyncio.shield(waiter)
                except asyncio.CancelledError:
                    # The worker still takes the lock; give it back once it does
                    waiter.add_done_callback(lambda _: lock.release())
                    raise
            try:
                yield
            finally:
                lock.release()

    @staticmethod
    def child_scope(
        parent: Scope,
        explicit: Scope | None,
        provider_default: Scope,
    ) -> Scope:
        """Return the effective scope of an edge from a ``parent``-scoped build.

        An explicit tag at the injection site always wins. Without one, a
        ``DEEP_LOCAL`` parent propagates itself to the child; otherwise the
        child provider's own default applies.
        """
        if explicit is not None:
            return explicit
        if parent is Scope.DEEP_LOCAL:
            return Scope.DEEP_LOCAL
        return provider_default
