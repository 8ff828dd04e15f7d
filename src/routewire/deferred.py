from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable
from typing import Any

from routewire.resolution import token_name

logger = logging.getLogger(__name__)


class DeferredHandle:
    """Nullable handle to the value of a deferred factory.

    The handle starts empty and is settled exactly once from a background
    task: with the produced value on success, or left ``None`` on failure.
    Readers before settlement observe ``None``.
    """

    __slots__ = ("_event", "_lock", "_settled", "_value", "error", "token")

    def __init__(self, token: Any) -> None:
        self.token = token
        self.error: BaseException | None = None
        self._value: Any = None
        self._settled = False
        self._lock = threading.Lock()
        self._event = threading.Event()

    @property
    def value(self) -> Any:
        return self._value

    @property
    def settled(self) -> bool:
        return self._settled

    def settle(self, value: Any) -> None:
        """Publish the factory result. A handle can only settle once."""
        with self._lock:
            self._ensure_unsettled()
            self._value = value
            self._settled = True
        self._event.set()

    def fail(self, error: BaseException) -> None:
        """Mark the handle settled without a value."""
        with self._lock:
            self._ensure_unsettled()
            self.error = error
            self._settled = True
        self._event.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the handle settled; return whether it did within ``timeout``."""
        return self._event.wait(timeout)

    def _ensure_unsettled(self) -> None:
        if self._settled:
            msg = f"Deferred handle for '{token_name(self.token)}' is already settled."
            raise RuntimeError(msg)

    def __repr__(self) -> str:
        return (
            f"DeferredHandle(token={token_name(self.token)!r}, "
            f"settled={self._settled}, value={self._value!r})"
        )


class DeferredTracker:
    """Start deferred factories without blocking and track their handles.

    Factories run as ``asyncio`` tasks on the running loop, or on a daemon
    thread with its own loop when registration happens outside one. The
    framework never retries a failed factory.
    """

    def __init__(self) -> None:
        self._handles: dict[Any, DeferredHandle] = {}
        # Strong references so pending tasks are not garbage collected
        self._tasks: set[asyncio.Task[None]] = set()
        self._threads: list[threading.Thread] = []

    def register_deferred(self, token: Any, factory: Callable[[], Any]) -> DeferredHandle:
        """Return a fresh unsettled handle for ``token`` and schedule ``factory``."""
        handle = DeferredHandle(token)
        self._handles[token] = handle

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            thread = threading.Thread(
                target=asyncio.run,
                args=(self._run(handle, factory),),
                name=f"routewire-deferred-{token_name(token)}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        else:
            task = loop.create_task(self._run(handle, factory))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return handle

    def handle(self, token: Any) -> DeferredHandle | None:
        return self._handles.get(token)

    async def drain(self) -> None:
        """Wait for every deferred factory scheduled on the current loop to settle."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def join(self, timeout: float | None = None) -> None:
        """Wait for deferred factories started on background threads."""
        for thread in self._threads:
            thread.join(timeout)

    async def _run(self, handle: DeferredHandle, factory: Callable[[], Any]) -> None:
        try:
            if inspect.iscoroutinefunction(factory):
                value = await factory()
            else:
                value = await asyncio.to_thread(factory)
                if inspect.isawaitable(value):
                    value = await value
        except Exception as error:  # noqa: BLE001
            logger.debug("Deferred provider '%s' failed", token_name(handle.token), exc_info=True)
            handle.fail(error)
            return
        except BaseException as error:
            # Cancellation or interpreter shutdown still settles the handle
            handle.fail(error)
            raise
        handle.settle(value)
