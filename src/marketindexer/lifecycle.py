"""
Process lifetime and coordinated shutdown.

The ShutdownCoordinator owns:
- a LifetimeToken, cancelled once on SIGINT/SIGTERM (or programmatically)
- the outstanding-task count; every long-running task holds a
  TaskRegistration while it runs

Shutdown sequence:
    signal -> request_shutdown() -> token cancelled -> token callbacks close
    stream connections -> tasks exit and release registrations ->
    wait_drained() returns
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Type alias for cancellation callbacks
CancelCallback = Callable[[], None]


class LifetimeToken:
    """
    Cancellable lifetime token shared by every task of a pipeline.

    Cancellation is one-shot: the first cancel() fires the callbacks, later
    calls are no-ops.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[CancelCallback] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """
        Cancel the token.

        Returns:
            True if this call cancelled the token, False if it was already cancelled.
        """
        if self._event.is_set():
            return False
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def sleep(self, delay_s: float) -> bool:
        """
        Sleep for delay_s unless the token is cancelled first.

        Returns:
            True if the token was cancelled (sleep interrupted), False otherwise.
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay_s)
        except TimeoutError:
            return False
        return True

    def add_callback(self, callback: CancelCallback) -> CancelCallback:
        """
        Register a callback fired when the token is cancelled.

        Fires immediately if the token is already cancelled.

        Returns:
            A function that unregisters the callback.
        """
        if self.cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return remove


class TaskRegistration:
    """One entry in the coordinator's outstanding-task count."""

    def __init__(self, coordinator: ShutdownCoordinator, name: str) -> None:
        self._coordinator = coordinator
        self._name = name
        self._released = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Remove this registration. Idempotent."""
        if self._released:
            return
        self._released = True
        self._coordinator._on_release(self)

    def __enter__(self) -> TaskRegistration:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"TaskRegistration(name={self._name!r}, released={self._released})"


class ShutdownCoordinator:
    """
    Owns the lifetime token and the outstanding-task count.

    Usage:
        coordinator = ShutdownCoordinator()
        coordinator.install_signal_handlers()
        reg = coordinator.register("BTC-USD/ticker")
        ...
        reg.release()
        await coordinator.wait_drained()
    """

    def __init__(self, lifetime: LifetimeToken | None = None) -> None:
        self._lifetime = lifetime or LifetimeToken()
        self._outstanding: dict[str, int] = {}
        self._count = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._shutdown_reason: str | None = None

    @property
    def lifetime(self) -> LifetimeToken:
        return self._lifetime

    @property
    def outstanding(self) -> int:
        """Number of registered tasks that have not exited yet."""
        return self._count

    @property
    def shutdown_reason(self) -> str | None:
        return self._shutdown_reason

    def outstanding_names(self) -> list[str]:
        """Names of outstanding registrations (for diagnostics)."""
        return sorted(name for name, n in self._outstanding.items() if n > 0)

    def register(self, name: str) -> TaskRegistration:
        """Add one task to the outstanding count."""
        self._count += 1
        self._outstanding[name] = self._outstanding.get(name, 0) + 1
        self._drained.clear()
        logger.debug("Task registered", extra={"task": name, "outstanding": self._count})
        return TaskRegistration(self, name)

    def _on_release(self, registration: TaskRegistration) -> None:
        self._count -= 1
        remaining = self._outstanding.get(registration.name, 0) - 1
        if remaining > 0:
            self._outstanding[registration.name] = remaining
        else:
            self._outstanding.pop(registration.name, None)
        logger.debug(
            "Task released",
            extra={"task": registration.name, "outstanding": self._count},
        )
        if self._count == 0:
            self._drained.set()

    def request_shutdown(self, reason: str = "requested") -> None:
        """Cancel the lifetime token. Only the first call has an effect."""
        if self._lifetime.cancelled:
            return
        self._shutdown_reason = reason
        logger.info(
            "Got %s. Initiating shutdown.",
            reason,
            extra={"outstanding": self._count},
        )
        self._lifetime.cancel()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route SIGINT/SIGTERM of the running loop to request_shutdown()."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        self.request_shutdown(f"{sig.name} signal")

    async def wait_drained(self, timeout_s: float | None = None) -> bool:
        """
        Block until every registered task has exited.

        Returns:
            True when drained, False if timeout_s expired first.
        """
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout_s)
        except TimeoutError:
            logger.warning(
                "Timed out waiting for tasks to exit",
                extra={"outstanding": self._count, "tasks": self.outstanding_names()},
            )
            return False
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "cancelled": self._lifetime.cancelled,
            "outstanding": self._count,
            "reason": self._shutdown_reason,
        }
