"""
Supervisor - keeps one subscription's stream task alive across faults.

State machine:
    STARTING -> RUNNING -> (fault) -> BACKING_OFF -> RESTARTING -> RUNNING -> ...
    any state -> STOPPED once the lifetime token is cancelled

Restarts are unconditional and unbounded: fixed backoff, no retry cap,
no jitter. Every restart gets a brand-new StreamTask (new connection).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from marketindexer.connectors.coinbase.stream import StreamError, StreamTask
from marketindexer.connectors.coinbase.types import (
    FaultKind,
    StreamMetrics,
    StreamOutcome,
    Subscription,
)

if TYPE_CHECKING:
    from marketindexer.context import PipelineContext
    from marketindexer.lifecycle import TaskRegistration

logger = logging.getLogger(__name__)

# Factory used to build a fresh stream task for each (re)start
StreamFactory = Callable[[Subscription, "PipelineContext", StreamMetrics], StreamTask]


class SupervisorState(str, Enum):
    """Supervisor lifecycle state."""

    STARTING = "STARTING"
    RUNNING = "RUNNING"
    BACKING_OFF = "BACKING_OFF"
    RESTARTING = "RESTARTING"
    STOPPED = "STOPPED"


@dataclass
class SupervisorMetrics:
    """
    Counters for one supervisor.

    Attributes:
        subscription: Subscription name.
        starts: Stream task instances launched (first start included).
        restarts: Relaunches after a fault.
        last_fault: Kind of the most recent fault.
        last_error: Message of the most recent fault.
    """

    subscription: str
    starts: int = 0
    restarts: int = 0
    last_fault: FaultKind | None = None
    last_error: str | None = None


class Supervisor:
    """
    Runs a StreamTask for one subscription and relaunches it after faults.

    Every stream task instance holds its own TaskRegistration. On a fault the
    registration for the next instance is taken before the failed one is
    released, so the coordinator's outstanding count never drops to zero while
    a restart is pending.
    """

    def __init__(
        self,
        subscription: Subscription,
        context: PipelineContext,
        *,
        stream_factory: StreamFactory | None = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            subscription: The (market, channel) pair to keep alive.
            context: Pipeline context.
            stream_factory: Builds stream tasks (tests inject fakes here).
        """
        self._subscription = subscription
        self._context = context
        self._stream_factory: StreamFactory = stream_factory or StreamTask
        self._state = SupervisorState.STARTING
        self._stream_metrics = StreamMetrics(subscription=subscription.name)
        self._metrics = SupervisorMetrics(subscription=subscription.name)

    @property
    def subscription(self) -> Subscription:
        return self._subscription

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def metrics(self) -> SupervisorMetrics:
        return self._metrics

    @property
    def stream_metrics(self) -> StreamMetrics:
        return self._stream_metrics

    def _set_state(self, state: SupervisorState) -> None:
        if self._state != state:
            logger.debug(
                "Supervisor state changed",
                extra={
                    "subscription_name": self._subscription.name,
                    "old_state": self._state.value,
                    "new_state": state.value,
                },
            )
            self._state = state

    async def run(self) -> None:
        """Supervise until the lifetime token is cancelled."""
        lifetime = self._context.lifetime
        coordinator = self._context.coordinator
        registration: TaskRegistration = coordinator.register(self._subscription.name)

        try:
            while True:
                if lifetime.cancelled:
                    break

                self._set_state(SupervisorState.RUNNING)
                self._metrics.starts += 1
                outcome = await self._run_once()

                if outcome.stopped or lifetime.cancelled:
                    break

                self._metrics.last_fault = outcome.fault
                self._metrics.last_error = outcome.error
                logger.error(
                    "Stream failed, waiting %.1f seconds and restarting",
                    self._context.restart_backoff_s,
                    extra={
                        "market": self._subscription.market,
                        "channel": self._subscription.channel.value,
                        "fault": outcome.fault.value if outcome.fault else None,
                        "error": outcome.error,
                    },
                )

                # Hand over: the next instance is registered before this one is released.
                next_registration = coordinator.register(self._subscription.name)
                registration.release()
                registration = next_registration

                self._set_state(SupervisorState.BACKING_OFF)
                if await lifetime.sleep(self._context.restart_backoff_s):
                    break

                self._set_state(SupervisorState.RESTARTING)
                self._metrics.restarts += 1
        finally:
            self._set_state(SupervisorState.STOPPED)
            registration.release()

    async def _run_once(self) -> StreamOutcome:
        """Run one stream task instance and convert any fault into an outcome."""
        stream = self._stream_factory(self._subscription, self._context, self._stream_metrics)
        try:
            return await stream.run()
        except asyncio.CancelledError:
            raise
        except StreamError as e:
            return StreamOutcome.failed(e.kind, str(e))
        except Exception as e:
            logger.exception(
                "Unhandled error in stream task",
                extra={"market": self._subscription.market, "channel": self._subscription.channel.value},
            )
            return StreamOutcome.failed(FaultKind.UNEXPECTED, f"{type(e).__name__}: {e}")
