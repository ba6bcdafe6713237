"""
Background dispatch of due timers and scheduled instance starts.

The dispatcher polls the timer and instance stores and hands due work to
the engine. Several dispatchers may poll the same stores: a timer is only
fired by whoever marks it triggered first.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from workflow_runtime.config import Settings, get_settings
from workflow_runtime.core.clock import utc_now
from workflow_runtime.core.exceptions import WorkflowError
from workflow_runtime.core.models import WorkflowTimer
from workflow_runtime.engine.engine import WorkflowEngine
from workflow_runtime.storage.base import InstanceStore, TimerStore

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """What one dispatch pass did."""

    timers_fired: list[UUID] = field(default_factory=list)
    instances_started: list[UUID] = field(default_factory=list)
    failures: int = 0

    @property
    def total(self) -> int:
        return len(self.timers_fired) + len(self.instances_started)


class WorkflowDispatcher:
    """
    Polls for due timers and scheduled instances.

    Use ``run_once`` to drive dispatch explicitly (tests, cron jobs) or
    ``start``/``stop`` to run it as a background task.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        timers: Optional[TimerStore] = None,
        instances: Optional[InstanceStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.engine = engine
        self.timers = timers or engine.timers
        self.instances = instances or engine.instances
        self.settings = settings or engine.settings or get_settings()

        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info(
            f"Dispatcher started (poll interval {self.settings.dispatch.poll_interval}s)"
        )

    async def stop(self) -> None:
        """Stop the polling loop gracefully."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Dispatcher stopped")

    async def _dispatch_loop(self) -> None:
        interval = self.settings.dispatch.poll_interval

        while self._running:
            try:
                report = await self.run_once()
                if report.total or report.failures:
                    logger.debug(
                        f"Dispatch pass: {len(report.timers_fired)} timers, "
                        f"{len(report.instances_started)} starts, {report.failures} failures"
                    )
            except asyncio.CancelledError:
                logger.debug("Dispatch loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in dispatch loop: {e}", exc_info=True)

            await asyncio.sleep(interval)

    async def run_once(self, now: Optional[datetime] = None) -> DispatchReport:
        """
        Run a single dispatch pass.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            DispatchReport of fired timers, started instances and failures
        """
        now = now or utc_now()
        report = DispatchReport()
        batch_size = self.settings.dispatch.batch_size

        for timer in await self.timers.get_due(now, batch_size):
            await self._fire_timer(timer, report)

        if self.settings.dispatch.start_scheduled_instances:
            for state in await self.instances.get_scheduled(now, batch_size):
                try:
                    await self.engine.start(state.id)
                    report.instances_started.append(state.id)
                except WorkflowError as e:
                    report.failures += 1
                    logger.error(f"Failed to start scheduled instance {state.id}: {e}", exc_info=True)

        return report

    async def _fire_timer(self, timer: WorkflowTimer, report: DispatchReport) -> None:
        if not await self.timers.mark_triggered(timer.id):
            # Claimed by another dispatcher
            return

        try:
            await self.engine.resume(
                timer.instance_id,
                timer.bookmark_name,
                {"timerId": str(timer.id), "firedAt": utc_now().isoformat()},
            )
            report.timers_fired.append(timer.id)
            logger.info(f"Timer {timer.id} fired for instance {timer.instance_id}")
        except WorkflowError as e:
            report.failures += 1
            logger.error(
                f"Timer {timer.id} could not resume instance {timer.instance_id} "
                f"at {timer.bookmark_name}: {e}",
                exc_info=True,
            )


class SignalRouter:
    """Routes named signals from outside the engine to waiting instances."""

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine

    async def dispatch_signal(
        self,
        signal_name: str,
        data: Any = None,
        workflow_id: Optional[str] = None,
    ) -> list[UUID]:
        """Broadcast a signal; returns the ids of resumed instances."""
        logger.info(f"Routing signal '{signal_name}'" + (f" to workflow {workflow_id}" if workflow_id else ""))
        return await self.engine.broadcast_signal(signal_name, data, workflow_id)
