"""Tick-driven scheduler pulling due executions from the store."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from .config import SchedulerConfig
from .engine import AutomationEngine, StepResult
from .errors import ClaimLost
from .persistence import Execution

logger = logging.getLogger(__name__)


class TickReport(BaseModel):
    """Summary of one scheduler tick."""

    loaded: int = 0
    claimed: int = 0
    steps_run: int = 0
    lost: int = 0
    errors: int = 0
    results: dict[str, int] = Field(default_factory=dict)

    def count(self, result: StepResult) -> None:
        self.results[result.value] = self.results.get(result.value, 0) + 1


class Scheduler:
    """Drains due work from the execution store on a fixed cadence.

    Each tick loads at most ``batch_size`` due executions and processes them
    on up to ``max_workers`` concurrent tasks. An execution keeps running
    step after step within the same tick until it parks, finishes or hits
    ``max_steps_per_pass``. Claims carry a lease so work held by a crashed
    worker becomes due again once the lease expires; a live pass renews its
    lease in the background and every write is fenced on it. An error while
    driving one execution is logged and never stops the others.
    """

    def __init__(
        self,
        engine: AutomationEngine,
        config: SchedulerConfig | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.engine = engine
        self.config = config or engine.config.scheduler
        self.worker_id = worker_id or f"worker_{uuid.uuid4().hex[:12]}"
        self._semaphore = asyncio.Semaphore(self.config.max_workers)

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Process everything due at ``now`` (defaults to the engine clock)."""
        now = now or self.engine.clock()
        due = await self.engine.store.load_due(now, limit=self.config.batch_size)
        report = TickReport(loaded=len(due))
        if due:
            logger.debug(f"Tick at {now.isoformat()} loaded {len(due)} due executions")
        await asyncio.gather(*(self._drive(e, now, report) for e in due))
        return report

    async def _drive(self, execution: Execution, now: datetime, report: TickReport) -> None:
        async with self._semaphore:
            try:
                await self._drive_claimed(execution, now, report)
            except ClaimLost as exc:
                report.lost += 1
                logger.warning(f"Execution {execution.id} abandoned: {exc}")
            except Exception as exc:
                report.errors += 1
                logger.error(
                    f"Scheduler {self.worker_id} could not drive execution {execution.id}: {exc}",
                    exc_info=True,
                )

    async def _drive_claimed(
        self, execution: Execution, now: datetime, report: TickReport
    ) -> None:
        claimed = await self.engine.store.claim(
            execution.id, self.worker_id, now, self._lease_until(now)
        )
        if claimed is None:
            logger.warning(f"Execution {execution.id} is claimed by another worker")
            return
        report.claimed += 1
        heartbeat = asyncio.create_task(self._heartbeat(execution.id))
        try:
            for _ in range(self.config.max_steps_per_pass):
                result = await self.engine.run_step(claimed, worker_id=self.worker_id)
                report.steps_run += 1
                report.count(result)
                if not result.continues:
                    break
                claimed = await self.engine.store.get(execution.id)
                if claimed is None:
                    break
            else:
                logger.warning(
                    f"Execution {execution.id} reached {self.config.max_steps_per_pass} "
                    "steps in one pass, deferring to the next tick"
                )
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            await self.engine.store.release(execution.id, self.worker_id)

    def _lease_until(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.config.lease_seconds)

    async def _heartbeat(self, execution_id: str) -> None:
        """Extend the claim every third of a lease while a pass is running."""
        interval = self.config.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            now = self.engine.clock()
            try:
                renewed = await self.engine.store.claim(
                    execution_id, self.worker_id, now, self._lease_until(now)
                )
            except Exception as exc:
                logger.error(f"Lease renewal for execution {execution_id} failed: {exc}")
                continue
            if renewed is None:
                logger.warning(
                    f"Scheduler {self.worker_id} lost the claim on execution {execution_id}"
                )
                return

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Tick every ``tick_interval`` seconds.

        A tick that fails as a whole, for example because the store is
        unreachable, is logged and retried on the next interval.

        Args:
            lifespan: Maximum time in seconds to keep running. If None, runs indefinitely.
        """
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        logger.info(
            f"Scheduler {self.worker_id} started (interval {self.config.tick_interval}s, "
            f"batch {self.config.batch_size}, workers {self.config.max_workers})"
        )
        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            try:
                report = await self.tick()
            except Exception as exc:
                logger.error(f"Scheduler {self.worker_id} tick failed: {exc}", exc_info=True)
            else:
                if report.steps_run:
                    logger.info(
                        f"Tick ran {report.steps_run} steps over {report.claimed} executions"
                    )
            await asyncio.sleep(self.config.tick_interval)
        logger.info(f"Scheduler {self.worker_id} stopped")
