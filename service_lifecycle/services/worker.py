"""Queue worker loop driving the lifecycle orchestrator."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, List, Tuple

from service_lifecycle.config import WorkerConfig
from service_lifecycle.exceptions import OrphanMitigationExhausted
from service_lifecycle.models.instance import utc_now
from service_lifecycle.queue.base import WorkQueue, WorkUnit, JobOutcome, JobType
from service_lifecycle.services.orchestrator import LifecycleOrchestrator
from service_lifecycle.utils.retry import RetryConfig, RetryManager

logger = logging.getLogger(__name__)


class LifecycleWorker:
    """Reserves due units from the queue and runs each one to completion.

    A unit that raises unexpectedly is released back to the queue with
    backoff. Dispatch and poll units are bounded by their action deadline,
    which the orchestrator enforces on the next delivery; orphan mitigation
    units give up after ``max_mitigation_error_retries`` releases.
    """

    def __init__(
        self,
        work_queue: WorkQueue,
        orchestrator: LifecycleOrchestrator,
        config: Optional[WorkerConfig] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.work_queue = work_queue
        self.orchestrator = orchestrator
        self.config = config or WorkerConfig()
        self.clock = clock
        self.running = False
        self.error_retry = RetryManager(RetryConfig(
            base_delay=self.config.error_retry_base_delay,
            max_delay=self.config.error_retry_max_delay,
            jitter=False
        ))

    async def run_once(self, now: Optional[datetime] = None) -> List[Tuple[WorkUnit, JobOutcome]]:
        """Execute every unit that is due at ``now``."""
        now = now or self.clock()
        units = await self.work_queue.reserve_due(now, limit=self.config.batch_size)
        results = []

        for unit in units:
            outcome = await self._execute(unit, now)
            if outcome is None:
                results.append((unit, JobOutcome.RESCHEDULED))
                continue
            await self.work_queue.complete(unit, outcome)
            results.append((unit, outcome))

        return results

    async def _execute(self, unit: WorkUnit, now: datetime) -> Optional[JobOutcome]:
        """Run one unit. Returns None when the unit was released for another delivery."""
        log_extra = {'instance_guid': unit.instance_guid, 'job_guid': unit.job_guid}
        logger.debug(f"Running {unit.job_type.value} job {unit.job_guid} (attempt {unit.attempt})", extra=log_extra)

        try:
            return await self.orchestrator.execute(unit)

        except OrphanMitigationExhausted as e:
            logger.critical(
                f"Unresolved orphan requires operator attention: instance {e.instance_guid} could not be "
                f"deprovisioned after {e.attempts} attempt(s): {e}",
                extra=log_extra
            )
            return JobOutcome.FAILED

        except Exception as e:
            if (unit.job_type == JobType.ORPHAN_MITIGATION
                    and unit.retries >= self.config.max_mitigation_error_retries):
                logger.critical(
                    f"Unresolved orphan requires operator attention: mitigation job {unit.job_guid} for "
                    f"instance {unit.instance_guid} kept failing after {unit.retries} retries: {e}",
                    exc_info=True, extra=log_extra
                )
                return JobOutcome.FAILED

            delay = self.error_retry.calculate_delay(unit.retries + 1)
            logger.error(
                f"Job {unit.job_guid} failed: {e}. Releasing it for another delivery in {delay:.1f}s",
                exc_info=True, extra=log_extra
            )
            await self.work_queue.release(unit, now + timedelta(seconds=delay))
            return None

    async def run_forever(self) -> None:
        """Poll the queue until stop() is called."""
        if self.running:
            logger.warning("Lifecycle worker is already running")
            return

        self.running = True
        logger.info("Lifecycle worker started")

        while self.running:
            try:
                results = await self.run_once()
            except Exception as e:
                logger.error(f"Error in worker loop: {e}")
                results = []

            if not results:
                await asyncio.sleep(self.config.idle_interval_seconds)

        logger.info("Lifecycle worker stopped")

    def stop(self) -> None:
        """Ask the loop to exit after the current batch."""
        self.running = False
