"""In-process work queue for tests and single-node development."""

import logging
from typing import Dict, List
from datetime import datetime

from service_lifecycle.queue.base import WorkQueue, WorkUnit, JobOutcome, JobState

logger = logging.getLogger(__name__)


class InMemoryWorkQueue(WorkQueue):
    """Work queue held in memory. Job identities are remembered after completion."""

    def __init__(self):
        super().__init__()
        self._units: Dict[str, WorkUnit] = {}
        self._states: Dict[str, JobState] = {}

    async def schedule(self, unit: WorkUnit, not_before: datetime) -> bool:
        if unit.job_guid in self._units:
            logger.debug(f"Job {unit.job_guid} already scheduled, ignoring duplicate")
            return False

        scheduled = unit.model_copy(update={'not_before': not_before})
        self._units[unit.job_guid] = scheduled
        self._states[unit.job_guid] = JobState.PENDING
        logger.debug(f"Scheduled {unit.job_type.value} job {unit.job_guid} for {not_before.isoformat()}")
        return True

    async def reserve_due(self, now: datetime, limit: int = 20) -> List[WorkUnit]:
        due = [
            unit for guid, unit in self._units.items()
            if self._states[guid] == JobState.PENDING and unit.not_before <= now
        ]
        due.sort(key=lambda unit: unit.not_before)
        reserved = due[:limit]
        for unit in reserved:
            self._states[unit.job_guid] = JobState.RUNNING
        return reserved

    async def complete(self, unit: WorkUnit, outcome: JobOutcome) -> None:
        self._states[unit.job_guid] = JobState(outcome.value)
        await self._notify(unit, outcome)

    async def release(self, unit: WorkUnit, not_before: datetime) -> None:
        self._units[unit.job_guid] = unit.model_copy(update={
            'not_before': not_before,
            'retries': unit.retries + 1
        })
        self._states[unit.job_guid] = JobState.PENDING

    async def pending(self) -> List[WorkUnit]:
        units = [unit for guid, unit in self._units.items() if self._states[guid] == JobState.PENDING]
        return sorted(units, key=lambda unit: unit.not_before)

    async def redeliver(self, job_guid: str) -> None:
        """Make a finished or running job eligible again, as a crashed worker would."""
        self._states[job_guid] = JobState.PENDING

    def state_of(self, job_guid: str) -> JobState:
        return self._states[job_guid]
