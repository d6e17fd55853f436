"""Abstract durable work queue consumed by the lifecycle orchestrator."""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Callable, Awaitable
from datetime import datetime
from enum import Enum
import logging

from pydantic import BaseModel, Field

from service_lifecycle.models.instance import utc_now

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Kinds of lifecycle work."""
    DISPATCH = "dispatch"
    POLL = "poll"
    ORPHAN_MITIGATION = "orphan_mitigation"


class JobOutcome(str, Enum):
    """How a unit of work ended."""
    COMPLETED = "completed"
    FAILED = "failed"
    RESCHEDULED = "rescheduled"


class JobState(str, Enum):
    """Queue-side state of a unit of work."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RESCHEDULED = "rescheduled"


class WorkUnit(BaseModel):
    """One unit of durable lifecycle work."""
    job_guid: str = Field(..., description="Per-job identity used for de-duplication")
    job_type: JobType = Field(..., description="Step to execute")
    instance_guid: str = Field(..., description="Target service instance")
    operation_guid: str = Field(..., description="Operation state the unit belongs to")
    attempt: int = Field(default=1, ge=1, description="1-based attempt counter for this step")
    retries: int = Field(default=0, ge=0, description="Times this job was released after an unexpected error")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Step inputs")
    not_before: datetime = Field(default_factory=utc_now, description="Earliest eligible run time")


CompletionListener = Callable[[WorkUnit, JobOutcome], Awaitable[None]]


class WorkQueue(ABC):
    """At-least-once queue with future scheduling and completion callbacks."""

    def __init__(self):
        self._listeners: List[CompletionListener] = []

    def add_listener(self, listener: CompletionListener) -> None:
        """Register a coroutine called with every unit's final outcome."""
        self._listeners.append(listener)

    async def _notify(self, unit: WorkUnit, outcome: JobOutcome) -> None:
        for listener in self._listeners:
            try:
                await listener(unit, outcome)
            except Exception as e:
                logger.error(f"Completion listener failed for job {unit.job_guid}: {e}")

    @abstractmethod
    async def schedule(self, unit: WorkUnit, not_before: datetime) -> bool:
        """Schedule a unit. Returns False if the job identity is already known."""
        pass

    @abstractmethod
    async def reserve_due(self, now: datetime, limit: int = 20) -> List[WorkUnit]:
        """Claim units whose eligible time has passed."""
        pass

    @abstractmethod
    async def complete(self, unit: WorkUnit, outcome: JobOutcome) -> None:
        """Record the outcome of a reserved unit and notify listeners."""
        pass

    @abstractmethod
    async def release(self, unit: WorkUnit, not_before: datetime) -> None:
        """Return a reserved unit to the queue under the same identity, with its retry count bumped."""
        pass

    @abstractmethod
    async def pending(self) -> List[WorkUnit]:
        """Units not yet executed, ordered by eligible time."""
        pass
