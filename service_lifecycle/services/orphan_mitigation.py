"""Orphan mitigation: best-effort cleanup deprovision after a failed create."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from service_lifecycle.clients.broker_client import BrokerClientFactory
from service_lifecycle.config import OrchestratorConfig
from service_lifecycle.exceptions import (
    OrphanMitigationExhausted, BrokerTransientError, BrokerFatalError, BrokerMalformedResponseError
)
from service_lifecycle.models.broker import OutcomeKind
from service_lifecycle.models.instance import (
    ServiceInstance, ServicePlan, OperationState, OperationStatus, utc_now
)
from service_lifecycle.queue.base import WorkQueue, WorkUnit, JobType, JobOutcome
from service_lifecycle.storage.base import MetadataStore
from service_lifecycle.utils.retry import RetryConfig, RetryManager

logger = logging.getLogger(__name__)


def orphan_mitigation_job_guid(operation_guid: str, attempt: int = 1) -> str:
    if attempt == 1:
        return f"{operation_guid}:orphan-mitigation"
    return f"{operation_guid}:orphan-mitigation:{attempt}"


class OrphanMitigator:
    """Issues a deprovision for a create that failed after the broker may have allocated resources.

    The unit payload carries a snapshot of the plan and broker, so cleanup
    does not depend on the instance row still existing.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        work_queue: WorkQueue,
        broker_clients: BrokerClientFactory,
        config: OrchestratorConfig,
        clock: Callable[[], datetime] = utc_now
    ):
        self.metadata_store = metadata_store
        self.work_queue = work_queue
        self.broker_clients = broker_clients
        self.config = config
        self.clock = clock
        self.retry = RetryManager(RetryConfig(
            max_attempts=config.orphan_mitigation_max_attempts,
            base_delay=config.orphan_mitigation_base_delay,
            max_delay=config.orphan_mitigation_max_delay,
            jitter=config.dispatch_jitter
        ))

    async def schedule(
        self,
        instance: ServiceInstance,
        plan: ServicePlan,
        operation: OperationState,
        not_before: Optional[datetime] = None
    ) -> bool:
        """Schedule the first mitigation attempt. Duplicate requests are ignored by the queue."""
        not_before = not_before or self.clock()
        unit = WorkUnit(
            job_guid=orphan_mitigation_job_guid(operation.guid),
            job_type=JobType.ORPHAN_MITIGATION,
            instance_guid=instance.guid,
            operation_guid=operation.guid,
            attempt=1,
            payload={
                'instance_name': instance.name,
                'plan': plan.model_dump(mode='json'),
                'broker_guid': plan.broker_guid
            },
            not_before=not_before
        )

        scheduled = await self.work_queue.schedule(unit, not_before)
        if scheduled:
            logger.info(
                f"Scheduled orphan mitigation for instance {instance.guid}",
                extra={'instance_guid': instance.guid, 'job_guid': unit.job_guid}
            )
        return scheduled

    async def execute(self, unit: WorkUnit) -> JobOutcome:
        """Run one mitigation attempt.

        Raises:
            OrphanMitigationExhausted: If the broker rejected the cleanup or the retry budget ran out
        """
        plan = ServicePlan(**unit.payload['plan'])
        broker_guid = unit.payload.get('broker_guid', plan.broker_guid)
        log_extra = {'instance_guid': unit.instance_guid, 'job_guid': unit.job_guid}

        # A stale delivery may have scheduled this after the create succeeded
        instance = await self.metadata_store.get_instance(unit.instance_guid)
        if instance is not None and instance.last_operation is not None:
            operation = instance.last_operation
            if operation.guid == unit.operation_guid and operation.state == OperationStatus.SUCCEEDED:
                logger.info(
                    f"Create of instance {unit.instance_guid} succeeded, skipping orphan mitigation",
                    extra=log_extra
                )
                return JobOutcome.COMPLETED

        broker = await self.metadata_store.get_broker(broker_guid)
        if broker is None:
            raise OrphanMitigationExhausted(
                unit.instance_guid, unit.attempt,
                cause=LookupError(f"Service broker '{broker_guid}' could not be found")
            )

        client = self.broker_clients.for_broker(broker)
        outcome = await client.deprovision(
            unit.instance_guid, plan, request_identity=orphan_mitigation_job_guid(unit.operation_guid)
        )

        if outcome.kind == OutcomeKind.SYNCHRONOUS_SUCCESS:
            logger.info(f"Orphan mitigation deprovisioned instance {unit.instance_guid}", extra=log_extra)
            return JobOutcome.COMPLETED

        if outcome.kind == OutcomeKind.ASYNC_ACCEPTED:
            logger.info(
                f"Orphan mitigation for instance {unit.instance_guid} accepted by broker "
                f"(operation {outcome.operation})",
                extra=log_extra
            )
            return JobOutcome.COMPLETED

        if outcome.kind == OutcomeKind.TRANSIENT_ERROR:
            cause = BrokerTransientError(
                outcome.description, status_code=outcome.status_code, broker_url=broker.broker_url
            )
            if not self.retry.should_retry(unit.attempt, cause):
                raise OrphanMitigationExhausted(
                    unit.instance_guid, unit.attempt, broker_url=broker.broker_url, cause=cause
                )

            delay = self.retry.calculate_delay(unit.attempt)
            if outcome.retry_after is not None:
                delay = max(delay, outcome.retry_after)
            next_attempt = unit.attempt + 1
            not_before = self.clock() + timedelta(seconds=delay)

            await self.work_queue.schedule(
                unit.model_copy(update={
                    'job_guid': orphan_mitigation_job_guid(unit.operation_guid, next_attempt),
                    'attempt': next_attempt,
                    'retries': 0
                }),
                not_before
            )
            logger.warning(
                f"Orphan mitigation attempt {unit.attempt} for instance {unit.instance_guid} failed: "
                f"{outcome.description}. Retrying in {delay:.1f}s",
                extra=log_extra
            )
            return JobOutcome.RESCHEDULED

        if outcome.kind == OutcomeKind.MALFORMED_RESPONSE:
            cause = BrokerMalformedResponseError(
                outcome.description, status_code=outcome.status_code, broker_url=broker.broker_url
            )
        else:
            cause = BrokerFatalError(outcome.description, status_code=outcome.status_code, broker_url=broker.broker_url)

        raise OrphanMitigationExhausted(unit.instance_guid, unit.attempt, broker_url=broker.broker_url, cause=cause)
