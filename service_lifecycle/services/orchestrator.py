"""Lifecycle orchestrator: the create/update/delete state machine."""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, Callable, Tuple

from service_lifecycle.audit.recorder import AuditRecorder
from service_lifecycle.clients.broker_client import BrokerClientFactory
from service_lifecycle.config import OrchestratorConfig
from service_lifecycle.models.broker import BrokerCallOutcome, OutcomeKind
from service_lifecycle.models.event import Actor
from service_lifecycle.models.instance import (
    ServiceInstance, ServicePlan, ServiceBroker, Space, OperationState, OperationType,
    OperationStatus, utc_now
)
from service_lifecycle.queue.base import WorkQueue, WorkUnit, JobType, JobOutcome
from service_lifecycle.services.orphan_mitigation import OrphanMitigator
from service_lifecycle.storage.base import MetadataStore
from service_lifecycle.utils.retry import RetryConfig, RetryManager

logger = logging.getLogger(__name__)

ACTION_VERBS = {
    OperationType.CREATE: 'provision',
    OperationType.UPDATE: 'update',
    OperationType.DELETE: 'deprovision',
}


def dispatch_job_guid(operation_guid: str, attempt: int) -> str:
    return f"{operation_guid}:dispatch:{attempt}"


def poll_job_guid(operation_guid: str, attempt: int) -> str:
    return f"{operation_guid}:poll:{attempt}"


def timeout_description(operation_type: OperationType) -> str:
    return f"Service Broker failed to {ACTION_VERBS[operation_type]} within the required time."


class LifecycleOrchestrator:
    """Executes dispatch and poll units for managed service instances.

    Every unit re-reads the live operation state first. A unit whose
    operation is terminal or has been replaced by a newer action exits
    without calling the broker, which makes redelivery safe.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        work_queue: WorkQueue,
        broker_clients: BrokerClientFactory,
        audit_recorder: AuditRecorder,
        config: OrchestratorConfig,
        orphan_mitigator: Optional[OrphanMitigator] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize orchestrator.

        Args:
            metadata_store: Instance and operation state storage
            work_queue: Durable queue follow-up units are scheduled on
            broker_clients: Factory for per-broker clients
            audit_recorder: Receives one fact per terminal transition
            config: Retry, polling and timeout policy
            orphan_mitigator: Cleanup worker for failed creates
            clock: Source of the current time
        """
        self.metadata_store = metadata_store
        self.work_queue = work_queue
        self.broker_clients = broker_clients
        self.audit_recorder = audit_recorder
        self.config = config
        self.clock = clock
        self.orphan_mitigator = orphan_mitigator or OrphanMitigator(
            metadata_store, work_queue, broker_clients, config, clock
        )
        self.dispatch_retry = RetryManager(RetryConfig(
            max_attempts=config.max_dispatch_attempts,
            base_delay=config.dispatch_base_delay,
            max_delay=config.dispatch_max_delay,
            jitter=config.dispatch_jitter
        ))

    async def execute(self, unit: WorkUnit) -> JobOutcome:
        """Run one unit of lifecycle work."""
        if unit.job_type == JobType.ORPHAN_MITIGATION:
            return await self.orphan_mitigator.execute(unit)

        instance = await self.metadata_store.get_instance(unit.instance_guid)
        if instance is None or instance.last_operation is None:
            logger.info(f"Instance {unit.instance_guid} is gone, skipping job {unit.job_guid}")
            return JobOutcome.COMPLETED

        operation = instance.last_operation
        if operation.guid != unit.operation_guid:
            logger.info(
                f"Job {unit.job_guid} belongs to a superseded operation on instance {instance.guid}, skipping"
            )
            return JobOutcome.COMPLETED

        if operation.is_terminal:
            logger.info(
                f"Operation {operation.guid} on instance {instance.guid} is already "
                f"{operation.state.value}, skipping job {unit.job_guid}"
            )
            return JobOutcome.COMPLETED

        now = self.clock()
        log_extra = {
            'instance_guid': instance.guid,
            'operation_type': operation.type.value,
            'job_guid': unit.job_guid
        }

        try:
            plan, broker, space = await self._resolve_broker(instance, operation, unit.payload)
        except LookupError as e:
            logger.error(f"Cannot run {operation.type.value} for instance {instance.guid}: {e}", extra=log_extra)
            return await self._fail(instance, operation, None, unit.payload, str(e), now, mitigate=False)

        if now >= self._deadline(operation):
            logger.warning(f"Operation {operation.guid} exceeded its deadline", extra=log_extra)
            return await self._fail(
                instance, operation, plan, unit.payload, timeout_description(operation.type), now, mitigate=True
            )

        if unit.job_type == JobType.DISPATCH:
            return await self._dispatch(unit, instance, operation, plan, broker, space, now)
        return await self._poll(unit, instance, operation, plan, broker, now)

    # Dispatch

    async def _dispatch(
        self,
        unit: WorkUnit,
        instance: ServiceInstance,
        operation: OperationState,
        plan: ServicePlan,
        broker: ServiceBroker,
        space: Optional[Space],
        now: datetime
    ) -> JobOutcome:
        if operation.broker_operation is not None:
            logger.info(
                f"Operation {operation.guid} was already accepted by the broker, resuming polling",
                extra={'instance_guid': instance.guid, 'job_guid': unit.job_guid}
            )
            await self._schedule_poll(unit, operation, 1, now)
            return JobOutcome.RESCHEDULED

        outcome = await self._call_broker(unit, instance, operation, plan, broker, space)
        logger.info(
            f"Broker {ACTION_VERBS[operation.type]} for instance {instance.guid} returned "
            f"{outcome.kind.value} (status {outcome.status_code})",
            extra={'instance_guid': instance.guid, 'operation_type': operation.type.value, 'job_guid': unit.job_guid}
        )

        if outcome.kind == OutcomeKind.SYNCHRONOUS_SUCCESS:
            return await self._succeed(instance, operation, plan, unit.payload, outcome, now)

        if outcome.kind == OutcomeKind.ASYNC_ACCEPTED:
            accepted = operation.model_copy(update={
                'broker_operation': outcome.operation,
                'description': None,
                'updated_at': now
            })
            # Empty token marks a 202 that carried no operation
            if accepted.broker_operation is None:
                accepted.broker_operation = ''
            if not await self.metadata_store.update_operation(instance.guid, accepted):
                return JobOutcome.COMPLETED
            await self._schedule_poll(unit, accepted, 1, now)
            return JobOutcome.RESCHEDULED

        if outcome.kind == OutcomeKind.TRANSIENT_ERROR:
            if unit.attempt >= self.config.max_dispatch_attempts:
                description = (
                    f"Service broker {ACTION_VERBS[operation.type]} failed after {unit.attempt} attempt(s): "
                    f"{outcome.description}"
                )
                return await self._fail(instance, operation, plan, unit.payload, description, now, mitigate=True)

            retrying = operation.model_copy(update={'description': outcome.description, 'updated_at': now})
            if not await self.metadata_store.update_operation(instance.guid, retrying):
                return JobOutcome.COMPLETED

            delay = self.dispatch_retry.calculate_delay(unit.attempt)
            if outcome.retry_after is not None:
                delay = max(delay, outcome.retry_after)
            not_before = min(now + timedelta(seconds=delay), self._deadline(operation))

            next_attempt = unit.attempt + 1
            await self.work_queue.schedule(
                unit.model_copy(update={
                    'job_guid': dispatch_job_guid(operation.guid, next_attempt),
                    'attempt': next_attempt,
                    'retries': 0
                }),
                not_before
            )
            logger.info(
                f"Rescheduled dispatch of operation {operation.guid} as attempt {next_attempt} "
                f"in {delay:.1f}s",
                extra={'instance_guid': instance.guid, 'job_guid': unit.job_guid}
            )
            return JobOutcome.RESCHEDULED

        return await self._fail(
            instance, operation, plan, unit.payload, outcome.description, now,
            mitigate=self._mitigates(outcome)
        )

    async def _call_broker(
        self,
        unit: WorkUnit,
        instance: ServiceInstance,
        operation: OperationState,
        plan: ServicePlan,
        broker: ServiceBroker,
        space: Optional[Space]
    ) -> BrokerCallOutcome:
        client = self.broker_clients.for_broker(broker)
        payload = unit.payload
        actor = self._actor(payload)

        if operation.type == OperationType.DELETE:
            return await client.deprovision(instance.guid, plan, request_identity=operation.guid, actor=actor)

        if operation.type == OperationType.CREATE:
            return await client.provision(
                instance, plan, space,
                parameters=payload.get('parameters'),
                request_identity=operation.guid,
                maintenance_info=payload.get('maintenance_info'),
                actor=actor
            )

        previous_plan = plan
        previous_plan_guid = payload.get('previous_plan_guid')
        if previous_plan_guid and previous_plan_guid != plan.guid:
            previous_plan = await self.metadata_store.get_plan(previous_plan_guid) or plan

        return await client.update(
            instance, plan, previous_plan, space,
            parameters=payload.get('parameters'),
            request_identity=operation.guid,
            maintenance_info=payload.get('maintenance_info'),
            actor=actor
        )

    # Poll

    async def _poll(
        self,
        unit: WorkUnit,
        instance: ServiceInstance,
        operation: OperationState,
        plan: ServicePlan,
        broker: ServiceBroker,
        now: datetime
    ) -> JobOutcome:
        client = self.broker_clients.for_broker(broker)
        outcome = await client.fetch_last_operation(
            instance.guid, plan, operation.broker_operation or None, operation.type
        )
        log_extra = {'instance_guid': instance.guid, 'operation_type': operation.type.value, 'job_guid': unit.job_guid}

        if outcome.kind == OutcomeKind.SYNCHRONOUS_SUCCESS:
            if outcome.state == OperationStatus.SUCCEEDED:
                return await self._succeed(instance, operation, plan, unit.payload, outcome, now)

            if outcome.state == OperationStatus.FAILED:
                description = outcome.description or (
                    f"Service broker failed to {ACTION_VERBS[operation.type]} the service instance"
                )
                return await self._fail(instance, operation, plan, unit.payload, description, now, mitigate=True)

            logger.debug(f"Operation {operation.guid} still in progress", extra=log_extra)

        elif outcome.kind == OutcomeKind.SYNCHRONOUS_FAILURE:
            return await self._fail(
                instance, operation, plan, unit.payload, outcome.description, now, mitigate=True
            )

        else:
            logger.warning(
                f"Polling operation {operation.guid} returned {outcome.kind.value}: {outcome.description}",
                extra=log_extra
            )

        polling = operation.model_copy(update={'description': outcome.description, 'updated_at': now})
        if not await self.metadata_store.update_operation(instance.guid, polling):
            return JobOutcome.COMPLETED

        await self._schedule_poll(unit, polling, unit.attempt + 1, now, outcome.retry_after)
        return JobOutcome.RESCHEDULED

    def poll_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before poll number ``attempt + 1``."""
        if retry_after is not None:
            delay = retry_after
        else:
            delay = self.config.poll_interval_seconds * (self.config.poll_backoff_rate ** (attempt - 1))

        delay = min(delay, self.config.max_poll_interval_seconds)
        return max(delay, self.config.min_poll_interval_seconds)

    async def _schedule_poll(
        self,
        unit: WorkUnit,
        operation: OperationState,
        attempt: int,
        now: datetime,
        retry_after: Optional[float] = None
    ) -> None:
        if attempt == 1:
            not_before = now
        else:
            not_before = now + timedelta(seconds=self.poll_delay(attempt - 1, retry_after))
        not_before = min(not_before, self._deadline(operation))

        poll_unit = WorkUnit(
            job_guid=poll_job_guid(operation.guid, attempt),
            job_type=JobType.POLL,
            instance_guid=unit.instance_guid,
            operation_guid=operation.guid,
            attempt=attempt,
            payload=unit.payload,
            not_before=not_before
        )
        await self.work_queue.schedule(poll_unit, not_before)

    # Terminal transitions

    async def _succeed(
        self,
        instance: ServiceInstance,
        operation: OperationState,
        plan: ServicePlan,
        payload: Dict[str, Any],
        outcome: BrokerCallOutcome,
        now: datetime
    ) -> JobOutcome:
        succeeded = operation.model_copy(update={
            'state': OperationStatus.SUCCEEDED,
            'description': outcome.description,
            'broker_operation': None,
            'updated_at': now
        })

        if operation.type == OperationType.DELETE:
            if not await self.metadata_store.finish_deletion(instance.guid, operation.guid):
                return JobOutcome.COMPLETED
            finished = instance.model_copy(update={'last_operation': succeeded})
        else:
            changes: Dict[str, Any] = {'last_operation': succeeded, 'updated_at': now}
            if 'dashboard_url' in outcome.attributes:
                changes['dashboard_url'] = outcome.attributes['dashboard_url']
            if 'metadata' in outcome.attributes:
                changes['broker_metadata'] = outcome.attributes['metadata']
            if operation.type == OperationType.UPDATE:
                changes['service_plan_guid'] = plan.guid
            if payload.get('maintenance_info') is not None:
                changes['maintenance_info'] = payload['maintenance_info']

            finished = instance.model_copy(update=changes)
            if not await self.metadata_store.finish_operation(finished, succeeded):
                return JobOutcome.COMPLETED

        logger.info(
            f"Operation {operation.type.value} on instance {instance.guid} succeeded",
            extra={'instance_guid': instance.guid, 'operation_type': operation.type.value}
        )
        await self._record_audit(finished, operation, OperationStatus.SUCCEEDED, payload)
        return JobOutcome.COMPLETED

    async def _fail(
        self,
        instance: ServiceInstance,
        operation: OperationState,
        plan: Optional[ServicePlan],
        payload: Dict[str, Any],
        description: Optional[str],
        now: datetime,
        mitigate: bool
    ) -> JobOutcome:
        if mitigate and operation.type == OperationType.CREATE and plan is not None:
            await self.orphan_mitigator.schedule(instance, plan, operation, now)

        failed = operation.model_copy(update={
            'state': OperationStatus.FAILED,
            'description': description,
            'broker_operation': None,
            'updated_at': now
        })
        if not await self.metadata_store.update_operation(instance.guid, failed):
            return JobOutcome.COMPLETED

        logger.warning(
            f"Operation {operation.type.value} on instance {instance.guid} failed: {description}",
            extra={'instance_guid': instance.guid, 'operation_type': operation.type.value}
        )
        await self._record_audit(
            instance.model_copy(update={'last_operation': failed}), operation, OperationStatus.FAILED, payload
        )
        return JobOutcome.FAILED

    async def _record_audit(
        self,
        instance: ServiceInstance,
        operation: OperationState,
        state: OperationStatus,
        payload: Dict[str, Any]
    ) -> None:
        try:
            await self.audit_recorder.record_instance_action(
                operation.type,
                self._actor(payload) or Actor.system(),
                instance,
                state.value,
                request=payload.get('request')
            )
        except Exception as e:
            logger.error(
                f"Failed to record audit event for {operation.type.value} on instance {instance.guid}: {e}",
                extra={'instance_guid': instance.guid, 'operation_type': operation.type.value}
            )

    # Helpers

    def _deadline(self, operation: OperationState) -> datetime:
        return operation.created_at + timedelta(seconds=self.config.max_action_duration_seconds)

    def _mitigates(self, outcome: BrokerCallOutcome) -> bool:
        if outcome.kind == OutcomeKind.MALFORMED_RESPONSE:
            return True
        if outcome.status_code is not None and 400 <= outcome.status_code < 500:
            return self.config.mitigate_on_client_error
        return True

    def _actor(self, payload: Dict[str, Any]) -> Optional[Actor]:
        actor = payload.get('actor')
        return Actor(**actor) if actor else None

    async def _resolve_broker(
        self,
        instance: ServiceInstance,
        operation: OperationState,
        payload: Dict[str, Any]
    ) -> Tuple[ServicePlan, ServiceBroker, Optional[Space]]:
        plan_guid = payload.get('plan_guid') or instance.service_plan_guid
        if not plan_guid:
            raise LookupError(f"Service instance '{instance.guid}' has no service plan")

        plan = await self.metadata_store.get_plan(plan_guid)
        if plan is None:
            raise LookupError(f"Service plan '{plan_guid}' could not be found")

        broker = await self.metadata_store.get_broker(plan.broker_guid)
        if broker is None:
            raise LookupError(f"Service broker '{plan.broker_guid}' could not be found")

        # Deprovision and polls do not send platform context
        if operation.type == OperationType.DELETE:
            return plan, broker, None

        space = await self.metadata_store.get_space(instance.space_guid)
        if space is None:
            raise LookupError(f"Space '{instance.space_guid}' could not be found")

        return plan, broker, space
