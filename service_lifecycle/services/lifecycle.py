"""Inbound lifecycle service: validates requests, persists pending state and enqueues work."""

import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable

from service_lifecycle.audit.recorder import AuditRecorder
from service_lifecycle.clients.broker_client import BrokerClientFactory
from service_lifecycle.exceptions import (
    ValidationError, InstanceNotFoundError, OperationInProgressError, BrokerTransientError
)
from service_lifecycle.models.event import Actor, AuditEventType
from service_lifecycle.models.instance import (
    ServiceInstance, ServicePlan, OperationState, OperationType, InstanceType, utc_now
)
from service_lifecycle.queue.base import WorkQueue, WorkUnit, JobType
from service_lifecycle.services.orchestrator import dispatch_job_guid
from service_lifecycle.storage.base import MetadataStore
from service_lifecycle.utils.retry import RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

PRIVATE_DATA_HIDDEN = '[PRIVATE DATA HIDDEN]'


class InstanceLifecycleService:
    """Entry point for create, update, delete and sharing of service instances.

    Managed actions only persist an in-progress operation state and enqueue
    a dispatch unit. The orchestrator carries the action to a terminal state.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        work_queue: WorkQueue,
        audit_recorder: AuditRecorder,
        broker_clients: BrokerClientFactory,
        parameters_retry: Optional[RetryConfig] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize lifecycle service.

        Args:
            metadata_store: Instance and catalog storage
            work_queue: Queue dispatch units are scheduled on
            audit_recorder: Recorder for immediate (non-broker) facts
            broker_clients: Factory used for parameter fetches
            parameters_retry: Retry policy for fetching instance parameters
            clock: Source of the current time
        """
        self.metadata_store = metadata_store
        self.work_queue = work_queue
        self.audit_recorder = audit_recorder
        self.broker_clients = broker_clients
        self.parameters_retry = parameters_retry or RetryConfig(max_attempts=3, base_delay=1.0, max_delay=10.0)
        self.clock = clock

    # Create

    async def create_managed_instance(
        self,
        name: str,
        space_guid: str,
        plan_guid: str,
        parameters: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        actor: Optional[Actor] = None
    ) -> ServiceInstance:
        """Persist a managed instance with an in-progress create and enqueue its dispatch."""
        self._validate_name(name)
        await self._require_space(space_guid)
        plan = await self._require_plan(plan_guid)
        await self._require_unique_name(space_guid, name)

        now = self.clock()
        instance = ServiceInstance(
            name=name,
            space_guid=space_guid,
            type=InstanceType.MANAGED,
            service_plan_guid=plan.guid,
            tags=tags or [],
            created_at=now,
            updated_at=now,
            last_operation=OperationState(type=OperationType.CREATE, created_at=now, updated_at=now)
        )

        if not await self.metadata_store.create_instance(instance):
            raise ValidationError(f"The service instance name is taken: {name}", field='name', value=name)

        logger.info(f"Accepted create of managed instance {instance.guid} ({name})",
                    extra={'instance_guid': instance.guid, 'operation_type': 'create'})

        await self.enqueue_create(
            instance.guid, plan.guid, parameters, actor,
            maintenance_info=plan.maintenance_info,
            request={
                'name': name,
                'space_guid': space_guid,
                'service_plan_guid': plan.guid,
                'tags': tags or [],
                'parameters': PRIVATE_DATA_HIDDEN if parameters else None
            }
        )
        return instance

    async def create_user_provided_instance(
        self,
        name: str,
        space_guid: str,
        credentials: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        actor: Optional[Actor] = None
    ) -> ServiceInstance:
        """Persist a user-provided instance. It is terminal immediately and has no operation state."""
        self._validate_name(name)
        await self._require_space(space_guid)
        await self._require_unique_name(space_guid, name)

        instance = ServiceInstance(
            name=name,
            space_guid=space_guid,
            type=InstanceType.USER_PROVIDED,
            credentials=credentials or {},
            tags=tags or []
        )

        if not await self.metadata_store.create_instance(instance):
            raise ValidationError(f"The service instance name is taken: {name}", field='name', value=name)

        logger.info(f"Created user-provided instance {instance.guid} ({name})")
        await self._record(
            AuditEventType.USER_PROVIDED_INSTANCE_CREATE, actor, instance,
            {'request': {'name': name, 'space_guid': space_guid, 'tags': tags or [],
                         'credentials': PRIVATE_DATA_HIDDEN}}
        )
        return instance

    # Update

    async def update_managed_instance(
        self,
        instance_guid: str,
        plan_guid: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        maintenance_info: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None
    ) -> ServiceInstance:
        """Replace the operation state with an in-progress update and enqueue its dispatch."""
        instance = await self._require_managed(instance_guid)
        if instance.operation_in_progress:
            raise OperationInProgressError(instance_guid)

        current_plan = await self._require_plan(instance.service_plan_guid)
        target_plan = current_plan

        if plan_guid and plan_guid != current_plan.guid:
            if not current_plan.plan_updateable:
                raise ValidationError(
                    "The service does not support changing plans.", field='service_plan_guid', value=plan_guid
                )
            target_plan = await self._require_plan(plan_guid)
            if target_plan.service_guid != current_plan.service_guid:
                raise ValidationError(
                    "The service plan does not belong to the instance's service offering.",
                    field='service_plan_guid', value=plan_guid
                )

        now = self.clock()
        operation = OperationState(type=OperationType.UPDATE, created_at=now, updated_at=now)
        if not await self.metadata_store.start_operation(instance.guid, operation):
            raise OperationInProgressError(instance_guid)

        logger.info(f"Accepted update of instance {instance.guid}",
                    extra={'instance_guid': instance.guid, 'operation_type': 'update'})

        await self.enqueue_update(
            instance.guid, target_plan.guid, parameters, actor,
            previous_plan_guid=current_plan.guid,
            maintenance_info=maintenance_info,
            request={
                'service_plan_guid': target_plan.guid,
                'parameters': PRIVATE_DATA_HIDDEN if parameters else None,
                'maintenance_info': maintenance_info
            }
        )
        return instance.model_copy(update={'last_operation': operation})

    # Delete

    async def delete_instance(self, instance_guid: str, actor: Optional[Actor] = None) -> Optional[ServiceInstance]:
        """Delete a user-provided instance now, or start an asynchronous delete of a managed one.

        Returns the managed instance with its pending delete, or None when
        the instance was removed immediately.
        """
        instance = await self._get_instance(instance_guid)

        if not instance.is_managed:
            await self.metadata_store.delete_instance(instance.guid)
            logger.info(f"Deleted user-provided instance {instance.guid}")
            await self._record(
                AuditEventType.USER_PROVIDED_INSTANCE_DELETE, actor, instance, {'request': {}}
            )
            return None

        if instance.operation_in_progress:
            raise OperationInProgressError(instance_guid)

        now = self.clock()
        operation = OperationState(type=OperationType.DELETE, created_at=now, updated_at=now)
        if not await self.metadata_store.start_operation(instance.guid, operation):
            raise OperationInProgressError(instance_guid)

        logger.info(f"Accepted delete of instance {instance.guid}",
                    extra={'instance_guid': instance.guid, 'operation_type': 'delete'})

        await self.enqueue_delete(instance.guid, instance.service_plan_guid, actor)
        return instance.model_copy(update={'last_operation': operation})

    # Enqueue

    async def enqueue_create(
        self,
        instance_guid: str,
        plan_guid: str,
        parameters: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
        maintenance_info: Optional[Dict[str, Any]] = None,
        request: Optional[Dict[str, Any]] = None
    ) -> WorkUnit:
        """Schedule the dispatch of a persisted create."""
        operation = await self._require_pending(instance_guid, OperationType.CREATE)
        return await self._enqueue(instance_guid, operation, {
            'plan_guid': plan_guid,
            'parameters': parameters,
            'maintenance_info': maintenance_info,
            'actor': self._actor_payload(actor),
            'request': request or {}
        })

    async def enqueue_update(
        self,
        instance_guid: str,
        plan_guid: str,
        parameters: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
        previous_plan_guid: Optional[str] = None,
        maintenance_info: Optional[Dict[str, Any]] = None,
        request: Optional[Dict[str, Any]] = None
    ) -> WorkUnit:
        """Schedule the dispatch of a persisted update."""
        operation = await self._require_pending(instance_guid, OperationType.UPDATE)
        return await self._enqueue(instance_guid, operation, {
            'plan_guid': plan_guid,
            'previous_plan_guid': previous_plan_guid,
            'parameters': parameters,
            'maintenance_info': maintenance_info,
            'actor': self._actor_payload(actor),
            'request': request or {}
        })

    async def enqueue_delete(
        self,
        instance_guid: str,
        plan_guid: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> WorkUnit:
        """Schedule the dispatch of a persisted delete."""
        operation = await self._require_pending(instance_guid, OperationType.DELETE)
        return await self._enqueue(instance_guid, operation, {
            'plan_guid': plan_guid,
            'actor': self._actor_payload(actor),
            'request': {}
        })

    async def _enqueue(self, instance_guid: str, operation: OperationState, payload: Dict[str, Any]) -> WorkUnit:
        now = self.clock()
        unit = WorkUnit(
            job_guid=dispatch_job_guid(operation.guid, 1),
            job_type=JobType.DISPATCH,
            instance_guid=instance_guid,
            operation_guid=operation.guid,
            attempt=1,
            payload=payload,
            not_before=now
        )
        await self.work_queue.schedule(unit, now)
        logger.debug(f"Enqueued {operation.type.value} dispatch {unit.job_guid}",
                     extra={'instance_guid': instance_guid, 'job_guid': unit.job_guid})
        return unit

    # Status and parameters

    async def get_last_operation(self, instance_guid: str) -> Optional[OperationState]:
        """Read-only status of the instance's most recent action."""
        instance = await self._get_instance(instance_guid)
        return instance.last_operation

    async def get_instance_parameters(self, instance_guid: str) -> Dict[str, Any]:
        """Fetch the instance's parameters from its broker."""
        instance = await self._get_instance(instance_guid)
        if not instance.is_managed:
            raise InstanceNotFoundError(instance_guid)

        plan = await self._require_plan(instance.service_plan_guid)
        broker = await self.metadata_store.get_broker(plan.broker_guid)
        if broker is None:
            raise ValidationError(f"Service broker '{plan.broker_guid}' could not be found",
                                  field='broker_guid', value=plan.broker_guid)

        client = self.broker_clients.for_broker(broker)

        @retry_with_backoff(self.parameters_retry, exceptions=BrokerTransientError)
        async def fetch() -> Dict[str, Any]:
            return await client.fetch_instance_parameters(instance.guid, plan)

        return await fetch()

    # Sharing

    async def share_instance(
        self,
        instance_guid: str,
        target_space_guids: List[str],
        actor: Optional[Actor] = None
    ) -> ServiceInstance:
        """Share a managed instance into other spaces."""
        instance = await self._get_instance(instance_guid)
        if not instance.is_managed:
            raise ValidationError("User-provided services cannot be shared.", field='instance_guid',
                                  value=instance_guid)

        if not target_space_guids:
            raise ValidationError("At least one target space is required.", field='target_space_guids')

        for space_guid in target_space_guids:
            if space_guid == instance.space_guid:
                raise ValidationError(
                    f"Unable to share service instance {instance.name} with space {space_guid}. "
                    "Service instances cannot be shared into the space where they were created.",
                    field='target_space_guids', value=space_guid
                )
            await self._require_space(space_guid)

        shared = list(instance.shared_space_guids)
        for space_guid in target_space_guids:
            if space_guid not in shared:
                shared.append(space_guid)

        updated = instance.model_copy(update={'shared_space_guids': shared, 'updated_at': self.clock()})
        await self.metadata_store.update_instance(updated)
        logger.info(f"Shared instance {instance.guid} with spaces {target_space_guids}")

        await self._record(
            AuditEventType.SERVICE_INSTANCE_SHARE, actor, updated,
            {'target_space_guids': list(target_space_guids)}
        )
        return updated

    async def unshare_instance(
        self,
        instance_guid: str,
        target_space_guid: str,
        actor: Optional[Actor] = None
    ) -> ServiceInstance:
        """Remove a space from an instance's shared spaces."""
        instance = await self._get_instance(instance_guid)
        if target_space_guid not in instance.shared_space_guids:
            raise ValidationError(
                f"Unable to unshare service instance from space {target_space_guid}. "
                "Ensure the space exists and the service instance has been shared to this space.",
                field='target_space_guid', value=target_space_guid
            )

        shared = [guid for guid in instance.shared_space_guids if guid != target_space_guid]
        updated = instance.model_copy(update={'shared_space_guids': shared, 'updated_at': self.clock()})
        await self.metadata_store.update_instance(updated)
        logger.info(f"Unshared instance {instance.guid} from space {target_space_guid}")

        await self._record(
            AuditEventType.SERVICE_INSTANCE_UNSHARE, actor, updated,
            {'target_space_guid': target_space_guid}
        )
        return updated

    # Helpers

    async def _record(
        self,
        fact_type: AuditEventType,
        actor: Optional[Actor],
        instance: ServiceInstance,
        metadata: Dict[str, Any]
    ) -> None:
        try:
            await self.audit_recorder.record(
                fact_type, actor or Actor.system(), instance, metadata, space_guid=instance.space_guid
            )
        except Exception as e:
            logger.error(f"Failed to record {fact_type.value} for instance {instance.guid}: {e}")

    async def _get_instance(self, instance_guid: str) -> ServiceInstance:
        instance = await self.metadata_store.get_instance(instance_guid)
        if instance is None:
            raise InstanceNotFoundError(instance_guid)
        return instance

    async def _require_managed(self, instance_guid: str) -> ServiceInstance:
        instance = await self._get_instance(instance_guid)
        if not instance.is_managed:
            raise ValidationError(
                "User-provided service instances are not managed by a service broker.",
                field='instance_guid', value=instance_guid
            )
        return instance

    async def _require_space(self, space_guid: str) -> None:
        if await self.metadata_store.get_space(space_guid) is None:
            raise ValidationError("Invalid space. Ensure that the space exists and you have access to it.",
                                  field='space_guid', value=space_guid)

    async def _require_plan(self, plan_guid: Optional[str]) -> ServicePlan:
        plan = await self.metadata_store.get_plan(plan_guid) if plan_guid else None
        if plan is None:
            raise ValidationError("Invalid service plan. Ensure that the service plan exists.",
                                  field='service_plan_guid', value=plan_guid)
        return plan

    async def _require_unique_name(self, space_guid: str, name: str) -> None:
        if await self.metadata_store.find_instance_by_name(space_guid, name) is not None:
            raise ValidationError(f"The service instance name is taken: {name}", field='name', value=name)

    async def _require_pending(self, instance_guid: str, operation_type: OperationType) -> OperationState:
        operation = await self.metadata_store.get_operation(instance_guid)
        if operation is None or operation.is_terminal or operation.type != operation_type:
            raise ValidationError(
                f"An in-progress {operation_type.value} operation must be persisted before it is enqueued",
                field='instance_guid', value=instance_guid
            )
        return operation

    def _validate_name(self, name: str) -> None:
        if not name or not name.strip():
            raise ValidationError("Service instance name must not be empty", field='name')

    def _actor_payload(self, actor: Optional[Actor]) -> Optional[Dict[str, Any]]:
        return actor.model_dump() if actor else None
