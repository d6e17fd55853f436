"""Audit recorder for service instance lifecycle facts."""

import logging
from typing import Dict, Any, Optional, List, Union

from service_lifecycle.storage.base import AuditStore, MetadataStore
from service_lifecycle.models.event import AuditEvent, AuditEventType, Actor
from service_lifecycle.models.instance import ServiceInstance, OperationType, InstanceType
from service_lifecycle.exceptions import EventValidationError

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Validates, scopes and persists audit events.

    Organization and space are denormalized onto the event when it is
    written, so the trail stays readable after the space is gone.
    """

    INSTANCE_ACTION_TYPES = {
        OperationType.CREATE: AuditEventType.SERVICE_INSTANCE_CREATE,
        OperationType.UPDATE: AuditEventType.SERVICE_INSTANCE_UPDATE,
        OperationType.DELETE: AuditEventType.SERVICE_INSTANCE_DELETE,
    }

    USER_PROVIDED_ACTION_TYPES = {
        OperationType.CREATE: AuditEventType.USER_PROVIDED_INSTANCE_CREATE,
        OperationType.DELETE: AuditEventType.USER_PROVIDED_INSTANCE_DELETE,
    }

    def __init__(self, audit_store: AuditStore, metadata_store: MetadataStore, log_audit_events: bool = False):
        """Initialize audit recorder.

        Args:
            audit_store: Store the events are appended to
            metadata_store: Store used to resolve space and organization
            log_audit_events: Also emit every stored event as a JSON log line
        """
        self.audit_store = audit_store
        self.metadata_store = metadata_store
        self.log_audit_events = log_audit_events
        self.audit_logger = logging.getLogger('service_lifecycle.audit')

    async def record(
        self,
        fact_type: Union[AuditEventType, str],
        actor: Optional[Actor],
        target_instance: Optional[ServiceInstance],
        metadata: Optional[Dict[str, Any]] = None,
        space_guid: Optional[str] = None,
        organization_guid: Optional[str] = None
    ) -> AuditEvent:
        """Validate and store one audit event.

        Raises:
            EventValidationError: If the event is incomplete or cannot be scoped
        """
        event_type = fact_type.value if isinstance(fact_type, AuditEventType) else fact_type

        if not event_type:
            raise EventValidationError("Audit event type is required")
        if actor is None or not actor.guid:
            raise EventValidationError(f"Audit event {event_type} has no actor")
        if not actor.type:
            raise EventValidationError(f"Audit event {event_type} has no actor type")
        if target_instance is None or not target_instance.guid:
            raise EventValidationError(f"Audit event {event_type} has no actee")
        if target_instance.name is None:
            raise EventValidationError(f"Audit event {event_type} has no actee name")

        space_guid, organization_guid = await self._resolve_scope(
            event_type, target_instance, space_guid, organization_guid
        )

        event = AuditEvent(
            type=event_type,
            actor=actor.guid,
            actor_type=actor.type,
            actor_name=actor.name,
            actor_username=actor.username,
            actee=target_instance.guid,
            actee_type=self._actee_type(target_instance),
            actee_name=target_instance.name,
            space_guid=space_guid,
            organization_guid=organization_guid,
            metadata=metadata or {}
        )

        await self.audit_store.save_event(event)

        if self.log_audit_events:
            self.audit_logger.info(event.to_json(), extra={
                'event_type': event.type,
                'instance_guid': event.actee
            })

        return event

    async def record_instance_action(
        self,
        operation_type: OperationType,
        actor: Optional[Actor],
        instance: ServiceInstance,
        state: str,
        request: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Record the terminal transition of a lifecycle action."""
        if instance.type == InstanceType.USER_PROVIDED:
            fact_type = self.USER_PROVIDED_ACTION_TYPES[operation_type]
        else:
            fact_type = self.INSTANCE_ACTION_TYPES[operation_type]

        return await self.record(
            fact_type,
            actor,
            instance,
            metadata={'request': request or {}, 'state': state},
            space_guid=instance.space_guid
        )

    async def record_share(
        self,
        actor: Optional[Actor],
        instance: ServiceInstance,
        target_space_guids: List[str]
    ) -> AuditEvent:
        return await self.record(
            AuditEventType.SERVICE_INSTANCE_SHARE,
            actor,
            instance,
            metadata={'target_space_guids': list(target_space_guids)},
            space_guid=instance.space_guid
        )

    async def record_unshare(
        self,
        actor: Optional[Actor],
        instance: ServiceInstance,
        target_space_guid: str
    ) -> AuditEvent:
        return await self.record(
            AuditEventType.SERVICE_INSTANCE_UNSHARE,
            actor,
            instance,
            metadata={'target_space_guid': target_space_guid},
            space_guid=instance.space_guid
        )

    async def list_events(
        self,
        actee: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEvent]:
        """List stored events, oldest first."""
        return await self.audit_store.list_events(actee=actee, event_type=event_type, limit=limit)

    async def _resolve_scope(
        self,
        event_type: str,
        target_instance: ServiceInstance,
        space_guid: Optional[str],
        organization_guid: Optional[str]
    ):
        if organization_guid:
            return space_guid, organization_guid

        space_guid = space_guid or target_instance.space_guid
        if not space_guid:
            raise EventValidationError(f"Audit event {event_type} has neither a space nor an organization")

        space = await self.metadata_store.get_space(space_guid)
        if space is None:
            raise EventValidationError(f"Audit event {event_type} refers to unknown space {space_guid}")

        return space.guid, space.organization_guid

    def _actee_type(self, instance: ServiceInstance) -> str:
        if instance.type == InstanceType.USER_PROVIDED:
            return 'user_provided_service_instance'
        return 'service_instance'
