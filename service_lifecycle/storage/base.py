"""Abstract base classes for metadata storage."""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from service_lifecycle.models.instance import (
    ServiceInstance, OperationState, Space, ServiceBroker, ServicePlan
)
from service_lifecycle.models.event import AuditEvent


class MetadataStore(ABC):
    """Abstract interface for instance, operation and catalog storage."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close storage connections."""
        pass

    # Catalog collaborators

    @abstractmethod
    async def save_space(self, space: Space) -> None:
        """Insert or replace a space."""
        pass

    @abstractmethod
    async def get_space(self, space_guid: str) -> Optional[Space]:
        """Retrieve a space by GUID."""
        pass

    @abstractmethod
    async def save_broker(self, broker: ServiceBroker) -> None:
        """Insert or replace a service broker."""
        pass

    @abstractmethod
    async def get_broker(self, broker_guid: str) -> Optional[ServiceBroker]:
        """Retrieve a service broker by GUID."""
        pass

    @abstractmethod
    async def save_plan(self, plan: ServicePlan) -> None:
        """Insert or replace a service plan."""
        pass

    @abstractmethod
    async def get_plan(self, plan_guid: str) -> Optional[ServicePlan]:
        """Retrieve a service plan by GUID."""
        pass

    # Service instances

    @abstractmethod
    async def create_instance(self, instance: ServiceInstance) -> bool:
        """Persist a new instance and its initial operation state atomically.

        Returns False if the GUID or the name within the space is taken.
        """
        pass

    @abstractmethod
    async def get_instance(self, instance_guid: str) -> Optional[ServiceInstance]:
        """Retrieve an instance, including its operation state."""
        pass

    @abstractmethod
    async def find_instance_by_name(self, space_guid: str, name: str) -> Optional[ServiceInstance]:
        """Retrieve an instance by its name within a space."""
        pass

    @abstractmethod
    async def list_instances(self, filters: Optional[Dict[str, Any]] = None) -> List[ServiceInstance]:
        """List instances with optional filters (space_guid, type, operation_state)."""
        pass

    @abstractmethod
    async def update_instance(self, instance: ServiceInstance) -> bool:
        """Update the instance's own fields. Never touches its operation state."""
        pass

    @abstractmethod
    async def delete_instance(self, instance_guid: str) -> bool:
        """Delete an instance and its operation state."""
        pass

    # Operation state

    @abstractmethod
    async def get_operation(self, instance_guid: str) -> Optional[OperationState]:
        """Retrieve the live operation state of an instance."""
        pass

    @abstractmethod
    async def start_operation(self, instance_guid: str, operation: OperationState) -> bool:
        """Replace a terminal operation state with a new in-progress one.

        Returns False if an action is already in flight for the instance.
        """
        pass

    @abstractmethod
    async def update_operation(self, instance_guid: str, operation: OperationState) -> bool:
        """Write an operation state if the stored row is the same action and still in progress."""
        pass

    @abstractmethod
    async def finish_operation(self, instance: ServiceInstance, operation: OperationState) -> bool:
        """Write a terminal operation state and the instance's attributes in one transaction.

        Same compare-and-set condition as update_operation.
        """
        pass

    @abstractmethod
    async def finish_deletion(self, instance_guid: str, operation_guid: str) -> bool:
        """Remove an instance whose in-progress delete action has succeeded."""
        pass


class AuditStore(ABC):
    """Abstract interface for the append-only audit trail."""

    @abstractmethod
    async def save_event(self, event: AuditEvent) -> None:
        """Append an audit event."""
        pass

    @abstractmethod
    async def list_events(
        self,
        actee: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Retrieve audit events, oldest first, with optional filters."""
        pass
