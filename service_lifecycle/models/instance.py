"""Service instance, operation state and catalog models."""

from pydantic import BaseModel, Field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime, timezone
import uuid


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_guid() -> str:
    """Generate a new opaque identifier."""
    return str(uuid.uuid4())


class InstanceType(str, Enum):
    """Service instance kinds."""
    MANAGED = "managed"
    USER_PROVIDED = "user-provided"


class OperationType(str, Enum):
    """Lifecycle action kinds."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    """Lifecycle action states, spelled as the broker protocol spells them."""
    IN_PROGRESS = "in progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationStatus.IN_PROGRESS


class OperationState(BaseModel):
    """Durable record of the most recent lifecycle action on an instance."""
    guid: str = Field(default_factory=new_guid, description="Idempotency identity of the action")
    type: OperationType = Field(..., description="Action kind")
    state: OperationStatus = Field(default=OperationStatus.IN_PROGRESS, description="Action state")
    description: Optional[str] = Field(None, description="Human-readable status")
    broker_operation: Optional[str] = Field(None, description="Broker continuation token while polling")
    created_at: datetime = Field(default_factory=utc_now, description="When the action was accepted")
    updated_at: datetime = Field(default_factory=utc_now, description="Last state change")

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_status_dict(self) -> Dict[str, Any]:
        """Representation used for status reporting."""
        return {
            'type': self.type.value,
            'state': self.state.value,
            'description': self.description,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


class Space(BaseModel):
    """Owning scope of a service instance."""
    guid: str = Field(..., description="Space GUID")
    name: str = Field(..., description="Space name")
    organization_guid: str = Field(..., description="Organization GUID")
    organization_name: str = Field(..., description="Organization name")


class ServiceBroker(BaseModel):
    """Registered service broker."""
    guid: str = Field(default_factory=new_guid, description="Broker GUID")
    name: str = Field(..., description="Broker name")
    broker_url: str = Field(..., description="Base URL of the broker")
    auth_username: str = Field(..., description="Basic auth username")
    auth_password: str = Field(..., description="Basic auth password")


class ServicePlan(BaseModel):
    """Service plan as known to the platform."""
    guid: str = Field(default_factory=new_guid, description="Plan GUID")
    name: str = Field(..., description="Plan name")
    unique_id: str = Field(..., description="Plan id as known to the broker")
    service_guid: str = Field(..., description="Service offering GUID")
    service_unique_id: str = Field(..., description="Service id as known to the broker")
    broker_guid: str = Field(..., description="Owning broker GUID")
    plan_updateable: bool = Field(default=True, description="Whether plan changes are allowed")
    instances_retrievable: bool = Field(default=False, description="Whether GET instance is supported")
    bindings_retrievable: bool = Field(default=False, description="Whether GET binding is supported")
    maintenance_info: Optional[Dict[str, Any]] = Field(None, description="Current maintenance info")


class ServiceInstance(BaseModel):
    """Service instance metadata."""
    guid: str = Field(default_factory=new_guid, description="Unique instance identifier")
    name: str = Field(..., description="Name, unique within the space")
    space_guid: str = Field(..., description="Owning space GUID")
    type: InstanceType = Field(default=InstanceType.MANAGED, description="Instance kind")
    service_plan_guid: Optional[str] = Field(None, description="Plan GUID for managed instances")
    dashboard_url: Optional[str] = Field(None, description="Broker-provided dashboard URL")
    tags: List[str] = Field(default_factory=list, description="User tags")
    credentials: Dict[str, Any] = Field(default_factory=dict, description="User-provided credentials")
    broker_metadata: Dict[str, Any] = Field(default_factory=dict, description="Broker-provided metadata")
    maintenance_info: Optional[Dict[str, Any]] = Field(None, description="Maintenance info in effect")
    shared_space_guids: List[str] = Field(default_factory=list, description="Spaces this instance is shared to")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utc_now, description="Last update timestamp")
    last_operation: Optional[OperationState] = Field(None, description="Most recent lifecycle action")

    @property
    def is_managed(self) -> bool:
        return self.type == InstanceType.MANAGED

    @property
    def operation_in_progress(self) -> bool:
        return self.last_operation is not None and not self.last_operation.is_terminal
