"""Audit event models."""

import json
from pydantic import BaseModel, Field
from typing import Dict, Any, Optional
from enum import Enum
from datetime import datetime

from service_lifecycle.models.instance import new_guid, utc_now


class AuditEventType(str, Enum):
    """Types of audit events."""

    SERVICE_INSTANCE_CREATE = "audit.service_instance.create"
    SERVICE_INSTANCE_UPDATE = "audit.service_instance.update"
    SERVICE_INSTANCE_DELETE = "audit.service_instance.delete"
    SERVICE_INSTANCE_SHARE = "audit.service_instance.share"
    SERVICE_INSTANCE_UNSHARE = "audit.service_instance.unshare"

    USER_PROVIDED_INSTANCE_CREATE = "audit.user_provided_service_instance.create"
    USER_PROVIDED_INSTANCE_DELETE = "audit.user_provided_service_instance.delete"


class Actor(BaseModel):
    """Who caused an audit event."""
    guid: str = Field(..., description="Actor identifier")
    type: str = Field(default="user", description="Actor kind (user, system)")
    name: Optional[str] = Field(None, description="Display name, e.g. e-mail")
    username: Optional[str] = Field(None, description="Login name")

    @classmethod
    def system(cls) -> 'Actor':
        return cls(guid="system", type="system", name="system")


class AuditEvent(BaseModel):
    """Immutable audit trail entry."""
    guid: str = Field(default_factory=new_guid, description="Event identifier")
    type: str = Field(..., description="Event type")
    timestamp: datetime = Field(default_factory=utc_now, description="When the event was recorded")
    actor: str = Field(..., description="Actor identifier")
    actor_type: str = Field(..., description="Actor kind")
    actor_name: Optional[str] = Field(None, description="Actor display name")
    actor_username: Optional[str] = Field(None, description="Actor login name")
    actee: str = Field(..., description="Target identifier")
    actee_type: str = Field(..., description="Target kind")
    actee_name: str = Field(..., description="Target name")
    space_guid: Optional[str] = Field(None, description="Denormalized space GUID")
    organization_guid: str = Field(..., description="Denormalized organization GUID")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Event payload")

    def to_json(self) -> str:
        """Convert audit event to JSON string."""
        return json.dumps(self.model_dump(mode='json'), default=str)
