"""Open Service Broker API wire models and call outcomes."""

from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from enum import Enum

from service_lifecycle.models.instance import OperationStatus


class StrictBrokerBody(BaseModel):
    """Base for broker response bodies: wrong shapes fail, unknown keys are ignored."""

    model_config = ConfigDict(strict=True, extra='ignore')


class ProvisionResponseBody(StrictBrokerBody):
    """Body of a provision response."""
    dashboard_url: Optional[str] = None
    operation: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateResponseBody(StrictBrokerBody):
    """Body of an update response."""
    dashboard_url: Optional[str] = None
    operation: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class DeprovisionResponseBody(StrictBrokerBody):
    """Body of a deprovision response."""
    operation: Optional[str] = None


class LastOperationResponseBody(StrictBrokerBody):
    """Body of a last_operation response."""
    state: OperationStatus
    description: Optional[str] = None
    instance_usable: Optional[bool] = None
    update_repeatable: Optional[bool] = None


class FetchInstanceResponseBody(StrictBrokerBody):
    """Body of a GET service instance response."""
    parameters: Optional[Dict[str, Any]] = None
    dashboard_url: Optional[str] = None
    service_id: Optional[str] = None
    plan_id: Optional[str] = None
    maintenance_info: Optional[Dict[str, Any]] = None


class FetchBindingResponseBody(StrictBrokerBody):
    """Body of a GET service binding response."""
    parameters: Optional[Dict[str, Any]] = None
    credentials: Optional[Dict[str, Any]] = None


class BrokerErrorBody(BaseModel):
    """Error body a broker may send with a 4xx/5xx response."""

    model_config = ConfigDict(extra='ignore')

    error: Optional[str] = None
    description: Optional[str] = None


class BrokerContext(BaseModel):
    """Platform context sent with provision and update requests."""
    platform: str = Field(..., description="Platform identifier")
    organization_guid: str = Field(..., description="Organization GUID")
    organization_name: str = Field(..., description="Organization name")
    space_guid: str = Field(..., description="Space GUID")
    space_name: str = Field(..., description="Space name")
    instance_name: str = Field(..., description="Service instance name")


class ProvisionRequestBody(BaseModel):
    """Service instance provisioning request."""
    service_id: str = Field(..., description="ID of the service being provisioned")
    plan_id: str = Field(..., description="ID of the plan being provisioned")
    context: BrokerContext
    organization_guid: str = Field(..., description="Organization GUID")
    space_guid: str = Field(..., description="Space GUID")
    parameters: Optional[Dict[str, Any]] = None
    maintenance_info: Optional[Dict[str, Any]] = None


class PreviousValues(BaseModel):
    """Values in effect before an update."""
    plan_id: str
    service_id: str
    organization_id: str
    space_id: str
    maintenance_info: Optional[Dict[str, Any]] = None


class UpdateRequestBody(BaseModel):
    """Service instance update request."""
    service_id: str = Field(..., description="ID of the service")
    plan_id: str = Field(..., description="ID of the target plan")
    context: BrokerContext
    parameters: Optional[Dict[str, Any]] = None
    previous_values: PreviousValues
    maintenance_info: Optional[Dict[str, Any]] = None


class OutcomeKind(str, Enum):
    """Classification of a broker call."""
    SYNCHRONOUS_SUCCESS = "synchronous_success"
    SYNCHRONOUS_FAILURE = "synchronous_failure"
    ASYNC_ACCEPTED = "async_accepted"
    TRANSIENT_ERROR = "transient_error"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass
class BrokerCallOutcome:
    """In-memory result of one broker call. Never persisted directly."""
    kind: OutcomeKind
    status_code: Optional[int] = None
    description: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    operation: Optional[str] = None
    state: Optional[OperationStatus] = None
    retry_after: Optional[float] = None

    @classmethod
    def success(cls, status_code: int, attributes: Optional[Dict[str, Any]] = None,
                state: Optional[OperationStatus] = None, description: Optional[str] = None,
                retry_after: Optional[float] = None) -> 'BrokerCallOutcome':
        return cls(
            kind=OutcomeKind.SYNCHRONOUS_SUCCESS,
            status_code=status_code,
            attributes=attributes or {},
            state=state,
            description=description,
            retry_after=retry_after
        )

    @classmethod
    def accepted(cls, status_code: int, operation: Optional[str]) -> 'BrokerCallOutcome':
        return cls(kind=OutcomeKind.ASYNC_ACCEPTED, status_code=status_code, operation=operation)

    @classmethod
    def failure(cls, status_code: Optional[int], description: str) -> 'BrokerCallOutcome':
        return cls(kind=OutcomeKind.SYNCHRONOUS_FAILURE, status_code=status_code, description=description)

    @classmethod
    def transient(cls, description: str, status_code: Optional[int] = None,
                  retry_after: Optional[float] = None) -> 'BrokerCallOutcome':
        return cls(
            kind=OutcomeKind.TRANSIENT_ERROR,
            status_code=status_code,
            description=description,
            retry_after=retry_after
        )

    @classmethod
    def malformed(cls, status_code: int, description: str) -> 'BrokerCallOutcome':
        return cls(kind=OutcomeKind.MALFORMED_RESPONSE, status_code=status_code, description=description)

    @property
    def is_fatal(self) -> bool:
        return self.kind in (OutcomeKind.SYNCHRONOUS_FAILURE, OutcomeKind.MALFORMED_RESPONSE)
