"""Open Service Broker API client.

Maps lifecycle calls onto the broker's HTTP endpoints and classifies every
response into a BrokerCallOutcome:

    200/201 + valid body        -> synchronous success
    202 + valid body            -> accepted, poll with the returned operation
    410 on delete               -> success (already gone)
    422 on last_operation       -> transient (broker busy)
    other 4xx                   -> synchronous failure
    5xx, network, timeout       -> transient
    2xx body failing the schema -> malformed response
"""

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Any, Mapping, Optional, Type, TypeVar

import aiohttp
from pydantic import BaseModel, ValidationError as SchemaError

from service_lifecycle.config import BrokerClientConfig
from service_lifecycle.exceptions import (
    ValidationError, BrokerTransientError, BrokerFatalError, BrokerMalformedResponseError
)
from service_lifecycle.models.broker import (
    BrokerCallOutcome, BrokerContext, BrokerErrorBody, DeprovisionResponseBody,
    FetchBindingResponseBody, FetchInstanceResponseBody, LastOperationResponseBody,
    PreviousValues, ProvisionRequestBody, ProvisionResponseBody, UpdateRequestBody,
    UpdateResponseBody
)
from service_lifecycle.models.event import Actor
from service_lifecycle.models.instance import (
    ServiceInstance, ServicePlan, ServiceBroker, Space, OperationType, OperationStatus
)

logger = logging.getLogger(__name__)

BodyModel = TypeVar('BodyModel', bound=BaseModel)


@dataclass
class BrokerResponse:
    """Raw HTTP response from a broker."""
    status: int
    reason: str
    body: bytes
    headers: Mapping[str, str]

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    @property
    def retry_after(self) -> Optional[float]:
        """Retry-After as seconds, from either delta-seconds or an HTTP-date."""
        value = self.headers.get('Retry-After')
        if value is None:
            return None

        try:
            seconds = float(value)
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            if retry_at is None:
                return None
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=timezone.utc)
            return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)

        return seconds if seconds >= 0 else None


class BrokerClient:
    """Stateless request/response mapper for one service broker."""

    def __init__(self, broker: ServiceBroker, session: aiohttp.ClientSession, config: BrokerClientConfig):
        """Initialize broker client.

        Args:
            broker: Broker record holding URL and credentials
            session: Shared aiohttp session
            config: Broker client configuration
        """
        self.broker = broker
        self.session = session
        self.config = config
        self.base_url = broker.broker_url.rstrip('/')
        self._authorization = aiohttp.BasicAuth(broker.auth_username, broker.auth_password).encode()

    async def provision(
        self,
        instance: ServiceInstance,
        plan: ServicePlan,
        space: Space,
        parameters: Optional[Dict[str, Any]] = None,
        request_identity: Optional[str] = None,
        maintenance_info: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None
    ) -> BrokerCallOutcome:
        """Provision a service instance."""
        body = ProvisionRequestBody(
            service_id=plan.service_unique_id,
            plan_id=plan.unique_id,
            context=self._context(instance, space),
            organization_guid=space.organization_guid,
            space_guid=space.guid,
            parameters=parameters,
            maintenance_info=maintenance_info
        )

        try:
            response = await self._request(
                'PUT', self._instance_path(instance.guid),
                params={'accepts_incomplete': 'true'},
                json_body=body.model_dump(exclude_none=True),
                request_identity=request_identity,
                actor=actor
            )
        except BrokerTransientError as e:
            return BrokerCallOutcome.transient(e.message)

        return self._classify(response, ProvisionResponseBody, 'provision')

    async def update(
        self,
        instance: ServiceInstance,
        plan: ServicePlan,
        previous_plan: ServicePlan,
        space: Space,
        parameters: Optional[Dict[str, Any]] = None,
        request_identity: Optional[str] = None,
        maintenance_info: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None
    ) -> BrokerCallOutcome:
        """Update a service instance's plan, parameters or maintenance info."""
        body = UpdateRequestBody(
            service_id=plan.service_unique_id,
            plan_id=plan.unique_id,
            context=self._context(instance, space),
            parameters=parameters,
            previous_values=PreviousValues(
                plan_id=previous_plan.unique_id,
                service_id=previous_plan.service_unique_id,
                organization_id=space.organization_guid,
                space_id=space.guid,
                maintenance_info=instance.maintenance_info
            ),
            maintenance_info=maintenance_info
        )

        try:
            response = await self._request(
                'PATCH', self._instance_path(instance.guid),
                params={'accepts_incomplete': 'true'},
                json_body=body.model_dump(exclude_none=True),
                request_identity=request_identity,
                actor=actor
            )
        except BrokerTransientError as e:
            return BrokerCallOutcome.transient(e.message)

        return self._classify(response, UpdateResponseBody, 'update')

    async def deprovision(
        self,
        instance_guid: str,
        plan: ServicePlan,
        request_identity: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> BrokerCallOutcome:
        """Deprovision a service instance."""
        try:
            response = await self._request(
                'DELETE', self._instance_path(instance_guid),
                params={
                    'accepts_incomplete': 'true',
                    'service_id': plan.service_unique_id,
                    'plan_id': plan.unique_id
                },
                request_identity=request_identity,
                actor=actor
            )
        except BrokerTransientError as e:
            return BrokerCallOutcome.transient(e.message)

        if response.status == 410:
            return BrokerCallOutcome.success(410)

        return self._classify(response, DeprovisionResponseBody, 'deprovision')

    async def fetch_last_operation(
        self,
        instance_guid: str,
        plan: ServicePlan,
        operation: Optional[str],
        operation_type: OperationType
    ) -> BrokerCallOutcome:
        """Poll the state of an accepted asynchronous operation."""
        params = {'service_id': plan.service_unique_id, 'plan_id': plan.unique_id}
        if operation is not None:
            params['operation'] = operation

        try:
            response = await self._request(
                'GET', f"{self._instance_path(instance_guid)}/last_operation", params=params
            )
        except BrokerTransientError as e:
            return BrokerCallOutcome.transient(e.message)

        status = response.status

        if status == 200:
            try:
                body = self._decode(response, LastOperationResponseBody)
            except BrokerMalformedResponseError as e:
                return BrokerCallOutcome.malformed(status, e.message)
            return BrokerCallOutcome.success(
                status, state=body.state, description=body.description, retry_after=response.retry_after
            )

        if status == 410 and operation_type == OperationType.DELETE:
            return BrokerCallOutcome.success(status, state=OperationStatus.SUCCEEDED)

        if status == 422:
            return BrokerCallOutcome.transient(
                self._failure_description(response, "Service broker is busy with another operation"),
                status_code=status,
                retry_after=response.retry_after
            )

        if status >= 500:
            return BrokerCallOutcome.transient(
                self._failure_description(response), status_code=status, retry_after=response.retry_after
            )

        return BrokerCallOutcome.failure(status, self._failure_description(response))

    async def fetch_instance_parameters(self, instance_guid: str, plan: ServicePlan) -> Dict[str, Any]:
        """Fetch the parameters a broker holds for an instance."""
        if not plan.instances_retrievable:
            raise ValidationError(
                "This service does not support fetching service instance parameters.",
                field='service_plan_guid', value=plan.guid
            )

        response = await self._request('GET', self._instance_path(instance_guid))
        body = self._decode_fetch(response, FetchInstanceResponseBody)
        return body.parameters or {}

    async def fetch_binding_parameters(
        self,
        instance_guid: str,
        binding_guid: str,
        plan: ServicePlan
    ) -> Dict[str, Any]:
        """Fetch the parameters a broker holds for a service binding."""
        if not plan.bindings_retrievable:
            raise ValidationError(
                "This service does not support fetching service binding parameters.",
                field='service_plan_guid', value=plan.guid
            )

        response = await self._request(
            'GET', f"{self._instance_path(instance_guid)}/service_bindings/{binding_guid}"
        )
        body = self._decode_fetch(response, FetchBindingResponseBody)
        return body.parameters or {}

    def _instance_path(self, instance_guid: str) -> str:
        return f"/v2/service_instances/{instance_guid}"

    def _context(self, instance: ServiceInstance, space: Space) -> BrokerContext:
        return BrokerContext(
            platform=self.config.platform,
            organization_guid=space.organization_guid,
            organization_name=space.organization_name,
            space_guid=space.guid,
            space_name=space.name,
            instance_name=instance.name
        )

    def _headers(self, request_identity: Optional[str], actor: Optional[Actor]) -> Dict[str, str]:
        headers = {
            'X-Broker-API-Version': self.config.api_version,
            'Authorization': self._authorization
        }
        if request_identity:
            headers['X-Broker-API-Request-Identity'] = request_identity
        if actor:
            identity = json.dumps({'user_id': actor.guid}).encode()
            headers['X-Broker-API-Originating-Identity'] = (
                f"{self.config.platform} {base64.b64encode(identity).decode()}"
            )
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        request_identity: Optional[str] = None,
        actor: Optional[Actor] = None
    ) -> BrokerResponse:
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url} params={params}", extra={'broker_url': self.base_url})

        try:
            async with self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(request_identity, actor),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            ) as response:
                body = await response.read()
                return BrokerResponse(
                    status=response.status,
                    reason=response.reason or '',
                    body=body,
                    headers=response.headers.copy()
                )

        except asyncio.TimeoutError as e:
            logger.warning(f"{method} {url} timed out after {self.config.timeout_seconds}s")
            raise BrokerTransientError(
                f"The request to the service broker timed out: {url}", broker_url=self.base_url, cause=e
            ) from e
        except aiohttp.ClientError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise BrokerTransientError(
                f"The service broker could not be reached: {url}", broker_url=self.base_url, cause=e
            ) from e

    def _classify(self, response: BrokerResponse, body_model: Type[BaseModel], action: str) -> BrokerCallOutcome:
        status = response.status

        if status in (200, 201, 202):
            try:
                body = self._decode(response, body_model)
            except BrokerMalformedResponseError as e:
                logger.error(f"Malformed {action} response from {self.base_url}: {e.message}")
                return BrokerCallOutcome.malformed(status, e.message)

            if status == 202:
                return BrokerCallOutcome.accepted(status, getattr(body, 'operation', None))

            attributes = {}
            if getattr(body, 'dashboard_url', None) is not None:
                attributes['dashboard_url'] = body.dashboard_url
            if getattr(body, 'metadata', None) is not None:
                attributes['metadata'] = body.metadata
            return BrokerCallOutcome.success(status, attributes=attributes)

        if 400 <= status < 500:
            return BrokerCallOutcome.failure(status, self._failure_description(response))

        if status >= 500:
            return BrokerCallOutcome.transient(
                self._failure_description(response), status_code=status, retry_after=response.retry_after
            )

        return BrokerCallOutcome.failure(status, self._failure_description(response))

    def _decode(self, response: BrokerResponse, body_model: Type[BodyModel]) -> BodyModel:
        try:
            text = response.body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise BrokerMalformedResponseError(
                f"The service broker returned an invalid response: body is not valid UTF-8 ({e.reason})",
                status_code=response.status,
                broker_url=self.base_url,
                cause=e
            ) from e

        try:
            return body_model.model_validate_json(text)
        except SchemaError as e:
            errors = "; ".join(
                f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
            )
            raise BrokerMalformedResponseError(
                f"The service broker returned an invalid response: {errors}",
                status_code=response.status,
                broker_url=self.base_url,
                cause=e
            ) from e

    def _decode_fetch(self, response: BrokerResponse, body_model: Type[BodyModel]) -> BodyModel:
        if response.status == 200:
            return self._decode(response, body_model)

        message = self._failure_description(response, "The service broker returned an unexpected response")
        if response.status >= 500:
            raise BrokerTransientError(message, status_code=response.status, broker_url=self.base_url)
        raise BrokerFatalError(message, status_code=response.status, broker_url=self.base_url)

    def _failure_description(self, response: BrokerResponse, prefix: str = "Service broker error") -> str:
        description = f"{prefix}: Status Code: {response.status} {response.reason}".rstrip()

        try:
            error_body = BrokerErrorBody.model_validate_json(response.text)
        except SchemaError:
            error_body = None

        if error_body is not None and error_body.description:
            return f"{description}, Description: {error_body.description}"
        if response.text:
            return f"{description}, Body: {response.text[:500]}"
        return description


class BrokerClientFactory:
    """Builds broker clients sharing one aiohttp session."""

    def __init__(self, config: BrokerClientConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.config.verify_ssl else False)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
            self._owns_session = True
        return self._session

    def for_broker(self, broker: ServiceBroker) -> BrokerClient:
        return BrokerClient(broker, self._get_session(), self.config)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
