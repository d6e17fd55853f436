"""Tests for the inbound lifecycle service."""

import pytest

from service_lifecycle.exceptions import (
    ValidationError, InstanceNotFoundError, OperationInProgressError, BrokerFatalError,
    BrokerTransientError, ErrorCode
)
from service_lifecycle.models.event import Actor
from service_lifecycle.models.instance import (
    ServicePlan, OperationType, OperationStatus, InstanceType
)
from service_lifecycle.queue.base import JobType
from service_lifecycle.services.lifecycle import PRIVATE_DATA_HIDDEN
from service_lifecycle.services.orchestrator import dispatch_job_guid


@pytest.fixture
def actor():
    return Actor(guid='user-1', name='jane@example.com')


async def provisioned(harness, name='my-db', plan_guid='plan-small'):
    instance = await harness.service.create_managed_instance(name, 'space-1', plan_guid)
    await harness.drain()
    return instance


class TestCreateManagedInstance:
    """Test managed instance creation."""

    @pytest.mark.asyncio
    async def test_persists_pending_create_and_enqueues_dispatch(self, harness, actor):
        instance = await harness.service.create_managed_instance(
            'my-db', 'space-1', 'plan-small', parameters={'size': 3}, tags=['db'], actor=actor
        )

        stored = await harness.metadata_store.get_instance(instance.guid)
        assert stored.type == InstanceType.MANAGED
        assert stored.tags == ['db']
        assert stored.last_operation.type == OperationType.CREATE
        assert stored.last_operation.state == OperationStatus.IN_PROGRESS
        assert stored.last_operation.created_at == harness.clock.now

        pending = await harness.queue.pending()
        assert len(pending) == 1
        unit = pending[0]
        assert unit.job_type == JobType.DISPATCH
        assert unit.job_guid == dispatch_job_guid(instance.last_operation.guid, 1)
        assert unit.payload['parameters'] == {'size': 3}
        assert unit.payload['actor']['guid'] == 'user-1'
        assert unit.payload['request']['parameters'] == PRIVATE_DATA_HIDDEN

    @pytest.mark.asyncio
    async def test_no_audit_event_until_terminal(self, harness):
        instance = await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        assert await harness.audit_store.list_events(actee=instance.guid) == []

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, harness):
        with pytest.raises(ValidationError, match="must not be empty"):
            await harness.service.create_managed_instance('  ', 'space-1', 'plan-small')

    @pytest.mark.asyncio
    async def test_unknown_space_rejected(self, harness):
        with pytest.raises(ValidationError, match="Invalid space"):
            await harness.service.create_managed_instance('my-db', 'no-space', 'plan-small')

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected(self, harness):
        with pytest.raises(ValidationError, match="Invalid service plan"):
            await harness.service.create_managed_instance('my-db', 'space-1', 'no-plan')

        assert await harness.queue.pending() == []

    @pytest.mark.asyncio
    async def test_name_taken(self, harness):
        await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        with pytest.raises(ValidationError, match="name is taken: my-db"):
            await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        assert len(await harness.queue.pending()) == 1

    @pytest.mark.asyncio
    async def test_same_name_in_other_space(self, harness):
        await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        other = await harness.service.create_managed_instance('my-db', 'space-2', 'plan-small')

        assert other.space_guid == 'space-2'


class TestUserProvidedInstances:
    """Test user-provided instances."""

    @pytest.mark.asyncio
    async def test_create_is_immediate_and_audited(self, harness, actor):
        instance = await harness.service.create_user_provided_instance(
            'creds', 'space-1', credentials={'password': 'hunter2'}, actor=actor
        )

        stored = await harness.metadata_store.get_instance(instance.guid)
        assert stored.type == InstanceType.USER_PROVIDED
        assert stored.credentials == {'password': 'hunter2'}
        assert stored.last_operation is None
        assert await harness.queue.pending() == []

        events = await harness.audit_store.list_events(actee=instance.guid)
        assert [event.type for event in events] == ['audit.user_provided_service_instance.create']
        assert events[0].actee_type == 'user_provided_service_instance'
        assert events[0].metadata['request']['credentials'] == PRIVATE_DATA_HIDDEN
        assert events[0].actor == 'user-1'

    @pytest.mark.asyncio
    async def test_delete_is_immediate(self, harness, fake_broker):
        instance = await harness.service.create_user_provided_instance('creds', 'space-1')

        result = await harness.service.delete_instance(instance.guid)

        assert result is None
        assert await harness.metadata_store.get_instance(instance.guid) is None
        assert fake_broker.requests == []
        events = await harness.audit_store.list_events(actee=instance.guid)
        assert events[-1].type == 'audit.user_provided_service_instance.delete'
        assert events[-1].actor_type == 'system'

    @pytest.mark.asyncio
    async def test_cannot_be_updated(self, harness):
        instance = await harness.service.create_user_provided_instance('creds', 'space-1')

        with pytest.raises(ValidationError, match="not managed by a service broker"):
            await harness.service.update_managed_instance(instance.guid, parameters={'a': 1})

    @pytest.mark.asyncio
    async def test_cannot_be_shared(self, harness):
        instance = await harness.service.create_user_provided_instance('creds', 'space-1')

        with pytest.raises(ValidationError, match="User-provided services cannot be shared"):
            await harness.service.share_instance(instance.guid, ['space-2'])


class TestUpdateManagedInstance:
    """Test update requests."""

    @pytest.mark.asyncio
    async def test_enqueues_update_with_previous_plan(self, harness):
        instance = await provisioned(harness)

        updated = await harness.service.update_managed_instance(
            instance.guid, plan_guid='plan-large', parameters={'size': 5}
        )

        assert updated.last_operation.type == OperationType.UPDATE
        unit = (await harness.queue.pending())[0]
        assert unit.payload['plan_guid'] == 'plan-large'
        assert unit.payload['previous_plan_guid'] == 'plan-small'
        assert unit.payload['request']['parameters'] == PRIVATE_DATA_HIDDEN

    @pytest.mark.asyncio
    async def test_rejected_while_operation_in_progress(self, harness):
        instance = await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        with pytest.raises(OperationInProgressError) as exc_info:
            await harness.service.update_managed_instance(instance.guid, parameters={'size': 5})

        assert exc_info.value.error_code == ErrorCode.OPERATION_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_plan_not_updateable(self, harness):
        instance = await provisioned(harness, plan_guid='plan-fixed')

        with pytest.raises(ValidationError, match="does not support changing plans"):
            await harness.service.update_managed_instance(instance.guid, plan_guid='plan-small')

    @pytest.mark.asyncio
    async def test_plan_from_other_service_rejected(self, harness):
        await harness.metadata_store.save_plan(ServicePlan(
            guid='plan-other', name='other', unique_id='other-id', service_guid='service-2',
            service_unique_id='service-2-id', broker_guid='broker-1'
        ))
        instance = await provisioned(harness)

        with pytest.raises(ValidationError, match="does not belong"):
            await harness.service.update_managed_instance(instance.guid, plan_guid='plan-other')

    @pytest.mark.asyncio
    async def test_unknown_instance(self, harness):
        with pytest.raises(InstanceNotFoundError):
            await harness.service.update_managed_instance('missing', parameters={})


class TestDeleteManagedInstance:
    """Test delete requests."""

    @pytest.mark.asyncio
    async def test_enqueues_delete(self, harness):
        instance = await provisioned(harness)

        pending_delete = await harness.service.delete_instance(instance.guid)

        assert pending_delete.last_operation.type == OperationType.DELETE
        assert pending_delete.last_operation.state == OperationStatus.IN_PROGRESS
        unit = (await harness.queue.pending())[0]
        assert unit.operation_guid == pending_delete.last_operation.guid
        assert unit.payload['plan_guid'] == 'plan-small'

    @pytest.mark.asyncio
    async def test_rejected_while_operation_in_progress(self, harness):
        instance = await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        with pytest.raises(OperationInProgressError):
            await harness.service.delete_instance(instance.guid)

    @pytest.mark.asyncio
    async def test_unknown_instance(self, harness):
        with pytest.raises(InstanceNotFoundError):
            await harness.service.delete_instance('missing')


class TestEnqueue:
    """Test enqueue guards."""

    @pytest.mark.asyncio
    async def test_requires_persisted_pending_operation(self, harness):
        instance = await provisioned(harness)

        with pytest.raises(ValidationError, match="must be persisted"):
            await harness.service.enqueue_create(instance.guid, 'plan-small')
        with pytest.raises(ValidationError, match="must be persisted"):
            await harness.service.enqueue_delete(instance.guid, 'plan-small')

    @pytest.mark.asyncio
    async def test_requires_matching_operation_type(self, harness):
        instance = await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        with pytest.raises(ValidationError, match="in-progress update"):
            await harness.service.enqueue_update(instance.guid, 'plan-small')

    @pytest.mark.asyncio
    async def test_enqueue_twice_is_deduplicated(self, harness):
        instance = await harness.service.create_managed_instance('my-db', 'space-1', 'plan-small')

        await harness.service.enqueue_create(instance.guid, 'plan-small')

        assert len(await harness.queue.pending()) == 1


class TestStatusAndParameters:
    """Test read-only operations."""

    @pytest.mark.asyncio
    async def test_get_last_operation(self, harness):
        instance = await provisioned(harness)

        operation = await harness.service.get_last_operation(instance.guid)

        assert operation.type == OperationType.CREATE
        assert operation.state == OperationStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_get_last_operation_unknown_instance(self, harness):
        with pytest.raises(InstanceNotFoundError):
            await harness.service.get_last_operation('missing')

    @pytest.mark.asyncio
    async def test_get_instance_parameters(self, harness, fake_broker):
        instance = await provisioned(harness)
        fake_broker.respond('fetch_instance', 200, {'parameters': {'size': 3}})

        assert await harness.service.get_instance_parameters(instance.guid) == {'size': 3}

    @pytest.mark.asyncio
    async def test_get_instance_parameters_retries_transient(self, harness, fake_broker):
        instance = await provisioned(harness)
        fake_broker.respond('fetch_instance', 503, {})
        fake_broker.respond('fetch_instance', 200, {'parameters': {'size': 3}})

        assert await harness.service.get_instance_parameters(instance.guid) == {'size': 3}
        assert len(fake_broker.calls('fetch_instance')) == 2

    @pytest.mark.asyncio
    async def test_get_instance_parameters_gives_up(self, harness, fake_broker):
        instance = await provisioned(harness)
        fake_broker.respond('fetch_instance', 503, {})
        fake_broker.respond('fetch_instance', 503, {})

        with pytest.raises(BrokerTransientError):
            await harness.service.get_instance_parameters(instance.guid)

    @pytest.mark.asyncio
    async def test_get_instance_parameters_rejected(self, harness, fake_broker):
        instance = await provisioned(harness)
        fake_broker.respond('fetch_instance', 404, {'description': 'not here'})

        with pytest.raises(BrokerFatalError):
            await harness.service.get_instance_parameters(instance.guid)

        assert len(fake_broker.calls('fetch_instance')) == 1

    @pytest.mark.asyncio
    async def test_get_instance_parameters_not_retrievable(self, harness, fake_broker):
        instance = await provisioned(harness, plan_guid='plan-large')

        with pytest.raises(ValidationError, match="does not support fetching"):
            await harness.service.get_instance_parameters(instance.guid)

        assert fake_broker.calls('fetch_instance') == []

    @pytest.mark.asyncio
    async def test_user_provided_parameters_not_found(self, harness):
        instance = await harness.service.create_user_provided_instance('creds', 'space-1')

        with pytest.raises(InstanceNotFoundError):
            await harness.service.get_instance_parameters(instance.guid)


class TestSharing:
    """Test sharing and unsharing."""

    @pytest.mark.asyncio
    async def test_share_and_unshare(self, harness, actor):
        instance = await provisioned(harness)

        shared = await harness.service.share_instance(instance.guid, ['space-2'], actor=actor)
        assert shared.shared_space_guids == ['space-2']
        assert (await harness.metadata_store.get_instance(instance.guid)).shared_space_guids == ['space-2']

        unshared = await harness.service.unshare_instance(instance.guid, 'space-2', actor=actor)
        assert unshared.shared_space_guids == []

        events = await harness.audit_store.list_events(actee=instance.guid)
        assert [event.type for event in events] == [
            'audit.service_instance.create',
            'audit.service_instance.share',
            'audit.service_instance.unshare',
        ]
        assert events[1].metadata == {'target_space_guids': ['space-2']}
        assert events[2].metadata == {'target_space_guid': 'space-2'}

    @pytest.mark.asyncio
    async def test_share_is_idempotent_per_space(self, harness):
        instance = await provisioned(harness)

        await harness.service.share_instance(instance.guid, ['space-2'])
        shared = await harness.service.share_instance(instance.guid, ['space-2'])

        assert shared.shared_space_guids == ['space-2']

    @pytest.mark.asyncio
    async def test_cannot_share_into_own_space(self, harness):
        instance = await provisioned(harness)

        with pytest.raises(ValidationError, match="cannot be shared into the space where they were created"):
            await harness.service.share_instance(instance.guid, ['space-1'])

    @pytest.mark.asyncio
    async def test_cannot_share_into_unknown_space(self, harness):
        instance = await provisioned(harness)

        with pytest.raises(ValidationError, match="Invalid space"):
            await harness.service.share_instance(instance.guid, ['space-9'])

    @pytest.mark.asyncio
    async def test_unshare_requires_shared_space(self, harness):
        instance = await provisioned(harness)

        with pytest.raises(ValidationError, match="Unable to unshare"):
            await harness.service.unshare_instance(instance.guid, 'space-2')
