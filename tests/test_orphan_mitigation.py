"""Tests for orphan mitigation and its worker handling."""

import logging
from datetime import timedelta

import pytest

from service_lifecycle.exceptions import OrphanMitigationExhausted, BrokerFatalError, ErrorCode
from service_lifecycle.models.instance import OperationStatus
from service_lifecycle.queue.base import JobOutcome, JobState, JobType
from service_lifecycle.services.orphan_mitigation import orphan_mitigation_job_guid


async def failed_create(harness, fake_broker):
    """Create an instance whose provision is rejected, leaving one mitigation unit queued."""
    fake_broker.respond('provision', 400, {'description': 'quota exceeded'})
    instance = await harness.service.create_managed_instance(
        'orphan-db', harness.catalog.space.guid, harness.catalog.plan.guid
    )
    await harness.worker.run_once(harness.clock.now)
    return instance


class TestOrphanMitigationJobGuid:
    """Test mitigation job identities."""

    def test_first_attempt(self):
        assert orphan_mitigation_job_guid('op-1') == 'op-1:orphan-mitigation'

    def test_retry_attempt(self):
        assert orphan_mitigation_job_guid('op-1', 3) == 'op-1:orphan-mitigation:3'


class TestSchedule:
    """Test scheduling mitigation units."""

    @pytest.mark.asyncio
    async def test_schedule_snapshots_plan(self, harness, fake_broker):
        instance = await failed_create(harness, fake_broker)

        pending = await harness.queue.pending()
        assert len(pending) == 1
        unit = pending[0]
        assert unit.job_type == JobType.ORPHAN_MITIGATION
        assert unit.instance_guid == instance.guid
        assert unit.payload['plan']['unique_id'] == 'small-id'
        assert unit.payload['broker_guid'] == harness.catalog.broker.guid
        assert unit.payload['instance_name'] == 'orphan-db'

    @pytest.mark.asyncio
    async def test_schedule_is_deduplicated(self, harness, fake_broker):
        instance = await failed_create(harness, fake_broker)
        stored = await harness.metadata_store.get_instance(instance.guid)

        scheduled = await harness.orchestrator.orphan_mitigator.schedule(
            stored, harness.catalog.plan, stored.last_operation
        )

        assert scheduled is False
        assert len(await harness.queue.pending()) == 1


class TestExecute:
    """Test mitigation attempts."""

    @pytest.mark.asyncio
    async def test_deprovision_success(self, harness, fake_broker):
        instance = await failed_create(harness, fake_broker)

        results = await harness.worker.run_once(harness.clock.now)

        assert [outcome for _, outcome in results] == [JobOutcome.COMPLETED]
        request = fake_broker.calls('deprovision')[0]
        assert request['guid'] == instance.guid
        assert request['query']['service_id'] == 'service-id'
        assert request['query']['plan_id'] == 'small-id'
        assert request['headers']['X-Broker-API-Request-Identity'] == orphan_mitigation_job_guid(
            instance.last_operation.guid
        )

    @pytest.mark.asyncio
    async def test_deprovision_does_not_touch_operation_state(self, harness, fake_broker):
        instance = await failed_create(harness, fake_broker)
        before = await harness.metadata_store.get_operation(instance.guid)

        await harness.drain()

        after = await harness.metadata_store.get_operation(instance.guid)
        assert after == before
        assert after.state == OperationStatus.FAILED

    @pytest.mark.asyncio
    async def test_works_after_instance_row_is_gone(self, harness, fake_broker):
        instance = await failed_create(harness, fake_broker)
        await harness.metadata_store.delete_instance(instance.guid)

        results = await harness.drain()

        assert [outcome for _, outcome in results] == [JobOutcome.COMPLETED]
        assert len(fake_broker.calls('deprovision')) == 1

    @pytest.mark.asyncio
    async def test_skipped_when_create_succeeded(self, harness, fake_broker):
        """A failure path racing a successful delivery must not deprovision the live instance."""
        instance = await harness.service.create_managed_instance(
            'live-db', harness.catalog.space.guid, harness.catalog.plan.guid
        )
        await harness.drain()

        outcome = await harness.orchestrator._fail(
            instance, instance.last_operation, harness.catalog.plan, {}, 'timed out', harness.clock.now,
            mitigate=True
        )
        results = await harness.drain()

        assert outcome == JobOutcome.COMPLETED
        assert [(unit.job_type, result) for unit, result in results] == [
            (JobType.ORPHAN_MITIGATION, JobOutcome.COMPLETED)
        ]
        assert fake_broker.calls('deprovision') == []
        stored = await harness.metadata_store.get_operation(instance.guid)
        assert stored.state == OperationStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_runs_when_create_failed(self, harness, fake_broker):
        instance = await failed_create(harness, fake_broker)

        await harness.drain()

        assert (await harness.metadata_store.get_operation(instance.guid)).state == OperationStatus.FAILED
        assert len(fake_broker.calls('deprovision')) == 1

    @pytest.mark.asyncio
    async def test_gone_counts_as_success(self, harness, fake_broker):
        await failed_create(harness, fake_broker)
        fake_broker.respond('deprovision', 410, {})

        results = await harness.drain()

        assert [outcome for _, outcome in results] == [JobOutcome.COMPLETED]

    @pytest.mark.asyncio
    async def test_accepted_counts_as_success(self, harness, fake_broker):
        await failed_create(harness, fake_broker)
        fake_broker.respond('deprovision', 202, {'operation': 'cleanup-1'})

        results = await harness.drain()

        assert [outcome for _, outcome in results] == [JobOutcome.COMPLETED]
        assert fake_broker.calls('last_operation') == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, harness, fake_broker):
        instance = await failed_create(harness, fake_broker)
        operation_guid = instance.last_operation.guid
        fake_broker.respond('deprovision', 503, {})

        results = await harness.worker.run_once(harness.clock.now)

        assert [outcome for _, outcome in results] == [JobOutcome.RESCHEDULED]
        pending = await harness.queue.pending()
        assert pending[0].job_guid == orphan_mitigation_job_guid(operation_guid, 2)
        assert pending[0].attempt == 2
        assert pending[0].not_before == harness.clock.now + timedelta(seconds=1.0)

        results = await harness.drain()

        assert [outcome for _, outcome in results] == [JobOutcome.COMPLETED]
        assert len(fake_broker.calls('deprovision')) == 2

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted_raises(self, harness, fake_broker):
        await failed_create(harness, fake_broker)
        for _ in range(harness.config.orphan_mitigation_max_attempts):
            fake_broker.respond('deprovision', 500, {})

        pending = await harness.queue.pending()
        mitigator = harness.orchestrator.orphan_mitigator
        unit = pending[0]
        for _ in range(harness.config.orphan_mitigation_max_attempts - 1):
            assert await mitigator.execute(unit) == JobOutcome.RESCHEDULED
            unit = unit.model_copy(update={'attempt': unit.attempt + 1})

        with pytest.raises(OrphanMitigationExhausted) as exc_info:
            await mitigator.execute(unit)

        assert exc_info.value.attempts == harness.config.orphan_mitigation_max_attempts
        assert exc_info.value.error_code == ErrorCode.ORPHAN_MITIGATION_EXHAUSTED

    @pytest.mark.asyncio
    async def test_rejection_raises_immediately(self, harness, fake_broker):
        await failed_create(harness, fake_broker)
        fake_broker.respond('deprovision', 400, {'description': 'no such instance'})
        unit = (await harness.queue.pending())[0]

        with pytest.raises(OrphanMitigationExhausted) as exc_info:
            await harness.orchestrator.orphan_mitigator.execute(unit)

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.cause, BrokerFatalError)
        assert 'no such instance' in exc_info.value.cause.message

    @pytest.mark.asyncio
    async def test_unknown_broker_raises(self, harness, fake_broker):
        await failed_create(harness, fake_broker)
        unit = (await harness.queue.pending())[0]
        unit = unit.model_copy(update={'payload': {**unit.payload, 'broker_guid': 'missing-broker'}})

        with pytest.raises(OrphanMitigationExhausted):
            await harness.orchestrator.orphan_mitigator.execute(unit)

        assert fake_broker.calls('deprovision') == []


class TestWorkerHandling:
    """Test the worker surfaces unresolved orphans."""

    @pytest.mark.asyncio
    async def test_exhaustion_logged_as_critical(self, harness, fake_broker, caplog):
        caplog.set_level(logging.INFO)
        instance = await failed_create(harness, fake_broker)
        fake_broker.respond('deprovision', 400, {})
        job_guid = orphan_mitigation_job_guid(instance.last_operation.guid)

        results = await harness.worker.run_once(harness.clock.now)

        assert [outcome for _, outcome in results] == [JobOutcome.FAILED]
        assert harness.queue.state_of(job_guid) == JobState.FAILED
        critical = [record for record in caplog.records if record.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert 'operator attention' in critical[0].getMessage()
        assert instance.guid in critical[0].getMessage()
