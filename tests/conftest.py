"""Pytest configuration and fixtures."""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple

import asyncio
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from service_lifecycle.audit.recorder import AuditRecorder
from service_lifecycle.clients.broker_client import BrokerClientFactory
from service_lifecycle.config import Config, DatabaseConfig, BrokerClientConfig, OrchestratorConfig, WorkerConfig
from service_lifecycle.models.instance import Space, ServiceBroker, ServicePlan
from service_lifecycle.queue.base import JobOutcome, WorkUnit
from service_lifecycle.queue.memory_queue import InMemoryWorkQueue
from service_lifecycle.services.lifecycle import InstanceLifecycleService
from service_lifecycle.services.orchestrator import LifecycleOrchestrator
from service_lifecycle.services.worker import LifecycleWorker
from service_lifecycle.storage.sqlite_store import SQLiteMetadataStore, SQLiteAuditStore
from service_lifecycle.utils.retry import RetryConfig


BROKER_ACTIONS = ('provision', 'update', 'deprovision', 'last_operation', 'fetch_instance', 'fetch_binding')


class FakeBroker:
    """In-process service broker that records requests and replays queued responses."""

    DEFAULTS = {
        'provision': (201, {}),
        'update': (200, {}),
        'deprovision': (200, {}),
        'last_operation': (200, {'state': 'succeeded'}),
        'fetch_instance': (200, {'parameters': {}}),
        'fetch_binding': (200, {'parameters': {}}),
    }

    def __init__(self):
        self.url: Optional[str] = None
        self.requests: List[Dict[str, Any]] = []
        self._responses: Dict[str, List[Tuple[int, Any, Dict[str, str], float]]] = {
            action: [] for action in BROKER_ACTIONS
        }

    def respond(self, action: str, status: int, body: Any = None, headers: Optional[Dict[str, str]] = None,
                delay: float = 0.0) -> None:
        """Queue a response. Dict/list bodies are sent as JSON, strings and bytes verbatim."""
        self._responses[action].append((status, {} if body is None else body, headers or {}, delay))

    def calls(self, action: str) -> List[Dict[str, Any]]:
        return [request for request in self.requests if request['action'] == action]

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_put('/v2/service_instances/{guid}', self._handler('provision'))
        app.router.add_patch('/v2/service_instances/{guid}', self._handler('update'))
        app.router.add_delete('/v2/service_instances/{guid}', self._handler('deprovision'))
        app.router.add_get('/v2/service_instances/{guid}/last_operation', self._handler('last_operation'))
        app.router.add_get('/v2/service_instances/{guid}/service_bindings/{binding_guid}',
                           self._handler('fetch_binding'))
        app.router.add_get('/v2/service_instances/{guid}', self._handler('fetch_instance'))
        return app

    def _handler(self, action: str):
        async def handle(request: web.Request) -> web.Response:
            text = await request.text()
            self.requests.append({
                'action': action,
                'method': request.method,
                'path': request.path,
                'guid': request.match_info['guid'],
                'query': dict(request.query),
                'headers': dict(request.headers),
                'body': json.loads(text) if text else None,
            })

            if self._responses[action]:
                status, body, headers, delay = self._responses[action].pop(0)
            else:
                status, body = self.DEFAULTS[action]
                headers, delay = {}, 0.0

            if delay:
                await asyncio.sleep(delay)

            if isinstance(body, bytes):
                return web.Response(status=status, body=body, headers=headers, content_type='application/json')
            if isinstance(body, str):
                return web.Response(status=status, text=body, headers=headers, content_type='application/json')
            return web.json_response(body, status=status, headers=headers)

        return handle


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass
class Catalog:
    space: Space
    other_space: Space
    broker: ServiceBroker
    plan: ServicePlan
    larger_plan: ServicePlan
    fixed_plan: ServicePlan


@dataclass
class Harness:
    """Everything needed to drive instances end to end."""
    metadata_store: SQLiteMetadataStore
    audit_store: SQLiteAuditStore
    queue: InMemoryWorkQueue
    broker_clients: BrokerClientFactory
    recorder: AuditRecorder
    orchestrator: LifecycleOrchestrator
    worker: LifecycleWorker
    service: InstanceLifecycleService
    clock: FakeClock
    catalog: Catalog
    config: OrchestratorConfig
    executed: List[Tuple[WorkUnit, JobOutcome]] = field(default_factory=list)

    async def drain(self, max_rounds: int = 200) -> List[Tuple[WorkUnit, JobOutcome]]:
        """Run units until the queue is empty, jumping the clock to each next due time."""
        executed = []
        for _ in range(max_rounds):
            pending = await self.queue.pending()
            if not pending:
                break
            if pending[0].not_before > self.clock.now:
                self.clock.now = pending[0].not_before
            executed.extend(await self.worker.run_once(self.clock.now))
        self.executed.extend(executed)
        return executed


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def test_config(temp_db):
    """Create test configuration."""
    config = Config()
    config.database = DatabaseConfig(type="sqlite", sqlite_path=temp_db)
    config.logging.level = "DEBUG"
    return config


@pytest.fixture
async def fake_broker():
    """Fake broker served over real HTTP."""
    broker = FakeBroker()
    server = TestServer(broker.make_app())
    await server.start_server()
    broker.url = str(server.make_url('/')).rstrip('/')

    yield broker

    await server.close()


@pytest.fixture
async def metadata_store(temp_db):
    """Initialized SQLite metadata store."""
    store = SQLiteMetadataStore(temp_db)
    await store.initialize()

    yield store

    await store.close()


@pytest.fixture
def audit_store(metadata_store):
    return SQLiteAuditStore(metadata_store)


@pytest.fixture
async def catalog(metadata_store, fake_broker):
    """Space, broker and plans registered in the metadata store."""
    space = Space(guid='space-1', name='dev', organization_guid='org-1', organization_name='acme')
    other_space = Space(guid='space-2', name='prod', organization_guid='org-1', organization_name='acme')
    broker = ServiceBroker(guid='broker-1', name='fake-broker', broker_url=fake_broker.url,
                           auth_username='admin', auth_password='secret')
    plan = ServicePlan(
        guid='plan-small', name='small', unique_id='small-id', service_guid='service-1',
        service_unique_id='service-id', broker_guid=broker.guid, instances_retrievable=True,
        bindings_retrievable=True, maintenance_info={'version': '1.0.0'}
    )
    larger_plan = ServicePlan(
        guid='plan-large', name='large', unique_id='large-id', service_guid='service-1',
        service_unique_id='service-id', broker_guid=broker.guid, maintenance_info={'version': '1.0.0'}
    )
    fixed_plan = ServicePlan(
        guid='plan-fixed', name='fixed', unique_id='fixed-id', service_guid='service-1',
        service_unique_id='service-id', broker_guid=broker.guid, plan_updateable=False
    )

    for item in (space, other_space):
        await metadata_store.save_space(item)
    await metadata_store.save_broker(broker)
    for item in (plan, larger_plan, fixed_plan):
        await metadata_store.save_plan(item)

    return Catalog(space, other_space, broker, plan, larger_plan, fixed_plan)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def orchestrator_config():
    """Deterministic policy: no jitter, one-hour deadline."""
    return OrchestratorConfig(
        max_dispatch_attempts=3,
        dispatch_base_delay=1.0,
        dispatch_max_delay=10.0,
        dispatch_jitter=False,
        poll_interval_seconds=10.0,
        max_poll_interval_seconds=600.0,
        max_action_duration_seconds=3600.0,
        orphan_mitigation_max_attempts=3,
        orphan_mitigation_base_delay=1.0,
        orphan_mitigation_max_delay=10.0,
    )


@pytest.fixture
async def broker_clients():
    factory = BrokerClientFactory(BrokerClientConfig(timeout_seconds=5.0))

    yield factory

    await factory.close()


@pytest.fixture
async def harness(metadata_store, audit_store, catalog, broker_clients, clock, orchestrator_config):
    """Lifecycle service, orchestrator and worker over an in-memory queue."""
    queue = InMemoryWorkQueue()
    recorder = AuditRecorder(audit_store, metadata_store)
    orchestrator = LifecycleOrchestrator(
        metadata_store, queue, broker_clients, recorder, orchestrator_config, clock=clock
    )
    worker = LifecycleWorker(queue, orchestrator, WorkerConfig(batch_size=10), clock=clock)
    service = InstanceLifecycleService(
        metadata_store, queue, recorder, broker_clients,
        parameters_retry=RetryConfig(max_attempts=2, base_delay=0.0, jitter=False),
        clock=clock
    )
    return Harness(
        metadata_store=metadata_store,
        audit_store=audit_store,
        queue=queue,
        broker_clients=broker_clients,
        recorder=recorder,
        orchestrator=orchestrator,
        worker=worker,
        service=service,
        clock=clock,
        catalog=catalog,
        config=orchestrator_config,
    )
