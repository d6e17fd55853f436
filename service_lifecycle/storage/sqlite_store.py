"""SQLite implementation of metadata and audit storage."""

import sqlite3
import json
import logging
from typing import Dict, Any, List, Optional
from datetime import datetime
from pathlib import Path

from service_lifecycle.storage.base import MetadataStore, AuditStore
from service_lifecycle.models.instance import (
    ServiceInstance, OperationState, OperationType, OperationStatus, InstanceType,
    Space, ServiceBroker, ServicePlan, utc_now
)
from service_lifecycle.models.event import AuditEvent
from service_lifecycle.exceptions import StorageError

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteMetadataStore(MetadataStore):
    """SQLite implementation of metadata storage."""

    def __init__(self, db_path: str, timeout_seconds: float = 30.0):
        """Initialize SQLite store."""
        self.db_path = db_path
        self.timeout_seconds = timeout_seconds
        self.connection: Optional[sqlite3.Connection] = None

    async def initialize(self) -> None:
        """Initialize the SQLite database."""
        try:
            # Ensure directory exists
            db_path = Path(self.db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)

            # Connect to database
            self.connection = sqlite3.connect(
                self.db_path, timeout=self.timeout_seconds, check_same_thread=False
            )
            self.connection.row_factory = sqlite3.Row
            self.connection.execute('PRAGMA foreign_keys = ON')

            # Create tables
            self._create_tables()

            logger.info(f"SQLite metadata store initialized at {self.db_path}")

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize SQLite store: {e}")
            raise StorageError(f"Failed to initialize SQLite store at {self.db_path}",
                               operation='initialize', cause=e) from e

    def _create_tables(self) -> None:
        """Create database tables."""
        cursor = self.connection.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS spaces (
                guid TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                organization_guid TEXT NOT NULL,
                organization_name TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS service_brokers (
                guid TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                broker_url TEXT NOT NULL,
                auth_username TEXT NOT NULL,
                auth_password TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS service_plans (
                guid TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                unique_id TEXT NOT NULL,
                service_guid TEXT NOT NULL,
                service_unique_id TEXT NOT NULL,
                broker_guid TEXT NOT NULL,
                plan_updateable INTEGER NOT NULL,
                instances_retrievable INTEGER NOT NULL,
                bindings_retrievable INTEGER NOT NULL,
                maintenance_info TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS service_instances (
                guid TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                space_guid TEXT NOT NULL,
                type TEXT NOT NULL,
                service_plan_guid TEXT,
                dashboard_url TEXT,
                tags TEXT NOT NULL,
                credentials TEXT NOT NULL,
                broker_metadata TEXT NOT NULL,
                maintenance_info TEXT,
                shared_space_guids TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (space_guid, name)
            )
        ''')

        # One live row per instance, keyed by instance GUID
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS last_operations (
                instance_guid TEXT PRIMARY KEY,
                guid TEXT NOT NULL,
                type TEXT NOT NULL,
                state TEXT NOT NULL,
                description TEXT,
                broker_operation TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (instance_guid) REFERENCES service_instances (guid) ON DELETE CASCADE
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                guid TEXT NOT NULL UNIQUE,
                type TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                actor TEXT NOT NULL,
                actor_type TEXT NOT NULL,
                actor_name TEXT,
                actor_username TEXT,
                actee TEXT NOT NULL,
                actee_type TEXT NOT NULL,
                actee_name TEXT NOT NULL,
                space_guid TEXT,
                organization_guid TEXT NOT NULL,
                metadata TEXT NOT NULL
            )
        ''')

        # Create indexes
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_instances_space ON service_instances (space_guid)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_actee ON events (actee)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_type ON events (type)')

        self.connection.commit()
        logger.info("Database tables created successfully")

    @property
    def _conn(self) -> sqlite3.Connection:
        if self.connection is None:
            raise StorageError("SQLite store is not initialized", operation='connect')
        return self.connection

    def _fail(self, operation: str, error: Exception) -> StorageError:
        logger.error(f"SQLite {operation} failed: {error}")
        return StorageError(f"SQLite {operation} failed", operation=operation, cause=error)

    # Catalog collaborators

    async def save_space(self, space: Space) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    'INSERT OR REPLACE INTO spaces (guid, name, organization_guid, organization_name) '
                    'VALUES (?, ?, ?, ?)',
                    (space.guid, space.name, space.organization_guid, space.organization_name)
                )
        except sqlite3.Error as e:
            raise self._fail('save_space', e) from e

    async def get_space(self, space_guid: str) -> Optional[Space]:
        try:
            row = self._conn.execute('SELECT * FROM spaces WHERE guid = ?', (space_guid,)).fetchone()
        except sqlite3.Error as e:
            raise self._fail('get_space', e) from e
        return Space(**dict(row)) if row else None

    async def save_broker(self, broker: ServiceBroker) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    'INSERT OR REPLACE INTO service_brokers (guid, name, broker_url, auth_username, auth_password) '
                    'VALUES (?, ?, ?, ?, ?)',
                    (broker.guid, broker.name, broker.broker_url, broker.auth_username, broker.auth_password)
                )
        except sqlite3.Error as e:
            raise self._fail('save_broker', e) from e

    async def get_broker(self, broker_guid: str) -> Optional[ServiceBroker]:
        try:
            row = self._conn.execute('SELECT * FROM service_brokers WHERE guid = ?', (broker_guid,)).fetchone()
        except sqlite3.Error as e:
            raise self._fail('get_broker', e) from e
        return ServiceBroker(**dict(row)) if row else None

    async def save_plan(self, plan: ServicePlan) -> None:
        try:
            with self._conn:
                self._conn.execute('''
                    INSERT OR REPLACE INTO service_plans (
                        guid, name, unique_id, service_guid, service_unique_id, broker_guid,
                        plan_updateable, instances_retrievable, bindings_retrievable, maintenance_info
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    plan.guid, plan.name, plan.unique_id, plan.service_guid, plan.service_unique_id,
                    plan.broker_guid, int(plan.plan_updateable), int(plan.instances_retrievable),
                    int(plan.bindings_retrievable), _dumps(plan.maintenance_info)
                ))
        except sqlite3.Error as e:
            raise self._fail('save_plan', e) from e

    async def get_plan(self, plan_guid: str) -> Optional[ServicePlan]:
        try:
            row = self._conn.execute('SELECT * FROM service_plans WHERE guid = ?', (plan_guid,)).fetchone()
        except sqlite3.Error as e:
            raise self._fail('get_plan', e) from e
        if not row:
            return None
        data = dict(row)
        data['plan_updateable'] = bool(data['plan_updateable'])
        data['instances_retrievable'] = bool(data['instances_retrievable'])
        data['bindings_retrievable'] = bool(data['bindings_retrievable'])
        data['maintenance_info'] = _loads(data['maintenance_info'])
        return ServicePlan(**data)

    # Service instances

    async def create_instance(self, instance: ServiceInstance) -> bool:
        """Create a new service instance record."""
        try:
            with self._conn:
                self._conn.execute('''
                    INSERT INTO service_instances (
                        guid, name, space_guid, type, service_plan_guid, dashboard_url, tags,
                        credentials, broker_metadata, maintenance_info, shared_space_guids,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', self._instance_values(instance) + (
                    instance.created_at.isoformat(), instance.updated_at.isoformat()
                ))
                if instance.last_operation is not None:
                    self._insert_operation(instance.guid, instance.last_operation)

            logger.info(f"Created service instance {instance.guid}")
            return True

        except sqlite3.IntegrityError as e:
            logger.error(f"Instance {instance.guid} ({instance.name}) already exists: {e}")
            return False
        except sqlite3.Error as e:
            raise self._fail('create_instance', e) from e

    async def get_instance(self, instance_guid: str) -> Optional[ServiceInstance]:
        """Retrieve service instance by GUID."""
        try:
            row = self._conn.execute(
                'SELECT * FROM service_instances WHERE guid = ?', (instance_guid,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_instance(row)
        except sqlite3.Error as e:
            raise self._fail('get_instance', e) from e

    async def find_instance_by_name(self, space_guid: str, name: str) -> Optional[ServiceInstance]:
        try:
            row = self._conn.execute(
                'SELECT * FROM service_instances WHERE space_guid = ? AND name = ?', (space_guid, name)
            ).fetchone()
            if not row:
                return None
            return self._row_to_instance(row)
        except sqlite3.Error as e:
            raise self._fail('find_instance_by_name', e) from e

    async def list_instances(self, filters: Optional[Dict[str, Any]] = None) -> List[ServiceInstance]:
        """List all service instances with optional filters."""
        query = 'SELECT si.* FROM service_instances si LEFT JOIN last_operations lo ON lo.instance_guid = si.guid'
        params: List[Any] = []

        if filters:
            conditions = []
            for key, value in filters.items():
                if key == 'space_guid':
                    conditions.append('si.space_guid = ?')
                    params.append(value)
                elif key == 'type':
                    conditions.append('si.type = ?')
                    params.append(value)
                elif key == 'operation_state':
                    conditions.append('lo.state = ?')
                    params.append(value)

            if conditions:
                query += ' WHERE ' + ' AND '.join(conditions)

        query += ' ORDER BY si.created_at'

        try:
            rows = self._conn.execute(query, params).fetchall()
            return [self._row_to_instance(row) for row in rows]
        except sqlite3.Error as e:
            raise self._fail('list_instances', e) from e

    async def update_instance(self, instance: ServiceInstance) -> bool:
        """Update service instance data."""
        try:
            with self._conn:
                cursor = self._update_instance_row(instance)

            if cursor.rowcount == 0:
                logger.warning(f"No instance found with GUID {instance.guid}")
                return False

            logger.info(f"Updated service instance {instance.guid}")
            return True

        except sqlite3.IntegrityError as e:
            logger.error(f"Instance {instance.guid} update conflicts with an existing instance: {e}")
            return False
        except sqlite3.Error as e:
            raise self._fail('update_instance', e) from e

    async def delete_instance(self, instance_guid: str) -> bool:
        """Delete service instance record."""
        try:
            with self._conn:
                cursor = self._conn.execute('DELETE FROM service_instances WHERE guid = ?', (instance_guid,))

            if cursor.rowcount == 0:
                logger.warning(f"No instance found with GUID {instance_guid}")
                return False

            logger.info(f"Deleted service instance {instance_guid}")
            return True

        except sqlite3.Error as e:
            raise self._fail('delete_instance', e) from e

    # Operation state

    async def get_operation(self, instance_guid: str) -> Optional[OperationState]:
        try:
            row = self._conn.execute(
                'SELECT * FROM last_operations WHERE instance_guid = ?', (instance_guid,)
            ).fetchone()
        except sqlite3.Error as e:
            raise self._fail('get_operation', e) from e
        return self._row_to_operation(row) if row else None

    async def start_operation(self, instance_guid: str, operation: OperationState) -> bool:
        try:
            with self._conn:
                cursor = self._conn.execute('''
                    UPDATE last_operations SET
                        guid = ?, type = ?, state = ?, description = ?, broker_operation = ?,
                        created_at = ?, updated_at = ?
                    WHERE instance_guid = ? AND state != ?
                ''', (
                    operation.guid, operation.type.value, operation.state.value, operation.description,
                    operation.broker_operation, operation.created_at.isoformat(),
                    operation.updated_at.isoformat(), instance_guid, OperationStatus.IN_PROGRESS.value
                ))
                if cursor.rowcount == 1:
                    return True

                exists = self._conn.execute(
                    'SELECT 1 FROM last_operations WHERE instance_guid = ?', (instance_guid,)
                ).fetchone()
                if exists:
                    return False

                self._insert_operation(instance_guid, operation)
                return True

        except sqlite3.IntegrityError as e:
            logger.error(f"Cannot start operation for missing instance {instance_guid}: {e}")
            return False
        except sqlite3.Error as e:
            raise self._fail('start_operation', e) from e

    async def update_operation(self, instance_guid: str, operation: OperationState) -> bool:
        try:
            with self._conn:
                return self._compare_and_set_operation(instance_guid, operation)
        except sqlite3.Error as e:
            raise self._fail('update_operation', e) from e

    async def finish_operation(self, instance: ServiceInstance, operation: OperationState) -> bool:
        try:
            with self._conn:
                if not self._compare_and_set_operation(instance.guid, operation):
                    return False
                self._update_instance_row(instance)
                return True
        except sqlite3.Error as e:
            raise self._fail('finish_operation', e) from e

    async def finish_deletion(self, instance_guid: str, operation_guid: str) -> bool:
        try:
            with self._conn:
                live = self._conn.execute(
                    'SELECT 1 FROM last_operations WHERE instance_guid = ? AND guid = ? AND state = ?',
                    (instance_guid, operation_guid, OperationStatus.IN_PROGRESS.value)
                ).fetchone()
                if not live:
                    return False
                self._conn.execute('DELETE FROM service_instances WHERE guid = ?', (instance_guid,))

            logger.info(f"Deleted service instance {instance_guid} after successful deprovision")
            return True

        except sqlite3.Error as e:
            raise self._fail('finish_deletion', e) from e

    async def close(self) -> None:
        """Close database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None
            logger.info("SQLite connection closed")

    # Row helpers

    def _instance_values(self, instance: ServiceInstance) -> tuple:
        return (
            instance.guid,
            instance.name,
            instance.space_guid,
            instance.type.value,
            instance.service_plan_guid,
            instance.dashboard_url,
            json.dumps(instance.tags),
            json.dumps(instance.credentials),
            json.dumps(instance.broker_metadata),
            _dumps(instance.maintenance_info),
            json.dumps(instance.shared_space_guids),
        )

    def _update_instance_row(self, instance: ServiceInstance) -> sqlite3.Cursor:
        return self._conn.execute('''
            UPDATE service_instances SET
                name = ?, space_guid = ?, type = ?, service_plan_guid = ?, dashboard_url = ?,
                tags = ?, credentials = ?, broker_metadata = ?, maintenance_info = ?,
                shared_space_guids = ?, updated_at = ?
            WHERE guid = ?
        ''', self._instance_values(instance)[1:] + (utc_now().isoformat(), instance.guid))

    def _insert_operation(self, instance_guid: str, operation: OperationState) -> None:
        self._conn.execute('''
            INSERT INTO last_operations (
                instance_guid, guid, type, state, description, broker_operation, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            instance_guid, operation.guid, operation.type.value, operation.state.value,
            operation.description, operation.broker_operation,
            operation.created_at.isoformat(), operation.updated_at.isoformat()
        ))

    def _compare_and_set_operation(self, instance_guid: str, operation: OperationState) -> bool:
        cursor = self._conn.execute('''
            UPDATE last_operations SET
                state = ?, description = ?, broker_operation = ?, updated_at = ?
            WHERE instance_guid = ? AND guid = ? AND state = ?
        ''', (
            operation.state.value, operation.description, operation.broker_operation,
            operation.updated_at.isoformat(), instance_guid, operation.guid,
            OperationStatus.IN_PROGRESS.value
        ))
        if cursor.rowcount == 0:
            logger.info(
                f"Operation {operation.guid} on instance {instance_guid} is no longer live, write skipped"
            )
            return False
        return True

    def _row_to_operation(self, row: sqlite3.Row) -> OperationState:
        return OperationState(
            guid=row['guid'],
            type=OperationType(row['type']),
            state=OperationStatus(row['state']),
            description=row['description'],
            broker_operation=row['broker_operation'],
            created_at=datetime.fromisoformat(row['created_at']),
            updated_at=datetime.fromisoformat(row['updated_at'])
        )

    def _row_to_instance(self, row: sqlite3.Row) -> ServiceInstance:
        """Convert database row to ServiceInstance."""
        op_row = self._conn.execute(
            'SELECT * FROM last_operations WHERE instance_guid = ?', (row['guid'],)
        ).fetchone()

        return ServiceInstance(
            guid=row['guid'],
            name=row['name'],
            space_guid=row['space_guid'],
            type=InstanceType(row['type']),
            service_plan_guid=row['service_plan_guid'],
            dashboard_url=row['dashboard_url'],
            tags=json.loads(row['tags']),
            credentials=json.loads(row['credentials']),
            broker_metadata=json.loads(row['broker_metadata']),
            maintenance_info=_loads(row['maintenance_info']),
            shared_space_guids=json.loads(row['shared_space_guids']),
            created_at=datetime.fromisoformat(row['created_at']),
            updated_at=datetime.fromisoformat(row['updated_at']),
            last_operation=self._row_to_operation(op_row) if op_row else None
        )


class SQLiteAuditStore(AuditStore):
    """SQLite implementation of the audit trail."""

    def __init__(self, metadata_store: SQLiteMetadataStore):
        """Initialize audit store with shared connection."""
        self.metadata_store = metadata_store

    @property
    def connection(self) -> sqlite3.Connection:
        """Get database connection."""
        return self.metadata_store._conn

    async def save_event(self, event: AuditEvent) -> None:
        """Append an audit event."""
        try:
            with self.connection:
                self.connection.execute('''
                    INSERT INTO events (
                        guid, type, timestamp, actor, actor_type, actor_name, actor_username,
                        actee, actee_type, actee_name, space_guid, organization_guid, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    event.guid, event.type, event.timestamp.isoformat(), event.actor, event.actor_type,
                    event.actor_name, event.actor_username, event.actee, event.actee_type,
                    event.actee_name, event.space_guid, event.organization_guid,
                    json.dumps(event.metadata, default=str)
                ))
            logger.debug(f"Stored audit event {event.type} for {event.actee}")

        except sqlite3.Error as e:
            logger.error(f"Failed to store audit event {event.type}: {e}")
            raise StorageError("Failed to store audit event", operation='save_event', cause=e) from e

    async def list_events(
        self,
        actee: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Retrieve audit events with optional filters."""
        query = 'SELECT * FROM events'
        params: List[Any] = []
        conditions = []

        if actee:
            conditions.append('actee = ?')
            params.append(actee)

        if event_type:
            conditions.append('type = ?')
            params.append(event_type)

        if conditions:
            query += ' WHERE ' + ' AND '.join(conditions)

        query += ' ORDER BY seq LIMIT ?'
        params.append(limit)

        try:
            rows = self.connection.execute(query, params).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Failed to list audit events: {e}")
            raise StorageError("Failed to list audit events", operation='list_events', cause=e) from e

        events = []
        for row in rows:
            data = {key: row[key] for key in row.keys() if key != 'seq'}
            data['timestamp'] = datetime.fromisoformat(data['timestamp'])
            data['metadata'] = json.loads(data['metadata'])
            events.append(AuditEvent(**data))
        return events
