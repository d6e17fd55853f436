"""SQLite-backed durable work queue."""

import sqlite3
import json
import logging
from typing import List
from datetime import datetime, timedelta, timezone

from service_lifecycle.queue.base import WorkQueue, WorkUnit, JobOutcome, JobState, JobType
from service_lifecycle.storage.sqlite_store import SQLiteMetadataStore
from service_lifecycle.exceptions import StorageError

logger = logging.getLogger(__name__)


class SQLiteWorkQueue(WorkQueue):
    """Durable queue sharing the metadata store's SQLite connection.

    A reserved unit whose lease expires without completion becomes eligible
    again, which gives at-least-once delivery across worker crashes.
    """

    def __init__(self, metadata_store: SQLiteMetadataStore, lease_seconds: float = 300.0):
        super().__init__()
        self.metadata_store = metadata_store
        self.lease_seconds = lease_seconds

    @property
    def connection(self) -> sqlite3.Connection:
        return self.metadata_store._conn

    async def initialize(self) -> None:
        try:
            with self.connection:
                self.connection.execute('''
                    CREATE TABLE IF NOT EXISTS jobs (
                        job_guid TEXT PRIMARY KEY,
                        job_type TEXT NOT NULL,
                        instance_guid TEXT NOT NULL,
                        operation_guid TEXT NOT NULL,
                        attempt INTEGER NOT NULL,
                        retries INTEGER NOT NULL DEFAULT 0,
                        payload TEXT NOT NULL,
                        not_before REAL NOT NULL,
                        state TEXT NOT NULL,
                        reserved_until REAL
                    )
                ''')
                self.connection.execute('CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs (state, not_before)')
        except sqlite3.Error as e:
            raise StorageError("Failed to create jobs table", operation='initialize', cause=e) from e

    async def schedule(self, unit: WorkUnit, not_before: datetime) -> bool:
        try:
            with self.connection:
                cursor = self.connection.execute('''
                    INSERT OR IGNORE INTO jobs (
                        job_guid, job_type, instance_guid, operation_guid, attempt, retries, payload, not_before, state
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    unit.job_guid, unit.job_type.value, unit.instance_guid, unit.operation_guid,
                    unit.attempt, unit.retries, json.dumps(unit.payload), not_before.timestamp(),
                    JobState.PENDING.value
                ))
        except sqlite3.Error as e:
            raise StorageError("Failed to schedule job", operation='schedule', cause=e) from e

        if cursor.rowcount == 0:
            logger.debug(f"Job {unit.job_guid} already scheduled, ignoring duplicate")
            return False

        logger.debug(f"Scheduled {unit.job_type.value} job {unit.job_guid} for {not_before.isoformat()}")
        return True

    async def reserve_due(self, now: datetime, limit: int = 20) -> List[WorkUnit]:
        now_ts = now.timestamp()
        lease_until = (now + timedelta(seconds=self.lease_seconds)).timestamp()

        try:
            with self.connection:
                rows = self.connection.execute('''
                    SELECT * FROM jobs
                    WHERE (state = ? AND not_before <= ?) OR (state = ? AND reserved_until < ?)
                    ORDER BY not_before
                    LIMIT ?
                ''', (JobState.PENDING.value, now_ts, JobState.RUNNING.value, now_ts, limit)).fetchall()

                units = [
                    self._row_to_unit(row) for row in rows
                    if self._claim(row['job_guid'], now_ts, lease_until)
                ]
        except sqlite3.Error as e:
            raise StorageError("Failed to reserve jobs", operation='reserve_due', cause=e) from e

        return units

    def _claim(self, job_guid: str, now_ts: float, lease_until: float) -> bool:
        """Take the lease on one job. False when another worker claimed it first."""
        cursor = self.connection.execute('''
            UPDATE jobs SET state = ?, reserved_until = ?
            WHERE job_guid = ?
              AND ((state = ? AND not_before <= ?) OR (state = ? AND reserved_until < ?))
        ''', (
            JobState.RUNNING.value, lease_until, job_guid,
            JobState.PENDING.value, now_ts, JobState.RUNNING.value, now_ts
        ))
        return cursor.rowcount == 1

    async def release(self, unit: WorkUnit, not_before: datetime) -> None:
        try:
            with self.connection:
                self.connection.execute('''
                    UPDATE jobs SET state = ?, reserved_until = NULL, not_before = ?, retries = ?
                    WHERE job_guid = ?
                ''', (JobState.PENDING.value, not_before.timestamp(), unit.retries + 1, unit.job_guid))
        except sqlite3.Error as e:
            raise StorageError("Failed to release job", operation='release', cause=e) from e

    async def complete(self, unit: WorkUnit, outcome: JobOutcome) -> None:
        try:
            with self.connection:
                self.connection.execute(
                    'UPDATE jobs SET state = ?, reserved_until = NULL WHERE job_guid = ?',
                    (JobState(outcome.value).value, unit.job_guid)
                )
        except sqlite3.Error as e:
            raise StorageError("Failed to complete job", operation='complete', cause=e) from e

        await self._notify(unit, outcome)

    async def pending(self) -> List[WorkUnit]:
        try:
            rows = self.connection.execute(
                'SELECT * FROM jobs WHERE state = ? ORDER BY not_before', (JobState.PENDING.value,)
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError("Failed to list pending jobs", operation='pending', cause=e) from e
        return [self._row_to_unit(row) for row in rows]

    def _row_to_unit(self, row: sqlite3.Row) -> WorkUnit:
        return WorkUnit(
            job_guid=row['job_guid'],
            job_type=JobType(row['job_type']),
            instance_guid=row['instance_guid'],
            operation_guid=row['operation_guid'],
            attempt=row['attempt'],
            retries=row['retries'],
            payload=json.loads(row['payload']),
            not_before=datetime.fromtimestamp(row['not_before'], tz=timezone.utc)
        )
