"""Factory for creating storage instances."""

import logging
from typing import Tuple

from service_lifecycle.config import DatabaseConfig
from service_lifecycle.storage.base import MetadataStore, AuditStore
from service_lifecycle.storage.sqlite_store import SQLiteMetadataStore, SQLiteAuditStore
from service_lifecycle.queue.base import WorkQueue
from service_lifecycle.queue.sqlite_queue import SQLiteWorkQueue
from service_lifecycle.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class StorageFactory:
    """Factory for creating storage instances."""

    @staticmethod
    async def create_stores(database: DatabaseConfig) -> Tuple[MetadataStore, AuditStore, WorkQueue]:
        """Create metadata store, audit store and work queue based on configuration."""

        if database.type.lower() == 'sqlite':
            logger.info("Creating SQLite storage backend")
            metadata_store = SQLiteMetadataStore(database.sqlite_path, database.timeout_seconds)
            await metadata_store.initialize()
            audit_store = SQLiteAuditStore(metadata_store)
            work_queue = SQLiteWorkQueue(metadata_store)
            await work_queue.initialize()

        else:
            raise ConfigurationError(f"Unsupported database type: {database.type}", config_key='database.type')

        return metadata_store, audit_store, work_queue
