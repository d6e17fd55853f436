"""Configuration management for the Service Lifecycle Agent."""

import os
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from service_lifecycle.exceptions import ConfigurationError


@dataclass
class DatabaseConfig:
    """Database configuration."""
    type: str = "sqlite"
    sqlite_path: str = "service_lifecycle.db"
    timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    log_audit_events: bool = False


@dataclass
class BrokerClientConfig:
    """Outbound broker HTTP configuration."""
    timeout_seconds: float = 60.0
    api_version: str = "2.15"
    platform: str = "cloudfoundry"
    verify_ssl: bool = True


@dataclass
class OrchestratorConfig:
    """Retry, polling and timeout policy for lifecycle actions."""
    max_dispatch_attempts: int = 5
    dispatch_base_delay: float = 2.0
    dispatch_max_delay: float = 300.0
    dispatch_jitter: bool = True

    poll_interval_seconds: float = 60.0
    min_poll_interval_seconds: float = 0.0
    max_poll_interval_seconds: float = 24 * 60 * 60.0
    poll_backoff_rate: float = 1.0

    max_action_duration_seconds: float = 7 * 24 * 60 * 60.0  # 7 days

    orphan_mitigation_max_attempts: int = 5
    orphan_mitigation_base_delay: float = 10.0
    orphan_mitigation_max_delay: float = 600.0
    mitigate_on_client_error: bool = True


@dataclass
class WorkerConfig:
    """Queue worker loop configuration."""
    idle_interval_seconds: float = 5.0
    batch_size: int = 20
    error_retry_base_delay: float = 5.0
    error_retry_max_delay: float = 300.0
    max_mitigation_error_retries: int = 10


@dataclass
class Config:
    """Main configuration class."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    broker: BrokerClientConfig = field(default_factory=BrokerClientConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)

    @classmethod
    def from_env(cls, base: Optional['Config'] = None) -> 'Config':
        """Load configuration from environment variables."""
        config = base or cls()

        # Database config
        config.database.sqlite_path = os.getenv('SQLITE_PATH', config.database.sqlite_path)
        config.database.timeout_seconds = float(
            os.getenv('DB_TIMEOUT_SECONDS', str(config.database.timeout_seconds))
        )

        # Logging config
        config.logging.level = os.getenv('LOG_LEVEL', config.logging.level)
        config.logging.file_path = os.getenv('LOG_FILE_PATH', config.logging.file_path)
        if os.getenv('LOG_AUDIT_EVENTS') is not None:
            config.logging.log_audit_events = os.getenv('LOG_AUDIT_EVENTS', 'false').lower() == 'true'

        # Broker client config
        config.broker.timeout_seconds = float(
            os.getenv('BROKER_TIMEOUT_SECONDS', str(config.broker.timeout_seconds))
        )
        config.broker.api_version = os.getenv('BROKER_API_VERSION', config.broker.api_version)

        # Orchestrator config
        config.orchestrator.poll_interval_seconds = float(
            os.getenv('BROKER_POLL_INTERVAL_SECONDS', str(config.orchestrator.poll_interval_seconds))
        )
        config.orchestrator.max_action_duration_seconds = float(
            os.getenv('MAX_ACTION_DURATION_SECONDS', str(config.orchestrator.max_action_duration_seconds))
        )
        config.orchestrator.max_dispatch_attempts = int(
            os.getenv('MAX_DISPATCH_ATTEMPTS', str(config.orchestrator.max_dispatch_attempts))
        )

        return config

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from a YAML file, then overlay the environment."""
        file_path = Path(path).expanduser()
        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        try:
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {file_path}")

        config = cls()
        for section in fields(cls):
            section_data = data.get(section.name)
            if section_data is None:
                continue
            if not isinstance(section_data, dict):
                raise ConfigurationError(
                    f"Section '{section.name}' must be a mapping", config_key=section.name
                )
            _apply_section(getattr(config, section.name), section.name, section_data)

        return cls.from_env(config)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a plain dictionary."""
        return {
            section.name: {
                f.name: getattr(getattr(self, section.name), f.name)
                for f in fields(getattr(self, section.name))
            }
            for section in fields(self)
        }


def _apply_section(target: Any, section_name: str, values: Dict[str, Any]) -> None:
    known = {f.name: f for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigurationError(
                f"Unknown configuration key '{section_name}.{key}'",
                config_key=f"{section_name}.{key}"
            )
        setattr(target, key, value)


def load_config(config_file: Optional[str] = None) -> Config:
    """Build configuration from an optional file plus the environment."""
    if config_file:
        return Config.from_file(config_file)
    return Config.from_env()
