"""
Configuration management for BillVault.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Replica nodes are fixed at process start
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep entity set defaults aligned with the billing platform's collections
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid {name} '{raw}'. Must be an integer")


def _bool_env(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


class ReplicaBackend(Enum):
    """Supported replica transports."""

    HTTP = "http"
    S3 = "s3"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Root directory for the payload arena and manifest index
        store_path: SQLite entity store file
        wal_mode: SQLite WAL mode enabled for the entity store
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/billvault"
    store_path: str = "/var/lib/billvault/entities.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        data_dir = os.getenv("BILLVAULT_DATA_DIR", "/var/lib/billvault")
        return cls(
            data_dir=data_dir,
            store_path=os.getenv("BILLVAULT_STORE_PATH", os.path.join(data_dir, "entities.db")),
            wal_mode=_bool_env("SQLITE_WAL_MODE", True),
            busy_timeout_ms=_int_env("SQLITE_BUSY_TIMEOUT_MS", 5000),
        )


@dataclass(frozen=True)
class EntitySetConfig:
    """Which entity sets are backed up.

    Attributes:
        full_sets: Sets captured by full backups
        incremental_sets: Mutable / append-only sets allowed in incremental backups
        timestamp_fields: Record fields consulted for point-in-time filtering,
            in order of preference
    """

    full_sets: tuple[str, ...] = ("users", "bills", "commodities", "audit_logs", "settings")
    incremental_sets: tuple[str, ...] = ("bills", "audit_logs")
    timestamp_fields: tuple[str, ...] = ("updated_at", "created_at", "timestamp")

    @classmethod
    def from_env(cls) -> EntitySetConfig:
        """Load configuration from environment variables."""
        return cls(
            full_sets=_csv(
                os.getenv("BILLVAULT_ENTITY_SETS", "users,bills,commodities,audit_logs,settings")
            ),
            incremental_sets=_csv(os.getenv("BILLVAULT_INCREMENTAL_SETS", "bills,audit_logs")),
            timestamp_fields=_csv(
                os.getenv("BILLVAULT_TIMESTAMP_FIELDS", "updated_at,created_at,timestamp")
            ),
        )


@dataclass(frozen=True)
class RetentionConfig:
    """Retention configuration.

    Attributes:
        days: Retention for regular backups
        safety_days: Retention for safety snapshots taken before restores
        purge_interval_seconds: Interval between periodic purges
    """

    days: int = 90
    safety_days: int = 7
    purge_interval_seconds: int = 3600

    @classmethod
    def from_env(cls) -> RetentionConfig:
        """Load configuration from environment variables."""
        return cls(
            days=_int_env("RETENTION_DAYS", 90),
            safety_days=_int_env("SAFETY_RETENTION_DAYS", 7),
            purge_interval_seconds=_int_env("PURGE_INTERVAL_SECONDS", 3600),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the S3 replica transport.

    Attributes:
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class ReplicationConfig:
    """Replication configuration.

    Attributes:
        nodes: (node_id, address) pairs, e.g. from
            REPLICA_NODES="primary=http://10.0.0.1:8470,dr=s3://billvault-dr/replica"
        backend: Transport used to reach the nodes
        staleness_threshold_seconds: A node is inactive once its last sync is older
        max_retries: Retries after the first failed push
        retry_base_ms: Base delay for exponential backoff
        timeout_seconds: Timeout of a single push attempt
        health_check_interval_seconds: Interval between health checks
        s3: S3 settings (if backend is S3)
    """

    nodes: tuple[tuple[str, str], ...] = ()
    backend: ReplicaBackend = ReplicaBackend.HTTP
    staleness_threshold_seconds: int = 600
    max_retries: int = 3
    retry_base_ms: int = 200
    timeout_seconds: float = 30.0
    health_check_interval_seconds: int = 300
    s3: S3Config = field(default_factory=S3Config)

    @staticmethod
    def parse_nodes(value: str) -> tuple[tuple[str, str], ...]:
        """Parse "id=address,id=address" into (id, address) pairs."""
        nodes: list[tuple[str, str]] = []
        seen: set[str] = set()
        for item in _csv(value):
            node_id, sep, address = item.partition("=")
            node_id, address = node_id.strip(), address.strip()
            if not sep or not node_id or not address:
                raise ValueError(f"Invalid REPLICA_NODES entry '{item}'. Expected id=address")
            if node_id in seen:
                raise ValueError(f"Duplicate replica node id '{node_id}'")
            seen.add(node_id)
            nodes.append((node_id, address))
        return tuple(nodes)

    @classmethod
    def from_env(cls) -> ReplicationConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("REPLICA_TRANSPORT", "http").lower()
        try:
            backend = ReplicaBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid REPLICA_TRANSPORT '{backend_str}'. Must be one of: http, s3")

        return cls(
            nodes=cls.parse_nodes(os.getenv("REPLICA_NODES", "")),
            backend=backend,
            staleness_threshold_seconds=_int_env("STALENESS_THRESHOLD_SECONDS", 600),
            max_retries=_int_env("REPLICATION_MAX_RETRIES", 3),
            retry_base_ms=_int_env("REPLICATION_RETRY_BASE_MS", 200),
            timeout_seconds=float(os.getenv("REPLICATION_TIMEOUT_SECONDS", "30")),
            health_check_interval_seconds=_int_env("HEALTH_CHECK_INTERVAL_SECONDS", 300),
            s3=S3Config.from_env(),
        )


@dataclass(frozen=True)
class ScheduleConfig:
    """Automated backup schedule.

    Attributes:
        enabled: Whether scheduled backups run
        full_interval_seconds: Interval between full backups
        incremental_interval_seconds: Interval between incremental backups
    """

    enabled: bool = True
    full_interval_seconds: int = 24 * 3600
    incremental_interval_seconds: int = 15 * 60

    @classmethod
    def from_env(cls) -> ScheduleConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_bool_env("BACKUP_SCHEDULE_ENABLED", True),
            full_interval_seconds=_int_env("FULL_BACKUP_INTERVAL_SECONDS", 24 * 3600),
            incremental_interval_seconds=_int_env("INCREMENTAL_BACKUP_INTERVAL_SECONDS", 15 * 60),
        )


@dataclass(frozen=True)
class VerificationConfig:
    """Integrity verification configuration.

    Attributes:
        timeout_seconds: Upper bound on a single verification
        sample_size: Records per set sampled by deep checks
        reference_rules: (set, field, target_set) triples checked by deep
            verification, e.g. bills.user_id must name a record in users
    """

    timeout_seconds: float = 120.0
    sample_size: int = 100
    reference_rules: tuple[tuple[str, str, str], ...] = ()

    @staticmethod
    def parse_rules(value: str) -> tuple[tuple[str, str, str], ...]:
        """Parse "bills.user_id->users,..." into (set, field, target) triples."""
        rules: list[tuple[str, str, str]] = []
        for item in _csv(value):
            source, sep, target = item.partition("->")
            set_name, dot, field_name = source.strip().partition(".")
            if not sep or not dot or not set_name or not field_name or not target.strip():
                raise ValueError(
                    f"Invalid VERIFICATION_REFERENCE_RULES entry '{item}'. Expected set.field->set"
                )
            rules.append((set_name, field_name, target.strip()))
        return tuple(rules)

    @classmethod
    def from_env(cls) -> VerificationConfig:
        """Load configuration from environment variables."""
        return cls(
            timeout_seconds=float(os.getenv("VERIFICATION_TIMEOUT_SECONDS", "120")),
            sample_size=_int_env("VERIFICATION_SAMPLE_SIZE", 100),
            reference_rules=cls.parse_rules(os.getenv("VERIFICATION_REFERENCE_RULES", "")),
        )


@dataclass(frozen=True)
class AuditConfig:
    """Audit trail configuration.

    Attributes:
        path: JSON lines file for audit entries (empty = log only)
    """

    path: str = ""

    @classmethod
    def from_env(cls) -> AuditConfig:
        """Load configuration from environment variables."""
        return cls(path=os.getenv("AUDIT_LOG_PATH", ""))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass(frozen=True)
class ReplicaServerConfig:
    """Replica receiver configuration (the HTTP transport's remote end).

    Attributes:
        host: Bind host
        port: Bind port
        data_dir: Root directory for the replica's arena and index
    """

    host: str = "0.0.0.0"
    port: int = 8470
    data_dir: str = "/var/lib/billvault-replica"

    @classmethod
    def from_env(cls) -> ReplicaServerConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("REPLICA_SERVER_HOST", "0.0.0.0"),
            port=_int_env("REPLICA_SERVER_PORT", 8470),
            data_dir=os.getenv("REPLICA_SERVER_DATA_DIR", "/var/lib/billvault-replica"),
        )


@dataclass
class ServiceConfig:
    """Complete service configuration.

    This aggregates all configuration sections and provides validation.
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    entity_sets: EntitySetConfig = field(default_factory=EntitySetConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    replication: ReplicationConfig = field(default_factory=ReplicationConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            entity_sets=EntitySetConfig.from_env(),
            retention=RetentionConfig.from_env(),
            replication=ReplicationConfig.from_env(),
            schedule=ScheduleConfig.from_env(),
            verification=VerificationConfig.from_env(),
            audit=AuditConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.entity_sets.full_sets:
            raise ValueError("BILLVAULT_ENTITY_SETS must name at least one entity set")
        unknown = set(self.entity_sets.incremental_sets) - set(self.entity_sets.full_sets)
        if unknown:
            raise ValueError(
                f"BILLVAULT_INCREMENTAL_SETS names sets not in BILLVAULT_ENTITY_SETS: {sorted(unknown)}"
            )
        if self.retention.days < 1:
            raise ValueError("RETENTION_DAYS must be at least 1")
        if self.retention.safety_days < 1:
            raise ValueError("SAFETY_RETENTION_DAYS must be at least 1")
        if self.replication.staleness_threshold_seconds <= 0:
            raise ValueError("STALENESS_THRESHOLD_SECONDS must be positive")
        if self.replication.max_retries < 0:
            raise ValueError("REPLICATION_MAX_RETRIES must not be negative")
        if self.verification.timeout_seconds <= 0:
            raise ValueError("VERIFICATION_TIMEOUT_SECONDS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )
        if self.replication.backend == ReplicaBackend.S3:
            for node_id, address in self.replication.nodes:
                if not address.startswith("s3://"):
                    raise ValueError(
                        f"Replica node '{node_id}' address must be s3://bucket/prefix "
                        "when REPLICA_TRANSPORT=s3"
                    )
        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "store_path": self.storage.store_path,
                "entity_sets": list(self.entity_sets.full_sets),
                "incremental_sets": list(self.entity_sets.incremental_sets),
                "retention_days": self.retention.days,
                "replica_transport": self.replication.backend.value,
                "replica_nodes": [node_id for node_id, _ in self.replication.nodes],
                "staleness_threshold_seconds": self.replication.staleness_threshold_seconds,
                "schedule_enabled": self.schedule.enabled,
                "audit_path": self.audit.path or None,
                "log_level": self.observability.log_level,
            },
        )
