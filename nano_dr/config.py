"""Configuration management for nano-dr."""

import os
import shlex
from dataclasses import dataclass, field, replace
from typing import List, Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name, "")
    if value and value.strip():
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(default)


def _env_commands(name: str) -> List[List[str]]:
    """Parse `cmd one; cmd two` into argv lists."""
    value = os.getenv(name, "")
    return [shlex.split(part) for part in value.split(";") if part.strip()]


@dataclass(frozen=True)
class PostgresConfig:
    """Relational store (PostgreSQL) configuration."""
    enabled: bool = True
    host: str = "localhost"
    port: int = 5432
    database: str = "app"
    username: str = "postgres"
    password: str = ""
    compression: bool = True
    compression_level: int = 9
    encryption_key: Optional[str] = None
    dump_tool: str = "pg_dump"
    restore_tool: str = "pg_restore"
    wal_archive_dir: Optional[str] = None  # source of incremental WAL segments
    wal_restore_dir: Optional[str] = None  # staging dir read by restore_command
    data_dir: Optional[str] = None  # cluster data directory; with wal_archive_dir enables physical base backups
    basebackup_tool: str = "pg_basebackup"

    @classmethod
    def from_env(cls) -> 'PostgresConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("POSTGRES_BACKUP_ENABLED", "true"),
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=int(os.getenv("POSTGRES_PORT", "5432")),
            database=os.getenv("POSTGRES_DB", "app"),
            username=os.getenv("POSTGRES_USER", "postgres"),
            password=os.getenv("POSTGRES_PASSWORD", ""),
            compression=_env_bool("POSTGRES_BACKUP_COMPRESSION", "true"),
            compression_level=int(os.getenv("POSTGRES_BACKUP_COMPRESSION_LEVEL", "9")),
            encryption_key=os.getenv("POSTGRES_ENCRYPTION_KEY") or os.getenv("BACKUP_ENCRYPTION_KEY") or None,
            dump_tool=os.getenv("POSTGRES_DUMP_TOOL", "pg_dump"),
            restore_tool=os.getenv("POSTGRES_RESTORE_TOOL", "pg_restore"),
            wal_archive_dir=os.getenv("POSTGRES_WAL_ARCHIVE_DIR") or None,
            wal_restore_dir=os.getenv("POSTGRES_WAL_RESTORE_DIR") or None,
            data_dir=os.getenv("POSTGRES_DATA_DIR") or None,
            basebackup_tool=os.getenv("POSTGRES_BASEBACKUP_TOOL", "pg_basebackup"),
        )

    def __post_init__(self):
        """Validate configuration."""
        if not 0 < self.port < 65536:
            raise ValueError(f"postgres port must be between 1 and 65535, got {self.port}")
        if not 0 <= self.compression_level <= 9:
            raise ValueError(f"compression_level must be between 0 and 9, got {self.compression_level}")


@dataclass(frozen=True)
class MongoConfig:
    """Document store (MongoDB) configuration."""
    enabled: bool = True
    uri: str = "mongodb://localhost:27017"
    database: str = "app"
    compression: bool = True
    encryption_key: Optional[str] = None
    dump_tool: str = "mongodump"
    restore_tool: str = "mongorestore"

    @classmethod
    def from_env(cls) -> 'MongoConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("MONGODB_BACKUP_ENABLED", "true"),
            uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            database=os.getenv("MONGODB_DB", "app"),
            compression=_env_bool("MONGODB_BACKUP_COMPRESSION", "true"),
            encryption_key=os.getenv("MONGODB_ENCRYPTION_KEY") or os.getenv("BACKUP_ENCRYPTION_KEY") or None,
            dump_tool=os.getenv("MONGODB_DUMP_TOOL", "mongodump"),
            restore_tool=os.getenv("MONGODB_RESTORE_TOOL", "mongorestore"),
        )

    def __post_init__(self):
        """Validate configuration."""
        if not self.uri.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError(f"mongodb uri must use mongodb:// or mongodb+srv://, got {self.uri!r}")


@dataclass(frozen=True)
class RedisConfig:
    """Key-value store (Redis) configuration."""
    enabled: bool = True
    url: str = "redis://localhost:6379"
    password: Optional[str] = None
    data_dir: str = "/var/lib/redis"  # fallback when CONFIG GET is disabled
    dbfilename: str = "dump.rdb"
    snapshot_timeout: float = 300.0
    poll_interval: float = 1.0
    socket_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> 'RedisConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("REDIS_BACKUP_ENABLED", "true"),
            url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            password=os.getenv("REDIS_PASSWORD", None),
            data_dir=os.getenv("REDIS_DATA_DIR", "/var/lib/redis"),
            dbfilename=os.getenv("REDIS_DBFILENAME", "dump.rdb"),
            snapshot_timeout=float(os.getenv("REDIS_SNAPSHOT_TIMEOUT", "300.0")),
            poll_interval=float(os.getenv("REDIS_SNAPSHOT_POLL_INTERVAL", "1.0")),
            socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0")),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.snapshot_timeout <= 0:
            raise ValueError(f"snapshot_timeout must be positive, got {self.snapshot_timeout}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.poll_interval > self.snapshot_timeout:
            raise ValueError(
                f"poll_interval ({self.poll_interval}) must not exceed snapshot_timeout ({self.snapshot_timeout})"
            )


@dataclass(frozen=True)
class FilesystemConfig:
    """Application file backup configuration."""
    enabled: bool = True
    critical_paths: List[str] = field(default_factory=lambda: [
        "uploads/", "public/assets/", "config/", "logs/", "certificates/"
    ])
    base_dir: str = "."
    restore_root: Optional[str] = None  # defaults to base_dir
    encryption_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'FilesystemConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("FILES_BACKUP_ENABLED", "true"),
            critical_paths=_env_list("BACKUP_CRITICAL_PATHS", cls.__dataclass_fields__["critical_paths"].default_factory()),
            base_dir=os.getenv("BACKUP_FILES_BASE_DIR", "."),
            restore_root=os.getenv("BACKUP_FILES_RESTORE_ROOT") or None,
            encryption_key=os.getenv("FILES_ENCRYPTION_KEY") or None,
        )

    def __post_init__(self):
        """Validate configuration."""
        for path in self.critical_paths:
            if os.path.isabs(path) or ".." in path.replace("\\", "/").split("/"):
                raise ValueError(f"critical path must be relative to base_dir, got {path!r}")


@dataclass(frozen=True)
class RemoteStorageConfig:
    """Off-site (S3-compatible) storage configuration."""
    bucket: Optional[str] = None
    region: str = "us-east-1"
    prefix: str = "backups"
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    endpoint_url: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.bucket)

    @classmethod
    def from_env(cls) -> 'RemoteStorageConfig':
        """Create config from environment variables."""
        return cls(
            bucket=os.getenv("BACKUP_S3_BUCKET") or None,
            region=os.getenv("BACKUP_S3_REGION", "us-east-1"),
            prefix=os.getenv("BACKUP_S3_PREFIX", "backups"),
            access_key=os.getenv("BACKUP_S3_ACCESS_KEY") or None,
            secret_key=os.getenv("BACKUP_S3_SECRET_KEY") or None,
            endpoint_url=os.getenv("BACKUP_S3_ENDPOINT_URL") or None,
        )


@dataclass(frozen=True)
class StorageConfig:
    """Backup storage targets."""
    local_root: str = "./backups"
    redundant_paths: List[str] = field(default_factory=list)
    remote: RemoteStorageConfig = field(default_factory=RemoteStorageConfig)

    @classmethod
    def from_env(cls) -> 'StorageConfig':
        """Create config from environment variables."""
        return cls(
            local_root=os.getenv("BACKUP_LOCAL_PATH", "./backups"),
            redundant_paths=_env_list("BACKUP_REDUNDANT_PATHS", []),
            remote=RemoteStorageConfig.from_env(),
        )

    def __post_init__(self):
        """Validate configuration."""
        if not self.local_root:
            raise ValueError("local_root must not be empty")


@dataclass(frozen=True)
class RetentionConfig:
    """Retention tier counts."""
    daily: int = 7
    weekly: int = 4
    monthly: int = 12
    yearly: int = 5

    @classmethod
    def from_env(cls) -> 'RetentionConfig':
        """Create config from environment variables."""
        return cls(
            daily=int(os.getenv("BACKUP_RETENTION_DAILY", "7")),
            weekly=int(os.getenv("BACKUP_RETENTION_WEEKLY", "4")),
            monthly=int(os.getenv("BACKUP_RETENTION_MONTHLY", "12")),
            yearly=int(os.getenv("BACKUP_RETENTION_YEARLY", "5")),
        )

    def __post_init__(self):
        """Validate configuration."""
        for tier in ("daily", "weekly", "monthly", "yearly"):
            value = getattr(self, tier)
            if value < 0:
                raise ValueError(f"{tier} retention must be non-negative, got {value}")


@dataclass(frozen=True)
class ScheduleConfig:
    """Cron expressions for the backup cadence."""
    full_backup: str = "0 2 * * 0"  # weekly, Sunday 02:00
    incremental_backup: str = "0 2 * * 1-6"  # daily except Sunday
    log_backup: str = "0 */6 * * *"

    @classmethod
    def from_env(cls) -> 'ScheduleConfig':
        """Create config from environment variables."""
        return cls(
            full_backup=os.getenv("BACKUP_SCHEDULE_FULL", "0 2 * * 0"),
            incremental_backup=os.getenv("BACKUP_SCHEDULE_INCREMENTAL", "0 2 * * 1-6"),
            log_backup=os.getenv("BACKUP_SCHEDULE_LOG", "0 */6 * * *"),
        )

    def __post_init__(self):
        """Validate configuration."""
        for name in ("full_backup", "incremental_backup", "log_backup"):
            expression = getattr(self, name)
            if len(expression.split()) != 5:
                raise ValueError(f"{name} must be a 5-field cron expression, got {expression!r}")


@dataclass(frozen=True)
class MonitoringConfig:
    """Alerting channels and health check settings."""
    enabled: bool = True
    webhook_url: Optional[str] = None
    email: Optional[str] = None
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = "backups@localhost"
    smtp_use_tls: bool = False
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    health_check_interval: float = 300.0
    max_backup_age_hours: float = 26.0
    request_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> 'MonitoringConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("BACKUP_MONITORING_ENABLED", "true"),
            webhook_url=os.getenv("BACKUP_WEBHOOK_URL") or None,
            email=os.getenv("BACKUP_NOTIFICATION_EMAIL") or None,
            smtp_host=os.getenv("BACKUP_SMTP_HOST", "localhost"),
            smtp_port=int(os.getenv("BACKUP_SMTP_PORT", "587")),
            smtp_username=os.getenv("BACKUP_SMTP_USERNAME") or None,
            smtp_password=os.getenv("BACKUP_SMTP_PASSWORD") or None,
            smtp_sender=os.getenv("BACKUP_SMTP_SENDER", "backups@localhost"),
            smtp_use_tls=_env_bool("BACKUP_SMTP_USE_TLS", "false"),
            telegram_bot_token=os.getenv("BACKUP_TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=os.getenv("BACKUP_TELEGRAM_CHAT_ID") or None,
            health_check_interval=float(os.getenv("BACKUP_HEALTH_CHECK_INTERVAL", "300")),
            max_backup_age_hours=float(os.getenv("BACKUP_MAX_AGE_HOURS", "26")),
            request_timeout=float(os.getenv("BACKUP_NOTIFICATION_TIMEOUT", "10")),
        )

    @property
    def has_channel(self) -> bool:
        return bool(self.webhook_url or self.email or (self.telegram_bot_token and self.telegram_chat_id))

    def __post_init__(self):
        """Validate configuration."""
        if self.health_check_interval <= 0:
            raise ValueError(f"health_check_interval must be positive, got {self.health_check_interval}")
        if self.max_backup_age_hours <= 0:
            raise ValueError(f"max_backup_age_hours must be positive, got {self.max_backup_age_hours}")


@dataclass(frozen=True)
class ServicesConfig:
    """Commands used to pause and resume dependent services around a restore."""
    stop_commands: List[List[str]] = field(default_factory=list)
    start_commands: List[List[str]] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> 'ServicesConfig':
        """Create config from environment variables."""
        return cls(
            stop_commands=_env_commands("BACKUP_SERVICE_STOP_COMMANDS"),
            start_commands=_env_commands("BACKUP_SERVICE_START_COMMANDS"),
        )

    def __post_init__(self):
        """Validate configuration."""
        for command in [*self.stop_commands, *self.start_commands]:
            if not command:
                raise ValueError("service commands must not be empty")


@dataclass(frozen=True)
class BackupConfig:
    """Main backup engine configuration."""
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    mongodb: MongoConfig = field(default_factory=MongoConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    filesystem: FilesystemConfig = field(default_factory=FilesystemConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)

    @classmethod
    def from_env(cls) -> 'BackupConfig':
        """Create complete config from environment variables."""
        return cls(
            postgres=PostgresConfig.from_env(),
            mongodb=MongoConfig.from_env(),
            redis=RedisConfig.from_env(),
            filesystem=FilesystemConfig.from_env(),
            storage=StorageConfig.from_env(),
            retention=RetentionConfig.from_env(),
            schedule=ScheduleConfig.from_env(),
            monitoring=MonitoringConfig.from_env(),
            services=ServicesConfig.from_env(),
        )

    def replace(self, **sections) -> 'BackupConfig':
        """Return a new config with the given sections swapped in."""
        return replace(self, **sections)

    def to_dict(self) -> dict:
        """Summary of the active configuration without any secret values."""
        return {
            'local_root': self.storage.local_root,
            'redundant_paths': list(self.storage.redundant_paths),
            'remote_bucket': self.storage.remote.bucket,
            'stores': {
                'postgresql': self.postgres.enabled,
                'mongodb': self.mongodb.enabled,
                'redis': self.redis.enabled,
                'files': self.filesystem.enabled,
            },
            'encryption': {
                'postgresql': bool(self.postgres.encryption_key),
                'mongodb': bool(self.mongodb.encryption_key),
                'files': bool(self.filesystem.encryption_key),
            },
            'retention': {
                'daily': self.retention.daily,
                'weekly': self.retention.weekly,
                'monthly': self.retention.monthly,
                'yearly': self.retention.yearly,
            },
            'schedule': {
                'full': self.schedule.full_backup,
                'incremental': self.schedule.incremental_backup,
                'log': self.schedule.log_backup,
            },
            'monitoring': {
                'enabled': self.monitoring.enabled,
                'webhook': bool(self.monitoring.webhook_url),
                'email': bool(self.monitoring.email),
                'telegram': bool(self.monitoring.telegram_bot_token),
            },
        }


def validate_config(config: BackupConfig) -> List[str]:
    """Validate configuration and return list of warnings.

    Args:
        config: Backup configuration to validate

    Returns:
        List of warning messages (empty if no issues)
    """
    warnings = []

    if config.postgres.enabled and not config.postgres.encryption_key:
        warnings.append("PostgreSQL backups are not encrypted (no encryption key configured)")

    if config.postgres.enabled and config.postgres.wal_archive_dir and not config.postgres.data_dir:
        warnings.append("PostgreSQL WAL archive is configured without data_dir: incremental backups are disabled")

    if config.mongodb.enabled and not config.mongodb.encryption_key:
        warnings.append("MongoDB backups are not encrypted (no encryption key configured)")

    if config.monitoring.enabled and not config.monitoring.has_channel:
        warnings.append("Monitoring is enabled but no webhook, email or telegram channel is configured")

    remote = config.storage.remote
    if remote.enabled and not (remote.access_key and remote.secret_key):
        warnings.append(f"Remote bucket {remote.bucket} has no explicit credentials; relying on the default AWS chain")

    if config.retention.monthly == 0:
        warnings.append("Monthly retention is 0: full backups expire immediately")

    if not any([config.postgres.enabled, config.mongodb.enabled, config.redis.enabled, config.filesystem.enabled]):
        warnings.append("All stores are disabled: backups will contain nothing")

    return warnings
