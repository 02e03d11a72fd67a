from .config import BackupConfig, validate_config
from .errors import (
    BackupError,
    ConfigurationError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    PreconditionError,
    ToolExecutionError,
)
from .models import (
    BackupMetadata,
    BackupStatistics,
    BackupStatus,
    BackupType,
    RecoveryPoint,
)
from .orchestrator import BackupOrchestrator, create_orchestrator

__version__ = "0.1.0"
__author__ = "nano-dr"

__all__ = [
    "BackupConfig",
    "validate_config",
    "BackupError",
    "ConfigurationError",
    "ConflictError",
    "IntegrityError",
    "NotFoundError",
    "PreconditionError",
    "ToolExecutionError",
    "BackupMetadata",
    "BackupStatistics",
    "BackupStatus",
    "BackupType",
    "RecoveryPoint",
    "BackupOrchestrator",
    "create_orchestrator",
]
