"""Core module - Shared config, errors, hashing, identity and types."""

from backupagent.core.config import ServerConfig
from backupagent.core.errors import (
    APIError,
    AuthenticationError,
    BackupAgentError,
    ConfigError,
    ConflictError,
    FilesystemError,
    InvalidWatchRootError,
    NotFoundError,
    ProtocolError,
    TransportError,
    ValidationError,
)
from backupagent.core.hashing import HASH_BLOCK_SIZE, compute_file_hash
from backupagent.core.identity import generate_device_id, local_host_identity
from backupagent.core.types import (
    BatchFile,
    ChangeAction,
    ChangeEvent,
    CoordinatorState,
    DeviceCredential,
    FileRecord,
    PendingAction,
    UploadBatch,
)

__all__ = [
    # Config
    "ServerConfig",
    # Errors
    "APIError",
    "AuthenticationError",
    "BackupAgentError",
    "ConfigError",
    "ConflictError",
    "FilesystemError",
    "InvalidWatchRootError",
    "NotFoundError",
    "ProtocolError",
    "TransportError",
    "ValidationError",
    # Hashing
    "HASH_BLOCK_SIZE",
    "compute_file_hash",
    # Identity
    "generate_device_id",
    "local_host_identity",
    # Types
    "BatchFile",
    "ChangeAction",
    "ChangeEvent",
    "CoordinatorState",
    "DeviceCredential",
    "FileRecord",
    "PendingAction",
    "UploadBatch",
]
