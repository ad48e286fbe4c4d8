"""SecuryFlex Keys.

Secure key derivation and rotation engine for document encryption
and payload signing.
"""
from .version import __version__
from .exceptions import (
    ErrorKind,
    KeyManagementError,
    InitializationFailure,
    MissingMasterSecret,
    MissingSalt,
    RotationFailure,
    InconsistentKeyState,
    NotInitialized,
    SecretStoreFailure,
    AuditSinkFailure,
    Result,
)
from .manager import SecureKeyManager, KeyStatus
from .vault import (
    KeyEngineConfig,
    KeyPurpose,
    MemorySecretStore,
    RedisSecretStore,
    SecretStore,
    AuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
    DatabaseAuditSink,
)

__all__ = [
    "__version__",
    "SecureKeyManager",
    "KeyStatus",
    "ErrorKind",
    "KeyManagementError",
    "InitializationFailure",
    "MissingMasterSecret",
    "MissingSalt",
    "RotationFailure",
    "InconsistentKeyState",
    "NotInitialized",
    "SecretStoreFailure",
    "AuditSinkFailure",
    "Result",
    "KeyEngineConfig",
    "KeyPurpose",
    "MemorySecretStore",
    "RedisSecretStore",
    "SecretStore",
    "AuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "DatabaseAuditSink",
]
