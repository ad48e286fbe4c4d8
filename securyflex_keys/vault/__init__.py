"""Key Vault — Derivation, caching and rotation of symmetric keys.

Security Note (Threat Model):
    Derived keys and the master secret are present in process memory while
    a derivation runs and while a derived key sits in the cache. Buffers
    owned by this package are overwritten on release, but copies made by
    the interpreter or by callers are outside its control. An attacker
    able to read process memory during that window can recover keys;
    mitigation requires HSM/secure enclave integration which is out of scope.
"""

from .audit import (
    AuditDispatcher,
    AuditEvent,
    AuditOperation,
    AuditSink,
    DatabaseAuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
)
from .cache import KeyCache
from .config import KeyEngineConfig, generate_master_secret
from .crypto import KeyPurpose, derive_key, secure_wipe
from .key_rotation import RotationManager, RotationRecord, RotationScheduler, RotationState
from .store import MemorySecretStore, RedisSecretStore, SecretStore

__all__ = [
    "AuditDispatcher",
    "AuditEvent",
    "AuditOperation",
    "AuditSink",
    "DatabaseAuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "KeyCache",
    "KeyEngineConfig",
    "generate_master_secret",
    "KeyPurpose",
    "derive_key",
    "secure_wipe",
    "RotationManager",
    "RotationRecord",
    "RotationScheduler",
    "RotationState",
    "MemorySecretStore",
    "RedisSecretStore",
    "SecretStore",
]
