"""
Key Management Errors — Error kinds, typed exceptions and the Result type.

Internal operations (store access, derivation, rotation) report failures
as ``Result`` values tagged with an ``ErrorKind``. The public key API
unwraps them at the boundary, raising the matching exception, so callers
never receive an empty or placeholder key.
"""
from enum import Enum
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    INITIALIZATION_FAILURE = "initialization_failure"
    MISSING_MASTER_SECRET = "missing_master_secret"
    MISSING_SALT = "missing_salt"
    ROTATION_FAILURE = "rotation_failure"
    INCONSISTENT_STATE = "inconsistent_state"
    NOT_INITIALIZED = "not_initialized"
    STORE_FAILURE = "store_failure"
    AUDIT_FAILURE = "audit_failure"


class KeyManagementError(Exception):
    """Base class for every key management failure."""

    kind: ErrorKind = ErrorKind.INITIALIZATION_FAILURE

    def __init__(self, message: str = "", *args) -> None:
        super().__init__(message or self.kind.value, *args)
        self.message = message or self.kind.value


class InitializationFailure(KeyManagementError):
    kind = ErrorKind.INITIALIZATION_FAILURE


class MissingMasterSecret(KeyManagementError):
    kind = ErrorKind.MISSING_MASTER_SECRET


class MissingSalt(KeyManagementError):
    kind = ErrorKind.MISSING_SALT


class RotationFailure(KeyManagementError):
    kind = ErrorKind.ROTATION_FAILURE


class InconsistentKeyState(KeyManagementError):
    """Persisted secret, salt and version pointer disagree."""
    kind = ErrorKind.INCONSISTENT_STATE


class NotInitialized(KeyManagementError):
    kind = ErrorKind.NOT_INITIALIZED


class SecretStoreFailure(KeyManagementError):
    kind = ErrorKind.STORE_FAILURE


class AuditSinkFailure(KeyManagementError):
    """Raised by audit sinks; always caught and logged by the dispatcher."""
    kind = ErrorKind.AUDIT_FAILURE


_EXCEPTIONS: dict[ErrorKind, type[KeyManagementError]] = {
    cls.kind: cls for cls in (
        InitializationFailure,
        MissingMasterSecret,
        MissingSalt,
        RotationFailure,
        InconsistentKeyState,
        NotInitialized,
        SecretStoreFailure,
        AuditSinkFailure,
    )
}


def exception_for(kind: ErrorKind) -> type[KeyManagementError]:
    """Return the exception class matching an error kind."""
    return _EXCEPTIONS[kind]


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a fallible operation: either a value or an error kind."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str = "") -> "Result[T]":
        return cls(error=kind, detail=detail)

    def unwrap(self) -> T:
        """Return the value, raising the typed exception on failure.

        Raises:
            KeyManagementError: subclass matching ``self.error``.
        """
        if self.error is not None:
            raise exception_for(self.error)(self.detail)
        return self.value  # type: ignore[return-value]
