"""
Secret Store Adapters — Boundary to the platform's secure storage.

The engine only relies on an atomic, durable ``read``/``write``/``delete_all``
contract. Encryption at rest and OS-level access control belong to the
backing facility. Every adapter reports failures as ``Result`` values;
an absent id reads as ``Result.success(None)``.

Security Note:
    Never log stored values. Only log ids.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..exceptions import ErrorKind, Result

logger = logging.getLogger("securyflex.keys")

MASTER_SECRET_ID = "master-secret"
DERIVATION_SALT_ID = "derivation-salt"
KEY_VERSION_ID = "key-version"
ROTATION_TIMESTAMP_ID = "rotation-timestamp"

STAGED_SECRET_ID = f"{MASTER_SECRET_ID}.next"
STAGED_SALT_ID = f"{DERIVATION_SALT_ID}.next"

ALL_IDS = (
    MASTER_SECRET_ID,
    DERIVATION_SALT_ID,
    KEY_VERSION_ID,
    ROTATION_TIMESTAMP_ID,
    STAGED_SECRET_ID,
    STAGED_SALT_ID,
)


class SecretStore(ABC):
    """Contract of the external secure storage facility."""

    @abstractmethod
    async def read(self, secret_id: str) -> Result[Optional[bytes]]:
        """Return the value stored under ``secret_id``, or ``None`` when absent."""

    @abstractmethod
    async def write(self, secret_id: str, value: bytes) -> Result[None]:
        """Durably store ``value`` under ``secret_id``, replacing any previous value."""

    @abstractmethod
    async def delete_all(self) -> Result[None]:
        """Delete every value this store holds for the engine."""


class MemorySecretStore(SecretStore):
    """Process-local store, for tests and ephemeral engines.

    Values live only as long as the process and are not encrypted.
    """

    def __init__(self, initial: Optional[dict[str, bytes]] = None):
        self._values: dict[str, bytes] = dict(initial or {})

    async def read(self, secret_id: str) -> Result[Optional[bytes]]:
        return Result.success(self._values.get(secret_id))

    async def write(self, secret_id: str, value: bytes) -> Result[None]:
        self._values[secret_id] = bytes(value)
        return Result.success()

    async def delete_all(self) -> Result[None]:
        self._values.clear()
        return Result.success()

    def snapshot(self) -> dict[str, bytes]:
        """Copy of the raw persisted values."""
        return dict(self._values)


class RedisSecretStore(SecretStore):
    """Store backed by an async redis-compatible client.

    Ids are namespaced as ``keys:<namespace>:<id>``. The client only needs
    ``get``, ``set`` and ``delete`` coroutines.
    """

    def __init__(self, redis: Any, namespace: str = "default"):
        if redis is None:
            raise ValueError("RedisSecretStore requires a redis client")
        self._redis = redis
        self._namespace = namespace

    def _redis_key(self, secret_id: str) -> str:
        """Build Redis storage key."""
        return f"keys:{self._namespace}:{secret_id}"

    async def read(self, secret_id: str) -> Result[Optional[bytes]]:
        try:
            value = await self._redis.get(self._redis_key(secret_id))
        except Exception as err:
            logger.error("Secret store read failed for secret_id=%s: %s", secret_id, err)
            return Result.failure(ErrorKind.STORE_FAILURE, f"read {secret_id}: {err}")
        if value is None:
            return Result.success(None)
        if isinstance(value, str):
            value = value.encode("latin-1")
        return Result.success(bytes(value))

    async def write(self, secret_id: str, value: bytes) -> Result[None]:
        try:
            await self._redis.set(self._redis_key(secret_id), bytes(value))
        except Exception as err:
            logger.error("Secret store write failed for secret_id=%s: %s", secret_id, err)
            return Result.failure(ErrorKind.STORE_FAILURE, f"write {secret_id}: {err}")
        return Result.success()

    async def delete_all(self) -> Result[None]:
        try:
            await self._redis.delete(*(self._redis_key(i) for i in ALL_IDS))
        except Exception as err:
            logger.error("Secret store delete_all failed: %s", err)
            return Result.failure(ErrorKind.STORE_FAILURE, f"delete_all: {err}")
        return Result.success()
