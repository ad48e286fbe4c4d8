"""
SecureKeyManager — Public API of the key derivation and rotation engine.

Provides the surface consumed by document encryption and signing:
- ``initialize()`` — load or bootstrap the master secret
- ``get_encryption_key(context)`` / ``get_signing_key(context)`` — 32-byte keys
- ``rotate_keys()`` / ``needs_rotation()`` / ``get_key_version()``
- ``clear_all_keys()`` — logout / incident response
- ``start_scheduler()`` / ``shutdown()`` / ``get_status()``

Lookup order for a key: key cache -> derivation from the secret store.

Security Note:
    Never log derived keys. Only log contexts, purposes and key versions.
    Returned keys are ``bytes`` copies; the cache keeps its own wipeable
    buffer and scrubs it on expiry, rotation and clear.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from .exceptions import ErrorKind, NotInitialized, Result
from .vault.audit import AuditDispatcher, AuditOperation, AuditSink
from .vault.cache import KeyCache
from .vault.config import KeyEngineConfig
from .vault.crypto import KeyPurpose, derive_key
from .vault.key_rotation import RotationManager, RotationScheduler, RotationState
from .vault.store import SecretStore

logger = logging.getLogger("securyflex.keys")


class KeyStatus(BaseModel):
    """Snapshot of the engine, free of key material."""

    state: RotationState
    key_version: Optional[int] = None
    last_rotation: Optional[datetime] = None
    next_rotation: Optional[datetime] = None
    needs_rotation: bool
    cached_keys: int = 0
    scheduler_running: bool = False
    derivations: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    rotations: int = 0
    rotation_failures: int = 0
    audit_failures: int = 0


class SecureKeyManager:
    """Derives, caches and rotates purpose-scoped symmetric keys.

    One instance owns its lock, cache, audit dispatcher and rotation
    manager; nothing is shared at module level. Use it as an async context
    manager, or call ``initialize()`` and ``shutdown()`` explicitly.
    """

    def __init__(
        self,
        store: SecretStore,
        audit_sink: Optional[AuditSink] = None,
        config: Optional[KeyEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config or KeyEngineConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._store = store
        self._lock = asyncio.Lock()
        self._cache = KeyCache(ttl=self._config.cache_ttl, clock=self._clock)
        self._audit = AuditDispatcher(audit_sink, clock=self._clock)
        self._rotation = RotationManager(
            store,
            self._cache,
            self._audit,
            config=self._config,
            clock=self._clock,
            lock=self._lock,
        )
        self._scheduler = RotationScheduler(
            self._rotation, interval=self._config.rotation_check_interval,
        )
        self._stats = {"derivations": 0, "cache_hits": 0, "cache_misses": 0}

    @property
    def config(self) -> KeyEngineConfig:
        return self._config

    @property
    def cache(self) -> KeyCache:
        return self._cache

    @property
    def rotation(self) -> RotationManager:
        return self._rotation

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """Load or bootstrap the master secret.

        Returns:
            Active key version.

        Raises:
            InitializationFailure: If the secret store cannot be read or written.
            InconsistentKeyState: If persisted values disagree beyond recovery.
        """
        record = (await self._rotation.initialize()).unwrap()
        return record.key_version

    async def shutdown(self) -> None:
        """Stop the scheduler, wipe cached keys and flush pending audit events."""
        await self._scheduler.stop()
        self._cache.invalidate_all()
        await self._audit.drain()
        logger.debug("Key manager shut down")

    async def __aenter__(self) -> "SecureKeyManager":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    def start_scheduler(self) -> None:
        """Start checking the rotation interval in the background."""
        self._scheduler.start()

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    async def derive(self, context: str, purpose: KeyPurpose) -> Result[bytes]:
        """Return the key for (context, purpose) under the active version.

        Args:
            context: Scope of the key, e.g. ``"document:wpbr"``.
            purpose: ``KeyPurpose.ENCRYPTION`` or ``KeyPurpose.SIGNING``.

        Raises:
            ValueError: If context is empty or purpose is unknown.
        """
        if not context:
            raise ValueError("Key context cannot be empty")
        purpose = KeyPurpose(purpose)
        if self._rotation.record is None:
            return Result.failure(ErrorKind.NOT_INITIALIZED, "call initialize() first")

        cached = self._cache.get(context, purpose)
        if cached is not None:
            self._stats["cache_hits"] += 1
            return Result.success(cached)
        self._stats["cache_misses"] += 1

        generation = self._cache.generation
        loaded = await self._rotation.load_material()
        if not loaded.ok:
            logger.error(
                "Cannot derive %s key for context=%s: %s",
                purpose.value, context, loaded.error.value,
            )
            return Result.failure(loaded.error, loaded.detail)
        material = loaded.value
        try:
            key = await asyncio.to_thread(
                derive_key,
                material.secret,
                material.salt,
                material.version,
                purpose,
                context,
                product_tag=self._config.product_tag,
                iterations=self._config.iterations,
                algorithm=self._config.algorithm,
            )
        finally:
            material.wipe()

        self._cache.put(context, purpose, key, material.version, generation)
        self._stats["derivations"] += 1
        self._audit.emit(
            AuditOperation.DERIVE,
            f"context={context} purpose={purpose.value}",
            material.version,
        )
        return Result.success(key)

    async def get_encryption_key(self, context: str) -> bytes:
        """32-byte encryption key for ``context``.

        Raises:
            KeyManagementError: subclass describing why no key is available.
        """
        return (await self.derive(context, KeyPurpose.ENCRYPTION)).unwrap()

    async def get_signing_key(self, context: str) -> bytes:
        """32-byte signing key for ``context``.

        Raises:
            KeyManagementError: subclass describing why no key is available.
        """
        return (await self.derive(context, KeyPurpose.SIGNING)).unwrap()

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def rotate_keys(self) -> int:
        """Rotate the master secret now.

        Concurrent calls collapse into a single rotation.

        Returns:
            The new key version.

        Raises:
            RotationFailure: If the new secret could not be committed; the
                previous version remains active.
        """
        return (await self._rotation.rotate(force=True)).unwrap().key_version

    def needs_rotation(self) -> bool:
        return self._rotation.needs_rotation()

    def get_key_version(self) -> int:
        """Active key version.

        Raises:
            NotInitialized: Before ``initialize()`` or after ``clear_all_keys()``.
        """
        version = self._rotation.key_version
        if version is None:
            raise NotInitialized("Key engine not initialized. Call initialize() first.")
        return version

    async def clear_all_keys(self) -> None:
        """Wipe cached keys and delete every persisted secret.

        The engine returns to the uninitialized state; ``initialize()``
        bootstraps a fresh version 1.
        """
        (await self._rotation.clear()).unwrap()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_statistics(self) -> dict:
        return {
            **self._stats,
            "rotations": self._rotation.rotations,
            "rotation_failures": self._rotation.failures,
            "audit_failures": self._audit.failures,
        }

    def get_status(self) -> KeyStatus:
        record = self._rotation.record
        return KeyStatus(
            state=self._rotation.state,
            key_version=record.key_version if record else None,
            last_rotation=record.last_rotation if record else None,
            next_rotation=record.next_rotation if record else None,
            needs_rotation=self._rotation.needs_rotation(),
            cached_keys=len(self._cache),
            scheduler_running=self._scheduler.running,
            **self.get_statistics(),
        )
