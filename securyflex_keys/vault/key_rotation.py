"""
Key Rotation — Master secret lifecycle: bootstrap, rotation, recovery and clear.

State machine::

    UNINITIALIZED -> ACTIVE(v) -> ROTATING -> ACTIVE(v+1) -> ...
                          \\__________ clear() __________/-> UNINITIALIZED

Rotation is single-writer. Concurrent ``rotate()`` calls share one
in-flight task, and that task is shielded so a cancelled caller cannot
interrupt it after it has started persisting.

Persisted commit order for a rotation to version v+1:

1. stage ``master-secret.next`` / ``derivation-salt.next`` (framed v+1)
2. wipe the key cache
3. overwrite ``master-secret``, ``derivation-salt`` and ``rotation-timestamp``
4. write ``key-version`` = v+1 (commit point)
5. scrub the staged ids

A failure before step 4 restores the previous values; the previous
version stays active. If the restore itself fails, the staged pair is
rolled forward instead. No historical secret is retained after a commit.

Security Note:
    Never log secret or salt values. Only log key versions.
"""
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from ..exceptions import ErrorKind, Result
from .audit import AuditDispatcher, AuditOperation
from .cache import KeyCache
from .config import KeyEngineConfig
from .crypto import frame_secret, generate_secret, secure_wipe, unframe_secret
from .store import (
    DERIVATION_SALT_ID,
    KEY_VERSION_ID,
    MASTER_SECRET_ID,
    ROTATION_TIMESTAMP_ID,
    STAGED_SALT_ID,
    STAGED_SECRET_ID,
    SecretStore,
)

logger = logging.getLogger("securyflex.keys")


class RotationState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    ROTATING = "rotating"


class RotationRecord(BaseModel):
    """Current key version and when it was put in place."""

    key_version: int = Field(ge=1)
    last_rotation: datetime
    rotation_interval: timedelta = timedelta(days=90)

    model_config = {"frozen": True}

    @property
    def next_rotation(self) -> datetime:
        return self.last_rotation + self.rotation_interval

    def is_due(self, now: datetime) -> bool:
        return now - self.last_rotation >= self.rotation_interval


@dataclass
class KeyMaterial:
    """Secret and salt of one version, held in wipeable buffers."""
    version: int
    secret: bytearray
    salt: bytearray

    def wipe(self) -> None:
        secure_wipe(self.secret)
        secure_wipe(self.salt)


def _encode_timestamp(value: datetime) -> bytes:
    return value.isoformat().encode("ascii")


def _decode_timestamp(blob: bytes) -> datetime:
    value = datetime.fromisoformat(blob.decode("ascii"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class RotationManager:
    """Owns the master secret lifecycle of one engine.

    All mutations run under ``lock``, which the engine shares with its
    derivation path.
    """

    def __init__(
        self,
        store: SecretStore,
        cache: KeyCache,
        audit: AuditDispatcher,
        config: Optional[KeyEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        self._store = store
        self._cache = cache
        self._audit = audit
        self._config = config or KeyEngineConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = lock or asyncio.Lock()
        self._record: Optional[RotationRecord] = None
        self._state = RotationState.UNINITIALIZED
        self._rotation_task: Optional[asyncio.Task] = None
        self.rotations = 0
        self.failures = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> RotationState:
        return self._state

    @property
    def record(self) -> Optional[RotationRecord]:
        return self._record

    @property
    def cache(self) -> KeyCache:
        return self._cache

    @property
    def key_version(self) -> Optional[int]:
        return self._record.key_version if self._record else None

    def needs_rotation(self) -> bool:
        """True when the active secret is older than the rotation interval.

        An engine without an active secret always needs one.
        """
        if self._record is None:
            return True
        return self._record.is_due(self._clock())

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self) -> Result[RotationRecord]:
        """Load the active secret, bootstrapping version 1 on an empty store.

        Calling it again once active is a no-op. A secret older than the
        rotation interval is rotated right away; a failure of that
        rotation is logged and left to the next scheduled check.
        """
        async with self._lock:
            if self._record is not None:
                return Result.success(self._record)
            result = await self._load_or_bootstrap()
        if result.ok and self.needs_rotation():
            logger.info(
                "Key version %d is past its rotation interval, rotating",
                self._record.key_version,
            )
            rotated = await self.rotate(force=False)
            if rotated.ok:
                return rotated
        return result

    async def _load_or_bootstrap(self) -> Result[RotationRecord]:
        secret = await self._store.read(MASTER_SECRET_ID)
        if not secret.ok:
            return Result.failure(
                ErrorKind.INITIALIZATION_FAILURE,
                f"secret store unreachable: {secret.detail}",
            )
        if not secret.value:
            return await self._bootstrap()
        return await self._load_existing(secret.value)

    async def _bootstrap(self) -> Result[RotationRecord]:
        now = self._clock()
        secret = generate_secret()
        salt = generate_secret()
        # master-secret goes last: its presence marks the store as bootstrapped
        writes = (
            (DERIVATION_SALT_ID, frame_secret(1, salt)),
            (ROTATION_TIMESTAMP_ID, _encode_timestamp(now)),
            (KEY_VERSION_ID, b"1"),
            (MASTER_SECRET_ID, frame_secret(1, secret)),
        )
        try:
            for secret_id, value in writes:
                written = await self._store.write(secret_id, value)
                if not written.ok:
                    await self._store.delete_all()
                    logger.error("Key bootstrap failed writing %s: %s", secret_id, written.detail)
                    return Result.failure(
                        ErrorKind.INITIALIZATION_FAILURE,
                        f"bootstrap write of {secret_id} failed: {written.detail}",
                    )
        finally:
            secure_wipe(secret)
            secure_wipe(salt)
        self._activate(RotationRecord(
            key_version=1,
            last_rotation=now,
            rotation_interval=self._config.rotation_interval,
        ))
        logger.info("Key engine bootstrapped at key version 1")
        self._audit.emit(AuditOperation.INITIALIZE, "bootstrap", 1)
        return Result.success(self._record)

    async def _read_required(self, secret_id: str, missing: ErrorKind) -> Result[bytes]:
        blob = await self._store.read(secret_id)
        if not blob.ok:
            return Result.failure(ErrorKind.STORE_FAILURE, blob.detail)
        if not blob.value:
            return Result.failure(missing, f"{secret_id} is absent from the secret store")
        return Result.success(blob.value)

    async def _load_existing(self, secret_blob: bytes) -> Result[RotationRecord]:
        version_blob = await self._read_required(
            KEY_VERSION_ID, ErrorKind.INCONSISTENT_STATE
        )
        if not version_blob.ok:
            return version_blob
        salt_blob = await self._read_required(DERIVATION_SALT_ID, ErrorKind.MISSING_SALT)
        if not salt_blob.ok:
            return salt_blob
        try:
            version = int(version_blob.value.decode("ascii"))
            secret_version, secret = unframe_secret(secret_blob)
            salt_version, salt = unframe_secret(salt_blob.value)
        except ValueError as err:
            return Result.failure(ErrorKind.INCONSISTENT_STATE, str(err))
        secure_wipe(secret)
        secure_wipe(salt)

        if not secret_version == salt_version == version:
            rolled = await self._roll_forward(version)
            if not rolled.ok:
                return rolled
            version = rolled.value

        timestamp = await self._store.read(ROTATION_TIMESTAMP_ID)
        if not timestamp.ok:
            return Result.failure(ErrorKind.INITIALIZATION_FAILURE, timestamp.detail)
        if timestamp.value:
            try:
                last_rotation = _decode_timestamp(timestamp.value)
            except ValueError as err:
                return Result.failure(ErrorKind.INCONSISTENT_STATE, f"rotation-timestamp: {err}")
        else:
            last_rotation = self._clock()
            logger.warning("rotation-timestamp missing for key version %d, resetting", version)
            await self._store.write(ROTATION_TIMESTAMP_ID, _encode_timestamp(last_rotation))

        self._activate(RotationRecord(
            key_version=version,
            last_rotation=last_rotation,
            rotation_interval=self._config.rotation_interval,
        ))
        logger.info("Key engine loaded key version %d", version)
        self._audit.emit(AuditOperation.INITIALIZE, "loaded", version)
        return Result.success(self._record)

    async def _roll_forward(self, pointer: int) -> Result[int]:
        """Finish an interrupted rotation from the staged pair."""
        staged_secret = await self._store.read(STAGED_SECRET_ID)
        staged_salt = await self._store.read(STAGED_SALT_ID)
        if not (staged_secret.ok and staged_salt.ok and staged_secret.value and staged_salt.value):
            return Result.failure(
                ErrorKind.INCONSISTENT_STATE,
                f"secret, salt and key-version {pointer} disagree and no staged pair exists",
            )
        try:
            secret_version, secret = unframe_secret(staged_secret.value)
            salt_version, salt = unframe_secret(staged_salt.value)
        except ValueError as err:
            return Result.failure(ErrorKind.INCONSISTENT_STATE, str(err))
        secure_wipe(secret)
        secure_wipe(salt)
        if secret_version != salt_version or secret_version not in (pointer, pointer + 1):
            return Result.failure(
                ErrorKind.INCONSISTENT_STATE,
                f"staged pair v{secret_version}/v{salt_version} does not follow key-version {pointer}",
            )
        version = secret_version
        for secret_id, value in (
            (MASTER_SECRET_ID, staged_secret.value),
            (DERIVATION_SALT_ID, staged_salt.value),
            (ROTATION_TIMESTAMP_ID, _encode_timestamp(self._clock())),
            (KEY_VERSION_ID, str(version).encode("ascii")),
        ):
            written = await self._store.write(secret_id, value)
            if not written.ok:
                return Result.failure(ErrorKind.INITIALIZATION_FAILURE, written.detail)
        await self._scrub_staging()
        logger.warning("Completed interrupted rotation to key version %d", version)
        return Result.success(version)

    def _activate(self, record: RotationRecord) -> None:
        self._record = record
        self._state = RotationState.ACTIVE

    # ------------------------------------------------------------------
    # Material
    # ------------------------------------------------------------------

    async def load_material(self) -> Result[KeyMaterial]:
        """Read the active secret and salt for one derivation.

        The caller owns the returned buffers and must wipe them.
        """
        async with self._lock:
            if self._record is None:
                return Result.failure(ErrorKind.NOT_INITIALIZED, "call initialize() first")
            version = self._record.key_version
            secret_blob = await self._read_required(
                MASTER_SECRET_ID, ErrorKind.MISSING_MASTER_SECRET
            )
            if not secret_blob.ok:
                return secret_blob
            salt_blob = await self._read_required(DERIVATION_SALT_ID, ErrorKind.MISSING_SALT)
            if not salt_blob.ok:
                return salt_blob
        try:
            secret_version, secret = unframe_secret(secret_blob.value)
            salt_version, salt = unframe_secret(salt_blob.value)
        except ValueError as err:
            return Result.failure(ErrorKind.INCONSISTENT_STATE, str(err))
        material = KeyMaterial(version=version, secret=secret, salt=salt)
        if secret_version != version or salt_version != version:
            material.wipe()
            logger.error(
                "Persisted secret v%d / salt v%d do not match active key version %d",
                secret_version, salt_version, version,
            )
            return Result.failure(
                ErrorKind.INCONSISTENT_STATE,
                f"persisted secret v{secret_version} / salt v{salt_version} "
                f"do not match key version {version}",
            )
        return Result.success(material)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def rotate(self, force: bool = True) -> Result[RotationRecord]:
        """Replace the master secret and salt, bumping the key version.

        Args:
            force: Rotate even if the interval has not elapsed.

        Returns:
            The new record, or a ROTATION_FAILURE result leaving the
            previous version active.
        """
        if self._rotation_task is None or self._rotation_task.done():
            self._rotation_task = asyncio.get_running_loop().create_task(
                self._rotate(force)
            )
        return await asyncio.shield(self._rotation_task)

    async def _rotate(self, force: bool) -> Result[RotationRecord]:
        async with self._lock:
            if self._record is None:
                return Result.failure(ErrorKind.NOT_INITIALIZED, "call initialize() first")
            now = self._clock()
            if not force and not self._record.is_due(now):
                return Result.success(self._record)
            old_version = self._record.key_version
            self._state = RotationState.ROTATING
            self._audit.emit(AuditOperation.ROTATION_START, f"from v{old_version}", old_version)
            try:
                result = await self._commit_rotation(old_version, now)
            except Exception as err:
                logger.exception("Key rotation from v%d aborted", old_version)
                result = Result.failure(ErrorKind.ROTATION_FAILURE, str(err))
            finally:
                if self._record is not None:
                    self._state = RotationState.ACTIVE

        if result.ok:
            self.rotations += 1
            logger.info("Key rotation complete: v%d -> v%d", old_version, result.value.key_version)
            self._audit.emit(
                AuditOperation.ROTATION_COMPLETE,
                f"v{old_version} -> v{result.value.key_version}",
                result.value.key_version,
            )
        else:
            self.failures += 1
            logger.error("Key rotation from v%d failed: %s", old_version, result.detail)
            self._audit.emit(AuditOperation.ROTATION_ERROR, result.detail, old_version)
        return result

    async def _commit_rotation(self, old_version: int, now: datetime) -> Result[RotationRecord]:
        previous: dict[str, bytearray] = {}
        for secret_id, missing in (
            (MASTER_SECRET_ID, ErrorKind.MISSING_MASTER_SECRET),
            (DERIVATION_SALT_ID, ErrorKind.MISSING_SALT),
            (ROTATION_TIMESTAMP_ID, ErrorKind.INCONSISTENT_STATE),
        ):
            blob = await self._read_required(secret_id, missing)
            if not blob.ok:
                return Result.failure(ErrorKind.ROTATION_FAILURE, blob.detail)
            previous[secret_id] = bytearray(blob.value)

        new_version = old_version + 1
        secret = generate_secret()
        salt = generate_secret()
        try:
            for secret_id, value in (
                (STAGED_SECRET_ID, frame_secret(new_version, secret)),
                (STAGED_SALT_ID, frame_secret(new_version, salt)),
            ):
                staged = await self._store.write(secret_id, value)
                if not staged.ok:
                    await self._scrub_staging()
                    return Result.failure(
                        ErrorKind.ROTATION_FAILURE, f"staging {secret_id}: {staged.detail}"
                    )

            # no key of the outgoing version may be served once v+1 is visible
            self._cache.invalidate_all()

            written: list[str] = []
            for secret_id, value in (
                (MASTER_SECRET_ID, frame_secret(new_version, secret)),
                (DERIVATION_SALT_ID, frame_secret(new_version, salt)),
                (ROTATION_TIMESTAMP_ID, _encode_timestamp(now)),
                (KEY_VERSION_ID, str(new_version).encode("ascii")),
            ):
                committed = await self._store.write(secret_id, value)
                if not committed.ok:
                    detail = f"writing {secret_id}: {committed.detail}"
                    if await self._restore(previous, written):
                        await self._scrub_staging()
                        return Result.failure(ErrorKind.ROTATION_FAILURE, detail)
                    return await self._recover_staged(old_version, now, detail)
                written.append(secret_id)
        finally:
            secure_wipe(secret)
            secure_wipe(salt)
            for value in previous.values():
                secure_wipe(value)

        self._activate(RotationRecord(
            key_version=new_version,
            last_rotation=now,
            rotation_interval=self._config.rotation_interval,
        ))
        await self._scrub_staging()
        return Result.success(self._record)

    async def _restore(self, previous: dict[str, bytearray], written: list[str]) -> bool:
        complete = True
        for secret_id in written:
            restored = await self._store.write(secret_id, bytes(previous[secret_id]))
            if not restored.ok:
                # staged pair is kept for _recover_staged
                logger.critical(
                    "Could not restore %s after failed rotation: %s", secret_id, restored.detail
                )
                complete = False
        return complete

    async def _recover_staged(
        self, old_version: int, now: datetime, detail: str
    ) -> Result[RotationRecord]:
        """Roll the staged pair forward after a commit that could not be undone.

        When that fails too, the engine drops back to UNINITIALIZED so the
        next ``initialize()`` reloads from the store.
        """
        rolled = await self._roll_forward(old_version)
        if rolled.ok:
            logger.warning(
                "Rotation from v%d recovered from staged pair (%s)", old_version, detail
            )
            self._activate(RotationRecord(
                key_version=rolled.value,
                last_rotation=now,
                rotation_interval=self._config.rotation_interval,
            ))
            return Result.success(self._record)
        logger.critical(
            "Key state unrecoverable after failed rotation from v%d: %s",
            old_version, rolled.detail,
        )
        self._record = None
        self._state = RotationState.UNINITIALIZED
        return Result.failure(
            ErrorKind.ROTATION_FAILURE, f"{detail}; roll-forward: {rolled.detail}"
        )

    async def _scrub_staging(self) -> None:
        for secret_id in (STAGED_SECRET_ID, STAGED_SALT_ID):
            scrubbed = await self._store.write(secret_id, b"")
            if not scrubbed.ok:
                logger.warning("Could not scrub staged value %s: %s", secret_id, scrubbed.detail)

    # ------------------------------------------------------------------
    # Clear
    # ------------------------------------------------------------------

    async def clear(self) -> Result[None]:
        """Wipe the cache, delete every persisted secret, return to UNINITIALIZED."""
        async with self._lock:
            version = self.key_version or 0
            wiped = self._cache.invalidate_all()
            deleted = await self._store.delete_all()
            self._record = None
            self._state = RotationState.UNINITIALIZED
        logger.warning("All keys cleared (version %d, %d cached key(s) wiped)", version, wiped)
        self._audit.emit(
            AuditOperation.CLEAR_ALL,
            "persisted secrets deleted" if deleted.ok else f"delete failed: {deleted.detail}",
            version,
        )
        if not deleted.ok:
            return Result.failure(ErrorKind.STORE_FAILURE, deleted.detail)
        return Result.success()


class RotationScheduler:
    """Background task rotating the master secret once it falls due.

    A failed rotation is logged and retried on the next tick.
    """

    def __init__(self, manager: RotationManager, interval: float = 3600):
        self._manager = manager
        self._interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Rotation scheduler started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Rotation scheduler stopped")

    async def check(self) -> Optional[Result[RotationRecord]]:
        """Run one scheduled check. Returns None when nothing was due."""
        if self._manager.record is None or not self._manager.needs_rotation():
            return None
        result = await self._manager.rotate(force=False)
        if not result.ok:
            logger.warning("Scheduled rotation failed, will retry: %s", result.detail)
        return result

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._manager.cache.purge_expired()
            try:
                await self.check()
            except Exception:
                logger.exception("Scheduled rotation check raised")
