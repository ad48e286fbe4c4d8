"""
Tests for SecureKeyManager, the public key API.

Tests cover:
- Bootstrap and lifecycle
- Determinism and isolation of derived keys
- Cache TTL behaviour through the public API
- Rotation scenario and forward secrecy
- Clear-all
- Audit events and status reporting
"""
import asyncio
import logging

import pytest

from securyflex_keys import (
    InconsistentKeyState,
    KeyEngineConfig,
    KeyPurpose,
    MissingMasterSecret,
    MissingSalt,
    NotInitialized,
    RotationFailure,
    SecureKeyManager,
    SecretStoreFailure,
)
from securyflex_keys.vault.audit import AuditOperation, AuditSink
from securyflex_keys.vault.crypto import derive_key, unframe_secret
from securyflex_keys.vault.key_rotation import RotationState
from securyflex_keys.vault.store import (
    DERIVATION_SALT_ID,
    MASTER_SECRET_ID,
    STAGED_SECRET_ID,
)


class BrokenSink(AuditSink):
    async def record(self, event):
        raise RuntimeError("audit offline")


class TestLifecycle:
    """Tests for initialize, shutdown and the context manager."""

    @pytest.mark.asyncio
    async def test_initialize_bootstraps_version_one(self, manager):
        assert await manager.initialize() == 1
        assert manager.get_key_version() == 1
        key = await manager.get_encryption_key("document:wpbr")
        assert len(key) == 32

    @pytest.mark.asyncio
    async def test_initialize_again_keeps_version(self, manager):
        await manager.initialize()
        await manager.rotate_keys()
        assert await manager.initialize() == 2

    @pytest.mark.asyncio
    async def test_key_before_initialize_raises(self, manager):
        with pytest.raises(NotInitialized):
            await manager.get_encryption_key("document:wpbr")
        with pytest.raises(NotInitialized):
            manager.get_key_version()

    @pytest.mark.asyncio
    async def test_context_manager(self, store, audit_sink, clock):
        async with SecureKeyManager(store, audit_sink=audit_sink, clock=clock) as manager:
            assert manager.get_key_version() == 1
            await manager.get_signing_key("payload:bsn")
            assert len(manager.cache) == 1
        assert len(manager.cache) == 0
        assert AuditOperation.DERIVE in audit_sink.operations()

    @pytest.mark.asyncio
    async def test_restart_derives_same_key(self, store, clock):
        first = SecureKeyManager(store, clock=clock)
        await first.initialize()
        key = await first.get_encryption_key("document:wpbr")
        await first.shutdown()

        second = SecureKeyManager(store, clock=clock)
        await second.initialize()
        assert await second.get_encryption_key("document:wpbr") == key
        await second.shutdown()

    @pytest.mark.asyncio
    async def test_empty_context_rejected(self, manager):
        await manager.initialize()
        with pytest.raises(ValueError):
            await manager.get_encryption_key("")


class TestDerivation:
    """Tests for key determinism and isolation."""

    @pytest.mark.asyncio
    async def test_same_context_same_key(self, manager):
        await manager.initialize()
        first = await manager.get_encryption_key("consistent_context")
        manager.cache.invalidate_all()
        second = await manager.get_encryption_key("consistent_context")
        assert first == second

    @pytest.mark.asyncio
    async def test_contexts_are_isolated(self, manager):
        await manager.initialize()
        one = await manager.get_encryption_key("context_one")
        two = await manager.get_encryption_key("context_two")
        assert one != two
        assert len(one) == len(two) == 32

    @pytest.mark.asyncio
    async def test_purposes_are_isolated(self, manager):
        await manager.initialize()
        enc = await manager.get_encryption_key("document:wpbr")
        sig = await manager.get_signing_key("document:wpbr")
        assert enc != sig

    @pytest.mark.asyncio
    async def test_derive_returns_result(self, manager):
        await manager.initialize()
        result = await manager.derive("ctx", KeyPurpose.SIGNING)
        assert result.ok
        assert len(result.value) == 32

    @pytest.mark.asyncio
    async def test_hkdf_engine(self, store, clock):
        config = KeyEngineConfig(algorithm="hkdf-sha256")
        async with SecureKeyManager(store, config=config, clock=clock) as manager:
            enc = await manager.get_encryption_key("document:wpbr")
            assert len(enc) == 32
            assert enc != await manager.get_signing_key("document:wpbr")

    @pytest.mark.asyncio
    async def test_missing_secret_is_fatal(self, manager, store):
        await manager.initialize()
        store._values.pop(MASTER_SECRET_ID)
        with pytest.raises(MissingMasterSecret):
            await manager.get_encryption_key("document:wpbr")

    @pytest.mark.asyncio
    async def test_missing_salt_is_fatal(self, manager, store):
        await manager.initialize()
        store._values.pop(DERIVATION_SALT_ID)
        with pytest.raises(MissingSalt):
            await manager.get_signing_key("document:wpbr")

    @pytest.mark.asyncio
    async def test_store_read_failure_is_fatal(self, manager, store):
        await manager.initialize()
        store.fail_reads.add(MASTER_SECRET_ID)
        with pytest.raises(SecretStoreFailure):
            await manager.get_encryption_key("document:wpbr")

    @pytest.mark.asyncio
    async def test_tampered_salt_version_is_fatal(self, manager, store):
        await manager.initialize()
        salt = store._values[DERIVATION_SALT_ID]
        store._values[DERIVATION_SALT_ID] = b"\x00\x00\x00\x09" + salt[4:]
        with pytest.raises(InconsistentKeyState):
            await manager.get_encryption_key("document:wpbr")

    @pytest.mark.asyncio
    async def test_concurrent_callers_agree(self, manager):
        await manager.initialize()
        keys = await asyncio.gather(
            *(manager.get_encryption_key("document:shared") for _ in range(5))
        )
        assert len(set(keys)) == 1


class TestCacheBehaviour:
    """Tests for the cache TTL through the public API."""

    @pytest.mark.asyncio
    async def test_hit_before_ttl(self, manager, clock):
        await manager.initialize()
        first = await manager.get_encryption_key("document:wpbr")
        clock.advance(seconds=3599)
        second = await manager.get_encryption_key("document:wpbr")
        assert second == first
        stats = manager.get_statistics()
        assert stats["derivations"] == 1
        assert stats["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_rederive_after_ttl(self, manager, clock):
        await manager.initialize()
        first = await manager.get_encryption_key("document:wpbr")
        clock.advance(seconds=3601)
        second = await manager.get_encryption_key("document:wpbr")
        assert second == first
        stats = manager.get_statistics()
        assert stats["derivations"] == 2
        assert stats["cache_misses"] == 2

    @pytest.mark.asyncio
    async def test_expired_buffer_is_wiped(self, manager, clock):
        await manager.initialize()
        await manager.get_encryption_key("document:wpbr")
        buffer = manager.cache._entries[("document:wpbr", KeyPurpose.ENCRYPTION)].key
        clock.advance(seconds=3601)
        await manager.get_encryption_key("document:wpbr")
        assert buffer == bytearray(32)

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_need_store(self, manager, store):
        await manager.initialize()
        key = await manager.get_encryption_key("document:wpbr")
        store.fail_reads.add(MASTER_SECRET_ID)
        assert await manager.get_encryption_key("document:wpbr") == key


class TestRotationScenario:
    """Tests for rotation through the public API."""

    @pytest.mark.asyncio
    async def test_wpbr_rotation_scenario(self, manager, clock):
        await manager.initialize()
        assert manager.get_key_version() == 1
        k1 = await manager.get_encryption_key("document:wpbr")
        assert len(k1) == 32

        assert await manager.rotate_keys() == 2
        k2 = await manager.get_encryption_key("document:wpbr")
        assert len(k2) == 32
        assert k2 != k1

        assert manager.needs_rotation() is False
        clock.advance(days=89)
        assert manager.needs_rotation() is False
        clock.advance(days=1)
        assert manager.needs_rotation() is True

    @pytest.mark.asyncio
    async def test_every_key_changes_after_rotation(self, manager):
        await manager.initialize()
        contexts = ["document:wpbr", "document:kvk", "payload:bsn"]
        before = {}
        for ctx in contexts:
            before[(ctx, "enc")] = await manager.get_encryption_key(ctx)
            before[(ctx, "sig")] = await manager.get_signing_key(ctx)
        await manager.rotate_keys()
        for ctx in contexts:
            assert await manager.get_encryption_key(ctx) != before[(ctx, "enc")]
            assert await manager.get_signing_key(ctx) != before[(ctx, "sig")]

    @pytest.mark.asyncio
    async def test_concurrent_rotate_keys_single_increment(self, manager, store):
        await manager.initialize()
        versions = await asyncio.gather(*(manager.rotate_keys() for _ in range(10)))
        assert set(versions) == {2}
        assert manager.get_key_version() == 2
        assert store.writes.count(MASTER_SECRET_ID) == 2

    @pytest.mark.asyncio
    async def test_failed_rotation_raises_and_keeps_keys(self, manager, store):
        await manager.initialize()
        key = await manager.get_encryption_key("document:wpbr")
        store.fail_writes.add(STAGED_SECRET_ID)
        with pytest.raises(RotationFailure):
            await manager.rotate_keys()
        assert manager.get_key_version() == 1
        manager.cache.invalidate_all()
        assert await manager.get_encryption_key("document:wpbr") == key

    @pytest.mark.asyncio
    async def test_derivation_overlapping_rotation_leaves_no_stale_key(self, manager, store, config):
        await manager.initialize()
        pending = asyncio.create_task(manager.get_encryption_key("document:wpbr"))
        await asyncio.sleep(0)
        assert await manager.rotate_keys() == 2
        stale = await pending

        assert all(entry.version == 2 for entry in manager.cache._entries.values())

        fresh = await manager.get_encryption_key("document:wpbr")
        persisted = store.snapshot()
        _, secret = unframe_secret(persisted[MASTER_SECRET_ID])
        _, salt = unframe_secret(persisted[DERIVATION_SALT_ID])
        expected = derive_key(
            secret, salt, 2, KeyPurpose.ENCRYPTION, "document:wpbr",
            product_tag=config.product_tag,
            iterations=config.iterations,
            algorithm=config.algorithm,
        )
        assert fresh == expected
        assert fresh != stale
        assert [entry.version for entry in manager.cache._entries.values()] == [2]

    @pytest.mark.asyncio
    async def test_scheduler_starts_and_stops(self, manager):
        await manager.initialize()
        manager.start_scheduler()
        assert manager.get_status().scheduler_running
        await manager.shutdown()
        assert not manager.get_status().scheduler_running


class TestClearAll:
    """Tests for clear_all_keys."""

    @pytest.mark.asyncio
    async def test_clear_then_bootstrap(self, manager, store):
        await manager.initialize()
        await manager.rotate_keys()
        old = await manager.get_encryption_key("document:wpbr")
        buffer = manager.cache._entries[("document:wpbr", KeyPurpose.ENCRYPTION)].key

        await manager.clear_all_keys()

        assert buffer == bytearray(32)
        assert len(manager.cache) == 0
        assert store.snapshot() == {}
        with pytest.raises(NotInitialized):
            manager.get_key_version()
        with pytest.raises(NotInitialized):
            await manager.get_encryption_key("document:wpbr")

        assert await manager.initialize() == 1
        assert manager.get_key_version() == 1
        assert await manager.get_encryption_key("document:wpbr") != old

    @pytest.mark.asyncio
    async def test_clear_delete_failure_raises(self, manager, store):
        await manager.initialize()
        store.fail_delete = True
        with pytest.raises(SecretStoreFailure):
            await manager.clear_all_keys()


class TestAuditAndStatus:
    """Tests for audit events and status."""

    @pytest.mark.asyncio
    async def test_audit_trail(self, manager, audit_sink):
        await manager.initialize()
        await manager.get_encryption_key("document:wpbr")
        await manager.rotate_keys()
        await manager.clear_all_keys()
        await manager.shutdown()
        assert audit_sink.operations() == [
            AuditOperation.INITIALIZE,
            AuditOperation.DERIVE,
            AuditOperation.ROTATION_START,
            AuditOperation.ROTATION_COMPLETE,
            AuditOperation.CLEAR_ALL,
        ]
        derive = audit_sink.events[1]
        assert derive.detail == "context=document:wpbr purpose=encryption"
        assert derive.key_version == 1

    @pytest.mark.asyncio
    async def test_audit_never_contains_key_bytes(self, manager, audit_sink, store):
        await manager.initialize()
        key = await manager.get_encryption_key("document:wpbr")
        await manager.rotate_keys()
        await manager.shutdown()
        for event in audit_sink.events:
            payload = event.to_json()
            assert key.hex().encode() not in payload
            assert key not in payload

    @pytest.mark.asyncio
    async def test_broken_audit_sink_does_not_break_keys(self, store, clock, caplog):
        caplog.set_level(logging.WARNING, logger="securyflex.keys")
        manager = SecureKeyManager(store, audit_sink=BrokenSink(), clock=clock)
        await manager.initialize()
        key = await manager.get_encryption_key("document:wpbr")
        assert await manager.rotate_keys() == 2
        await manager.shutdown()
        assert len(key) == 32
        assert manager.get_statistics()["audit_failures"] >= 3
        assert "audit offline" in caplog.text

    @pytest.mark.asyncio
    async def test_status(self, manager, clock):
        status = manager.get_status()
        assert status.state is RotationState.UNINITIALIZED
        assert status.key_version is None
        assert status.needs_rotation is True

        await manager.initialize()
        await manager.get_signing_key("payload:bsn")
        status = manager.get_status()
        assert status.state is RotationState.ACTIVE
        assert status.key_version == 1
        assert status.last_rotation == clock()
        assert (status.next_rotation - status.last_rotation).days == 90
        assert status.needs_rotation is False
        assert status.cached_keys == 1
        assert status.derivations == 1
        assert status.rotations == 0
