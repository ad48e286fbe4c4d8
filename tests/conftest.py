"""Shared fixtures for the key engine tests."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from securyflex_keys import KeyEngineConfig, MemoryAuditSink, MemorySecretStore, SecureKeyManager
from securyflex_keys.exceptions import ErrorKind, Result


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FlakyStore(MemorySecretStore):
    """Memory store whose reads and writes can be made to fail per id."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_reads: set[str] = set()
        self.fail_writes: set[str] = set()
        self.fail_delete = False
        self.writes: list[str] = []

    async def read(self, secret_id: str):
        if secret_id in self.fail_reads:
            return Result.failure(ErrorKind.STORE_FAILURE, f"read {secret_id} refused")
        return await super().read(secret_id)

    async def write(self, secret_id: str, value: bytes):
        if secret_id in self.fail_writes:
            return Result.failure(ErrorKind.STORE_FAILURE, f"write {secret_id} refused")
        self.writes.append(secret_id)
        return await super().write(secret_id, value)

    async def delete_all(self):
        if self.fail_delete:
            return Result.failure(ErrorKind.STORE_FAILURE, "delete refused")
        return await super().delete_all()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def config():
    return KeyEngineConfig()


@pytest.fixture
def manager(store, audit_sink, config, clock):
    """Uninitialized manager over a memory store and a fake clock."""
    return SecureKeyManager(store, audit_sink=audit_sink, config=config, clock=clock)
