import os
import tempfile

# settings are read at import time, so point them at throwaway locations first
_TMP = tempfile.mkdtemp(prefix="mcph-tests-")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORAGE_DIR"] = os.path.join(_TMP, "storage")
os.environ["LOG_DIR"] = os.path.join(_TMP, "logs")
os.environ["API_KEY"] = "test-key"
os.environ["SIGNING_SECRET"] = "test-secret"

import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import LockError, LockNotOwnedError
from sqlmodel import SQLModel

from mcph import crud
from mcph.deps import get_content_store, get_purge_lock
from mcph.locks import RedisLeaseLock
from mcph.main import app
from mcph.storage import LocalContentStore


@dataclass
class FakeLock:
    """Token-checked lock over a FakeRedis, as redis-py's ``Lock`` behaves."""

    redis: "FakeRedis"
    name: str
    timeout: Optional[float] = None
    token: Optional[str] = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if await self.redis.set(self.name, token, nx=True, ex=self.timeout):
            self.token = token
            return True
        return False

    async def release(self) -> None:
        token, self.token = self.token, None
        if token is None:
            raise LockError("Cannot release an unlocked lock")
        # check and delete in one step, as the Lua release script does
        if await self.redis.get(self.name) != token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        await self.redis.delete(self.name)


@dataclass
class FakeRedis:
    """In-memory stand-in for the redis operations behind the lease lock."""

    values: Dict[str, str] = field(default_factory=dict)
    expiries: Dict[str, float] = field(default_factory=dict)
    now: float = 0.0

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _evict(self, name: str) -> None:
        deadline = self.expiries.get(name)
        if deadline is not None and deadline <= self.now:
            self.values.pop(name, None)
            self.expiries.pop(name, None)

    async def set(self, name: str, value: str, nx: bool = False, ex: Optional[int] = None):
        self._evict(name)
        if nx and name in self.values:
            return None
        self.values[name] = value
        if ex is not None:
            self.expiries[name] = self.now + ex
        else:
            self.expiries.pop(name, None)
        return True

    async def get(self, name: str) -> Optional[str]:
        self._evict(name)
        return self.values.get(name)

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            if self.values.pop(name, None) is not None:
                removed += 1
            self.expiries.pop(name, None)
        return removed

    def lock(self, name: str, timeout: Optional[float] = None, blocking: bool = True, thread_local: bool = True, **kwargs):
        return FakeLock(self, name, timeout)


@pytest.fixture(autouse=True)
def fresh_db():
    SQLModel.metadata.drop_all(crud.engine)
    SQLModel.metadata.create_all(crud.engine)
    yield


@pytest.fixture
def store(tmp_path) -> LocalContentStore:
    return LocalContentStore(tmp_path / "blobs", "test-secret")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def lock(fake_redis) -> RedisLeaseLock:
    return RedisLeaseLock(fake_redis)


@pytest.fixture
def client(store, fake_redis):
    app.dependency_overrides[get_content_store] = lambda: store
    app.dependency_overrides[get_purge_lock] = lambda: RedisLeaseLock(fake_redis)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
