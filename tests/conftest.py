import fnmatch
import os
import sys
from types import SimpleNamespace

import pytest

# Добавляем корень репозитория в sys.path, чтобы импортировать пакет habito
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)


@pytest.fixture
def make_stores(tmp_path):
    """
    Async factory for a local cache and a remote store on throwaway sqlite files.
    Call it inside the test's event loop and dispose the engines at the end.
    """
    from habito.db import init_db, make_engine, make_session_factory
    from habito.services.local_cache import LocalCacheStore
    from habito.services.remote_store import SqlRemoteStore

    async def _make(feed=None):
        local_engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
        remote_engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'remote.db'}")
        await init_db(local_engine)
        await init_db(remote_engine)

        async def dispose():
            await local_engine.dispose()
            await remote_engine.dispose()

        return SimpleNamespace(
            cache=LocalCacheStore(make_session_factory(local_engine)),
            remote=SqlRemoteStore(make_session_factory(remote_engine), feed),
            dispose=dispose,
        )

    return _make


class FakePipeline:
    """Queues `set` calls and applies them together on execute()."""

    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.ops = []
        return False

    def set(self, key, value, ex=None):
        self.ops.append((key, value, ex))
        return self

    async def execute(self):
        results = [await self.redis.set(*op) for op in self.ops]
        self.ops = []
        return results


class FakeRedis:
    """
    In-memory stand-in for the redis.asyncio client covering the calls the
    activity cache makes. Expiry is driven by the `now` attribute.
    """

    def __init__(self):
        self.now = 0.0
        self.store = {}

    def _alive(self, key):
        entry = self.store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.now >= expires_at:
            del self.store[key]
            return None
        return value

    async def get(self, key):
        return self._alive(key)

    async def set(self, key, value, ex=None):
        self.store[key] = (value, None if ex is None else self.now + ex)
        return True

    async def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def scan_iter(self, match="*"):
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match) and self._alive(key) is not None:
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.store.clear()


@pytest.fixture
def fake_redis():
    return FakeRedis()
