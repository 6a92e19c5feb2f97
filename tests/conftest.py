"""Shared fixtures for genqueue tests"""

import asyncio
from typing import Dict, Optional, Set

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from genqueue.config import Settings
from genqueue.queue import TaskQueue
from genqueue.services import Services
from genqueue.store import RedisBackend, TaskStore
from genqueue.webhook import WebhookNotifier


class FakePipeline:
    """Collects GETs and runs them on execute, like a non-transactional pipeline"""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.keys = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, key: str):
        self.keys.append(key)
        return self

    async def execute(self):
        self.redis.check("execute")
        return [self.redis.data.get(key) for key in self.keys]


class FakeRedis:
    """In-test stand-in for a ``redis.asyncio`` client with failure injection"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.ttls: Dict[str, int] = {}
        self.fail_on: Set[str] = set()
        self.closed = False

    def check(self, op: str):
        if op in self.fail_on or "*" in self.fail_on:
            raise RedisConnectionError(f"{op} failed")

    async def ping(self):
        self.check("ping")
        return True

    async def set(self, key: str, value: str, ex: Optional[int] = None):
        self.check("set")
        self.data[key] = value
        if ex:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    async def get(self, key: str):
        self.check("get")
        return self.data.get(key)

    async def sadd(self, key: str, *members: str):
        self.check("sadd")
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def smembers(self, key: str):
        self.check("smembers")
        return set(self.sets.get(key, set()))

    async def srem(self, key: str, *members: str):
        self.check("srem")
        self.sets.setdefault(key, set()).difference_update(members)
        return len(members)

    async def delete(self, *keys: str):
        self.check("delete")
        for key in keys:
            self.data.pop(key, None)
            self.ttls.pop(key, None)
        return len(keys)

    def pipeline(self, transaction: bool = True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True

    def expire(self, key: str):
        """Simulate redis expiring a key"""
        self.data.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
def settings():
    """Settings with no redis and no webhook retry delays"""
    return Settings(
        redis_url=None,
        key_namespace="test",
        task_expire_hours=1,
        task_max_concurrent=2,
        webhook_retry_delays=[0, 0, 0],
    )


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def memory_store(settings):
    """A task store in memory mode"""
    store = TaskStore(settings)
    await store.init()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def redis_store(settings, fake_redis):
    """A task store backed by the fake redis client"""
    store = TaskStore(settings, durable=RedisBackend(fake_redis, "test"))
    await store.init()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def services(settings, memory_store):
    """Services wired around the memory store"""
    services = Services(
        settings=settings,
        store=memory_store,
        queue=TaskQueue(memory_store, max_concurrent=settings.task_max_concurrent),
        notifier=WebhookNotifier(retry_delays=settings.webhook_retry_delays),
    )
    yield services
    await services.queue.stop()
    await services.notifier.aclose()


class Gate:
    """Job body that blocks until released, recording when it starts"""

    def __init__(self, name: str, started: list):
        self.name = name
        self.started = started
        self.event = asyncio.Event()

    async def __call__(self):
        self.started.append(self.name)
        await self.event.wait()

    def release(self):
        self.event.set()


@pytest.fixture
def gates():
    """Factory for gated job bodies sharing one start log"""
    started = []

    def make(name: str) -> Gate:
        return Gate(name, started)

    make.started = started
    return make
