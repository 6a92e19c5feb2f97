"""Task storage with a redis backend and an in-memory fallback.

The store prefers redis when ``redis_url`` is configured. Any redis failure,
at startup or later, permanently switches the store to the in-memory backend
for the rest of the process. Callers never see backend errors.

Writes always land in memory as well, so records written by this process are
still there after a downgrade. Memory mode expires finished tasks with a
periodic sweep instead of redis key expiry.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import redis.asyncio as aioredis

from .config import Settings, get_settings
from .models import MUTABLE_FIELDS, Task, can_transition, is_terminal

logger = logging.getLogger(__name__)

MODE_REDIS = "redis"
MODE_MEMORY = "memory"

DEFAULT_LIST_LIMIT = 100

T = TypeVar("T")


def _now() -> int:
    return int(time.time())


def _apply_status_rules(
    changes: Dict[str, Any], completed_at: Optional[int], now: int
) -> None:
    """Make ``completed_at``, ``result`` and ``error`` agree with ``changes["status"]``.

    ``completed_at`` is the value already on record, kept once set.
    """
    status = changes["status"]
    if is_terminal(status):
        if completed_at is not None:
            changes["completed_at"] = completed_at
        elif changes.get("completed_at") is None:
            changes["completed_at"] = now
    else:
        changes["completed_at"] = None

    if status != "completed":
        changes["result"] = None
    if status != "failed":
        changes["error"] = None


class TaskBackend(Protocol):
    async def save(self, task: Task, ttl: Optional[int] = None) -> None: ...

    async def load(self, task_id: str) -> Optional[Task]: ...

    async def load_all(self) -> List[Task]: ...

    async def remove(self, task_id: str) -> None: ...


class MemoryBackend:
    """Process-local task records. Expiry is handled by ``expire_before``."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    async def save(self, task: Task, ttl: Optional[int] = None) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def load(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def load_all(self) -> List[Task]:
        return [task.model_copy(deep=True) for task in self._tasks.values()]

    async def remove(self, task_id: str) -> None:
        self._tasks.pop(task_id, None)

    def expire_before(self, threshold: int) -> int:
        """Drop terminal tasks completed before ``threshold``, return how many."""
        expired = [
            task_id
            for task_id, task in self._tasks.items()
            if task.is_terminal
            and task.completed_at is not None
            and task.completed_at < threshold
        ]
        for task_id in expired:
            del self._tasks[task_id]
        return len(expired)


class RedisBackend:
    """Tasks as JSON strings under ``<ns>:task:<id>``, ids in the ``<ns>:task_ids`` set."""

    def __init__(self, client: Any, namespace: str = "genqueue") -> None:
        self.client = client
        self.namespace = namespace

    @property
    def index_key(self) -> str:
        return f"{self.namespace}:task_ids"

    def task_key(self, task_id: str) -> str:
        return f"{self.namespace}:task:{task_id}"

    async def save(self, task: Task, ttl: Optional[int] = None) -> None:
        await self.client.set(self.task_key(task.id), task.model_dump_json(), ex=ttl)
        await self.client.sadd(self.index_key, task.id)

    async def load(self, task_id: str) -> Optional[Task]:
        data = await self.client.get(self.task_key(task_id))
        return Task.model_validate_json(data) if data else None

    async def load_all(self) -> List[Task]:
        task_ids = list(await self.client.smembers(self.index_key))
        if not task_ids:
            return []

        async with self.client.pipeline(transaction=False) as pipe:
            for task_id in task_ids:
                pipe.get(self.task_key(task_id))
            records = await pipe.execute()

        tasks = []
        stale = []
        for task_id, data in zip(task_ids, records):
            if data:
                tasks.append(Task.model_validate_json(data))
            else:
                # Record expired, drop it from the index too
                stale.append(task_id)

        if stale:
            await self.client.srem(self.index_key, *stale)

        return tasks

    async def remove(self, task_id: str) -> None:
        await self.client.delete(self.task_key(task_id))
        await self.client.srem(self.index_key, task_id)


class TaskStore:
    """Repository of task records"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        durable: Optional[TaskBackend] = None,
    ):
        self.settings = settings or get_settings()
        self.memory = MemoryBackend()
        self._durable = durable
        self._backend: TaskBackend = durable if durable is not None else self.memory
        self._client = None
        self._sweep_task: Optional[asyncio.Task] = None

    async def init(self):
        """Pick the backend. Must be called from the running event loop."""
        if self._durable is not None:
            logger.info("Task store using the provided durable backend")
            return

        if not self.settings.redis_url:
            logger.warning(
                "redis_url not configured, task store runs in memory mode "
                "(tasks are lost on restart)"
            )
            self._start_sweep()
            return

        try:
            client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
            await client.ping()
        except Exception as e:
            logger.warning(
                "Redis unavailable (%s), task store falls back to memory mode", e
            )
            self._start_sweep()
            return

        self._client = client
        self._durable = RedisBackend(client, self.settings.key_namespace)
        self._backend = self._durable
        logger.info("Task store using redis mode")

    async def close(self):
        """Stop the sweep loop and release the redis connection"""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug("Error closing redis client: %s", e)
            self._client = None

    def get_mode(self) -> str:
        return MODE_MEMORY if self._backend is self.memory else MODE_REDIS

    def _degrade(self, reason: str):
        """Switch to the memory backend for the rest of the process"""
        if self._backend is self.memory:
            return
        logger.error("Redis %s, task store degrades to memory mode", reason)
        self._backend = self.memory
        self._start_sweep()

    def _start_sweep(self):
        if self._sweep_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, memory sweep not started")
            return
        self._sweep_task = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self):
        """Background task that expires old terminal tasks in memory mode"""
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            try:
                await self.sweep_expired()
            except Exception:
                logger.exception("Memory sweep failed")

    async def sweep_expired(self, now: Optional[int] = None) -> int:
        """Remove terminal tasks whose retention window has passed"""
        threshold = (now if now is not None else _now()) - self.settings.task_expire_seconds
        removed = self.memory.expire_before(threshold)
        if removed:
            logger.debug(
                "Memory sweep removed %d expired tasks, %d remaining",
                removed,
                len(self.memory),
            )
        return removed

    async def _read(
        self, op: str, action: Callable[[TaskBackend], Awaitable[T]]
    ) -> T:
        """Run ``action`` on the active backend, degrading on redis errors"""
        if self._backend is not self.memory:
            try:
                return await action(self._backend)
            except Exception as e:
                self._degrade(f"{op} failed: {e}")
        return await action(self.memory)

    async def _write(self, op: str, action: Callable[[TaskBackend], Awaitable[None]]):
        """Apply ``action`` to memory and, while it is active, to redis.

        Memory always mirrors this process's writes so that tasks stay
        readable after a downgrade.
        """
        await action(self.memory)
        if self._backend is not self.memory:
            try:
                await action(self._backend)
            except Exception as e:
                self._degrade(f"{op} failed: {e}")

    async def create(self, **fields) -> Task:
        """Create and persist a new task. Status defaults to pending."""
        now = _now()
        fields.pop("id", None)
        fields.setdefault("status", "pending")
        _apply_status_rules(fields, None, now)
        task = Task(**{**fields, "created_at": now, "updated_at": now})
        ttl = self.settings.task_expire_seconds if task.is_terminal else None

        await self._write("write", lambda backend: backend.save(task, ttl))
        return task

    async def get(self, task_id: str) -> Optional[Task]:
        return await self._read("read", lambda backend: backend.load(task_id))

    async def update(self, task_id: str, **fields) -> Optional[Task]:
        """Merge ``fields`` into a stored task.

        Returns the stored record, or None if the task does not exist. Only
        status, progress, completed_at, result and error can change; an update
        that would move the status backwards or out of a terminal state is
        refused and the current record returned unchanged.
        """
        task = await self.get(task_id)
        if task is None:
            return None

        ignored = set(fields) - MUTABLE_FIELDS
        if ignored:
            logger.warning(
                "Ignoring immutable fields %s on task %s", sorted(ignored), task_id
            )
        changes = {k: v for k, v in fields.items() if k in MUTABLE_FIELDS}

        status = changes.get("status", task.status)
        if not can_transition(task.status, status):
            logger.warning(
                "Refusing status change %s -> %s for task %s",
                task.status,
                status,
                task_id,
            )
            return task

        now = _now()
        changes["status"] = status
        _apply_status_rules(changes, task.completed_at, now)

        updated = Task.model_validate(
            {**task.model_dump(), **changes, "updated_at": now}
        )
        ttl = self.settings.task_expire_seconds if updated.is_terminal else None

        await self._write("update", lambda backend: backend.save(updated, ttl))

        if updated.is_terminal and self._backend is not self.memory:
            # No sweep loop in redis mode, keep the mirror bounded here
            await self.sweep_expired(now)
        return updated

    async def list(
        self,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[Task]:
        """Tasks matching the filters, newest first"""
        tasks = await self._read("list", lambda backend: backend.load_all())

        if status:
            tasks = [t for t in tasks if t.status == status]
        if type:
            tasks = [t for t in tasks if t.type == type]

        tasks.sort(key=lambda t: t.created_at, reverse=True)
        if limit < 1:
            limit = DEFAULT_LIST_LIMIT
        return tasks[:limit]

    async def delete(self, task_id: str):
        await self._write("delete", lambda backend: backend.remove(task_id))
