"""Admission-controlled execution of task jobs"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Set

from .models import QueueStats
from .store import TaskStore

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]

DEFAULT_MAX_CONCURRENT = 50


@dataclass
class QueueItem:
    """A job waiting for a free slot"""

    task_id: str
    run: Job


class TaskQueue:
    """Runs up to ``max_concurrent`` jobs at once and queues the rest in FIFO order.

    All counter and waiting-list bookkeeping happens in synchronous code on the
    event loop, so it never interleaves with another enqueue or completion.
    """

    def __init__(self, store: TaskStore, max_concurrent: int = DEFAULT_MAX_CONCURRENT):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.max_concurrent = max_concurrent
        self.running = 0
        self.waiting: Deque[QueueItem] = deque()
        self._jobs: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()
        logger.info("Task queue max concurrent jobs: %d", max_concurrent)

    async def enqueue(self, task_id: str, job: Job):
        """Run ``job`` now if a slot is free, otherwise queue it.

        Returns as soon as the job is started or queued; the job itself runs
        in the background.
        """
        if self.running < self.max_concurrent:
            self._start(QueueItem(task_id, job))
            logger.info(
                "Task %s started directly (running: %d/%d, queued: %d)",
                task_id,
                self.running,
                self.max_concurrent,
                len(self.waiting),
            )
            return

        self.waiting.append(QueueItem(task_id, job))
        self._idle.clear()
        position = len(self.waiting)
        logger.info(
            "Task %s queued (running: %d/%d, queued: %d)",
            task_id,
            self.running,
            self.max_concurrent,
            position,
        )
        await self.store.update(
            task_id, status="queued", progress=f"queued (position {position})"
        )

    def cancel_queued(self, task_id: str) -> bool:
        """Remove a job that has not started yet. Running jobs are not affected."""
        for item in self.waiting:
            if item.task_id == task_id:
                self.waiting.remove(item)
                logger.info(
                    "Task %s cancelled while queued (queued: %d)",
                    task_id,
                    len(self.waiting),
                )
                self._check_idle()
                return True
        return False

    def get_stats(self) -> QueueStats:
        return QueueStats(
            running=self.running,
            queued=len(self.waiting),
            max_concurrent=self.max_concurrent,
        )

    async def join(self):
        """Wait until no job is running or queued"""
        await self._idle.wait()

    async def stop(self):
        """Drop queued jobs and cancel the running ones"""
        self.waiting.clear()
        jobs = list(self._jobs)
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        self._check_idle()

    def _start(self, item: QueueItem):
        self.running += 1
        self._idle.clear()
        job = asyncio.create_task(self._execute(item))
        self._jobs.add(job)
        job.add_done_callback(self._release)

    def _release(self, job: asyncio.Task):
        # Called once per job on every exit path, including cancellation
        # before the job's first step
        self._jobs.discard(job)
        self.running -= 1
        self._dequeue()

    async def _execute(self, item: QueueItem):
        try:
            await item.run()
        except Exception as e:
            logger.exception("Task %s job raised: %s", item.task_id, e)
            await self._mark_failed(item.task_id, e)

    async def _mark_failed(self, task_id: str, error: Exception):
        try:
            task = await self.store.get(task_id)
            if task is not None and not task.is_terminal:
                await self.store.update(task_id, status="failed", error=str(error))
        except Exception:
            logger.exception("Could not record failure of task %s", task_id)

    def _dequeue(self):
        while self.waiting and self.running < self.max_concurrent:
            item = self.waiting.popleft()
            self._start(item)
            logger.info(
                "Task %s taken from queue (running: %d/%d, queued: %d)",
                item.task_id,
                self.running,
                self.max_concurrent,
                len(self.waiting),
            )
        self._check_idle()

    def _check_idle(self):
        if self.running == 0 and not self.waiting:
            self._idle.set()
