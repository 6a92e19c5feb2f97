"""Running generation work as queued tasks.

Route layers call ``submit_task`` with an awaitable that performs the actual
generation and returns result URLs. The task is created as pending, the job is
handed to the queue, and the job drives the task through
``processing -> completed | failed`` before notifying the callback URL.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from .models import Task
from .queue import Job
from .services import Services

logger = logging.getLogger(__name__)

Generate = Callable[[], Awaitable[Sequence[str]]]

PROGRESS_GENERATING = "generating"


def shape_result(
    urls: Sequence[str], extra: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Result payload stored on a completed task"""
    result = {
        "created": int(time.time()),
        "data": [{"url": url} for url in urls],
    }
    if extra:
        result.update(extra)
    return result


def make_job(
    services: Services,
    task_id: str,
    generate: Generate,
    result_extras: Optional[Dict[str, Any]] = None,
) -> Job:
    """Build the job body that runs ``generate`` for ``task_id``"""

    async def job():
        store = services.store

        task = await store.update(
            task_id, status="processing", progress=PROGRESS_GENERATING
        )
        if task is None or task.is_terminal:
            # Deleted or cancelled before the job got a slot
            logger.info("Task %s no longer runnable, skipping generation", task_id)
            return

        try:
            urls = await generate()
            await store.update(
                task_id,
                status="completed",
                progress=None,
                result=shape_result(urls, result_extras),
            )
        except Exception as e:
            logger.error("Generation task %s failed: %s", task_id, e)
            await store.update(task_id, status="failed", error=str(e))

        final = await store.get(task_id)
        if final is not None and final.callback_url:
            await services.notifier.notify(final.callback_url, final)

    return job


async def submit_task(
    services: Services,
    generate: Generate,
    *,
    type: str = "image",
    model: Optional[str] = None,
    prompt: Optional[str] = None,
    callback_url: Optional[str] = None,
    result_extras: Optional[Dict[str, Any]] = None,
) -> Task:
    """Create a pending task and queue ``generate`` for it"""
    task = await services.store.create(
        type=type,
        status="pending",
        callback_url=callback_url,
        model=model,
        prompt=prompt,
    )
    await services.queue.enqueue(
        task.id, make_job(services, task.id, generate, result_extras)
    )
    return task
