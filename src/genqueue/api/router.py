"""Task routing endpoints"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..models import TASK_STATES, TASK_TYPES
from ..services import Services
from ..store import DEFAULT_LIST_LIMIT
from ..webhook import format_task_response

logger = logging.getLogger(__name__)

CANCELLABLE_STATES = ("pending", "queued")

router = APIRouter(
    prefix="/v1/tasks",
    tags=["tasks"],
    responses={404: {"description": "Not found"}},
)


def get_services(request: Request) -> Services:
    """Services built by the application lifespan"""
    return request.app.state.services


@router.get("")
async def list_tasks(
    status: Optional[TASK_STATES] = None,
    type: Optional[TASK_TYPES] = None,
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1),
    services: Services = Depends(get_services),
):
    """List tasks, newest first, with queue statistics and the storage mode."""
    tasks = await services.store.list(status=status, type=type, limit=limit)

    return {
        "tasks": [format_task_response(task) for task in tasks],
        "total": len(tasks),
        "queue_stats": services.queue.get_stats().model_dump(),
        "storage_mode": services.store.get_mode(),
    }


@router.get("/{task_id}")
async def get_task(task_id: str, services: Services = Depends(get_services)):
    """Return a single task"""
    task = await services.store.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    return {
        **format_task_response(task),
        "queue_stats": services.queue.get_stats().model_dump(),
    }


@router.post("/{task_id}/cancel")
async def cancel_task(task_id: str, services: Services = Depends(get_services)):
    """Cancel a task that has not started running yet.

    Only pending and queued tasks can be cancelled. A running job cannot be
    interrupted.
    """
    task = await services.store.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    if task.status not in CANCELLABLE_STATES:
        raise HTTPException(
            status_code=409,
            detail=(
                f"Task {task_id} is {task.status} and cannot be cancelled, "
                "only pending or queued tasks can"
            ),
        )

    removed = services.queue.cancel_queued(task_id)
    if not removed:
        logger.info("Task %s was not waiting in the queue", task_id)

    await services.store.update(task_id, status="cancelled")

    return {"task_id": task_id, "status": "cancelled", "message": "Task cancelled"}


@router.delete("/{task_id}")
async def delete_task(task_id: str, services: Services = Depends(get_services)):
    """Delete a finished task from the store"""
    task = await services.store.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    if not task.is_terminal:
        raise HTTPException(
            status_code=409,
            detail=f"Task {task_id} is {task.status}, only finished tasks can be deleted",
        )

    await services.store.delete(task_id)
    return {"message": f"Task {task_id} deleted successfully"}
