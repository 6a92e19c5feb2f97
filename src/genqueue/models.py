"""Types and models for the genqueue project."""

from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

TASK_STATES = Literal[
    "pending", "queued", "processing", "completed", "failed", "cancelled"
]
TASK_TYPES = Literal["image", "video", "composition"]

TERMINAL_STATES = frozenset({"completed", "failed", "cancelled"})

# Forward-only ordering of the task state machine
STATE_RANK = {
    "pending": 0,
    "queued": 1,
    "processing": 2,
    "completed": 3,
    "failed": 3,
    "cancelled": 3,
}

# Fields a caller may change after creation
MUTABLE_FIELDS = frozenset({"status", "progress", "completed_at", "result", "error"})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: str, new: str) -> bool:
    """Whether a task may move from ``current`` to ``new``.

    Staying in a non-terminal state is allowed (progress updates), a terminal
    state is final, and every other move must go forward.
    """
    if is_terminal(current):
        return current == new
    return STATE_RANK[new] >= STATE_RANK[current]


class Task(BaseModel):
    """A unit of asynchronous work, as persisted by the task store"""

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: TASK_TYPES = "image"
    status: TASK_STATES = "pending"
    progress: Optional[str] = None
    created_at: int
    updated_at: int
    completed_at: Optional[int] = None  # unix seconds, only once terminal
    result: Optional[Any] = None
    error: Optional[str] = None
    callback_url: Optional[str] = None
    model: Optional[str] = None
    prompt: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


class QueueStats(BaseModel):
    """Instantaneous snapshot of the task queue"""

    running: int
    queued: int
    max_concurrent: int
