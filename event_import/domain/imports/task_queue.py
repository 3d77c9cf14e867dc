"""Queue seam between the pipeline controller and whatever runs its jobs."""
from collections import deque
from typing import Deque, Optional, Protocol


class TaskQueue(Protocol):
    def enqueue(self, job_id: int) -> None:
        ...


class InlineTaskQueue:
    """In-process FIFO of job ids, drained by the controller itself."""

    def __init__(self):
        self.pending: Deque[int] = deque()

    def enqueue(self, job_id: int) -> None:
        self.pending.append(job_id)

    def pop(self) -> Optional[int]:
        return self.pending.popleft() if self.pending else None

    def discard(self, job_id: int) -> None:
        self.pending = deque(pending for pending in self.pending if pending != job_id)

    def __len__(self) -> int:
        return len(self.pending)
