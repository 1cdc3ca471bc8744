"""
Linevault Tasks — Progress Tracking for Long Operations
=======================================================

Long operations (ingesting files, bulk deletes, database reset) run as
asyncio tasks. Each operation is written as an async generator of
``ProgressEvent``; the registry consumes the stream and mutates the matching
``Task`` record, which clients poll.

Lifecycle:

    pending → <phase labels: "counting lines", "processing files", ...>
            → completed | error

``completed`` turns True only on the terminal transition. Tasks are never
removed automatically; ``clear()`` drops finished ones and ``clear_all()``
drops everything, including tasks whose body is still running (the body keeps
going and updates a record nobody can see any more).
"""

import asyncio
import logging
import math
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    NamedTuple,
    Optional,
    Set,
)

from .exceptions import TaskNotFoundError

logger = logging.getLogger("linevault.tasks")

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


class ProgressEvent(NamedTuple):
    """One update emitted by an operation. None fields are left unchanged."""

    status: Optional[str] = None
    progress: Optional[int] = None
    total: Optional[int] = None
    message: Optional[str] = None
    file_moved_count: Optional[int] = None


def estimate_remaining(
    start_time: float,
    progress: int,
    total: int,
    now: Optional[float] = None
) -> Optional[float]:
    """
    Seconds left assuming the rate observed so far holds.

    Returns:
        Remaining seconds, or None when no meaningful estimate exists
    """
    if not progress or not total or progress >= total:
        return None

    now = time.time() if now is None else now
    elapsed = now - start_time
    remaining = (elapsed / progress) * (total - progress)
    if math.isnan(remaining) or math.isinf(remaining) or remaining < 0:
        return None
    return remaining


def format_duration(seconds: float) -> str:
    """Format seconds as "1h 2m 3s", "2m 3s" or "3s"."""
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes or hours:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


@dataclass
class Task:
    task_id: str
    type: str
    status: str = STATUS_PENDING
    progress: int = 0
    total: int = 0
    completed: bool = False
    error: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    message: str = ""
    filename: Optional[str] = None
    file_moved_count: int = 0

    def apply(self, event: ProgressEvent) -> None:
        for name, value in event._asdict().items():
            if value is not None:
                setattr(self, name, value)

    def eta(self, now: Optional[float] = None) -> Optional[str]:
        remaining = estimate_remaining(self.start_time, self.progress, self.total, now)
        return None if remaining is None else format_duration(remaining)

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        data = asdict(self)
        data["eta"] = None if self.completed else self.eta(now)
        return data


class TaskRegistry:
    """
    In-memory registry of tasks for one process.

    Example:
        registry = TaskRegistry()
        task = registry.start("Parse File", builder.parse_file("dump.txt"))
        ...
        print(registry.get(task.task_id).progress)
    """

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._running: Set["asyncio.Task[Task]"] = set()

    def create(
        self,
        type: str,
        status: str = STATUS_PENDING,
        filename: Optional[str] = None
    ) -> Task:
        task = Task(task_id=str(uuid.uuid4()), type=type, status=status, filename=filename)
        self._tasks[task.task_id] = task
        return task

    def update(self, task_id: str, **changes: Any) -> bool:
        """Apply changes to a task. Unknown ids are ignored."""
        task = self._tasks.get(task_id)
        if task is None:
            return False
        for name, value in changes.items():
            setattr(task, name, value)
        return True

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise TaskNotFoundError(task_id) from None

    def all(self) -> List[Task]:
        return list(self._tasks.values())

    def active(self) -> List[Task]:
        return [t for t in self._tasks.values() if not t.completed and t.status != STATUS_ERROR]

    def clear(self) -> int:
        """Remove finished tasks (completed or errored). Returns the count removed."""
        finished = [
            task_id for task_id, t in self._tasks.items()
            if t.completed or t.status == STATUS_ERROR
        ]
        for task_id in finished:
            del self._tasks[task_id]
        return len(finished)

    def clear_all(self) -> int:
        """Remove every task, running or not. Running bodies are not cancelled."""
        count = len(self._tasks)
        self._tasks.clear()
        return count

    async def track(
        self,
        task: Task,
        events: AsyncIterator[ProgressEvent],
        on_complete: Optional[Callable[[], Awaitable[Any]]] = None
    ) -> Task:
        """
        Drive an operation's event stream into its task record.

        Args:
            task: Record to update
            events: Operation body as an async stream of progress events
            on_complete: Awaited after a successful run

        Returns:
            The task, in a terminal state
        """
        try:
            async for event in events:
                task.apply(event)
        except Exception as e:
            logger.exception("Task %s (%s) failed", task.task_id, task.type)
            task.status = STATUS_ERROR
            task.error = str(e) or e.__class__.__name__
            task.completed = True
            return task

        task.status = STATUS_COMPLETED
        task.completed = True
        logger.info("Task %s (%s) completed: %s", task.task_id, task.type, task.message)

        if on_complete is not None:
            try:
                await on_complete()
            except Exception:
                logger.exception("Post-completion hook of task %s failed", task.task_id)
        return task

    def start(
        self,
        type: str,
        events: AsyncIterator[ProgressEvent],
        filename: Optional[str] = None,
        on_complete: Optional[Callable[[], Awaitable[Any]]] = None
    ) -> Task:
        """
        Register a task and run its body in the background.

        Must be called from within a running event loop.

        Returns:
            The new task (status "pending")
        """
        task = self.create(type, filename=filename)
        runner = asyncio.ensure_future(self.track(task, events, on_complete))
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)
        logger.info("Started task %s (%s)", task.task_id, type)
        return task

    async def join(self) -> None:
        """Wait until every background task body has finished."""
        while self._running:
            await asyncio.gather(*list(self._running))
