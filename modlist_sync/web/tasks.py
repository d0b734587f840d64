"""Background install tasks with SSE streaming and cancellation."""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from queue import Empty, Queue
from typing import Any, Callable, Generator

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("complete", "error")


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class TaskInfo:
    id: str
    operation: str
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    message: str = ""
    result: Any = None
    error: str = ""
    cancel: threading.Event = field(default_factory=threading.Event)
    events: Queue = field(default_factory=Queue)

    def put(self, event: str, data: Any) -> None:
        self.events.put({"event": event, "data": data})


class TaskManager:
    """
    Runs long operations on daemon threads and queues their events.

    Each task owns a cancel event the running operation can poll, and a queue
    drained by exactly one SSE stream. The stream ends after a complete or
    error event.
    """

    def __init__(self, keepalive: float = 30.0):
        self._tasks: dict[str, TaskInfo] = {}
        self._lock = threading.Lock()
        self.keepalive = keepalive

    def create(self, operation: str) -> str:
        task = TaskInfo(id=uuid.uuid4().hex[:8], operation=operation)
        with self._lock:
            self._tasks[task.id] = task
        return task.id

    def get(self, task_id: str) -> TaskInfo | None:
        with self._lock:
            return self._tasks.get(task_id)

    def run_in_background(self, task_id: str, fn: Callable[..., Any], *args, **kwargs) -> threading.Thread | None:
        """Start fn on a daemon thread; its return value becomes the task result."""
        task = self.get(task_id)
        if task is None:
            return None

        def worker():
            if task.status == TaskStatus.PENDING:
                self._set_status(task, TaskStatus.RUNNING)
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                logger.exception("Task %s (%s) failed", task.id, task.operation)
                self.fail(task.id, str(e))
            else:
                self.complete(task.id, result)

        thread = threading.Thread(target=worker, name=f"task-{task.id}", daemon=True)
        thread.start()
        return thread

    def push(self, task_id: str, event: str, data: Any) -> None:
        task = self.get(task_id)
        if task is not None:
            task.put(event, data)

    def update_progress(self, task_id: str, pct: float, msg: str, **extra: Any) -> None:
        task = self.get(task_id)
        if task is None:
            return
        task.progress = pct
        task.message = msg
        task.put("progress", {"pct": pct, "msg": msg, **extra})

    def request_cancel(self, task_id: str) -> bool:
        """Ask a task to stop. Returns False if it is unknown or already finished."""
        task = self.get(task_id)
        if task is None or task.status.finished:
            return False
        task.cancel.set()
        self._set_status(task, TaskStatus.CANCELLING)
        return True

    def complete(self, task_id: str, result: Any) -> None:
        task = self.get(task_id)
        if task is None:
            return
        task.result = result
        task.progress = 1.0
        task.status = TaskStatus.COMPLETED
        task.put("complete", result)

    def fail(self, task_id: str, error: str) -> None:
        task = self.get(task_id)
        if task is None:
            return
        task.error = error
        task.status = TaskStatus.FAILED
        task.put("error", error)

    def stream_events(self, task_id: str) -> Generator[str, None, None]:
        """Yield SSE-formatted events until the task finishes."""
        task = self.get(task_id)
        if task is None:
            yield format_sse("error", "Task not found")
            return

        while True:
            try:
                event = task.events.get(timeout=self.keepalive)
            except Empty:
                yield ": keepalive\n\n"
                continue

            yield format_sse(event["event"], event["data"])
            if event["event"] in TERMINAL_EVENTS:
                return

    @staticmethod
    def _set_status(task: TaskInfo, status: TaskStatus) -> None:
        task.status = status
        task.put("status", status.value)


def format_sse(event_type: str, data: Any) -> str:
    if isinstance(data, str):
        data = {"msg": data}
    elif hasattr(data, "to_dict"):
        data = data.to_dict()
    elif not isinstance(data, (dict, list)):
        data = {"msg": str(data)}
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"
