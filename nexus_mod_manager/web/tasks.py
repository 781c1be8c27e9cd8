"""Background tasks for the web API, with SSE streaming of their progress."""

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, is_dataclass
from queue import Empty, Queue
from typing import Any, Awaitable, Callable, Generator

logger = logging.getLogger(__name__)


@dataclass
class TaskInfo:
    id: str
    operation: str
    status: str = "pending"  # pending, running, completed, failed
    progress: float = 0.0
    message: str = ""
    result: Any = None
    error: str = ""
    events: Queue = field(default_factory=Queue)


def to_jsonable(value: Any) -> Any:
    """Dataclass results become dicts; anything json can't handle becomes a string."""
    if is_dataclass(value) and not isinstance(value, type):
        value = asdict(value)
    try:
        json.dumps(value)
    except TypeError:
        return str(value)
    return value


class TaskManager:
    """Runs mod manager operations in daemon threads, one event loop each."""

    def __init__(self):
        self._tasks: dict[str, TaskInfo] = {}
        self._lock = threading.Lock()

    def create(self, operation: str) -> str:
        """Create a new task. Returns task_id."""
        task_id = uuid.uuid4().hex[:8]
        with self._lock:
            self._tasks[task_id] = TaskInfo(id=task_id, operation=operation)
        return task_id

    def run_in_background(
        self, task_id: str, fn: Callable[[], Awaitable[Any]], on_done: Callable[[], None] | None = None
    ) -> threading.Thread | None:
        """
        Run the coroutine returned by fn in a daemon thread.

        on_done is called when the task has finished, whatever the outcome.
        """
        task = self.get(task_id)
        if not task:
            return None

        def _run():
            task.status = "running"
            task.events.put({"event": "status", "data": "running"})
            try:
                result = asyncio.run(fn())
                self.complete(task_id, result)
            except Exception as e:
                logger.exception("Task %s (%s) failed", task_id, task.operation)
                self.fail(task_id, str(e))
            finally:
                if on_done:
                    on_done()

        thread = threading.Thread(target=_run, daemon=True)
        thread.start()
        return thread

    def update_progress(self, task_id: str, pct: float, msg: str) -> None:
        task = self.get(task_id)
        if not task:
            return
        task.progress = pct
        task.message = msg
        task.events.put({"event": "progress", "data": {"pct": pct, "msg": msg}})

    def complete(self, task_id: str, result: Any) -> None:
        task = self.get(task_id)
        if not task:
            return
        task.status = "completed"
        task.progress = 1.0
        task.result = to_jsonable(result)
        task.events.put({"event": "complete", "data": task.result})

    def fail(self, task_id: str, error: str) -> None:
        task = self.get(task_id)
        if not task:
            return
        task.status = "failed"
        task.error = error
        task.events.put({"event": "error", "data": error})

    def get(self, task_id: str) -> TaskInfo | None:
        with self._lock:
            return self._tasks.get(task_id)

    def stream_events(self, task_id: str) -> Generator[str, None, None]:
        """Yield SSE-formatted event strings until the task ends."""
        task = self.get(task_id)
        if not task:
            yield 'event: error\ndata: {"msg": "Task not found"}\n\n'
            return

        while True:
            try:
                event = task.events.get(timeout=30)
            except Empty:
                yield ": keepalive\n\n"
                continue

            event_type = event["event"]
            data = event["data"]
            if not isinstance(data, dict):
                data = {"msg": data} if isinstance(data, str) else {"result": data}
            yield f"event: {event_type}\ndata: {json.dumps(data)}\n\n"

            if event_type in ("complete", "error"):
                break
