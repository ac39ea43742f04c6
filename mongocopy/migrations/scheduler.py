"""
Task Scheduler
Bounded-concurrency worker pool that runs copy tasks from a bounded queue
"""
import logging
import queue
import threading
from typing import Any, Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STOP = object()


class TaskScheduler(Generic[T]):
    """
    Runs `handler(task)` for every task added, on `workers` threads

    - `add_task` blocks while the queue is full (back-pressure on the producer)
    - An exception in one task is logged and counted, other tasks keep running
    - `close_and_wait` drains queued and in-flight tasks, then returns
    """

    def __init__(self, handler: Callable[[T], Any], workers: int = 1, queue_size: int = 1000,
                 on_result: Optional[Callable[[T, Any, Optional[BaseException]], None]] = None,
                 name: str = "copy-worker"):
        self.handler = handler
        self.workers = max(int(workers or 1), 1)
        self.queue: "queue.Queue" = queue.Queue(maxsize=max(queue_size, 1))
        self.on_result = on_result
        self.name = name

        self.threads: List[threading.Thread] = []
        self.tasks_added = 0
        self.tasks_processed = 0
        self.tasks_failed = 0
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    def start(self) -> "TaskScheduler[T]":
        """Start the worker threads"""
        if self._started:
            return self
        self._started = True
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker, args=(i,), name=f"{self.name}-{i}", daemon=True)
            thread.start()
            self.threads.append(thread)
        logger.debug(f"Started {self.workers} worker(s)")
        return self

    def add_task(self, task: T):
        """Queue a task, blocking while the queue is full"""
        if self._closed:
            raise RuntimeError("Scheduler is closed")
        if not self._started:
            self.start()
        self.queue.put(task)
        with self._lock:
            self.tasks_added += 1

    def close_and_wait(self):
        """Stop accepting tasks and wait for every queued task to finish"""
        if self._closed:
            return
        self._closed = True
        if not self._started:
            return
        for _ in self.threads:
            self.queue.put(_STOP)
        for thread in self.threads:
            thread.join()
        logger.debug(f"Scheduler drained: {self.tasks_processed} task(s), {self.tasks_failed} failed")

    def _worker(self, worker_id: int):
        while True:
            task = self.queue.get()
            try:
                if task is _STOP:
                    return
                self._run(worker_id, task)
            finally:
                self.queue.task_done()

    def _run(self, worker_id: int, task: T):
        result = None
        error: Optional[BaseException] = None
        try:
            result = self.handler(task)
        except Exception as e:
            error = e
            logger.exception(f"Worker {worker_id}: task {task} failed: {e}")

        with self._lock:
            self.tasks_processed += 1
            if error is not None:
                self.tasks_failed += 1

        if self.on_result is not None:
            try:
                self.on_result(task, result, error)
            except Exception as e:
                logger.exception(f"Worker {worker_id}: result callback failed: {e}")

    def __enter__(self) -> "TaskScheduler[T]":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.close_and_wait()
        return False
