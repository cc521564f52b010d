"""A fixed number of worker threads executing tasks from a bounded queue.

A task is any callable taking a :class:`~flowkit.context.Context`. It reports
failure by raising; the outcome of every task is delivered as a
:class:`TaskResult` through :meth:`WorkerPool.get_result` or
:meth:`WorkerPool.results`.
"""

from __future__ import annotations

import queue
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from .context import Context, background, with_timeout

Task = Callable[[Context], Any]

_WORKER_POLL = 0.05
_SUBMIT_POLL = 0.01
_RESULT_SEND_TIMEOUT = 0.1


class SubmitError(Exception):
    """A task could not be queued."""


class PoolShutdownError(SubmitError):
    """The pool has been shut down and accepts no more tasks."""

    def __init__(self, message: str = "cannot submit task: worker pool has been shut down") -> None:
        super().__init__(message)


class TaskPanicError(Exception):
    """A task escaped with something other than an ordinary exception."""


@dataclass(frozen=True)
class TaskResult:
    """The outcome of one task execution."""

    task: Task
    error: Optional[BaseException]
    duration: float
    worker_id: int


@dataclass
class PoolConfig:
    """Options for building a pool; a queue size of 0 means twice the worker count."""

    worker_count: int
    queue_size: int = 0
    task_timeout: float = 0.0


@dataclass(frozen=True)
class _Job:
    task: Task
    ctx: Context


class WorkerPool:
    """Runs submitted tasks concurrently on ``worker_count`` threads."""

    def __init__(self, worker_count: int, queue_size: int = 0, task_timeout: float = 0.0) -> None:
        if worker_count <= 0:
            raise ValueError(f"worker count must be positive, got {worker_count}")
        if queue_size < 0:
            raise ValueError(f"queue size cannot be negative, got {queue_size}")
        self._worker_count = worker_count
        self._task_timeout = task_timeout
        self._tasks: "queue.Queue[_Job]" = queue.Queue(maxsize=queue_size or worker_count * 2)
        self._results: "queue.Queue[TaskResult]" = queue.Queue(maxsize=worker_count)
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._closed = threading.Event()
        self._threads = [
            threading.Thread(target=self._run_worker, args=(worker_id,), name=f"worker-{worker_id}", daemon=True)
            for worker_id in range(worker_count)
        ]
        for thread in self._threads:
            thread.start()

    @classmethod
    def from_config(cls, config: PoolConfig) -> "WorkerPool":
        """Build a pool from a :class:`PoolConfig`."""
        return cls(config.worker_count, config.queue_size, config.task_timeout)

    def submit(self, task: Task) -> None:
        """Queue ``task`` to run with a background context."""
        self.submit_with_context(background(), task)

    def submit_with_context(self, ctx: Optional[Context], task: Task) -> None:
        """Queue ``task`` to run with ``ctx``, blocking while the queue is full.

        Raises PoolShutdownError once the pool is shut down and SubmitError if
        ``ctx`` ends before the task could be queued.
        """
        if task is None or not callable(task):
            raise TypeError("task cannot be None and must be callable")
        if ctx is None:
            ctx = background()
        if self._stopping.is_set():
            raise PoolShutdownError()
        self._check_context(ctx)

        job = _Job(task, ctx)
        while True:
            try:
                self._tasks.put(job, timeout=_SUBMIT_POLL)
                return
            except queue.Full:
                pass
            if self._stopping.is_set():
                raise PoolShutdownError()
            self._check_context(ctx)

    @staticmethod
    def _check_context(ctx: Context) -> None:
        error = ctx.err()
        if error is not None:
            raise SubmitError(f"cannot submit task: context canceled: {error}") from error

    def get_result(self, timeout: Optional[float] = None) -> Optional[TaskResult]:
        """Return the next result, or None once the pool is shut down and drained.

        Raises TimeoutError if no result arrives within ``timeout`` seconds.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = _WORKER_POLL
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                return self._results.get(timeout=wait)
            except queue.Empty:
                pass
            if self._closed.is_set() and self._results.empty():
                return None
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError(f"no task result within {timeout} seconds")

    def results(self) -> Iterator[TaskResult]:
        """Yield results until the pool is shut down and every result is consumed."""
        while (result := self.get_result()) is not None:
            yield result

    def shutdown(self) -> threading.Event:
        """Stop accepting tasks and stop the workers.

        Returns an event that is set once every worker has finished.
        """
        with self._lock:
            if not self._stopping.is_set():
                self._stopping.set()
                threading.Thread(target=self._finish, name="pool-shutdown", daemon=True).start()
        return self._closed

    def size(self) -> int:
        """The number of workers."""
        return self._worker_count

    def queue_size(self) -> int:
        """The number of tasks waiting to be picked up."""
        return self._tasks.qsize()

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown().wait()

    def _finish(self) -> None:
        for thread in self._threads:
            thread.join()
        self._closed.set()

    def _run_worker(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            try:
                job = self._tasks.get(timeout=_WORKER_POLL)
            except queue.Empty:
                continue
            self._send(self._execute(worker_id, job))

    def _execute(self, worker_id: int, job: _Job) -> TaskResult:
        start = time.perf_counter()
        scoped = with_timeout(job.ctx, self._task_timeout) if self._task_timeout > 0 else None
        error: Optional[BaseException] = None
        try:
            job.task(scoped if scoped is not None else job.ctx)
        except Exception as exc:
            error = exc
        except BaseException as exc:
            error = TaskPanicError(f"task panicked: {exc!r}\nStack trace:\n{traceback.format_exc()}")
            error.__cause__ = exc
        finally:
            if scoped is not None:
                scoped.cancel()
        return TaskResult(job.task, error, time.perf_counter() - start, worker_id)

    def _send(self, result: TaskResult) -> None:
        # Results nobody reads are dropped after a short wait.
        give_up = time.monotonic() + _RESULT_SEND_TIMEOUT
        while True:
            try:
                self._results.put(result, timeout=_SUBMIT_POLL)
                return
            except queue.Full:
                if self._stopping.is_set() or time.monotonic() >= give_up:
                    return