"""Run tasks once at a given time, after a delay, repeatedly, or on a cron schedule.

Ready tasks are handed to a :class:`~flowkit.workerpool.WorkerPool`. Cron
expressions have six fields, seconds first (see :mod:`flowkit.cron`).

    with Scheduler() as scheduler:
        scheduler.schedule_after("hello", task, 5)
        scheduler.schedule_repeating("heartbeat", task, 60)
        scheduler.schedule_cron("daily", "0 0 0 * * *", task)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional, Union

from .context import Context
from .cron import CronError, CronSchedule, parse_cron
from .workerpool import SubmitError, Task, WorkerPool

Duration = Union[float, int, timedelta]

DEFAULT_TICK_INTERVAL = 0.05
DEFAULT_MAX_TASKS = 10000
MAX_TASK_ID_LENGTH = 255


class SchedulerError(Exception):
    """A task could not be scheduled or the scheduler could not change state."""


def _seconds(value: Duration) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ScheduledTask:
    """A snapshot of one scheduled task; ``interval`` is zero for one-shot tasks."""

    task_id: str
    run_at: datetime
    interval: timedelta
    created: datetime


@dataclass
class BackoffTask:
    """Wraps a task and retries it with exponentially growing delays.

    Delays are in seconds; non-positive values fall back to 0.1 and 30.
    """

    task: Optional[Task]
    max_retries: int = 0
    initial_delay: float = 0.1
    max_delay: float = 30.0

    def __call__(self, ctx: Context) -> None:
        if self.task is None:
            raise ValueError("wrapped task cannot be None")
        if self.max_retries < 0:
            raise ValueError("max retries cannot be negative")
        delay = self.initial_delay if self.initial_delay > 0 else 0.1
        max_delay = self.max_delay if self.max_delay > 0 else 30.0

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0 and ctx.wait(delay):
                error = ctx.err()
                assert error is not None
                raise error
            try:
                self.task(ctx)
                return
            except Exception as exc:
                last_error = exc
            delay = min(delay * 2, max_delay)
        assert last_error is not None
        raise last_error


@dataclass
class SchedulerConfig:
    """Scheduler options; unset or non-positive values take the defaults.

    Without a pool the scheduler creates (and later shuts down) its own with
    4 workers and a queue of 100. ``location`` is the time zone cron
    expressions are evaluated in; None means the local zone.
    """

    worker_pool: Optional[WorkerPool] = None
    location: Optional[tzinfo] = None
    tick_interval: float = DEFAULT_TICK_INTERVAL
    max_tasks: int = DEFAULT_MAX_TASKS


@dataclass
class _Entry:
    task_id: str
    task: Task
    run_at: datetime
    created: datetime
    interval: timedelta = timedelta(0)
    cron: Optional[CronSchedule] = None


@dataclass
class _Loop:
    done: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


class Scheduler:
    """Keeps named tasks and submits each to a worker pool when it falls due."""

    def __init__(self, config: Optional[SchedulerConfig] = None) -> None:
        config = config or SchedulerConfig()
        self._own_pool = config.worker_pool is None
        self._pool = config.worker_pool if config.worker_pool is not None else WorkerPool(4, 100)
        self._location = config.location
        self._tick = config.tick_interval if config.tick_interval > 0 else DEFAULT_TICK_INTERVAL
        self._max_tasks = config.max_tasks if config.max_tasks > 0 else DEFAULT_MAX_TASKS
        self._lock = threading.Lock()
        self._tasks: Dict[str, _Entry] = {}
        self._loop: Optional[_Loop] = None

    def _local_now(self) -> datetime:
        if self._location is not None:
            return datetime.now(self._location)
        return datetime.now().astimezone()

    @staticmethod
    def _validate(task_id: str, task: Optional[Task]) -> None:
        if not task_id:
            raise SchedulerError("task ID cannot be empty")
        if len(task_id) > MAX_TASK_ID_LENGTH:
            raise SchedulerError(f"task ID too long (max {MAX_TASK_ID_LENGTH} characters)")
        if task is None or not callable(task):
            raise SchedulerError("task cannot be None and must be callable")

    def _add(self, entry: _Entry) -> None:
        with self._lock:
            if entry.task_id in self._tasks:
                raise SchedulerError(
                    f"task with ID {entry.task_id!r} already exists, "
                    "use a different ID or cancel the existing task first"
                )
            if len(self._tasks) >= self._max_tasks:
                raise SchedulerError(f"cannot schedule task: maximum number of tasks ({self._max_tasks}) reached")
            self._tasks[entry.task_id] = entry

    def schedule(self, task_id: str, task: Task, run_at: datetime) -> None:
        """Run ``task`` once at ``run_at``; a naive time is taken as local time."""
        self._validate(task_id, task)
        if run_at is None:
            raise SchedulerError("task run time cannot be empty")
        self._add(_Entry(task_id, task, run_at.astimezone(), _now()))

    def schedule_after(self, task_id: str, task: Task, delay: Duration) -> None:
        """Run ``task`` once, ``delay`` seconds from now."""
        self.schedule(task_id, task, _now() + timedelta(seconds=_seconds(delay)))

    def schedule_repeating(self, task_id: str, task: Task, interval: Duration) -> None:
        """Run ``task`` now and then every ``interval`` seconds."""
        self._validate(task_id, task)
        seconds = _seconds(interval)
        if seconds <= 0:
            raise SchedulerError(f"interval must be positive, got {interval}")
        now = _now()
        self._add(_Entry(task_id, task, now, now, interval=timedelta(seconds=seconds)))

    def schedule_cron(self, task_id: str, cron_expr: str, task: Task) -> None:
        """Run ``task`` at every time matched by the six-field ``cron_expr``."""
        self._validate(task_id, task)
        if not cron_expr:
            raise SchedulerError("cron expression cannot be empty")
        try:
            schedule = parse_cron(cron_expr)
        except CronError as exc:
            raise SchedulerError(f"invalid cron expression: {exc}") from exc
        run_at = schedule.next(self._local_now())
        if run_at is None:
            raise SchedulerError(f"cron expression never fires: {cron_expr}")
        self._add(_Entry(task_id, task, run_at, _now(), cron=schedule))

    def cancel(self, task_id: str) -> bool:
        """Remove a task; return whether it existed."""
        with self._lock:
            return self._tasks.pop(task_id, None) is not None

    def cancel_all(self) -> None:
        """Remove every task."""
        with self._lock:
            self._tasks.clear()

    def list(self) -> List[ScheduledTask]:
        """Snapshots of all tasks, earliest run time first."""
        with self._lock:
            snapshot = [ScheduledTask(e.task_id, e.run_at, e.interval, e.created) for e in self._tasks.values()]
        return sorted(snapshot, key=lambda t: t.run_at)

    def start(self) -> None:
        """Begin checking for due tasks; raise SchedulerError if already running."""
        with self._lock:
            if self._loop is not None:
                raise SchedulerError("scheduler already running, call stop() first")
            loop = _Loop()
            loop.thread = threading.Thread(target=self._run, args=(loop.done,), name="scheduler", daemon=True)
            self._loop = loop
            loop.thread.start()

    def stop(self) -> threading.Event:
        """Stop checking for due tasks.

        Returns an event set once the scheduler's own pool, if any, has shut down.
        """
        with self._lock:
            loop, self._loop = self._loop, None
        if loop is not None:
            loop.done.set()

        stopped = threading.Event()

        def finish() -> None:
            if self._own_pool:
                self._pool.shutdown().wait()
            stopped.set()

        threading.Thread(target=finish, name="scheduler-stop", daemon=True).start()
        return stopped

    def __enter__(self) -> "Scheduler":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop().wait()

    def _run(self, done: threading.Event) -> None:
        while not done.wait(self._tick):
            try:
                self._process_ready()
            except Exception:
                # A failing tick must not stop the scheduler.
                pass

    def _process_ready(self) -> None:
        now = _now()
        ready: List[_Entry] = []
        with self._lock:
            for task_id, entry in list(self._tasks.items()):
                if now < entry.run_at:
                    continue
                ready.append(entry)
                if entry.interval > timedelta(0):
                    entry.run_at = now + entry.interval
                elif entry.cron is not None:
                    following = entry.cron.next(now.astimezone(self._location) if self._location else now.astimezone())
                    if following is None:
                        del self._tasks[task_id]
                    else:
                        entry.run_at = following
                else:
                    del self._tasks[task_id]
        for entry in ready:
            try:
                self._pool.submit(entry.task)
            except SubmitError:
                continue