import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from flowkit.context import Cancelled, background, with_cancel
from flowkit.scheduler import BackoffTask, ScheduledTask, Scheduler, SchedulerConfig, SchedulerError
from flowkit.workerpool import WorkerPool


def eventually(condition, timeout, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


class Counter:
    def __init__(self):
        self._lock = threading.Lock()
        self.value = 0

    def __call__(self, ctx):
        with self._lock:
            self.value += 1


@pytest.fixture
def scheduler():
    s = Scheduler()
    yield s
    assert s.stop().wait(5)


def test_basic_scheduling(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule("test1", counter, datetime.now(timezone.utc))
    scheduler.schedule_after("test2", counter, 0.05)
    assert eventually(lambda: counter.value == 2, 0.5)
    assert scheduler.list() == []


def test_repeating_task(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule_repeating("repeat", counter, 0.075)
    assert eventually(lambda: counter.value >= 3, 0.5)
    (entry,) = scheduler.list()
    assert entry.task_id == "repeat"
    assert entry.interval.total_seconds() == pytest.approx(0.075)


def test_cron_scheduling(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule_cron("cron", "* * * * * *", counter)
    assert eventually(lambda: counter.value > 0, 2.0, 0.05)
    (entry,) = scheduler.list()
    assert entry.task_id == "cron"
    assert entry.interval == timedelta(0)


def test_task_management(scheduler):
    task = Counter()
    scheduler.schedule("dup", task, datetime.now(timezone.utc) + timedelta(hours=1))
    with pytest.raises(SchedulerError):
        scheduler.schedule("dup", task, datetime.now(timezone.utc) + timedelta(hours=1))

    assert len(scheduler.list()) == 1
    assert scheduler.cancel("dup") is True
    assert scheduler.cancel("nonexistent") is False
    assert scheduler.list() == []


def test_backoff_task_succeeds_after_retries():
    attempts = []

    def failing(ctx):
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("temporary failure")

    task = BackoffTask(task=failing, max_retries=5, initial_delay=0.01, max_delay=0.1)
    outcome = task(background())
    assert outcome is None
    assert len(attempts) == 3


def test_backoff_task_raises_last_error():
    attempts = []

    def failing(ctx):
        attempts.append(1)
        raise RuntimeError(f"failure {len(attempts)}")

    task = BackoffTask(task=failing, max_retries=2, initial_delay=0.01, max_delay=0.02)
    with pytest.raises(RuntimeError, match="failure 3"):
        task(background())
    assert len(attempts) == 3


def test_backoff_task_stops_on_cancelled_context():
    ctx = with_cancel(background())
    attempts = []

    def failing(c):
        attempts.append(1)
        ctx.cancel()
        raise RuntimeError("boom")

    task = BackoffTask(task=failing, max_retries=5, initial_delay=1.0)
    with pytest.raises(Cancelled):
        task(ctx)
    assert len(attempts) == 1


@pytest.mark.parametrize(
    "task, retries",
    [(None, 1), (lambda ctx: None, -1)],
)
def test_backoff_task_rejects_bad_config(task, retries):
    with pytest.raises(ValueError):
        BackoffTask(task=task, max_retries=retries)(background())


@pytest.mark.parametrize(
    "call",
    [
        lambda s, t: s.schedule("", t, datetime.now(timezone.utc)),
        lambda s, t: s.schedule("test", None, datetime.now(timezone.utc)),
        lambda s, t: s.schedule("x" * 256, t, datetime.now(timezone.utc)),
        lambda s, t: s.schedule("test", t, None),
        lambda s, t: s.schedule_repeating("test", t, -1),
        lambda s, t: s.schedule_repeating("test", t, 0),
        lambda s, t: s.schedule_cron("test", "", t),
        lambda s, t: s.schedule_cron("test", "invalid", t),
        lambda s, t: s.schedule_cron("cleanup", "@hourly", t),
    ],
    ids=[
        "empty id",
        "nil task",
        "long id",
        "no run time",
        "negative interval",
        "zero interval",
        "empty cron",
        "invalid cron",
        "descriptor",
    ],
)
def test_input_validation(scheduler, call):
    with pytest.raises(SchedulerError):
        call(scheduler, lambda ctx: None)
    assert scheduler.list() == []


def test_example_basic_runs_once(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule_after("simple-task", counter, 0.1)
    time.sleep(0.2)
    assert counter.value == 1
    assert scheduler.list() == []


def test_example_cron_run_time(scheduler):
    scheduler.schedule_cron("backup", "0 30 2 * * *", Counter())
    (entry,) = scheduler.list()
    assert isinstance(entry, ScheduledTask)
    local = entry.run_at.astimezone()
    assert (local.hour, local.minute, local.second) == (2, 30, 0)
    assert entry.interval == timedelta(0)
    assert entry.run_at > datetime.now(timezone.utc)


def test_list_sorted_by_run_time(scheduler):
    now = datetime.now(timezone.utc)
    scheduler.schedule("late", Counter(), now + timedelta(hours=3))
    scheduler.schedule("early", Counter(), now + timedelta(hours=1))
    scheduler.schedule_repeating("health", Counter(), 30)
    ids = [t.task_id for t in scheduler.list()]
    assert ids == ["health", "early", "late"]
    assert scheduler.list()[0].interval == timedelta(seconds=30)


def test_cancel_all(scheduler):
    scheduler.schedule_repeating("a", Counter(), 60)
    scheduler.schedule_repeating("b", Counter(), 60)
    scheduler.cancel_all()
    assert scheduler.list() == []


def test_max_tasks():
    s = Scheduler(SchedulerConfig(max_tasks=1))
    try:
        s.schedule_repeating("one", Counter(), 60)
        with pytest.raises(SchedulerError, match="maximum"):
            s.schedule_repeating("two", Counter(), 60)
    finally:
        assert s.stop().wait(5)


def test_start_twice_fails(scheduler):
    scheduler.start()
    with pytest.raises(SchedulerError):
        scheduler.start()


def test_cancelled_task_does_not_run(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule_after("later", counter, 0.15)
    assert scheduler.cancel("later") is True
    time.sleep(0.3)
    assert counter.value == 0


def test_external_pool_is_left_running():
    pool = WorkerPool(2, 10)
    try:
        s = Scheduler(SchedulerConfig(worker_pool=pool, tick_interval=0.02))
        s.start()
        counter = Counter()
        s.schedule_after("x", counter, 0)
        assert eventually(lambda: counter.value == 1, 0.5)
        assert s.stop().wait(5)
        pool.submit(counter)
        assert eventually(lambda: counter.value == 2, 0.5)
    finally:
        assert pool.shutdown().wait(5)


def test_context_manager_runs_tasks():
    counter = Counter()
    with Scheduler() as s:
        s.schedule_after("cm", counter, 0.01)
        assert eventually(lambda: counter.value == 1, 0.5)
    assert counter.value == 1


def test_backoff_task_scheduled(scheduler):
    scheduler.start()
    attempts = []

    def flaky(ctx):
        attempts.append(1)
        if len(attempts) < 2:
            raise RuntimeError("temporary")

    scheduler.schedule_after("api-call", BackoffTask(flaky, max_retries=3, initial_delay=0.01), 0.001)
    assert eventually(lambda: len(attempts) == 2, 1.0)
    assert scheduler.list() == []