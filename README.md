# flowkit

Building blocks for running work concurrently on threads:

- **`flowkit.context`**: cancellation, deadlines and request-scoped values handed
  to every task.
- **`flowkit.workerpool`**: a fixed number of worker threads fed from a bounded
  queue, with per-task timeouts and a result queue.
- **`flowkit.cron`**: six-field cron expressions (seconds first) and the
  computation of their next matching time.
- **`flowkit.scheduler`**: one-off, delayed, repeating and cron-driven tasks, plus
  `BackoffTask` for retrying with exponential back-off.
- **`flowkit.pipeline`**: data passed through named stages in order, with timeouts,
  error policies, callbacks and execution statistics.

All durations are in seconds. The package uses only the standard library.

## Installation

```
pip install flowkit
```

## Contexts

A task is any callable that takes a `Context`. Through it the task can see
whether it has been cancelled or has run out of time, and read values.

```python
from flowkit.context import background, with_timeout, with_value

ctx = with_value(background(), "request_id", "abc-123")
ctx = with_timeout(ctx, 0.5)

ctx.wait(1.0)                  # returns True once the context has ended
print(ctx.err())               # DeadlineExceeded after half a second
print(ctx.value("request_id")) # "abc-123"; None for keys that are not set
```

- `with_cancel(parent)` returns a context that `ctx.cancel()` ends with `Cancelled`.
- Ending a context ends every context derived from it.
- A child's deadline is never later than its parent's; `ctx.deadline()` gives it
  on the `time.monotonic()` clock, or None.
- `Cancelled` and `DeadlineExceeded` both derive from `ContextError`.

## Worker pool

```python
from flowkit.workerpool import WorkerPool

def task(ctx):
    ...  # do some work, stopping early if ctx.done()

with WorkerPool(4, 100) as pool:   # 4 workers, room for 100 queued tasks
    pool.submit(task)
    result = pool.get_result(1.0)
    if result.error is not None:
        print("task failed:", result.error)
```

- `WorkerPool(worker_count, queue_size=0, task_timeout=0.0)`. A queue size of 0
  means twice the worker count. A worker count below one or a negative queue size
  raises `ValueError`. `PoolConfig` with `WorkerPool.from_config(config)` takes the
  same settings as one object.
- `submit(task)` runs the task with a background context;
  `submit_with_context(ctx, task)` hands it `ctx` (None means a background
  context). With a task timeout as well, whichever ends first applies. Both block
  while the queue is full.
- Submitting after `shutdown()` raises `PoolShutdownError`; submitting with a
  context that has ended raises `SubmitError` (the parent of `PoolShutdownError`).
  A task that is not callable raises `TypeError`.
- Every task yields a `TaskResult` with `task`, `error`, `duration` and
  `worker_id`. An exception raised by a task is stored in `error`; anything that is
  not an `Exception` (such as `KeyboardInterrupt`) is wrapped in a
  `TaskPanicError` that carries the stack trace.
- The result queue holds one result per worker. A result nobody reads is dropped
  after about 0.1 s, so read results if you need them.
- `get_result(timeout=None)` returns the next result, raises `TimeoutError` when
  none arrives in time, and returns None once the pool is shut down and drained.
  `results()` iterates until then.
- `shutdown()` stops the workers after their current task and returns a
  `threading.Event` set once they have all finished. Tasks still queued are not
  run. Leaving the `with` block shuts down and waits.
- `size()` is the worker count; `queue_size()` the number of tasks waiting.

## Cron expressions

```python
from datetime import datetime
from flowkit.cron import parse_cron

schedule = parse_cron("0 0 9 * * MON-FRI")   # 09:00:00 on weekdays
print(schedule.next(datetime(2024, 1, 6, 12, 0)))   # 2024-01-08 09:00:00
```

The six fields are second, minute, hour, day of month, month and day of week
(0 is Sunday). Each accepts `*` or `?`, single values, ranges `a-b`, steps `x/n`
and comma-separated lists. Months and weekdays may be three-letter English names
in any case. When both day fields are restricted, a day matching either one
matches; when one of them is `*`, both must match.

`parse_cron` raises `CronError` (a `ValueError`) for a malformed expression.
Descriptors such as `@hourly` are rejected. `CronSchedule.next(after)` returns
the first matching time strictly after `after`, to the second, keeping its time
zone; it returns None if nothing matches within five years.

## Scheduler

```python
from flowkit.scheduler import Scheduler

def heartbeat(ctx):
    print("still alive")

with Scheduler() as scheduler:   # starts on entry, stops on exit
    scheduler.schedule_after("hello", heartbeat, 5)            # once, in 5 s
    scheduler.schedule_repeating("heartbeat", heartbeat, 60)   # now, then every minute
    scheduler.schedule_cron("nightly", "0 30 2 * * *", heartbeat)
    for task in scheduler.list():
        print(task.task_id, task.run_at)
```

- `schedule(task_id, task, run_at)` runs once at a `datetime`; a naive time is
  taken as local time. `schedule_after` and `schedule_repeating` accept seconds or
  a `timedelta`.
- Task ids must be non-empty, at most 255 characters and unique among the
  scheduled tasks. Invalid arguments, a duplicate id, a full scheduler, an
  invalid cron expression or one that never fires raise `SchedulerError`.
- `cancel(task_id)` reports whether a task was removed; `cancel_all()` removes all.
  `list()` returns `ScheduledTask` snapshots, earliest run time first.
- Due tasks are checked for on every tick and submitted to the worker pool;
  one-shot tasks are then removed. Errors raised by tasks are reported only through
  the pool's results.
- `SchedulerConfig` sets `worker_pool`, `location` (the time zone cron expressions
  are evaluated in; local by default), `tick_interval` (0.05 s) and `max_tasks`
  (10000). Without a pool the scheduler creates one with 4 workers and a queue of
  100, and shuts it down on `stop()`.
- `start()` raises `SchedulerError` if the scheduler is already running. `stop()`
  returns a `threading.Event` set once the scheduler's own pool has shut down.

`BackoffTask` wraps a task and retries it, doubling the delay after each failure
up to a maximum, and re-raises the last error when the retries run out:

```python
from flowkit.context import background
from flowkit.scheduler import BackoffTask

resilient = BackoffTask(task=heartbeat, max_retries=5, initial_delay=0.01, max_delay=1.0)
resilient(background())
```

Non-positive delays fall back to 0.1 s and 30 s. A missing task or a negative
retry count raises `ValueError`. If the context ends while waiting between
attempts, its error is raised.

## Pipeline

```python
from flowkit.pipeline import Pipeline

pipeline = Pipeline()
pipeline.add_stage_func("uppercase", lambda ctx, data: data.upper())
pipeline.add_stage_func("prefix", lambda ctx, data: "PROCESSED: " + data)

result = pipeline.execute(None, "hello world")
print(result.output)              # PROCESSED: HELLO WORLD
print(len(result.stage_results))  # 2
```

- Each stage receives the output of the last successful stage. A stage fails by
  raising.
- `execute(ctx, data)` returns a `PipelineResult` and raises `PipelineError`, whose
  `result` attribute holds the full result, when the run ends with an error.
  `execute_async` returns a `concurrent.futures.Future` that yields the result
  without raising for it.
- `PipelineConfig` sets `timeout`, `worker_pool`, `stop_on_error` and the
  callbacks `on_pipeline_start`, `on_stage_start`, `on_stage_complete`, `on_error`
  and `on_pipeline_complete`. With `stop_on_error=True` (the default) the first
  failure ends the run; otherwise the failure is recorded in its `StageResult` and
  the run carries on. A timed-out run fails with `DeadlineExceeded`.
- `add_stage`, `add_stage_func`, `set_worker_pool` and `set_timeout` return the
  pipeline for chaining; `stages()` returns a copy of the stage list. With a worker
  pool set, each stage runs on one of its workers.
- `stats()` returns `PipelineStats` with run counts, total and average durations,
  the time of the last run and per-stage `StageStats`.
- Custom stages subclass `Stage`, set a `name` and implement `execute(ctx, data)`.
- A pipeline may be executed from several threads at once.

## What flowkit does not do

- There is no command-line tool; flowkit is used as a library.
- Scheduled tasks live in memory only and are lost when the process ends.
- `PipelineConfig.max_concurrency` is accepted but has no effect: stages always
  run one after another.

## Running the tests

```
pip install -e ".[test]"
pytest
```