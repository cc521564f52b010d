"""Pass data through a sequence of named stages, recording timings and statistics.

Each stage receives the output of the previous successful stage. A stage
reports failure by raising. With ``stop_on_error`` (the default) the first
failure ends the run; otherwise the failure is recorded and the next stage
receives the last successful output.

    pipeline = Pipeline()
    pipeline.add_stage_func("upper", lambda ctx, data: data.upper())
    result = pipeline.execute(None, "hello")
    result.output  # "HELLO"

When a worker pool is set, every stage runs on one of its workers.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .context import Context, background, with_timeout
from .workerpool import SubmitError, WorkerPool

StageFn = Callable[[Context, Any], Any]

_POOL_POLL = 0.01


class Stage(ABC):
    """One processing step; subclasses provide a ``name`` and ``execute``."""

    name: str

    @abstractmethod
    def execute(self, ctx: Context, data: Any) -> Any:
        """Process ``data`` and return the stage's output; raise on failure."""


class FunctionStage(Stage):
    """A stage backed by a plain function ``fn(ctx, data)``."""

    def __init__(self, name: str, fn: StageFn) -> None:
        self.name = name
        self._fn = fn

    def execute(self, ctx: Context, data: Any) -> Any:
        """Call the wrapped function."""
        return self._fn(ctx, data)

    def __repr__(self) -> str:
        return f"FunctionStage({self.name!r})"


@dataclass(frozen=True)
class StageResult:
    """The outcome of one stage within one run."""

    stage_name: str
    input: Any
    output: Any
    error: Optional[BaseException]
    duration: float
    start_time: datetime
    end_time: datetime


@dataclass
class PipelineResult:
    """The outcome of one pipeline run; durations are in seconds."""

    input: Any
    start_time: datetime
    output: Any = None
    error: Optional[BaseException] = None
    duration: float = 0.0
    stage_results: List[StageResult] = field(default_factory=list)
    end_time: Optional[datetime] = None


@dataclass(frozen=True)
class StageStats:
    """Accumulated counters for one stage name."""

    name: str
    execution_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration: float = 0.0
    average_duration: float = 0.0


@dataclass(frozen=True)
class PipelineStats:
    """Accumulated counters for a pipeline."""

    total_executions: int
    successful_runs: int
    failed_runs: int
    total_duration: float
    average_duration: float
    stage_stats: Dict[str, StageStats]
    last_execution_at: Optional[datetime]


@dataclass
class PipelineConfig:
    """Pipeline options.

    ``timeout`` is in seconds; 0 means none. ``max_concurrency`` is kept for
    callers that set it and does not change how stages run.
    """

    worker_pool: Optional[WorkerPool] = None
    timeout: float = 0.0
    on_stage_start: Optional[Callable[[str, Any], None]] = None
    on_stage_complete: Optional[Callable[[StageResult], None]] = None
    on_pipeline_start: Optional[Callable[[Any], None]] = None
    on_pipeline_complete: Optional[Callable[[PipelineResult], None]] = None
    on_error: Optional[Callable[[str, BaseException], None]] = None
    stop_on_error: bool = True
    max_concurrency: int = 0


class PipelineError(Exception):
    """A pipeline run ended with an error; the full result is in ``result``."""

    def __init__(self, result: PipelineResult) -> None:
        super().__init__(str(result.error))
        self.result = result


class Pipeline:
    """An ordered list of stages that can be run many times, also concurrently."""

    def __init__(self, config: Optional[PipelineConfig] = None) -> None:
        self._config = dataclasses.replace(config) if config is not None else PipelineConfig()
        self._stages: List[Stage] = []
        self._lock = threading.Lock()
        self._total_executions = 0
        self._successful_runs = 0
        self._failed_runs = 0
        self._total_duration = 0.0
        self._last_execution_at: Optional[datetime] = None
        self._stage_stats: Dict[str, StageStats] = {}

    def execute(self, ctx: Optional[Context], data: Any) -> PipelineResult:
        """Run every stage on ``data``; raise PipelineError if the run failed."""
        result = self.execute_async(ctx, data).result()
        if result.error is not None:
            raise PipelineError(result) from result.error
        return result

    def execute_async(self, ctx: Optional[Context], data: Any) -> "concurrent.futures.Future[PipelineResult]":
        """Run the pipeline on a background thread; the future yields the result."""
        future: "concurrent.futures.Future[PipelineResult]" = concurrent.futures.Future()

        def runner() -> None:
            try:
                future.set_result(self._run(ctx if ctx is not None else background(), data))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=runner, name="pipeline", daemon=True).start()
        return future

    def add_stage(self, stage: Stage) -> "Pipeline":
        """Append ``stage``; returns the pipeline for chaining."""
        with self._lock:
            self._stages.append(stage)
            self._stage_stats.setdefault(stage.name, StageStats(stage.name))
        return self

    def add_stage_func(self, name: str, fn: StageFn) -> "Pipeline":
        """Append a stage built from ``fn(ctx, data)``."""
        return self.add_stage(FunctionStage(name, fn))

    def set_worker_pool(self, pool: Optional[WorkerPool]) -> "Pipeline":
        """Run stages on ``pool`` from now on; None runs them on the calling thread."""
        with self._lock:
            self._config.worker_pool = pool
        return self

    def set_timeout(self, timeout: float) -> "Pipeline":
        """Limit each run to ``timeout`` seconds; 0 removes the limit."""
        with self._lock:
            self._config.timeout = timeout
        return self

    def stages(self) -> List[Stage]:
        """A copy of the stage list."""
        with self._lock:
            return list(self._stages)

    def stats(self) -> PipelineStats:
        """A snapshot of the accumulated statistics."""
        with self._lock:
            total = self._total_executions
            return PipelineStats(
                total_executions=total,
                successful_runs=self._successful_runs,
                failed_runs=self._failed_runs,
                total_duration=self._total_duration,
                average_duration=self._total_duration / total if total else 0.0,
                stage_stats=dict(self._stage_stats),
                last_execution_at=self._last_execution_at,
            )

    def _run(self, ctx: Context, data: Any) -> PipelineResult:
        config = self._config
        started = time.perf_counter()
        result = PipelineResult(input=data, start_time=datetime.now())

        if config.on_pipeline_start is not None:
            config.on_pipeline_start(data)

        scoped = with_timeout(ctx, config.timeout) if config.timeout > 0 else None
        try:
            result.output, result.error = self._run_stages(scoped or ctx, data, result)
        finally:
            if scoped is not None:
                scoped.cancel()

        result.end_time = datetime.now()
        result.duration = time.perf_counter() - started
        self._record_run(result)

        if config.on_pipeline_complete is not None:
            config.on_pipeline_complete(result)
        return result

    def _run_stages(self, ctx: Context, data: Any, result: PipelineResult) -> tuple:
        current = data
        for stage in self.stages():
            error = ctx.err()
            if error is not None:
                return current, error

            stage_result = self._run_stage(ctx, stage, current)
            result.stage_results.append(stage_result)

            if stage_result.error is None:
                current = stage_result.output
                continue
            if self._config.on_error is not None:
                self._config.on_error(stage.name, stage_result.error)
            if self._config.stop_on_error:
                return current, stage_result.error
        return current, None

    def _run_stage(self, ctx: Context, stage: Stage, data: Any) -> StageResult:
        config = self._config
        start_time = datetime.now()
        started = time.perf_counter()

        if config.on_stage_start is not None:
            config.on_stage_start(stage.name, data)

        output: Any = None
        error: Optional[BaseException] = None
        try:
            if config.worker_pool is not None:
                output = self._run_in_pool(config.worker_pool, ctx, stage, data)
            else:
                output = stage.execute(ctx, data)
        except Exception as exc:
            error = exc

        stage_result = StageResult(
            stage_name=stage.name,
            input=data,
            output=output,
            error=error,
            duration=time.perf_counter() - started,
            start_time=start_time,
            end_time=datetime.now(),
        )
        self._record_stage(stage_result)

        if config.on_stage_complete is not None:
            config.on_stage_complete(stage_result)
        return stage_result

    @staticmethod
    def _run_in_pool(pool: WorkerPool, ctx: Context, stage: Stage, data: Any) -> Any:
        outcome: "concurrent.futures.Future[Any]" = concurrent.futures.Future()

        def task(task_ctx: Context) -> None:
            try:
                value = stage.execute(task_ctx, data)
            except BaseException as exc:
                outcome.set_exception(exc)
                raise
            outcome.set_result(value)

        try:
            pool.submit_with_context(ctx, task)
        except SubmitError as exc:
            raise SubmitError(f"failed to submit stage {stage.name} to worker pool: {exc}") from exc

        while True:
            finished, _ = concurrent.futures.wait([outcome], timeout=_POOL_POLL)
            if finished:
                return outcome.result()
            error = ctx.err()
            if error is not None:
                raise error

    def _record_run(self, result: PipelineResult) -> None:
        with self._lock:
            self._total_executions += 1
            self._total_duration += result.duration
            if result.error is None:
                self._successful_runs += 1
            else:
                self._failed_runs += 1
            self._last_execution_at = result.end_time

    def _record_stage(self, result: StageResult) -> None:
        with self._lock:
            stats = self._stage_stats.get(result.stage_name, StageStats(result.stage_name))
            count = stats.execution_count + 1
            total = stats.total_duration + result.duration
            failed = result.error is not None
            self._stage_stats[result.stage_name] = dataclasses.replace(
                stats,
                execution_count=count,
                success_count=stats.success_count + (0 if failed else 1),
                error_count=stats.error_count + (1 if failed else 0),
                total_duration=total,
                average_duration=total / count,
            )