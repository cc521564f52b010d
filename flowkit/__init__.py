"""Thread-based worker pools, cron and task scheduling, and processing pipelines."""

__version__ = "0.1.0"

__all__ = ["context", "cron", "pipeline", "scheduler", "workerpool"]