[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flowkit"
version = "0.1.0"
description = "Thread-based worker pools, task scheduling with cron support, and multi-stage processing pipelines."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "worker pool",
    "scheduler",
    "cron",
    "pipeline",
    "concurrency",
    "tasks",
    "backoff",
    "context",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["flowkit"]

[tool.hatch.build.targets.sdist]
include = ["flowkit", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 120
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
