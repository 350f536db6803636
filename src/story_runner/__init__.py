"""Provide the public `story_runner` package exports."""

from __future__ import annotations

from .orchestrator import IterationScheduler
from .store import TaskStore, TaskStoreError

__all__ = ["IterationScheduler", "TaskStore", "TaskStoreError"]
