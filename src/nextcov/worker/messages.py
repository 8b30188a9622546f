"""Messages exchanged between the pool and its worker processes.

Only these picklable values cross the process boundary; workers share no
state with the parent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class TaskMessage:
    """Parent -> worker: run ``payload`` through the worker's handler."""

    task_id: int
    payload: Any


@dataclass(frozen=True, slots=True)
class ShutdownMessage:
    """Parent -> worker: exit the receive loop."""


@dataclass(frozen=True, slots=True)
class ResultMessage:
    """Worker -> parent: exactly one per TaskMessage."""

    task_id: int
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


WorkerInbound = TaskMessage | ShutdownMessage
