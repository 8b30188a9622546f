"""Worker process entry point."""

from __future__ import annotations

from collections.abc import Callable
from multiprocessing.connection import Connection
from typing import Any

from nextcov.worker.messages import ResultMessage, ShutdownMessage, TaskMessage


def worker_main(conn: Connection, handler: Callable[[Any], Any]) -> None:
    """Receive tasks until shutdown or until the parent goes away.

    A handler exception is reported back as the task's error; the worker
    stays alive for the next task.
    """
    try:
        while True:
            try:
                message = conn.recv()
            except (EOFError, OSError):
                return
            if isinstance(message, ShutdownMessage):
                return
            if not isinstance(message, TaskMessage):
                continue

            try:
                result = handler(message.payload)
            except Exception as e:  # noqa: BLE001 - reported to the parent
                reply = ResultMessage(task_id=message.task_id, error=f"{type(e).__name__}: {e}")
            else:
                reply = ResultMessage(task_id=message.task_id, result=result)

            try:
                conn.send(reply)
            except (EOFError, OSError):
                return
    finally:
        conn.close()
