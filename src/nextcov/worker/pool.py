"""Process pool for CPU-bound coverage conversion.

One shared FIFO queue feeds a bounded set of long-lived worker processes:

- workers are spawned lazily, up to ``max_workers``, and reused
- each worker runs one task at a time and reports exactly one result
- a worker that dies is evicted and its in-flight task is rejected with
  ``WorkerPoolError``; nothing is retried
- ``terminate()`` is one-way: workers are killed, queued tasks are
  cancelled, later submissions fail

``max_workers=0`` runs every task in the calling thread and never starts a
process.

Worker state: created -> idle -> busy -> idle, or evicted from any state.
"""

from __future__ import annotations

import itertools
import multiprocessing
import os
import pickle
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from multiprocessing.connection import Connection
from multiprocessing.context import BaseContext
from multiprocessing.process import BaseProcess
from typing import Any, Protocol

import structlog

from nextcov.config.constants import MAX_AUTO_WORKERS, MIN_AUTO_WORKERS, WORKERS_ENV_VAR
from nextcov.convert.ast_converter import process_entry
from nextcov.core.errors import WorkerPoolError
from nextcov.worker.messages import ResultMessage, ShutdownMessage, TaskMessage
from nextcov.worker.process import worker_main

logger = structlog.get_logger()

Handler = Callable[[Any], Any]

_SHUTDOWN_GRACE_SECONDS = 0.5


def default_max_workers() -> int:
    """``NEXTCOV_WORKERS`` if set to a non-negative int, else half the cores in [2, 8]."""
    raw = os.environ.get(WORKERS_ENV_VAR)
    if raw is not None and raw.strip():
        try:
            count = int(raw)
        except ValueError:
            logger.warning("invalid_worker_count", env=WORKERS_ENV_VAR, value=raw)
        else:
            if count >= 0:
                return count
            logger.warning("invalid_worker_count", env=WORKERS_ENV_VAR, value=raw)
    cores = os.cpu_count() or 1
    return max(MIN_AUTO_WORKERS, min(MAX_AUTO_WORKERS, cores // 2))


class Executor(Protocol):
    """Runs conversion tasks and hands back futures."""

    def submit(self, task: Any) -> Future[Any]: ...

    def shutdown(self) -> None: ...


class InlineExecutor:
    """Runs each task immediately in the calling thread."""

    def __init__(self, handler: Handler = process_entry) -> None:
        self._handler = handler

    def submit(self, task: Any) -> Future[Any]:
        future: Future[Any] = Future()
        future.set_running_or_notify_cancel()
        try:
            future.set_result(self._handler(task))
        except Exception as e:  # noqa: BLE001 - delivered through the future
            future.set_exception(e)
        return future

    def shutdown(self) -> None:
        pass


def _fail(failed: list[tuple[Future[Any], BaseException]]) -> None:
    for future, error in failed:
        future.set_exception(error)


@dataclass(eq=False)
class _Worker:
    process: BaseProcess
    conn: Connection
    current: tuple[int, Future[Any]] | None = None
    monitor: threading.Thread | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid


class WorkerPool:
    """Bounded pool of reusable worker processes fed by one FIFO queue.

    Usage::

        with WorkerPool(max_workers=4) as pool:
            futures = [pool.run_task(task) for task in tasks]
            results = [f.result() for f in futures]
    """

    def __init__(
        self,
        max_workers: int | None = None,
        handler: Handler = process_entry,
        mp_context: BaseContext | None = None,
    ) -> None:
        """Create a pool. No process starts until the first task.

        Args:
            max_workers: Upper bound on live workers. None resolves through
                ``default_max_workers()``; 0 runs tasks in-process.
            handler: Module-level callable applied to each task payload in
                the worker. Must be importable by the spawned process.
            mp_context: multiprocessing context (default: spawn).
        """
        resolved = default_max_workers() if max_workers is None else max_workers
        if resolved < 0:
            raise ValueError(f"max_workers must be >= 0, got {resolved}")
        self.max_workers = resolved
        self._handler = handler
        self._ctx = mp_context or multiprocessing.get_context("spawn")
        self._inline = InlineExecutor(handler) if resolved == 0 else None

        self._lock = threading.Lock()
        self._queue: deque[tuple[Any, Future[Any]]] = deque()
        self._workers: list[_Worker] = []
        self._idle: list[_Worker] = []
        self._terminated = False
        self._task_ids = itertools.count()

        self.workers_created = 0
        self.peak_workers = 0

    # -- submission ----------------------------------------------------------

    def run_task(self, task: Any) -> Future[Any]:
        """Queue a task and return its future.

        Raises:
            WorkerPoolError: If the pool has been terminated.
        """
        with self._lock:
            if self._terminated:
                raise WorkerPoolError.terminated()
        if self._inline is not None:
            return self._inline.submit(task)

        future: Future[Any] = Future()
        with self._lock:
            if self._terminated:
                raise WorkerPoolError.terminated()
            self._queue.append((task, future))
            failed = self._dispatch_locked()
        _fail(failed)
        return future

    def _dispatch_locked(self) -> list[tuple[Future[Any], BaseException]]:
        """Hand queued tasks to free workers.

        Returns the futures whose task could not be sent; callers resolve
        them with ``_fail`` after releasing the lock.
        """
        failed: list[tuple[Future[Any], BaseException]] = []
        while self._queue:
            worker = self._acquire_locked()
            if worker is None:
                break
            task, future = self._queue.popleft()
            if not future.set_running_or_notify_cancel():
                self._idle.append(worker)
                continue

            task_id = next(self._task_ids)
            worker.current = (task_id, future)
            try:
                worker.conn.send(TaskMessage(task_id=task_id, payload=task))
            except (pickle.PicklingError, TypeError, AttributeError) as e:
                # Serialization fails before anything is written; the worker is unaffected
                worker.current = None
                self._idle.append(worker)
                failed.append((future, e))
            except OSError as e:
                worker.current = None
                self._evict_locked(worker)
                failed.append((future, WorkerPoolError.worker_failed(worker.pid, str(e))))
        return failed

    def _acquire_locked(self) -> _Worker | None:
        if self._idle:
            return self._idle.pop()
        if len(self._workers) < self.max_workers:
            return self._spawn_locked()
        return None

    def _spawn_locked(self) -> _Worker:
        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        process = self._ctx.Process(
            target=worker_main,
            args=(child_conn, self._handler),
            name=f"nextcov-worker-{self.workers_created}",
            daemon=True,
        )
        process.start()
        child_conn.close()

        worker = _Worker(process=process, conn=parent_conn)
        self._workers.append(worker)
        self.workers_created += 1
        self.peak_workers = max(self.peak_workers, len(self._workers))

        worker.monitor = threading.Thread(
            target=self._monitor, args=(worker,), name=f"{process.name}-monitor", daemon=True
        )
        worker.monitor.start()
        logger.debug("worker_started", pid=process.pid, live=len(self._workers))
        return worker

    # -- completion ----------------------------------------------------------

    def _monitor(self, worker: _Worker) -> None:
        while True:
            try:
                message = worker.conn.recv()
            except (EOFError, OSError):
                self._on_worker_exit(worker)
                return
            if isinstance(message, ResultMessage):
                self._on_result(worker, message)

    def _on_result(self, worker: _Worker, message: ResultMessage) -> None:
        with self._lock:
            current = worker.current
            worker.current = None
            if self._terminated:
                return
            self._idle.append(worker)
            failed = self._dispatch_locked()
        _fail(failed)

        if current is None or current[0] != message.task_id:
            return
        future = current[1]
        if message.ok:
            future.set_result(message.result)
        else:
            future.set_exception(WorkerPoolError.worker_failed(worker.pid, message.error or ""))

    def _on_worker_exit(self, worker: _Worker) -> None:
        worker.process.join(timeout=_SHUTDOWN_GRACE_SECONDS)
        with self._lock:
            current = worker.current
            worker.current = None
            terminated = self._terminated
            self._evict_locked(worker)
            failed = [] if terminated else self._dispatch_locked()
        _fail(failed)
        if terminated:
            return

        exitcode = worker.process.exitcode
        logger.warning("worker_crashed", pid=worker.pid, exitcode=exitcode, busy=current is not None)
        if current is not None:
            current[1].set_exception(WorkerPoolError.worker_crashed(worker.pid, exitcode))

    def _evict_locked(self, worker: _Worker) -> None:
        if worker in self._workers:
            self._workers.remove(worker)
        if worker in self._idle:
            self._idle.remove(worker)

    # -- lifecycle -----------------------------------------------------------

    def terminate(self) -> None:
        """Stop all workers and discard queued work. Idempotent."""
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
            workers = list(self._workers)
            idle = set(map(id, self._idle))
            queued = list(self._queue)
            in_flight = [w.current[1] for w in workers if w.current is not None]
            for w in workers:
                w.current = None
            self._workers.clear()
            self._idle.clear()
            self._queue.clear()

        for _, future in queued:
            future.cancel()
        for future in in_flight:
            if not future.done():
                future.set_exception(WorkerPoolError.terminated())

        for w in workers:
            if id(w) in idle:
                try:
                    w.conn.send(ShutdownMessage())
                except OSError:
                    pass
                w.process.join(timeout=_SHUTDOWN_GRACE_SECONDS)
            if w.process.is_alive():
                w.process.kill()
                w.process.join(timeout=_SHUTDOWN_GRACE_SECONDS)
            if w.monitor is not None:
                w.monitor.join(timeout=_SHUTDOWN_GRACE_SECONDS)
            w.conn.close()
        logger.debug("worker_pool_terminated", workers=len(workers), discarded=len(queued))

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, *exc: object) -> None:
        self.terminate()

    # -- introspection -------------------------------------------------------

    @property
    def pool_size(self) -> int:
        return self.max_workers

    @property
    def is_single_threaded(self) -> bool:
        return self._inline is not None

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def live_workers(self) -> int:
        with self._lock:
            return len(self._workers)

    @property
    def idle_workers(self) -> int:
        with self._lock:
            return len(self._idle)

    @property
    def active_workers(self) -> int:
        with self._lock:
            return len(self._workers) - len(self._idle)

    @property
    def queued_tasks(self) -> int:
        with self._lock:
            return len(self._queue)


class PooledExecutor:
    """Executor backed by a WorkerPool."""

    def __init__(self, pool: WorkerPool, owns_pool: bool = False) -> None:
        self.pool = pool
        self._owns_pool = owns_pool

    def submit(self, task: Any) -> Future[Any]:
        return self.pool.run_task(task)

    def shutdown(self) -> None:
        if self._owns_pool:
            self.pool.terminate()


def create_executor(max_workers: int | None = None, handler: Handler = process_entry) -> Executor:
    """Inline execution for a pool size of 0, a fresh owned pool otherwise."""
    resolved = default_max_workers() if max_workers is None else max_workers
    if resolved == 0:
        return InlineExecutor(handler)
    return PooledExecutor(WorkerPool(resolved, handler), owns_pool=True)


# Process-wide pool with explicit setup and teardown

_global_pool: WorkerPool | None = None
_global_lock = threading.Lock()


def init_worker_pool(max_workers: int | None = None, handler: Handler = process_entry) -> WorkerPool:
    """Create the process-wide pool, terminating any previous one."""
    global _global_pool
    with _global_lock:
        if _global_pool is not None:
            _global_pool.terminate()
        _global_pool = WorkerPool(max_workers, handler)
        return _global_pool


def get_worker_pool() -> WorkerPool:
    """The pool created by ``init_worker_pool``.

    Raises:
        WorkerPoolError: If no pool has been initialized.
    """
    with _global_lock:
        if _global_pool is None:
            raise WorkerPoolError.not_initialized()
        return _global_pool


def terminate_worker_pool() -> None:
    global _global_pool
    with _global_lock:
        pool, _global_pool = _global_pool, None
    if pool is not None:
        pool.terminate()
