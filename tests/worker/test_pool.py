"""Tests for the conversion worker pool.

Handlers are builtins so spawned workers can unpickle them without importing
test modules.
"""

import os
import threading
import time
from collections.abc import Generator

import pytest
from structlog.testing import capture_logs

from nextcov.convert.ast_converter import ConversionResult, ConvertTask
from nextcov.core.errors import ErrorCode, WorkerPoolError
from nextcov.coverage.models import V8Function, V8Range
from nextcov.worker.pool import (
    InlineExecutor,
    PooledExecutor,
    WorkerPool,
    create_executor,
    default_max_workers,
    get_worker_pool,
    init_worker_pool,
    terminate_worker_pool,
)

RESULT_TIMEOUT = 60


@pytest.fixture(autouse=True)
def global_pool_reset() -> Generator[None, None, None]:
    terminate_worker_pool()
    yield
    terminate_worker_pool()


class TestDefaultMaxWorkers:
    def test_given_env_override_when_resolved_then_used(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("NEXTCOV_WORKERS", "3")
        assert default_max_workers() == 3

    def test_given_zero_override_when_resolved_then_single_threaded(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("NEXTCOV_WORKERS", "0")
        assert default_max_workers() == 0

    @pytest.mark.usefixtures("no_worker_env")
    def test_given_no_override_when_resolved_then_clamped(self) -> None:
        assert 2 <= default_max_workers() <= 8

    @pytest.mark.parametrize("value", ["-1", "many"])
    def test_given_invalid_override_when_resolved_then_warned_and_ignored(
        self, monkeypatch: pytest.MonkeyPatch, value: str
    ) -> None:
        monkeypatch.setenv("NEXTCOV_WORKERS", value)

        with capture_logs() as logs:
            count = default_max_workers()

        assert 2 <= count <= 8
        assert logs[0]["event"] == "invalid_worker_count"
        assert logs[0]["value"] == value


class TestSingleThreaded:
    def test_given_zero_workers_when_tasks_run_then_no_process_started(self) -> None:
        pool = WorkerPool(max_workers=0, handler=abs)

        results = [pool.run_task(-n).result() for n in range(5)]

        assert results == [0, 1, 2, 3, 4]
        assert pool.is_single_threaded
        assert pool.workers_created == 0
        assert pool.live_workers == 0

    def test_given_negative_size_when_created_then_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_workers"):
            WorkerPool(max_workers=-1)

    def test_given_inline_executor_when_handler_raises_then_future_carries_error(self) -> None:
        future = InlineExecutor(int).submit("not a number")

        with pytest.raises(ValueError):
            future.result()


class TestWorkerPool:
    def test_given_more_tasks_than_workers_when_run_then_bounded_and_queued(self) -> None:
        with WorkerPool(max_workers=2, handler=time.sleep) as pool:
            # When
            futures = [pool.run_task(0.2) for _ in range(6)]
            queued = pool.queued_tasks
            results = [f.result(timeout=RESULT_TIMEOUT) for f in futures]

            # Then
            assert queued == 4
            assert results == [None] * 6
            assert pool.workers_created == 2
            assert pool.peak_workers == 2

    def test_given_sequential_tasks_when_run_then_worker_reused(self) -> None:
        with WorkerPool(max_workers=4, handler=abs) as pool:
            results = [pool.run_task(-n).result(timeout=RESULT_TIMEOUT) for n in range(4)]

            assert results == [0, 1, 2, 3]
            assert pool.workers_created == 1
            assert pool.idle_workers == 1
            assert pool.active_workers == 0

    def test_given_handler_error_when_run_then_task_rejected_and_worker_kept(self) -> None:
        with WorkerPool(max_workers=1, handler=int) as pool:
            # When
            failing = pool.run_task("x")
            with pytest.raises(WorkerPoolError) as exc_info:
                failing.result(timeout=RESULT_TIMEOUT)
            recovered = pool.run_task("7").result(timeout=RESULT_TIMEOUT)

            # Then
            assert exc_info.value.code == ErrorCode.WORKER_FAILED
            assert "ValueError" in exc_info.value.details["reason"]
            assert recovered == 7
            assert pool.workers_created == 1

    def test_given_worker_dies_when_running_then_task_rejected_and_worker_replaced(self) -> None:
        with WorkerPool(max_workers=1, handler=os._exit) as pool:
            # When
            with capture_logs() as logs:
                first = pool.run_task(3)
                with pytest.raises(WorkerPoolError) as exc_info:
                    first.result(timeout=RESULT_TIMEOUT)
            second = pool.run_task(4)
            with pytest.raises(WorkerPoolError):
                second.result(timeout=RESULT_TIMEOUT)

            # Then
            assert exc_info.value.code == ErrorCode.WORKER_CRASHED
            assert exc_info.value.details["exitcode"] == 3
            assert any(e["event"] == "worker_crashed" for e in logs)
            assert pool.workers_created == 2
            assert pool.live_workers == 0

    def test_given_unsendable_task_when_callback_resubmits_then_pool_stays_usable(self) -> None:
        with WorkerPool(max_workers=1, handler=time.sleep) as pool:
            # Given: the unpicklable task is dispatched from the result path
            follow_ups: list = []
            resubmitted = threading.Event()

            def resubmit(_future: object) -> None:
                follow_ups.append(pool.run_task(0))
                resubmitted.set()

            pool.run_task(0.3)
            unsendable = pool.run_task(lambda: None)
            unsendable.add_done_callback(resubmit)

            # When
            error = unsendable.exception(timeout=RESULT_TIMEOUT)

            # Then
            assert error is not None
            assert resubmitted.wait(timeout=RESULT_TIMEOUT)
            assert follow_ups[0].result(timeout=RESULT_TIMEOUT) is None

    def test_given_convert_task_when_run_then_default_handler_converts(self) -> None:
        code = "a();\n"
        task = ConvertTask(
            code=code, url="http://localhost/a.js", functions=[V8Function("", [V8Range(0, 5, 1)])]
        )

        with WorkerPool(max_workers=1) as pool:
            result = pool.run_task(task).result(timeout=RESULT_TIMEOUT)

        assert isinstance(result, ConversionResult)
        assert result.success
        assert result.files[0].s == {"0": 1}


class TestTerminate:
    def test_given_busy_pool_when_terminated_then_work_discarded(self) -> None:
        # Given
        pool = WorkerPool(max_workers=1, handler=time.sleep)
        running = pool.run_task(30)
        queued = pool.run_task(30)

        # When
        pool.terminate()

        # Then
        assert queued.cancelled()
        with pytest.raises(WorkerPoolError) as exc_info:
            running.result(timeout=RESULT_TIMEOUT)
        assert exc_info.value.code == ErrorCode.WORKER_POOL_TERMINATED
        assert pool.is_terminated
        assert pool.live_workers == 0

    def test_given_terminated_pool_when_submitting_then_rejected(self) -> None:
        pool = WorkerPool(max_workers=0, handler=abs)
        pool.terminate()
        pool.terminate()

        with pytest.raises(WorkerPoolError) as exc_info:
            pool.run_task(1)

        assert exc_info.value.code == ErrorCode.WORKER_POOL_TERMINATED

    def test_given_idle_workers_when_terminated_then_processes_exit(self) -> None:
        pool = WorkerPool(max_workers=1, handler=abs)
        pool.run_task(-1).result(timeout=RESULT_TIMEOUT)

        start = time.monotonic()
        pool.terminate()

        assert time.monotonic() - start < 10
        assert pool.live_workers == 0


class TestExecutors:
    def test_given_zero_workers_when_created_then_inline(self) -> None:
        assert isinstance(create_executor(0, handler=abs), InlineExecutor)

    def test_given_workers_when_created_then_owned_pool_terminated_on_shutdown(self) -> None:
        executor = create_executor(2, handler=abs)

        assert isinstance(executor, PooledExecutor)
        assert executor.pool.pool_size == 2
        executor.shutdown()
        assert executor.pool.is_terminated

    def test_given_shared_pool_when_executor_shut_down_then_pool_survives(self) -> None:
        pool = WorkerPool(max_workers=0, handler=abs)
        executor = PooledExecutor(pool)

        assert executor.submit(-2).result() == 2
        executor.shutdown()
        assert not pool.is_terminated


class TestGlobalPool:
    def test_given_no_pool_when_accessed_then_not_initialized(self) -> None:
        with pytest.raises(WorkerPoolError) as exc_info:
            get_worker_pool()

        assert exc_info.value.code == ErrorCode.WORKER_POOL_NOT_INITIALIZED

    def test_given_initialized_pool_when_accessed_then_same_instance(self) -> None:
        pool = init_worker_pool(0, handler=abs)

        assert get_worker_pool() is pool
        assert pool.run_task(-3).result() == 3

    def test_given_reinitialized_pool_when_accessed_then_previous_terminated(self) -> None:
        first = init_worker_pool(0, handler=abs)
        second = init_worker_pool(0, handler=abs)

        assert first.is_terminated
        assert get_worker_pool() is second

    def test_given_terminated_global_when_accessed_then_not_initialized(self) -> None:
        pool = init_worker_pool(0, handler=abs)
        terminate_worker_pool()

        assert pool.is_terminated
        with pytest.raises(WorkerPoolError):
            get_worker_pool()
