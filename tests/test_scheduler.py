"""批处理调度器：并发槽位、错误处理策略、重试与顺序保证。"""

from __future__ import annotations

import asyncio
import random
import time
from pathlib import Path
from typing import Optional

import pytest

from batch_image_edit.core.config import BatchSettings, NamingPolicy, RetryConfig
from batch_image_edit.core.exceptions import ErrorKind, InvalidConfigurationError
from batch_image_edit.core.models import BatchReport, EditJob, ErrorHandling, ImageReference, JobState
from batch_image_edit.core.output_manager import FileMaterializer
from batch_image_edit.processing.executor import EditExecutor
from batch_image_edit.processing.scheduler import BatchScheduler
from batch_image_edit.processing.worker import TaskRunner

from fakes import FakeEditClient, FakeResolver


def make_jobs(count: int) -> list[EditJob]:
    return [EditJob(reference=ImageReference.local_path(f"item-{n}"), prompt="make it blue") for n in range(1, count + 1)]


def run_batch(
    jobs: list[EditJob],
    client: FakeEditClient,
    *,
    resolver: Optional[FakeResolver] = None,
    max_concurrent: int = 2,
    policy: ErrorHandling = ErrorHandling.CONTINUE_ON_ERROR,
    naming: Optional[NamingPolicy] = None,
    retry: Optional[RetryConfig] = None,
    timeout_ms: int = 5_000,
    sleeps: Optional[list[float]] = None,
    materializer: Optional[FileMaterializer] = None,
) -> tuple[BatchReport, BatchScheduler]:
    async def fake_sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    settings = BatchSettings(
        max_concurrent=max_concurrent,
        error_handling=policy,
        timeout_ms=timeout_ms,
        retry=retry or RetryConfig(),
    )
    runner = TaskRunner(resolver or FakeResolver(), EditExecutor(client), materializer or FileMaterializer())
    scheduler = BatchScheduler(runner, settings, sleep=fake_sleep)
    report = asyncio.run(scheduler.run(jobs, naming))
    return report, scheduler


def test_continue_on_error_reports_each_item(tmp_path: Path) -> None:
    client = FakeEditClient(failures={b"item-2": ErrorKind.CONTENT_POLICY})
    naming = NamingPolicy(base_directory=tmp_path)

    report, _ = run_batch(make_jobs(3), client, max_concurrent=2, naming=naming)

    assert report.total == 3
    assert report.succeeded == 2
    assert report.failed == 1
    assert report.concurrency_used == 2

    first, second, third = report.per_item
    assert second.outcome.error_kind is ErrorKind.CONTENT_POLICY
    assert second.file is None
    for item in (first, third):
        assert item.outcome.ok
        assert item.file is not None and item.file.absolute_path.exists()
        assert item.file.size_bytes > 0


def test_fail_fast_cancels_jobs_that_never_reached_the_executor() -> None:
    client = FakeEditClient(failures={b"item-1": ErrorKind.AUTH_FAILED})
    resolver = FakeResolver(delays={"item-2": 0.05, "item-3": 0.05, "item-4": 0.05})

    report, scheduler = run_batch(
        make_jobs(4), client, resolver=resolver, max_concurrent=4, policy=ErrorHandling.FAIL_FAST
    )

    assert client.calls == [b"item-1"]
    assert report.per_item[0].outcome.error_kind is ErrorKind.AUTH_FAILED
    for item in report.per_item[1:]:
        assert item.outcome.error_kind is ErrorKind.CANCELLED
    assert report.succeeded == 0
    assert report.failed == 4
    assert scheduler.states[1:] == [JobState.CANCELLED] * 3


def test_fail_fast_marks_unclaimed_jobs_cancelled_without_attempting_them() -> None:
    client = FakeEditClient(failures={b"item-1": ErrorKind.INVALID_INPUT})
    resolver = FakeResolver()

    report, _ = run_batch(make_jobs(3), client, resolver=resolver, max_concurrent=1, policy=ErrorHandling.FAIL_FAST)

    assert resolver.resolved == ["item-1"]
    assert [item.outcome.error_kind for item in report.per_item] == [
        ErrorKind.INVALID_INPUT,
        ErrorKind.CANCELLED,
        ErrorKind.CANCELLED,
    ]
    assert report.per_item[2].outcome.attempts == 0


def test_fail_fast_spends_retry_budget_before_cancelling() -> None:
    client = FakeEditClient(failures={b"item-1": ErrorKind.RATE_LIMITED})
    sleeps: list[float] = []

    report, _ = run_batch(
        make_jobs(2),
        client,
        max_concurrent=1,
        policy=ErrorHandling.FAIL_FAST,
        retry=RetryConfig(budget=1),
        sleeps=sleeps,
    )

    assert client.attempts_for(b"item-1") == 2
    assert client.attempts_for(b"item-2") == 0
    assert report.per_item[0].outcome.error_kind is ErrorKind.RATE_LIMITED
    assert report.per_item[1].outcome.error_kind is ErrorKind.CANCELLED


def test_retry_failed_attempts_rate_limited_job_budget_plus_one_times() -> None:
    client = FakeEditClient(failures={b"item-1": ErrorKind.RATE_LIMITED})
    sleeps: list[float] = []

    report, _ = run_batch(
        make_jobs(2),
        client,
        policy=ErrorHandling.RETRY_FAILED,
        retry=RetryConfig(budget=2, base_delay=1.0, max_delay=30.0),
        sleeps=sleeps,
    )

    failed = report.per_item[0]
    assert client.attempts_for(b"item-1") == 3
    assert failed.outcome.attempts == 3
    assert failed.outcome.error_kind is ErrorKind.RATE_LIMITED
    assert sleeps == [1.0, 2.0]
    assert report.per_item[1].outcome.ok
    assert report.succeeded == 1 and report.failed == 1


def test_retry_failed_never_retries_terminal_failures() -> None:
    client = FakeEditClient(failures={b"item-1": ErrorKind.CONTENT_POLICY})

    report, _ = run_batch(make_jobs(1), client, policy=ErrorHandling.RETRY_FAILED)

    assert client.attempts_for(b"item-1") == 1
    assert report.per_item[0].outcome.error_kind is ErrorKind.CONTENT_POLICY


def test_continue_on_error_does_not_retry_retryable_failures() -> None:
    client = FakeEditClient(failures={b"item-1": ErrorKind.SERVICE_UNAVAILABLE})

    report, _ = run_batch(make_jobs(1), client, policy=ErrorHandling.CONTINUE_ON_ERROR)

    assert client.attempts_for(b"item-1") == 1
    assert report.failed == 1


def test_retry_reruns_resolution_and_times_out_slow_calls() -> None:
    client = FakeEditClient(delays={b"item-1": 1.0})
    resolver = FakeResolver()

    report, _ = run_batch(
        make_jobs(1),
        client,
        resolver=resolver,
        policy=ErrorHandling.RETRY_FAILED,
        retry=RetryConfig(budget=1),
        timeout_ms=20,
    )

    assert report.per_item[0].outcome.error_kind is ErrorKind.TIMEOUT
    assert resolver.resolved == ["item-1", "item-1"]


def test_file_errors_are_terminal_even_under_retry_policy(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")
    client = FakeEditClient()

    report, _ = run_batch(
        make_jobs(1),
        client,
        policy=ErrorHandling.RETRY_FAILED,
        naming=NamingPolicy(base_directory=blocker / "nested"),
    )

    item = report.per_item[0]
    assert not item.outcome.ok
    assert item.file is None
    assert client.attempts_for(b"item-1") == 1
    assert "结果保存失败" in (item.outcome.message or "")


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_per_item_order_is_submission_order_under_random_delays(seed: int) -> None:
    rng = random.Random(seed)
    jobs = make_jobs(8)
    delays = {f"item-{n}".encode(): rng.uniform(0.0, 0.03) for n in range(1, 9)}
    client = FakeEditClient(delays=delays)

    report, _ = run_batch(jobs, client, max_concurrent=3)

    assert [item.reference for item in report.per_item] == [job.reference for job in jobs]
    assert [item.index for item in report.per_item] == list(range(8))
    assert report.succeeded + report.failed == report.total == len(report.per_item)


def test_failure_in_one_job_does_not_change_siblings() -> None:
    baseline, _ = run_batch(make_jobs(4), FakeEditClient())
    with_failure, _ = run_batch(make_jobs(4), FakeEditClient(failures={b"item-3": ErrorKind.CONTENT_POLICY}))

    for index in (0, 1, 3):
        expected = baseline.per_item[index].outcome
        actual = with_failure.per_item[index].outcome
        assert actual.ok == expected.ok
        assert actual.revised_prompt == expected.revised_prompt


def test_pool_never_exceeds_requested_concurrency() -> None:
    client = FakeEditClient(default_delay=0.01)

    report, _ = run_batch(make_jobs(6), client, max_concurrent=2)

    assert client.max_in_flight == 2
    assert report.succeeded == 6


def test_concurrency_used_is_capped_by_job_count() -> None:
    report, _ = run_batch(make_jobs(2), FakeEditClient(), max_concurrent=5)

    assert report.concurrency_used == 2


def test_resolution_failure_is_reported_and_not_retried() -> None:
    client = FakeEditClient()
    resolver = FakeResolver(failures={"item-2": ErrorKind.NOT_FOUND})

    report, _ = run_batch(make_jobs(2), client, resolver=resolver, policy=ErrorHandling.RETRY_FAILED)

    assert report.per_item[1].outcome.error_kind is ErrorKind.NOT_FOUND
    assert resolver.resolved.count("item-2") == 1
    assert b"item-2" not in client.calls


def test_empty_batch_returns_empty_report() -> None:
    report, _ = run_batch([], FakeEditClient())

    assert report.total == 0
    assert report.per_item == []
    assert report.concurrency_used == 0


@pytest.mark.parametrize("value", [0, 11])
def test_concurrency_outside_range_is_rejected(value: int) -> None:
    with pytest.raises(InvalidConfigurationError):
        BatchSettings(max_concurrent=value)


def test_retry_delay_doubles_and_is_capped() -> None:
    retry = RetryConfig(budget=5, base_delay=1.0, max_delay=5.0)

    assert [retry.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_progress_callback_sees_every_settled_job() -> None:
    updates = []
    settings = BatchSettings(max_concurrent=2)
    runner = TaskRunner(FakeResolver(), EditExecutor(FakeEditClient()), FileMaterializer())
    scheduler = BatchScheduler(runner, settings, progress_callback=updates.append)

    asyncio.run(scheduler.run(make_jobs(3)))

    running = [update for update in updates if update.status == "running"]
    assert [update.completed for update in running] == [1, 2, 3]
    assert updates[-1].status == "finished"
    assert updates[-1].succeeded == 3


class SlowMaterializer(FileMaterializer):
    """每次写入都阻塞一段时间的落盘器。"""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def materialize(self, data, naming, context=None):
        time.sleep(self.delay)
        return super().materialize(data, naming, context)


def test_file_writes_do_not_block_sibling_jobs(tmp_path: Path) -> None:
    report, _ = run_batch(
        make_jobs(4),
        FakeEditClient(),
        max_concurrent=4,
        naming=NamingPolicy(base_directory=tmp_path),
        materializer=SlowMaterializer(0.3),
    )

    assert report.succeeded == 4
    assert report.total_elapsed_ms < 900


def test_fail_fast_lets_an_in_progress_write_finish(tmp_path: Path) -> None:
    client = FakeEditClient(failures={b"item-1": ErrorKind.AUTH_FAILED}, delays={b"item-1": 0.05})

    report, scheduler = run_batch(
        make_jobs(2),
        client,
        max_concurrent=2,
        policy=ErrorHandling.FAIL_FAST,
        naming=NamingPolicy(base_directory=tmp_path),
        materializer=SlowMaterializer(0.2),
    )

    written = report.per_item[1]
    assert report.per_item[0].outcome.error_kind is ErrorKind.AUTH_FAILED
    assert written.outcome.ok
    assert written.file is not None and written.file.absolute_path.exists()
    assert scheduler.states[1] is JobState.SUCCEEDED
    assert [path for path in tmp_path.iterdir() if not path.name.startswith(".tmp-")] == [written.file.absolute_path]
