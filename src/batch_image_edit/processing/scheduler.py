"""批处理调度器：固定大小的工作池、错误处理策略与按提交顺序聚合结果。"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence

from batch_image_edit.core.config import BatchSettings, NamingPolicy, validate_concurrency
from batch_image_edit.core.exceptions import ErrorKind
from batch_image_edit.core.models import (
    BatchReport,
    EditJob,
    EditOutcome,
    ErrorHandling,
    ItemResult,
    JobState,
)
from batch_image_edit.core.progress import ProgressCallback, ProgressUpdate
from batch_image_edit.processing.worker import EditTask, TaskRunner

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class BatchScheduler:
    """驱动 N 个任务在 concurrency 个并发槽位上执行。

    结果写入按提交位置预分配的列表；所有 worker 运行在同一个事件循环中，
    对槽位与结果列表的访问天然串行。
    """

    def __init__(
        self,
        runner: TaskRunner,
        settings: BatchSettings,
        progress_callback: ProgressCallback = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        validate_concurrency(settings.max_concurrent)
        self.runner = runner
        self.settings = settings
        self.progress_callback = progress_callback
        self._sleep = sleep
        self._cancel_event = asyncio.Event()
        self._workers: list[asyncio.Task[None]] = []
        self.states: list[JobState] = []

    @property
    def policy(self) -> ErrorHandling:
        return self.settings.error_handling

    async def run(self, jobs: Sequence[EditJob], naming: Optional[NamingPolicy] = None) -> BatchReport:
        """执行整个批次，总是返回报告。naming 为 None 时不保存文件。"""

        total = len(jobs)
        if total == 0:
            self._emit_progress(0, 0, 0, "没有需要处理的图片", status="finished")
            return BatchReport(0, 0, 0, [], 0.0, 0, self.policy)

        concurrency = min(self.settings.max_concurrent, total)
        queue: asyncio.Queue[EditTask] = asyncio.Queue()
        for index, job in enumerate(jobs):
            queue.put_nowait(
                EditTask(index=index, job=job, naming=_item_naming(naming, index), timeout_ms=self.settings.timeout_ms)
            )

        results: list[Optional[ItemResult]] = [None] * total
        self.states = [JobState.PENDING] * total
        self._cancel_event = asyncio.Event()

        LOGGER.info("开始批处理：%d 个任务，并发 %d，策略 %s", total, concurrency, self.policy.value)
        started = time.perf_counter()
        self._workers = [
            asyncio.create_task(self._worker(queue, results), name=f"edit-worker-{slot}")
            for slot in range(concurrency)
        ]
        outcomes = await asyncio.gather(*self._workers, return_exceptions=True)
        total_elapsed_ms = (time.perf_counter() - started) * 1000

        for outcome in outcomes:
            if isinstance(outcome, Exception):
                LOGGER.error("工作协程异常退出：%s", outcome)

        for index, item in enumerate(results):
            if item is None:
                cancelled = EditOutcome.cancelled("任务未开始即被取消")
                cancelled.attempts = 0
                results[index] = ItemResult(index=index, reference=jobs[index].reference, outcome=cancelled)
                self.states[index] = JobState.CANCELLED

        per_item = [item for item in results if item is not None]
        succeeded = sum(1 for item in per_item if item.outcome.ok)
        report = BatchReport(
            total=total,
            succeeded=succeeded,
            failed=total - succeeded,
            per_item=per_item,
            total_elapsed_ms=total_elapsed_ms,
            concurrency_used=concurrency,
            policy=self.policy,
        )
        LOGGER.info(
            "批处理结束：成功 %d，失败 %d，用时 %.0f ms", report.succeeded, report.failed, total_elapsed_ms
        )
        self._emit_progress(total, report.succeeded, report.failed, "处理完成", status="finished")
        return report

    async def _worker(self, queue: asyncio.Queue[EditTask], results: list[Optional[ItemResult]]) -> None:
        while not self._cancel_event.is_set():
            try:
                task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            try:
                item = await self._run_job(task)
            except asyncio.CancelledError:
                self.states[task.index] = JobState.CANCELLED
                results[task.index] = ItemResult(
                    index=task.index,
                    reference=task.job.reference,
                    outcome=EditOutcome.cancelled("批处理已取消，进行中的任务被中断"),
                )
                LOGGER.warning("任务 #%d 被取消", task.index + 1)
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("任务执行异常：%s", exc)
                self.states[task.index] = JobState.FAILED
                item = ItemResult(
                    index=task.index,
                    reference=task.job.reference,
                    outcome=EditOutcome.failure(ErrorKind.SERVICE_UNAVAILABLE, str(exc) or exc.__class__.__name__),
                )

            results[task.index] = item
            self._report_settled(results, item)

            if not item.outcome.ok and self.policy is ErrorHandling.FAIL_FAST:
                self._trigger_cancel(item)

    async def _run_job(self, task: EditTask) -> ItemResult:
        """单个任务的状态机：RUNNING → SUCCEEDED | FAILED (→ RETRY_PENDING → RUNNING)*。"""

        retry = self.settings.retry
        # fail_fast 在该任务的重试预算耗尽后才触发取消
        may_retry = self.policy in (ErrorHandling.RETRY_FAILED, ErrorHandling.FAIL_FAST)
        attempts = 0

        while True:
            attempts += 1
            self.states[task.index] = JobState.RUNNING
            outcome, materialized = await self.runner.run(task)
            outcome.attempts = attempts

            if outcome.ok:
                self.states[task.index] = JobState.SUCCEEDED
                return ItemResult(task.index, task.job.reference, outcome, materialized)

            self.states[task.index] = JobState.FAILED
            kind = outcome.error_kind
            if not (may_retry and kind is not None and kind.retryable and attempts <= retry.budget):
                return ItemResult(task.index, task.job.reference, outcome)

            delay = retry.delay_for(attempts - 1)
            self.states[task.index] = JobState.RETRY_PENDING
            LOGGER.warning(
                "任务 #%d 第 %d 次尝试失败 [%s]，%.1f 秒后重试",
                task.index + 1,
                attempts,
                kind.value,
                delay,
            )
            await self._sleep(delay)

    def _trigger_cancel(self, failed_item: ItemResult) -> None:
        if self._cancel_event.is_set():
            return
        self._cancel_event.set()
        LOGGER.warning(
            "fail_fast: 任务 #%d 失败 [%s]，取消其余任务",
            failed_item.index + 1,
            failed_item.outcome.error_kind.value if failed_item.outcome.error_kind else "?",
        )
        current = asyncio.current_task()
        for worker in self._workers:
            if worker is not current and not worker.done():
                worker.cancel()

    def _report_settled(self, results: list[Optional[ItemResult]], item: ItemResult) -> None:
        settled = [entry for entry in results if entry is not None]
        succeeded = sum(1 for entry in settled if entry.outcome.ok)
        status = "成功" if item.outcome.ok else f"失败 [{item.outcome.error_kind.value}]"
        self._emit_progress(
            len(settled),
            succeeded,
            len(settled) - succeeded,
            f"#{item.index + 1} {item.reference.describe()} {status}",
            total=len(results),
        )

    def _emit_progress(
        self,
        completed: int,
        succeeded: int,
        failed: int,
        message: Optional[str] = None,
        status: str = "running",
        total: Optional[int] = None,
    ) -> None:
        if not self.progress_callback:
            return
        self.progress_callback(
            ProgressUpdate(
                total=completed if total is None else total,
                completed=completed,
                succeeded=succeeded,
                failed=failed,
                message=message,
                status=status,
            )
        )


def _item_naming(naming: Optional[NamingPolicy], index: int) -> Optional[NamingPolicy]:
    """批次内每个条目在前缀后追加序号，如 batch_1_。"""

    if naming is None or not naming.prefix:
        return naming
    return naming.with_prefix(f"{naming.prefix}{index + 1}_")
