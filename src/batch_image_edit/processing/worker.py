"""并发处理的工作单元：解析 → 编辑 → 落盘。"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from batch_image_edit.core.config import NamingPolicy
from batch_image_edit.core.exceptions import FileError, ResolutionError
from batch_image_edit.core.models import EditJob, EditOutcome, ImageReference, MaterializedFile
from batch_image_edit.core.output_manager import FileMaterializer, MaterializeContext
from batch_image_edit.processing.executor import EditExecutor
from batch_image_edit.utils.imaging import probe_image

LOGGER = logging.getLogger(__name__)


class Resolver(Protocol):
    async def resolve(self, ref: ImageReference) -> bytes:
        ...


@dataclass(slots=True)
class EditTask:
    """描述单个编辑任务。naming 为 None 表示不保存文件。"""

    index: int
    job: EditJob
    naming: Optional[NamingPolicy]
    timeout_ms: int


class TaskRunner:
    """执行一次完整的任务尝试，所有阶段错误都折叠为 EditOutcome。"""

    def __init__(self, resolver: Resolver, executor: EditExecutor, materializer: FileMaterializer) -> None:
        self.resolver = resolver
        self.executor = executor
        self.materializer = materializer

    async def run(self, task: EditTask) -> tuple[EditOutcome, Optional[MaterializedFile]]:
        job = task.job
        started = time.perf_counter()

        try:
            image = await self.resolver.resolve(job.reference)
        except ResolutionError as exc:
            LOGGER.info("输入解析失败 #%d [%s]: %s", task.index + 1, exc.kind.value, exc.message)
            elapsed = (time.perf_counter() - started) * 1000
            return EditOutcome.failure(exc.kind, exc.message, elapsed), None

        outcome = await self.executor.execute(job, image, task.timeout_ms)
        if not outcome.ok or task.naming is None:
            return outcome, None

        write = asyncio.ensure_future(asyncio.to_thread(self._materialize, image, outcome.data or b"", task))
        try:
            try:
                materialized = await asyncio.shield(write)
            except asyncio.CancelledError:
                # 写入一旦开始就等待其完成，任务按实际结果报告，不留下无人认领的文件
                current = asyncio.current_task()
                if current is not None:
                    current.uncancel()
                LOGGER.info("任务 #%d 正在写入结果，完成后再响应取消", task.index + 1)
                materialized = await write
        except FileError as exc:
            LOGGER.error("结果保存失败 #%d [%s]: %s", task.index + 1, exc.kind.value, exc.message)
            return EditOutcome.failure(exc.kind, f"结果保存失败: {exc.message}", outcome.elapsed_ms), None

        # 文件落盘后以磁盘为准，不再保留内存副本
        outcome.data = None
        return outcome, materialized

    def _materialize(self, image: bytes, data: bytes, task: EditTask) -> MaterializedFile:
        """在工作线程中探测源图并落盘。"""

        job = task.job
        info = probe_image(image)
        context = MaterializeContext(
            prompt=job.prompt,
            quality=job.quality if job.quality != "auto" else None,
            aspect_ratio=info.aspect_ratio if info else None,
        )
        return self.materializer.materialize(data, task.naming, context)
