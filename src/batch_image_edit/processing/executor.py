"""单次编辑执行器：调用远程协作方一次，施加超时并归一化结果。"""

from __future__ import annotations

import asyncio
import logging
import time

from batch_image_edit.core.exceptions import ErrorKind, ImageEditBatchError
from batch_image_edit.core.models import EditJob, EditOutcome
from batch_image_edit.processing.client import ImageEditClient, RemoteEditRequest

LOGGER = logging.getLogger(__name__)


class EditExecutor:
    def __init__(self, client: ImageEditClient) -> None:
        self.client = client

    async def execute(self, job: EditJob, image: bytes, timeout_ms: int) -> EditOutcome:
        """执行一次编辑调用，不写文件。

        超时会取消进行中的调用并返回 TIMEOUT；协作方报告的失败保持其错误类别。
        """

        request = RemoteEditRequest(
            image=image,
            prompt=job.prompt,
            edit_type=job.edit_type,
            strength=job.strength,
            output_format=job.output_format,
            background=job.background,
            quality=job.quality,
        )
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(self.client.edit(request), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            elapsed = _elapsed_ms(started)
            LOGGER.warning("编辑调用超时 (%d ms): %s", timeout_ms, job.reference.describe())
            return EditOutcome.failure(ErrorKind.TIMEOUT, f"编辑调用超过 {timeout_ms} ms 未完成", elapsed)
        except ImageEditBatchError as exc:
            elapsed = _elapsed_ms(started)
            LOGGER.info("编辑调用失败 [%s]: %s", exc.kind.value, exc.message)
            return EditOutcome.failure(exc.kind, exc.message, elapsed)
        except Exception as exc:  # noqa: BLE001
            elapsed = _elapsed_ms(started)
            LOGGER.exception("编辑调用出现未预期的异常：%s", exc)
            return EditOutcome.failure(ErrorKind.SERVICE_UNAVAILABLE, str(exc) or exc.__class__.__name__, elapsed)

        elapsed = _elapsed_ms(started)
        LOGGER.debug("编辑完成 %s，用时 %.0f ms", job.reference.describe(), elapsed)
        return EditOutcome.success(result.data, result.revised_prompt or job.prompt, elapsed)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
