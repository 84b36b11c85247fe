"""对外操作入口：批量编辑、单图编辑与生成。"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Sequence

from batch_image_edit.core.config import BatchSettings, NamingPolicy, ServiceSettings
from batch_image_edit.core.exceptions import InvalidConfigurationError
from batch_image_edit.core.models import (
    BatchEditType,
    BatchReport,
    EditJob,
    EditType,
    ImageReference,
    ItemResult,
    MaterializedFile,
)
from batch_image_edit.core.output_manager import FileMaterializer, MaterializeContext
from batch_image_edit.core.progress import ProgressCallback
from batch_image_edit.core.report import write_csv_report
from batch_image_edit.processing.client import ImageEditClient, OpenAIImageClient, RemoteGenerateRequest
from batch_image_edit.processing.executor import EditExecutor
from batch_image_edit.processing.resolver import ImageResolver
from batch_image_edit.processing.scheduler import BatchScheduler
from batch_image_edit.processing.worker import EditTask, TaskRunner

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_PREFIX = "batch_"
DEFAULT_EDIT_PREFIX = "edited_"
BATCH_STRENGTH = 0.8


@dataclass(slots=True)
class BatchEditRequest:
    """调用方提交的批量编辑请求。"""

    images: Sequence[ImageReference]
    edit_prompt: str
    edit_type: BatchEditType = BatchEditType.STYLE_TRANSFER
    settings: BatchSettings = field(default_factory=BatchSettings)
    save_to_file: bool = True
    naming: Optional[NamingPolicy] = None
    output_format: str = "png"
    report_filename: Optional[str] = None

    def build_jobs(self) -> list[EditJob]:
        if not self.images:
            raise InvalidConfigurationError("至少需要提供一张图片")
        edit_type = self.edit_type.to_edit_type()
        return [
            EditJob(
                reference=reference,
                prompt=self.edit_prompt,
                edit_type=edit_type,
                strength=BATCH_STRENGTH,
                output_format=self.output_format,
            )
            for reference in self.images
        ]


@dataclass(slots=True)
class GenerateResult:
    revised_prompt: str
    elapsed_ms: float
    file: Optional[MaterializedFile] = None
    data: Optional[bytes] = field(default=None, repr=False)


async def batch_edit(
    request: BatchEditRequest,
    client: Optional[ImageEditClient] = None,
    service: Optional[ServiceSettings] = None,
    progress_callback: ProgressCallback = None,
    resolver: Optional[ImageResolver] = None,
) -> BatchReport:
    """批量编辑入口：解析、并发编辑、落盘并汇总报告。"""

    service = service or ServiceSettings.from_env()
    jobs = request.build_jobs()
    naming = _effective_naming(request.naming, service, request.save_to_file, DEFAULT_BATCH_PREFIX, request.output_format)

    async with _Collaborators(service, client, resolver) as (active_client, active_resolver):
        runner = TaskRunner(active_resolver, EditExecutor(active_client), FileMaterializer())
        scheduler = BatchScheduler(runner, request.settings, progress_callback=progress_callback)
        report = await scheduler.run(jobs, naming)

    if request.report_filename and naming is not None:
        report_dir = Path(naming.base_directory).expanduser().resolve()
        try:
            write_csv_report(report, report_dir, request.report_filename)
        except OSError as exc:
            LOGGER.error("写入报告失败：%s", exc)
    return report


def process_batch(
    request: BatchEditRequest,
    client: Optional[ImageEditClient] = None,
    service: Optional[ServiceSettings] = None,
    progress_callback: ProgressCallback = None,
) -> BatchReport:
    """batch_edit 的同步包装。"""

    return asyncio.run(batch_edit(request, client=client, service=service, progress_callback=progress_callback))


async def edit_image(
    source: ImageReference,
    edit_prompt: str,
    edit_type: EditType = EditType.VARIATION,
    *,
    strength: float = 0.8,
    output_format: str = "png",
    background: str = "auto",
    quality: str = "auto",
    save_to_file: bool = True,
    naming: Optional[NamingPolicy] = None,
    timeout_ms: Optional[int] = None,
    client: Optional[ImageEditClient] = None,
    service: Optional[ServiceSettings] = None,
    resolver: Optional[ImageResolver] = None,
) -> ItemResult:
    """单图编辑：解析 → 编辑 → 落盘，结果以 ItemResult 返回。"""

    service = service or ServiceSettings.from_env()
    job = EditJob(
        reference=source,
        prompt=edit_prompt,
        edit_type=edit_type,
        strength=strength,
        output_format=output_format,
        background=background,
        quality=quality,
    )
    effective = _effective_naming(naming, service, save_to_file, DEFAULT_EDIT_PREFIX, output_format)
    task = EditTask(index=0, job=job, naming=effective, timeout_ms=timeout_ms or service.api_timeout_ms)

    async with _Collaborators(service, client, resolver) as (active_client, active_resolver):
        runner = TaskRunner(active_resolver, EditExecutor(active_client), FileMaterializer())
        outcome, materialized = await runner.run(task)
    return ItemResult(index=0, reference=source, outcome=outcome, file=materialized)


async def generate_image(
    prompt: str,
    *,
    aspect_ratio: str = "square",
    quality: Optional[str] = None,
    output_format: str = "png",
    background: str = "auto",
    moderation: str = "auto",
    save_to_file: bool = True,
    naming: Optional[NamingPolicy] = None,
    client: Optional[ImageEditClient] = None,
    service: Optional[ServiceSettings] = None,
) -> GenerateResult:
    """根据提示词生成图片；保存时只返回文件元数据。"""

    if not prompt or not prompt.strip():
        raise InvalidConfigurationError("提示词不能为空")

    service = service or ServiceSettings.from_env()
    effective = _effective_naming(naming, service, save_to_file, "", output_format)
    request = RemoteGenerateRequest(
        prompt=prompt,
        aspect_ratio=aspect_ratio,
        quality=quality,
        output_format=output_format,
        background=background,
        moderation=moderation,
    )

    started = time.perf_counter()
    async with _Collaborators(service, client, None) as (active_client, _):
        result = await active_client.generate(request)
    elapsed = (time.perf_counter() - started) * 1000
    revised_prompt = result.revised_prompt or prompt

    if effective is None:
        return GenerateResult(revised_prompt=revised_prompt, elapsed_ms=elapsed, data=result.data)

    context = MaterializeContext(prompt=prompt, quality=quality or "medium", aspect_ratio=aspect_ratio)
    materialized = await asyncio.to_thread(FileMaterializer().materialize, result.data, effective, context)
    return GenerateResult(revised_prompt=revised_prompt, elapsed_ms=elapsed, file=materialized)


def _effective_naming(
    naming: Optional[NamingPolicy],
    service: ServiceSettings,
    save_to_file: bool,
    default_prefix: str,
    output_format: str,
) -> Optional[NamingPolicy]:
    if not save_to_file or not service.enable_file_output:
        return None
    if naming is None:
        return NamingPolicy(
            base_directory=service.default_output_dir,
            prefix=default_prefix,
            output_format=output_format,
        )
    if naming.output_format != output_format:
        # 扩展名跟随远程实际返回的格式
        LOGGER.debug("命名策略格式 %s 与输出格式 %s 不一致，以输出格式为准", naming.output_format, output_format)
        return replace(naming, output_format=output_format)
    return naming


class _Collaborators:
    """按需创建远程客户端与解析器，并在退出时关闭自己创建的实例。"""

    def __init__(
        self,
        service: ServiceSettings,
        client: Optional[ImageEditClient],
        resolver: Optional[ImageResolver],
    ) -> None:
        self._service = service
        self._client = client
        self._resolver = resolver
        self._owned: list[object] = []

    async def __aenter__(self) -> tuple[ImageEditClient, ImageResolver]:
        if self._resolver is None:
            self._resolver = ImageResolver(max_bytes=self._service.max_input_bytes)
            self._owned.append(self._resolver)
        if self._client is None:
            try:
                self._client = OpenAIImageClient(self._service, resolver=self._resolver)
            except InvalidConfigurationError:
                await self.__aexit__(None, None, None)
                raise
            self._owned.append(self._client)
        return self._client, self._resolver

    async def __aexit__(self, *exc_info: object) -> None:
        for resource in reversed(self._owned):
            await resource.aclose()  # type: ignore[attr-defined]
