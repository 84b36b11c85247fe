"""命令行入口。"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from batch_image_edit.core.config import (
    BatchSettings,
    ConflictStrategy,
    NamingPolicy,
    NamingStrategy,
    OrganizeBy,
    RetryConfig,
    ServiceSettings,
)
from batch_image_edit.core.exceptions import ImageEditBatchError
from batch_image_edit.core.models import BatchEditType, EditType, ErrorHandling, ImageReference
from batch_image_edit.core.output_manager import cleanup_old_files
from batch_image_edit.core.progress import ProgressUpdate
from batch_image_edit.core.scanner import collect_references
from batch_image_edit.processing.pipeline import BatchEditRequest, edit_image, generate_image, process_batch
from batch_image_edit.utils.logging import setup_logging

app = typer.Typer(help="基于远程图片模型的批量图片编辑工具。")


def _build_naming(
    service: ServiceSettings,
    output: Optional[Path],
    naming: NamingStrategy,
    organize_by: OrganizeBy,
    prefix: str,
    filename: Optional[str],
    conflict: ConflictStrategy,
    output_format: str,
) -> NamingPolicy:
    try:
        return NamingPolicy(
            strategy=naming,
            organize_by=organize_by,
            base_directory=(output or service.default_output_dir).expanduser().resolve(),
            prefix=prefix,
            filename=filename,
            conflict=conflict,
            output_format=output_format,
        )
    except ImageEditBatchError as exc:
        raise typer.BadParameter(exc.message) from exc


def _load_service() -> ServiceSettings:
    try:
        return ServiceSettings.from_env()
    except ImageEditBatchError as exc:
        typer.echo(f"配置错误：{exc.message}", err=True)
        raise typer.Exit(code=2) from exc


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(update: ProgressUpdate) -> None:
        nonlocal task_id
        if update.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("编辑图片", total=update.total)
        progress.update(task_id, completed=update.completed)
        if update.message and update.status == "running":
            progress.log(update.message)

    return callback


@app.command("batch")
def batch_cli(  # noqa: PLR0913
    source: List[str] = typer.Argument(..., help="图片文件、目录、URL 或 data URL，可指定多个"),
    prompt: str = typer.Option(..., "--prompt", "-p", help="应用到所有图片的编辑描述"),
    edit_type: BatchEditType = typer.Option(BatchEditType.STYLE_TRANSFER, "--edit-type", help="编辑类型"),
    max_concurrent: int = typer.Option(3, "--max-concurrent", "-c", min=1, max=10, help="最大并发数"),
    error_handling: ErrorHandling = typer.Option(
        ErrorHandling.CONTINUE_ON_ERROR, "--error-handling", help="错误处理策略"
    ),
    retries: int = typer.Option(2, "--retries", min=0, help="retry_failed 策略下的额外重试次数"),
    timeout_ms: Optional[int] = typer.Option(None, "--timeout", help="单个任务超时（毫秒）"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="输出目录，默认读取 DEFAULT_OUTPUT_DIR"),
    naming: NamingStrategy = typer.Option(NamingStrategy.TIMESTAMP, "--naming", help="文件命名策略"),
    organize_by: OrganizeBy = typer.Option(OrganizeBy.NONE, "--organize-by", help="子目录组织方式"),
    prefix: str = typer.Option("batch_", "--prefix", help="文件名前缀"),
    conflict: ConflictStrategy = typer.Option(ConflictStrategy.AUTO_RENAME, "--on-conflict", help="文件名冲突策略"),
    output_format: str = typer.Option("png", "--format", help="输出格式 png/jpeg/webp"),
    save: bool = typer.Option(True, "--save/--no-save", help="是否保存结果文件"),
    recursive: bool = typer.Option(True, "--recursive/--no-recursive", help="是否递归扫描目录"),
    report: bool = typer.Option(True, "--report/--no-report", help="是否在输出目录写入 CSV 报告"),
    as_json: bool = typer.Option(False, "--json", help="以 JSON 输出完整报告"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """对多张图片应用同一编辑。"""

    setup_logging(logging.DEBUG if verbose else logging.INFO)
    service = _load_service()

    references = collect_references(source, recursive=recursive)
    if not references:
        typer.echo("没有找到需要处理的图片", err=True)
        raise typer.Exit(code=1)

    policy = _build_naming(service, output, naming, organize_by, prefix, None, conflict, output_format)
    try:
        settings = BatchSettings(
            max_concurrent=max_concurrent,
            error_handling=error_handling,
            timeout_ms=timeout_ms or service.api_timeout_ms,
            retry=RetryConfig(budget=retries),
        )
    except ImageEditBatchError as exc:
        raise typer.BadParameter(exc.message) from exc

    request = BatchEditRequest(
        images=references,
        edit_prompt=prompt,
        edit_type=edit_type,
        settings=settings,
        save_to_file=save,
        naming=policy,
        output_format=output_format,
        report_filename="report.csv" if report and save else None,
    )

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
    )

    try:
        with progress:
            result = process_batch(request, service=service, progress_callback=_build_progress_callback(progress))
    except ImageEditBatchError as exc:
        typer.echo(f"批处理无法启动：{exc.message}", err=True)
        raise typer.Exit(code=2) from exc

    if as_json:
        typer.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        typer.echo(f"处理完成：成功 {result.succeeded} 张，失败 {result.failed} 张，共 {result.total} 张。")
        for item in result.failed_items():
            kind = item.outcome.error_kind.value if item.outcome.error_kind else "?"
            typer.echo(f"  #{item.index + 1} {item.reference.describe()} [{kind}] {item.outcome.message}")
        if request.report_filename:
            typer.echo(f"报告文件：{policy.base_directory / request.report_filename}")

    if result.failed:
        raise typer.Exit(code=1)


@app.command("edit")
def edit_cli(  # noqa: PLR0913
    source: str = typer.Argument(..., help="图片文件、URL 或 data URL"),
    prompt: str = typer.Option(..., "--prompt", "-p", help="编辑描述"),
    edit_type: EditType = typer.Option(EditType.VARIATION, "--edit-type", help="编辑类型"),
    strength: float = typer.Option(0.8, "--strength", min=0.0, max=1.0, help="编辑强度 0.0~1.0"),
    background: str = typer.Option("auto", "--background", help="背景 transparent/opaque/auto"),
    quality: str = typer.Option("auto", "--quality", help="质量 auto/high/medium/low"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="输出目录"),
    naming: NamingStrategy = typer.Option(NamingStrategy.TIMESTAMP, "--naming", help="文件命名策略"),
    organize_by: OrganizeBy = typer.Option(OrganizeBy.NONE, "--organize-by", help="子目录组织方式"),
    prefix: str = typer.Option("edited_", "--prefix", help="文件名前缀"),
    filename: Optional[str] = typer.Option(None, "--filename", help="explicit 策略使用的文件名"),
    conflict: ConflictStrategy = typer.Option(ConflictStrategy.AUTO_RENAME, "--on-conflict", help="文件名冲突策略"),
    output_format: str = typer.Option("png", "--format", help="输出格式 png/jpeg/webp"),
) -> None:
    """编辑单张图片。"""

    setup_logging()
    service = _load_service()
    policy = _build_naming(service, output, naming, organize_by, prefix, filename, conflict, output_format)

    try:
        result = asyncio.run(
            edit_image(
                ImageReference.detect(source),
                prompt,
                edit_type,
                strength=strength,
                output_format=output_format,
                background=background,
                quality=quality,
                naming=policy,
                service=service,
            )
        )
    except ImageEditBatchError as exc:
        typer.echo(f"编辑失败 [{exc.kind.value}]：{exc.message}", err=True)
        raise typer.Exit(code=2) from exc

    typer.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    if not result.outcome.ok:
        raise typer.Exit(code=1)


@app.command("generate")
def generate_cli(
    prompt: str = typer.Argument(..., help="图片描述"),
    aspect_ratio: str = typer.Option("square", "--aspect-ratio", help="square/landscape/portrait/1:1/16:9/9:16"),
    quality: Optional[str] = typer.Option(None, "--quality", help="质量 high/medium/low"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="输出目录"),
    naming: NamingStrategy = typer.Option(NamingStrategy.TIMESTAMP, "--naming", help="文件命名策略"),
    organize_by: OrganizeBy = typer.Option(OrganizeBy.NONE, "--organize-by", help="子目录组织方式"),
    filename: Optional[str] = typer.Option(None, "--filename", help="explicit 策略使用的文件名"),
    output_format: str = typer.Option("png", "--format", help="输出格式 png/jpeg/webp"),
) -> None:
    """根据提示词生成一张图片并保存。"""

    setup_logging()
    service = _load_service()
    policy = _build_naming(service, output, naming, organize_by, "", filename, ConflictStrategy.AUTO_RENAME, output_format)

    try:
        result = asyncio.run(
            generate_image(
                prompt,
                aspect_ratio=aspect_ratio,
                quality=quality,
                output_format=output_format,
                naming=policy,
                service=service,
            )
        )
    except ImageEditBatchError as exc:
        typer.echo(f"生成失败 [{exc.kind.value}]：{exc.message}", err=True)
        raise typer.Exit(code=1) from exc

    if result.file is not None:
        typer.echo(f"已保存：{result.file.absolute_path} ({result.file.size_bytes} 字节)")
    typer.echo(f"修订后的提示词：{result.revised_prompt}")


@app.command("cleanup")
def cleanup_cli(
    directory: Optional[Path] = typer.Argument(None, help="要清理的目录，默认读取 DEFAULT_OUTPUT_DIR"),
    days: Optional[int] = typer.Option(None, "--days", min=0, help="保留天数，默认读取 KEEP_FILES_DAYS"),
) -> None:
    """删除超过保留期限的输出文件。"""

    setup_logging()
    service = _load_service()
    target = (directory or service.default_output_dir).expanduser().resolve()
    removed = cleanup_old_files(target, service.keep_files_days if days is None else days)
    typer.echo(f"已删除 {len(removed)} 个文件：{target}")


if __name__ == "__main__":
    app()
