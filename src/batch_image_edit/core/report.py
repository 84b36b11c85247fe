"""报告生成工具。"""

from __future__ import annotations

import csv
from pathlib import Path

from batch_image_edit.core.models import BatchReport

HEADER = [
    "index",
    "reference",
    "status",
    "error_kind",
    "message",
    "output_path",
    "size_bytes",
    "elapsed_ms",
    "attempts",
]


def write_csv_report(report: BatchReport, output_dir: Path, filename: str) -> Path:
    """将批处理报告按提交顺序写入 CSV。"""

    output_dir.mkdir(parents=True, exist_ok=True)
    report_path = output_dir / filename
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(HEADER)
        for item in report.per_item:
            outcome = item.outcome
            writer.writerow(
                [
                    item.index + 1,
                    item.reference.describe(),
                    "ok" if outcome.ok else "failed",
                    outcome.error_kind.value if outcome.error_kind else "",
                    outcome.message or "",
                    str(item.file.absolute_path) if item.file else "",
                    item.file.size_bytes if item.file else "",
                    _format_elapsed(outcome.elapsed_ms),
                    outcome.attempts,
                ]
            )
    return report_path


def _format_elapsed(value: float) -> str:
    return f"{value:.1f}"
