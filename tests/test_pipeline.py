"""端到端：批量编辑请求、CSV 报告、单图编辑与生成。"""

from __future__ import annotations

import asyncio
import base64
import csv
import json
from pathlib import Path

import pytest

from batch_image_edit.core.config import BatchSettings, NamingPolicy, NamingStrategy, ServiceSettings
from batch_image_edit.core.exceptions import ErrorKind, InvalidConfigurationError
from batch_image_edit.core.models import BatchEditType, EditType, ErrorHandling, ImageReference
from batch_image_edit.processing.pipeline import BatchEditRequest, edit_image, generate_image, process_batch

from fakes import FakeEditClient, make_png


def _inline(png: bytes) -> ImageReference:
    return ImageReference.inline_data("data:image/png;base64," + base64.b64encode(png).decode())


def _service(tmp_path: Path, **overrides: object) -> ServiceSettings:
    return ServiceSettings(api_key="test-key", default_output_dir=tmp_path / "out", **overrides)


def test_process_batch_writes_files_and_report(tmp_path: Path) -> None:
    images = [make_png(color=color) for color in ("red", "green", "blue")]
    client = FakeEditClient(failures={images[1]: ErrorKind.CONTENT_POLICY})
    request = BatchEditRequest(
        images=[_inline(image) for image in images],
        edit_prompt="watercolor",
        edit_type=BatchEditType.COLOR_ADJUSTMENT,
        settings=BatchSettings(max_concurrent=2),
        report_filename="report.csv",
    )

    report = process_batch(request, client=client, service=_service(tmp_path))

    assert (report.total, report.succeeded, report.failed) == (3, 2, 1)
    out_dir = (tmp_path / "out").resolve()
    assert report.per_item[0].file is not None
    assert report.per_item[0].file.directory == out_dir
    assert report.per_item[0].file.filename.startswith("batch_1_")
    assert report.per_item[2].file.filename.startswith("batch_3_")
    assert report.per_item[0].outcome.data is None

    with (out_dir / "report.csv").open(encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["index"] for row in rows] == ["1", "2", "3"]
    assert [row["status"] for row in rows] == ["ok", "failed", "ok"]
    assert rows[1]["error_kind"] == "CONTENT_POLICY"
    assert rows[0]["output_path"] == str(report.per_item[0].file.absolute_path)


def test_report_to_dict_is_metadata_only(tmp_path: Path) -> None:
    request = BatchEditRequest(images=[_inline(make_png())], edit_prompt="sepia")

    report = process_batch(request, client=FakeEditClient(), service=_service(tmp_path))
    payload = report.to_dict()

    item = payload["per_item"][0]
    assert item["file"]["size_bytes"] > 0
    assert "data" not in item
    assert item["reference"].endswith("...")
    assert payload["policy"] == "continue_on_error"
    assert json.loads(json.dumps(payload)) == payload


def test_batch_without_saving_keeps_no_files(tmp_path: Path) -> None:
    request = BatchEditRequest(images=[_inline(make_png())], edit_prompt="sepia", save_to_file=False)

    report = process_batch(request, client=FakeEditClient(), service=_service(tmp_path))

    assert report.succeeded == 1
    assert report.per_item[0].file is None
    assert report.per_item[0].outcome.data is not None
    assert not (tmp_path / "out").exists()


def test_file_output_can_be_disabled_by_service(tmp_path: Path) -> None:
    request = BatchEditRequest(images=[_inline(make_png())], edit_prompt="sepia", report_filename="report.csv")

    report = process_batch(request, client=FakeEditClient(), service=_service(tmp_path, enable_file_output=False))

    assert report.per_item[0].file is None
    assert not (tmp_path / "out").exists()


def test_batch_reports_resolution_failures_per_item(tmp_path: Path) -> None:
    request = BatchEditRequest(
        images=[_inline(make_png()), ImageReference.local_path(tmp_path / "missing.png")],
        edit_prompt="sepia",
        settings=BatchSettings(error_handling=ErrorHandling.RETRY_FAILED),
    )

    report = process_batch(request, client=FakeEditClient(), service=_service(tmp_path))

    assert report.per_item[0].outcome.ok
    assert report.per_item[1].outcome.error_kind is ErrorKind.NOT_FOUND
    assert [item.reference for item in report.failed_items()] == [request.images[1]]


def test_empty_batch_request_is_rejected(tmp_path: Path) -> None:
    request = BatchEditRequest(images=[], edit_prompt="sepia")

    with pytest.raises(InvalidConfigurationError):
        process_batch(request, client=FakeEditClient(), service=_service(tmp_path))


def test_batch_edit_type_mapping() -> None:
    request = BatchEditRequest(images=[ImageReference.local_path("a.png")], edit_prompt="x", edit_type=BatchEditType.ENHANCEMENT)

    job = request.build_jobs()[0]

    assert job.edit_type is EditType.VARIATION
    assert job.strength == 0.8


def test_missing_api_key_is_reported_before_any_work(tmp_path: Path) -> None:
    request = BatchEditRequest(images=[_inline(make_png())], edit_prompt="sepia")

    with pytest.raises(InvalidConfigurationError):
        process_batch(request, service=ServiceSettings(api_key=None, default_output_dir=tmp_path))


def test_edit_image_saves_with_explicit_name(tmp_path: Path) -> None:
    naming = NamingPolicy(strategy=NamingStrategy.EXPLICIT, filename="portrait", base_directory=tmp_path)

    result = asyncio.run(
        edit_image(_inline(make_png()), "add a hat", client=FakeEditClient(), naming=naming, service=_service(tmp_path))
    )

    assert result.outcome.ok
    assert result.file is not None
    assert result.file.absolute_path == (tmp_path / "portrait.png").resolve()


def test_edit_image_uses_default_prefix(tmp_path: Path) -> None:
    result = asyncio.run(edit_image(_inline(make_png()), "add a hat", client=FakeEditClient(), service=_service(tmp_path)))

    assert result.file is not None
    assert result.file.filename.startswith("edited_")


def test_edit_image_reports_failure_without_raising(tmp_path: Path) -> None:
    png = make_png()
    client = FakeEditClient(failures={png: ErrorKind.AUTH_FAILED})

    result = asyncio.run(edit_image(_inline(png), "add a hat", client=client, service=_service(tmp_path)))

    assert not result.outcome.ok
    assert result.outcome.error_kind is ErrorKind.AUTH_FAILED
    assert result.file is None


def test_generate_image_saves_file(tmp_path: Path) -> None:
    client = FakeEditClient()

    result = asyncio.run(
        generate_image("a lighthouse at dusk", aspect_ratio="landscape", client=client, service=_service(tmp_path))
    )

    assert result.file is not None
    assert result.file.absolute_path.exists()
    assert result.data is None
    assert result.revised_prompt == "a lighthouse at dusk"
    assert client.generate_calls[0].aspect_ratio == "landscape"


def test_generate_image_returns_bytes_when_not_saving(tmp_path: Path) -> None:
    result = asyncio.run(
        generate_image("a lighthouse", save_to_file=False, client=FakeEditClient(), service=_service(tmp_path))
    )

    assert result.file is None
    assert result.data


def test_generate_image_requires_prompt(tmp_path: Path) -> None:
    with pytest.raises(InvalidConfigurationError):
        asyncio.run(generate_image("   ", client=FakeEditClient(), service=_service(tmp_path)))


def test_supplied_naming_follows_requested_output_format(tmp_path: Path) -> None:
    request = BatchEditRequest(
        images=[_inline(make_png())],
        edit_prompt="sepia",
        naming=NamingPolicy(base_directory=tmp_path, prefix="job_", output_format="png"),
        output_format="jpeg",
    )

    report = process_batch(request, client=FakeEditClient(), service=_service(tmp_path))

    written = report.per_item[0].file
    assert written is not None
    assert written.filename.startswith("job_1_")
    assert written.filename.endswith(".jpeg")
    assert written.format == "jpeg"


def test_edit_image_naming_follows_output_format(tmp_path: Path) -> None:
    naming = NamingPolicy(strategy=NamingStrategy.EXPLICIT, filename="cover", base_directory=tmp_path)

    result = asyncio.run(
        edit_image(
            _inline(make_png()),
            "add a hat",
            output_format="webp",
            client=FakeEditClient(),
            naming=naming,
            service=_service(tmp_path),
        )
    )

    assert result.file is not None
    assert result.file.filename == "cover.webp"
