"""命令行输入扫描：把文件、目录、URL 与 data URL 展开为图片引用。"""

from __future__ import annotations

from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from batch_image_edit.core.models import ImageReference, ReferenceKind

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif"}
DEFAULT_PATTERNS = ("*.png", "*.jpg", "*.jpeg", "*.webp", "*.gif")


def _iter_candidate_files(path: Path, recursive: bool) -> Iterator[Path]:
    """遍历路径下的所有文件。"""

    if path.is_file():
        yield path
        return

    if not path.is_dir():
        return

    iterator = path.rglob("*") if recursive else path.glob("*")
    for candidate in iterator:
        if candidate.is_file():
            yield candidate


def _matches_any(name: str, patterns: Sequence[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch(lowered, pattern.lower()) for pattern in patterns)


def collect_references(
    sources: Iterable[str],
    recursive: bool = True,
    include_patterns: Sequence[str] = DEFAULT_PATTERNS,
) -> list[ImageReference]:
    """按输入顺序展开引用；目录内的图片按路径排序，重复的本地文件只保留一次。

    不存在的本地路径原样保留，交给解析阶段报告 NOT_FOUND。
    """

    collected: list[ImageReference] = []
    seen_paths: set[Path] = set()

    for raw in sources:
        reference = ImageReference.detect(raw)
        if reference.kind is not ReferenceKind.LOCAL_PATH:
            collected.append(reference)
            continue

        root = Path(raw).expanduser()
        if not root.is_dir():
            resolved = root.resolve()
            if resolved not in seen_paths:
                seen_paths.add(resolved)
                collected.append(ImageReference.local_path(resolved))
            continue

        matches: list[Path] = []
        for candidate in _iter_candidate_files(root.resolve(), recursive):
            if candidate in seen_paths:
                continue
            if candidate.suffix.lower() not in IMAGE_EXTENSIONS:
                continue
            if not _matches_any(candidate.name, include_patterns):
                continue
            seen_paths.add(candidate)
            matches.append(candidate)

        matches.sort(key=lambda x: str(x).lower())
        collected.extend(ImageReference.local_path(path) for path in matches)

    return collected
