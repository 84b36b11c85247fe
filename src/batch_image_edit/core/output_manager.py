"""结果文件落盘：目录组织、命名、冲突处理与原子写入。"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from itertools import count
from pathlib import Path
from typing import Optional

from batch_image_edit.core.config import ConflictStrategy, NamingPolicy, NamingStrategy, OrganizeBy
from batch_image_edit.core.exceptions import ErrorKind, FileError, InvalidConfigurationError
from batch_image_edit.core.models import MaterializedFile
from batch_image_edit.utils.imaging import probe_image

LOGGER = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 100
MAX_COMPONENT_BYTES = 255
HASH_LENGTH = 16

_SEQUENCE = count(1)
_UNSAFE_CHARS_RE = re.compile(r"[^\s\w-]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class MaterializeContext:
    """单个结果的命名上下文。"""

    prompt: Optional[str] = None
    quality: Optional[str] = None
    aspect_ratio: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)


class FileMaterializer:
    """负责计算输出路径、处理冲突并原子地写入结果字节。"""

    def __init__(self, min_free_bytes: int = 0) -> None:
        self.min_free_bytes = min_free_bytes

    def materialize(
        self,
        data: bytes,
        naming: NamingPolicy,
        context: Optional[MaterializeContext] = None,
    ) -> MaterializedFile:
        """写入结果并返回文件描述。"""

        context = context or MaterializeContext()
        directory = self.organized_directory(naming, context, data)
        filename = self.generate_filename(naming, context, data)
        self._check_component_length(filename, directory)

        self.ensure_directory(directory)
        self._check_disk_space(directory, len(data))

        destination = directory / filename
        final_path = self._write(data, destination, naming)

        stat = final_path.stat()
        LOGGER.info("已写入结果文件 %s (%d 字节)", final_path, stat.st_size)
        return MaterializedFile(
            absolute_path=final_path,
            directory=final_path.parent,
            filename=final_path.name,
            size_bytes=stat.st_size,
            written_at=datetime.fromtimestamp(stat.st_mtime).astimezone(),
            format=naming.output_format,
        )

    def organized_directory(self, naming: NamingPolicy, context: MaterializeContext, data: bytes) -> Path:
        """根据 organize_by 计算目标目录。"""

        base = Path(naming.base_directory).expanduser().resolve()
        organize_by = naming.organize_by

        if organize_by is OrganizeBy.NONE:
            return base
        if organize_by is OrganizeBy.DATE:
            return base / context.created_at.strftime("%Y-%m-%d")
        if organize_by is OrganizeBy.ASPECT_RATIO:
            label = context.aspect_ratio
            if not label:
                info = probe_image(data)
                label = info.aspect_ratio if info else "square"
            return base / _sanitize(label.replace(":", "x"))
        if organize_by is OrganizeBy.QUALITY:
            return base / _sanitize(context.quality or "medium")

        raise InvalidConfigurationError(f"未知的目录组织方式: {organize_by}")

    def generate_filename(self, naming: NamingPolicy, context: MaterializeContext, data: bytes) -> str:
        """根据命名策略生成文件名（含扩展名）。"""

        extension = "." + naming.output_format.lstrip(".").lower()
        prefix = _sanitize(naming.prefix) if naming.prefix else ""
        strategy = naming.strategy

        if strategy is NamingStrategy.TIMESTAMP:
            return f"{prefix or 'image_'}{_timestamp_token(context.created_at)}{extension}"

        if strategy is NamingStrategy.PROMPT:
            token = _timestamp_token(context.created_at)
            slug = _sanitize(context.prompt or "") or "image"
            budget = MAX_FILENAME_LENGTH - len(prefix) - len(token) - len(extension) - 1
            slug = slug[: max(budget, 1)]
            return f"{prefix}{slug}_{token}{extension}"

        if strategy is NamingStrategy.EXPLICIT:
            if not naming.filename:
                raise InvalidConfigurationError("explicit 命名策略需要提供文件名")
            requested = Path(naming.filename)
            suffix = requested.suffix.lower()
            stem = _sanitize(requested.stem if suffix else requested.name)
            if not stem:
                raise InvalidConfigurationError(f"文件名不合法: {naming.filename}")
            return f"{prefix}{stem}{suffix or extension}"

        if strategy is NamingStrategy.CONTENT_HASH:
            digest = hashlib.sha256(data).hexdigest()[:HASH_LENGTH]
            return f"{prefix}{digest}{extension}"

        raise InvalidConfigurationError(f"未知的命名策略: {strategy}")

    def ensure_directory(self, directory: Path) -> None:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            raise FileError(f"无权限创建目录: {directory}", ErrorKind.PERMISSION_DENIED, directory) from exc
        except OSError as exc:
            raise _translate_os_error(exc, directory, "创建目录失败") from exc

    def _write(self, data: bytes, destination: Path, naming: NamingPolicy) -> Path:
        conflict = naming.conflict

        if conflict is ConflictStrategy.OVERWRITE:
            if destination.exists():
                LOGGER.info("覆盖已存在的文件: %s", destination)
            self._atomic_replace(data, destination)
            return destination

        if conflict not in (ConflictStrategy.SKIP, ConflictStrategy.AUTO_RENAME):
            raise InvalidConfigurationError(f"未知的冲突策略: {conflict}")

        tmp_path = self._write_temp(data, destination)
        try:
            return self._publish(tmp_path, data, destination, naming)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _publish(self, tmp_path: Path, data: bytes, destination: Path, naming: NamingPolicy) -> Path:
        """把已写完的临时文件硬链接到第一个空闲的文件名上。"""

        candidate = destination
        for idx in count(1):
            if self._link(tmp_path, candidate):
                if candidate != destination:
                    LOGGER.info("目标已存在: %s -> 重命名为 %s", destination.name, candidate.name)
                return candidate
            if naming.conflict is ConflictStrategy.SKIP:
                raise FileError(f"目标已存在: {destination.name}", ErrorKind.FILE_EXISTS, destination)
            # 文件名上只会出现完整写入的文件，可以直接比较内容
            if naming.strategy is NamingStrategy.CONTENT_HASH and _same_content(candidate, data):
                LOGGER.debug("内容相同的文件已存在，直接复用: %s", candidate)
                return candidate
            candidate = destination.with_name(f"{destination.stem}_{idx:03d}{destination.suffix}")

    def _link(self, source: Path, target: Path) -> bool:
        """以硬链接原子地发布文件，目标已存在时返回 False。"""

        try:
            os.link(source, target)
        except FileExistsError:
            return False
        except PermissionError as exc:
            raise FileError(f"无权限写入: {target}", ErrorKind.PERMISSION_DENIED, target) from exc
        except OSError as exc:
            raise _translate_os_error(exc, target, "发布文件失败") from exc
        return True

    def _write_temp(self, data: bytes, destination: Path) -> Path:
        """在目标目录内写入并 fsync 一个临时文件。"""

        tmp_name: Optional[str] = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=destination.suffix, dir=destination.parent)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
        except PermissionError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise FileError(f"无权限写入: {destination}", ErrorKind.PERMISSION_DENIED, destination) from exc
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise _translate_os_error(exc, destination, "写入文件失败") from exc
        return Path(tmp_name)

    def _atomic_replace(self, data: bytes, destination: Path) -> None:
        """先写入同目录临时文件，再 rename 到目标位置。"""

        tmp_path = self._write_temp(data, destination)
        try:
            os.replace(tmp_path, destination)
        except PermissionError as exc:
            raise FileError(f"无权限写入: {destination}", ErrorKind.PERMISSION_DENIED, destination) from exc
        except OSError as exc:
            raise _translate_os_error(exc, destination, "写入文件失败") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def _check_disk_space(self, directory: Path, size: int) -> None:
        try:
            free = shutil.disk_usage(directory).free
        except OSError as exc:
            LOGGER.debug("无法获取磁盘剩余空间 %s: %s", directory, exc)
            return
        if free < size + self.min_free_bytes:
            raise FileError(
                f"磁盘空间不足: 需要 {size} 字节，剩余 {free} 字节",
                ErrorKind.DISK_SPACE_ERROR,
                directory,
            )

    @staticmethod
    def _check_component_length(filename: str, directory: Path) -> None:
        # 预留自动重命名后缀的长度
        if len(filename.encode("utf-8")) + 4 > MAX_COMPONENT_BYTES:
            raise FileError(f"文件名过长: {filename[:40]}...", ErrorKind.PATH_TOO_LONG, directory / filename)


def cleanup_old_files(directory: Path, keep_days: int) -> list[Path]:
    """删除目录下超过保留天数的普通文件，返回被删除的路径。"""

    if not directory.is_dir():
        return []

    cutoff = time.time() - keep_days * 24 * 60 * 60
    removed: list[Path] = []
    for candidate in directory.iterdir():
        try:
            if candidate.is_file() and candidate.stat().st_mtime < cutoff:
                candidate.unlink()
                removed.append(candidate)
        except OSError as exc:
            LOGGER.warning("清理文件失败 %s: %s", candidate, exc)
    LOGGER.info("清理 %s 完成，删除 %d 个文件", directory, len(removed))
    return removed


def _timestamp_token(moment: datetime) -> str:
    """时间戳加进程内递增序号，保证同一进程内不重复。"""

    return f"{moment.strftime('%Y%m%d_%H%M%S_%f')}_{next(_SEQUENCE):04d}"


def _sanitize(value: str) -> str:
    cleaned = _UNSAFE_CHARS_RE.sub("", value)
    cleaned = _WHITESPACE_RE.sub("_", cleaned.strip())
    return cleaned.lower()[:MAX_FILENAME_LENGTH]


def _same_content(path: Path, data: bytes) -> bool:
    try:
        return path.stat().st_size == len(data) and path.read_bytes() == data
    except OSError:
        return False


def _translate_os_error(exc: OSError, path: Path, action: str) -> FileError:
    if exc.errno == errno.ENOSPC:
        return FileError(f"{action}: 磁盘空间不足 ({path})", ErrorKind.DISK_SPACE_ERROR, path)
    if exc.errno == errno.ENAMETOOLONG:
        return FileError(f"{action}: 路径过长 ({path})", ErrorKind.PATH_TOO_LONG, path)
    if exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return FileError(f"{action}: 无访问权限 ({path})", ErrorKind.PERMISSION_DENIED, path)
    return FileError(f"{action}: {path} ({exc})", ErrorKind.WRITE_ERROR, path)
