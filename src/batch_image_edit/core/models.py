"""核心数据模型定义。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from batch_image_edit.core.exceptions import ErrorKind, InvalidConfigurationError


class ReferenceKind(str, Enum):
    REMOTE_URL = "remote_url"
    INLINE_DATA = "inline_data"
    LOCAL_PATH = "local_path"


class EditType(str, Enum):
    INPAINT = "inpaint"
    OUTPAINT = "outpaint"
    VARIATION = "variation"
    STYLE_TRANSFER = "style_transfer"
    OBJECT_REMOVAL = "object_removal"
    BACKGROUND_CHANGE = "background_change"


class BatchEditType(str, Enum):
    """批量编辑允许的编辑类型，执行时映射为 EditType。"""

    STYLE_TRANSFER = "style_transfer"
    BACKGROUND_CHANGE = "background_change"
    COLOR_ADJUSTMENT = "color_adjustment"
    ENHANCEMENT = "enhancement"

    def to_edit_type(self) -> EditType:
        return _BATCH_EDIT_TYPE_MAP[self]


_BATCH_EDIT_TYPE_MAP = {
    BatchEditType.STYLE_TRANSFER: EditType.STYLE_TRANSFER,
    BatchEditType.BACKGROUND_CHANGE: EditType.BACKGROUND_CHANGE,
    BatchEditType.COLOR_ADJUSTMENT: EditType.VARIATION,
    BatchEditType.ENHANCEMENT: EditType.VARIATION,
}


class ErrorHandling(str, Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE_ON_ERROR = "continue_on_error"
    RETRY_FAILED = "retry_failed"


class JobState(str, Enum):
    """单个任务在调度器中的状态。"""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    RETRY_PENDING = "RETRY_PENDING"
    CANCELLED = "CANCELLED"


@dataclass(slots=True, frozen=True)
class ImageReference:
    """带类型标签的图片引用：远程 URL、内联编码数据或本地路径。"""

    kind: ReferenceKind
    value: str

    @classmethod
    def remote_url(cls, value: str) -> "ImageReference":
        return cls(ReferenceKind.REMOTE_URL, value)

    @classmethod
    def inline_data(cls, value: str) -> "ImageReference":
        return cls(ReferenceKind.INLINE_DATA, value)

    @classmethod
    def local_path(cls, value: str | Path) -> "ImageReference":
        return cls(ReferenceKind.LOCAL_PATH, str(value))

    @classmethod
    def detect(cls, text: str) -> "ImageReference":
        """根据字符串前缀自动判断引用类型。"""

        if text.startswith("data:"):
            return cls.inline_data(text)
        if text.startswith(("http://", "https://")):
            return cls.remote_url(text)
        return cls.local_path(text)

    def describe(self) -> str:
        """返回不含原始数据的简短描述，适合放入报告。"""

        if self.kind is ReferenceKind.INLINE_DATA:
            return f"{self.kind.value}:{self.value[:50]}..."
        return self.value


@dataclass(slots=True, frozen=True)
class EditJob:
    """批次中的一个编辑单元，创建后不可变。"""

    reference: ImageReference
    prompt: str
    edit_type: EditType = EditType.VARIATION
    strength: float = 0.8
    output_format: str = "png"
    background: str = "auto"
    quality: str = "auto"

    def __post_init__(self) -> None:
        if not self.prompt or not self.prompt.strip():
            raise InvalidConfigurationError("编辑提示词不能为空")
        if not 0.0 <= self.strength <= 1.0:
            raise InvalidConfigurationError(f"编辑强度必须位于 [0, 1]: {self.strength}")


@dataclass(slots=True)
class EditOutcome:
    """单次编辑的标准化结果。"""

    ok: bool
    elapsed_ms: float
    data: Optional[bytes] = field(default=None, repr=False)
    revised_prompt: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    attempts: int = 1

    @classmethod
    def success(cls, data: bytes, revised_prompt: str, elapsed_ms: float) -> "EditOutcome":
        return cls(ok=True, elapsed_ms=elapsed_ms, data=data, revised_prompt=revised_prompt)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, elapsed_ms: float = 0.0) -> "EditOutcome":
        return cls(ok=False, elapsed_ms=elapsed_ms, error_kind=kind, message=message)

    @classmethod
    def cancelled(cls, message: str = "批处理已取消") -> "EditOutcome":
        return cls.failure(ErrorKind.CANCELLED, message)


@dataclass(slots=True)
class MaterializedFile:
    """已写入磁盘的结果文件描述。"""

    absolute_path: Path
    directory: Path
    filename: str
    size_bytes: int
    written_at: datetime
    format: str = "png"

    def to_dict(self) -> dict[str, Any]:
        return {
            "absolute_path": str(self.absolute_path),
            "directory": str(self.directory),
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "written_at": self.written_at.isoformat(),
            "format": self.format,
        }


@dataclass(slots=True)
class ItemResult:
    """报告中单个输入对应的记录。"""

    index: int
    reference: ImageReference
    outcome: EditOutcome
    file: Optional[MaterializedFile] = None

    def to_dict(self) -> dict[str, Any]:
        outcome = self.outcome
        record: dict[str, Any] = {
            "index": self.index,
            "reference": self.reference.describe(),
            "ok": outcome.ok,
            "elapsed_ms": round(outcome.elapsed_ms, 1),
            "attempts": outcome.attempts,
        }
        if outcome.ok:
            record["revised_prompt"] = outcome.revised_prompt
        else:
            record["error_kind"] = outcome.error_kind.value if outcome.error_kind else None
            record["message"] = outcome.message
        if self.file is not None:
            record["file"] = self.file.to_dict()
        return record


@dataclass(slots=True)
class BatchReport:
    """批处理的最终报告，所有任务结束后不再变化。"""

    total: int
    succeeded: int
    failed: int
    per_item: list[ItemResult]
    total_elapsed_ms: float
    concurrency_used: int
    policy: ErrorHandling = ErrorHandling.CONTINUE_ON_ERROR

    def failed_items(self) -> list[ItemResult]:
        """返回需要重新提交的条目。"""

        return [item for item in self.per_item if not item.outcome.ok]

    def to_dict(self) -> dict[str, Any]:
        """仅包含元数据（路径、大小），不包含图片字节。"""

        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "per_item": [item.to_dict() for item in self.per_item],
            "total_elapsed_ms": round(self.total_elapsed_ms, 1),
            "concurrency_used": self.concurrency_used,
            "policy": self.policy.value,
        }
