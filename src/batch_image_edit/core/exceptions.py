"""项目内使用的自定义异常与错误类别定义。"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional


class ErrorKind(str, Enum):
    """对外暴露的稳定错误类别。"""

    # 输入解析
    UNREACHABLE = "UNREACHABLE"
    TOO_LARGE = "TOO_LARGE"
    MALFORMED_ENCODING = "MALFORMED_ENCODING"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # 远程编辑调用
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    CONTENT_POLICY = "CONTENT_POLICY"
    INVALID_INPUT = "INVALID_INPUT"
    AUTH_FAILED = "AUTH_FAILED"

    # 文件落盘
    DISK_SPACE_ERROR = "DISK_SPACE_ERROR"
    PATH_TOO_LONG = "PATH_TOO_LONG"
    FILE_EXISTS = "FILE_EXISTS"
    WRITE_ERROR = "WRITE_ERROR"

    CANCELLED = "CANCELLED"

    @property
    def retryable(self) -> bool:
        """瞬时故障才值得重试。"""

        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.TIMEOUT})


class ImageEditBatchError(Exception):
    """基础异常类型，携带稳定的错误类别。"""

    default_kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.message = message


class InvalidConfigurationError(ImageEditBatchError):
    """配置不合法时抛出。"""


class ResolutionError(ImageEditBatchError):
    """图片输入无法转换为字节流。"""

    default_kind = ErrorKind.UNREACHABLE


class ExecutionError(ImageEditBatchError):
    """远程编辑调用失败。"""

    default_kind = ErrorKind.SERVICE_UNAVAILABLE

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class RemoteServiceError(ExecutionError):
    """远程服务返回的、已映射到错误类别的失败。"""


class FileError(ImageEditBatchError):
    """结果文件写入失败。"""

    default_kind = ErrorKind.WRITE_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, path: Optional[Path] = None) -> None:
        super().__init__(message, kind)
        self.path = path
