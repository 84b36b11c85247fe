"""处理任务与服务的配置模型。"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from batch_image_edit.core.exceptions import InvalidConfigurationError
from batch_image_edit.core.models import ErrorHandling

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class NamingStrategy(str, Enum):
    TIMESTAMP = "timestamp"
    PROMPT = "prompt"
    EXPLICIT = "explicit"
    CONTENT_HASH = "content_hash"


class OrganizeBy(str, Enum):
    NONE = "none"
    DATE = "date"
    ASPECT_RATIO = "aspect_ratio"
    QUALITY = "quality"


class ConflictStrategy(str, Enum):
    AUTO_RENAME = "auto_rename"
    OVERWRITE = "overwrite"
    SKIP = "skip"


@dataclass(slots=True)
class NamingPolicy:
    """输出文件命名、目录组织与冲突策略。"""

    strategy: NamingStrategy = NamingStrategy.TIMESTAMP
    organize_by: OrganizeBy = OrganizeBy.NONE
    base_directory: Path = Path("./generated_images")
    prefix: str = ""
    filename: Optional[str] = None
    conflict: ConflictStrategy = ConflictStrategy.AUTO_RENAME
    output_format: str = "png"

    def __post_init__(self) -> None:
        if self.strategy is NamingStrategy.EXPLICIT and not self.filename:
            raise InvalidConfigurationError("explicit 命名策略需要提供文件名")

    def with_prefix(self, prefix: str) -> "NamingPolicy":
        """复制一份仅前缀不同的命名策略。"""

        return NamingPolicy(
            strategy=self.strategy,
            organize_by=self.organize_by,
            base_directory=self.base_directory,
            prefix=prefix,
            filename=self.filename,
            conflict=self.conflict,
            output_format=self.output_format,
        )


@dataclass(slots=True)
class RetryConfig:
    """retry_failed 策略的重试预算与退避参数。"""

    budget: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, retry_number: int) -> float:
        """第 retry_number 次重试（从 0 开始）前的等待秒数。"""

        return min(self.base_delay * (2**retry_number), self.max_delay)


@dataclass(slots=True)
class BatchSettings:
    """批处理并发与错误处理设置。"""

    max_concurrent: int = 3
    error_handling: ErrorHandling = ErrorHandling.CONTINUE_ON_ERROR
    timeout_ms: int = 120_000
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        validate_concurrency(self.max_concurrent)
        if self.timeout_ms <= 0:
            raise InvalidConfigurationError(f"超时时间必须大于 0: {self.timeout_ms}")
        if self.retry.budget < 0:
            raise InvalidConfigurationError(f"重试次数不能为负数: {self.retry.budget}")


def validate_concurrency(value: int) -> int:
    if not MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
        raise InvalidConfigurationError(
            f"并发数必须位于 [{MIN_CONCURRENCY}, {MAX_CONCURRENCY}]: {value}"
        )
    return value


@dataclass(slots=True)
class ServiceSettings:
    """从环境变量读取的服务级配置。"""

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_retries: int = 3
    api_timeout_ms: int = 120_000
    default_output_dir: Path = Path("./generated_images")
    max_input_bytes: int = 10 * 1024 * 1024
    enable_file_output: bool = True
    keep_files_days: int = 30

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServiceSettings":
        env = os.environ if environ is None else environ
        return cls(
            api_key=env.get("OPENAI_API_KEY") or None,
            base_url=env.get("OPENAI_BASE_URL") or None,
            max_retries=_env_int(env, "OPENAI_MAX_RETRIES", 3),
            api_timeout_ms=_env_int(env, "OPENAI_API_TIMEOUT", 120_000),
            default_output_dir=Path(env.get("DEFAULT_OUTPUT_DIR") or "./generated_images"),
            max_input_bytes=_env_int(env, "MAX_FILE_SIZE_MB", 10) * 1024 * 1024,
            enable_file_output=env.get("ENABLE_FILE_OUTPUT", "true").strip().lower() != "false",
            keep_files_days=_env_int(env, "KEEP_FILES_DAYS", 30),
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidConfigurationError(f"环境变量 {name} 必须为整数: {raw}") from exc
    if value < 0:
        raise InvalidConfigurationError(f"环境变量 {name} 不能为负数: {raw}")
    return value
