"""进度更新的数据模型。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(slots=True)
class ProgressUpdate:
    """批处理过程中每个任务结束时的进度信息。"""

    total: int
    completed: int
    succeeded: int = 0
    failed: int = 0
    message: Optional[str] = None
    status: str = "running"


ProgressCallback = Optional[Callable[[ProgressUpdate], None]]
