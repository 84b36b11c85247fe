"""图片字节探测工具。"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

_MAGIC_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


@dataclass(slots=True)
class ImageInfo:
    format: str
    width: int
    height: int

    @property
    def aspect_ratio(self) -> str:
        return aspect_ratio_label(self.width, self.height)


def sniff_mime_type(data: bytes) -> str:
    """通过魔数判断 MIME 类型。"""

    for signature, mime in _MAGIC_SIGNATURES:
        if data.startswith(signature):
            return mime
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def probe_image(data: bytes) -> Optional[ImageInfo]:
    """用 Pillow 读取格式与尺寸，无法识别时返回 None。"""

    try:
        with Image.open(io.BytesIO(data)) as img:
            return ImageInfo(format=(img.format or "").lower(), width=img.width, height=img.height)
    except (UnidentifiedImageError, OSError):
        return None


def aspect_ratio_label(width: int, height: int) -> str:
    if width <= 0 or height <= 0:
        return "square"
    if width == height:
        return "square"
    return "landscape" if width > height else "portrait"
