"""图片输入解析：把远程 URL、内联编码数据或本地路径统一转换为字节流。"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from pathlib import Path
from typing import Optional

import httpx

from batch_image_edit.core.exceptions import ErrorKind, ResolutionError
from batch_image_edit.core.models import ImageReference, ReferenceKind

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_FETCH_TIMEOUT = 30.0
ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif"}
USER_AGENT = "batch-image-edit/0.1"


class ImageResolver:
    """解析 ImageReference。

    解析失败对该任务是终结性的，这里不做任何重试；是否整体重跑由调度器决定。
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=fetch_timeout, follow_redirects=True)
        self.max_bytes = max_bytes

    async def __aenter__(self) -> "ImageResolver":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def resolve(self, ref: ImageReference) -> bytes:
        if ref.kind is ReferenceKind.REMOTE_URL:
            return await self._fetch_remote(ref.value)
        if ref.kind is ReferenceKind.INLINE_DATA:
            return self._decode_inline(ref.value)
        if ref.kind is ReferenceKind.LOCAL_PATH:
            return await asyncio.to_thread(self._read_local, ref.value)
        raise ResolutionError(f"不支持的图片引用类型: {ref.kind}", ErrorKind.INVALID_INPUT)

    async def _fetch_remote(self, url: str) -> bytes:
        try:
            async with self._client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
                if not response.is_success:
                    raise ResolutionError(
                        f"下载图片失败 HTTP {response.status_code}: {url}", ErrorKind.UNREACHABLE
                    )

                content_type = response.headers.get("content-type", "")
                if not content_type.startswith("image/"):
                    raise ResolutionError(
                        f"返回内容不是图片 ({content_type or '未知类型'}): {url}", ErrorKind.INVALID_INPUT
                    )

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise self._too_large(int(declared), url)

                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise self._too_large(received, url)
                    chunks.append(chunk)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.debug("下载图片异常 %s: %s", url, exc)
            raise ResolutionError(f"无法访问图片地址 {url}: {exc}", ErrorKind.UNREACHABLE) from exc

        LOGGER.debug("已下载图片 %s (%d 字节)", url, received)
        return b"".join(chunks)

    def _decode_inline(self, value: str) -> bytes:
        payload = value
        if value.startswith("data:"):
            header, sep, payload = value.partition(",")
            if not sep or not header.endswith(";base64"):
                raise ResolutionError("data URL 格式不合法", ErrorKind.MALFORMED_ENCODING)

        payload = "".join(payload.split())
        if len(payload) * 3 // 4 > self.max_bytes:
            raise self._too_large(len(payload) * 3 // 4, "inline data")

        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ResolutionError(f"base64 解码失败: {exc}", ErrorKind.MALFORMED_ENCODING) from exc

        if not data:
            raise ResolutionError("内联图片数据为空", ErrorKind.MALFORMED_ENCODING)
        return data

    def _read_local(self, raw_path: str) -> bytes:
        path = Path(raw_path).expanduser()
        if ".." in path.parts:
            raise ResolutionError(f"路径不允许包含 '..': {raw_path}", ErrorKind.INVALID_INPUT)
        if path.suffix.lower() not in ALLOWED_EXTENSIONS:
            allowed = ", ".join(sorted(ALLOWED_EXTENSIONS))
            raise ResolutionError(f"不支持的文件扩展名 {path.suffix!r}，允许: {allowed}", ErrorKind.INVALID_INPUT)

        path = path.resolve()
        try:
            stat = path.stat()
            if not path.is_file():
                raise ResolutionError(f"路径不是文件: {path}", ErrorKind.NOT_FOUND)
            if stat.st_size > self.max_bytes:
                raise self._too_large(stat.st_size, str(path))
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ResolutionError(f"文件不存在: {path}", ErrorKind.NOT_FOUND) from exc
        except PermissionError as exc:
            raise ResolutionError(f"无权限读取文件: {path}", ErrorKind.PERMISSION_DENIED) from exc
        except OSError as exc:
            raise ResolutionError(f"读取文件失败 {path}: {exc}", ErrorKind.PERMISSION_DENIED) from exc

    def _too_large(self, size: int, source: str) -> ResolutionError:
        return ResolutionError(
            f"图片过大: {size} 字节 (上限 {self.max_bytes} 字节): {source}", ErrorKind.TOO_LARGE
        )
