"""远程图片服务客户端。

调度器只依赖 ImageEditClient 协议；OpenAIImageClient 是基于 openai SDK 的默认实现，
负责把 SDK 异常映射为稳定的 ErrorKind。
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import openai
from openai import AsyncOpenAI

from batch_image_edit.core.config import ServiceSettings
from batch_image_edit.core.exceptions import ErrorKind, InvalidConfigurationError, RemoteServiceError
from batch_image_edit.core.models import EditType, ImageReference
from batch_image_edit.processing.resolver import ImageResolver
from batch_image_edit.utils.imaging import sniff_mime_type

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-image-1"
EDIT_SIZE = "1024x1024"

ASPECT_RATIO_SIZES = {
    "square": "1024x1024",
    "1:1": "1024x1024",
    "landscape": "1536x1024",
    "16:9": "1536x1024",
    "portrait": "1024x1536",
    "9:16": "1024x1536",
}

CONTENT_POLICY_CODES = {"content_policy_violation", "moderation_blocked"}

_MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}


@dataclass(slots=True)
class RemoteEditRequest:
    image: bytes = field(repr=False)
    prompt: str
    edit_type: EditType
    strength: float
    output_format: str = "png"
    background: str = "auto"
    quality: str = "auto"


@dataclass(slots=True)
class RemoteGenerateRequest:
    prompt: str
    aspect_ratio: str = "square"
    quality: Optional[str] = None
    output_format: str = "png"
    background: str = "auto"
    moderation: str = "auto"


@dataclass(slots=True)
class RemoteImageResult:
    data: bytes = field(repr=False)
    revised_prompt: Optional[str] = None


class ImageEditClient(Protocol):
    """远程图片模型协作方。失败时抛出 RemoteServiceError。"""

    async def edit(self, request: RemoteEditRequest) -> RemoteImageResult:
        ...

    async def generate(self, request: RemoteGenerateRequest) -> RemoteImageResult:
        ...


class OpenAIImageClient:
    """基于 openai.AsyncOpenAI 的图片编辑/生成客户端。

    Images API 没有 edit_type 与 strength 参数，二者只保留在结果元数据中。
    """

    def __init__(
        self,
        settings: ServiceSettings,
        resolver: Optional[ImageResolver] = None,
        client: Optional[AsyncOpenAI] = None,
        model: str = DEFAULT_MODEL,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            if not settings.api_key:
                raise InvalidConfigurationError("需要设置环境变量 OPENAI_API_KEY")
            client = AsyncOpenAI(
                api_key=settings.api_key,
                base_url=settings.base_url,
                max_retries=settings.max_retries,
                timeout=settings.api_timeout_ms / 1000,
            )
        self._client = client
        self._owns_resolver = resolver is None
        self._resolver = resolver or ImageResolver(max_bytes=settings.max_input_bytes)
        self.model = model

    async def aclose(self) -> None:
        if self._owns_resolver:
            await self._resolver.aclose()
        if self._owns_client:
            await self._client.close()

    async def edit(self, request: RemoteEditRequest) -> RemoteImageResult:
        mime_type = sniff_mime_type(request.image)
        extension = _MIME_EXTENSIONS.get(mime_type, "png")
        params: dict[str, Any] = {
            "model": self.model,
            "image": (f"source.{extension}", request.image, mime_type if mime_type in _MIME_EXTENSIONS else "image/png"),
            "prompt": request.prompt,
            "size": EDIT_SIZE,
            "n": 1,
        }
        if request.quality:
            params["quality"] = request.quality
        if request.background:
            params["background"] = request.background
        if request.output_format:
            params["output_format"] = request.output_format

        LOGGER.debug("调用 images.edit: edit_type=%s strength=%.2f", request.edit_type.value, request.strength)
        try:
            response = await self._client.images.edit(**params)
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc
        return await self._extract(response, request.prompt)

    async def generate(self, request: RemoteGenerateRequest) -> RemoteImageResult:
        params: dict[str, Any] = {
            "model": self.model,
            "prompt": request.prompt,
            "size": ASPECT_RATIO_SIZES.get(request.aspect_ratio, "1024x1024"),
            "n": 1,
            "output_format": request.output_format,
            "moderation": request.moderation,
            "background": request.background,
        }
        if request.quality:
            params["quality"] = request.quality

        try:
            response = await self._client.images.generate(**params)
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc
        return await self._extract(response, request.prompt)

    async def _extract(self, response: Any, prompt: str) -> RemoteImageResult:
        items = getattr(response, "data", None) or []
        if not items:
            raise RemoteServiceError("远程服务未返回图片数据", ErrorKind.SERVICE_UNAVAILABLE)

        item = items[0]
        revised_prompt = getattr(item, "revised_prompt", None) or prompt
        if getattr(item, "b64_json", None):
            try:
                data = base64.b64decode(item.b64_json)
            except (binascii.Error, ValueError) as exc:
                raise RemoteServiceError(f"远程返回的图片数据无法解码: {exc}", ErrorKind.SERVICE_UNAVAILABLE) from exc
            return RemoteImageResult(data=data, revised_prompt=revised_prompt)
        if getattr(item, "url", None):
            data = await self._resolver.resolve(ImageReference.remote_url(item.url))
            return RemoteImageResult(data=data, revised_prompt=revised_prompt)

        raise RemoteServiceError("远程返回结果中没有图片内容", ErrorKind.SERVICE_UNAVAILABLE)


def map_openai_error(exc: Exception) -> RemoteServiceError:
    """把 openai SDK 异常映射为带错误类别的 RemoteServiceError。"""

    message = str(exc) or exc.__class__.__name__
    code = getattr(exc, "code", None)

    # APITimeoutError 是 APIConnectionError 的子类，需先判断
    if isinstance(exc, openai.APITimeoutError):
        return RemoteServiceError(f"远程服务超时: {message}", ErrorKind.TIMEOUT)
    if isinstance(exc, openai.APIConnectionError):
        return RemoteServiceError(f"无法连接远程服务: {message}", ErrorKind.SERVICE_UNAVAILABLE)
    if isinstance(exc, openai.RateLimitError):
        if code == "insufficient_quota":
            return RemoteServiceError("API 额度不足，请检查账单", ErrorKind.AUTH_FAILED)
        return RemoteServiceError("触发速率限制，请稍后重试", ErrorKind.RATE_LIMITED)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return RemoteServiceError("API 鉴权失败，请检查 API Key", ErrorKind.AUTH_FAILED)
    if isinstance(exc, openai.BadRequestError):
        if code in CONTENT_POLICY_CODES:
            return RemoteServiceError(f"内容被安全策略拦截: {message}", ErrorKind.CONTENT_POLICY)
        return RemoteServiceError(f"请求参数无效: {message}", ErrorKind.INVALID_INPUT)
    if isinstance(exc, openai.APIStatusError):
        return RemoteServiceError(message, kind_for_status(exc.status_code))
    return RemoteServiceError(f"远程服务错误: {message}", ErrorKind.SERVICE_UNAVAILABLE)


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code in (401, 403):
        return ErrorKind.AUTH_FAILED
    if status_code >= 500:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.INVALID_INPUT
