"""
Jimeng (ByteDance Dreamina) video and image backends.

Two variants share one wire style:
- native (``jimeng``): ``/v2/video_generation``, ``/v2/tasks/{id}``,
  ``/v2/image_generation``; ``sk-`` keys use Bearer auth, otherwise an
  access/secret key header pair
- web (``jimeng_web``): ``/v1/videos/generations``,
  ``/v1/videos/generations/{id}``, ``/v1/images/generations``; Bearer auth

Both may answer HTTP 200 with an error in the body, and video submission may
return the finished URL immediately instead of a task id.
"""

import logging
from typing import Any

import httpx

from core.exceptions import MalformedResponseError

from ..response_extractor import first_item, get_field
from .base import (
    AccessKeyPairAuth,
    AuthStrategy,
    BearerTokenAuth,
    Credential,
    GenerationResult,
    HTTPTransportMixin,
    InlineBinaryPart,
    JobState,
    ProviderKind,
    SubmitResult,
    TaskInfo,
    VideoBackend,
    VideoRequest,
    ensure_data_uri,
    is_safety_error,
    normalize_status,
)
from .errors import classify_error
from .openai_compat import ASPECT_RATIO_SIZES
from .prompts import build_jimeng_prompt

logger = logging.getLogger(__name__)

SUCCESS_CODES = {0, 10000, "0", "10000"}


def jimeng_body_error(data: Any) -> str | None:
    """
    Error message carried in a 2xx body, or None.

    ``error`` and ``errmsg`` always count; ``code`` other than 0/10000 and
    ``ret`` other than "0" count; a bare ``message`` counts only when no
    success code is present.
    """
    if not isinstance(data, dict):
        return None

    error = data.get("error")
    if error:
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)

    code = data.get("code")
    ret = data.get("ret")
    if code is not None and code not in SUCCESS_CODES:
        return str(data.get("message") or data.get("errmsg") or f"code {code}")
    if ret not in (None, "", 0, "0"):
        return str(data.get("errmsg") or data.get("message") or f"ret {ret}")
    if data.get("errmsg"):
        return str(data["errmsg"])

    message = data.get("message")
    if message and code is None and str(message).lower() not in ("success", "ok"):
        return str(message)
    return None


def find_result_url(data: Any) -> str | None:
    """Result URL from any of the field layouts Jimeng proxies use."""
    inner = get_field(data, "data")
    item = first_item(inner)
    for value in (
        get_field(data, "video_url", "url"),
        get_field(item, "url", "video_url"),
        get_field(inner, "url", "video_url") if isinstance(inner, dict) else None,
    ):
        if isinstance(value, str) and value:
            return value
    return None


class JimengMixin(HTTPTransportMixin):
    """Endpoint, auth and response checks shared by the Jimeng clients."""

    variant: ProviderKind = ProviderKind.JIMENG

    def _setup(
        self,
        credential: Credential,
        default_base_url: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None,
    ) -> None:
        self._credential = credential
        self._base_url = (credential.base_url or default_base_url).strip().rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client = None

    @property
    def is_web(self) -> bool:
        return self.variant is ProviderKind.JIMENG_WEB

    def _auth(self) -> AuthStrategy:
        key = self._credential.key
        if self.is_web or key.startswith("sk-"):
            return BearerTokenAuth(key)
        return AccessKeyPairAuth(key, self._credential.secret)

    def _headers(self) -> dict:
        return self._auth().apply({"Content-Type": "application/json"})

    def _absolute_url(self, url: str) -> str:
        if url.startswith(("http://", "https://", "data:")):
            return url
        return f"{self._base_url}{'' if url.startswith('/') else '/'}{url}"

    async def _post_json(self, path: str, payload: dict, model_id: str) -> dict:
        """POST and return the body; HTTP and body-level errors raise."""
        client = await self._get_client()
        url = f"{self._base_url}{path}"
        logger.info(f"[Jimeng:{self.variant}] POST {url} model={model_id}")
        response = await client.post(url, json=payload, headers=self._headers())

        if response.status_code not in (200, 201):
            raise classify_error(response, provider=self.variant, model=model_id).to_exception()

        try:
            data = response.json()
        except ValueError:
            raise MalformedResponseError(
                f"即梦 AI ({self.variant}) 返回了非 JSON 数据: {response.text[:150]}",
                provider=self.variant,
                model=model_id,
            )

        error = jimeng_body_error(data)
        if error:
            classified = classify_error(
                {"message": f"即梦 AI ({self.variant}) 返回错误: {error}"},
                provider=self.variant,
                model=model_id,
            )
            raise classified.to_exception()
        return data


class JimengVideoBackend(JimengMixin, VideoBackend):
    """Native Jimeng video API."""

    name = "jimeng"
    variant = ProviderKind.JIMENG
    SUBMIT_PATH = "/v2/video_generation"
    POLL_PATH = "/v2/tasks/{task_id}"

    def __init__(
        self,
        credential: Credential,
        default_base_url: str = "http://localhost:5100",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._setup(credential, default_base_url, timeout, transport)

    def build_payload(self, request: VideoRequest, model_id: str) -> dict[str, Any]:
        start = request.start_frame
        end = request.end_frame
        file_paths = [start.to_data_uri()]
        if end is not None:
            file_paths.append(end.to_data_uri())
        file_paths.extend(ref.to_data_uri() for ref in request.reference_images)

        payload: dict[str, Any] = {
            "model": model_id,
            "model_id": model_id,
            "prompt": build_jimeng_prompt(request),
            "image_base64": start.data,
            "duration": request.duration or 5,
            "aspect_ratio": request.aspect_ratio,
            "ratio": request.aspect_ratio,
            "filePaths": file_paths,
        }
        if end is not None:
            payload["end_image_base64"] = end.data
        return payload

    def _task_id(self, data: dict) -> str | None:
        task_id = get_field(data, "task_id") or get_field(get_field(data, "data"), "task_id")
        return str(task_id) if task_id else None

    async def submit(self, request: VideoRequest, model_id: str) -> SubmitResult:
        data = await self._post_json(self.SUBMIT_PATH, self.build_payload(request, model_id), model_id)

        sync_url = find_result_url(data)
        if sync_url:
            logger.info(f"[Jimeng:{self.variant}] Received direct video URL")
            return SubmitResult(result_url=self._absolute_url(sync_url), raw=data)

        task_id = self._task_id(data)
        if not task_id:
            raise MalformedResponseError(
                "即梦未返回任务 ID 或视频链接，请检查 Session ID 是否过期或频率过快。"
                " (No task id or video URL returned)",
                provider=self.variant,
                model=model_id,
            )
        logger.info(f"[Jimeng:{self.variant}] Task submitted: {task_id}")
        return SubmitResult(task_id=task_id, raw=data)

    async def poll(self, task_id: str) -> TaskInfo:
        client = await self._get_client()
        url = f"{self._base_url}{self.POLL_PATH.format(task_id=task_id)}"
        response = await client.get(url, headers=self._headers())
        if 400 <= response.status_code < 500:
            raise classify_error(response, provider=self.variant).to_exception()
        if response.status_code >= 500:
            logger.warning(f"[Jimeng:{self.variant}] Poll HTTP {response.status_code}, retrying")
            return TaskInfo(task_id=task_id, status=JobState.POLLING)

        try:
            data = response.json()
        except ValueError:
            data = {}

        inner = get_field(data, "data")
        status = get_field(data, "status")
        if status is None and isinstance(inner, dict):
            status = inner.get("status")
        if status is None:
            status = "success" if get_field(first_item(inner), "url") else "processing"

        state = normalize_status(status)
        if state is JobState.SUCCEEDED:
            url = find_result_url(data)
            if not url:
                return TaskInfo(
                    task_id=task_id,
                    status=JobState.FAILED,
                    error="即梦任务完成但未返回视频链接 (Task finished without a video URL)",
                    raw=data,
                )
            return TaskInfo(task_id=task_id, status=state, result_url=self._absolute_url(url), raw=data)

        if state is JobState.FAILED:
            message = str(get_field(data, "error_message", "message") or "未知错误 (Unknown error)")
            logger.warning(f"[Jimeng:{self.variant}] 即梦视频生成失败: {message}")
            return TaskInfo(
                task_id=task_id,
                status=state,
                error=message,
                content_policy=is_safety_error(message),
                raw=data,
            )

        logger.debug(f"[Jimeng:{self.variant}] Task {task_id} status: {status}")
        return TaskInfo(task_id=task_id, status=JobState.POLLING, raw=data)


class JimengWebVideoBackend(JimengVideoBackend):
    """Web-session Jimeng video API (jimeng-api style proxies)."""

    name = "jimeng_web"
    variant = ProviderKind.JIMENG_WEB
    SUBMIT_PATH = "/v1/videos/generations"
    POLL_PATH = "/v1/videos/generations/{task_id}"

    def build_payload(self, request: VideoRequest, model_id: str) -> dict[str, Any]:
        payload = super().build_payload(request, model_id)
        payload["image"] = request.start_frame.data
        return payload

    def _task_id(self, data: dict) -> str | None:
        inner = get_field(data, "data")
        task_id = (
            get_field(data, "id", "task_id")
            or get_field(inner, "task_id", "id")
        )
        return str(task_id) if task_id else None


# ============ Image Grid ============


class JimengImageClient(JimengMixin):
    """Single-image generation used for storyboard grids."""

    def __init__(
        self,
        credential: Credential,
        default_base_url: str = "http://localhost:5100",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.variant = credential.provider
        self._setup(credential, default_base_url, timeout, transport)

    @property
    def image_path(self) -> str:
        return "/v1/images/generations" if self.is_web else "/v2/image_generation"

    async def generate_image(
        self,
        model_id: str,
        prompt: str,
        aspect_ratio: str = "16:9",
        reference_images: list[InlineBinaryPart] | None = None,
    ) -> GenerationResult:
        """
        Generate one image; the aspect ratio is also stated in the prompt.

        Raises:
            MalformedResponseError: no image in the response
        """
        payload: dict[str, Any] = {
            "model": model_id,
            "model_id": model_id,
            "prompt": f"[ASPECT RATIO {aspect_ratio}] {prompt}",
            "aspect_ratio": aspect_ratio,
            "ratio": aspect_ratio,
            "size": ASPECT_RATIO_SIZES.get(aspect_ratio, "1024x1024"),
            "image_number": 1,
        }
        if reference_images:
            payload["image_url"] = reference_images[0].to_data_uri()

        data = await self._post_json(self.image_path, payload, model_id)
        item = first_item(get_field(data, "data"))
        image = get_field(item, "url", "base64", "b64_json")
        if not isinstance(image, str) or not image:
            raise MalformedResponseError(
                "即梦 AI 未返回图片数据，请检查 Session ID 是否有效。(No image data returned)",
                provider=self.variant,
                model=model_id,
            )

        return GenerationResult(
            raw=data,
            inline_image=ensure_data_uri(image),
            provider=str(self.variant),
            model=model_id,
            credential_id=self._credential.id,
        )
