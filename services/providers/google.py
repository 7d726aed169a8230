"""
Google Gemini / Veo transport via the official google-genai SDK.

Used when a model resolves to ``google`` and the credential carries no base
URL. Credentials with a base URL go through the OpenAI-compatible adapter
instead. The SDK is synchronous, so calls run in the default executor.
"""

import asyncio
import json
import logging
import time
from typing import Any

from google import genai
from google.genai import types

from core.exceptions import ContentPolicyRejectedError, MalformedResponseError

from ..response_extractor import ResponseExtractor, first_item, get_field
from .base import (
    Credential,
    GenerationRequest,
    GenerationResult,
    InlineBinaryPart,
    JobState,
    SubmitResult,
    TaskInfo,
    TextPart,
    TransportAdapter,
    VideoBackend,
    VideoRequest,
    is_safety_error,
)
from .prompts import build_cinematic_prompt

logger = logging.getLogger(__name__)


# ============ Safety Configuration ============

SAFETY_LEVELS = {
    "strict": types.HarmBlockThreshold.BLOCK_LOW_AND_ABOVE,
    "moderate": types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    "relaxed": types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    "none": types.HarmBlockThreshold.BLOCK_NONE,
}

HARM_CATEGORIES = [
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
]

SAFETY_FINISH_REASONS = {"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"}


def build_safety_settings(level: str = "none") -> list[types.SafetySetting]:
    """Build safety settings based on the specified level."""
    threshold = SAFETY_LEVELS.get(level, types.HarmBlockThreshold.BLOCK_NONE)
    return [
        types.SafetySetting(category=category, threshold=threshold) for category in HARM_CATEGORIES
    ]


def _enum_name(value: Any) -> str:
    name = getattr(value, "name", None)
    if not isinstance(name, str):
        name = str(value)
    return name.split(".")[-1].upper()


class _ClientCache:
    """One genai.Client per API key."""

    def __init__(self):
        self._clients: dict[str, genai.Client] = {}

    def get(self, api_key: str) -> genai.Client:
        if api_key not in self._clients:
            self._clients[api_key] = genai.Client(api_key=api_key)
        return self._clients[api_key]


class GoogleTransportAdapter(TransportAdapter):
    """Text and image generation through ``client.models.generate_content``."""

    name = "google"

    def __init__(self, safety_level: str = "none", extractor: ResponseExtractor | None = None):
        self._safety_level = safety_level
        self._clients = _ClientCache()
        self._extractor = extractor or ResponseExtractor()

    def _build_contents(self, request: GenerationRequest) -> list[types.Part]:
        contents = []
        for part in request.parts:
            if isinstance(part, TextPart):
                contents.append(types.Part.from_text(text=part.text))
            elif isinstance(part, InlineBinaryPart):
                contents.append(types.Part.from_bytes(data=part.to_bytes(), mime_type=part.mime_type))
        return contents

    def _build_config(self, request: GenerationRequest, **extra) -> types.GenerateContentConfig:
        config_dict: dict[str, Any] = {
            "safety_settings": build_safety_settings(self._safety_level),
        }
        if request.system_instruction:
            config_dict["system_instruction"] = request.system_instruction
        if request.temperature is not None:
            config_dict["temperature"] = request.temperature
        if request.json_mode:
            config_dict["response_mime_type"] = "application/json"
        config_dict.update(extra)
        return types.GenerateContentConfig(**config_dict)

    async def _call(self, api_key: str, model_id: str, contents: list, config) -> Any:
        client = self._clients.get(api_key)

        def api_call():
            return client.models.generate_content(model=model_id, contents=contents, config=config)

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, api_call)

    def _check_blocked(self, response: Any, model_id: str) -> None:
        """Raise when the prompt or the candidate was stopped by a safety filter."""
        feedback = getattr(response, "prompt_feedback", None)
        block_reason = getattr(feedback, "block_reason", None) if feedback else None
        if block_reason:
            raise ContentPolicyRejectedError(
                f"内容被安全过滤器拦截 (Prompt blocked: {_enum_name(block_reason)})",
                provider=self.name,
                model=model_id,
            )

        candidate = first_item(get_field(response, "candidates"))
        reason = getattr(candidate, "finish_reason", None) if candidate is not None else None
        if reason is not None and _enum_name(reason) in SAFETY_FINISH_REASONS:
            raise ContentPolicyRejectedError(
                f"生成内容被安全策略拦截 (Blocked by safety filter: {_enum_name(reason)})",
                provider=self.name,
                model=model_id,
            )

    async def generate(
        self,
        model_id: str,
        request: GenerationRequest,
        credential: Credential,
    ) -> GenerationResult:
        start_time = time.time()
        config = self._build_config(request)

        logger.info(f"[Google] generate_content model={model_id} parts={len(request.parts)}")
        response = await self._call(credential.key, model_id, self._build_contents(request), config)
        self._check_blocked(response, model_id)

        extraction = self._extractor.extract(response)
        return GenerationResult(
            text=extraction.text,
            raw=response,
            inline_image=extraction.inline_image,
            provider=self.name,
            model=model_id,
            credential_id=credential.id,
            duration=time.time() - start_time,
        )

    async def generate_image(
        self,
        model_id: str,
        request: GenerationRequest,
        credential: Credential,
        aspect_ratio: str = "16:9",
        image_size: str | None = None,
    ) -> GenerationResult:
        """
        Image generation with response modalities TEXT + IMAGE.

        Raises:
            ContentPolicyRejectedError: finish reason IMAGE_SAFETY or similar
            MalformedResponseError: the response carried no image part
        """
        start_time = time.time()
        image_config = {"aspect_ratio": aspect_ratio}
        if image_size in ("2K", "4K"):
            image_config["image_size"] = image_size
        config = self._build_config(
            request,
            response_modalities=["TEXT", "IMAGE"],
            image_config=image_config,
        )

        logger.info(f"[Google] image generation model={model_id} ratio={aspect_ratio}")
        response = await self._call(credential.key, model_id, self._build_contents(request), config)
        self._check_blocked(response, model_id)

        extraction = self._extractor.extract(response)
        if not extraction.inline_image:
            raise MalformedResponseError(
                f"生图失败：未能从 AI 响应中提取到图像数据。{_describe_parts(response)}",
                provider=self.name,
                model=model_id,
            )

        return GenerationResult(
            text=extraction.text,
            raw=response,
            inline_image=extraction.inline_image,
            provider=self.name,
            model=model_id,
            credential_id=credential.id,
            duration=time.time() - start_time,
        )


def _describe_parts(response: Any) -> str:
    """Diagnostic summary of what a response contained instead of an image."""
    candidate = first_item(get_field(response, "candidates"))
    parts = get_field(get_field(candidate, "content"), "parts")
    if not isinstance(parts, (list, tuple)) or not parts:
        return "(no parts returned)"
    kinds = []
    text = ""
    for part in parts:
        part_text = get_field(part, "text")
        if isinstance(part_text, str):
            kinds.append("text")
            text = text or part_text
        else:
            kinds.append("other")
    summary = f"(parts: {', '.join(kinds)})"
    if text:
        summary += f" {text[:150]}"
    return summary


# ============ Veo Video ============


class VeoVideoBackend(VideoBackend):
    """
    Veo image-to-video via ``models.generate_videos`` and ``operations.get``.

    The operation object is kept per task id so each poll refreshes it.
    """

    name = "google"

    def __init__(self, api_key: str, timeout: float = 60.0, transport=None):
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Any = None
        self._genai_client: Any = None
        self._operations: dict[str, Any] = {}

    @property
    def genai_client(self):
        """Created on first use; key errors surface from ``submit``."""
        if self._genai_client is None:
            self._genai_client = genai.Client(api_key=self._api_key)
        return self._genai_client

    def build_prompt(self, request: VideoRequest) -> str:
        return build_cinematic_prompt(request)

    async def _run(self, func):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func)

    async def submit(self, request: VideoRequest, model_id: str) -> SubmitResult:
        prompt = self.build_prompt(request)
        image = types.Image(
            image_bytes=request.start_frame.to_bytes(),
            mime_type=request.start_frame.mime_type,
        )
        config = None
        if request.end_frame is not None:
            config = types.GenerateVideosConfig(
                last_frame=types.Image(
                    image_bytes=request.end_frame.to_bytes(),
                    mime_type=request.end_frame.mime_type,
                )
            )

        logger.info(f"[Veo] Submitting job model={model_id} interpolate={config is not None}")
        operation = await self._run(
            lambda: self.genai_client.models.generate_videos(
                model=model_id, prompt=prompt, image=image, config=config
            )
        )

        task_id = getattr(operation, "name", None) or f"veo-{int(time.time() * 1000)}"
        self._operations[task_id] = operation
        logger.info(f"[Veo] Job submitted. Operation: {task_id}")
        return SubmitResult(task_id=task_id, raw=operation)

    async def poll(self, task_id: str) -> TaskInfo:
        operation = self._operations.get(task_id)
        if operation is None:
            return TaskInfo(task_id=task_id, status=JobState.FAILED, error=f"Unknown operation {task_id}")

        if not getattr(operation, "done", False):
            operation = await self._run(lambda: self.genai_client.operations.get(operation))
            self._operations[task_id] = operation

        if not getattr(operation, "done", False):
            return TaskInfo(task_id=task_id, status=JobState.POLLING, raw=operation)

        self._operations.pop(task_id, None)
        return self._interpret(task_id, operation)

    def _interpret(self, task_id: str, operation: Any) -> TaskInfo:
        """Map a finished operation to a terminal TaskInfo."""
        error = getattr(operation, "error", None)
        if error:
            message = get_field(error, "message") if isinstance(error, dict) else str(error)
            message = message or json.dumps(error, default=str)
            return TaskInfo(
                task_id=task_id,
                status=JobState.FAILED,
                error=f"Veo Error: {message}",
                content_policy=is_safety_error(message),
                raw=operation,
            )

        response = getattr(operation, "response", None) or getattr(operation, "result", None)
        resource = (
            get_field(first_item(get_field(response, "generated_videos", "generatedVideos")), "video")
            or first_item(get_field(response, "videos"))
            or get_field(response, "video")
        )
        uri = get_field(resource, "uri")
        if isinstance(uri, str) and uri:
            return TaskInfo(task_id=task_id, status=JobState.SUCCEEDED, result_url=uri, raw=operation)

        reasons = get_field(response, "rai_media_filtered_reasons", "raiMediaFilteredReasons")
        if reasons:
            return TaskInfo(
                task_id=task_id,
                status=JobState.FAILED,
                error=(
                    "提示词触发安全策略 (Safety Policy Conflict): 系统认为您的描述可能包含敏感或违规内容，"
                    f"已拒绝生成。({', '.join(str(r) for r in reasons)})"
                ),
                content_policy=True,
                raw=operation,
            )

        return TaskInfo(
            task_id=task_id,
            status=JobState.FAILED,
            error=f"Veo 生成无结果: 可能被系统拦截或模型限制。详情: {_diagnostic(response)}",
            raw=operation,
        )

    def download_url(self, result_url: str) -> str:
        """Veo file URIs need the API key as a query parameter."""
        if result_url.startswith("data:") or "key=" in result_url:
            return result_url
        separator = "&" if "?" in result_url else "?"
        return f"{result_url}{separator}key={self._api_key}"


def _diagnostic(response: Any) -> str:
    if response is None:
        return "No response body"
    dump = getattr(response, "model_dump_json", None)
    if callable(dump):
        try:
            return dump(exclude_none=True)[:150]
        except (TypeError, ValueError):
            pass
    return json.dumps(response, default=str, ensure_ascii=False)[:150]
