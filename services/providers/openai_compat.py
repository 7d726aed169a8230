"""
OpenAI-compatible chat-completions transport.

Serves OpenAI, DeepSeek, xAI, Jimeng text, generic proxies (``other``), and
Google models when the credential points at a proxy base URL. Images are
sent as ``image_url`` content items carrying data URIs.
"""

import logging
import re
import time
from typing import Any

import httpx

from core.exceptions import MalformedResponseError

from ..response_extractor import ResponseExtractor
from .base import (
    BearerTokenAuth,
    Credential,
    GenerationRequest,
    GenerationResult,
    HTTPTransportMixin,
    InlineBinaryPart,
    TextPart,
    TransportAdapter,
)
from .errors import classify_error

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TEMPERATURE = 0.7
JSON_ONLY_SUFFIX = "\n\n(IMPORTANT: Return result as raw JSON only)"

# Aspect ratio to size mapping understood by image-capable proxies
ASPECT_RATIO_SIZES = {
    "1:1": "1024x1024",
    "16:9": "1280x720",
    "9:16": "720x1280",
    "4:3": "1280x960",
    "3:4": "960x1280",
    "21:9": "1280x544",
}

RATIO_SUFFIX_PATTERN = re.compile(r"-\d+-\d+$")
IMAGE_LABEL_PATTERN = re.compile(r"\s*\(Image\s+\d+:\d+\)\s*", re.IGNORECASE)


def normalize_chat_endpoint(base_url: str | None) -> str:
    """
    Build the chat-completions URL from a base URL.

    Strips a trailing slash, appends ``/v1`` when missing, then
    ``/chat/completions``. URLs already ending in ``/chat/completions`` are
    used as-is.
    """
    endpoint = (base_url or DEFAULT_BASE_URL).strip().rstrip("/")
    if endpoint.lower().endswith("/chat/completions"):
        return endpoint
    if not endpoint.lower().endswith("/v1"):
        endpoint += "/v1"
    return endpoint + "/chat/completions"


def ratio_model_name(model_id: str, aspect_ratio: str) -> str:
    """``gemini-3-pro-image`` + ``16:9`` → ``gemini-3-pro-image-16-9``."""
    clean = RATIO_SUFFIX_PATTERN.sub("", model_id)
    clean = IMAGE_LABEL_PATTERN.sub("", clean)
    return f"{clean}-{aspect_ratio.replace(':', '-')}"


def build_messages(request: GenerationRequest) -> list[dict[str, Any]]:
    """Optional system message, then one user message of content items."""
    messages: list[dict[str, Any]] = []
    if request.system_instruction:
        messages.append({"role": "system", "content": request.system_instruction})

    content = []
    for part in request.parts:
        if isinstance(part, TextPart):
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, InlineBinaryPart):
            content.append({"type": "image_url", "image_url": {"url": part.to_data_uri()}})
    messages.append({"role": "user", "content": content})
    return messages


def apply_json_mode(payload: dict[str, Any]) -> None:
    """Request a JSON object and nudge models that ignore response_format."""
    payload["response_format"] = {"type": "json_object"}
    last = payload["messages"][-1]
    content = last["content"]
    if isinstance(content, str):
        if "JSON" not in content:
            last["content"] = content + JSON_ONLY_SUFFIX
        return
    for item in content:
        if item.get("type") == "text":
            if "JSON" not in item["text"]:
                item["text"] += JSON_ONLY_SUFFIX
            break


class OpenAICompatTransportAdapter(HTTPTransportMixin, TransportAdapter):
    """Chat completions over httpx with Bearer auth."""

    name = "openai_compat"

    def __init__(
        self,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
        extractor: ResponseExtractor | None = None,
    ):
        self._timeout = timeout
        self._transport = transport
        self._client = None
        self._extractor = extractor or ResponseExtractor()

    async def _post(
        self,
        payload: dict[str, Any],
        credential: Credential,
        model_id: str,
    ) -> Any:
        endpoint = normalize_chat_endpoint(credential.base_url)
        headers = BearerTokenAuth(credential.key).apply({"Content-Type": "application/json"})

        client = await self._get_client()
        logger.info(f"[OpenAICompat] POST {endpoint} model={payload.get('model')}")
        response = await client.post(endpoint, json=payload, headers=headers)

        if response.status_code not in (200, 201):
            classified = classify_error(response, provider=credential.provider, model=model_id)
            logger.warning(f"[OpenAICompat] HTTP {response.status_code}: {classified.kind}")
            raise classified.to_exception()

        try:
            return response.json()
        except ValueError:
            raise MalformedResponseError(
                f"Non-JSON response: {response.text[:150]}",
                provider=credential.provider,
                model=model_id,
            )

    async def generate(
        self,
        model_id: str,
        request: GenerationRequest,
        credential: Credential,
    ) -> GenerationResult:
        start_time = time.time()
        payload: dict[str, Any] = {
            "model": model_id,
            "messages": build_messages(request),
            "temperature": (
                request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE
            ),
        }
        if request.json_mode:
            apply_json_mode(payload)

        data = await self._post(payload, credential, model_id)
        extraction = self._extractor.extract(data)
        return GenerationResult(
            text=extraction.text,
            raw=data,
            inline_image=extraction.inline_image,
            provider=str(credential.provider),
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
        image_size: str = "1K",
    ) -> GenerationResult:
        """
        Image generation through a chat-completions proxy.

        Size hints go both at top level and in ``extra_body``; Gemini image
        models also get a ratio-suffixed model name and a ``generationConfig``.

        Raises:
            MalformedResponseError: no image could be extracted
        """
        start_time = time.time()
        size = ASPECT_RATIO_SIZES.get(aspect_ratio, "1024x1024")
        is_gemini = "gemini" in model_id.lower()

        effective_model = model_id
        if is_gemini and "image" in model_id.lower():
            effective_model = ratio_model_name(model_id, aspect_ratio)
            logger.info(f"[OpenAICompat] Model name adjusted: {model_id} -> {effective_model}")

        payload: dict[str, Any] = {
            "model": effective_model,
            "messages": build_messages(request),
            "extra_body": {"size": size},
            "size": size,
        }
        if is_gemini:
            payload["generationConfig"] = {
                "responseModalities": ["Image", "Text"],
                "imageConfig": {
                    "aspectRatio": aspect_ratio,
                    "imageSize": image_size if image_size in ("1K", "2K", "4K") else "1K",
                },
            }

        data = await self._post(payload, credential, model_id)
        extraction = self._extractor.extract(data)
        if not extraction.inline_image:
            raise MalformedResponseError(
                "生图失败：未能从 AI 响应中提取到图像数据。请检查模型是否支持生图。"
                " (No image found in response)",
                provider=credential.provider,
                model=model_id,
            )

        return GenerationResult(
            text=extraction.text,
            raw=data,
            inline_image=extraction.inline_image,
            provider=str(credential.provider),
            model=effective_model,
            credential_id=credential.id,
            duration=time.time() - start_time,
        )
