"""
Anthropic Messages API transport.
"""

import logging
import time
from typing import Any

import httpx

from core.exceptions import MalformedResponseError

from ..response_extractor import ResponseExtractor
from .base import (
    ApiKeyHeaderAuth,
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

DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7


def messages_endpoint(base_url: str | None) -> str:
    """``{base}/messages``, unless the base URL already points there."""
    endpoint = (base_url or DEFAULT_BASE_URL).strip().rstrip("/")
    if endpoint.lower().endswith("/messages"):
        return endpoint
    return endpoint + "/messages"


def build_content_blocks(request: GenerationRequest) -> list[dict[str, Any]]:
    blocks = []
    for part in request.parts:
        if isinstance(part, TextPart):
            blocks.append({"type": "text", "text": part.text})
        elif isinstance(part, InlineBinaryPart):
            blocks.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": part.mime_type, "data": part.data},
                }
            )
    return blocks


class AnthropicTransportAdapter(HTTPTransportMixin, TransportAdapter):
    """POST ``{base}/messages`` with ``x-api-key`` auth."""

    name = "anthropic"

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

    async def generate(
        self,
        model_id: str,
        request: GenerationRequest,
        credential: Credential,
    ) -> GenerationResult:
        start_time = time.time()
        endpoint = messages_endpoint(credential.base_url)
        headers = ApiKeyHeaderAuth(credential.key, header_name="x-api-key").apply(
            {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        )

        payload: dict[str, Any] = {
            "model": model_id,
            "messages": [{"role": "user", "content": build_content_blocks(request)}],
            "max_tokens": MAX_TOKENS,
            "temperature": (
                request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE
            ),
        }
        if request.system_instruction:
            payload["system"] = request.system_instruction

        client = await self._get_client()
        logger.info(f"[Anthropic] POST {endpoint} model={model_id}")
        response = await client.post(endpoint, json=payload, headers=headers)

        if response.status_code not in (200, 201):
            raise classify_error(response, provider=credential.provider, model=model_id).to_exception()

        try:
            data = response.json()
        except ValueError:
            raise MalformedResponseError(
                f"Non-JSON response: {response.text[:150]}",
                provider=credential.provider,
                model=model_id,
            )

        return GenerationResult(
            text=self._extractor.extract_text(data),
            raw=data,
            provider=str(credential.provider),
            model=model_id,
            credential_id=credential.id,
            duration=time.time() - start_time,
        )
