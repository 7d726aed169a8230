"""
Qwen (DashScope) image edit transport.

Instruction-based edits through a local relay: ``POST {base}/v2/qwen_image_edit``
with Bearer auth and ``{model, image_url, prompt}``. The edited image comes
back as ``data[0].url``.
"""

import logging
import time
from typing import Any

import httpx

from core.exceptions import MalformedResponseError

from ..response_extractor import first_item, get_field
from .base import (
    BearerTokenAuth,
    Credential,
    GenerationResult,
    HTTPTransportMixin,
    InlineBinaryPart,
    ProviderKind,
)
from .errors import classify_error

logger = logging.getLogger(__name__)

DEFAULT_EDIT_MODEL = "qwen-image-edit-plus"
EDIT_PATH = "/v2/qwen_image_edit"


class QwenImageEditClient(HTTPTransportMixin):
    """Edits one image from a text instruction."""

    name = "qwen"

    def __init__(
        self,
        credential: Credential,
        default_base_url: str = "http://127.0.0.1:8046",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._credential = credential
        self._base_url = (credential.base_url or default_base_url).strip().rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client = None

    @property
    def endpoint(self) -> str:
        if self._base_url.lower().endswith(EDIT_PATH):
            return self._base_url
        return self._base_url + EDIT_PATH

    async def edit_image(
        self,
        model_id: str | None,
        image: InlineBinaryPart | str,
        prompt: str,
    ) -> GenerationResult:
        """
        Send ``image`` (data URI or URL) with the edit instruction.

        Raises:
            OrchestrationError: HTTP or body-level failure, classified
            MalformedResponseError: no image URL in the response
        """
        start_time = time.time()
        model_id = model_id or DEFAULT_EDIT_MODEL
        image_url = image.to_data_uri() if isinstance(image, InlineBinaryPart) else image
        payload: dict[str, Any] = {"model": model_id, "image_url": image_url, "prompt": prompt}
        headers = BearerTokenAuth(self._credential.key).apply({"Content-Type": "application/json"})

        client = await self._get_client()
        logger.info(f"[Qwen] POST {self.endpoint} model={model_id}")
        response = await client.post(self.endpoint, json=payload, headers=headers)

        if response.status_code not in (200, 201):
            raise classify_error(response, provider=ProviderKind.QWEN, model=model_id).to_exception()

        try:
            data = response.json()
        except ValueError:
            raise MalformedResponseError(
                f"Qwen 返回了非 JSON 数据: {response.text[:150]}",
                provider=ProviderKind.QWEN,
                model=model_id,
            )

        if isinstance(data, dict) and data.get("error"):
            raise classify_error(
                {"message": f"Qwen 返回错误: {self._extract_error(data)}"},
                provider=ProviderKind.QWEN,
                model=model_id,
            ).to_exception()

        url = get_field(first_item(get_field(data, "data")), "url")
        if not isinstance(url, str) or not url:
            raise MalformedResponseError(
                "Qwen 未能返回有效图片地址 (No edited image URL returned)",
                provider=ProviderKind.QWEN,
                model=model_id,
            )

        logger.info(f"[Qwen] Edit finished in {time.time() - start_time:.1f}s")
        return GenerationResult(
            raw=data,
            inline_image=url,
            provider=str(ProviderKind.QWEN),
            model=model_id,
            credential_id=self._credential.id,
            duration=time.time() - start_time,
        )

    @staticmethod
    def _extract_error(data: dict) -> str:
        error = data["error"]
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)
