"""
Request dispatcher: picks a credential and a transport adapter, performs the
call, and funnels every failure through the error classifier.

Adapter selection depends on both the provider and the credential:

    google, no base URL            -> GoogleTransportAdapter (SDK)
    google with base URL           -> OpenAICompatTransportAdapter
    openai/deepseek/xai/other/jimeng -> OpenAICompatTransportAdapter
    anthropic                      -> AnthropicTransportAdapter
    anything else (jimeng_web, qwen) -> provider_unsupported

Image calls route Jimeng to its image client and Qwen to the DashScope edit
relay; Qwen only edits an existing image.
"""

import logging

import httpx

from core.config import Settings, get_settings
from core.exceptions import OrchestrationError, ProviderUnsupportedError

from .providers.anthropic import AnthropicTransportAdapter
from .providers.base import (
    Credential,
    GenerationRequest,
    GenerationResult,
    InlineBinaryPart,
    ProviderKind,
    TransportAdapter,
)
from .providers.credentials import CredentialStore
from .providers.errors import to_orchestration_error
from .providers.google import GoogleTransportAdapter
from .providers.jimeng import JimengImageClient
from .providers.openai_compat import OpenAICompatTransportAdapter
from .providers.prompts import INPAINT_PREFIX, build_inpaint_prompt
from .providers.qwen import QwenImageEditClient

logger = logging.getLogger(__name__)

OPENAI_COMPATIBLE = {
    ProviderKind.OPENAI,
    ProviderKind.DEEPSEEK,
    ProviderKind.XAI,
    ProviderKind.OTHER,
    ProviderKind.JIMENG,
}

JIMENG_PROVIDERS = {ProviderKind.JIMENG, ProviderKind.JIMENG_WEB}


class RequestDispatcher:
    """Routes one generation call to the right wire protocol."""

    def __init__(
        self,
        credentials: CredentialStore,
        settings: Settings | None = None,
        google: GoogleTransportAdapter | None = None,
        openai_compat: OpenAICompatTransportAdapter | None = None,
        anthropic: AnthropicTransportAdapter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._credentials = credentials
        self._settings = settings or get_settings()
        self._transport = transport
        self.google = google or GoogleTransportAdapter()
        self.openai_compat = openai_compat or OpenAICompatTransportAdapter(
            timeout=self._settings.http_timeout, transport=transport
        )
        self.anthropic = anthropic or AnthropicTransportAdapter(
            timeout=self._settings.http_timeout, transport=transport
        )

    def resolve_credential(self, provider: ProviderKind, model_id: str) -> Credential:
        """
        Credential for ``provider``, or an empty one when nothing is configured.

        The empty credential is sent as-is so keyless relays still work; a
        provider that needs a key rejects it and the 401 is classified like any
        other auth failure. Its blank id is never counted.
        """
        credential = self._credentials.resolve_credential(provider)
        if credential is None:
            logger.warning(f"[Dispatcher] No API key configured for {provider}, calling {model_id} without one")
            return Credential(id="", provider=provider, key="")
        return credential

    def select_adapter(self, provider: ProviderKind, credential: Credential) -> TransportAdapter:
        """Choose the transport for a provider and credential pair."""
        if provider is ProviderKind.GOOGLE:
            return self.openai_compat if credential.has_base_url else self.google
        if provider in OPENAI_COMPATIBLE:
            return self.openai_compat
        if provider is ProviderKind.ANTHROPIC:
            return self.anthropic
        raise ProviderUnsupportedError(f"Unsupported provider: {provider}", provider=provider)

    async def dispatch(
        self,
        model_id: str,
        provider: ProviderKind,
        request: GenerationRequest,
    ) -> GenerationResult:
        """
        Send a text/multimodal request and return ``{text, raw}``.

        The result carries ``credential_id`` for usage reporting.

        Raises:
            OrchestrationError: any failure, classified
        """
        credential = self.resolve_credential(provider, model_id)
        adapter = self.select_adapter(provider, credential)
        logger.info(f"[Dispatcher] {model_id} -> {provider} via {adapter.name}")

        try:
            return await adapter.generate(model_id, request, credential)
        except OrchestrationError:
            raise
        except Exception as e:
            logger.error(f"[Dispatcher] {adapter.name} call failed for {model_id}: {e}")
            raise to_orchestration_error(e, provider=provider, model=model_id) from e

    async def dispatch_image(
        self,
        model_id: str,
        provider: ProviderKind,
        request: GenerationRequest,
        aspect_ratio: str = "16:9",
        image_size: str = "1K",
    ) -> GenerationResult:
        """
        Image generation; the result's ``inline_image`` is always set.

        Raises:
            OrchestrationError: any failure, classified
        """
        credential = self.resolve_credential(provider, model_id)
        logger.info(f"[Dispatcher] image {model_id} -> {provider} ratio={aspect_ratio}")

        try:
            if provider in JIMENG_PROVIDERS:
                client = JimengImageClient(
                    credential,
                    default_base_url=self._settings.jimeng_base_url,
                    timeout=self._settings.http_timeout,
                    transport=self._transport,
                )
                try:
                    return await client.generate_image(
                        model_id, request.text, aspect_ratio, reference_images=request.images
                    )
                finally:
                    await client.close()

            if provider is ProviderKind.QWEN:
                return await self._qwen_edit(model_id, credential, request)

            adapter = self.select_adapter(provider, credential)
            if adapter is self.google:
                return await self.google.generate_image(
                    model_id, request, credential, aspect_ratio, image_size
                )
            if adapter is self.openai_compat:
                return await self.openai_compat.generate_image(
                    model_id, request, credential, aspect_ratio, image_size
                )
            raise ProviderUnsupportedError(
                f"Unsupported provider for image generation: {provider}",
                provider=provider,
                model=model_id,
            )
        except OrchestrationError:
            raise
        except Exception as e:
            logger.error(f"[Dispatcher] image call failed for {model_id}: {e}")
            raise to_orchestration_error(e, provider=provider, model=model_id) from e

    async def _qwen_edit(
        self,
        model_id: str,
        credential: Credential,
        request: GenerationRequest,
    ) -> GenerationResult:
        if not request.images:
            raise ProviderUnsupportedError(
                f"Qwen 仅支持图片编辑，请提供原图 (Qwen only edits an existing image: {model_id})",
                provider=ProviderKind.QWEN,
                model=model_id,
            )
        client = QwenImageEditClient(
            credential,
            default_base_url=self._settings.qwen_base_url,
            timeout=self._settings.http_timeout,
            transport=self._transport,
        )
        try:
            return await client.edit_image(model_id, request.images[0], request.text)
        finally:
            await client.close()

    async def dispatch_edit(
        self,
        model_id: str,
        provider: ProviderKind,
        original: InlineBinaryPart,
        prompt: str,
        mask: InlineBinaryPart | None = None,
        aspect_ratio: str = "16:9",
        image_size: str = "4K",
        multiview: bool = False,
    ) -> GenerationResult:
        """
        Repaint part of ``original`` (the white area of ``mask``, when given).

        Jimeng receives the original as its reference image with an
        ``[INPAINT MODE]`` prompt and no mask. Qwen receives the bare
        instruction. The SDK and proxy paths receive original, mask and prompt
        in that order.

        Raises:
            OrchestrationError: any failure, classified
        """
        if provider is ProviderKind.QWEN:
            request = GenerationRequest.from_prompt(prompt, images=[original])
        else:
            edit_prompt = build_inpaint_prompt(prompt, aspect_ratio, multiview, masked=mask is not None)
            if provider in JIMENG_PROVIDERS:
                request = GenerationRequest.from_prompt(f"{INPAINT_PREFIX} {edit_prompt}", images=[original])
            else:
                images = [original] if mask is None else [original, mask]
                request = GenerationRequest.from_prompt(edit_prompt, images=images)

        logger.info(f"[Dispatcher] edit {model_id} -> {provider} masked={mask is not None}")
        return await self.dispatch_image(model_id, provider, request, aspect_ratio, image_size)

    async def close(self) -> None:
        await self.openai_compat.close()
        await self.anthropic.close()
        await self.google.close()
