"""
Orchestration engine: the inbound surface of the generation core.

Built from an explicit ``EngineConfig`` (role -> model mapping plus stored
credentials) instead of ambient global state. Every operation resolves the
model for a role, resolves the provider for the model, and hands off to the
dispatcher or a video poller. Usage is recorded once per successful call.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from core.config import Settings, get_settings
from core.exceptions import (
    MalformedResponseError,
    OrchestrationError,
    ParseFailureError,
    ProviderUnsupportedError,
)

from .dispatcher import RequestDispatcher
from .image_grid import resize_to_width, slice_grid_to_data_uris
from .json_repair import JSONRepairParser
from .model_router import ProviderResolver
from .providers.base import (
    Credential,
    GenerationRequest,
    GenerationResult,
    GridSpec,
    InlineBinaryPart,
    JobState,
    ModelRole,
    ProviderKind,
    TextPart,
    VideoBackend,
    VideoRequest,
)
from .providers.credentials import CredentialStore
from .providers.errors import to_orchestration_error
from .providers.google import VeoVideoBackend
from .providers.jimeng import JimengVideoBackend, JimengWebVideoBackend
from .providers.prompts import IDENTITY_PROMPT
from .video_jobs import AsyncJobPoller, VideoJob, VideoJobHandle

logger = logging.getLogger(__name__)


# ============ Configuration ============


@dataclass
class RoleModels:
    """Model identifier bound to each role."""

    script_analysis: str = "gemini-3-flash"
    image_generation: str = "gemini-3-pro-image"
    video_generation: str = "veo-3.1-generate-preview"
    audio_generation: str = "future-audio-model"
    chat_assistant: str = "gemini-3-flash"

    def model_for(self, role: ModelRole | str) -> str:
        return getattr(self, ModelRole(role).value)


@dataclass
class EngineConfig:
    """Per-engine configuration passed in by the caller."""

    roles: RoleModels = field(default_factory=RoleModels)
    credentials: list[Credential] = field(default_factory=list)
    # Extra model -> provider table entries
    model_overrides: dict[str, str] = field(default_factory=dict)


@dataclass
class GridResult:
    """Composite storyboard image plus its panels."""

    full_image: str  # data URI or http(s) URL
    panels: list[str]  # PNG data URIs, row-major
    grid: GridSpec
    provider: str = ""
    model: str = ""


# ============ Engine ============


class OrchestrationEngine:
    """Facade over resolver, credentials, dispatcher, parser, slicer and poller."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        dispatcher: RequestDispatcher | None = None,
    ):
        self.config = config or EngineConfig()
        self.settings = settings or get_settings()
        self._transport = transport
        self.credentials = CredentialStore(self.config.credentials, self.settings)
        self.resolver = ProviderResolver(self.config.model_overrides)
        self.dispatcher = dispatcher or RequestDispatcher(
            self.credentials, self.settings, transport=transport
        )
        self.json_parser = JSONRepairParser()

    def model_for(self, role: ModelRole | str) -> str:
        return self.config.roles.model_for(role)

    def _route(self, role: ModelRole | str) -> tuple[str, ProviderKind]:
        model_id = self.model_for(role)
        return model_id, self.resolver.resolve(model_id)

    # ============ Text / multimodal ============

    async def generate(
        self,
        role: ModelRole | str,
        request: GenerationRequest | VideoRequest,
    ) -> GenerationResult | VideoJobHandle:
        """
        Run one generation for ``role``.

        A VideoRequest under the video role starts a job and returns its
        handle; everything else returns ``{text, raw}`` as a GenerationResult.
        """
        role = ModelRole(role)
        if isinstance(request, VideoRequest):
            if role is not ModelRole.VIDEO_GENERATION:
                raise ValueError(f"VideoRequest requires role {ModelRole.VIDEO_GENERATION}, got {role}")
            return await self.submit_video(request)

        model_id, provider = self._route(role)
        result = await self.dispatcher.dispatch(model_id, provider, request)
        self.credentials.report_usage(result.credential_id)
        return result

    async def parse_structured(
        self,
        role: ModelRole | str,
        request: GenerationRequest,
        schema_hint: str | None = None,
    ) -> Any:
        """
        Generate in JSON mode and parse the output tolerantly.

        Raises:
            ParseFailureError: blank output or unrecoverable JSON
            OrchestrationError: the generation call itself failed
        """
        parts = list(request.parts)
        if schema_hint:
            parts.append(TextPart(f"Return JSON matching this structure:\n{schema_hint}"))
        structured = replace(request, parts=parts, json_mode=True)

        result = await self.generate(role, structured)
        value = self.json_parser.parse(result.text)
        if value is None:
            raise ParseFailureError(
                "AI 返回空内容 (Empty response, expected JSON)",
                provider=result.provider,
                model=result.model,
            )
        return value

    async def describe_identity(self, reference_images: list[InlineBinaryPart]) -> str:
        """
        Short appearance description used to keep a character consistent across video.

        Failures are logged and yield an empty string.
        """
        if not reference_images:
            return ""
        request = GenerationRequest(parts=[*reference_images, TextPart(IDENTITY_PROMPT)])
        try:
            result = await self.generate(ModelRole.CHAT_ASSISTANT, request)
        except OrchestrationError as e:
            logger.warning(f"[Engine] Reference analysis failed, continuing without identity: {e.message}")
            return ""
        identity = result.text.strip()
        logger.info(f"[Engine] Derived identity: {identity[:80]}")
        return identity

    # ============ Images ============

    async def _load_image_bytes(self, image: str) -> bytes:
        if not image.startswith(("http://", "https://")):
            return InlineBinaryPart.from_data_uri(image).to_bytes()
        async with httpx.AsyncClient(
            timeout=self.settings.download_timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            response = await client.get(image)
            response.raise_for_status()
            return response.content

    async def generate_grid(
        self,
        request: GenerationRequest,
        grid: GridSpec,
        aspect_ratio: str = "16:9",
        image_size: str = "1K",
    ) -> GridResult:
        """
        Generate one composite image and slice it into ``grid`` panels.

        Raises:
            OrchestrationError: generation, download or slicing failed
        """
        model_id, provider = self._route(ModelRole.IMAGE_GENERATION)
        result = await self.dispatcher.dispatch_image(
            model_id, provider, request, aspect_ratio, image_size
        )

        try:
            image_bytes = await self._load_image_bytes(result.inline_image)
        except httpx.HTTPError as e:
            raise to_orchestration_error(e, provider=provider, model=model_id) from e
        except ValueError as e:
            raise MalformedResponseError(
                f"图像数据无效 (Invalid image payload): {e}", provider=provider, model=model_id
            ) from e

        try:
            panels = slice_grid_to_data_uris(image_bytes, grid.rows, grid.cols)
        except (OSError, ValueError) as e:
            logger.error(f"[Engine] Could not slice grid image: {e}")
            raise MalformedResponseError(
                f"返回的图像无法解析 (Returned image could not be decoded): {e}",
                provider=provider,
                model=model_id,
            ) from e

        self.credentials.report_usage(result.credential_id)
        return GridResult(
            full_image=result.inline_image,
            panels=panels,
            grid=grid,
            provider=result.provider,
            model=result.model,
        )

    async def _as_part(self, image: InlineBinaryPart | str) -> InlineBinaryPart:
        if isinstance(image, InlineBinaryPart):
            return image
        if image.startswith(("http://", "https://")):
            return InlineBinaryPart.from_bytes(await self._load_image_bytes(image))
        return InlineBinaryPart.from_data_uri(image)

    async def edit_image(
        self,
        original: InlineBinaryPart | str,
        prompt: str,
        mask: InlineBinaryPart | str | None = None,
        aspect_ratio: str = "16:9",
        image_size: str = "4K",
        multiview: bool = False,
        model_id: str | None = None,
    ) -> GenerationResult:
        """
        Repaint an image, inside the white area of ``mask`` when one is given.

        Uses the image-generation model unless ``model_id`` is passed (for
        example a Qwen edit model). Images may be parts, data URIs or URLs;
        URLs are downloaded first.

        Raises:
            OrchestrationError: download or edit failed
        """
        model_id = model_id or self.model_for(ModelRole.IMAGE_GENERATION)
        provider = self.resolver.resolve(model_id)

        try:
            source = await self._as_part(original)
            mask_part = await self._as_part(mask) if mask is not None else None
        except httpx.HTTPError as e:
            raise to_orchestration_error(e, provider=provider, model=model_id) from e

        result = await self.dispatcher.dispatch_edit(
            model_id,
            provider,
            source,
            prompt,
            mask=mask_part,
            aspect_ratio=aspect_ratio,
            image_size=image_size,
            multiview=multiview,
        )
        self.credentials.report_usage(result.credential_id)
        return result

    # ============ Video ============

    def _video_backend(self, provider: ProviderKind, credential: Credential) -> VideoBackend:
        if provider is ProviderKind.GOOGLE:
            return VeoVideoBackend(
                credential.key, timeout=self.settings.download_timeout, transport=self._transport
            )
        if provider is ProviderKind.JIMENG:
            return JimengVideoBackend(
                credential,
                default_base_url=self.settings.jimeng_base_url,
                timeout=self.settings.http_timeout,
                transport=self._transport,
            )
        if provider is ProviderKind.JIMENG_WEB:
            return JimengWebVideoBackend(
                credential,
                default_base_url=self.settings.jimeng_base_url,
                timeout=self.settings.http_timeout,
                transport=self._transport,
            )
        raise ProviderUnsupportedError(f"Unsupported provider for video: {provider}", provider=provider)

    async def submit_video(
        self,
        request: VideoRequest,
        poll_interval: float | None = None,
    ) -> VideoJobHandle:
        """
        Start a video job and return its handle.

        Frames are downscaled, reference images are condensed into an
        identity description, and the poller runs as a background task.
        An unsupported provider raises immediately. With no credential the job
        still starts with an empty key; provider errors end up on the job.
        """
        model_id, provider = self._route(ModelRole.VIDEO_GENERATION)
        credential = self.dispatcher.resolve_credential(provider, model_id)
        backend = self._video_backend(provider, credential)

        max_width = self.settings.frame_max_width
        try:
            prepared = replace(
                request,
                start_frame=resize_to_width(request.start_frame, max_width),
                end_frame=resize_to_width(request.end_frame, max_width) if request.end_frame else None,
            )
        except (OSError, ValueError) as e:
            await backend.close()
            raise to_orchestration_error(
                f"无法处理视频帧 (Could not read frame image): {e}", provider=provider, model=model_id
            ) from e
        if prepared.reference_images and not prepared.identity:
            prepared.identity = await self.describe_identity(prepared.reference_images) or None

        def on_finished(job: VideoJob) -> None:
            if job.state is JobState.SUCCEEDED:
                self.credentials.report_usage(credential.id)

        poller = AsyncJobPoller(
            backend,
            prepared,
            model_id,
            settings=self.settings,
            poll_interval=poll_interval,
            on_finished=on_finished,
        )
        logger.info(f"[Engine] Video job {poller.job.id}: {model_id} via {provider}")
        return VideoJobHandle.start(poller)

    async def aclose(self) -> None:
        await self.dispatcher.close()
