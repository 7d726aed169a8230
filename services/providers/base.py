"""
Base enums, data classes and shared transport plumbing for AI providers.

This module defines the core abstractions that every transport adapter and
video backend builds on, ensuring a consistent interface across vendors.
"""

import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Union

import httpx

logger = logging.getLogger(__name__)


# ============ Enums ============


class ProviderKind(StrEnum):
    """Backend family a model identifier routes to."""

    GOOGLE = "google"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    DEEPSEEK = "deepseek"
    XAI = "xai"
    JIMENG = "jimeng"  # Native signed API
    JIMENG_WEB = "jimeng_web"  # Web-session API
    QWEN = "qwen"
    OTHER = "other"  # Generic OpenAI-compatible proxy

    @classmethod
    def parse(cls, value: "str | ProviderKind") -> "ProviderKind":
        """Parse a provider string, accepting hyphenated spellings (``jimeng-web``)."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower().replace("-", "_"))


class ModelRole(StrEnum):
    """Generation task categories, each bound to one model identifier."""

    SCRIPT_ANALYSIS = "script_analysis"
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    AUDIO_GENERATION = "audio_generation"
    CHAT_ASSISTANT = "chat_assistant"


class JobState(StrEnum):
    """Lifecycle of an asynchronous video job."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


# Provider status vocabulary; numeric codes are Jimeng's (10 done, 30 failed)
SUCCESS_STATUSES = {"success", "succeeded", "completed", "done", "10"}
FAILURE_STATUSES = {"failed", "error", "30"}


def normalize_status(status: Any) -> JobState:
    """Map a provider status value to SUCCEEDED, FAILED, or POLLING."""
    if isinstance(status, bool) or status is None:
        return JobState.POLLING
    value = str(status).strip().lower()
    if value in SUCCESS_STATUSES:
        return JobState.SUCCEEDED
    if value in FAILURE_STATUSES:
        return JobState.FAILED
    return JobState.POLLING


# ============ Content Parts ============

DATA_URI_PREFIX = "data:"


@dataclass
class TextPart:
    """Plain text segment of a request."""

    text: str


@dataclass
class InlineBinaryPart:
    """Inline binary payload (usually an image), base64-encoded."""

    mime_type: str
    data: str  # base64 without the data: prefix

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str = "image/png") -> "InlineBinaryPart":
        return cls(mime_type=mime_type, data=base64.b64encode(raw).decode("ascii"))

    @classmethod
    def from_data_uri(cls, uri: str, default_mime: str = "image/png") -> "InlineBinaryPart":
        """
        Build a part from a data URI or a bare base64 string.

        ``data:image/jpeg;base64,/9j/...`` keeps its declared type; bare base64
        is assumed to be ``default_mime``.
        """
        if uri.startswith(DATA_URI_PREFIX):
            header, _, payload = uri.partition(",")
            mime_type = header[len(DATA_URI_PREFIX):].split(";")[0] or default_mime
            return cls(mime_type=mime_type, data=payload)
        return cls(mime_type=default_mime, data=uri)

    def to_data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.data)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 payload: {e}")


ContentPart = Union[TextPart, InlineBinaryPart]


def ensure_data_uri(value: str, mime_type: str = "image/png") -> str:
    """Normalize a bare base64 string to a data URI; URLs pass through."""
    if value.startswith(DATA_URI_PREFIX) or value.startswith(("http://", "https://")):
        return value
    return f"data:{mime_type};base64,{value}"


# ============ Data Classes ============


@dataclass
class Credential:
    """A stored API credential for one provider."""

    id: str
    provider: ProviderKind
    key: str
    secret: str | None = None
    base_url: str | None = None
    label: str = ""
    is_active: bool = False
    usage_count: int = 0
    last_used: datetime | None = None

    def __post_init__(self):
        self.provider = ProviderKind.parse(self.provider)

    @property
    def has_base_url(self) -> bool:
        return bool(self.base_url and self.base_url.strip())


@dataclass
class GenerationRequest:
    """Unified generation request that works across all transports."""

    parts: list[ContentPart] = field(default_factory=list)
    system_instruction: str | None = None
    temperature: float | None = None
    json_mode: bool = False

    @classmethod
    def from_prompt(
        cls,
        prompt: str,
        images: list[InlineBinaryPart] | None = None,
        **kwargs,
    ) -> "GenerationRequest":
        """Build a request with images first, then the prompt text."""
        parts: list[ContentPart] = list(images or [])
        parts.append(TextPart(prompt))
        return cls(parts=parts, **kwargs)

    @property
    def text(self) -> str:
        """All text parts joined with newlines."""
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def images(self) -> list[InlineBinaryPart]:
        return [p for p in self.parts if isinstance(p, InlineBinaryPart)]


@dataclass
class GenerationResult:
    """Unified generation result from any transport."""

    text: str = ""
    raw: Any = None
    # Best-effort image extracted from the response (data URI or http URL)
    inline_image: str | None = None
    provider: str = ""
    model: str = ""
    # Credential to report usage against; None when an env fallback was used
    credential_id: str | None = None
    duration: float = 0.0


@dataclass
class GridSpec:
    """Rows × columns layout of a composite storyboard image."""

    rows: int
    cols: int

    def __post_init__(self):
        if self.rows < 1 or self.cols < 1:
            raise ValueError(f"Grid must be at least 1x1, got {self.rows}x{self.cols}")

    @property
    def count(self) -> int:
        return self.rows * self.cols

    @classmethod
    def square(cls, size: int) -> "GridSpec":
        return cls(rows=size, cols=size)


@dataclass
class VideoMotion:
    """Camera motion hints folded into the video prompt."""

    motion_type: str = "auto"  # dolly_in, pan_left, tilt_up, rotate_cw, ...
    intensity: int = 5  # 1-10
    motion_prompt: str | None = None
    custom_instruction: str | None = None
    is_speaking: bool = False


@dataclass
class VideoRequest:
    """Request for an image-to-video job."""

    prompt: str
    start_frame: InlineBinaryPart
    end_frame: InlineBinaryPart | None = None
    reference_images: list[InlineBinaryPart] = field(default_factory=list)
    duration: int = 5  # seconds
    aspect_ratio: str = "16:9"
    motion: VideoMotion = field(default_factory=VideoMotion)
    style: str | None = None
    # Filled by the engine from reference analysis
    identity: str | None = None


@dataclass
class SubmitResult:
    """Outcome of submitting a video job: a task to poll, or an immediate URL."""

    task_id: str | None = None
    result_url: str | None = None
    raw: Any = None


@dataclass
class TaskInfo:
    """Standard task status response for async backends."""

    task_id: str
    status: JobState  # POLLING while running, then SUCCEEDED or FAILED
    result_url: str | None = None
    error: str | None = None
    content_policy: bool = False
    raw: Any = None


# ============ Authentication Strategies ============


class AuthStrategy(ABC):
    """Base class for authentication strategies."""

    @abstractmethod
    def apply(self, headers: dict, **kwargs) -> dict:
        """Apply authentication to request headers."""
        pass


class BearerTokenAuth(AuthStrategy):
    """Bearer token authentication (Authorization: Bearer xxx)."""

    def __init__(self, token: str):
        self.token = token

    def apply(self, headers: dict, **kwargs) -> dict:
        headers["Authorization"] = f"Bearer {self.token}"
        return headers


class ApiKeyHeaderAuth(AuthStrategy):
    """API key header authentication (X-API-Key: xxx or custom header)."""

    def __init__(self, api_key: str, header_name: str = "X-API-Key"):
        self.api_key = api_key
        self.header_name = header_name

    def apply(self, headers: dict, **kwargs) -> dict:
        headers[self.header_name] = self.api_key
        return headers


class AccessKeyPairAuth(AuthStrategy):
    """Access/secret key pair sent as headers (Jimeng native API)."""

    def __init__(self, access_key: str, secret_key: str | None):
        self.access_key = access_key
        self.secret_key = secret_key

    def apply(self, headers: dict, **kwargs) -> dict:
        headers["X-Access-Key"] = self.access_key
        if self.secret_key:
            headers["X-Secret-Key"] = self.secret_key
        return headers


# ============ Shared Implementations ============

SAFETY_KEYWORDS = [
    "safety",
    "blocked",
    "content_policy",
    "content policy",
    "sensitive",
    "moderation",
    "violation",
    "安全",
    "敏感",
    "违规",
]


def is_safety_error(error_msg: str) -> bool:
    """Check if an error is a safety/content policy error."""
    error_lower = error_msg.lower()
    return any(keyword in error_lower for keyword in SAFETY_KEYWORDS)


def extract_error_message(payload: Any, fallback: str = "") -> str:
    """
    Pull a provider error message out of a decoded body.

    Looks at ``message``, ``error`` (string or ``{"message": ...}``) and
    ``errmsg``, falling back to ``fallback``.
    """
    if not isinstance(payload, dict):
        return fallback
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    for key in ("message", "error", "errmsg", "error_message"):
        value = payload.get(key)
        if value and isinstance(value, str):
            return value
    return fallback


class HTTPTransportMixin:
    """
    Mixin providing a lazily created ``httpx.AsyncClient``.

    Subclasses set ``_timeout`` and may pass a custom transport (tests use
    ``httpx.MockTransport``).
    """

    _client: httpx.AsyncClient | None = None
    _transport: httpx.AsyncBaseTransport | None = None
    _timeout: float = 120.0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _extract_error_from_response(self, response: httpx.Response) -> str:
        """Extract error message from response, falling back to the raw body."""
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        return extract_error_message(data, response.text or f"HTTP {response.status_code}")


class TransportAdapter(ABC):
    """One wire protocol for text (and, where supported, image) generation."""

    name: str = "transport"

    @abstractmethod
    async def generate(
        self,
        model_id: str,
        request: GenerationRequest,
        credential: Credential,
    ) -> GenerationResult:
        """Send the request and return the normalized result."""
        ...

    async def close(self) -> None:
        pass


class VideoBackend(HTTPTransportMixin, ABC):
    """
    A submit → poll → download video provider.

    Concrete backends translate provider payloads; the lifecycle itself
    (intervals, ceilings, cancellation, state) is owned by AsyncJobPoller.
    """

    name: str = "video"

    @abstractmethod
    async def submit(self, request: VideoRequest, model_id: str) -> SubmitResult:
        """Submit the job and return a task id or an immediate result URL."""
        ...

    @abstractmethod
    async def poll(self, task_id: str) -> TaskInfo:
        """Check task status once."""
        ...

    def download_url(self, result_url: str) -> str:
        """URL actually fetched for the result; backends may add auth."""
        return result_url

    async def download(self, result_url: str) -> bytes:
        """
        Download generated content from URL.

        Args:
            result_url: URL to download from (http/https URL or data: URL)

        Returns:
            Downloaded bytes
        """
        if result_url.startswith(DATA_URI_PREFIX):
            return InlineBinaryPart.from_data_uri(result_url).to_bytes()

        # Fresh client: the API client may carry auth headers meant for the provider only
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport, follow_redirects=True
        ) as client:
            response = await client.get(result_url)
            response.raise_for_status()
            return response.content
