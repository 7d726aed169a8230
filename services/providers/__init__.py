"""
AI provider abstraction layer for multi-vendor support.

This module provides the transports and video backends for Google (SDK),
OpenAI-compatible proxies, Anthropic, the two Jimeng APIs and the Qwen
image-edit relay.
"""

from .anthropic import AnthropicTransportAdapter
from .base import (
    AccessKeyPairAuth,
    ApiKeyHeaderAuth,
    # Authentication strategies
    AuthStrategy,
    BearerTokenAuth,
    ContentPart,
    # Data classes
    Credential,
    GenerationRequest,
    GenerationResult,
    GridSpec,
    HTTPTransportMixin,
    InlineBinaryPart,
    # Enums
    JobState,
    ModelRole,
    ProviderKind,
    SubmitResult,
    TaskInfo,
    TextPart,
    # Base classes
    TransportAdapter,
    VideoBackend,
    VideoMotion,
    VideoRequest,
    # Utilities
    is_safety_error,
    normalize_status,
)
from .credentials import CredentialStore
from .errors import ClassifiedError, classify_error
from .google import GoogleTransportAdapter, VeoVideoBackend
from .jimeng import JimengImageClient, JimengVideoBackend, JimengWebVideoBackend
from .openai_compat import OpenAICompatTransportAdapter
from .qwen import QwenImageEditClient

__all__ = [
    # Enums
    "ProviderKind",
    "ModelRole",
    "JobState",
    # Data classes
    "ContentPart",
    "Credential",
    "GenerationRequest",
    "GenerationResult",
    "GridSpec",
    "InlineBinaryPart",
    "SubmitResult",
    "TaskInfo",
    "TextPart",
    "VideoMotion",
    "VideoRequest",
    # Auth
    "AuthStrategy",
    "BearerTokenAuth",
    "ApiKeyHeaderAuth",
    "AccessKeyPairAuth",
    # Base classes
    "HTTPTransportMixin",
    "TransportAdapter",
    "VideoBackend",
    # Credentials and errors
    "CredentialStore",
    "ClassifiedError",
    "classify_error",
    "is_safety_error",
    "normalize_status",
    # Implementations
    "GoogleTransportAdapter",
    "VeoVideoBackend",
    "OpenAICompatTransportAdapter",
    "AnthropicTransportAdapter",
    "JimengVideoBackend",
    "JimengWebVideoBackend",
    "JimengImageClient",
    "QwenImageEditClient",
]
