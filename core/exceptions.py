"""
Custom exception classes for the engine.

All exceptions inherit from AppException and include:
- error_code: Machine-readable error code for i18n
- message: Human-readable error message

Every failure leaving the orchestration core is an OrchestrationError carrying
exactly one ErrorKind.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Classification of orchestration failures."""

    NETWORK_UNREACHABLE = "network_unreachable"
    AUTH_INVALID = "auth_invalid"
    MODEL_NOT_FOUND = "model_not_found"
    CONTENT_POLICY_REJECTED = "content_policy_rejected"
    MALFORMED_RESPONSE = "malformed_response"
    PARSE_FAILURE = "parse_failure"
    PROVIDER_UNSUPPORTED = "provider_unsupported"
    UNKNOWN = "unknown"


class AppException(Exception):
    """Base exception for all engine errors."""

    error_code: str = "internal_error"
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)


class OrchestrationError(AppException):
    """Raised when a generation request fails anywhere in the pipeline."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    error_code = ErrorKind.UNKNOWN.value
    message = "Generation failed"

    def __init__(
        self,
        message: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if provider:
            details["provider"] = str(provider)
        if model:
            details["model"] = model
        super().__init__(message, self.kind.value, details)
        self.provider = provider
        self.model = model

    @property
    def detail(self) -> str:
        return self.message


class NetworkUnreachableError(OrchestrationError):
    """Raised when the provider endpoint cannot be reached."""

    kind = ErrorKind.NETWORK_UNREACHABLE
    message = "Network unreachable"


class AuthInvalidError(OrchestrationError):
    """Raised when the provider rejects the credential."""

    kind = ErrorKind.AUTH_INVALID
    message = "Authentication failed"


class ModelNotFoundError(OrchestrationError):
    """Raised when the provider does not serve the requested model."""

    kind = ErrorKind.MODEL_NOT_FOUND
    message = "Model not found"


class ContentPolicyRejectedError(OrchestrationError):
    """Raised when content is blocked by a safety filter."""

    kind = ErrorKind.CONTENT_POLICY_REJECTED
    message = "Content blocked by safety filter"


class MalformedResponseError(OrchestrationError):
    """Raised when a response lacks the expected payload."""

    kind = ErrorKind.MALFORMED_RESPONSE
    message = "Malformed provider response"


class ParseFailureError(OrchestrationError):
    """Raised when structured output cannot be recovered."""

    kind = ErrorKind.PARSE_FAILURE
    message = "Failed to parse structured output"


class ProviderUnsupportedError(OrchestrationError):
    """Raised when no transport exists for the provider."""

    kind = ErrorKind.PROVIDER_UNSUPPORTED
    message = "Unsupported provider"


class UnknownOrchestrationError(OrchestrationError):
    """Raised for failures that match no known category."""

    kind = ErrorKind.UNKNOWN


ERROR_CLASSES: dict[ErrorKind, type[OrchestrationError]] = {
    cls.kind: cls
    for cls in (
        NetworkUnreachableError,
        AuthInvalidError,
        ModelNotFoundError,
        ContentPolicyRejectedError,
        MalformedResponseError,
        ParseFailureError,
        ProviderUnsupportedError,
        UnknownOrchestrationError,
    )
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    provider: str | None = None,
    model: str | None = None,
) -> OrchestrationError:
    """Build the OrchestrationError subclass matching ``kind``."""
    return ERROR_CLASSES[kind](message, provider=provider, model=model)
