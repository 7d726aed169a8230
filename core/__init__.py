"""
Core modules for the Storyboard Studio engine.

This package contains fundamental utilities used across the engine:
- config: Engine settings and configuration
- logging: Logging setup
- exceptions: Custom exception classes and ErrorKind
"""

from .config import Settings, get_settings
from .exceptions import (
    AppException,
    AuthInvalidError,
    ContentPolicyRejectedError,
    ErrorKind,
    MalformedResponseError,
    ModelNotFoundError,
    NetworkUnreachableError,
    OrchestrationError,
    ParseFailureError,
    ProviderUnsupportedError,
    UnknownOrchestrationError,
)
from .logging import setup_logging

__all__ = [
    # Config
    "get_settings",
    "Settings",
    "setup_logging",
    # Exceptions
    "AppException",
    "ErrorKind",
    "OrchestrationError",
    "NetworkUnreachableError",
    "AuthInvalidError",
    "ModelNotFoundError",
    "ContentPolicyRejectedError",
    "MalformedResponseError",
    "ParseFailureError",
    "ProviderUnsupportedError",
    "UnknownOrchestrationError",
]
