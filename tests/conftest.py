"""
Pytest configuration and fixtures.
"""

import json
from collections.abc import Callable
from io import BytesIO
from typing import Any

import httpx
import pytest
from PIL import Image

from core.config import Settings
from services.providers.base import Credential, InlineBinaryPart


# ============ Settings ============


@pytest.fixture
def settings() -> Settings:
    """Settings with no environment keys and a zero poll interval."""
    return Settings(
        _env_file=None,
        api_key=None,
        gemini_api_key=None,
        google_api_key=None,
        video_poll_interval=0.0,
        jimeng_base_url="http://jimeng.test",
    )


@pytest.fixture
def env_settings() -> Settings:
    """Settings carrying an environment-level fallback key."""
    return Settings(
        _env_file=None,
        api_key=None,
        gemini_api_key="env-gemini-key",
        google_api_key=None,
        video_poll_interval=0.0,
    )


# ============ Credentials ============


@pytest.fixture
def make_credential() -> Callable[..., Credential]:
    """Factory for stored credentials."""

    def _make(
        provider: str = "other",
        id: str | None = None,
        key: str = "sk-test",
        base_url: str | None = None,
        **kwargs: Any,
    ) -> Credential:
        return Credential(
            id=id or f"{provider}-1",
            provider=provider,
            key=key,
            base_url=base_url,
            **kwargs,
        )

    return _make


# ============ Images ============


def png_bytes(width: int = 64, height: int = 48, color: str = "red") -> bytes:
    img = Image.new("RGB", (width, height), color=color)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def make_png() -> Callable[..., bytes]:
    """Factory for real PNG bytes."""
    return png_bytes


@pytest.fixture
def frame() -> InlineBinaryPart:
    """A small start frame."""
    return InlineBinaryPart.from_bytes(png_bytes(32, 18), "image/png")


# ============ HTTP ============


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def json_bodies(self) -> list[Any]:
        return [json.loads(r.content) if r.content else None for r in self.requests]


@pytest.fixture
def make_transport() -> Callable[[Callable[[httpx.Request], httpx.Response]], RecordingTransport]:
    """Factory wrapping a request handler in a RecordingTransport."""
    return RecordingTransport
