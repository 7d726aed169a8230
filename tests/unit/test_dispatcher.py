"""
Unit tests for RequestDispatcher adapter selection and error funnelling.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from core.exceptions import (
    AuthInvalidError,
    ModelNotFoundError,
    NetworkUnreachableError,
    ProviderUnsupportedError,
)
from services.dispatcher import RequestDispatcher
from services.providers.base import GenerationRequest, GenerationResult, InlineBinaryPart, ProviderKind
from services.providers.credentials import CredentialStore
from services.providers.google import GoogleTransportAdapter


def _chat(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


@pytest.fixture
def google_adapter():
    adapter = MagicMock(spec=GoogleTransportAdapter)
    adapter.generate = AsyncMock(return_value=GenerationResult(text="from sdk", provider="google"))
    adapter.generate_image = AsyncMock(
        return_value=GenerationResult(inline_image="data:image/png;base64,QUJD", provider="google")
    )
    adapter.close = AsyncMock()
    return adapter


def _dispatcher(settings, credentials, transport=None, google=None):
    return RequestDispatcher(CredentialStore(credentials, settings), settings, google=google, transport=transport)


class TestSelectAdapter:
    """Tests for RequestDispatcher.select_adapter."""

    def test_google_without_base_url_uses_sdk(self, settings, make_credential, google_adapter):
        dispatcher = _dispatcher(settings, [], google=google_adapter)
        assert dispatcher.select_adapter(ProviderKind.GOOGLE, make_credential("google")) is google_adapter

    def test_google_with_base_url_uses_proxy(self, settings, make_credential):
        dispatcher = _dispatcher(settings, [])
        cred = make_credential("google", base_url="http://127.0.0.1:8045")
        assert dispatcher.select_adapter(ProviderKind.GOOGLE, cred) is dispatcher.openai_compat

    @pytest.mark.parametrize("provider", ["openai", "deepseek", "xai", "other", "jimeng"])
    def test_openai_compatible(self, settings, make_credential, provider):
        dispatcher = _dispatcher(settings, [])
        cred = make_credential(provider)
        assert dispatcher.select_adapter(cred.provider, cred) is dispatcher.openai_compat

    def test_anthropic(self, settings, make_credential):
        dispatcher = _dispatcher(settings, [])
        assert dispatcher.select_adapter(ProviderKind.ANTHROPIC, make_credential("anthropic")) is dispatcher.anthropic

    @pytest.mark.parametrize("provider", ["qwen", "jimeng_web"])
    def test_unsupported(self, settings, make_credential, provider):
        dispatcher = _dispatcher(settings, [])
        cred = make_credential(provider)
        with pytest.raises(ProviderUnsupportedError):
            dispatcher.select_adapter(cred.provider, cred)


class TestDispatch:
    """Tests for RequestDispatcher.dispatch."""

    async def test_missing_credential_still_calls_transport(self, settings, make_transport):
        transport = make_transport(lambda request: _chat("keyless relay"))
        dispatcher = _dispatcher(settings, [], transport=transport)

        result = await dispatcher.dispatch("gpt-4o", ProviderKind.OPENAI, GenerationRequest.from_prompt("x"))

        assert result.text == "keyless relay"
        assert result.credential_id == ""
        assert len(transport.requests) == 1
        assert transport.requests[0].headers["authorization"].strip() == "Bearer"

    async def test_missing_credential_rejected_by_provider(self, settings, make_transport):
        transport = make_transport(
            lambda request: httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})
        )
        dispatcher = _dispatcher(settings, [], transport=transport)

        with pytest.raises(AuthInvalidError) as info:
            await dispatcher.dispatch("gpt-4o", ProviderKind.OPENAI, GenerationRequest.from_prompt("x"))

        assert len(transport.requests) == 1
        assert "gpt-4o" in info.value.message

    async def test_env_fallback_goes_to_sdk(self, env_settings, google_adapter):
        dispatcher = _dispatcher(env_settings, [], google=google_adapter)

        result = await dispatcher.dispatch("gemini-1.5-pro", ProviderKind.GOOGLE, GenerationRequest.from_prompt("x"))

        assert result.text == "from sdk"
        credential = google_adapter.generate.call_args.args[2]
        assert credential.key == "env-gemini-key"

    async def test_proxy_round_trip(self, settings, make_credential, make_transport):
        transport = make_transport(lambda request: _chat("proxied"))
        cred = make_credential("other", base_url="http://127.0.0.1:8045")
        dispatcher = _dispatcher(settings, [cred], transport=transport)

        result = await dispatcher.dispatch("gemini-3-flash", ProviderKind.OTHER, GenerationRequest.from_prompt("x"))

        assert result.text == "proxied"
        assert result.credential_id == cred.id
        await dispatcher.close()

    async def test_transport_error_is_classified(self, settings, make_credential, make_transport):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        dispatcher = _dispatcher(settings, [make_credential("openai")], transport=make_transport(handler))

        with pytest.raises(NetworkUnreachableError) as info:
            await dispatcher.dispatch("gpt-4o", ProviderKind.OPENAI, GenerationRequest.from_prompt("x"))

        assert "gpt-4o" in info.value.message

    async def test_sdk_exception_is_classified(self, settings, make_credential, google_adapter):
        google_adapter.generate.side_effect = RuntimeError("404 models/gemini-9 is not found")
        dispatcher = _dispatcher(settings, [make_credential("google")], google=google_adapter)

        with pytest.raises(ModelNotFoundError):
            await dispatcher.dispatch("gemini-9", ProviderKind.GOOGLE, GenerationRequest.from_prompt("x"))


class TestDispatchImage:
    """Tests for RequestDispatcher.dispatch_image."""

    async def test_google_sdk_image(self, settings, make_credential, google_adapter):
        dispatcher = _dispatcher(settings, [make_credential("google")], google=google_adapter)

        result = await dispatcher.dispatch_image(
            "gemini-2.0-flash-exp", ProviderKind.GOOGLE, GenerationRequest.from_prompt("grid"), "1:1", "2K"
        )

        assert result.inline_image.startswith("data:image/png")
        args = google_adapter.generate_image.call_args.args
        assert args[3:] == ("1:1", "2K")

    async def test_proxy_image(self, settings, make_credential, make_transport):
        transport = make_transport(lambda request: _chat("![x](https://cdn.test/grid.png)"))
        dispatcher = _dispatcher(settings, [make_credential("other")], transport=transport)

        result = await dispatcher.dispatch_image(
            "gemini-3-pro-image", ProviderKind.OTHER, GenerationRequest.from_prompt("grid")
        )

        assert result.inline_image == "https://cdn.test/grid.png"

    async def test_jimeng_image(self, settings, make_credential, make_transport):
        transport = make_transport(lambda request: httpx.Response(200, json={"data": [{"url": "https://cdn.test/j.png"}]}))
        dispatcher = _dispatcher(settings, [make_credential("jimeng_web", key="sess")], transport=transport)

        result = await dispatcher.dispatch_image(
            "jimeng-4.5", ProviderKind.JIMENG_WEB, GenerationRequest.from_prompt("grid"), "16:9"
        )

        assert result.inline_image == "https://cdn.test/j.png"
        assert str(transport.requests[0].url) == "http://jimeng.test/v1/images/generations"

    async def test_anthropic_cannot_draw(self, settings, make_credential):
        dispatcher = _dispatcher(settings, [make_credential("anthropic")])

        with pytest.raises(ProviderUnsupportedError):
            await dispatcher.dispatch_image("claude-3-haiku", ProviderKind.ANTHROPIC, GenerationRequest.from_prompt("x"))


class TestDispatchEdit:
    """Tests for RequestDispatcher.dispatch_edit."""

    @pytest.fixture
    def original(self):
        return InlineBinaryPart("image/png", "T1JJRw==")

    @pytest.fixture
    def mask(self):
        return InlineBinaryPart("image/png", "TUFTSw==")

    async def test_proxy_sends_original_mask_prompt(self, settings, make_credential, make_transport, original, mask):
        transport = make_transport(lambda request: _chat("![e](https://cdn.test/edited.png)"))
        dispatcher = _dispatcher(settings, [make_credential("other", base_url="http://127.0.0.1:8045")], transport=transport)

        result = await dispatcher.dispatch_edit(
            "gemini-3-pro-image", ProviderKind.OTHER, original, "add a red scarf", mask=mask, aspect_ratio="1:1"
        )

        assert result.inline_image == "https://cdn.test/edited.png"
        body = transport.json_bodies()[0]
        assert body["model"] == "gemini-3-pro-image-1-1"
        content = body["messages"][-1]["content"]
        assert [item["type"] for item in content] == ["image_url", "image_url", "text"]
        assert content[0]["image_url"]["url"] == original.to_data_uri()
        assert content[1]["image_url"]["url"] == mask.to_data_uri()
        assert "white mask" in content[2]["text"]
        assert "add a red scarf" in content[2]["text"]

    async def test_google_sdk_gets_both_images(self, settings, make_credential, google_adapter, original, mask):
        dispatcher = _dispatcher(settings, [make_credential("google")], google=google_adapter)

        await dispatcher.dispatch_edit(
            "gemini-2.5-flash-image", ProviderKind.GOOGLE, original, "x", mask=mask, multiview=True
        )

        args = google_adapter.generate_image.call_args.args
        request = args[1]
        assert request.images == [original, mask]
        assert "MULTI-VIEW" in request.text
        assert args[3:] == ("16:9", "4K")

    async def test_jimeng_uses_reference_image_without_mask(
        self, settings, make_credential, make_transport, original, mask
    ):
        transport = make_transport(lambda request: httpx.Response(200, json={"data": [{"url": "https://cdn.test/j.png"}]}))
        dispatcher = _dispatcher(settings, [make_credential("jimeng_web", key="sess")], transport=transport)

        result = await dispatcher.dispatch_edit("jimeng-4.5", ProviderKind.JIMENG_WEB, original, "x", mask=mask)

        assert result.inline_image == "https://cdn.test/j.png"
        body = transport.json_bodies()[0]
        assert "[INPAINT MODE]" in body["prompt"]
        assert body["image_url"] == original.to_data_uri()

    async def test_qwen_edit(self, settings, make_credential, make_transport, original):
        transport = make_transport(lambda request: httpx.Response(200, json={"data": [{"url": "https://oss.test/q.png"}]}))
        cred = make_credential("qwen", key="sk-dash")
        dispatcher = _dispatcher(settings, [cred], transport=transport)

        result = await dispatcher.dispatch_edit("qwen-image-edit-plus", ProviderKind.QWEN, original, "remove the hat")

        assert result.inline_image == "https://oss.test/q.png"
        assert result.credential_id == cred.id
        assert str(transport.requests[0].url) == "http://127.0.0.1:8046/v2/qwen_image_edit"
        assert transport.json_bodies()[0]["prompt"] == "remove the hat"

    async def test_qwen_needs_source_image(self, settings, make_credential):
        dispatcher = _dispatcher(settings, [make_credential("qwen")])

        with pytest.raises(ProviderUnsupportedError):
            await dispatcher.dispatch_image("qwen-image-edit-plus", ProviderKind.QWEN, GenerationRequest.from_prompt("x"))
