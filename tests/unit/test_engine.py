"""
Unit tests for OrchestrationEngine end to end, with HTTP served by MockTransport.
"""

import base64
import json
from io import BytesIO
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest
from PIL import Image

from core.exceptions import (
    AuthInvalidError,
    MalformedResponseError,
    ModelNotFoundError,
    ParseFailureError,
    ProviderUnsupportedError,
)
from services.engine import EngineConfig, OrchestrationEngine, RoleModels
from services.providers.base import (
    GenerationRequest,
    GridSpec,
    InlineBinaryPart,
    JobState,
    ModelRole,
    ProviderKind,
    VideoRequest,
)
from services.video_jobs import VideoJobHandle

PROXY = "http://127.0.0.1:8045"


def _chat(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


def _data_uri(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


@pytest.fixture
def proxy_credential(make_credential):
    return make_credential("other", id="proxy", key="sk-proxy", base_url=PROXY)


def _engine(settings, transport, credentials, **roles) -> OrchestrationEngine:
    config = EngineConfig(roles=RoleModels(**roles), credentials=credentials)
    return OrchestrationEngine(config, settings=settings, transport=transport)


class TestGenerate:
    """Tests for OrchestrationEngine.generate."""

    async def test_text_generation_reports_usage(self, settings, make_transport, proxy_credential):
        transport = make_transport(lambda request: _chat("Scene 1: INT. KITCHEN"))
        engine = _engine(settings, transport, [proxy_credential])

        result = await engine.generate(ModelRole.SCRIPT_ANALYSIS, GenerationRequest.from_prompt("Break it down"))

        assert result.text == "Scene 1: INT. KITCHEN"
        assert result.model == "gemini-3-flash"
        assert str(transport.requests[0].url) == f"{PROXY}/v1/chat/completions"
        assert proxy_credential.usage_count == 1
        await engine.aclose()

    async def test_role_by_string(self, settings, make_transport, proxy_credential):
        transport = make_transport(lambda request: _chat("hi"))
        engine = _engine(settings, transport, [proxy_credential])

        result = await engine.generate("chat_assistant", GenerationRequest.from_prompt("hello"))

        assert result.text == "hi"

    async def test_model_overrides(self, settings, make_transport, make_credential):
        transport = make_transport(
            lambda request: httpx.Response(200, json={"content": [{"type": "text", "text": "claude says hi"}]})
        )
        config = EngineConfig(
            roles=RoleModels(chat_assistant="house-model"),
            credentials=[make_credential("anthropic", key="ant")],
            model_overrides={"house-model": "anthropic"},
        )
        engine = OrchestrationEngine(config, settings=settings, transport=transport)

        result = await engine.generate(ModelRole.CHAT_ASSISTANT, GenerationRequest.from_prompt("x"))

        assert result.text == "claude says hi"
        assert str(transport.requests[0].url).endswith("/messages")

    async def test_missing_credential_fails_at_transport(self, settings, make_transport):
        transport = make_transport(lambda request: httpx.Response(401, json={"error": {"message": "Unauthorized"}}))
        engine = _engine(settings, transport, [])

        with pytest.raises(AuthInvalidError):
            await engine.generate(ModelRole.SCRIPT_ANALYSIS, GenerationRequest.from_prompt("x"))

        assert len(transport.requests) == 1

    async def test_failure_does_not_count_usage(self, settings, make_transport, proxy_credential):
        engine = _engine(settings, make_transport(lambda request: httpx.Response(404, text="no")), [proxy_credential])

        with pytest.raises(Exception):
            await engine.generate(ModelRole.SCRIPT_ANALYSIS, GenerationRequest.from_prompt("x"))

        assert proxy_credential.usage_count == 0

    async def test_video_request_needs_video_role(self, settings, make_transport, proxy_credential, frame):
        engine = _engine(settings, make_transport(lambda request: _chat("x")), [proxy_credential])

        with pytest.raises(ValueError):
            await engine.generate(ModelRole.CHAT_ASSISTANT, VideoRequest(prompt="x", start_frame=frame))


class TestParseStructured:
    """Tests for OrchestrationEngine.parse_structured."""

    async def test_repairs_and_parses(self, settings, make_transport, proxy_credential):
        transport = make_transport(lambda request: _chat('```json\n[{"shot": 1, "camera": "wide"},]\n```'))
        engine = _engine(settings, transport, [proxy_credential])

        value = await engine.parse_structured(
            ModelRole.SCRIPT_ANALYSIS,
            GenerationRequest.from_prompt("List the shots"),
            schema_hint='[{"shot": int, "camera": str}]',
        )

        assert value == [{"shot": 1, "camera": "wide"}]
        body = json.loads(transport.requests[0].content)
        assert body["response_format"] == {"type": "json_object"}
        texts = [item["text"] for item in body["messages"][-1]["content"]]
        assert any('"camera": str' in t for t in texts)

    async def test_blank_output(self, settings, make_transport, proxy_credential):
        engine = _engine(settings, make_transport(lambda request: _chat("")), [proxy_credential])

        with pytest.raises(ParseFailureError):
            await engine.parse_structured(ModelRole.SCRIPT_ANALYSIS, GenerationRequest.from_prompt("x"))

    async def test_unrecoverable_output(self, settings, make_transport, proxy_credential):
        engine = _engine(settings, make_transport(lambda request: _chat("Sorry, I can't.")), [proxy_credential])

        with pytest.raises(ParseFailureError) as info:
            await engine.parse_structured(ModelRole.SCRIPT_ANALYSIS, GenerationRequest.from_prompt("x"))

        assert info.value.message.startswith("JSON_PARSE_FAILURE:")


class TestGenerateGrid:
    """Tests for OrchestrationEngine.generate_grid."""

    async def test_data_uri_grid(self, settings, make_transport, proxy_credential, make_png):
        full = _data_uri(make_png(200, 200))
        transport = make_transport(lambda request: _chat(f"Here: ![grid]({full})"))
        engine = _engine(settings, transport, [proxy_credential])

        result = await engine.generate_grid(GenerationRequest.from_prompt("4 panels"), GridSpec.square(2), "1:1")

        assert result.full_image == full
        assert len(result.panels) == 4
        panel = Image.open(BytesIO(InlineBinaryPart.from_data_uri(result.panels[0]).to_bytes()))
        assert panel.size == (100, 100)
        assert json.loads(transport.requests[0].content)["model"] == "gemini-3-pro-image-1-1"
        assert proxy_credential.usage_count == 1

    async def test_url_grid_is_downloaded(self, settings, make_transport, proxy_credential, make_png):
        png = make_png(300, 200)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "cdn.test":
                return httpx.Response(200, content=png)
            return _chat("![grid](https://cdn.test/grid.png)")

        engine = _engine(settings, make_transport(handler), [proxy_credential])

        result = await engine.generate_grid(GenerationRequest.from_prompt("6 panels"), GridSpec(rows=2, cols=3))

        assert result.full_image == "https://cdn.test/grid.png"
        assert len(result.panels) == 6

    async def test_undecodable_image(self, settings, make_transport, proxy_credential):
        transport = make_transport(lambda request: _chat("![g](data:image/png;base64,AAAA)"))
        engine = _engine(settings, transport, [proxy_credential])

        with pytest.raises(MalformedResponseError):
            await engine.generate_grid(GenerationRequest.from_prompt("x"), GridSpec.square(2))

        assert proxy_credential.usage_count == 0


class TestEditImage:
    """Tests for OrchestrationEngine.edit_image."""

    async def test_downloads_original_and_reports_usage(self, settings, make_transport, proxy_credential, make_png):
        original_png = make_png(64, 36)

        def handler(request):
            if request.url.host == "cdn.test":
                return httpx.Response(200, content=original_png)
            return _chat("![edited](data:image/png;base64,QUJD)")

        transport = make_transport(handler)
        engine = _engine(settings, transport, [proxy_credential])

        result = await engine.edit_image(
            "https://cdn.test/shot.png", "give him a hat", mask=_data_uri(make_png(64, 36, (255, 255, 255)))
        )

        assert result.inline_image == "data:image/png;base64,QUJD"
        assert proxy_credential.usage_count == 1
        chat = next(r for r in transport.requests if r.url.path.endswith("/chat/completions"))
        content = json.loads(chat.content)["messages"][-1]["content"]
        assert content[0]["image_url"]["url"] == _data_uri(original_png)
        assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")

    async def test_qwen_model_override(self, settings, make_transport, make_credential, frame):
        transport = make_transport(lambda request: httpx.Response(200, json={"data": [{"url": "https://oss.test/q.png"}]}))
        qwen = make_credential("qwen", id="dash", key="sk-dash")
        engine = _engine(settings, transport, [qwen])

        result = await engine.edit_image(frame, "turn it into a night scene", model_id="qwen-image-edit-plus")

        assert result.inline_image == "https://oss.test/q.png"
        assert qwen.usage_count == 1
        assert transport.json_bodies()[0]["image_url"] == frame.to_data_uri()

    async def test_failed_download(self, settings, make_transport, proxy_credential):
        engine = _engine(settings, make_transport(lambda request: httpx.Response(404)), [proxy_credential])

        with pytest.raises(ModelNotFoundError):
            await engine.edit_image("https://cdn.test/gone.png", "x")

        assert proxy_credential.usage_count == 0


# ============ Video ============


def _jimeng_handler(png_for_identity: str | None = None, identity_status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.url.host == "cdn.test":
            return httpx.Response(200, content=b"mp4-bytes")
        if path.endswith("/chat/completions"):
            if identity_status != 200:
                return httpx.Response(identity_status, text="upstream down")
            return _chat("red scarf, short black hair, snowy forest")
        if path == "/v2/video_generation":
            return httpx.Response(200, json={"code": 0, "task_id": "t1"})
        if path == "/v2/tasks/t1":
            return httpx.Response(200, json={"status": "success", "url": "https://cdn.test/v.mp4"})
        return httpx.Response(404)

    return handler


class TestSubmitVideo:
    """Tests for OrchestrationEngine.submit_video."""

    async def test_jimeng_job(self, settings, make_transport, make_credential, make_png):
        jimeng = make_credential("jimeng", id="jm", key="sk-jm")
        transport = make_transport(_jimeng_handler())
        engine = _engine(settings, transport, [jimeng], video_generation="jimeng_ti2v_v30_pro")
        wide = InlineBinaryPart.from_bytes(make_png(2048, 1024))

        handle = await engine.submit_video(VideoRequest(prompt="Fox runs", start_frame=wide))
        job = await handle.wait()

        assert job.state is JobState.SUCCEEDED
        assert job.provider == "jimeng"
        assert job.result_url == "https://cdn.test/v.mp4"
        assert job.blob == b"mp4-bytes"
        assert jimeng.usage_count == 1

        submit = json.loads(transport.requests[0].content)
        assert str(transport.requests[0].url) == "http://jimeng.test/v2/video_generation"
        frame = Image.open(BytesIO(base64.b64decode(submit["image_base64"])))
        assert frame.size == (1024, 512)

    async def test_identity_from_reference_images(
        self, settings, make_transport, make_credential, proxy_credential, frame
    ):
        jimeng = make_credential("jimeng", id="jm", key="sk-jm")
        transport = make_transport(_jimeng_handler())
        engine = _engine(settings, transport, [jimeng, proxy_credential], video_generation="jimeng_ti2v_v30_pro")

        handle = await engine.generate(
            ModelRole.VIDEO_GENERATION,
            VideoRequest(prompt="Fox runs", start_frame=frame, reference_images=[frame]),
        )
        await handle.wait()

        assert isinstance(handle, VideoJobHandle)
        submit = next(r for r in transport.requests if r.url.path == "/v2/video_generation")
        assert "SUBJECT: red scarf" in json.loads(submit.content)["prompt"]

    async def test_identity_failure_is_not_fatal(
        self, settings, make_transport, make_credential, proxy_credential, frame
    ):
        jimeng = make_credential("jimeng", id="jm", key="sk-jm")
        transport = make_transport(_jimeng_handler(identity_status=500))
        engine = _engine(settings, transport, [jimeng, proxy_credential], video_generation="jimeng_ti2v_v30_pro")

        handle = await engine.submit_video(VideoRequest(prompt="Fox", start_frame=frame, reference_images=[frame]))
        job = await handle.wait()

        assert job.state is JobState.SUCCEEDED
        submit = next(r for r in transport.requests if r.url.path == "/v2/video_generation")
        assert "SUBJECT" not in json.loads(submit.content)["prompt"]

    async def test_failed_job_does_not_count_usage(self, settings, make_transport, make_credential, frame):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"task_id": "t1"})
            return httpx.Response(200, json={"status": "failed", "message": "render error"})

        jimeng = make_credential("jimeng", id="jm", key="sk-jm")
        engine = _engine(settings, make_transport(handler), [jimeng], video_generation="jimeng_ti2v_v30_pro")

        job = await (await engine.submit_video(VideoRequest(prompt="x", start_frame=frame))).wait()

        assert job.state is JobState.FAILED
        assert jimeng.usage_count == 0

    async def test_keyless_jimeng_relay(self, settings, make_transport, frame):
        def handler(request):
            if request.url.host == "cdn.test":
                return httpx.Response(200, content=b"mp4-bytes")
            if request.method == "POST":
                return httpx.Response(200, json={"data": {"task_id": "w1"}})
            return httpx.Response(200, json={"status": "success", "url": "https://cdn.test/w.mp4"})

        transport = make_transport(handler)
        engine = _engine(settings, transport, [], video_generation="jimeng-video-3.0")

        job = await (await engine.submit_video(VideoRequest(prompt="x", start_frame=frame))).wait()

        assert job.state is JobState.SUCCEEDED
        assert str(transport.requests[0].url) == "http://jimeng.test/v1/videos/generations"
        assert transport.requests[0].headers["authorization"].strip() == "Bearer"

    async def test_veo_job(self, settings, make_transport, make_credential, frame):
        google = make_credential("google", id="g", key="gkey")
        transport = make_transport(lambda request: httpx.Response(200, content=b"veo-bytes"))
        video = SimpleNamespace(uri="https://files.test/veo.mp4")
        operation = SimpleNamespace(
            name="operations/1",
            done=True,
            error=None,
            response=SimpleNamespace(generated_videos=[SimpleNamespace(video=video)]),
        )

        with patch("services.providers.google.genai") as mock_genai:
            client = MagicMock()
            client.models.generate_videos.return_value = operation
            mock_genai.Client.return_value = client
            engine = _engine(settings, transport, [google])

            job = await (await engine.submit_video(VideoRequest(prompt="Waves", start_frame=frame))).wait()

        assert engine.resolver.resolve(engine.model_for(ModelRole.VIDEO_GENERATION)) is ProviderKind.GOOGLE
        assert job.state is JobState.SUCCEEDED
        assert job.result_url == "https://files.test/veo.mp4?key=gkey"
        assert job.blob == b"veo-bytes"
        assert google.usage_count == 1

    async def test_unsupported_video_provider(self, settings, make_transport, make_credential, frame):
        engine = _engine(
            settings, make_transport(lambda request: _chat("x")), [make_credential("openai")], video_generation="gpt-4o"
        )

        with pytest.raises(ProviderUnsupportedError):
            await engine.submit_video(VideoRequest(prompt="x", start_frame=frame))

    async def test_cancel_video(self, settings, make_transport, make_credential, frame):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"task_id": "t1"})
            return httpx.Response(200, json={"status": "processing"})

        jimeng = make_credential("jimeng", id="jm", key="sk-jm")
        engine = _engine(settings, make_transport(handler), [jimeng], video_generation="jimeng_ti2v_v30_pro")

        handle = await engine.submit_video(VideoRequest(prompt="x", start_frame=frame), poll_interval=30.0)
        handle.cancel()
        job = await handle.wait()

        assert job.state is JobState.FAILED
        assert job.cancelled is True
