"""
Tests for the per-node executors and the node registry.
"""

import base64
import io
import tempfile

import httpx
import pytest
from PIL import Image

from app.config import CredentialSource
from app.models.graph import NodeType
from app.models.node_registry import build_node_registry
from app.models.run import ExecutionContext, UpstreamOutput
from app.services import node_executors
from app.services.crop import compute_crop_box, crop_image_bytes
from app.services.errors import (
    ConfigurationError,
    ExternalServiceError,
    ResourceLimitError,
    WorkflowValidationError,
)
from app.services.media_process import resolve_seek_seconds
from app.services.node_executors import (
    DEFAULT_SYSTEM_PROMPT,
    get_executor,
    verify_executor_registry,
)
from app.services.payloads import parse_data_uri, to_data_uri
from conftest import (
    FakeImageGenerator,
    FakeTextCompleter,
    logged_calls,
    make_node,
    write_fake_ffmpeg,
)


def png_bytes(width: int, height: int, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def image_size(data_uri: str) -> tuple[int, int]:
    _, data = parse_data_uri(data_uri)
    return Image.open(io.BytesIO(data)).size


def upstream(*values) -> list[UpstreamOutput]:
    return [UpstreamOutput(node_id=f"up{i}", output=v) for i, v in enumerate(values)]


async def run_executor(services, node, inputs):
    context = ExecutionContext(run_id="run-test", nodes=[node], edges=[], services=services)
    params = services.registry.resolve_params(node)
    return await get_executor(node.type)(node, params, inputs, context)


class RecordingAssetStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.stored: list[tuple[bytes, str, str]] = []

    async def store(self, data, hint, content_type="image/png"):
        if self.fail:
            raise ExternalServiceError("bucket unavailable")
        self.stored.append((data, hint, content_type))
        return f"https://assets.example.com/{hint}.png"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_every_node_type_has_an_executor(self):
        verify_executor_registry()

    def test_missing_executor_is_a_startup_error(self, monkeypatch):
        monkeypatch.delitem(node_executors._registry, NodeType.CROP)
        with pytest.raises(RuntimeError, match="crop"):
            verify_executor_registry()

    def test_defaults_fill_missing_params(self):
        registry = build_node_registry()
        params = registry.resolve_params(make_node("c", NodeType.CROP, xPercent=10))
        assert params.x_percent == 10
        assert params.width_percent == 100

    def test_explicit_nulls_keep_defaults(self):
        registry = build_node_registry()
        params = registry.resolve_params(make_node("f", NodeType.EXTRACT_FRAME, timestamp=None))
        assert params.timestamp == "50%"

    def test_numeric_timestamp_becomes_text(self):
        registry = build_node_registry()
        params = registry.resolve_params(make_node("f", NodeType.EXTRACT_FRAME, timestamp=3.5))
        assert params.timestamp == "3.5"

    def test_invalid_params_name_the_node(self):
        registry = build_node_registry()
        with pytest.raises(WorkflowValidationError, match="'c1'"):
            registry.resolve_params(make_node("c1", NodeType.CROP, widthPercent="wide"))

    def test_legacy_type_names_are_accepted(self):
        node = make_node("n", "cropImageNode")
        assert node.type == NodeType.CROP


# ---------------------------------------------------------------------------
# Passthrough
# ---------------------------------------------------------------------------


class TestPassthrough:
    @pytest.mark.asyncio
    async def test_text_returns_message(self, services):
        assert await run_executor(services, make_node("t", userMessage="hi"), []) == "hi"

    @pytest.mark.asyncio
    async def test_empty_text_is_allowed(self, services):
        assert await run_executor(services, make_node("t"), []) == ""

    @pytest.mark.asyncio
    async def test_image_source_requires_url(self, services):
        with pytest.raises(WorkflowValidationError, match="No image uploaded"):
            await run_executor(services, make_node("i", NodeType.IMAGE_SOURCE), [])

    @pytest.mark.asyncio
    async def test_video_source_returns_url(self, services):
        node = make_node("v", NodeType.VIDEO_SOURCE, videoUrl="https://cdn.example.com/a.mp4")
        assert await run_executor(services, node, []) == "https://cdn.example.com/a.mp4"


# ---------------------------------------------------------------------------
# Crop
# ---------------------------------------------------------------------------


class TestCropBox:
    def test_full_crop_is_identity(self):
        assert compute_crop_box(640, 480, 0, 0, 100, 100) == (0, 0, 640, 480)

    def test_width_clamped_to_remaining_space(self):
        left, top, width, height = compute_crop_box(100, 100, 90, 0, 50, 100)
        assert (left, width) == (90, 10)
        assert (top, height) == (0, 100)

    def test_offset_at_edge_keeps_one_pixel(self):
        assert compute_crop_box(100, 100, 100, 100, 100, 100) == (99, 99, 1, 1)

    def test_zero_extent_floors_at_one_pixel(self):
        assert compute_crop_box(100, 100, 10, 10, 0, 0) == (10, 10, 1, 1)

    def test_single_pixel_image(self):
        assert compute_crop_box(1, 1, 50, 50, 50, 50) == (0, 0, 1, 1)


class TestCropExecutor:
    def test_crop_bytes_identity_dimensions(self):
        cropped = crop_image_bytes(png_bytes(37, 21), 0, 0, 100, 100)
        assert Image.open(io.BytesIO(cropped)).size == (37, 21)

    def test_unreadable_image(self):
        with pytest.raises(WorkflowValidationError):
            crop_image_bytes(b"not an image", 0, 0, 100, 100)

    def test_cmyk_image_is_cropped_to_rgb_png(self):
        buffer = io.BytesIO()
        Image.new("CMYK", (100, 100), (0, 255, 255, 0)).save(buffer, format="JPEG")

        cropped = Image.open(io.BytesIO(crop_image_bytes(buffer.getvalue(), 0, 0, 50, 50)))

        assert cropped.format == "PNG"
        assert cropped.mode == "RGB"
        assert cropped.size == (50, 50)

    @pytest.mark.asyncio
    async def test_crop_data_uri(self, services):
        node = make_node("c", NodeType.CROP, xPercent=90, widthPercent=50)
        result = await run_executor(
            services, node, upstream(to_data_uri(png_bytes(100, 100), "image/png"))
        )
        assert result.startswith("data:image/png;base64,")
        assert image_size(result) == (10, 100)

    @pytest.mark.asyncio
    async def test_inline_image_over_cap_is_rejected(self, services):
        services.settings = services.settings.model_copy(update={"max_image_bytes": 16})
        with pytest.raises(ResourceLimitError, match="File too large"):
            await run_executor(
                services,
                make_node("c", NodeType.CROP),
                upstream(to_data_uri(png_bytes(40, 40), "image/png")),
            )

    @pytest.mark.asyncio
    async def test_crop_without_input(self, services):
        with pytest.raises(WorkflowValidationError, match="No image input connected"):
            await run_executor(services, make_node("c", NodeType.CROP), [])

    @pytest.mark.asyncio
    async def test_crop_prefers_image_input(self, services):
        node = make_node("c", NodeType.CROP, heightPercent=50)
        result = await run_executor(
            services,
            node,
            upstream("some text", to_data_uri(png_bytes(20, 40), "image/png")),
        )
        assert image_size(result) == (20, 20)

    @pytest.mark.asyncio
    async def test_crop_fetches_http_image(self, services):
        image = png_bytes(50, 50)

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/photo.png"
            return httpx.Response(200, content=image, headers={"content-type": "image/png"})

        services.http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        try:
            result = await run_executor(
                services,
                make_node("c", NodeType.CROP, widthPercent=20),
                upstream("https://img.example.com/photo.png"),
            )
        finally:
            await services.http_client.aclose()
        assert image_size(result) == (10, 50)

    @pytest.mark.asyncio
    async def test_crop_uses_asset_store(self, services):
        store = RecordingAssetStore()
        services.asset_store = store
        result = await run_executor(
            services,
            make_node("c", NodeType.CROP),
            upstream(to_data_uri(png_bytes(8, 8), "image/png")),
        )
        assert result == "https://assets.example.com/crop-c.png"
        assert store.stored[0][2] == "image/png"

    @pytest.mark.asyncio
    async def test_asset_store_failure_falls_back_to_data_uri(self, services):
        services.asset_store = RecordingAssetStore(fail=True)
        result = await run_executor(
            services,
            make_node("c", NodeType.CROP),
            upstream(to_data_uri(png_bytes(8, 8), "image/png")),
        )
        assert result.startswith("data:image/png;base64,")


# ---------------------------------------------------------------------------
# Frame extraction
# ---------------------------------------------------------------------------


class TestSeekResolution:
    def test_percentage_of_duration(self):
        assert resolve_seek_seconds("50%", 10.0) == pytest.approx(5.0)

    def test_percentage_above_hundred_rejected(self):
        with pytest.raises(WorkflowValidationError):
            resolve_seek_seconds("110%", 10.0)

    def test_negative_percentage_rejected(self):
        with pytest.raises(WorkflowValidationError):
            resolve_seek_seconds("-5%", 10.0)

    def test_near_end_is_pulled_back(self):
        assert resolve_seek_seconds("9.95", 10.0) == pytest.approx(9.9)

    def test_past_end_is_pulled_back(self):
        assert resolve_seek_seconds("42", 10.0) == pytest.approx(9.9)

    def test_seconds_suffix(self):
        assert resolve_seek_seconds("3s", 10.0) == pytest.approx(3.0)

    def test_negative_seconds_rejected(self):
        with pytest.raises(WorkflowValidationError):
            resolve_seek_seconds("-1", 10.0)

    def test_garbage_rejected(self):
        with pytest.raises(WorkflowValidationError):
            resolve_seek_seconds("soon", 10.0)


VIDEO_DATA_URI = "data:video/mp4;base64," + base64.b64encode(b"\x00\x00\x00\x18ftypmp42").decode()


class TestExtractFrameExecutor:
    @pytest.fixture
    def scratch(self, tmp_path, monkeypatch):
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        monkeypatch.setattr(tempfile, "tempdir", str(scratch))
        return scratch

    def use_ffmpeg(self, services, script):
        services.settings = services.settings.model_copy(update={"ffmpeg_path": str(script)})

    def extract_call(self, log_path):
        return next(call for call in logged_calls(log_path) if "-vframes" in call)

    @pytest.mark.asyncio
    async def test_percentage_timestamp(self, services, tmp_path, scratch):
        script, log_path = write_fake_ffmpeg(tmp_path)
        self.use_ffmpeg(services, script)

        result = await run_executor(
            services, make_node("f", NodeType.EXTRACT_FRAME), upstream(VIDEO_DATA_URI)
        )

        assert result == to_data_uri(b"FRAME", "image/png")
        call = self.extract_call(log_path)
        assert call[call.index("-ss") + 1] == "5.000"
        assert call[call.index("-q:v") + 1] == "2"

    @pytest.mark.asyncio
    async def test_absolute_timestamp_near_end(self, services, tmp_path, scratch):
        script, log_path = write_fake_ffmpeg(tmp_path)
        self.use_ffmpeg(services, script)

        await run_executor(
            services,
            make_node("f", NodeType.EXTRACT_FRAME, timestamp="9.95"),
            upstream(VIDEO_DATA_URI),
        )

        call = self.extract_call(log_path)
        assert call[call.index("-ss") + 1] == "9.900"

    @pytest.mark.asyncio
    async def test_out_of_range_percentage_fails_without_extracting(self, services, tmp_path, scratch):
        script, log_path = write_fake_ffmpeg(tmp_path)
        self.use_ffmpeg(services, script)

        with pytest.raises(WorkflowValidationError):
            await run_executor(
                services,
                make_node("f", NodeType.EXTRACT_FRAME, timestamp="110%"),
                upstream(VIDEO_DATA_URI),
            )
        assert not any("-vframes" in call for call in logged_calls(log_path))

    @pytest.mark.asyncio
    async def test_jpg_output(self, services, tmp_path, scratch):
        script, log_path = write_fake_ffmpeg(tmp_path)
        self.use_ffmpeg(services, script)

        result = await run_executor(
            services,
            make_node("f", NodeType.EXTRACT_FRAME, outputFormat="jpg", quality=5),
            upstream(VIDEO_DATA_URI),
        )

        assert result.startswith("data:image/jpeg;base64,")
        call = self.extract_call(log_path)
        assert call[-1].endswith("frame.jpg")
        assert call[call.index("-q:v") + 1] == "5"

    @pytest.mark.asyncio
    async def test_scratch_directory_removed(self, services, tmp_path, scratch):
        script, _ = write_fake_ffmpeg(tmp_path, extract_exit=1, write_output=False)
        self.use_ffmpeg(services, script)

        with pytest.raises(ExternalServiceError):
            await run_executor(
                services, make_node("f", NodeType.EXTRACT_FRAME), upstream(VIDEO_DATA_URI)
            )
        assert list(scratch.iterdir()) == []

    @pytest.mark.asyncio
    async def test_invalid_video(self, services, tmp_path, scratch):
        script, _ = write_fake_ffmpeg(
            tmp_path, duration_line="input.mp4: Invalid data found when processing input"
        )
        self.use_ffmpeg(services, script)

        with pytest.raises(ExternalServiceError, match="Invalid video file"):
            await run_executor(
                services, make_node("f", NodeType.EXTRACT_FRAME), upstream(VIDEO_DATA_URI)
            )

    @pytest.mark.asyncio
    async def test_missing_binary(self, services, tmp_path, scratch):
        self.use_ffmpeg(services, tmp_path / "no-such-ffmpeg")
        with pytest.raises(ConfigurationError):
            await run_executor(
                services, make_node("f", NodeType.EXTRACT_FRAME), upstream(VIDEO_DATA_URI)
            )

    @pytest.mark.asyncio
    async def test_without_video_input(self, services):
        with pytest.raises(WorkflowValidationError, match="No video input connected"):
            await run_executor(services, make_node("f", NodeType.EXTRACT_FRAME), [])


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------


class TestInferenceExecutor:
    @pytest.mark.asyncio
    async def test_text_branch(self, services, text_completer):
        node = make_node("llm", NodeType.INFERENCE, temperature=0.3, maxTokens=200)
        result = await run_executor(services, node, upstream("first", "second"))

        assert result == "fake reply"
        classify, answer = text_completer.calls
        assert classify["temperature"] == 0
        assert classify["max_tokens"] == 5
        assert answer["user_text"] == "first\n\nsecond"
        assert answer["system_prompt"] == DEFAULT_SYSTEM_PROMPT
        assert answer["temperature"] == 0.3
        assert answer["max_tokens"] == 200

    @pytest.mark.asyncio
    async def test_configured_system_prompt(self, services, text_completer):
        node = make_node("llm", NodeType.INFERENCE, systemPrompt="Be terse.")
        await run_executor(services, node, upstream("hello"))
        assert text_completer.calls[-1]["system_prompt"] == "Be terse."

    @pytest.mark.asyncio
    async def test_image_references_become_inline_note(self, services, text_completer):
        await run_executor(
            services,
            make_node("llm", NodeType.INFERENCE),
            upstream("describe this", "https://img.example.com/cat.jpg"),
        )
        assert text_completer.calls[-1]["user_text"] == (
            "describe this\n\n"
            "[The following image URLs were provided as input: https://img.example.com/cat.jpg]"
        )

    @pytest.mark.asyncio
    async def test_image_branch(self, services, image_generator):
        services.text_completer = FakeTextCompleter(intent="IMAGE")
        result = await run_executor(
            services, make_node("llm", NodeType.INFERENCE), upstream("draw a cat")
        )
        assert result == to_data_uri(image_generator.data, "image/png")
        assert image_generator.prompts == ["draw a cat"]

    @pytest.mark.asyncio
    async def test_image_branch_without_generator_key_answers_in_text(self, services):
        services.text_completer = FakeTextCompleter(intent="IMAGE")
        services.image_generator = FakeImageGenerator(configured=False)
        result = await run_executor(
            services, make_node("llm", NodeType.INFERENCE), upstream("draw a cat")
        )
        assert result == "fake reply"

    @pytest.mark.asyncio
    async def test_classifier_failure_falls_back_to_text(self, services, image_generator):
        services.text_completer = FakeTextCompleter(intent="IMAGE", fail_classifier=True)
        result = await run_executor(
            services, make_node("llm", NodeType.INFERENCE), upstream("draw a cat")
        )
        assert result == "fake reply"
        assert image_generator.prompts == []

    @pytest.mark.asyncio
    async def test_missing_credential_fails_immediately(self, services, text_completer):
        services.credentials = CredentialSource({})
        with pytest.raises(ConfigurationError, match="FIREWORKS_API_KEY"):
            await run_executor(
                services, make_node("llm", NodeType.INFERENCE), upstream("hello")
            )
        assert text_completer.calls == []

    @pytest.mark.asyncio
    async def test_no_input(self, services):
        with pytest.raises(WorkflowValidationError):
            await run_executor(services, make_node("llm", NodeType.INFERENCE), [])
