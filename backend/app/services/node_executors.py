"""
Node executors, one per node type.

Each executor receives the node, its validated configuration, the outputs of
its upstream nodes (one entry per incoming edge) and the run context, and
returns the node's output value.

Dispatch is closed: every NodeType must have a registered executor, checked
when this module is imported (verify_executor_registry) and again at
application start-up.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import httpx

from app.config import CredentialSource, EngineSettings
from app.llm.intent import Intent, TextCompleter, classify_intent
from app.models.graph import (
    CropNodeData,
    ExtractFrameNodeData,
    ImageSourceNodeData,
    InferenceNodeData,
    NodeType,
    TextNodeData,
    VideoSourceNodeData,
    WorkflowNode,
)
from app.models.node_registry import NodeRegistry
from app.models.run import ExecutionContext, UpstreamOutput
from app.services import media_process
from app.services.crop import crop_image_bytes
from app.services.downloader import decode_data_uri, fetch_bytes, materialize
from app.services.errors import WorkflowError, WorkflowValidationError
from app.services.payloads import (
    is_data_uri,
    is_http_url,
    is_image_reference,
    to_data_uri,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, senior AI assistant. Provide concise, correct, and "
    "well-formatted responses. Use markdown when appropriate."
)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class ImageGenerator(Protocol):
    def is_configured(self) -> bool: ...

    async def generate(self, prompt: str) -> tuple[bytes, str]: ...


class AssetStore(Protocol):
    async def store(self, data: bytes, hint: str, content_type: str = "image/png") -> str: ...


@dataclass
class ExecutorServices:
    """Everything executors need from the outside world, built once at start-up."""

    settings: EngineSettings
    credentials: CredentialSource
    registry: NodeRegistry
    text_completer: TextCompleter | None = None
    image_generator: ImageGenerator | None = None
    asset_store: AssetStore | None = None
    http_client: httpx.AsyncClient | None = None


# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

ExecutorFn = Callable[
    [WorkflowNode, Any, list[UpstreamOutput], ExecutionContext], Awaitable[Any]
]

# Maps each node type to its async executor.
_registry: dict[NodeType, ExecutorFn] = {}


def executor(node_type: NodeType):
    """
    Decorator that registers an async executor for a node type.

    Usage:
        @executor(NodeType.CROP)
        async def _exec_crop(node, params, upstream, context):
            return "data:image/png;base64,..."
    """
    def decorator(fn: ExecutorFn) -> ExecutorFn:
        if node_type in _registry:
            raise RuntimeError(f"Duplicate executor for node type '{node_type.value}'")
        _registry[node_type] = fn
        return fn
    return decorator


def verify_executor_registry() -> None:
    missing = [t.value for t in NodeType if t not in _registry]
    if missing:
        raise RuntimeError(f"No executor registered for node types: {', '.join(missing)}")


def get_executor(node_type: NodeType) -> ExecutorFn:
    return _registry[node_type]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pick_input(upstream: list[UpstreamOutput], prefer: Callable[[Any], bool]) -> str | None:
    """First upstream value matching `prefer`, else the first non-empty string."""
    candidates = [
        u.output for u in upstream if isinstance(u.output, str) and u.output.strip()
    ]
    for value in candidates:
        if prefer(value):
            return value
    return candidates[0] if candidates else None


async def _publish_image(
    services: ExecutorServices, data: bytes, mime_type: str, hint: str
) -> str:
    """Hand image bytes to the asset store, or inline them as a data URI."""
    if services.asset_store is not None:
        try:
            return await services.asset_store.store(data, hint, content_type=mime_type)
        except WorkflowError as e:
            logger.warning("Asset upload failed for %s, returning data URI: %s", hint, e)
    return to_data_uri(data, mime_type)


async def _load_image_bytes(reference: str, services: ExecutorServices) -> bytes:
    settings = services.settings
    if is_data_uri(reference):
        return decode_data_uri(reference, max_bytes=settings.max_image_bytes)
    if is_http_url(reference):
        return await fetch_bytes(
            reference,
            max_bytes=settings.max_image_bytes,
            timeout=settings.download_timeout,
            client=services.http_client,
        )
    raise WorkflowValidationError(
        "Image input must be a data URI or an http(s) URL"
    )


# ---------------------------------------------------------------------------
# Source nodes
# ---------------------------------------------------------------------------


@executor(NodeType.TEXT)
async def _exec_text(
    node: WorkflowNode,
    params: TextNodeData,
    upstream: list[UpstreamOutput],
    context: ExecutionContext,
) -> str:
    return params.user_message


@executor(NodeType.IMAGE_SOURCE)
async def _exec_image_source(
    node: WorkflowNode,
    params: ImageSourceNodeData,
    upstream: list[UpstreamOutput],
    context: ExecutionContext,
) -> str:
    if not params.image_url:
        raise WorkflowValidationError("No image uploaded")
    return params.image_url


@executor(NodeType.VIDEO_SOURCE)
async def _exec_video_source(
    node: WorkflowNode,
    params: VideoSourceNodeData,
    upstream: list[UpstreamOutput],
    context: ExecutionContext,
) -> str:
    if not params.video_url:
        raise WorkflowValidationError("No video uploaded")
    return params.video_url


# ---------------------------------------------------------------------------
# Processing nodes
# ---------------------------------------------------------------------------


@executor(NodeType.CROP)
async def _exec_crop(
    node: WorkflowNode,
    params: CropNodeData,
    upstream: list[UpstreamOutput],
    context: ExecutionContext,
) -> str:
    image_input = _pick_input(upstream, is_image_reference)
    if not image_input:
        raise WorkflowValidationError("No image input connected")

    logger.info(
        "[CROP] node=%s x=%s%% y=%s%% w=%s%% h=%s%%",
        node.id,
        params.x_percent,
        params.y_percent,
        params.width_percent,
        params.height_percent,
    )

    services = context.services
    image_bytes = await _load_image_bytes(image_input, services)
    cropped = await asyncio.to_thread(
        crop_image_bytes,
        image_bytes,
        params.x_percent,
        params.y_percent,
        params.width_percent,
        params.height_percent,
    )
    return await _publish_image(services, cropped, "image/png", f"crop-{node.id}")


@executor(NodeType.EXTRACT_FRAME)
async def _exec_extract_frame(
    node: WorkflowNode,
    params: ExtractFrameNodeData,
    upstream: list[UpstreamOutput],
    context: ExecutionContext,
) -> str:
    video_input = _pick_input(upstream, lambda v: is_data_uri(v) or is_http_url(v))
    if not video_input:
        raise WorkflowValidationError("No video input connected")
    if not (is_data_uri(video_input) or is_http_url(video_input)):
        raise WorkflowValidationError(
            "Video input must be a data URI or an http(s) URL"
        )

    services = context.services
    settings = services.settings
    ffmpeg = media_process.resolve_binary(settings.ffmpeg_path)
    prober = media_process.resolve_binary(settings.probe_path or settings.ffmpeg_path)

    work_dir = Path(
        tempfile.mkdtemp(prefix=f"extract-{context.run_id[:8]}-{node.id}-{uuid.uuid4().hex[:6]}-")
    )
    try:
        video_path = work_dir / "input.mp4"
        await materialize(
            video_input,
            video_path,
            max_bytes=settings.max_video_bytes,
            timeout=settings.download_timeout,
            client=services.http_client,
        )

        duration = await media_process.probe_duration(
            prober, video_path, timeout=settings.probe_timeout
        )
        seek = media_process.resolve_seek_seconds(params.timestamp, duration)
        logger.info(
            "[EXTRACT] node=%s duration=%.3fs timestamp=%s seek=%.3fs",
            node.id, duration, params.timestamp, seek,
        )

        output_path = work_dir / f"frame.{params.output_format}"
        await media_process.extract_frame(
            ffmpeg,
            video_path,
            seek,
            output_path,
            quality=params.quality,
            timeout=settings.extract_timeout,
        )
        frame = await asyncio.to_thread(output_path.read_bytes)
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    mime_type = "image/png" if params.output_format == "png" else "image/jpeg"
    return await _publish_image(services, frame, mime_type, f"frame-{node.id}")


@executor(NodeType.INFERENCE)
async def _exec_inference(
    node: WorkflowNode,
    params: InferenceNodeData,
    upstream: list[UpstreamOutput],
    context: ExecutionContext,
) -> str:
    services = context.services
    settings = services.settings

    # Fail fast before any model traffic.
    services.credentials.require(settings.text_api_key_env, purpose="inference")
    if services.text_completer is None:
        raise WorkflowValidationError("No text completion service configured")

    text_parts: list[str] = []
    image_refs: list[str] = []
    for item in upstream:
        value = item.output
        if not isinstance(value, str) or not value.strip():
            continue
        if is_image_reference(value):
            image_refs.append(value)
        else:
            text_parts.append(value)

    prompt = "\n\n".join(text_parts)
    if image_refs:
        note = f"[The following image URLs were provided as input: {', '.join(image_refs)}]"
        prompt = f"{prompt}\n\n{note}" if prompt else note
    if not prompt:
        raise WorkflowValidationError("No input connected")

    intent = await classify_intent(services.text_completer, prompt)
    logger.info("[LLM] node=%s intent=%s", node.id, intent.value)

    generator = services.image_generator
    if intent == Intent.IMAGE:
        if generator is not None and generator.is_configured():
            data, mime_type = await generator.generate(prompt)
            return await _publish_image(services, data, mime_type, f"generated-{node.id}")
        logger.info("[LLM] node=%s image generation unavailable, answering with text", node.id)

    return await services.text_completer.complete(
        params.system_prompt or DEFAULT_SYSTEM_PROMPT,
        prompt,
        temperature=params.temperature,
        max_tokens=params.max_tokens,
    )


verify_executor_registry()
