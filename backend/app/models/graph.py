"""
Graph models: the editor's nodes and edges as submitted for a run.

Node `data` stays an untyped dict here; each node kind validates its own
configuration through the data models below (see node_registry).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeType(str, Enum):
    TEXT = "text"
    IMAGE_SOURCE = "image-source"
    VIDEO_SOURCE = "video-source"
    CROP = "crop"
    EXTRACT_FRAME = "extract-frame"
    INFERENCE = "inference"


# Type names used by older saved editor graphs.
LEGACY_NODE_TYPES: dict[str, NodeType] = {
    "textNode": NodeType.TEXT,
    "imageUploadNode": NodeType.IMAGE_SOURCE,
    "videoUploadNode": NodeType.VIDEO_SOURCE,
    "cropImageNode": NodeType.CROP,
    "extractFrameNode": NodeType.EXTRACT_FRAME,
    "llmNode": NodeType.INFERENCE,
}


class WorkflowNode(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(..., min_length=1)
    type: NodeType
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _map_legacy_type(cls, value: Any) -> Any:
        if isinstance(value, str) and value in LEGACY_NODE_TYPES:
            return LEGACY_NODE_TYPES[value]
        return value


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str | None = None
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


# ---------------------------------------------------------------------------
# Per-kind node configuration
# ---------------------------------------------------------------------------
# Field aliases match the camelCase keys the editor stores in node.data.
# Defaults are not declared here; they come from the node registry.


class _NodeData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TextNodeData(_NodeData):
    user_message: str = Field(alias="userMessage")


class ImageSourceNodeData(_NodeData):
    image_url: str | None = Field(alias="imageUrl")
    file_name: str | None = Field(default=None, alias="fileName")


class VideoSourceNodeData(_NodeData):
    video_url: str | None = Field(alias="videoUrl")
    file_name: str | None = Field(default=None, alias="fileName")


class CropNodeData(_NodeData):
    x_percent: float = Field(alias="xPercent", ge=0, le=100)
    y_percent: float = Field(alias="yPercent", ge=0, le=100)
    width_percent: float = Field(alias="widthPercent", ge=0, le=100)
    height_percent: float = Field(alias="heightPercent", ge=0, le=100)


def parse_timestamp(value: str) -> tuple[bool, float]:
    """
    Split a frame timestamp into (is_percentage, number).

    "NN%" must lie in [0, 100]; otherwise the value is seconds, optionally
    suffixed with "s", and must be non-negative. Raises ValueError.
    """
    text = str(value).strip()
    is_percentage = text.endswith("%")
    number_text = text[:-1] if is_percentage or text.endswith("s") else text
    try:
        number = float(number_text)
    except ValueError:
        raise ValueError(f"Invalid timestamp: {value}")
    if number != number:
        raise ValueError(f"Invalid timestamp: {value}")
    if is_percentage and not 0 <= number <= 100:
        raise ValueError(f"Invalid percentage: {value}. Must be between 0% and 100%")
    if not is_percentage and number < 0:
        raise ValueError(f"Invalid timestamp: {value}. Must be a non-negative number")
    return is_percentage, number


class ExtractFrameNodeData(_NodeData):
    timestamp: str
    output_format: Literal["png", "jpg"] = Field(alias="outputFormat")
    quality: int = Field(ge=2, le=31)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp_as_text(cls, value: Any) -> Any:
        # The editor sometimes stores a bare number of seconds.
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("timestamp")
    @classmethod
    def _timestamp_is_parseable(cls, value: str) -> str:
        parse_timestamp(value)
        return value.strip()


class InferenceNodeData(_NodeData):
    system_prompt: str = Field(alias="systemPrompt")
    temperature: float = Field(ge=0, le=2)
    max_tokens: int = Field(alias="maxTokens", ge=1, le=8192)
