"""
Node type registry: source of truth for what each node kind is configured with.

Maps each NodeType to its configuration model and default parameters.
Built once at start-up by build_node_registry() and handed to the engine;
nothing reads it as module-level state.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

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
from app.services.errors import WorkflowValidationError


class NodeTypeSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    data_model: type[BaseModel]
    default_params: dict[str, Any] = {}


class NodeRegistry:
    """Lookup of NodeTypeSpec by node type, covering every NodeType."""

    def __init__(self, specs: dict[NodeType, NodeTypeSpec]):
        missing = [t.value for t in NodeType if t not in specs]
        if missing:
            raise RuntimeError(
                f"Node registry is missing specs for: {', '.join(missing)}"
            )
        self._specs = dict(specs)

    def spec_for(self, node_type: NodeType) -> NodeTypeSpec:
        return self._specs[node_type]

    def resolve_params(self, node: WorkflowNode) -> BaseModel:
        """
        Merge registry defaults under the node's own data and validate.

        Raises WorkflowValidationError naming the node and the offending fields.
        """
        spec = self.spec_for(node.type)
        # Explicit nulls from the editor mean "unset", not "override with None".
        merged = {
            **spec.default_params,
            **{k: v for k, v in node.data.items() if v is not None},
        }
        try:
            return spec.data_model.model_validate(merged)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            )
            raise WorkflowValidationError(
                f"Invalid configuration for {node.type.value} node '{node.id}': {problems}"
            ) from exc


def build_node_registry() -> NodeRegistry:
    return NodeRegistry(
        {
            # ---- Source nodes ----
            NodeType.TEXT: NodeTypeSpec(
                data_model=TextNodeData,
                default_params={"userMessage": ""},
            ),
            NodeType.IMAGE_SOURCE: NodeTypeSpec(
                data_model=ImageSourceNodeData,
                default_params={"imageUrl": None},
            ),
            NodeType.VIDEO_SOURCE: NodeTypeSpec(
                data_model=VideoSourceNodeData,
                default_params={"videoUrl": None},
            ),

            # ---- Processing nodes ----
            NodeType.CROP: NodeTypeSpec(
                data_model=CropNodeData,
                default_params={
                    "xPercent": 0,
                    "yPercent": 0,
                    "widthPercent": 100,
                    "heightPercent": 100,
                },
            ),
            NodeType.EXTRACT_FRAME: NodeTypeSpec(
                data_model=ExtractFrameNodeData,
                default_params={
                    "timestamp": "50%",
                    "outputFormat": "png",
                    "quality": 2,
                },
            ),
            NodeType.INFERENCE: NodeTypeSpec(
                data_model=InferenceNodeData,
                default_params={
                    "systemPrompt": "",
                    "temperature": 0.7,
                    "maxTokens": 1024,
                },
            ),
        }
    )
