"""
Graph checks for the editor: validity and the wave layout a run would use.
"""

from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from app.models.graph import WorkflowEdge, WorkflowNode
from app.services.dag import compute_waves, validate_graph

router = APIRouter(prefix="/graph", tags=["graph"])


class GraphRequest(BaseModel):
    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge] = Field(default_factory=list)


class GraphValidationResponse(BaseModel):
    valid: bool
    error: Optional[str] = None
    waves: Optional[List[List[str]]] = None


@router.post("/validate", response_model=GraphValidationResponse)
async def validate(body: GraphRequest):
    result = validate_graph(body.nodes, body.edges)
    if not result.valid:
        return GraphValidationResponse(valid=False, error=result.error)
    return GraphValidationResponse(valid=True, waves=compute_waves(body.nodes, body.edges))
