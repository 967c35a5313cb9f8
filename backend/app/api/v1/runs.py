"""
Workflow run endpoints.

POST   /runs                 validate + plan, start in the background, 201 with the run id
POST   /runs/execute         run to completion and return the RunResult
POST   /runs/execute/stream  run with Server-Sent Events as nodes transition
GET    /runs                 recent runs (newest first), optionally per workflow
GET    /runs/{run_id}        one run with its node states
DELETE /runs/{run_id}        cancel an active run, or delete a finished one
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.graph import WorkflowEdge, WorkflowNode
from app.models.run import ExecutionPlan, RunRecord, RunScope, RunStatus
from app.services.errors import WorkflowValidationError
from app.services.run_log import DEFAULT_LIST_LIMIT
from app.services.runtime import Runtime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: Optional[str] = Field(None, alias="workflowId")
    nodes: List[WorkflowNode] = Field(..., description="Editor nodes")
    edges: List[WorkflowEdge] = Field(default_factory=list, description="Editor edges")
    scope: RunScope = RunScope.FULL
    selected_nodes: List[str] = Field(default_factory=list, alias="selectedNodes")

    @field_validator("scope", mode="before")
    @classmethod
    def _lowercase_scope(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class RunStartedResponse(BaseModel):
    run_id: str
    workflow_id: Optional[str] = None
    scope: RunScope
    node_count: int
    wave_count: int


class RunListResponse(BaseModel):
    runs: List[RunRecord]


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _plan(runtime: Runtime, body: RunRequest) -> ExecutionPlan:
    try:
        return runtime.engine.plan_run(
            body.nodes, body.edges, body.scope, body.selected_nodes
        )
    except WorkflowValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"message": "Invalid workflow", "error": str(e)},
        )


@router.post("", response_model=RunStartedResponse, status_code=201)
async def start_run(body: RunRequest, runtime: Runtime = Depends(get_runtime)):
    plan = _plan(runtime, body)
    run_id = await runtime.engine.start_run(plan, workflow_id=body.workflow_id)
    return RunStartedResponse(
        run_id=run_id,
        workflow_id=body.workflow_id,
        scope=plan.scope,
        node_count=len(plan.nodes),
        wave_count=len(plan.waves),
    )


@router.post("/execute")
async def execute_run(body: RunRequest, runtime: Runtime = Depends(get_runtime)):
    """Execute a graph and wait for the result."""
    plan = _plan(runtime, body)
    result = await runtime.engine.execute(plan, workflow_id=body.workflow_id)
    payload = result.model_dump(mode="json")
    payload["success"] = result.success
    return payload


@router.post("/execute/stream")
async def execute_run_stream(body: RunRequest, runtime: Runtime = Depends(get_runtime)):
    """
    Execute a graph with Server-Sent Events (SSE) streaming.

    Events: run_start, node_start, node_complete, node_error, node_skipped,
    run_complete, run_error.
    """
    # Validation errors are reported before the stream opens.
    plan = _plan(runtime, body)

    return StreamingResponse(
        runtime.engine.stream_run_events(plan, workflow_id=body.workflow_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.get("", response_model=RunListResponse)
async def list_runs(
    workflow_id: Optional[str] = Query(None, alias="workflowId"),
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, le=100),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        runs = await runtime.run_log.list_runs(workflow_id, limit)
    except Exception as e:
        logger.exception("Failed to list runs: %s", e)
        raise HTTPException(status_code=500, detail=f"Failed to list runs: {str(e)}")
    return RunListResponse(runs=runs)


@router.get("/{run_id}", response_model=RunRecord)
async def get_run(run_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        run = await runtime.run_log.get_run(run_id)
    except Exception as e:
        logger.exception("Failed to fetch run %s: %s", run_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to fetch run: {str(e)}")
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.delete("/{run_id}")
async def delete_run(run_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    """
    Active runs are cancelled (they stop at the next wave boundary); finished
    runs are deleted.
    """
    run = await runtime.run_log.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    if run.status in (RunStatus.PENDING, RunStatus.RUNNING):
        if not runtime.engine.cancel(run_id):
            # Not executing in this process (e.g. left over from a restart).
            await runtime.run_log.on_run_complete(run_id, RunStatus.CANCELLED)
        return {"run_id": run_id, "action": "cancelled"}

    deleted = await runtime.run_log.delete_run(run_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"run_id": run_id, "action": "deleted"}
