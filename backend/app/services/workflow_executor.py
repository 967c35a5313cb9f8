"""
Workflow execution engine.

Takes a submitted graph (nodes + edges), validates it, restricts it to the
requested scope and partitions it into waves. Waves run strictly in order;
nodes inside a wave run concurrently. Each node reads its upstream outputs
from the run's output map and writes its own output there on success.

Key concepts:
- Fail-fast: the first failed node stops the run after its wave. Siblings
  already started in that wave are awaited, so their outputs and states are
  still recorded. Nodes in later waves are marked skipped.
- Cancellation is advisory: cancel() sets a flag that is checked before each
  wave. Running executors are never interrupted.
- Every transition goes to the RunLog sink. Sink failures are logged, never
  raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Sequence

from app.models.graph import WorkflowEdge, WorkflowNode
from app.models.run import (
    ExecutionContext,
    ExecutionPlan,
    NodeExecutionState,
    NodeStatus,
    RunRecord,
    RunResult,
    RunScope,
    RunStatus,
    UpstreamOutput,
    utcnow,
)
from app.services.dag import compute_waves, execution_subgraph, require_valid_graph
from app.services.errors import (
    NodeExecutionError,
    WorkflowError,
    WorkflowValidationError,
)
from app.services.node_executors import (
    ExecutorServices,
    get_executor,
    verify_executor_registry,
)
from app.services.payloads import classify_output, preview
from app.services.run_log import FanOutRunLog, QueueRunLog, RunLog

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class _RunState:
    """Book-keeping for one run between its start and its terminal status."""

    def __init__(self, run_id: str, plan: ExecutionPlan, sink: RunLog, context: ExecutionContext):
        self.run_id = run_id
        self.plan = plan
        self.sink = sink
        self.context = context
        self.node_map = {n.id: n for n in plan.nodes}
        self.states = {
            n.id: NodeExecutionState(node_id=n.id, node_type=n.type.value)
            for n in plan.nodes
        }
        self.started = time.perf_counter()


class WorkflowEngine:
    def __init__(self, services: ExecutorServices, run_log: RunLog | None = None):
        verify_executor_registry()
        self.services = services
        self.run_log = run_log or RunLog()
        self._active: set[str] = set()
        self._cancel_requested: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_run(
        self,
        nodes: Sequence[WorkflowNode],
        edges: Sequence[WorkflowEdge],
        scope: RunScope = RunScope.FULL,
        selected_nodes: Sequence[str] | None = None,
    ) -> ExecutionPlan:
        """
        Validate the graph, restrict it to the scope and compute waves.

        Every node's configuration is validated here too, so a malformed
        parameter rejects the run before anything executes.

        Raises:
            WorkflowValidationError
        """
        require_valid_graph(nodes, edges)

        selected = list(dict.fromkeys(selected_nodes or []))
        if scope == RunScope.SINGLE and len(selected) != 1:
            raise WorkflowValidationError(
                "A single-node run needs exactly one selected node"
            )
        if scope == RunScope.PARTIAL and not selected:
            raise WorkflowValidationError(
                "A partial run needs at least one selected node"
            )

        if scope == RunScope.FULL:
            run_nodes, run_edges = list(nodes), list(edges)
            selected = []
        else:
            run_nodes, run_edges = execution_subgraph(selected, nodes, edges)

        for node in run_nodes:
            self.services.registry.resolve_params(node)

        waves = compute_waves(run_nodes, run_edges)
        return ExecutionPlan(
            scope=scope,
            selected_nodes=selected,
            nodes=run_nodes,
            edges=run_edges,
            waves=waves,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan: ExecutionPlan,
        *,
        run_id: str | None = None,
        workflow_id: str | None = None,
        sink: RunLog | None = None,
    ) -> RunResult:
        """Run a plan to its terminal status and return the result."""
        run = await self._begin(plan, run_id or str(uuid.uuid4()), workflow_id, sink)
        return await self._drive(run)

    async def start_run(
        self,
        plan: ExecutionPlan,
        *,
        workflow_id: str | None = None,
    ) -> str:
        """
        Record the run, then execute it in the background.

        Returns the run id once the run record exists, so it can be queried
        immediately.
        """
        run = await self._begin(plan, str(uuid.uuid4()), workflow_id, None)
        task = asyncio.create_task(self._drive(run))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run.run_id

    def cancel(self, run_id: str) -> bool:
        """Ask an in-flight run to stop at the next wave boundary."""
        if run_id not in self._active:
            return False
        self._cancel_requested.add(run_id)
        logger.info("[RUN %s] Cancellation requested", run_id)
        return True

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    async def shutdown(self) -> None:
        """Cancel background runs (application shutdown)."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _notify(self, method, *args, **kwargs) -> None:
        try:
            await method(*args, **kwargs)
        except Exception:
            logger.exception("Run log call %s failed", getattr(method, "__name__", method))

    async def _begin(
        self,
        plan: ExecutionPlan,
        run_id: str,
        workflow_id: str | None,
        sink: RunLog | None,
    ) -> _RunState:
        sink = sink or self.run_log
        context = ExecutionContext(
            run_id=run_id,
            nodes=list(plan.nodes),
            edges=list(plan.edges),
            services=self.services,
        )
        run = _RunState(run_id, plan, sink, context)
        record = RunRecord(
            run_id=run_id,
            workflow_id=workflow_id,
            status=RunStatus.RUNNING,
            scope=plan.scope,
            selected_nodes=plan.selected_nodes,
            node_states=[s.model_copy() for s in run.states.values()],
        )
        self._active.add(run_id)
        await self._notify(sink.on_run_start, record)
        logger.info(
            "[RUN %s] Starting %s run: %d nodes in %d waves",
            run_id, plan.scope.value, len(plan.nodes), len(plan.waves),
        )
        return run

    async def _drive(self, run: _RunState) -> RunResult:
        status = RunStatus.COMPLETED
        error: str | None = None
        interrupted = False

        try:
            for index, wave in enumerate(run.plan.waves):
                if run.run_id in self._cancel_requested:
                    status = RunStatus.CANCELLED
                    error = "Run cancelled"
                    logger.info("[RUN %s] Cancelled before wave %d", run.run_id, index + 1)
                    break

                logger.info(
                    "[RUN %s] Wave %d/%d: %s",
                    run.run_id, index + 1, len(run.plan.waves), ", ".join(wave),
                )
                results = await asyncio.gather(
                    *(self._run_node(run, run.node_map[node_id]) for node_id in wave),
                    return_exceptions=True,
                )
                failures = [r for r in results if isinstance(r, BaseException)]
                if failures:
                    raise failures[0]

        except NodeExecutionError as e:
            status = RunStatus.FAILED
            error = str(e)
        except asyncio.CancelledError:
            status = RunStatus.CANCELLED
            error = "Run interrupted"
            interrupted = True
        except Exception as e:
            logger.exception("[RUN %s] Engine error: %s", run.run_id, e)
            status = RunStatus.FAILED
            error = f"Internal error: {type(e).__name__}: {e}"
        finally:
            self._active.discard(run.run_id)
            self._cancel_requested.discard(run.run_id)

        for node_id, state in run.states.items():
            if state.status == NodeStatus.PENDING:
                state.status = NodeStatus.SKIPPED
                await self._notify(
                    run.sink.on_transition, run.run_id, node_id, NodeStatus.SKIPPED
                )

        total_ms = _elapsed_ms(run.started)
        await self._notify(
            run.sink.on_run_complete, run.run_id, status, duration_ms=total_ms
        )

        if status == RunStatus.COMPLETED:
            logger.info("[RUN %s] Completed in %dms", run.run_id, total_ms)
        else:
            logger.warning("[RUN %s] %s after %dms: %s", run.run_id, status.value, total_ms, error)

        result = RunResult(
            run_id=run.run_id,
            status=status,
            node_states=list(run.states.values()),
            outputs=dict(run.context.outputs),
            total_execution_time_ms=total_ms,
            error=error,
        )
        if interrupted:
            raise asyncio.CancelledError()
        return result

    def _collect_upstream(self, node_id: str, context: ExecutionContext) -> list[UpstreamOutput]:
        return [
            UpstreamOutput(
                node_id=edge.source,
                output=context.outputs.get(edge.source),
                source_handle=edge.source_handle,
                target_handle=edge.target_handle,
            )
            for edge in context.edges
            if edge.target == node_id
        ]

    async def _run_node(self, run: _RunState, node: WorkflowNode) -> Any:
        state = run.states[node.id]
        upstream = self._collect_upstream(node.id, run.context)

        state.status = NodeStatus.RUNNING
        state.started_at = utcnow()
        await self._notify(run.sink.on_transition, run.run_id, node.id, NodeStatus.RUNNING)
        logger.info("[NODE %s] Running %s (%d inputs)", node.id, node.type.value, len(upstream))

        started = time.perf_counter()
        try:
            params = self.services.registry.resolve_params(node)
            output = await get_executor(node.type)(node, params, upstream, run.context)
        except asyncio.CancelledError:
            await self._fail(run, state, "Execution cancelled", _elapsed_ms(started))
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            if isinstance(e, WorkflowError):
                logger.warning("[NODE %s] Failed: %s", node.id, message)
            else:
                logger.exception("[NODE %s] Failed: %s", node.id, message)
            await self._fail(run, state, message, _elapsed_ms(started))
            raise NodeExecutionError(node.id, message) from e

        elapsed = _elapsed_ms(started)
        run.context.outputs[node.id] = output
        state.status = NodeStatus.SUCCESS
        state.output = output
        state.completed_at = utcnow()
        state.duration_ms = elapsed
        await self._notify(
            run.sink.on_transition,
            run.run_id,
            node.id,
            NodeStatus.SUCCESS,
            output=output,
            duration_ms=elapsed,
        )
        logger.info(
            "[NODE %s] Succeeded in %dms (%s): %s",
            node.id, elapsed, classify_output(output), preview(output),
        )
        return output

    async def _fail(self, run: _RunState, state: NodeExecutionState, message: str, elapsed: int) -> None:
        state.status = NodeStatus.FAILED
        state.error = message
        state.completed_at = utcnow()
        state.duration_ms = elapsed
        await self._notify(
            run.sink.on_transition,
            run.run_id,
            state.node_id,
            NodeStatus.FAILED,
            error=message,
            duration_ms=elapsed,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_run_events(
        self,
        plan: ExecutionPlan,
        *,
        workflow_id: str | None = None,
    ) -> AsyncIterator[str]:
        """
        Execute a plan and yield Server-Sent Events as transitions happen.

        Yields JSON events:
        - {"event": "run_start", "run_id": "...", "scope": "...", "total_nodes": N}
        - {"event": "node_start", "node_id": "...", "node_type": "..."}
        - {"event": "node_complete", "node_id": "...", "output": ..., "execution_time_ms": ...}
        - {"event": "node_error", "node_id": "...", "error": "...", "execution_time_ms": ...}
        - {"event": "node_skipped", "node_id": "..."}
        - {"event": "run_complete", "run_id": "...", "outputs": {...}, "total_execution_time_ms": ...}
        - {"event": "run_error", "run_id": "...", "status": "...", "error": "...", ...}
        """
        run_id = str(uuid.uuid4())

        # Event queue for SSE - decouples execution from streaming
        event_queue: asyncio.Queue = asyncio.Queue()
        node_types = {n.id: n.type.value for n in plan.nodes}
        sink = FanOutRunLog(self.run_log, QueueRunLog(event_queue, node_types))

        async def coordinator():
            try:
                result = await self.execute(
                    plan, run_id=run_id, workflow_id=workflow_id, sink=sink
                )
                if result.success:
                    await event_queue.put({
                        "event": "run_complete",
                        "run_id": run_id,
                        "outputs": result.outputs,
                        "total_execution_time_ms": result.total_execution_time_ms,
                    })
                else:
                    await event_queue.put({
                        "event": "run_error",
                        "run_id": run_id,
                        "status": result.status.value,
                        "error": result.error,
                        "total_execution_time_ms": result.total_execution_time_ms,
                        "node_states": [s.model_dump(mode="json") for s in result.node_states],
                    })
            except Exception as e:
                logger.exception("Coordinator error: %s", e)
                await event_queue.put({
                    "event": "run_error",
                    "run_id": run_id,
                    "status": RunStatus.FAILED.value,
                    "error": f"Internal error: {type(e).__name__}: {e}",
                })
            finally:
                # Signal end of events
                await event_queue.put(None)

        coordinator_task = asyncio.create_task(coordinator())

        try:
            while True:
                event = await event_queue.get()
                if event is None:
                    break
                yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            if not coordinator_task.done():
                coordinator_task.cancel()
                try:
                    await coordinator_task
                except asyncio.CancelledError:
                    pass
