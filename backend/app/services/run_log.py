"""
Run log sinks.

The engine reports every run and node transition to a RunLog. Delivery is
best-effort: the engine logs sink failures and carries on. The same sinks
answer the read side of the HTTP API (get/list/delete runs).

- InMemoryRunLog: process-local, the default and what tests use.
- SupabaseRunLog: `runs` / `node_logs` tables.
- FanOutRunLog: forwards to several sinks (e.g. storage plus an SSE queue).
- QueueRunLog: turns transitions into stream events on an asyncio.Queue.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

from app.models.run import (
    TERMINAL_NODE_STATUSES,
    TERMINAL_RUN_STATUSES,
    NodeExecutionState,
    NodeStatus,
    RunRecord,
    RunScope,
    RunStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_LOGGED_OUTPUT_CHARS = 1000
TRUNCATED_PREFIX_CHARS = 100
DEFAULT_LIST_LIMIT = 20


def sanitize_output(output: Any) -> Any:
    """Shorten long string outputs (inline images, long completions) for storage."""
    if isinstance(output, str) and len(output) > MAX_LOGGED_OUTPUT_CHARS:
        dropped = len(output) - TRUNCATED_PREFIX_CHARS
        return f"{output[:TRUNCATED_PREFIX_CHARS]}... [TRUNCATED {dropped} chars]"
    return output


class RunLog:
    """Base sink. Subclasses override what they persist; the defaults are no-ops."""

    async def on_run_start(self, run: RunRecord) -> None:
        return None

    async def on_transition(
        self,
        run_id: str,
        node_id: str,
        status: NodeStatus,
        *,
        output: Any = None,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        return None

    async def on_run_complete(
        self, run_id: str, status: RunStatus, *, duration_ms: int | None = None
    ) -> None:
        return None

    async def get_run(self, run_id: str) -> RunRecord | None:
        return None

    async def list_runs(
        self, workflow_id: str | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[RunRecord]:
        return []

    async def delete_run(self, run_id: str) -> bool:
        return False


def _apply_transition(
    state: NodeExecutionState,
    status: NodeStatus,
    output: Any,
    error: str | None,
    duration_ms: int | None,
) -> None:
    now = utcnow()
    state.status = status
    if status == NodeStatus.RUNNING:
        state.started_at = now
    elif status in TERMINAL_NODE_STATUSES:
        state.completed_at = now
    if status == NodeStatus.SUCCESS:
        state.output = sanitize_output(output)
    if status == NodeStatus.FAILED:
        state.error = error
    if duration_ms is not None:
        state.duration_ms = duration_ms


class InMemoryRunLog(RunLog):
    def __init__(self):
        self._runs: dict[str, RunRecord] = {}

    async def on_run_start(self, run: RunRecord) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def on_transition(
        self,
        run_id: str,
        node_id: str,
        status: NodeStatus,
        *,
        output: Any = None,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        run = self._runs.get(run_id)
        if run is None:
            logger.warning("Transition for unknown run %s (node %s)", run_id, node_id)
            return
        state = next((s for s in run.node_states if s.node_id == node_id), None)
        if state is None:
            state = NodeExecutionState(node_id=node_id)
            run.node_states.append(state)
        _apply_transition(state, status, output, error, duration_ms)

    async def on_run_complete(
        self, run_id: str, status: RunStatus, *, duration_ms: int | None = None
    ) -> None:
        run = self._runs.get(run_id)
        if run is None:
            logger.warning("Completion for unknown run %s", run_id)
            return
        if run.status in TERMINAL_RUN_STATUSES:
            logger.warning(
                "Run %s already %s, ignoring %s", run_id, run.status.value, status.value
            )
            return
        run.status = status
        run.completed_at = utcnow()
        if duration_ms is not None:
            run.duration_ms = duration_ms

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self, workflow_id: str | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[RunRecord]:
        runs = [
            r for r in self._runs.values()
            if workflow_id is None or r.workflow_id == workflow_id
        ]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def delete_run(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class SupabaseRunLog(RunLog):
    """
    Persists runs to Supabase.

    Tables:
        runs(run_id pk, workflow_id, status, scope, selected_nodes, started_at,
             completed_at, duration_ms)
        node_logs(run_id, node_id, node_type, status, output, error,
                  duration_ms, started_at, completed_at)

    The supabase client is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, client_factory: Callable[[], Any]):
        self._client_factory = client_factory

    @property
    def client(self):
        return self._client_factory()

    async def on_run_start(self, run: RunRecord) -> None:
        run_row = {
            "run_id": run.run_id,
            "workflow_id": run.workflow_id,
            "status": run.status.value,
            "scope": run.scope.value,
            "selected_nodes": run.selected_nodes,
            "started_at": run.started_at.isoformat(),
        }
        node_rows = [
            {
                "run_id": run.run_id,
                "node_id": s.node_id,
                "node_type": s.node_type or "unknown",
                "status": s.status.value,
            }
            for s in run.node_states
        ]

        def _insert():
            self.client.table("runs").insert(run_row).execute()
            if node_rows:
                self.client.table("node_logs").insert(node_rows).execute()

        await asyncio.to_thread(_insert)

    async def on_transition(
        self,
        run_id: str,
        node_id: str,
        status: NodeStatus,
        *,
        output: Any = None,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        now = utcnow().isoformat()
        update: dict[str, Any] = {"status": status.value}
        if status == NodeStatus.RUNNING:
            update["started_at"] = now
        if status in TERMINAL_NODE_STATUSES:
            update["completed_at"] = now
        if status == NodeStatus.SUCCESS:
            update["output"] = sanitize_output(output)
        if error is not None:
            update["error"] = error
        if duration_ms is not None:
            update["duration_ms"] = duration_ms

        def _update():
            (
                self.client.table("node_logs")
                .update(update)
                .eq("run_id", run_id)
                .eq("node_id", node_id)
                .execute()
            )

        await asyncio.to_thread(_update)

    async def on_run_complete(
        self, run_id: str, status: RunStatus, *, duration_ms: int | None = None
    ) -> None:
        update: dict[str, Any] = {
            "status": status.value,
            "completed_at": utcnow().isoformat(),
        }
        if duration_ms is not None:
            update["duration_ms"] = duration_ms
        active = [RunStatus.PENDING.value, RunStatus.RUNNING.value]

        def _update():
            # Only an active run can take a terminal status.
            (
                self.client.table("runs")
                .update(update)
                .eq("run_id", run_id)
                .in_("status", active)
                .execute()
            )

        await asyncio.to_thread(_update)

    def _record_from_rows(self, run_row: dict, node_rows: list[dict]) -> RunRecord:
        return RunRecord(
            run_id=run_row["run_id"],
            workflow_id=run_row.get("workflow_id"),
            status=RunStatus(run_row["status"]),
            scope=RunScope(run_row.get("scope") or RunScope.FULL.value),
            selected_nodes=run_row.get("selected_nodes") or [],
            started_at=_parse_ts(run_row.get("started_at")) or utcnow(),
            completed_at=_parse_ts(run_row.get("completed_at")),
            duration_ms=run_row.get("duration_ms"),
            node_states=[
                NodeExecutionState(
                    node_id=row["node_id"],
                    node_type=row.get("node_type"),
                    status=NodeStatus(row["status"]),
                    output=row.get("output"),
                    error=row.get("error"),
                    started_at=_parse_ts(row.get("started_at")),
                    completed_at=_parse_ts(row.get("completed_at")),
                    duration_ms=row.get("duration_ms"),
                )
                for row in node_rows
            ],
        )

    async def get_run(self, run_id: str) -> RunRecord | None:
        def _fetch():
            runs = self.client.table("runs").select("*").eq("run_id", run_id).execute()
            if not runs.data:
                return None
            nodes = (
                self.client.table("node_logs")
                .select("*")
                .eq("run_id", run_id)
                .order("started_at")
                .execute()
            )
            return self._record_from_rows(runs.data[0], nodes.data or [])

        return await asyncio.to_thread(_fetch)

    async def list_runs(
        self, workflow_id: str | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[RunRecord]:
        def _fetch():
            query = self.client.table("runs").select("*")
            if workflow_id is not None:
                query = query.eq("workflow_id", workflow_id)
            runs = query.order("started_at", desc=True).limit(limit).execute()
            run_rows = runs.data or []
            if not run_rows:
                return []
            run_ids = [row["run_id"] for row in run_rows]
            nodes = (
                self.client.table("node_logs")
                .select("*")
                .in_("run_id", run_ids)
                .order("started_at")
                .execute()
            )
            by_run: dict[str, list[dict]] = {rid: [] for rid in run_ids}
            for row in nodes.data or []:
                by_run.setdefault(row["run_id"], []).append(row)
            return [self._record_from_rows(row, by_run[row["run_id"]]) for row in run_rows]

        return await asyncio.to_thread(_fetch)

    async def delete_run(self, run_id: str) -> bool:
        def _delete():
            self.client.table("node_logs").delete().eq("run_id", run_id).execute()
            result = self.client.table("runs").delete().eq("run_id", run_id).execute()
            return bool(result.data)

        return await asyncio.to_thread(_delete)


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


class FanOutRunLog(RunLog):
    """
    Forwards writes to every sink and reads from the first one.

    A failing sink is logged and does not stop delivery to the others.
    """

    def __init__(self, *sinks: RunLog):
        if not sinks:
            raise ValueError("FanOutRunLog needs at least one sink")
        self.sinks = list(sinks)

    async def _each(self, method: str, *args, **kwargs) -> None:
        for sink in self.sinks:
            try:
                await getattr(sink, method)(*args, **kwargs)
            except Exception:
                logger.exception("Run log sink %s.%s failed", type(sink).__name__, method)

    async def on_run_start(self, run: RunRecord) -> None:
        await self._each("on_run_start", run)

    async def on_transition(self, run_id, node_id, status, *, output=None, error=None, duration_ms=None):
        await self._each(
            "on_transition", run_id, node_id, status,
            output=output, error=error, duration_ms=duration_ms,
        )

    async def on_run_complete(self, run_id, status, *, duration_ms=None):
        await self._each("on_run_complete", run_id, status, duration_ms=duration_ms)

    async def get_run(self, run_id: str) -> RunRecord | None:
        return await self.sinks[0].get_run(run_id)

    async def list_runs(self, workflow_id=None, limit=DEFAULT_LIST_LIMIT):
        return await self.sinks[0].list_runs(workflow_id, limit)

    async def delete_run(self, run_id: str) -> bool:
        return await self.sinks[0].delete_run(run_id)


class QueueRunLog(RunLog):
    """Publishes transitions as stream events; a None sentinel ends the stream."""

    def __init__(self, queue: asyncio.Queue, node_types: dict[str, str] | None = None):
        self.queue = queue
        self.node_types = node_types or {}

    async def on_run_start(self, run: RunRecord) -> None:
        await self.queue.put({
            "event": "run_start",
            "run_id": run.run_id,
            "scope": run.scope.value,
            "total_nodes": len(run.node_states),
        })

    async def on_transition(
        self,
        run_id: str,
        node_id: str,
        status: NodeStatus,
        *,
        output: Any = None,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        event: dict[str, Any] = {"run_id": run_id, "node_id": node_id}
        if status == NodeStatus.RUNNING:
            event.update(event="node_start", node_type=self.node_types.get(node_id))
        elif status == NodeStatus.SUCCESS:
            event.update(event="node_complete", output=output, execution_time_ms=duration_ms)
        elif status == NodeStatus.FAILED:
            event.update(event="node_error", error=error, execution_time_ms=duration_ms)
        elif status == NodeStatus.SKIPPED:
            event.update(event="node_skipped")
        else:
            return
        await self.queue.put(event)
