"""Run gates, live progress and the observable operation registry.

One ``PipelineCoordinator`` is created per process (in the app lifespan) and
injected into the sync service and the tagging engine. It owns:

* two ``RunGate`` objects, so at most one sync and, independently, at most one
  tag/retag run are active at a time;
* a ``ProgressTracker`` per gate, read by polling clients;
* a bounded, newest-first history of operations;
* ``store_lock``, held around every write-and-commit on the shared store
  connection, so one writer's commit never lands another writer's
  half-finished batch.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from adotracker.models import PipelineProgress, ProgressSnapshot

logger = logging.getLogger("adotracker.pipeline")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunGate:
    """At-most-one gate. Acquisition never blocks; callers decide what to do on refusal."""

    def __init__(self, name: str):
        self.name = name
        self._held = False

    @property
    def in_progress(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        # No await between the check and the set, so this is atomic on the event loop.
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


class ProgressTracker:
    def __init__(self, name: str):
        self.name = name
        self._operation = ""
        self._phase = "idle"
        self._current = 0
        self._total = 0
        self._label: Optional[str] = None
        self._in_progress = False
        self._success = 0
        self._failure = 0
        self._started_at = ""
        self._last_result: Optional[dict[str, Any]] = None

    def begin(self, operation: str, *, phase: str, total: int = 0) -> None:
        self._operation = operation
        self._phase = phase
        self._current = 0
        self._total = max(0, int(total))
        self._label = None
        self._in_progress = True
        self._success = 0
        self._failure = 0
        self._started_at = _now()

    def set_phase(self, phase: str, *, total: Optional[int] = None) -> None:
        self._phase = phase
        if total is not None:
            self._total = max(0, int(total))

    def add_total(self, count: int) -> None:
        self._total += max(0, int(count))

    def advance(self, label: Optional[str] = None, *, succeeded: Optional[bool] = None) -> None:
        self._current += 1
        if label is not None:
            self._label = label
        if succeeded is True:
            self._success += 1
        elif succeeded is False:
            self._failure += 1

    def finish(self, result: Optional[dict[str, Any]] = None) -> None:
        self._phase = "idle"
        self._label = None
        self._in_progress = False
        self._last_result = result

    @property
    def percentage(self) -> int:
        if self._total <= 0:
            return 0
        return min(100, (self._current * 100) // self._total)

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            operation=self._operation,
            phase=self._phase,
            current=self._current,
            total=self._total,
            percentage=self.percentage,
            currentItemLabel=self._label,
            inProgress=self._in_progress,
            successCount=self._success,
            failureCount=self._failure,
            startedAt=self._started_at,
            lastResult=copy.deepcopy(self._last_result),
        )


class PipelineCoordinator:
    def __init__(self, max_operation_history: int = 40):
        self.sync_gate = RunGate("sync")
        self.tagging_gate = RunGate("tagging")
        self.sync_progress = ProgressTracker("sync")
        self.tagging_progress = ProgressTracker("tagging")
        self.store_lock = asyncio.Lock()

        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = max(1, int(max_operation_history))

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        op_id = f"OP-{uuid.uuid4()}"
        now = _now()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "counters": {},
            "stats": {},
            "metadata": metadata or {},
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        phase_changed = False
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase and phase != operation.get("phase"):
                operation["phase"] = phase
                phase_changed = True
            if message is not None:
                operation["message"] = message
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = _now()

        if phase_changed:
            logger.info("Operation update [%s] %s", operation_id, phase)

    async def finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = _now()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = now
            operation["finishedAt"] = now
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            try:
                started_at = datetime.fromisoformat(str(operation.get("startedAt") or ""))
                finished_at = datetime.fromisoformat(now)
                operation["durationMs"] = max(0, int((finished_at - started_at).total_seconds() * 1000))
            except ValueError:
                operation["durationMs"] = 0
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def active_operations(self) -> list[dict[str, Any]]:
        async with self._ops_lock:
            return [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]

    async def progress(self, recent: int = 5) -> PipelineProgress:
        return PipelineProgress(
            sync=self.sync_progress.snapshot(),
            tagging=self.tagging_progress.snapshot(),
            recentOperations=await self.list_operations(recent),
        )
