# flowcomposer/runs.py
import hashlib
import itertools
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from .models import CachedRun, RunRecord, RunStatus


def input_hash(workflow_id: int, inputs: Dict[str, Any]) -> str:
    serialized = json.dumps({"workflowId": workflow_id, "inputs": inputs}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class RunStore(Protocol):
    async def create_run(self, workflow_id: int, provider: str, inputs: Dict[str, Any]) -> int: ...

    async def update_run(self, run_id: int, status: RunStatus, output: Any = None, error: Optional[str] = None) -> None: ...

    async def find_cached_run(self, workflow_id: int, inputs: Dict[str, Any]) -> CachedRun: ...


class InMemoryRunStore:
    """Run records kept in a dict (swap for a DB-backed store in production)."""

    def __init__(self):
        self.runs: Dict[int, RunRecord] = {}
        self._ids = itertools.count(1)

    async def create_run(self, workflow_id: int, provider: str, inputs: Dict[str, Any]) -> int:
        run_id = next(self._ids)
        self.runs[run_id] = RunRecord(
            run_id=run_id,
            workflow_id=workflow_id,
            provider=provider,
            inputs=inputs,
            input_hash=input_hash(workflow_id, inputs),
            created_at=datetime.now(timezone.utc),
        )
        return run_id

    async def update_run(self, run_id: int, status: RunStatus, output: Any = None, error: Optional[str] = None) -> None:
        record = self.runs.get(run_id)
        if record is None:
            raise KeyError(f"run {run_id} not found")
        now = datetime.now(timezone.utc)
        record.status = RunStatus(status)
        if record.status == RunStatus.RUNNING:
            record.started_at = now
        elif record.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
            record.completed_at = now
        if output is not None:
            record.output = output
        if error is not None:
            record.error = error

    async def find_cached_run(self, workflow_id: int, inputs: Dict[str, Any]) -> CachedRun:
        digest = input_hash(workflow_id, inputs)
        hits = [
            r for r in self.runs.values()
            if r.workflow_id == workflow_id and r.input_hash == digest
            and r.status == RunStatus.COMPLETED and r.output is not None
        ]
        if not hits:
            return CachedRun(found=False)
        latest = max(hits, key=lambda r: (r.completed_at, r.run_id))
        return CachedRun(found=True, output=latest.output, run_id=latest.run_id, completed_at=latest.completed_at)

    def list_runs(self) -> List[RunRecord]:
        return sorted(self.runs.values(), key=lambda r: r.run_id)
