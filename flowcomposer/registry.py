# flowcomposer/registry.py
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel


class RunningFlow(BaseModel):
    is_running: bool = True
    current_step: Optional[str] = None
    start_time: float
    progress: float = 0.0


class ExecutionRegistry:
    """Which flows are executing right now. Advisory only: it never stops a run."""

    def __init__(self):
        self.running_flows: Dict[str, RunningFlow] = {}

    def try_start(self, flow_id: str) -> bool:
        # check and mark without yielding to the event loop
        if self.is_running(flow_id):
            return False
        self.start(flow_id)
        return True

    def start(self, flow_id: str) -> None:
        self.running_flows[flow_id] = RunningFlow(start_time=time.time())

    def complete(self, flow_id: str) -> None:
        self.running_flows.pop(flow_id, None)

    def is_running(self, flow_id: str) -> bool:
        entry = self.running_flows.get(flow_id)
        return bool(entry and entry.is_running)

    def update_progress(self, flow_id: str, node_id: Optional[str], progress: float) -> None:
        entry = self.running_flows.get(flow_id)
        if entry is None:
            return
        entry.current_step = node_id
        entry.progress = progress

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {fid: entry.model_dump() for fid, entry in self.running_flows.items()}


# process-wide default
EXECUTIONS = ExecutionRegistry()
