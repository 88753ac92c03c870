# flowcomposer/models.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NodeType(str, Enum):
    PRIMITIVE = "primitive"
    COMBINE_IMAGES = "combine_images"
    COMBINE_TEXT = "combine_text"
    REPLACE_AUDIO = "replace_audio"
    WORKFLOW = "workflow"
    RESULT = "result"
    COMMENT = "comment"


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Node(BaseModel):
    # nodes are replaced, never edited; see graph.patch_node_data
    model_config = ConfigDict(frozen=True)

    id: str
    type: NodeType
    position: Position = Field(default_factory=Position)
    data: Dict[str, Any] = Field(default_factory=dict)


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None


class WorkflowInfo(BaseModel):
    """Descriptor of the model a workflow node calls (``node.data["workflow"]``)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[Any] = None
    provider: Optional[str] = None
    imageName: Optional[str] = None
    title: Optional[str] = None
    version: Optional[str] = None
    outputType: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")

    @property
    def registered_id(self) -> Optional[int]:
        """Durable numeric id; only registered workflows have one."""
        if isinstance(self.id, int) and not isinstance(self.id, bool):
            return self.id
        return None

    def input_properties(self) -> Dict[str, Any]:
        section = (self.input_schema or {}).get("Input")
        if not isinstance(section, dict):
            return {}
        properties = section.get("properties")
        return properties if isinstance(properties, dict) else {}


class ProviderResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool = True
    outputPath: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    type: Optional[str] = None
    predictionId: Optional[str] = None
    requestId: Optional[str] = None


class NodeOutcome(BaseModel):
    has_output: bool = False
    value: Any = None
    failed: bool = False
    error: Optional[str] = None
    log: Optional[str] = None


class FlowDocument(BaseModel):
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    viewport: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunRecord(BaseModel):
    run_id: int
    workflow_id: int
    provider: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    input_hash: str
    status: RunStatus = RunStatus.PENDING
    output: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CachedRun(BaseModel):
    found: bool = False
    output: Optional[Any] = None
    run_id: Optional[int] = None
    completed_at: Optional[datetime] = None


class ExecutionStatus(str, Enum):
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCESS = "success"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class FlowRunState(BaseModel):
    run_id: str
    flow_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    outputs: Dict[str, Any] = Field(default_factory=dict)
    failed_nodes: List[str] = Field(default_factory=list)
    logs: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    example_output: Optional[str] = None
    example_output_type: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status != ExecutionStatus.RUNNING
