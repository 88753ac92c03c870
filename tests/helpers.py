from typing import Any, Dict, List, Optional

from flowcomposer.engine import FlowEngine
from flowcomposer.models import Edge, FlowDocument, Node, NodeType
from flowcomposer.registry import ExecutionRegistry
from flowcomposer.runs import InMemoryRunStore
from flowcomposer.state import ComposerState, DraftStore


def node(node_id: str, node_type: str, **data: Any) -> Node:
    return Node(id=node_id, type=NodeType(node_type), data=data)


def workflow_node(node_id: str, provider: str = "replicate", workflow_id: Optional[int] = None, inputs: Optional[Dict[str, Any]] = None, **workflow: Any) -> Node:
    descriptor = {"provider": provider, "title": node_id, "imageName": f"owner/{node_id.lower()}"}
    if workflow_id is not None:
        descriptor["id"] = workflow_id
    descriptor.update(workflow)
    if inputs is not None:
        return node(node_id, "workflow", workflow=descriptor, inputs=inputs)
    return node(node_id, "workflow", workflow=descriptor)


def edge(source: str, target: str, handle: Optional[str] = None) -> Edge:
    return Edge(id=f"{source}->{target}:{handle}", source=source, target=target, targetHandle=handle)


def open_composer(flow_id: str, nodes: List[Node], edges: List[Edge]) -> ComposerState:
    composer = ComposerState()
    composer.open_flow(flow_id, FlowDocument(nodes=nodes, edges=edges))
    return composer


def make_engine(composer: ComposerState, providers: Dict[str, Any], **kwargs: Any) -> FlowEngine:
    kwargs.setdefault("registry", ExecutionRegistry())
    kwargs.setdefault("run_store", InMemoryRunStore())
    kwargs.setdefault("drafts", DraftStore())
    return FlowEngine(composer=composer, providers=providers, **kwargs)


def by_id(nodes) -> Dict[str, Node]:
    return {n.id: n for n in nodes}


class RecordingProvider:
    """Provider stub: answers from a table keyed by workflow title and remembers each call."""

    def __init__(self, answers: Dict[str, Any]):
        self.answers = answers
        self.calls: List[tuple] = []

    async def __call__(self, workflow, inputs):
        self.calls.append((workflow.title, dict(inputs)))
        answer = self.answers[workflow.title]
        if isinstance(answer, BaseException):
            raise answer
        if callable(answer):
            return await answer(inputs)
        return answer

    def called(self, title: str) -> int:
        return sum(1 for t, _ in self.calls if t == title)
