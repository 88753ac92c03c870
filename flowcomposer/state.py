# flowcomposer/state.py
import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from .errors import FlowNotFound
from .models import Edge, FlowDocument, Node

logger = logging.getLogger(__name__)

NodesUpdater = Callable[[Tuple[Node, ...]], Tuple[Node, ...]]


class ComposerState:
    """
    The flow currently displayed in the composer: the shared, UI-owned node/edge collection.
    Writers pass pure updaters so concurrent node handlers never overwrite each other.
    """

    def __init__(self):
        self.current_flow_id: Optional[str] = None
        self.nodes: Tuple[Node, ...] = ()
        self.edges: Tuple[Edge, ...] = ()
        self.viewport: Optional[Dict[str, Any]] = None
        self.meta: Optional[Dict[str, Any]] = None

    def open_flow(self, flow_id: str, document: FlowDocument) -> None:
        self.current_flow_id = flow_id
        self.nodes = tuple(document.nodes)
        self.edges = tuple(document.edges)
        self.viewport = document.viewport
        self.meta = document.meta

    def get_nodes(self) -> Tuple[Node, ...]:
        return self.nodes

    def get_edges(self) -> Tuple[Edge, ...]:
        return self.edges

    def get_active_flow_id(self) -> Optional[str]:
        return self.current_flow_id

    def get_viewport(self) -> Optional[Dict[str, Any]]:
        return self.viewport

    def get_meta(self) -> Optional[Dict[str, Any]]:
        return self.meta

    def set_nodes(self, updater: NodesUpdater) -> None:
        self.nodes = tuple(updater(self.nodes))

    def set_edges(self, edges: Sequence[Edge]) -> None:
        self.edges = tuple(edges)

    def document(self) -> FlowDocument:
        return FlowDocument(nodes=list(self.nodes), edges=list(self.edges), viewport=self.viewport, meta=self.meta)


class DraftStore:
    """Latest in-progress snapshot per flow; overwrite only."""

    def __init__(self):
        self.drafts: Dict[str, FlowDocument] = {}

    def save_draft(self, flow_id: str, document: FlowDocument) -> None:
        self.drafts[flow_id] = document

    def get_draft(self, flow_id: str) -> Optional[FlowDocument]:
        return self.drafts.get(flow_id)

    def discard(self, flow_id: str) -> None:
        self.drafts.pop(flow_id, None)


class FlowLibrary:
    """Saved flows and the example output recorded for each one."""

    def __init__(self, drafts: Optional[DraftStore] = None):
        self.flows: Dict[str, FlowDocument] = {}
        self.example_outputs: Dict[str, Dict[str, str]] = {}
        self.drafts = drafts or DraftStore()

    def save(self, flow_id: str, document: FlowDocument) -> None:
        self.flows[flow_id] = document
        self.drafts.discard(flow_id)

    def get(self, flow_id: str) -> FlowDocument:
        try:
            return self.flows[flow_id]
        except KeyError:
            raise FlowNotFound(flow_id)

    def load_for_editing(self, flow_id: str) -> FlowDocument:
        # a draft holds progress from a run that finished while another flow was open
        draft = self.drafts.get_draft(flow_id)
        if draft is not None:
            return draft
        return self.get(flow_id)

    async def update_example_output(self, flow_id: str, output_type: str, url: str) -> None:
        self.example_outputs[flow_id] = {"exampleOutputType": output_type, "exampleOutput": url}
        logger.info("flow %s example output set to %s (%s)", flow_id, url, output_type)
