# flowcomposer/graph.py
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .models import Edge, Node

logger = logging.getLogger(__name__)

DEFAULT_HANDLE = "input"


def levels(nodes: Sequence[Node], edges: Sequence[Edge]) -> List[List[Node]]:
    """
    Kahn's algorithm, batched: every returned level only depends on earlier levels.
    Nodes that never reach zero in-degree (cycles, edges from unknown sources) are dropped.
    """
    position = {n.id: i for i, n in enumerate(nodes)}
    by_id = {n.id: n for n in nodes}
    in_degree: Dict[str, int] = {n.id: 0 for n in nodes}
    for edge in edges:
        if edge.target in in_degree:
            in_degree[edge.target] += 1

    frontier = [nid for nid in in_degree if in_degree[nid] == 0]
    ordered: List[List[Node]] = []
    while frontier:
        next_frontier: List[str] = []
        for nid in frontier:
            for edge in edges:
                if edge.source != nid or edge.target not in in_degree:
                    continue
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    next_frontier.append(edge.target)
        ordered.append([by_id[nid] for nid in sorted(frontier, key=position.__getitem__)])
        frontier = next_frontier

    dropped = unreachable(nodes, edges, ordered)
    if dropped:
        logger.warning("excluded %d node(s) that never became ready: %s", len(dropped), sorted(dropped))
    return ordered


def unreachable(nodes: Sequence[Node], edges: Sequence[Edge], ordered: Optional[Iterable[List[Node]]] = None) -> Set[str]:
    if ordered is None:
        ordered = levels(nodes, edges)
    placed = {n.id for level in ordered for n in level}
    return {n.id for n in nodes if n.id not in placed}


def collect_inputs(node: Node, edges: Sequence[Edge], outputs: Mapping[str, Any], include_manual: bool = True) -> Dict[str, Any]:
    """Values for each input handle of `node`. Edge values override manual form values."""
    collected: Dict[str, Any] = {}
    if include_manual:
        collected.update(node.data.get("inputs") or {})
    for edge in edges:
        if edge.target != node.id or edge.source not in outputs:
            continue
        collected[edge.targetHandle or DEFAULT_HANDLE] = outputs[edge.source]
    return collected


def connect(edges: Sequence[Edge], edge: Edge) -> List[Edge]:
    # one edge per (target, targetHandle) slot
    kept = [e for e in edges if not (e.target == edge.target and e.targetHandle == edge.targetHandle)]
    kept.append(edge)
    return kept


def patch_node_data(nodes: Sequence[Node], node_id: str, **fields: Any) -> Tuple[Node, ...]:
    return tuple(
        n.model_copy(update={"data": {**n.data, **fields}}) if n.id == node_id else n
        for n in nodes
    )


def patch_all(nodes: Sequence[Node], **fields: Any) -> Tuple[Node, ...]:
    return tuple(n.model_copy(update={"data": {**n.data, **fields}}) for n in nodes)


def find_node(nodes: Iterable[Node], node_id: str):
    for n in nodes:
        if n.id == node_id:
            return n
    return None
