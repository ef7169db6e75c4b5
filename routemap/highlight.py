"""
Path highlighting for a selected node.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from .models import NodeKind, TopologyGraph


@dataclass(frozen=True)
class Highlight:
    """Emphasised subset of the graph; everything outside it is dimmed"""
    node_id: Optional[str]
    path_ids: FrozenSet[str] = frozenset()
    edge_ids: FrozenSet[str] = frozenset()
    node_ids: FrozenSet[str] = frozenset()
    neighbor_fallback: bool = False

    @property
    def empty(self) -> bool:
        return not self.node_ids

    def is_emphasized(self, element_id: str) -> bool:
        return element_id in self.edge_ids or element_id in self.node_ids

    def to_dict(self) -> Dict:
        return {
            'node_id': self.node_id,
            'path_ids': sorted(self.path_ids),
            'edge_ids': sorted(self.edge_ids),
            'node_ids': sorted(self.node_ids),
            'neighbor_fallback': self.neighbor_fallback,
        }


def select_paths(graph: TopologyGraph, node_id: str) -> FrozenSet[str]:
    """Path ids a selection of ``node_id`` should emphasise"""
    node = graph.node(node_id) if graph is not None else None
    if node is None:
        return frozenset()

    if node.kind is NodeKind.AGENT:
        # Agent-to-agent traffic originating here only
        return frozenset(
            path_id for path_id in node.path_ids
            if path_id in graph.paths
            and graph.paths[path_id].source_node == node_id
            and graph.paths[path_id].terminates_at_agent
        )
    if node.kind is NodeKind.DESTINATION:
        return frozenset(
            path_id for path_id in node.path_ids
            if path_id in graph.paths and graph.paths[path_id].terminal_node == node_id
        )
    return frozenset(node.path_ids)


def highlight_node(graph: TopologyGraph, node_id: str) -> Highlight:
    """Edges sharing a path with the selection; direct neighbours when no membership is known"""
    node = graph.node(node_id) if graph is not None else None
    if node is None:
        return Highlight(node_id=node_id)

    if not node.path_ids:
        edges = graph.incident_edges(node_id)
        return Highlight(
            node_id=node_id,
            edge_ids=frozenset(e.id for e in edges),
            node_ids=graph.neighbors(node_id) | {node_id},
            neighbor_fallback=True,
        )

    selected = select_paths(graph, node_id)
    edge_ids = set()
    node_ids = {node_id}
    for edge in graph.edges:
        if edge.path_ids & selected:
            edge_ids.add(edge.id)
            node_ids.add(edge.source)
            node_ids.add(edge.target)

    return Highlight(
        node_id=node_id,
        path_ids=selected,
        edge_ids=frozenset(edge_ids),
        node_ids=frozenset(node_ids),
    )
