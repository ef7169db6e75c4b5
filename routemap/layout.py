"""
Hierarchical (layered) layout.

Depth is the hop distance from the nearest agent over undirected
adjacency; destinations are pushed to the deepest layer.
"""

import logging
from enum import Enum
from typing import Dict, List

import networkx as nx

from .models import LayoutPosition, NodeKind, TopologyGraph

logger = logging.getLogger(__name__)

DEFAULT_LAYER_GAP = 200.0
DEFAULT_NODE_GAP = 80.0


class LayoutMode(Enum):
    HIERARCHICAL = 'hierarchical'
    FORCE = 'force'

    @classmethod
    def parse(cls, value) -> 'LayoutMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown layout mode: {value}") from None


def compute_depths(graph: TopologyGraph) -> Dict[str, int]:
    """Multi-source BFS depth from every agent; unreachable nodes and destinations get the max depth"""
    if graph is None or len(graph) == 0:
        return {}

    undirected = graph.to_networkx(directed=False)
    agents = [n.id for n in graph.nodes_of_kind(NodeKind.AGENT)]

    depths: Dict[str, int] = {}
    if agents:
        depths = dict(nx.multi_source_dijkstra_path_length(undirected, agents))

    max_depth = max(depths.values(), default=0)

    unreachable = 0
    for node in graph.nodes:
        if node.kind is NodeKind.DESTINATION:
            depths[node.id] = max_depth
        elif node.id not in depths:
            depths[node.id] = max_depth
            unreachable += 1

    if unreachable:
        logger.debug(f"{unreachable} nodes unreachable from any agent placed at depth {max_depth}")

    return depths


def layers(depths: Dict[str, int]) -> List[List[str]]:
    """Node ids grouped by depth, each layer sorted by id"""
    if not depths:
        return []
    result = [[] for _ in range(max(depths.values()) + 1)]
    for node_id, depth in depths.items():
        result[depth].append(node_id)
    for layer in result:
        layer.sort()
    return result


def hierarchical_layout(graph: TopologyGraph, layer_gap: float = DEFAULT_LAYER_GAP,
                        node_gap: float = DEFAULT_NODE_GAP) -> Dict[str, LayoutPosition]:
    """Pinned positions: x by depth, nodes of one layer evenly spaced and centred on y=0"""
    positions = {}
    for depth, layer in enumerate(layers(compute_depths(graph))):
        count = len(layer)
        for i, node_id in enumerate(layer):
            positions[node_id] = LayoutPosition(
                node_id=node_id,
                x=depth * layer_gap,
                y=(i - (count - 1) / 2) * node_gap,
                pinned=True,
            )
    return positions
