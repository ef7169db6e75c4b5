"""
Static PNG rendering of a topology snapshot with matplotlib.
"""

import io
from typing import Dict, Optional

import matplotlib
matplotlib.use('Agg')  # Use non-interactive backend for server environments
import matplotlib.pyplot as plt
import networkx as nx

from .highlight import Highlight
from .models import LayoutPosition, NodeKind, TopologyGraph


STATUS_COLORS = {
    'healthy': 'green',
    'degraded': 'orange',
    'critical': 'red',
    'unknown': 'lightgray',
}

_NODE_STYLE = {
    NodeKind.AGENT: {'node_shape': 'o', 'node_size': 1200},
    NodeKind.HOP: {'node_shape': 's', 'node_size': 300},
    NodeKind.DESTINATION: {'node_shape': 'D', 'node_size': 700},
}

DIM_ALPHA = 0.15


def _short_label(node) -> str:
    if node.kind is NodeKind.HOP and node.ip and '.' in node.ip and not node.hostname:
        # Last octet only for clarity
        return node.ip.split('.')[-1]
    return node.label if len(node.label) <= 16 else node.label[:13] + '...'


def render_png(graph: TopologyGraph, positions: Dict[str, LayoutPosition],
               highlight: Optional[Highlight] = None,
               width: int = 12, height: int = 8, dpi: int = 100) -> bytes:
    """Draw nodes by kind and health, dimming everything a highlight does not cover"""
    fig, ax = plt.subplots(figsize=(width, height), dpi=dpi)
    try:
        ax.set_axis_off()
        if graph is None or len(graph) == 0:
            ax.text(0.5, 0.5, 'No topology data available', ha='center', va='center',
                    fontsize=16, color='gray', transform=ax.transAxes)
        else:
            nx_graph = graph.to_networkx(directed=True)
            # Renderer y grows downwards
            pos = {node_id: (p.x, -p.y) for node_id, p in positions.items() if node_id in graph}
            for node in graph.nodes:
                pos.setdefault(node.id, (0.0, 0.0))

            _draw_edges(ax, nx_graph, graph, pos, highlight)
            _draw_nodes(ax, nx_graph, graph, pos, highlight)
            _add_labels(ax, nx_graph, graph, pos)

        buffer = io.BytesIO()
        fig.savefig(buffer, format='png', bbox_inches='tight')
        return buffer.getvalue()
    finally:
        plt.close(fig)


def _dimmed(highlight: Optional[Highlight], element_id: str) -> bool:
    return highlight is not None and not highlight.empty and not highlight.is_emphasized(element_id)


def _draw_nodes(ax, nx_graph, graph: TopologyGraph, pos, highlight):
    for kind, style in _NODE_STYLE.items():
        for dimmed in (False, True):
            nodes = [n for n in graph.nodes_of_kind(kind) if _dimmed(highlight, n.id) == dimmed]
            if not nodes:
                continue
            nx.draw_networkx_nodes(nx_graph, pos, ax=ax,
                                   nodelist=[n.id for n in nodes],
                                   node_color=[STATUS_COLORS.get(n.status, 'lightgray')
                                               if kind is not NodeKind.AGENT else 'lightblue' for n in nodes],
                                   alpha=DIM_ALPHA if dimmed else 0.9,
                                   **style)


def _draw_edges(ax, nx_graph, graph: TopologyGraph, pos, highlight):
    for dimmed in (True, False):
        edges = [e for e in graph.edges if _dimmed(highlight, e.id) == dimmed]
        if not edges:
            continue
        nx.draw_networkx_edges(nx_graph, pos, ax=ax,
                               edgelist=[(e.source, e.target) for e in edges],
                               edge_color=[STATUS_COLORS.get(e.status, 'lightgray') for e in edges],
                               alpha=DIM_ALPHA if dimmed else 0.8,
                               width=1.0 if dimmed else 2.0,
                               arrows=True)


def _add_labels(ax, nx_graph, graph: TopologyGraph, pos):
    agent_labels = {n.id: n.label for n in graph.nodes_of_kind(NodeKind.AGENT)}
    if agent_labels:
        nx.draw_networkx_labels(nx_graph, pos, labels=agent_labels, ax=ax,
                                font_size=11, font_weight='bold')

    other_labels = {n.id: _short_label(n) for n in graph.nodes if n.kind is not NodeKind.AGENT}
    if other_labels:
        nx.draw_networkx_labels(nx_graph, pos, labels=other_labels, ax=ax, font_size=8)
