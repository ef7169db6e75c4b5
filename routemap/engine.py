"""
Network topology engine: rebuilds the graph from the current data window on
every refresh and owns the layout and the live force simulation.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

import networkx as nx

from .aggregation import DEFAULT_BUCKET_SECONDS, AggregatedTrace, aggregate_traces
from .analysis import PathAnalysis, analyze_paths
from .builder import build_graph, destination_node_id
from .changes import ChangeReport, detect_route_changes
from .health import DEFAULT_THRESHOLDS, HealthStatus, HealthThresholds, classify
from .highlight import Highlight, highlight_node
from .layout import DEFAULT_LAYER_GAP, DEFAULT_NODE_GAP, LayoutMode, hierarchical_layout
from .models import LayoutPosition, NodeKind, PathRecord, TopologyGraph
from .signature import RouteGroup, end_latency, group_routes, rank_route_groups, sort_by_time
from .simulation import ForceSimulation

logger = logging.getLogger(__name__)

DEFAULT_ITERATIONS = 300


class NetworkTopologyEngine:
    """Builds topology snapshots from PathRecords and lays them out"""

    def __init__(self, thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
                 layout_mode='hierarchical',
                 layer_gap: float = DEFAULT_LAYER_GAP,
                 node_gap: float = DEFAULT_NODE_GAP,
                 pin_endpoints: bool = True,
                 iterations: int = DEFAULT_ITERATIONS,
                 on_select: Optional[Callable[[Dict], None]] = None):
        self.thresholds = thresholds
        self.layout_mode = LayoutMode.parse(layout_mode)
        self.layer_gap = layer_gap
        self.node_gap = node_gap
        self.pin_endpoints = pin_endpoints
        self.iterations = iterations
        self.on_select = on_select

        self.graph: Optional[TopologyGraph] = None
        self.records: List[PathRecord] = []
        self.positions: Dict[str, LayoutPosition] = {}
        self.simulation: Optional[ForceSimulation] = None
        self.selected_node: Optional[str] = None
        self.generation = 0
        self._dragging = set()

    @classmethod
    def from_config(cls, layout_config: Optional[Dict] = None,
                    thresholds: HealthThresholds = DEFAULT_THRESHOLDS, **kwargs) -> 'NetworkTopologyEngine':
        layout_config = layout_config or {}
        return cls(
            thresholds=thresholds,
            layout_mode=layout_config.get('mode', 'hierarchical'),
            layer_gap=float(layout_config.get('layer_gap', DEFAULT_LAYER_GAP)),
            node_gap=float(layout_config.get('node_gap', DEFAULT_NODE_GAP)),
            pin_endpoints=bool(layout_config.get('pin_endpoints', True)),
            iterations=int(layout_config.get('iterations', DEFAULT_ITERATIONS)),
            **kwargs
        )

    # Graph lifecycle

    def refresh(self, records: Iterable[PathRecord], generated_at: Optional[float] = None) -> TopologyGraph:
        """Replace the graph wholesale from a fresh record window"""
        self.generation += 1
        records = sort_by_time(r for r in records if r.hops)

        graph = build_graph(records, self.thresholds, generated_at=generated_at)
        stable = self.graph is not None and \
            {n.id for n in graph.nodes} == {n.id for n in self.graph.nodes}

        # The old simulation goes before anything new is created
        self._teardown_simulation()
        self._dragging.clear()

        self.records = records
        self.graph = graph
        self.layout(keep_positions=stable)

        logger.info(f"Topology refresh #{self.generation}: {len(graph.nodes)} nodes, "
                    f"{len(graph.edges)} edges from {len(records)} records")
        return graph

    def _teardown_simulation(self):
        if self.simulation is not None:
            self.simulation.destroy()
            self.simulation = None

    def close(self):
        """Release the live simulation"""
        self._teardown_simulation()
        self._dragging.clear()

    def _is_endpoint(self, node_id: str) -> bool:
        node = self.graph.node(node_id) if self.graph is not None else None
        return node is not None and node.kind in (NodeKind.AGENT, NodeKind.DESTINATION)

    # Layout

    def layout(self, mode=None, keep_positions: bool = False) -> Dict[str, LayoutPosition]:
        """Lay the current graph out; ``keep_positions`` reuses positions of an identical node set"""
        if mode is not None:
            new_mode = LayoutMode.parse(mode)
            if new_mode is not self.layout_mode:
                keep_positions = False
            self.layout_mode = new_mode

        if self.graph is None:
            self.positions = {}
            return self.positions

        previous = self.positions if keep_positions else {}
        layered = hierarchical_layout(self.graph, self.layer_gap, self.node_gap)

        if self.layout_mode is LayoutMode.HIERARCHICAL:
            self._teardown_simulation()
            self.positions = {node_id: previous.get(node_id, pos) for node_id, pos in layered.items()}
            return self.positions

        self._teardown_simulation()
        starts = {}
        pinned = set()
        for node in self.graph.nodes:
            endpoint = node.kind in (NodeKind.AGENT, NodeKind.DESTINATION)
            pos = previous.get(node.id) or layered[node.id]
            if self.pin_endpoints and endpoint:
                pinned.add(node.id)
                starts[node.id] = pos
            else:
                starts[node.id] = LayoutPosition(node.id, pos.x, pos.y,
                                                 pinned=node.id in previous and previous[node.id].pinned)

        self.simulation = ForceSimulation.create(self.graph, positions=starts, pinned=pinned)
        generation = self.generation
        simulation = self.simulation

        def on_tick(sim):
            if generation == self.generation and sim is self.simulation:
                self.positions = sim.positions()

        simulation.on('tick', on_tick)
        self.positions = simulation.run(self.iterations)
        return self.positions

    def start_simulation(self, interval: float = 0.0):
        """Keep ticking the force layout on the event loop; None outside force mode"""
        if self.simulation is None:
            return None
        return self.simulation.start(interval)

    # Selection and dragging

    def select_node(self, node_id: Optional[str]) -> Dict:
        """Select a node, notify the host and return its detail; unknown ids give an empty result"""
        self.selected_node = node_id
        node = self.graph.node(node_id) if (self.graph is not None and node_id) else None

        if node is None:
            detail = {'node': None, 'position': None, 'highlight': Highlight(node_id=node_id).to_dict()}
        else:
            position = self.positions.get(node_id)
            detail = {
                'node': node.to_dict(),
                'position': position.to_dict() if position else None,
                'highlight': highlight_node(self.graph, node_id).to_dict(),
            }

        if self.on_select is not None:
            self.on_select(detail)
        return detail

    def highlight(self) -> Highlight:
        if self.graph is None or self.selected_node is None:
            return Highlight(node_id=None)
        return highlight_node(self.graph, self.selected_node)

    def drag_node(self, node_id: str, x: float, y: float) -> Optional[LayoutPosition]:
        """Pin a node at (x, y) while it is being dragged"""
        if self.graph is None or node_id not in self.graph:
            return None

        if self.simulation is not None:
            if node_id not in self._dragging:
                self.simulation.drag_start(node_id)
                self._dragging.add(node_id)
            self.simulation.drag_to(node_id, x, y)
            self.positions = self.simulation.positions()
        else:
            self.positions[node_id] = LayoutPosition(node_id, x, y, pinned=True)
        return self.positions[node_id]

    def release_node(self, node_id: str) -> Optional[LayoutPosition]:
        """End a drag: free again under force mode, still pinned under hierarchical mode"""
        if self.graph is None or node_id not in self.graph:
            return None
        self._dragging.discard(node_id)

        if self.simulation is not None:
            keep = self.pin_endpoints and self._is_endpoint(node_id)
            self.simulation.drag_end(node_id, keep_pinned=keep)
            self.positions = self.simulation.positions()
        return self.positions.get(node_id)

    # Route views

    def records_for(self, source: Optional[str] = None, target: Optional[str] = None) -> List[PathRecord]:
        return [
            r for r in self.records
            if (source is None or r.source == source) and (target is None or r.target == target)
        ]

    def route_groups(self, source: Optional[str] = None, target: Optional[str] = None,
                     tie_break: str = 'recency') -> List[RouteGroup]:
        """Route groups per source/destination stream, ranked together"""
        streams: Dict[str, List[PathRecord]] = {}
        for record in self.records_for(source, target):
            streams.setdefault(record.path_id, []).append(record)

        groups = []
        for path_id in sorted(streams):
            groups.extend(group_routes(streams[path_id]))
        return rank_route_groups(groups, tie_break=tie_break)

    def route_changes(self, source: Optional[str] = None, target: Optional[str] = None) -> List[ChangeReport]:
        return detect_route_changes(self.records_for(source=source), target=target, by_target=True)

    def path_analysis(self, source: str, target: str) -> Optional[PathAnalysis]:
        return analyze_paths(self.records_for(source, target))

    def aggregated_traces(self, source: Optional[str] = None, target: Optional[str] = None,
                          bucket_seconds: float = DEFAULT_BUCKET_SECONDS, limit: int = 0) -> List[AggregatedTrace]:
        return aggregate_traces(self.records_for(source, target), bucket_seconds=bucket_seconds, limit=limit)

    def find_bottlenecks(self, threshold_ms: float = 150.0) -> List[Dict]:
        """Edges whose average latency is above the threshold, worst first"""
        if self.graph is None:
            return []

        bottlenecks = []
        for edge in self.graph.edges:
            latency = edge.stats.avg_latency
            if latency is not None and latency > threshold_ms:
                bottlenecks.append({
                    'edge_id': edge.id,
                    'from_node': edge.source,
                    'to_node': edge.target,
                    'latency_ms': latency,
                    'path_ids': sorted(edge.path_ids),
                    'status': edge.status,
                    'severity': 'high' if edge.status == HealthStatus.CRITICAL.value else 'medium',
                })

        bottlenecks.sort(key=lambda x: x['latency_ms'], reverse=True)
        return bottlenecks

    def destination_summaries(self) -> List[Dict]:
        """Per destination: hops of the latest trace, end-hop averages, status and probing agents"""
        by_destination: Dict[str, List[PathRecord]] = {}
        for record in self.records:
            by_destination.setdefault(destination_node_id(record), []).append(record)

        summaries = []
        for dest_id in sorted(by_destination):
            records = by_destination[dest_id]
            latest = records[-1]
            latencies = [lat for lat in (end_latency(r) for r in records) if lat is not None]
            losses = [r.hops[-1].loss_pct for r in records]
            avg_latency = sum(latencies) / len(latencies) if latencies else None
            loss = sum(losses) / len(losses)
            summaries.append({
                'id': dest_id,
                'target': latest.target,
                'hop_count': len(latest.hops),
                'avg_latency': avg_latency,
                'packet_loss': loss,
                'status': classify(avg_latency, loss, self.thresholds).value,
                'agent_count': len({r.source for r in records}),
                'last_seen': latest.timestamp,
            })
        return summaries

    def generate_topology_summary(self) -> Dict:
        """Summary statistics about the current snapshot"""
        graph = self.graph if self.graph is not None else TopologyGraph()
        agents = graph.nodes_of_kind(NodeKind.AGENT)
        status_counts = {status.value: 0 for status in HealthStatus}
        for node in graph.nodes:
            status_counts[node.status] += 1

        nx_graph = graph.to_networkx(directed=True)
        return {
            'total_agents': len(agents),
            'total_hops': len(graph.nodes_of_kind(NodeKind.HOP)),
            'total_destinations': len(graph.nodes_of_kind(NodeKind.DESTINATION)),
            'total_edges': len(graph.edges),
            'paths_analyzed': len(graph.paths),
            'records': len(self.records),
            'route_changes': sum(r.change_count for r in self.route_changes()),
            'bottlenecks_found': len(self.find_bottlenecks()),
            'agents': [a.agent_id for a in agents],
            'status_counts': status_counts,
            'graph_density': nx.density(nx_graph) if len(graph) > 1 else 0.0,
            'generated_at': graph.generated_at,
        }

    def get_interactive_topology_data(self) -> Dict:
        """Graph, positions and highlight state for an external renderer"""
        if self.graph is None or len(self.graph) == 0:
            return {
                'nodes': [],
                'edges': [],
                'layout_mode': self.layout_mode.value,
                'generation': self.generation,
                'summary': self.generate_topology_summary(),
                'bottlenecks': [],
                'highlight': None,
            }

        highlight = self.highlight() if self.selected_node else None
        nodes = []
        for node in self.graph.nodes:
            data = node.to_dict()
            pos = self.positions.get(node.id)
            data.update(pos.to_dict() if pos else {'x': 0.0, 'y': 0.0, 'pinned': False})
            if highlight is not None:
                data['dimmed'] = not highlight.is_emphasized(node.id)
            nodes.append(data)

        edges = []
        for edge in self.graph.edges:
            data = edge.to_dict()
            if highlight is not None:
                data['dimmed'] = not highlight.is_emphasized(edge.id)
            edges.append(data)

        return {
            'nodes': nodes,
            'edges': edges,
            'layout_mode': self.layout_mode.value,
            'generation': self.generation,
            'summary': self.generate_topology_summary(),
            'bottlenecks': self.find_bottlenecks(),
            'highlight': highlight.to_dict() if highlight is not None else None,
        }
