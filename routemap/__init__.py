"""
Topology graph construction and route-change detection from traceroute probes.
"""

from .builder import GraphBuilder, RunningStats, build_graph
from .changes import ChangeDetector, DiffStatus, detect_route_changes, diff_hops
from .engine import NetworkTopologyEngine
from .extractor import extract_path, parse_path_record, parse_path_records, parse_traceroute_output
from .health import HealthStatus, HealthThresholds, classify
from .layout import LayoutMode, compute_depths, hierarchical_layout
from .models import Hop, HopHost, NodeKind, PathRecord, TopologyGraph
from .signature import group_routes, rank_route_groups, route_signature
from .simulation import ForceSimulation, SimulationDestroyed

__all__ = [
    'ChangeDetector', 'DiffStatus', 'ForceSimulation', 'GraphBuilder', 'HealthStatus',
    'HealthThresholds', 'Hop', 'HopHost', 'LayoutMode', 'NetworkTopologyEngine', 'NodeKind',
    'PathRecord', 'RunningStats', 'SimulationDestroyed', 'TopologyGraph', 'build_graph',
    'classify', 'compute_depths', 'detect_route_changes', 'diff_hops', 'extract_path',
    'group_routes', 'hierarchical_layout', 'parse_path_record', 'parse_path_records',
    'parse_traceroute_output', 'rank_route_groups', 'route_signature',
]
