"""
Data model for the route map engine.

Probe input (HopHost, Hop, PathRecord) and the immutable topology snapshot
(nodes, edges, path index) handed to renderers and host views.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import ClassVar, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import networkx as nx

WILDCARD = '*'


@dataclass(frozen=True)
class HopHost:
    """One responding host at a traceroute step"""
    ip: str
    hostname: Optional[str] = None


@dataclass(frozen=True)
class Hop:
    """One traceroute step; an empty ``hosts`` tuple means the step timed out"""
    ttl: int
    hosts: Tuple[HopHost, ...] = ()
    loss_pct: float = 0.0
    avg_ms: Optional[float] = None
    best_ms: Optional[float] = None
    worst_ms: Optional[float] = None
    jitter_ms: Optional[float] = None
    sent: int = 0
    recv: int = 0

    @property
    def responder(self) -> Optional[HopHost]:
        """First responding host, or None for a timeout. ECMP fan-out is ignored."""
        if self.hosts and self.hosts[0].ip and self.hosts[0].ip != WILDCARD:
            return self.hosts[0]
        return None

    @property
    def ip(self) -> Optional[str]:
        host = self.responder
        return host.ip if host else None


@dataclass(frozen=True)
class PathRecord:
    """One probe result: a full traceroute from a source agent to a target"""
    source: str
    target: str
    hops: Tuple[Hop, ...]
    timestamp: float
    triggered: bool = False
    target_agent: Optional[str] = None
    record_id: Optional[str] = None

    @property
    def path_id(self) -> str:
        return f"{self.source}->{self.target}"


class NodeKind(Enum):
    AGENT = 'agent'
    HOP = 'hop'
    DESTINATION = 'destination'


@dataclass(frozen=True)
class NodeStats:
    """Frozen copy of the running aggregates for a node or edge"""
    avg_latency: Optional[float] = None
    avg_loss: Optional[float] = None
    max_loss: Optional[float] = None
    sample_count: int = 0

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0

    def to_dict(self) -> Dict:
        return {
            'avg_latency': self.avg_latency,
            'packet_loss': self.avg_loss,
            'max_packet_loss': self.max_loss,
            'sample_count': self.sample_count,
        }


@dataclass(frozen=True)
class _NodeBase:
    id: str
    label: str
    stats: NodeStats
    path_ids: FrozenSet[str]
    status: str

    kind: ClassVar[NodeKind]

    @property
    def path_count(self) -> int:
        return len(self.path_ids)

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'type': self.kind.value,
            'label': self.label,
            'path_count': self.path_count,
            'path_ids': sorted(self.path_ids),
            'status': self.status,
        }
        data.update(self.stats.to_dict())
        return data


@dataclass(frozen=True)
class AgentNode(_NodeBase):
    agent_id: str = ''

    kind: ClassVar[NodeKind] = NodeKind.AGENT

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data['agent_id'] = self.agent_id
        return data


@dataclass(frozen=True)
class HopNode(_NodeBase):
    ip: Optional[str] = None
    hostname: Optional[str] = None
    hop_number: int = 0
    # Set only for unresponsive hops, whose identity is scoped to one source
    scope_source: Optional[str] = None
    shared_agents: FrozenSet[str] = frozenset()

    kind: ClassVar[NodeKind] = NodeKind.HOP

    @property
    def responding(self) -> bool:
        return self.ip is not None

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data.update({
            'ip': self.ip,
            'hostname': self.hostname,
            'hop_number': self.hop_number,
            'shared_agents': sorted(self.shared_agents),
        })
        return data


@dataclass(frozen=True)
class DestinationNode(_NodeBase):
    target: str = ''
    hostname: Optional[str] = None
    shared_agents: FrozenSet[str] = frozenset()

    kind: ClassVar[NodeKind] = NodeKind.DESTINATION

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data.update({
            'ip': self.target,
            'hostname': self.hostname,
            'shared_agents': sorted(self.shared_agents),
        })
        return data


Node = Union[AgentNode, HopNode, DestinationNode]


@dataclass(frozen=True)
class Edge:
    """Observed adjacency between two consecutive nodes of at least one trace"""
    id: str
    source: str
    target: str
    source_index: int
    target_index: int
    stats: NodeStats
    path_ids: FrozenSet[str]
    status: str

    @property
    def path_count(self) -> int:
        return len(self.path_ids)

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'source': self.source,
            'target': self.target,
            'path_count': self.path_count,
            'path_ids': sorted(self.path_ids),
            'status': self.status,
        }
        data.update(self.stats.to_dict())
        return data


@dataclass(frozen=True)
class PathInfo:
    """Where a path identifier starts and ends in the graph"""
    path_id: str
    source_node: str
    terminal_node: str
    terminates_at_agent: bool
    record_count: int


@dataclass(frozen=True)
class LayoutPosition:
    node_id: str
    x: float
    y: float
    pinned: bool = False

    def to_dict(self) -> Dict:
        return {'x': self.x, 'y': self.y, 'pinned': self.pinned}


@dataclass(frozen=True)
class TopologyGraph:
    """
    Immutable graph snapshot.

    Nodes and edges are fixed tuples sorted by id; edges reference their
    endpoints by index into ``nodes``. A snapshot is never patched in place,
    a refresh produces a new one.
    """
    nodes: Tuple[Node, ...] = ()
    edges: Tuple[Edge, ...] = ()
    paths: Mapping[str, PathInfo] = field(default_factory=lambda: MappingProxyType({}))
    generated_at: float = 0.0
    _index: Mapping[str, int] = field(default=None, init=False, repr=False, compare=False)
    _adjacency: Mapping[str, Tuple[int, ...]] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        index = {node.id: i for i, node in enumerate(self.nodes)}
        incident: Dict[str, List[int]] = {node.id: [] for node in self.nodes}
        for i, edge in enumerate(self.edges):
            incident[edge.source].append(i)
            incident[edge.target].append(i)
        object.__setattr__(self, '_index', MappingProxyType(index))
        object.__setattr__(self, '_adjacency', MappingProxyType(
            {node_id: tuple(edges) for node_id, edges in incident.items()}))
        if not isinstance(self.paths, MappingProxyType):
            object.__setattr__(self, 'paths', MappingProxyType(dict(self.paths)))

    def __len__(self):
        return len(self.nodes)

    def __contains__(self, node_id) -> bool:
        return node_id in self._index

    def index_of(self, node_id: str) -> Optional[int]:
        return self._index.get(node_id)

    def node(self, node_id: str) -> Optional[Node]:
        i = self._index.get(node_id)
        return self.nodes[i] if i is not None else None

    def nodes_of_kind(self, kind: NodeKind) -> List[Node]:
        return [n for n in self.nodes if n.kind is kind]

    def incident_edges(self, node_id: str) -> List[Edge]:
        return [self.edges[i] for i in self._adjacency.get(node_id, ())]

    def neighbors(self, node_id: str) -> FrozenSet[str]:
        """Undirected neighbours of a node"""
        result = set()
        for edge in self.incident_edges(node_id):
            result.add(edge.target if edge.source == node_id else edge.source)
        return frozenset(result)

    def to_networkx(self, directed: bool = False):
        """Export as a networkx graph keyed by node id"""
        graph = nx.DiGraph() if directed else nx.Graph()
        for node in self.nodes:
            graph.add_node(node.id, node_type=node.kind.value)
        for edge in self.edges:
            graph.add_edge(edge.source, edge.target, edge_id=edge.id)
        return graph

    def to_dict(self) -> Dict:
        return {
            'nodes': [n.to_dict() for n in self.nodes],
            'edges': [e.to_dict() for e in self.edges],
            'generated_at': self.generated_at,
        }
