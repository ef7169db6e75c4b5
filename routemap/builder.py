"""
Graph Builder: merges extracted paths into a deduplicated node/edge graph
with running aggregate statistics, then freezes it into a TopologyGraph.
"""

import logging
import time
from typing import Iterable, List, Optional, Tuple

import networkx as nx

from .extractor import extract_path
from .health import DEFAULT_THRESHOLDS, HealthStatus, HealthThresholds, classify
from .models import (
    WILDCARD, AgentNode, DestinationNode, Edge, HopNode, NodeKind, NodeStats,
    PathInfo, PathRecord, TopologyGraph,
)

logger = logging.getLogger(__name__)

# Higher wins when one id is seen as several kinds
_KIND_PRECEDENCE = {NodeKind.HOP: 0, NodeKind.DESTINATION: 1, NodeKind.AGENT: 2}


def agent_node_id(agent: str) -> str:
    return f"agent:{agent}"


def unknown_hop_id(source: str, depth: int) -> str:
    return f"unknown:{source}:{depth}"


def destination_node_id(record: PathRecord) -> str:
    if record.target_agent:
        return agent_node_id(record.target_agent)
    return record.target


class RunningStats:
    """Incremental mean of latency and loss plus running maximum loss"""

    def __init__(self):
        self.count = 0
        self.latency_count = 0
        self.avg_latency: Optional[float] = None
        self.avg_loss: Optional[float] = None
        self.max_loss: Optional[float] = None

    def add(self, latency: Optional[float], loss: Optional[float]):
        """Fold one sample in; either value may be missing"""
        if latency is None and loss is None:
            return
        self.count += 1

        if loss is not None:
            if self.avg_loss is None:
                self.avg_loss = loss
            else:
                self.avg_loss = (self.avg_loss * (self.count - 1) + loss) / self.count
            self.max_loss = loss if self.max_loss is None else max(self.max_loss, loss)

        if latency is not None:
            # count goes up before the division
            self.latency_count += 1
            if self.avg_latency is None:
                self.avg_latency = latency
            else:
                self.avg_latency = (self.avg_latency * (self.latency_count - 1) + latency) / self.latency_count

    def freeze(self) -> NodeStats:
        return NodeStats(
            avg_latency=self.avg_latency,
            avg_loss=self.avg_loss,
            max_loss=self.max_loss,
            sample_count=self.count,
        )


class GraphBuilder:
    """Accumulates PathRecords into a networkx graph; ``build`` freezes a snapshot"""

    def __init__(self, thresholds: HealthThresholds = DEFAULT_THRESHOLDS):
        self.thresholds = thresholds
        self.graph = nx.DiGraph()
        self.path_records = {}
        self.skipped = 0

    def add_record(self, record: PathRecord) -> bool:
        """Merge one record; returns False when it had no hops to merge"""
        if not record.hops:
            self.skipped += 1
            logger.debug(f"Ignoring record without hops for {record.path_id}")
            return False

        path_id = record.path_id
        sequence = self._node_sequence(record)

        prev_id = None
        for node_id, kind, attrs, sample in sequence:
            self._touch_node(node_id, kind, attrs, record.source, path_id, sample)
            if prev_id is not None and prev_id != node_id:
                self._touch_edge(prev_id, node_id, path_id, sample)
            prev_id = node_id

        info = self.path_records.setdefault(path_id, {
            'source_node': sequence[0][0],
            'terminal_node': sequence[-1][0],
            'terminates_at_agent': record.target_agent is not None,
            'record_count': 0,
        })
        info['record_count'] += 1
        return True

    def add_records(self, records: Iterable[PathRecord]) -> int:
        added = 0
        for record in records:
            if self.add_record(record):
                added += 1
        return added

    def _node_sequence(self, record: PathRecord) -> List[Tuple]:
        """[agent] + hops + [destination] as (id, kind, attrs, sample) tuples"""
        path = extract_path(record)
        sequence = [(agent_node_id(record.source), NodeKind.AGENT, {'agent_id': record.source}, None)]

        for i, ident in enumerate(path.identifiers):
            depth = i + 1
            if ident == WILDCARD:
                node_id = unknown_hop_id(record.source, depth)
                attrs = {'ip': None, 'hostname': None, 'depth': depth, 'scope_source': record.source}
                # A silent router is not packet loss
                sample = None
            else:
                node_id = ident
                attrs = {'ip': ident, 'hostname': path.hostnames[i], 'depth': depth, 'scope_source': None}
                sample = (path.latencies[i], path.losses[i])
            sequence.append((node_id, NodeKind.HOP, attrs, sample))

        # The destination takes the end hop's figures even when that hop was silent
        end_sample = (path.latencies[-1], path.losses[-1])
        dest_id = destination_node_id(record)
        if record.target_agent:
            dest = (dest_id, NodeKind.AGENT, {'agent_id': record.target_agent}, end_sample)
        else:
            dest = (dest_id, NodeKind.DESTINATION,
                    {'target': record.target, 'hostname': path.hostnames[-1] if path.identifiers[-1] == dest_id else None},
                    end_sample)

        if sequence[-1][0] == dest_id:
            # The final hop answered as the target itself
            last_attrs = dict(sequence[-1][2])
            last_attrs.update(dest[2])
            sequence[-1] = (dest_id, dest[1], last_attrs, end_sample)
        else:
            sequence.append(dest)

        return sequence

    def _touch_node(self, node_id, kind, attrs, source, path_id, sample):
        if node_id not in self.graph:
            self.graph.add_node(node_id, kind=kind, stats=RunningStats(), path_ids=set(),
                                agents=set(), hostnames=set(), depth=None,
                                ip=None, agent_id=None, target=None, scope_source=None)
        data = self.graph.nodes[node_id]

        if _KIND_PRECEDENCE[kind] > _KIND_PRECEDENCE[data['kind']]:
            data['kind'] = kind

        for key in ('ip', 'agent_id', 'target', 'scope_source'):
            if attrs.get(key) and not data[key]:
                data[key] = attrs[key]
        if attrs.get('hostname'):
            data['hostnames'].add(attrs['hostname'])
        depth = attrs.get('depth')
        if depth is not None and (data['depth'] is None or depth < data['depth']):
            data['depth'] = depth

        data['path_ids'].add(path_id)
        if kind is not NodeKind.AGENT:
            data['agents'].add(source)
        if sample is not None:
            data['stats'].add(*sample)

    def _touch_edge(self, source_id, target_id, path_id, sample):
        if not self.graph.has_edge(source_id, target_id):
            self.graph.add_edge(source_id, target_id, stats=RunningStats(), path_ids=set())
        data = self.graph.edges[source_id, target_id]
        data['path_ids'].add(path_id)
        if sample is not None:
            data['stats'].add(*sample)

    def _freeze_node(self, node_id, data):
        kind = data['kind']
        path_ids = frozenset(data['path_ids'])
        hostname = min(data['hostnames']) if data['hostnames'] else None

        if kind is NodeKind.AGENT:
            agent_id = data['agent_id'] or node_id.split(':', 1)[-1]
            return AgentNode(id=node_id, label=agent_id, stats=NodeStats(), path_ids=path_ids,
                             status=HealthStatus.UNKNOWN.value, agent_id=agent_id)

        stats = data['stats'].freeze()
        status = classify(stats.avg_latency, stats.avg_loss, self.thresholds).value if stats.has_data \
            else HealthStatus.UNKNOWN.value

        if kind is NodeKind.DESTINATION:
            target = data['target'] or node_id
            return DestinationNode(id=node_id, label=hostname or target, stats=stats, path_ids=path_ids,
                                   status=status, target=target, hostname=hostname,
                                   shared_agents=frozenset(data['agents']))

        ip = data['ip']
        return HopNode(id=node_id, label=hostname or ip or WILDCARD, stats=stats, path_ids=path_ids,
                       status=status, ip=ip, hostname=hostname, hop_number=data['depth'] or 0,
                       scope_source=data['scope_source'] if ip is None else None,
                       shared_agents=frozenset(data['agents']))

    def build(self, generated_at: Optional[float] = None) -> TopologyGraph:
        """Freeze the accumulated graph into an immutable snapshot sorted by id"""
        nodes = tuple(self._freeze_node(node_id, self.graph.nodes[node_id]) for node_id in sorted(self.graph.nodes))
        index = {node.id: i for i, node in enumerate(nodes)}

        edges = []
        for u, v in sorted(self.graph.edges):
            data = self.graph.edges[u, v]
            stats = data['stats'].freeze()
            status = classify(stats.avg_latency, stats.avg_loss, self.thresholds).value if stats.has_data \
                else HealthStatus.UNKNOWN.value
            edges.append(Edge(
                id=f"{u}->{v}",
                source=u,
                target=v,
                source_index=index[u],
                target_index=index[v],
                stats=stats,
                path_ids=frozenset(data['path_ids']),
                status=status,
            ))

        paths = {
            path_id: PathInfo(path_id=path_id, **info)
            for path_id, info in sorted(self.path_records.items())
        }

        topology = TopologyGraph(
            nodes=nodes,
            edges=tuple(edges),
            paths=paths,
            generated_at=generated_at if generated_at is not None else time.time(),
        )
        logger.debug(f"Built topology with {len(nodes)} nodes, {len(edges)} edges, "
                     f"{self.skipped} records skipped")
        return topology


def build_graph(records: Iterable[PathRecord], thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
                generated_at: Optional[float] = None) -> TopologyGraph:
    """Build a TopologyGraph from a set of PathRecords in one call"""
    builder = GraphBuilder(thresholds)
    builder.add_records(records)
    return builder.build(generated_at=generated_at)
