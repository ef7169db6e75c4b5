"""Tests for path highlighting on selection."""

from routemap.builder import build_graph
from routemap.highlight import highlight_node, select_paths
from routemap.models import Edge, HopNode, NodeStats, TopologyGraph


def _mesh(make_record):
    return build_graph([
        make_record('a', '8.8.8.8', ['10.0.0.1', '10.0.0.2', '8.8.8.8'], timestamp=1),
        make_record('a', '10.9.9.9', ['10.0.0.1', '10.0.0.3', '10.9.9.9'], timestamp=2, target_agent='b'),
        make_record('c', '8.8.8.8', ['10.2.0.1', '10.0.0.2', '8.8.8.8'], timestamp=3),
    ])


class TestSelectPaths:
    """Test which paths a selection emphasises."""

    def test_agent_selects_outgoing_agent_paths(self, make_record):
        """An agent highlights only agent-to-agent probes it originates."""
        graph = _mesh(make_record)
        assert select_paths(graph, 'agent:a') == frozenset({'a->10.9.9.9'})

    def test_target_agent_not_counted_as_origin(self, make_record):
        """A target agent did not originate the probe that ends at it."""
        graph = _mesh(make_record)
        assert select_paths(graph, 'agent:b') == frozenset()

    def test_destination_selects_terminating_paths(self, make_record):
        """A destination highlights every path ending there."""
        graph = _mesh(make_record)
        assert select_paths(graph, '8.8.8.8') == frozenset({'a->8.8.8.8', 'c->8.8.8.8'})

    def test_hop_selects_all_paths(self, make_record):
        """A hop highlights every path running through it."""
        graph = _mesh(make_record)
        assert select_paths(graph, '10.0.0.1') == frozenset({'a->8.8.8.8', 'a->10.9.9.9'})


class TestHighlightNode:
    """Test emphasised edge and node sets."""

    def test_edges_on_selected_paths(self, make_record):
        """Only edges carrying a selected path are emphasised."""
        graph = _mesh(make_record)
        highlight = highlight_node(graph, '10.0.0.2')

        assert highlight.edge_ids == frozenset({
            'agent:a->10.0.0.1', '10.0.0.1->10.0.0.2', '10.0.0.2->8.8.8.8',
            'agent:c->10.2.0.1', '10.2.0.1->10.0.0.2',
        })
        assert not highlight.is_emphasized('10.0.0.3')
        assert highlight.is_emphasized('agent:c')
        assert highlight.neighbor_fallback is False

    def test_missing_node(self, make_record):
        """Selecting an unknown node emphasises nothing."""
        highlight = highlight_node(_mesh(make_record), 'nope')
        assert highlight.empty
        assert highlight.to_dict()['edge_ids'] == []

    def test_neighbor_fallback(self):
        """A node with no path membership highlights its direct neighbours."""
        stats = NodeStats()
        nodes = (
            HopNode(id='x', label='x', stats=stats, path_ids=frozenset(), status='unknown', ip='x'),
            HopNode(id='y', label='y', stats=stats, path_ids=frozenset(), status='unknown', ip='y'),
            HopNode(id='z', label='z', stats=stats, path_ids=frozenset(), status='unknown', ip='z'),
        )
        edges = (
            Edge(id='x->y', source='x', target='y', source_index=0, target_index=1,
                 stats=stats, path_ids=frozenset(), status='unknown'),
            Edge(id='y->z', source='y', target='z', source_index=1, target_index=2,
                 stats=stats, path_ids=frozenset(), status='unknown'),
        )
        graph = TopologyGraph(nodes=nodes, edges=edges)

        highlight = highlight_node(graph, 'x')

        assert highlight.neighbor_fallback is True
        assert highlight.node_ids == frozenset({'x', 'y'})
        assert highlight.edge_ids == frozenset({'x->y'})
