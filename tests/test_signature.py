"""Tests for route signatures and route grouping."""

import hashlib

import pytest

from routemap.signature import (
    group_routes, rank_route_groups, route_fingerprint, route_path_string,
    route_signature, route_stability,
)


class TestSignature:
    """Test signature derivation."""

    def test_signature_format(self, make_record):
        """Responding IPs joined with '->', timeouts as '*'."""
        record = make_record('a', '8.8.8.8', ['10.0.0.1', None, '8.8.8.8'])

        assert route_signature(record) == '10.0.0.1->*->8.8.8.8'
        assert route_path_string(record) == '10.0.0.1 -> * -> 8.8.8.8'

    def test_fingerprint(self):
        """Fingerprint is the hex of the first 16 bytes of SHA-256."""
        expected = hashlib.sha256(b'10.0.0.1->8.8.8.8').hexdigest()[:32]
        assert route_fingerprint('10.0.0.1->8.8.8.8') == expected
        assert len(route_fingerprint('')) == 32

    def test_signature_equality_follows_hop_sequence(self, make_record):
        """Equal signatures iff identical resolved sequences, wildcards included."""
        sequences = [
            ['10.0.0.1', '10.0.0.2', '8.8.8.8'],
            ['10.0.0.1', '10.0.0.2', '8.8.8.8'],
            ['10.0.0.1', None, '8.8.8.8'],
            [None, '10.0.0.1', '8.8.8.8'],
            ['10.0.0.1', '8.8.8.8'],
        ]
        records = [make_record('a', '8.8.8.8', ips) for ips in sequences]
        resolved = [tuple(ip or '*' for ip in ips) for ips in sequences]

        for (r1, s1), (r2, s2) in zip(zip(records, resolved), zip(records[1:], resolved[1:])):
            assert (route_signature(r1) == route_signature(r2)) == (s1 == s2)

    def test_wildcard_positions_not_normalised(self, make_record):
        """Same responders with timeouts at different depths are different routes."""
        r1 = make_record('a', '8.8.8.8', ['10.0.0.1', None, '10.0.0.3', '8.8.8.8'])
        r2 = make_record('a', '8.8.8.8', ['10.0.0.1', '10.0.0.3', None, '8.8.8.8'])

        assert route_signature(r1) != route_signature(r2)


class TestGroupRoutes:
    """Test grouping of a trace stream."""

    def test_groups_and_route_change_flag(self, make_record):
        """A new group created right after a different route is a route change."""
        records = [
            make_record('a', '8.8.8.8', ['10.0.0.1', '192.168.1.1', '8.8.8.8'],
                        timestamp=1, latencies=[1, 2, 10.0]),
            make_record('a', '8.8.8.8', ['10.0.0.1', '192.168.1.1', '8.8.8.8'],
                        timestamp=2, latencies=[1, 2, 20.0]),
            make_record('a', '8.8.8.8', ['10.0.0.1', '192.168.1.2', '8.8.8.8'],
                        timestamp=3, latencies=[1, 2, 30.0]),
        ]

        groups = group_routes(reversed(records))

        assert len(groups) == 2
        first, second = groups
        assert first.trace_count == 2
        assert first.is_route_change is False
        assert first.avg_latency == pytest.approx(15.0)
        assert (first.first_seen, first.last_seen) == (1, 2)
        assert second.is_route_change is True
        assert second.previous_signature == first.signature
        assert second.fingerprint == route_fingerprint(second.signature)

    def test_average_uses_last_responding_hop(self, make_record):
        """A silent final hop does not hide the end latency."""
        record = make_record('a', '8.8.8.8', ['10.0.0.1', '10.0.0.2', None], latencies=[1.0, 42.0, None])

        group = group_routes([record])[0]
        assert group.avg_latency == 42.0
        assert group.max_loss == 0.0

    def test_issue_flags(self, make_record):
        """Triggered traces or responding-hop loss above 10% mark an issue."""
        lossy = make_record('a', 't', ['10.0.0.1', '10.0.0.2'], losses=[0.0, 10.5])
        edge = make_record('b', 't', ['10.0.0.1', '10.0.0.2'], losses=[0.0, 10.0])
        triggered = make_record('c', 't', ['10.0.0.1', '10.0.0.2'], triggered=True)
        silent = make_record('d', 't', ['10.0.0.1', None])

        assert group_routes([lossy])[0].has_issue is True
        assert group_routes([edge])[0].has_issue is False
        assert group_routes([triggered])[0].has_issue is True
        assert group_routes([silent])[0].has_issue is False


class TestRanking:
    """Test the four-tier display order."""

    def _groups(self, make_record):
        # stable: 3 traces, no issue; changed: route change only;
        # lossy: issue only; both: change and issue
        records = [
            make_record('a', 't', ['1.1.1.1', 't'], timestamp=1),
            make_record('a', 't', ['1.1.1.1', 't'], timestamp=2),
            make_record('a', 't', ['1.1.1.1', 't'], timestamp=3),
            make_record('a', 't', ['2.2.2.2', 't'], timestamp=4),
            make_record('a', 't', ['3.3.3.3', 't'], timestamp=5, losses=[50.0, 0.0]),
        ]
        groups = {g.hops[0]: g for g in group_routes(records)}
        lossy_first = make_record('b', 't', ['4.4.4.4', 't'], timestamp=0, losses=[50.0, 0.0])
        groups['4.4.4.4'] = group_routes([lossy_first])[0]
        return groups

    def test_tier_order(self, make_record):
        """Change+issue, then issue, then change, then by trace count."""
        groups = self._groups(make_record)
        ranked = rank_route_groups(list(groups.values()))

        assert [g.hops[0] for g in ranked] == ['3.3.3.3', '4.4.4.4', '2.2.2.2', '1.1.1.1']

    def test_tie_breaks(self, make_record):
        """Within a tier, recency or trace count decides."""
        old_busy = group_routes([
            make_record('a', 't', ['5.5.5.5', 't'], timestamp=1, triggered=True),
            make_record('a', 't', ['5.5.5.5', 't'], timestamp=2, triggered=True),
        ])[0]
        new_quiet = group_routes([
            make_record('b', 't', ['6.6.6.6', 't'], timestamp=9, triggered=True),
        ])[0]

        by_recency = rank_route_groups([old_busy, new_quiet], tie_break='recency')
        by_count = rank_route_groups([old_busy, new_quiet], tie_break='count')

        assert by_recency[0] is new_quiet
        assert by_count[0] is old_busy

    def test_unknown_tie_break(self):
        """An unknown tie-break mode is rejected."""
        with pytest.raises(ValueError):
            rank_route_groups([], tie_break='alphabetical')


class TestStability:
    """Test route stability percentage."""

    def test_stability(self, make_record):
        """Most common route share over all traces."""
        records = [make_record('a', 't', ['1.1.1.1'], timestamp=i) for i in range(3)]
        records.append(make_record('a', 't', ['2.2.2.2'], timestamp=3))

        assert route_stability(records) == pytest.approx(75.0)
        assert route_stability([]) == 0.0
