"""Tests for path analysis and trace aggregation."""

import pytest

from routemap.aggregation import aggregate_traces, bucket_start, merge_hops
from routemap.analysis import analyze_paths
from routemap.signature import route_stability


class TestAnalyzePaths:
    """Test window analysis for one probe."""

    def test_no_traces(self):
        """Nothing to analyse yields None."""
        assert analyze_paths([]) is None

    def test_stable_clean_path(self, make_record):
        """One route with no loss raises no signals."""
        records = [
            make_record('a', 't', ['1.1.1.1', '2.2.2.2'], timestamp=i, latencies=[1.0, 10.0])
            for i in range(4)
        ]

        analysis = analyze_paths(records)

        assert analysis.trace_count == 4
        assert analysis.unique_routes == 1
        assert analysis.route_stability_pct == 100.0
        assert analysis.avg_end_hop_latency == pytest.approx(10.0)
        assert analysis.signals == []

    def test_rate_limited_hop(self, make_record):
        """Intermediate loss that does not reach the end is an ICMP artifact."""
        record = make_record('a', 't', ['1.1.1.1', '2.2.2.2', '3.3.3.3'],
                             latencies=[1.0, 5.0, 10.0], losses=[0.0, 40.0, 0.0])

        analysis = analyze_paths([record])

        assert analysis.rate_limited_hops == [2]
        signal = analysis.signals[0]
        assert signal.type == 'icmp_artifact'
        assert signal.confidence == 0.85

    def test_timeout_segments(self, make_record):
        """Consecutive silent hops are reported as one segment."""
        record = make_record('a', 't', ['1.1.1.1', None, None, '4.4.4.4', None],
                             latencies=[1.0, None, None, 8.0, None])

        analysis = analyze_paths([record])

        assert analysis.timeout_segments == ['Hops 2-3', 'Hops 5-5']
        assert any(s.title == 'Filtered ICMP Segments' and s.confidence == 0.70
                   for s in analysis.signals)

    def test_route_instability_and_end_loss(self, make_record):
        """Several routes and end-hop loss produce instability and loss signals."""
        records = [
            make_record('a', 't', ['1.1.1.1', 't'], timestamp=1, losses=[0.0, 20.0]),
            make_record('a', 't', ['2.2.2.2', 't'], timestamp=2, losses=[0.0, 20.0]),
        ]

        analysis = analyze_paths(records)
        by_type = {s.type: s for s in analysis.signals}

        assert analysis.route_stability_pct == 50.0
        assert by_type['route_change'].severity == 'warning'
        assert by_type['route_change'].confidence == 0.90
        assert by_type['high_loss'].severity == 'critical'
        assert analysis.to_dict()['unique_routes'] == 2

    def test_window_keeps_newest(self, make_record):
        """Only the newest traces are analysed."""
        records = [make_record('a', 't', ['1.1.1.1'], timestamp=i) for i in range(5)]
        records.append(make_record('a', 't', ['9.9.9.9'], timestamp=10))

        analysis = analyze_paths(records, max_traces=2)

        assert analysis.trace_count == 2
        assert analysis.unique_routes == 2

    def test_stability_matches_route_stability(self, make_record):
        """Window stability is route_stability over the analysed traces only."""
        records = [make_record('a', 't', ['1.1.1.1'], timestamp=i) for i in range(3)]
        records += [make_record('a', 't', ['9.9.9.9'], timestamp=10 + i) for i in range(2)]
        records.append(make_record('a', 't', [], timestamp=20))

        analysis = analyze_paths(records, max_traces=4)

        newest = sorted((r for r in records if r.hops), key=lambda r: r.timestamp)[-4:]
        assert analysis.route_stability_pct == route_stability(newest) == 50.0
        assert route_stability(records) == pytest.approx(60.0)


class TestAggregateTraces:
    """Test bucketing of traces for list views."""

    def test_bucket_start(self):
        """Timestamps floor to the bucket boundary."""
        assert bucket_start(125, 60) == 120
        assert bucket_start(120, 60) == 120

    def test_plain_traces_collapse_into_bucket(self, make_record):
        """Unremarkable traces in one minute become a single summary."""
        records = [
            make_record('a', 't', ['1.1.1.1', '2.2.2.2'], timestamp=60 + i, latencies=[1.0, 10.0 + i],
                        record_id=str(i))
            for i in range(3)
        ]

        result = aggregate_traces(records)

        assert len(result) == 1
        summary = result[0]
        assert summary.is_aggregated is True
        assert summary.trace_count == 3
        assert summary.timestamp == 60
        assert summary.record_id == '2'
        assert summary.hops[1].avg_ms == pytest.approx(11.0)
        assert summary.hops[1].sent == 30

    def test_notable_traces_kept_individually(self, make_record):
        """A route change is listed alongside its bucket summary."""
        records = [
            make_record('a', 't', ['1.1.1.1', '2.2.2.2'], timestamp=10),
            make_record('a', 't', ['1.1.1.1', '2.2.2.2'], timestamp=20),
            make_record('a', 't', ['1.1.1.1', '3.3.3.3'], timestamp=30, record_id='x'),
        ]

        result = aggregate_traces(records)
        notable = [t for t in result if not t.is_aggregated]
        summary = next(t for t in result if t.is_aggregated)

        assert len(notable) == 1
        assert notable[0].notable_reason == 'route-change'
        assert notable[0].previous_signature == '1.1.1.1->2.2.2.2'
        assert notable[0].record_id == 'x'
        assert summary.signature == '1.1.1.1->2.2.2.2'
        assert summary.trace_count == 2

    def test_streams_do_not_mix(self, make_record):
        """Different targets never share a bucket or a change register."""
        records = [
            make_record('a', 'x', ['1.1.1.1'], timestamp=1),
            make_record('a', 'y', ['2.2.2.2'], timestamp=2),
        ]

        result = aggregate_traces(records)

        assert all(t.is_aggregated for t in result)
        assert {t.target for t in result} == {'x', 'y'}

    def test_newest_first_and_limit(self, make_record):
        """Output is newest first and truncated by limit."""
        records = [make_record('a', 't', ['1.1.1.1'], timestamp=i * 60) for i in range(4)]

        result = aggregate_traces(records, limit=2)

        assert [t.timestamp for t in result] == [180, 120]

    def test_invalid_bucket(self, make_record):
        """A non-positive bucket width is rejected."""
        with pytest.raises(ValueError):
            aggregate_traces([], bucket_seconds=0)

    def test_merge_hops_loss_from_counters(self, make_record):
        """Merged loss is computed from summed sent and received counters."""
        r1 = make_record('a', 't', ['1.1.1.1'], latencies=[4.0])
        r2 = make_record('a', 't', [None])

        merged = merge_hops([r1, r2])

        assert merged[0].sent == 10
        assert merged[0].recv == 10
        assert merged[0].loss_pct == 0.0
        assert merged[0].hosts[0].ip == '1.1.1.1'
        assert merged[0].avg_ms == 4.0
