"""
Path analysis over a window of traces for one probe: route stability,
end-hop quality, ICMP artifacts and the signals derived from them.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import PathRecord
from .signature import route_signature, route_stability

MAX_TRACES = 100
RATE_LIMIT_HOP_LOSS = 10.0
RATE_LIMIT_END_LOSS = 1.0
UNSTABLE_ROUTE_PCT = 70.0
END_LOSS_WARNING = 3.0
END_LOSS_CRITICAL = 10.0


@dataclass(frozen=True)
class AnalysisSignal:
    type: str
    severity: str
    title: str
    evidence: str
    confidence: float

    def to_dict(self) -> Dict:
        return {
            'type': self.type,
            'severity': self.severity,
            'title': self.title,
            'evidence': self.evidence,
            'confidence': self.confidence,
        }


@dataclass
class PathAnalysis:
    trace_count: int
    hop_count: int
    unique_routes: int
    route_stability_pct: float
    avg_end_hop_latency: float
    avg_end_hop_loss: float
    rate_limited_hops: List[int] = field(default_factory=list)
    timeout_segments: List[str] = field(default_factory=list)
    signals: List[AnalysisSignal] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'trace_count': self.trace_count,
            'hop_count': self.hop_count,
            'unique_routes': self.unique_routes,
            'route_stability_pct': self.route_stability_pct,
            'avg_end_hop_latency': self.avg_end_hop_latency,
            'avg_end_hop_loss': self.avg_end_hop_loss,
            'rate_limited_hops': list(self.rate_limited_hops),
            'timeout_segments': list(self.timeout_segments),
            'signals': [s.to_dict() for s in self.signals],
        }


def _artifacts(record: PathRecord):
    """Rate-limited hop numbers and silent segments of one trace"""
    end_loss = record.hops[-1].loss_pct
    rate_limited = []
    segments = []
    timeout_start = None

    for i, hop in enumerate(record.hops):
        responding = hop.responder is not None
        # Loss at an intermediate hop that never reaches the end is ICMP rate limiting
        if responding and hop.loss_pct > RATE_LIMIT_HOP_LOSS and end_loss < RATE_LIMIT_END_LOSS:
            rate_limited.append(i + 1)

        if not responding:
            if timeout_start is None:
                timeout_start = i + 1
        elif timeout_start is not None:
            segments.append(f"Hops {timeout_start}-{i}")
            timeout_start = None

    if timeout_start is not None:
        segments.append(f"Hops {timeout_start}-{len(record.hops)}")

    return rate_limited, segments


def analyze_paths(records: Iterable[PathRecord], max_traces: int = MAX_TRACES) -> Optional[PathAnalysis]:
    """Analyse the newest ``max_traces`` traces; None when there are none"""
    traces = sorted((r for r in records if r.hops), key=lambda r: r.timestamp, reverse=True)[:max_traces]
    if not traces:
        return None

    signatures = Counter(route_signature(r) for r in traces)
    total = len(traces)
    stability = route_stability(traces)

    end_latency = sum(r.hops[-1].avg_ms or 0.0 for r in traces) / total
    end_loss = sum(r.hops[-1].loss_pct for r in traces) / total

    # Artifacts are read from the most recent trace only
    rate_limited, segments = _artifacts(traces[0])

    analysis = PathAnalysis(
        trace_count=total,
        hop_count=max(len(r.hops) for r in traces),
        unique_routes=len(signatures),
        route_stability_pct=stability,
        avg_end_hop_latency=end_latency,
        avg_end_hop_loss=end_loss,
        rate_limited_hops=rate_limited,
        timeout_segments=segments,
    )

    if rate_limited:
        analysis.signals.append(AnalysisSignal(
            type='icmp_artifact',
            severity='info',
            title='ICMP Rate Limiting Detected',
            evidence=f"Hops {rate_limited} show high loss that does not propagate to the destination",
            confidence=0.85,
        ))

    if segments:
        analysis.signals.append(AnalysisSignal(
            type='icmp_artifact',
            severity='info',
            title='Filtered ICMP Segments',
            evidence=f"Non-responding segments: {', '.join(segments)}",
            confidence=0.70,
        ))

    if len(signatures) > 1:
        analysis.signals.append(AnalysisSignal(
            type='route_change',
            severity='warning' if stability < UNSTABLE_ROUTE_PCT else 'info',
            title='Route Instability Detected',
            evidence=f"{len(signatures)} unique routes observed across {total} traces (stability: {stability:.0f}%)",
            confidence=0.90,
        ))

    if end_loss > END_LOSS_WARNING:
        analysis.signals.append(AnalysisSignal(
            type='high_loss',
            severity='critical' if end_loss > END_LOSS_CRITICAL else 'warning',
            title='End-to-End Packet Loss',
            evidence=f"Average end-hop loss: {end_loss:.1f}%",
            confidence=0.95,
        ))

    return analysis
