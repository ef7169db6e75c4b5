"""
Time-bucket aggregation of traces for list views.

Notable traces are kept individually; every trace also lands in a
fixed-width bucket that is summarised on its dominant route.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .changes import notable_reason
from .models import Hop, PathRecord
from .signature import route_signature, sort_by_time

DEFAULT_BUCKET_SECONDS = 60


@dataclass(frozen=True)
class AggregatedTrace:
    source: str
    target: str
    timestamp: float
    hops: Tuple[Hop, ...]
    signature: str
    trace_count: int
    is_aggregated: bool
    previous_signature: Optional[str] = None
    notable_reason: Optional[str] = None
    record_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'source': self.source,
            'target': self.target,
            'timestamp': self.timestamp,
            'route_signature': self.signature,
            'previous_route_signature': self.previous_signature,
            'trace_count': self.trace_count,
            'is_aggregated': self.is_aggregated,
            'notable_reason': self.notable_reason,
            'record_id': self.record_id,
            'hops': [
                {
                    'ttl': hop.ttl,
                    'hosts': [{'ip': h.ip, 'hostname': h.hostname} for h in hop.hosts],
                    'loss_pct': round(hop.loss_pct, 1),
                    'sent': hop.sent,
                    'recv': hop.recv,
                    'avg': hop.avg_ms,
                    'best': hop.best_ms,
                    'worst': hop.worst_ms,
                }
                for hop in self.hops
            ],
        }


def bucket_start(timestamp: float, bucket_seconds: float) -> float:
    return (timestamp // bucket_seconds) * bucket_seconds


def merge_hops(records: List[PathRecord]) -> Tuple[Hop, ...]:
    """Merge same-route traces hop by hop"""
    merged = []
    max_hops = max(len(r.hops) for r in records)

    for i in range(max_hops):
        column = [r.hops[i] for r in records if i < len(r.hops)]
        ttl = column[-1].ttl
        hosts = ()
        for hop in column:
            if hop.hosts:
                hosts = hop.hosts

        sent = sum(h.sent for h in column)
        recv = sum(h.recv for h in column)
        if sent > 0:
            loss = (sent - recv) / sent * 100
        else:
            loss = sum(h.loss_pct for h in column) / len(column)

        avgs = [h.avg_ms for h in column if h.avg_ms is not None and h.avg_ms > 0]
        bests = [h.best_ms for h in column if h.best_ms is not None and h.best_ms > 0]
        worsts = [h.worst_ms for h in column if h.worst_ms is not None and h.worst_ms > 0]

        merged.append(Hop(
            ttl=ttl,
            hosts=hosts,
            loss_pct=loss,
            avg_ms=sum(avgs) / len(avgs) if avgs else None,
            best_ms=min(bests) if bests else None,
            worst_ms=max(worsts) if worsts else None,
            sent=sent,
            recv=recv,
        ))

    return tuple(merged)


def aggregate_traces(records: Iterable[PathRecord], bucket_seconds: float = DEFAULT_BUCKET_SECONDS,
                     limit: int = 0) -> List[AggregatedTrace]:
    """Notable traces plus one summary per (stream, bucket), newest first; ``limit`` <= 0 keeps all"""
    if bucket_seconds <= 0:
        raise ValueError("bucket_seconds must be positive")

    notable: List[AggregatedTrace] = []
    buckets: Dict[Tuple[str, str, float], List[Tuple[PathRecord, str]]] = {}
    previous: Dict[Tuple[str, str], str] = {}

    for record in sort_by_time(records):
        if not record.hops:
            continue
        stream = (record.source, record.target)
        signature = route_signature(record)
        prev_signature = previous.get(stream)

        reason = notable_reason(record, prev_signature)
        if reason:
            notable.append(AggregatedTrace(
                source=record.source,
                target=record.target,
                timestamp=record.timestamp,
                hops=record.hops,
                signature=signature,
                trace_count=1,
                is_aggregated=False,
                previous_signature=prev_signature,
                notable_reason=reason,
                record_id=record.record_id,
            ))

        key = (record.source, record.target, bucket_start(record.timestamp, bucket_seconds))
        buckets.setdefault(key, []).append((record, signature))
        previous[stream] = signature

    result = list(notable)
    for (source, target, start), members in buckets.items():
        dominant, _ = Counter(sig for _, sig in members).most_common(1)[0]
        matching = [record for record, sig in members if sig == dominant]
        latest = max((record for record, _ in members), key=lambda r: r.timestamp)
        result.append(AggregatedTrace(
            source=source,
            target=target,
            timestamp=start,
            hops=merge_hops(matching),
            signature=dominant,
            trace_count=len(matching),
            is_aggregated=True,
            record_id=latest.record_id,
        ))

    result.sort(key=lambda t: t.timestamp, reverse=True)
    if limit > 0:
        result = result[:limit]
    return result
