"""
Route Signature Index: canonical per-trace signatures and grouping of
identical routes.
"""

import hashlib
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .extractor import extract_path
from .models import PathRecord

SIGNATURE_SEPARATOR = '->'
PATH_SEPARATOR = ' -> '

# A group whose worst responding hop loses more than this has an issue
ISSUE_LOSS_PCT = 10.0


def route_identifiers(record: PathRecord) -> Tuple[str, ...]:
    return extract_path(record).identifiers


def route_signature(record: PathRecord) -> str:
    """Responding IPs joined in hop order; timeouts appear as the wildcard marker"""
    return SIGNATURE_SEPARATOR.join(route_identifiers(record))


def route_fingerprint(signature: str) -> str:
    """Short stable id for a signature: hex of the first 16 bytes of its SHA-256"""
    return hashlib.sha256(signature.encode('utf-8')).digest()[:16].hex()


def route_path_string(record: PathRecord) -> str:
    """Human readable hop chain"""
    return PATH_SEPARATOR.join(route_identifiers(record))


def max_responding_loss(record: PathRecord) -> float:
    """Worst loss over hops that answered; silent hops do not count as loss"""
    return max((hop.loss_pct for hop in record.hops if hop.responder), default=0.0)


def end_latency(record: PathRecord) -> Optional[float]:
    """Average latency of the last hop that answered"""
    for hop in reversed(record.hops):
        if hop.responder:
            return hop.avg_ms
    return None


@dataclass
class RouteGroup:
    """All traces sharing one RouteSignature"""
    signature: str
    hops: Tuple[str, ...]
    first_seen: float
    last_seen: float
    trace_count: int = 0
    avg_latency: Optional[float] = None
    max_loss: float = 0.0
    triggered_count: int = 0
    is_route_change: bool = False
    previous_signature: Optional[str] = None
    record_ids: List[str] = field(default_factory=list)
    _latency_count: int = field(default=0, repr=False)

    @property
    def fingerprint(self) -> str:
        return route_fingerprint(self.signature)

    @property
    def path(self) -> str:
        return PATH_SEPARATOR.join(self.hops)

    @property
    def has_issue(self) -> bool:
        return self.triggered_count > 0 or self.max_loss > ISSUE_LOSS_PCT

    @property
    def tier(self) -> int:
        if self.is_route_change and self.has_issue:
            return 0
        if self.has_issue:
            return 1
        if self.is_route_change:
            return 2
        return 3

    def add(self, record: PathRecord):
        self.trace_count += 1
        self.first_seen = min(self.first_seen, record.timestamp)
        self.last_seen = max(self.last_seen, record.timestamp)
        if record.triggered:
            self.triggered_count += 1
        if record.record_id:
            self.record_ids.append(record.record_id)

        latency = end_latency(record)
        if latency is not None:
            self._latency_count += 1
            if self.avg_latency is None:
                self.avg_latency = latency
            else:
                self.avg_latency = (self.avg_latency * (self._latency_count - 1) + latency) / self._latency_count

        self.max_loss = max(self.max_loss, max_responding_loss(record))

    def to_dict(self) -> Dict:
        return {
            'signature': self.signature,
            'fingerprint': self.fingerprint,
            'path': self.path,
            'hops': list(self.hops),
            'trace_count': self.trace_count,
            'first_seen': self.first_seen,
            'last_seen': self.last_seen,
            'avg_latency': self.avg_latency,
            'max_loss': self.max_loss,
            'is_route_change': self.is_route_change,
            'previous_signature': self.previous_signature,
            'has_issue': self.has_issue,
            'triggered_count': self.triggered_count,
        }


def sort_by_time(records: Iterable[PathRecord]) -> List[PathRecord]:
    """Ascending by timestamp; stable for equal timestamps"""
    return sorted(records, key=lambda r: r.timestamp)


def group_routes(records: Iterable[PathRecord]) -> List[RouteGroup]:
    """
    Group traces by exact signature.

    Records are walked oldest first. A group is flagged as a route change
    when the trace that created it differs from the trace right before it.
    Groups are returned in order of first appearance.
    """
    groups: Dict[str, RouteGroup] = {}
    prev_signature = None

    for record in sort_by_time(records):
        if not record.hops:
            continue
        hops = route_identifiers(record)
        signature = SIGNATURE_SEPARATOR.join(hops)

        group = groups.get(signature)
        if group is None:
            changed = prev_signature is not None and prev_signature != signature
            group = RouteGroup(
                signature=signature,
                hops=hops,
                first_seen=record.timestamp,
                last_seen=record.timestamp,
                is_route_change=changed,
                previous_signature=prev_signature if changed else None,
            )
            groups[signature] = group
        group.add(record)
        prev_signature = signature

    return list(groups.values())


def rank_route_groups(groups: Sequence[RouteGroup], tie_break: str = 'recency') -> List[RouteGroup]:
    """
    Order groups for display.

    Change-with-issue first, then issue, then change, then the rest by
    descending trace count. ``tie_break`` orders groups within a tier:
    'recency' (most recently seen first) or 'count' (most traces first).
    """
    if tie_break not in ('recency', 'count'):
        raise ValueError(f"Unknown tie_break: {tie_break}")

    def key(group: RouteGroup):
        if group.tier == 3:
            return (3, -group.trace_count, -group.last_seen)
        if tie_break == 'count':
            return (group.tier, -group.trace_count, -group.last_seen)
        return (group.tier, -group.last_seen, -group.trace_count)

    return sorted(groups, key=key)


def route_stability(records: Iterable[PathRecord]) -> float:
    """Share of traces (percent) that took the most common route; 0.0 with no traces"""
    counts = Counter(route_signature(r) for r in records if r.hops)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    return max(counts.values()) / total * 100
