"""
Change Detector: flags signature transitions in a time-ordered trace stream
and produces a positional hop diff for each transition.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .models import PathRecord
from .signature import (
    ISSUE_LOSS_PCT, SIGNATURE_SEPARATOR, end_latency, max_responding_loss,
    route_identifiers, sort_by_time,
)

logger = logging.getLogger(__name__)

HIGH_LATENCY_MS = 150.0

StreamKey = Union[str, Tuple[str, str]]


class DiffStatus(Enum):
    UNCHANGED = 'unchanged'
    ADDED = 'added'
    REMOVED = 'removed'
    CHANGED = 'changed'


@dataclass(frozen=True)
class HopDiff:
    """
    Comparison of one hop index.

    ``previous_status`` is None when the previous route has no hop at this
    index, ``current_status`` likewise for the current route.
    """
    index: int
    previous: Optional[str]
    current: Optional[str]
    previous_status: Optional[DiffStatus]
    current_status: Optional[DiffStatus]

    def to_dict(self) -> Dict:
        return {
            'hop': self.index + 1,
            'previous': self.previous,
            'current': self.current,
            'previous_status': self.previous_status.value if self.previous_status else None,
            'current_status': self.current_status.value if self.current_status else None,
        }


def diff_hops(previous: Sequence[str], current: Sequence[str]) -> List[HopDiff]:
    """Index-by-index diff; a shifted hop shows as removed/added rather than moved"""
    prev_set = set(previous)
    curr_set = set(current)
    diffs = []

    for i in range(max(len(previous), len(current))):
        p = previous[i] if i < len(previous) else None
        c = current[i] if i < len(current) else None

        if p is not None and c is not None and p == c:
            diffs.append(HopDiff(i, p, c, DiffStatus.UNCHANGED, DiffStatus.UNCHANGED))
            continue

        p_status = None
        if p is not None:
            p_status = DiffStatus.REMOVED if p not in curr_set else DiffStatus.CHANGED
        c_status = None
        if c is not None:
            c_status = DiffStatus.ADDED if c not in prev_set else DiffStatus.CHANGED
        diffs.append(HopDiff(i, p, c, p_status, c_status))

    return diffs


def notable_reason(record: PathRecord, previous_signature: Optional[str] = None) -> Optional[str]:
    """Why a trace deserves to be kept individually, or None"""
    if record.triggered:
        return 'triggered'
    signature = SIGNATURE_SEPARATOR.join(route_identifiers(record))
    if previous_signature and signature != previous_signature:
        return 'route-change'
    if max_responding_loss(record) > ISSUE_LOSS_PCT:
        return 'high-loss'
    latency = end_latency(record)
    if latency is not None and latency > HIGH_LATENCY_MS:
        return 'high-latency'
    return None


@dataclass(frozen=True)
class ChangeAnnotation:
    """One record of a stream, annotated against the record before it"""
    record: PathRecord
    signature: str
    hops: Tuple[str, ...]
    is_change: bool = False
    previous_signature: Optional[str] = None
    previous_hops: Tuple[str, ...] = ()
    diff: Tuple[HopDiff, ...] = ()


@dataclass(frozen=True)
class RouteChange:
    stream: StreamKey
    changed_at: float
    from_signature: str
    to_signature: str
    diff: Tuple[HopDiff, ...]
    record_id: Optional[str] = None

    def to_dict(self) -> Dict:
        if isinstance(self.stream, tuple):
            source, target = self.stream
        else:
            source, target = self.stream, None
        return {
            'source': source,
            'target': target,
            'changed_at': self.changed_at,
            'from_signature': self.from_signature,
            'to_signature': self.to_signature,
            'record_id': self.record_id,
            'diff': [d.to_dict() for d in self.diff],
        }


@dataclass
class ChangeReport:
    stream: StreamKey
    annotations: List[ChangeAnnotation] = field(default_factory=list)
    changes: List[RouteChange] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return len(self.changes)

    @property
    def last_changed_at(self) -> Optional[float]:
        return self.changes[-1].changed_at if self.changes else None

    def to_dict(self) -> Dict:
        data = {}
        if isinstance(self.stream, tuple):
            data['source'], data['target'] = self.stream
        else:
            data['source'], data['target'] = self.stream, None
        data.update({
            'trace_count': len(self.annotations),
            'change_count': self.change_count,
            'last_changed_at': self.last_changed_at,
            'changes': [c.to_dict() for c in self.changes],
        })
        return data


class ChangeDetector:
    """
    One "last signature seen" register per stream.

    Feed records in ascending time order. A stream is keyed by source, or
    by (source, target) when ``by_target`` is set.
    """

    def __init__(self, by_target: bool = False):
        self.by_target = by_target
        self._last: Dict[StreamKey, Tuple[str, Tuple[str, ...]]] = {}

    def stream_key(self, record: PathRecord) -> StreamKey:
        if self.by_target:
            return (record.source, record.target)
        return record.source

    def reset(self):
        self._last.clear()

    def observe(self, record: PathRecord) -> ChangeAnnotation:
        hops = route_identifiers(record)
        signature = SIGNATURE_SEPARATOR.join(hops)
        key = self.stream_key(record)

        previous = self._last.get(key)
        self._last[key] = (signature, hops)

        if previous is None or previous[0] == signature:
            return ChangeAnnotation(record=record, signature=signature, hops=hops)

        prev_signature, prev_hops = previous
        return ChangeAnnotation(
            record=record,
            signature=signature,
            hops=hops,
            is_change=True,
            previous_signature=prev_signature,
            previous_hops=prev_hops,
            diff=tuple(diff_hops(prev_hops, hops)),
        )


def detect_route_changes(records: Iterable[PathRecord], target: Optional[str] = None,
                         by_target: bool = False) -> List[ChangeReport]:
    """Annotate every stream in the record set; one report per stream, ordered by stream key"""
    detector = ChangeDetector(by_target=by_target)
    reports: Dict[StreamKey, ChangeReport] = {}

    for record in sort_by_time(records):
        if not record.hops:
            continue
        if target is not None and record.target != target:
            continue

        annotation = detector.observe(record)
        key = detector.stream_key(record)
        report = reports.setdefault(key, ChangeReport(stream=key))
        report.annotations.append(annotation)

        if annotation.is_change:
            report.changes.append(RouteChange(
                stream=key,
                changed_at=record.timestamp,
                from_signature=annotation.previous_signature,
                to_signature=annotation.signature,
                diff=annotation.diff,
                record_id=record.record_id,
            ))

    total = sum(r.change_count for r in reports.values())
    if total:
        logger.debug(f"Detected {total} route changes across {len(reports)} streams")

    return [reports[key] for key in sorted(reports, key=lambda k: k if isinstance(k, tuple) else (k, ''))]
