"""
Path extraction: raw probe payloads into PathRecords, and PathRecords into
ordered hop identifier sequences.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .models import WILDCARD, Hop, HopHost, PathRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractedPath:
    """Resolved view of one PathRecord, one entry per hop index"""
    identifiers: Tuple[str, ...]
    hostnames: Tuple[Optional[str], ...]
    latencies: Tuple[Optional[float], ...]
    losses: Tuple[float, ...]
    first_ip: Optional[str]
    last_ip: Optional[str]

    def __len__(self):
        return len(self.identifiers)

    @property
    def responding_count(self) -> int:
        return sum(1 for ident in self.identifiers if ident != WILDCARD)

    def last_responding_index(self) -> Optional[int]:
        for i in range(len(self.identifiers) - 1, -1, -1):
            if self.identifiers[i] != WILDCARD:
                return i
        return None


def extract_path(record: PathRecord) -> ExtractedPath:
    """Resolve each hop to its first responding IP, or the wildcard marker"""
    identifiers = []
    hostnames = []
    latencies = []
    losses = []

    for hop in record.hops:
        host = hop.responder
        if host:
            identifiers.append(host.ip)
            hostnames.append(host.hostname or None)
            latencies.append(hop.avg_ms)
        else:
            identifiers.append(WILDCARD)
            hostnames.append(None)
            latencies.append(None)
        losses.append(hop.loss_pct)

    responding = [ident for ident in identifiers if ident != WILDCARD]

    return ExtractedPath(
        identifiers=tuple(identifiers),
        hostnames=tuple(hostnames),
        latencies=tuple(latencies),
        losses=tuple(losses),
        first_ip=responding[0] if responding else None,
        last_ip=responding[-1] if responding else None,
    )


def parse_loss(value) -> float:
    """Loss percentage from a number or a string such as ``'12.5%'``"""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip().rstrip('%').strip())
    except ValueError:
        return 0.0


def parse_latency(value) -> Optional[float]:
    """Latency in ms from a number or a string such as ``'12.3 ms'``"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text.endswith('ms'):
        text = text[:-2].strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_timestamp(value) -> Optional[float]:
    """Epoch seconds from a number or an ISO-8601 string"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _parse_hop(index: int, raw: Dict) -> Hop:
    hosts = []
    for host in raw.get('hosts') or []:
        if isinstance(host, dict):
            hosts.append(HopHost(ip=str(host.get('ip') or ''), hostname=host.get('hostname') or None))

    sent = int(raw.get('sent') or 0)
    recv = int(raw.get('recv') or 0)
    if 'loss_pct' in raw:
        loss = parse_loss(raw.get('loss_pct'))
    elif sent > 0:
        loss = (sent - recv) / sent * 100
    else:
        loss = 0.0

    return Hop(
        ttl=int(raw.get('ttl') or index + 1),
        hosts=tuple(hosts),
        loss_pct=loss,
        avg_ms=parse_latency(raw.get('avg')),
        best_ms=parse_latency(raw.get('best')),
        worst_ms=parse_latency(raw.get('worst')),
        jitter_ms=parse_latency(raw.get('stddev')),
        sent=sent,
        recv=recv,
    )


def _raw_hops(raw: Dict):
    payload = raw.get('payload')
    if isinstance(payload, dict):
        report = payload.get('report')
        if isinstance(report, dict) and 'hops' in report:
            return report.get('hops')
    report = raw.get('report')
    if isinstance(report, dict) and 'hops' in report:
        return report.get('hops')
    return raw.get('hops')


def parse_path_record(raw: Dict) -> Optional[PathRecord]:
    """Build a PathRecord from one raw probe result; None when it has no usable hop list"""
    if not isinstance(raw, dict):
        logger.debug(f"Skipping non-object probe record: {raw!r}")
        return None

    hops = _raw_hops(raw)
    if not isinstance(hops, list) or not hops:
        logger.debug(f"Skipping probe record without hops: {raw.get('id')}")
        return None

    source = raw.get('agent_id', raw.get('source'))
    target = raw.get('target')
    if source in (None, '') or not target:
        logger.debug(f"Skipping probe record without source/target: {raw.get('id')}")
        return None

    timestamp = parse_timestamp(raw.get('created_at', raw.get('timestamp')))
    if timestamp is None:
        timestamp = 0.0

    target_agent = raw.get('target_agent')
    if target_agent in (None, '', 0, '0'):
        target_agent = None

    return PathRecord(
        source=str(source),
        target=str(target),
        hops=tuple(_parse_hop(i, hop) for i, hop in enumerate(hops) if isinstance(hop, dict)),
        timestamp=timestamp,
        triggered=bool(raw.get('triggered', False)),
        target_agent=str(target_agent) if target_agent is not None else None,
        record_id=str(raw['id']) if raw.get('id') is not None else None,
    )


def parse_path_records(raw_records: Iterable[Dict]) -> List[PathRecord]:
    """Parse a batch, silently dropping malformed entries"""
    records = []
    skipped = 0
    for raw in raw_records:
        record = parse_path_record(raw)
        if record is None or not record.hops:
            skipped += 1
            continue
        records.append(record)
    if skipped:
        logger.debug(f"Dropped {skipped} malformed probe records")
    return records


def parse_traceroute_output(output: str, source: str, target: str,
                            timestamp: float = 0.0) -> Optional[PathRecord]:
    """Parse ``traceroute -n -q 1`` text output into a PathRecord"""
    lines = output.strip().split('\n')
    hops = []

    for line in lines[1:]:  # Skip the header line
        # " 1  10.0.1.1  1.234 ms" or " 2  * * *"
        parts = line.strip().split()
        if len(parts) < 2:
            continue
        try:
            hop_num = int(parts[0])
        except ValueError:
            continue

        if parts[-1] == 'ms' and len(parts) >= 4:
            try:
                latency = float(parts[-2])
            except ValueError:
                continue
            hops.append(Hop(ttl=hop_num, hosts=(HopHost(ip=parts[1]),), loss_pct=0.0,
                            avg_ms=latency, best_ms=latency, worst_ms=latency, sent=1, recv=1))
        elif '*' in parts:
            hops.append(Hop(ttl=hop_num, loss_pct=100.0, sent=1, recv=0))

    if not hops:
        return None

    return PathRecord(source=source, target=target, hops=tuple(hops), timestamp=timestamp)
