"""
Redis-backed data window of raw probe records, one list per workspace.
"""

import json
import logging
import time
from typing import Dict, Iterable, List, Optional

from routemap.extractor import parse_path_record
from routemap.models import PathRecord

logger = logging.getLogger(__name__)

KEY_PREFIX = "routemap"
WORKSPACES_KEY = f"{KEY_PREFIX}:workspaces"


def records_key(workspace: str) -> str:
    return f"{KEY_PREFIX}:records:{workspace}"


class RecordStore:
    """Keeps the newest ``max_records`` raw records per workspace for ``lookback_seconds``"""

    def __init__(self, redis_client, lookback_seconds: int = 3600, max_records: int = 5000):
        self.redis_client = redis_client
        self.lookback_seconds = lookback_seconds
        self.max_records = max_records

    def add_records(self, workspace: str, raw_records: Iterable[Dict], replace: bool = False) -> int:
        """Append raw records to the window; ``replace`` drops the previous window first"""
        now = time.time()
        payloads = [json.dumps({'received_at': now, 'record': raw}) for raw in raw_records]
        key = records_key(workspace)

        if replace:
            self.redis_client.delete(key)
        if payloads:
            self.redis_client.rpush(key, *payloads)
            self.redis_client.ltrim(key, -self.max_records, -1)
            self.redis_client.expire(key, self.lookback_seconds)
        self.redis_client.sadd(WORKSPACES_KEY, workspace)

        logger.debug(f"Stored {len(payloads)} records for workspace {workspace}")
        return len(payloads)

    def load_records(self, workspace: str, now: Optional[float] = None) -> List[PathRecord]:
        """Parsed records inside the lookback window; unparseable entries are skipped"""
        now = now if now is not None else time.time()
        cutoff = now - self.lookback_seconds
        records = []

        for payload in self.redis_client.lrange(records_key(workspace), 0, -1):
            try:
                entry = json.loads(payload)
            except (TypeError, ValueError):
                logger.debug(f"Skipping undecodable stored record in {workspace}")
                continue

            record = parse_path_record(entry.get('record')) if isinstance(entry, dict) else None
            if record is None:
                continue
            # Records without their own timestamp age by arrival time
            seen_at = record.timestamp or entry.get('received_at', 0)
            if seen_at >= cutoff:
                records.append(record)

        return records

    def workspaces(self) -> List[str]:
        return sorted(self.redis_client.smembers(WORKSPACES_KEY))

    def has_workspace(self, workspace: str) -> bool:
        return bool(self.redis_client.sismember(WORKSPACES_KEY, workspace))

    def clear(self, workspace: str) -> int:
        deleted = self.redis_client.delete(records_key(workspace))
        self.redis_client.srem(WORKSPACES_KEY, workspace)
        return deleted
