"""Test configuration and fixtures for routemap tests."""

import os
import tempfile
from unittest.mock import Mock

import pytest
import yaml
from prometheus_client import REGISTRY

from routemap.models import Hop, HopHost, PathRecord


@pytest.fixture(autouse=True)
def clear_prometheus_registry():
    """Clear Prometheus registry before each test."""
    collectors = list(REGISTRY._collector_to_names.keys())
    for collector in collectors:
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass  # Collector was already unregistered


def _hop(ttl, ip, latency=None, loss=0.0, hostname=None):
    if ip is None or ip == '*':
        return Hop(ttl=ttl, loss_pct=100.0 if loss == 0.0 else loss)
    return Hop(ttl=ttl, hosts=(HopHost(ip=ip, hostname=hostname),), loss_pct=loss,
               avg_ms=latency, best_ms=latency, worst_ms=latency, sent=10, recv=10)


@pytest.fixture
def make_record():
    """Factory for PathRecords from a list of IPs (None or '*' for a timeout)."""
    def factory(source, target, ips, timestamp=0.0, latencies=None, losses=None,
                triggered=False, target_agent=None, record_id=None):
        latencies = latencies or [None] * len(ips)
        losses = losses or [0.0] * len(ips)
        hops = tuple(
            _hop(i + 1, ip, latencies[i], losses[i])
            for i, ip in enumerate(ips)
        )
        return PathRecord(source=source, target=target, hops=hops, timestamp=timestamp,
                          triggered=triggered, target_agent=target_agent, record_id=record_id)
    return factory


@pytest.fixture
def raw_record():
    """Raw MTR-style probe record as delivered by the upstream API."""
    return {
        'id': 101,
        'agent_id': 7,
        'target': '8.8.8.8',
        'created_at': '2024-05-01T12:00:00Z',
        'triggered': False,
        'payload': {
            'report': {
                'hops': [
                    {'ttl': 1, 'hosts': [{'ip': '10.0.0.1', 'hostname': 'gw.local'}],
                     'loss_pct': '0.0%', 'avg': '1.20', 'best': '0.90', 'worst': '2.10',
                     'stddev': '0.30', 'sent': 10, 'recv': 10},
                    {'ttl': 2, 'hosts': [], 'loss_pct': '100.0%', 'sent': 10, 'recv': 0},
                    {'ttl': 3, 'hosts': [{'ip': '8.8.8.8', 'hostname': 'dns.google'}],
                     'loss_pct': 0, 'avg': '14.5 ms', 'best': '12.0', 'worst': '20.0',
                     'sent': 10, 'recv': 10},
                ]
            }
        }
    }


@pytest.fixture
def fake_redis():
    """Mock Redis client backed by in-memory lists and sets."""
    lists = {}
    sets = {}
    client = Mock()

    def rpush(key, *values):
        lists.setdefault(key, []).extend(values)
        return len(lists[key])

    def ltrim(key, start, end):
        items = lists.get(key, [])
        end = len(items) if end == -1 else end + 1
        lists[key] = items[start:end] if start >= 0 else items[max(len(items) + start, 0):end]
        return True

    def lrange(key, start, end):
        items = lists.get(key, [])
        return list(items[start:] if end == -1 else items[start:end + 1])

    def delete(*keys):
        count = 0
        for key in keys:
            if lists.pop(key, None) is not None:
                count += 1
        return count

    client.rpush = Mock(side_effect=rpush)
    client.ltrim = Mock(side_effect=ltrim)
    client.lrange = Mock(side_effect=lrange)
    client.delete = Mock(side_effect=delete)
    client.expire = Mock(return_value=True)
    client.sadd = Mock(side_effect=lambda key, *v: sets.setdefault(key, set()).update(v))
    client.srem = Mock(side_effect=lambda key, *v: sets.setdefault(key, set()).difference_update(v))
    client.smembers = Mock(side_effect=lambda key: set(sets.get(key, set())))
    client.sismember = Mock(side_effect=lambda key, v: v in sets.get(key, set()))
    client.ping = Mock(return_value=True)
    client.lists = lists
    return client


@pytest.fixture
def sample_mapserver_config():
    """Sample map server configuration for testing."""
    return {
        'mapserver': {
            'redis': {
                'host': 'test-redis',
                'port': 6379,
                'db': 0,
                'password': None
            },
            'server': {
                'host': '0.0.0.0',
                'port': 8758
            },
            'window': {
                'lookback_seconds': 3600,
                'max_records': 100
            },
            'source': {
                'enabled': False
            },
            'health': {
                'profile': 'default'
            },
            'layout': {
                'mode': 'hierarchical',
                'layer_gap': 100,
                'node_gap': 50,
                'pin_endpoints': True,
                'iterations': 50
            }
        }
    }


@pytest.fixture
def temp_config_file(sample_mapserver_config):
    """Create a temporary configuration file."""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        yaml.dump(sample_mapserver_config, f)
        temp_path = f.name

    yield temp_path

    # Cleanup
    os.unlink(temp_path)
