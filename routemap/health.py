"""
Health classification for nodes, edges and destinations.

Maps aggregate (avg latency, packet loss) onto one status category. One
canonical threshold table is used everywhere; the looser cutoffs of the
network-map view are kept as a named profile and are only
applied when configuration asks for them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    HEALTHY = 'healthy'
    DEGRADED = 'degraded'
    CRITICAL = 'critical'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class HealthThresholds:
    """Healthy strictly below both healthy cutoffs, critical strictly above either critical cutoff"""
    healthy_loss_pct: float = 5.0
    healthy_latency_ms: float = 100.0
    critical_loss_pct: float = 25.0
    critical_latency_ms: float = 200.0

    def __post_init__(self):
        if self.healthy_loss_pct > self.critical_loss_pct:
            raise ValueError("healthy_loss_pct must not exceed critical_loss_pct")
        if self.healthy_latency_ms > self.critical_latency_ms:
            raise ValueError("healthy_latency_ms must not exceed critical_latency_ms")


DEFAULT_THRESHOLDS = HealthThresholds()

# Cutoffs of the workspace network-map view: degraded from 10% loss or
# 100ms, critical from 50% loss, no latency-based critical state.
NETWORK_MAP_THRESHOLDS = HealthThresholds(
    healthy_loss_pct=10.0,
    healthy_latency_ms=100.0,
    critical_loss_pct=50.0,
    critical_latency_ms=float('inf'),
)

PROFILES = {
    'default': DEFAULT_THRESHOLDS,
    'network_map': NETWORK_MAP_THRESHOLDS,
}


def classify(avg_latency: Optional[float], packet_loss: Optional[float],
             thresholds: HealthThresholds = DEFAULT_THRESHOLDS) -> HealthStatus:
    """Classify an aggregate; UNKNOWN when neither value is known"""
    if avg_latency is None and packet_loss is None:
        return HealthStatus.UNKNOWN

    latency = avg_latency or 0.0
    loss = packet_loss or 0.0

    if loss > thresholds.critical_loss_pct or latency > thresholds.critical_latency_ms:
        return HealthStatus.CRITICAL
    if loss < thresholds.healthy_loss_pct and latency < thresholds.healthy_latency_ms:
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


def thresholds_from_config(config: Optional[Dict]) -> HealthThresholds:
    """Build thresholds from a ``health`` config section (profile name and/or explicit cutoffs)"""
    if not config:
        return DEFAULT_THRESHOLDS

    profile = config.get('profile', 'default')
    base = PROFILES.get(profile)
    if base is None:
        logger.warning(f"Unknown health profile '{profile}', using default thresholds")
        base = DEFAULT_THRESHOLDS

    overrides = {
        key: float(config[key])
        for key in ('healthy_loss_pct', 'healthy_latency_ms', 'critical_loss_pct', 'critical_latency_ms')
        if key in config
    }
    if not overrides:
        return base

    values = {
        'healthy_loss_pct': base.healthy_loss_pct,
        'healthy_latency_ms': base.healthy_latency_ms,
        'critical_loss_pct': base.critical_loss_pct,
        'critical_latency_ms': base.critical_latency_ms,
    }
    values.update(overrides)
    return HealthThresholds(**values)
