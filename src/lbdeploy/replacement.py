"""Replacement policy: can drift be fixed in place or must the resource be recreated?

Each predicate compares a desired spec with a live ELBv2 description and
returns True when an immutable field differs. Names never participate;
a rename is always an in-place update. Predicates perform no I/O.
"""

from __future__ import annotations

from typing import Any

from .config import FeatureGates
from .models import HealthCheckConfig, LoadBalancerSpec, TargetGroupSpec

# Protocols whose health check settings were immutable before advanced
# health check configuration became available
CONNECTION_ORIENTED_PROTOCOLS = frozenset({"TCP", "UDP", "TCP_UDP", "TLS"})


def load_balancer_requires_replacement(spec: LoadBalancerSpec, live: dict[str, Any]) -> bool:
    if spec.type != live.get("Type"):
        return True
    if spec.scheme is not None and spec.scheme != live.get("Scheme"):
        return True
    return False


def target_group_requires_replacement(
    spec: TargetGroupSpec,
    live: dict[str, Any],
    feature_gates: FeatureGates,
) -> bool:
    if spec.target_type != live.get("TargetType"):
        return True
    if spec.protocol != live.get("Protocol"):
        return True
    if spec.protocol_version is not None and spec.protocol_version != live.get("ProtocolVersion"):
        return True
    return _immutable_health_check_changed(spec, live, feature_gates)


def _immutable_health_check_changed(
    spec: TargetGroupSpec,
    live: dict[str, Any],
    feature_gates: FeatureGates,
) -> bool:
    if feature_gates.nlb_health_check_advanced_config:
        return False
    if spec.protocol not in CONNECTION_ORIENTED_PROTOCOLS:
        return False
    hc: HealthCheckConfig | None = spec.health_check_config
    if hc is None:
        return False

    if hc.protocol is not None and hc.protocol != live.get("HealthCheckProtocol"):
        return True
    if hc.matcher is not None and hc.matcher.differs_from(live.get("Matcher")):
        return True
    if (
        hc.interval_seconds is not None
        and hc.interval_seconds != live.get("HealthCheckIntervalSeconds")
    ):
        return True
    return hc.timeout_seconds is not None and hc.timeout_seconds != live.get(
        "HealthCheckTimeoutSeconds"
    )
