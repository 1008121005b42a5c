"""Configuration management with validation.

Controller settings are loaded from the environment and validated at
construction time so that a misconfigured controller fails before it issues
a single ELBv2 call.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 30
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_PASS_TIMEOUT_SECONDS = 900

DEFAULT_TAG_PREFIX = "elbv2.k8s.aws"

# ELBv2 DescribeTags accepts at most 20 resource ARNs per call
DEFAULT_DESCRIBE_TAGS_CHUNK_SIZE = 20
MAX_DESCRIBE_TAGS_CHUNK_SIZE = 20
MAX_TAG_FETCH_WORKERS = 4

# Bounded waits (interval, timeout) in seconds
TARGET_GROUP_DELETE_POLL_INTERVAL_SECONDS = 2.0
TARGET_GROUP_DELETE_TIMEOUT_SECONDS = 20.0
LISTENER_CREATE_POLL_INTERVAL_SECONDS = 2.0
LISTENER_CREATE_TIMEOUT_SECONDS = 20.0
TARGET_GROUP_BINDING_POLL_INTERVAL_SECONDS = 0.2
TARGET_GROUP_BINDING_TIMEOUT_SECONDS = 60.0
LOAD_BALANCER_PROVISIONING_POLL_INTERVAL_SECONDS = 5.0
LOAD_BALANCER_PROVISIONING_TIMEOUT_SECONDS = 300.0

# Security constraints - enforced limits to prevent abuse
MAX_STACK_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack file

# Input validation patterns
VALID_CLUSTER_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,99}$"
VALID_VPC_ID_PATTERN = r"^vpc-[0-9a-f]{8,17}$"

# Feature gate names as accepted in FEATURE_GATES
GATE_NLB_HEALTH_CHECK_ADVANCED_CONFIG = "NLBHealthCheckAdvancedConfig"
GATE_LISTENER_RULES_TAGGING = "ListenerRulesTagging"
GATE_LB_CAPACITY_RESERVATION = "LBCapacityReservation"


@dataclass(frozen=True)
class FeatureGates:
    """Feature toggles that change reconciliation behaviour.

    nlb_health_check_advanced_config: When disabled, health check protocol,
        matcher, interval and timeout of TCP/UDP/TLS target groups cannot be
        modified in place and force replacement instead.
    listener_rules_tagging: When disabled, listeners and rules are listed
        without fetching their tags and their tags are never reconciled.
    lb_capacity_reservation: When disabled, capacity reservations are left
        untouched.
    """

    nlb_health_check_advanced_config: bool = True
    listener_rules_tagging: bool = True
    lb_capacity_reservation: bool = True

    @classmethod
    def parse(cls, value: str) -> FeatureGates:
        """Parse a gate string like ``"ListenerRulesTagging=false,LBCapacityReservation=true"``.

        Raises:
            ConfigurationError: If a gate is unknown or malformed.
        """
        names = {
            GATE_NLB_HEALTH_CHECK_ADVANCED_CONFIG: "nlb_health_check_advanced_config",
            GATE_LISTENER_RULES_TAGGING: "listener_rules_tagging",
            GATE_LB_CAPACITY_RESERVATION: "lb_capacity_reservation",
        }
        overrides: dict[str, bool] = {}
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            gate, sep, raw = item.partition("=")
            if not sep or gate.strip() not in names:
                raise ConfigurationError(
                    f"FEATURE_GATES entry must be one of {sorted(names)}=<bool>: {item}"
                )
            flag = raw.strip().lower()
            if flag not in ("true", "false"):
                raise ConfigurationError(f"FEATURE_GATES value must be true or false: {item}")
            overrides[names[gate.strip()]] = flag == "true"
        return cls(**overrides)


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    cluster_name: str
    vpc_id: str

    region: str | None = None
    tag_prefix: str = DEFAULT_TAG_PREFIX

    # Tag keys owned by other tooling; never added or removed
    external_managed_tags: tuple[str, ...] = ()

    stacks_dir: Path = field(default_factory=lambda: Path("/stacks"))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    pass_timeout_seconds: int = DEFAULT_PASS_TIMEOUT_SECONDS

    # Listing
    describe_tags_chunk_size: int = DEFAULT_DESCRIBE_TAGS_CHUNK_SIZE
    parallel_tag_fetch: bool = False

    feature_gates: FeatureGates = field(default_factory=FeatureGates)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.cluster_name:
            errors.append("CLUSTER_NAME is required")
        elif not re.match(VALID_CLUSTER_NAME_PATTERN, self.cluster_name):
            errors.append(
                f"CLUSTER_NAME must match pattern {VALID_CLUSTER_NAME_PATTERN}: {self.cluster_name}"
            )

        if not self.vpc_id:
            errors.append("VPC_ID is required")
        elif not re.match(VALID_VPC_ID_PATTERN, self.vpc_id):
            errors.append(f"VPC_ID must be a valid VPC ID: {self.vpc_id}")

        if not self.tag_prefix:
            errors.append("TAG_PREFIX must not be empty")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.pass_timeout_seconds < 1:
            errors.append("PASS_TIMEOUT must be at least 1 second")

        if not (1 <= self.describe_tags_chunk_size <= MAX_DESCRIBE_TAGS_CHUNK_SIZE):
            errors.append(
                f"DESCRIBE_TAGS_CHUNK_SIZE must be between 1 and {MAX_DESCRIBE_TAGS_CHUNK_SIZE}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword arguments override the matching environment value, so
        command line options can take precedence over the environment.

        Environment Variables:
            CLUSTER_NAME: Name of the cluster owning the load balancers
            VPC_ID: VPC that listed load balancers and target groups must belong to
            AWS_REGION: Region for the ELBv2 client (default: SDK resolution)
            TAG_PREFIX: Prefix of tracking tags (default: elbv2.k8s.aws)
            EXTERNAL_MANAGED_TAGS: Comma separated tag keys managed elsewhere
            STACKS_DIR: Directory holding stack YAML files (default: /stacks)
            RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 300)
            PASS_TIMEOUT: Deadline of one synthesis pass in seconds (default: 900)
            DESCRIBE_TAGS_CHUNK_SIZE: ARNs per DescribeTags call (default: 20)
            PARALLEL_TAG_FETCH: If "true", fetch tag chunks concurrently
            FEATURE_GATES: Comma separated Name=bool pairs
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        external = tuple(
            key.strip()
            for key in os.environ.get("EXTERNAL_MANAGED_TAGS", "").split(",")
            if key.strip()
        )

        values: dict[str, Any] = dict(
            cluster_name=os.environ.get("CLUSTER_NAME", ""),
            vpc_id=os.environ.get("VPC_ID", ""),
            region=os.environ.get("AWS_REGION") or None,
            tag_prefix=os.environ.get("TAG_PREFIX", DEFAULT_TAG_PREFIX),
            external_managed_tags=external,
            stacks_dir=Path(os.environ.get("STACKS_DIR", "/stacks")),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            pass_timeout_seconds=get_int("PASS_TIMEOUT", DEFAULT_PASS_TIMEOUT_SECONDS),
            describe_tags_chunk_size=get_int(
                "DESCRIBE_TAGS_CHUNK_SIZE", DEFAULT_DESCRIBE_TAGS_CHUNK_SIZE
            ),
            parallel_tag_fetch=get_bool("PARALLEL_TAG_FETCH", False),
            feature_gates=FeatureGates.parse(os.environ.get("FEATURE_GATES", "")),
        )
        values.update(overrides)
        return cls(**values)
