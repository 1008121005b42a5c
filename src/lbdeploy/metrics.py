"""Managed load balancer gauge.

The gauge is 1 while a load balancer created for a stack is believed to
exist and 0 once it has been deleted. It is constructed once at startup and
injected into the load balancer manager.
"""

from __future__ import annotations

import logging

from prometheus_client import REGISTRY, CollectorRegistry, Gauge

logger = logging.getLogger(__name__)

MANAGED_LOAD_BALANCERS_METRIC = "managed_aws_load_balancers"

LABEL_K8S_RESOURCE_NAME = "k8s_resource_name"
LABEL_K8S_RESOURCE_NAMESPACE = "k8s_resource_namespace"
LABEL_AWS_LOAD_BALANCER_NAME = "aws_load_balancer_name"
LABEL_AWS_LOAD_BALANCER_TYPE = "aws_load_balancer_type"


class ManagedResourceMetrics:
    """Thread-safe gauge of managed load balancers keyed by identity."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._gauge: Gauge | None = None
        try:
            self._gauge = Gauge(
                MANAGED_LOAD_BALANCERS_METRIC,
                "Load balancers managed by the controller (1 exists, 0 deleted)",
                [
                    LABEL_K8S_RESOURCE_NAME,
                    LABEL_K8S_RESOURCE_NAMESPACE,
                    LABEL_AWS_LOAD_BALANCER_NAME,
                    LABEL_AWS_LOAD_BALANCER_TYPE,
                ],
                registry=registry if registry is not None else REGISTRY,
            )
        except ValueError as e:
            # Duplicated timeseries in the registry
            logger.error("failed to register metrics", extra={"error": str(e)})

    @property
    def registered(self) -> bool:
        return self._gauge is not None

    def set_managed_load_balancer(
        self,
        namespace: str,
        name: str,
        lb_name: str,
        lb_type: str,
        value: float,
    ) -> None:
        if self._gauge is None:
            return
        self._gauge.labels(
            **{
                LABEL_K8S_RESOURCE_NAME: name,
                LABEL_K8S_RESOURCE_NAMESPACE: namespace,
                LABEL_AWS_LOAD_BALANCER_NAME: lb_name,
                LABEL_AWS_LOAD_BALANCER_TYPE: lb_type,
            }
        ).set(value)
