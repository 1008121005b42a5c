"""Attribute reconcilers.

FLAT ATTRIBUTES: load balancer, target group and listener attributes are
string maps. ELBv2 cannot remove an attribute, only set it, so only keys
present in the desired map whose value differs are sent, in a single
modify call. No call is made when nothing differs.

CAPACITY RESERVATION: a structured setting with three desired states:
- None or zero capacity units: no reservation (reset if one exists)
- N capacity units: modify when the current value differs
The gate ``lb_capacity_reservation`` turns this reconciler off entirely.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from .algorithm import diff_string_map
from .config import FeatureGates
from .elbv2 import ELBV2Client
from .models import MinimumLoadBalancerCapacity

logger = logging.getLogger(__name__)


class AttributesReconciler:
    """Reconciles a flat attribute map through describe/modify callables.

    Args:
        describe: Returns the ELBv2 attribute list for an ARN.
        modify: Applies an ELBv2 attribute list to an ARN.
        kind: Resource kind, used in log messages.
    """

    def __init__(
        self,
        describe: Callable[[str], list[dict[str, str]]],
        modify: Callable[[str, list[dict[str, str]]], None],
        kind: str,
    ) -> None:
        self._describe = describe
        self._modify = modify
        self._kind = kind

    def reconcile(self, arn: str, desired: Mapping[str, str]) -> None:
        if not desired:
            return
        current = {a["Key"]: a.get("Value", "") for a in self._describe(arn)}
        to_update, _ = diff_string_map(desired, current)
        if not to_update:
            return
        attributes = [{"Key": key, "Value": to_update[key]} for key in sorted(to_update)]
        logger.info(
            f"modifying {self._kind} attributes",
            extra={"arn": arn, "change": to_update},
        )
        self._modify(arn, attributes)
        logger.info(f"modified {self._kind} attributes", extra={"arn": arn})


def load_balancer_attributes_reconciler(client: ELBV2Client) -> AttributesReconciler:
    def describe(arn: str) -> list[dict[str, str]]:
        return client.describe_load_balancer_attributes(LoadBalancerArn=arn)["Attributes"]

    def modify(arn: str, attributes: list[dict[str, str]]) -> None:
        client.modify_load_balancer_attributes(LoadBalancerArn=arn, Attributes=attributes)

    return AttributesReconciler(describe, modify, "loadBalancer")


def target_group_attributes_reconciler(client: ELBV2Client) -> AttributesReconciler:
    def describe(arn: str) -> list[dict[str, str]]:
        return client.describe_target_group_attributes(TargetGroupArn=arn)["Attributes"]

    def modify(arn: str, attributes: list[dict[str, str]]) -> None:
        client.modify_target_group_attributes(TargetGroupArn=arn, Attributes=attributes)

    return AttributesReconciler(describe, modify, "targetGroup")


def listener_attributes_reconciler(client: ELBV2Client) -> AttributesReconciler:
    def describe(arn: str) -> list[dict[str, str]]:
        return client.describe_listener_attributes(ListenerArn=arn)["Attributes"]

    def modify(arn: str, attributes: list[dict[str, str]]) -> None:
        client.modify_listener_attributes(ListenerArn=arn, Attributes=attributes)

    return AttributesReconciler(describe, modify, "listener")


class CapacityReservationReconciler:
    """Reconciles the minimum capacity reservation of a load balancer."""

    def __init__(self, client: ELBV2Client, feature_gates: FeatureGates) -> None:
        self._client = client
        self._feature_gates = feature_gates

    def reconcile(self, arn: str, desired: MinimumLoadBalancerCapacity | None) -> None:
        if not self._feature_gates.lb_capacity_reservation:
            return

        desired_units = _normalize(desired)
        current_units = self._current_capacity_units(arn)
        if desired_units == current_units:
            return

        if desired_units is None:
            logger.info("resetting capacity reservation", extra={"arn": arn})
            self._client.modify_capacity_reservation(
                LoadBalancerArn=arn, ResetCapacityReservation=True
            )
            logger.info("reset capacity reservation", extra={"arn": arn})
            return

        logger.info(
            "modifying capacity reservation",
            extra={"arn": arn, "capacity_units": desired_units},
        )
        self._client.modify_capacity_reservation(
            LoadBalancerArn=arn,
            MinimumLoadBalancerCapacity={"CapacityUnits": desired_units},
        )
        logger.info("modified capacity reservation", extra={"arn": arn})

    def _current_capacity_units(self, arn: str) -> int | None:
        resp: dict[str, Any] = self._client.describe_capacity_reservation(LoadBalancerArn=arn)
        capacity = resp.get("MinimumLoadBalancerCapacity") or {}
        return _normalize_units(capacity.get("CapacityUnits"))


def _normalize(desired: MinimumLoadBalancerCapacity | None) -> int | None:
    if desired is None:
        return None
    return _normalize_units(desired.capacity_units)


def _normalize_units(units: int | None) -> int | None:
    if not units:
        return None
    return units
