"""Load balancer manager and synthesizer.

The synthesizer deletes load balancers that no longer belong to the stack
first, so a replacement sharing a name can be created afterwards. Updates
reconcile, in order: tags, security groups, subnets, IP address type,
attributes and the capacity reservation.
"""

from __future__ import annotations

import logging
from typing import Any

from .algorithm import compact, same_string_set
from .attributes import CapacityReservationReconciler, load_balancer_attributes_reconciler
from .config import (
    LOAD_BALANCER_PROVISIONING_POLL_INTERVAL_SECONDS,
    LOAD_BALANCER_PROVISIONING_TIMEOUT_SECONDS,
    FeatureGates,
)
from .elbv2 import ELBV2Client
from .errors import is_deletion_protection_error, is_not_found
from .matcher import match_by_tag
from .metrics import ManagedResourceMetrics
from .models import LoadBalancer, LoadBalancerStatus, Stack, attributes_to_map
from .polling import poll_until
from .replacement import load_balancer_requires_replacement
from .synthesizer import run_each
from .tagging import LoadBalancerWithTags, TaggingManager
from .tracking import TrackingProvider

logger = logging.getLogger(__name__)

ATTRIBUTE_DELETION_PROTECTION = "deletion_protection.enabled"

LB_STATE_ACTIVE = "active"


class LoadBalancerManager:
    """Creates, updates and deletes ELBv2 load balancers."""

    def __init__(
        self,
        client: ELBV2Client,
        tracking_provider: TrackingProvider,
        tagging_manager: TaggingManager,
        metrics: ManagedResourceMetrics,
        feature_gates: FeatureGates,
        external_managed_tags: tuple[str, ...] = (),
        provisioning_poll_interval: float = LOAD_BALANCER_PROVISIONING_POLL_INTERVAL_SECONDS,
        provisioning_timeout: float = LOAD_BALANCER_PROVISIONING_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._tracking_provider = tracking_provider
        self._tagging_manager = tagging_manager
        self._metrics = metrics
        self._external_managed_tags = external_managed_tags
        self._attributes = load_balancer_attributes_reconciler(client)
        self._capacity = CapacityReservationReconciler(client, feature_gates)
        self._provisioning_poll_interval = provisioning_poll_interval
        self._provisioning_timeout = provisioning_timeout

    def create(self, stack: Stack, res_lb: LoadBalancer) -> LoadBalancerStatus:
        spec = res_lb.spec
        tags = self._tracking_provider.resource_tags(stack, res_lb, spec.tags)
        req = compact(
            {
                "Name": spec.name,
                "Type": spec.type,
                "Scheme": spec.scheme,
                "IpAddressType": spec.ip_address_type,
                "SubnetMappings": [m.to_sdk() for m in spec.subnet_mappings],
                "SecurityGroups": list(spec.security_groups),
                "CustomerOwnedIpv4Pool": spec.customer_owned_ipv4_pool,
                "Tags": [{"Key": k, "Value": tags[k]} for k in sorted(tags)],
            }
        )
        logger.info(
            "creating loadBalancer",
            extra={"stack": str(stack.stack_id), "resource_id": res_lb.id},
        )
        resp = self._client.create_load_balancer(**req)
        sdk_lb = resp["LoadBalancers"][0]
        arn = sdk_lb["LoadBalancerArn"]
        logger.info(
            "created loadBalancer",
            extra={"stack": str(stack.stack_id), "resource_id": res_lb.id, "arn": arn},
        )
        self._set_gauge(stack.stack_id.namespace, stack.stack_id.name, spec.name, spec.type, 1)

        self._attributes.reconcile(arn, attributes_to_map(spec.load_balancer_attributes))
        capacity = spec.minimum_load_balancer_capacity
        if capacity is not None and capacity.capacity_units:
            self._wait_until_active(arn)
            self._capacity.reconcile(arn, capacity)
        return LoadBalancerStatus(arn=arn, dns_name=sdk_lb.get("DNSName", ""))

    def update(
        self, stack: Stack, res_lb: LoadBalancer, live: LoadBalancerWithTags
    ) -> LoadBalancerStatus:
        spec = res_lb.spec
        arn = live.arn
        self._update_tags(stack, res_lb, live)
        self._update_security_groups(res_lb, live)
        self._update_subnets(res_lb, live)
        self._update_ip_address_type(res_lb, live)
        self._attributes.reconcile(arn, attributes_to_map(spec.load_balancer_attributes))
        self._capacity.reconcile(arn, spec.minimum_load_balancer_capacity)
        self._set_gauge(stack.stack_id.namespace, stack.stack_id.name, spec.name, spec.type, 1)
        return LoadBalancerStatus(arn=arn, dns_name=live.load_balancer.get("DNSName", ""))

    def delete(self, live: LoadBalancerWithTags) -> None:
        arn = live.arn
        logger.info("deleting loadBalancer", extra={"arn": arn})
        try:
            self._client.delete_load_balancer(LoadBalancerArn=arn)
        except Exception as e:
            if is_not_found(e):
                logger.info("loadBalancer already deleted", extra={"arn": arn})
            elif is_deletion_protection_error(e):
                self._disable_deletion_protection(arn)
                self._client.delete_load_balancer(LoadBalancerArn=arn)
            else:
                raise
        logger.info("deleted loadBalancer", extra={"arn": arn})

        owner = self._tracking_provider.stack_owner(live.tags)
        if owner is not None:
            namespace, name = owner
            self._set_gauge(
                namespace,
                name,
                live.load_balancer.get("LoadBalancerName", ""),
                live.load_balancer.get("Type", ""),
                0,
            )

    def _disable_deletion_protection(self, arn: str) -> None:
        logger.info("disabling deletion protection", extra={"arn": arn})
        self._client.modify_load_balancer_attributes(
            LoadBalancerArn=arn,
            Attributes=[{"Key": ATTRIBUTE_DELETION_PROTECTION, "Value": "false"}],
        )

    def _update_tags(self, stack: Stack, res_lb: LoadBalancer, live: LoadBalancerWithTags) -> None:
        desired = self._tracking_provider.resource_tags(stack, res_lb, res_lb.spec.tags)
        ignored = [*self._tracking_provider.legacy_tag_keys(), *self._external_managed_tags]
        self._tagging_manager.reconcile_tags(live.arn, desired, live.tags, ignored)

    def _update_security_groups(self, res_lb: LoadBalancer, live: LoadBalancerWithTags) -> None:
        desired = res_lb.spec.security_groups
        if not desired or same_string_set(desired, live.load_balancer.get("SecurityGroups")):
            return
        logger.info(
            "modifying loadBalancer securityGroups",
            extra={"arn": live.arn, "security_groups": desired},
        )
        self._client.set_security_groups(LoadBalancerArn=live.arn, SecurityGroups=list(desired))
        logger.info("modified loadBalancer securityGroups", extra={"arn": live.arn})

    def _update_subnets(self, res_lb: LoadBalancer, live: LoadBalancerWithTags) -> None:
        mappings = res_lb.spec.subnet_mappings
        if not mappings:
            return
        desired = [m.subnet_id for m in mappings]
        current = [az.get("SubnetId") for az in live.load_balancer.get("AvailabilityZones", [])]
        if same_string_set(desired, current):
            return
        logger.info("modifying loadBalancer subnets", extra={"arn": live.arn, "subnets": desired})
        self._client.set_subnets(
            LoadBalancerArn=live.arn, SubnetMappings=[m.to_sdk() for m in mappings]
        )
        logger.info("modified loadBalancer subnets", extra={"arn": live.arn})

    def _update_ip_address_type(self, res_lb: LoadBalancer, live: LoadBalancerWithTags) -> None:
        desired = res_lb.spec.ip_address_type
        if desired is None or desired == live.load_balancer.get("IpAddressType"):
            return
        logger.info(
            "modifying loadBalancer ipAddressType",
            extra={"arn": live.arn, "ip_address_type": desired},
        )
        self._client.set_ip_address_type(LoadBalancerArn=live.arn, IpAddressType=desired)
        logger.info("modified loadBalancer ipAddressType", extra={"arn": live.arn})

    def _wait_until_active(self, arn: str) -> None:
        def is_active() -> bool:
            resp: dict[str, Any] = self._client.describe_load_balancers(LoadBalancerArns=[arn])
            lbs = resp.get("LoadBalancers", [])
            return bool(lbs) and lbs[0].get("State", {}).get("Code") == LB_STATE_ACTIVE

        poll_until(
            is_active,
            interval=self._provisioning_poll_interval,
            timeout=self._provisioning_timeout,
            reason=f"loadBalancer {arn} to become active",
            ctx=self._client.ctx,
        )

    def _set_gauge(
        self, namespace: str, name: str, lb_name: str, lb_type: str, value: float
    ) -> None:
        self._metrics.set_managed_load_balancer(namespace, name, lb_name, lb_type, value)


class LoadBalancerSynthesizer:
    """Synthesizes the load balancers of one stack."""

    def __init__(
        self,
        tracking_provider: TrackingProvider,
        tagging_manager: TaggingManager,
        lb_manager: LoadBalancerManager,
        stack: Stack,
    ) -> None:
        self._tracking_provider = tracking_provider
        self._tagging_manager = tagging_manager
        self._lb_manager = lb_manager
        self._stack = stack

    def synthesize(self) -> None:
        res_lbs = self._stack.list_resources(LoadBalancer)
        live_lbs = self._tagging_manager.list_load_balancers(
            *self._tracking_provider.stack_filters(self._stack)
        )
        result = match_by_tag(
            res_lbs,
            live_lbs,
            self._tracking_provider.resource_id_tag_key,
            desired_id=lambda r: r.id,
            live_tags=lambda lb: lb.tags,
            live_arn=lambda lb: lb.arn,
            requires_replacement=lambda r, lb: load_balancer_requires_replacement(
                r.spec, lb.load_balancer
            ),
        )

        run_each(
            result.live_only,
            self._lb_manager.delete,
            phase="delete",
            kind="loadBalancer",
            describe=lambda lb: lb.arn,
        )
        run_each(result.desired_only, self._create, phase="create", kind="loadBalancer")
        run_each(
            result.pairs,
            self._update,
            phase="update",
            kind="loadBalancer",
            describe=lambda pair: pair[1].arn,
        )

    def post_synthesize(self) -> None:
        pass

    def _create(self, res_lb: LoadBalancer) -> None:
        res_lb.set_status(self._lb_manager.create(self._stack, res_lb))

    def _update(self, pair: tuple[LoadBalancer, LoadBalancerWithTags]) -> None:
        res_lb, live = pair
        res_lb.set_status(self._lb_manager.update(self._stack, res_lb, live))
