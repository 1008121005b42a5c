"""Target group manager and synthesizer.

Target groups are created and updated before listeners and rules so that
actions can reference them. Deletion waits for post-synthesis: a target
group is still referenced by listener actions until those have been
updated or deleted, and ELBv2 rejects the delete with ResourceInUse.
A delete that stays in use past a bounded wait is deferred to a later pass.
"""

from __future__ import annotations

import logging
from typing import Any

from .algorithm import compact
from .attributes import target_group_attributes_reconciler
from .config import (
    TARGET_GROUP_DELETE_POLL_INTERVAL_SECONDS,
    TARGET_GROUP_DELETE_TIMEOUT_SECONDS,
    FeatureGates,
)
from .elbv2 import ELBV2Client
from .errors import (
    RequeueNeededAfter,
    TargetGroupNameConflictError,
    is_not_found,
    is_resource_in_use,
)
from .matcher import match_by_tag
from .models import HealthCheckConfig, Stack, TargetGroup, TargetGroupStatus, attributes_to_map
from .polling import retry_on_error
from .replacement import target_group_requires_replacement
from .synthesizer import run_each
from .tagging import TaggingManager, TargetGroupWithTags
from .tracking import TrackingProvider

logger = logging.getLogger(__name__)

# ProtocolVersion is only accepted for these protocols
PROTOCOL_VERSION_PROTOCOLS = frozenset({"HTTP", "HTTPS"})


class TargetGroupManager:
    """Creates, updates and deletes ELBv2 target groups."""

    def __init__(
        self,
        client: ELBV2Client,
        tracking_provider: TrackingProvider,
        tagging_manager: TaggingManager,
        vpc_id: str,
        external_managed_tags: tuple[str, ...] = (),
        delete_poll_interval: float = TARGET_GROUP_DELETE_POLL_INTERVAL_SECONDS,
        delete_timeout: float = TARGET_GROUP_DELETE_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._tracking_provider = tracking_provider
        self._tagging_manager = tagging_manager
        self._vpc_id = vpc_id
        self._external_managed_tags = external_managed_tags
        self._attributes = target_group_attributes_reconciler(client)
        self._delete_poll_interval = delete_poll_interval
        self._delete_timeout = delete_timeout

    def create(self, stack: Stack, res_tg: TargetGroup) -> TargetGroupStatus:
        spec = res_tg.spec
        tags = self._tracking_provider.resource_tags(stack, res_tg, spec.tags)
        req: dict[str, Any] = {
            "Name": spec.name,
            "TargetType": spec.target_type,
            "Port": spec.port,
            "Protocol": spec.protocol,
            "IpAddressType": spec.ip_address_type,
            "Tags": [{"Key": k, "Value": tags[k]} for k in sorted(tags)],
        }
        if spec.protocol in PROTOCOL_VERSION_PROTOCOLS:
            req["ProtocolVersion"] = spec.protocol_version
        if spec.target_type != "lambda":
            req["VpcId"] = spec.vpc_id or self._vpc_id
        if spec.health_check_config is not None:
            req.update(spec.health_check_config.to_sdk())

        logger.info(
            "creating targetGroup",
            extra={"stack": str(stack.stack_id), "resource_id": res_tg.id},
        )
        resp = self._client.create_target_group(**compact(req))
        arn = resp["TargetGroups"][0]["TargetGroupArn"]
        logger.info(
            "created targetGroup",
            extra={"stack": str(stack.stack_id), "resource_id": res_tg.id, "arn": arn},
        )
        self._attributes.reconcile(arn, attributes_to_map(spec.target_group_attributes))
        return TargetGroupStatus(arn=arn)

    def update(
        self, stack: Stack, res_tg: TargetGroup, live: TargetGroupWithTags
    ) -> TargetGroupStatus:
        desired_tags = self._tracking_provider.resource_tags(stack, res_tg, res_tg.spec.tags)
        ignored = [*self._tracking_provider.legacy_tag_keys(), *self._external_managed_tags]
        self._tagging_manager.reconcile_tags(live.arn, desired_tags, live.tags, ignored)

        hc = res_tg.spec.health_check_config
        if hc is not None and health_check_drifted(hc, live.target_group):
            logger.info("modifying targetGroup healthCheck", extra={"arn": live.arn})
            self._client.modify_target_group(TargetGroupArn=live.arn, **hc.to_sdk())
            logger.info("modified targetGroup healthCheck", extra={"arn": live.arn})

        self._attributes.reconcile(live.arn, attributes_to_map(res_tg.spec.target_group_attributes))
        return TargetGroupStatus(arn=live.arn)

    def delete(self, live: TargetGroupWithTags) -> None:
        """Delete a target group, retrying while it is still in use.

        Raises:
            RequeueNeededAfter: If the target group stays in use.
        """
        retry_on_error(
            lambda: self.delete_once(live),
            is_retryable=is_resource_in_use,
            interval=self._delete_poll_interval,
            timeout=self._delete_timeout,
            reason=f"targetGroup {live.arn} still in use",
            ctx=self._client.ctx,
        )

    def delete_once(self, live: TargetGroupWithTags) -> None:
        """Delete a target group with a single call; ResourceInUse propagates."""
        arn = live.arn
        logger.info("deleting targetGroup", extra={"arn": arn})
        try:
            self._client.delete_target_group(TargetGroupArn=arn)
        except Exception as e:
            if not is_not_found(e):
                raise
            logger.info("targetGroup already deleted", extra={"arn": arn})
        logger.info("deleted targetGroup", extra={"arn": arn})


def health_check_drifted(hc: HealthCheckConfig, live: dict[str, Any]) -> bool:
    """Check whether any explicitly set health check field differs from live."""
    if hc.port is not None and str(hc.port) != str(live.get("HealthCheckPort")):
        return True
    if hc.protocol is not None and hc.protocol != live.get("HealthCheckProtocol"):
        return True
    if hc.path is not None and hc.path != live.get("HealthCheckPath"):
        return True
    if hc.matcher is not None and hc.matcher.differs_from(live.get("Matcher")):
        return True
    checks = (
        (hc.interval_seconds, "HealthCheckIntervalSeconds"),
        (hc.timeout_seconds, "HealthCheckTimeoutSeconds"),
        (hc.healthy_threshold_count, "HealthyThresholdCount"),
        (hc.unhealthy_threshold_count, "UnhealthyThresholdCount"),
    )
    return any(value is not None and value != live.get(key) for value, key in checks)


class TargetGroupSynthesizer:
    """Synthesizes the target groups of one stack."""

    def __init__(
        self,
        tracking_provider: TrackingProvider,
        tagging_manager: TaggingManager,
        tg_manager: TargetGroupManager,
        feature_gates: FeatureGates,
        stack: Stack,
    ) -> None:
        self._tracking_provider = tracking_provider
        self._tagging_manager = tagging_manager
        self._tg_manager = tg_manager
        self._feature_gates = feature_gates
        self._stack = stack
        self._unmatched: list[TargetGroupWithTags] = []

    def synthesize(self) -> None:
        res_tgs = self._stack.list_resources(TargetGroup)
        live_tgs = self._tagging_manager.list_target_groups(
            *self._tracking_provider.stack_filters(self._stack)
        )
        result = match_by_tag(
            res_tgs,
            live_tgs,
            self._tracking_provider.resource_id_tag_key,
            desired_id=lambda r: r.id,
            live_tags=lambda tg: tg.tags,
            live_arn=lambda tg: tg.arn,
            requires_replacement=lambda r, tg: target_group_requires_replacement(
                r.spec, tg.target_group, self._feature_gates
            ),
        )
        # Deleted after listeners and rules stop referencing them
        self._unmatched = result.live_only

        run_each(result.desired_only, self._create, phase="create", kind="targetGroup")
        run_each(
            result.pairs,
            self._update,
            phase="update",
            kind="targetGroup",
            describe=lambda pair: pair[1].arn,
        )

    def post_synthesize(self) -> None:
        run_each(
            self._unmatched,
            self._delete,
            phase="delete",
            kind="targetGroup",
            describe=lambda tg: tg.arn,
        )

    def _delete(self, live: TargetGroupWithTags) -> None:
        try:
            self._tg_manager.delete(live)
        except RequeueNeededAfter as e:
            logger.warning(
                "deferring targetGroup deletion, still in use",
                extra={"arn": live.arn, "stack": str(self._stack.stack_id), "error": str(e)},
            )

    def _create(self, res_tg: TargetGroup) -> None:
        self._release_name(res_tg)
        res_tg.set_status(self._tg_manager.create(self._stack, res_tg))

    def _release_name(self, res_tg: TargetGroup) -> None:
        """Delete an unmatched live group holding the name ``res_tg`` is created with.

        Target group names are unique per region, so a replacement that keeps
        its name can only be created once the old group is gone.

        Raises:
            TargetGroupNameConflictError: If the old group is still in use.
        """
        for live in self._unmatched:
            if live.target_group.get("TargetGroupName") != res_tg.spec.name:
                continue
            logger.info(
                "deleting targetGroup to free its name for the replacement",
                extra={"arn": live.arn, "target_group_name": res_tg.spec.name},
            )
            try:
                self._tg_manager.delete_once(live)
            except Exception as e:
                if not is_resource_in_use(e):
                    raise
                raise TargetGroupNameConflictError(res_tg.spec.name, live.arn) from e
            self._unmatched.remove(live)
            return

    def _update(self, pair: tuple[TargetGroup, TargetGroupWithTags]) -> None:
        res_tg, live = pair
        res_tg.set_status(self._tg_manager.update(self._stack, res_tg, live))
