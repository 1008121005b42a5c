"""Tagging and listing gateway for ELBv2 resources.

Listing a resource kind is a three step operation:
1. Drain the describe call for the kind (no tag filtering is possible there)
2. Keep only resources in the controller's VPC
3. Fetch tags for exactly those ARNs with DescribeTags, chunked at the
   API's per-call ARN limit, and keep resources whose tags satisfy any of
   the supplied filters

Chunks may be fetched concurrently. Each worker returns its own mapping and
mappings are merged after all workers finish, so no map is written from two
threads.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from .algorithm import chunk, diff_string_map
from .config import DEFAULT_DESCRIBE_TAGS_CHUNK_SIZE, MAX_TAG_FETCH_WORKERS, FeatureGates
from .elbv2 import ELBV2Client
from .tracking import TagFilter, matches_any

logger = logging.getLogger(__name__)


@dataclass
class LoadBalancerWithTags:
    load_balancer: dict[str, Any]
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def arn(self) -> str:
        return self.load_balancer["LoadBalancerArn"]


@dataclass
class TargetGroupWithTags:
    target_group: dict[str, Any]
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def arn(self) -> str:
        return self.target_group["TargetGroupArn"]


@dataclass
class ListenerWithTags:
    listener: dict[str, Any]
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def arn(self) -> str:
        return self.listener["ListenerArn"]


@dataclass
class ListenerRuleWithTags:
    rule: dict[str, Any]
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def arn(self) -> str:
        return self.rule["RuleArn"]


class TaggingManager:
    """Lists ELBv2 resources with their tags and reconciles tags."""

    def __init__(
        self,
        client: ELBV2Client,
        vpc_id: str,
        feature_gates: FeatureGates | None = None,
        describe_tags_chunk_size: int = DEFAULT_DESCRIBE_TAGS_CHUNK_SIZE,
        parallel: bool = False,
    ) -> None:
        self._client = client
        self._vpc_id = vpc_id
        self._feature_gates = feature_gates or FeatureGates()
        self._chunk_size = describe_tags_chunk_size
        self._parallel = parallel

    def reconcile_tags(
        self,
        arn: str,
        desired_tags: Mapping[str, str],
        current_tags: Mapping[str, str] | None = None,
        ignored_tag_keys: Iterable[str] = (),
    ) -> None:
        """Make a resource's tags equal to ``desired_tags``.

        Args:
            arn: Resource ARN.
            desired_tags: Tags the resource should carry.
            current_tags: Tags the resource carries now; fetched when None.
            ignored_tag_keys: Keys that are never added, updated or removed.
        """
        if current_tags is None:
            current_tags = self.describe_resource_tags([arn]).get(arn, {})

        to_update, to_remove = diff_string_map(desired_tags, current_tags, ignored_tag_keys)

        if to_update:
            tags = [{"Key": key, "Value": to_update[key]} for key in sorted(to_update)]
            logger.info("adding resource tags", extra={"arn": arn, "change": to_update})
            self._client.add_tags(ResourceArns=[arn], Tags=tags)
            logger.info("added resource tags", extra={"arn": arn})

        if to_remove:
            keys = sorted(to_remove)
            logger.info("removing resource tags", extra={"arn": arn, "change": keys})
            self._client.remove_tags(ResourceArns=[arn], TagKeys=keys)
            logger.info("removed resource tags", extra={"arn": arn})

    def list_load_balancers(self, *tag_filters: TagFilter) -> list[LoadBalancerWithTags]:
        """List load balancers in the VPC whose tags match any filter."""
        lbs = [
            lb
            for lb in self._client.describe_load_balancers_as_list()
            if lb.get("VpcId") == self._vpc_id
        ]
        tags_by_arn = self.describe_resource_tags([lb["LoadBalancerArn"] for lb in lbs])
        return [
            LoadBalancerWithTags(lb, tags_by_arn.get(lb["LoadBalancerArn"], {}))
            for lb in lbs
            if matches_any(tags_by_arn.get(lb["LoadBalancerArn"], {}), tag_filters)
        ]

    def list_target_groups(self, *tag_filters: TagFilter) -> list[TargetGroupWithTags]:
        """List target groups in the VPC whose tags match any filter."""
        tgs = [
            tg
            for tg in self._client.describe_target_groups_as_list()
            if tg.get("VpcId") == self._vpc_id
        ]
        tags_by_arn = self.describe_resource_tags([tg["TargetGroupArn"] for tg in tgs])
        return [
            TargetGroupWithTags(tg, tags_by_arn.get(tg["TargetGroupArn"], {}))
            for tg in tgs
            if matches_any(tags_by_arn.get(tg["TargetGroupArn"], {}), tag_filters)
        ]

    def list_listeners(self, load_balancer_arn: str) -> list[ListenerWithTags]:
        """List all listeners of a load balancer."""
        listeners = self._client.describe_listeners_as_list(LoadBalancerArn=load_balancer_arn)
        tags_by_arn: dict[str, dict[str, str]] = {}
        if self._feature_gates.listener_rules_tagging:
            tags_by_arn = self.describe_resource_tags([ls["ListenerArn"] for ls in listeners])
        return [ListenerWithTags(ls, tags_by_arn.get(ls["ListenerArn"], {})) for ls in listeners]

    def list_listener_rules(self, listener_arn: str) -> list[ListenerRuleWithTags]:
        """List all rules of a listener, including the default rule."""
        rules = self._client.describe_rules_as_list(ListenerArn=listener_arn)
        tags_by_arn: dict[str, dict[str, str]] = {}
        if self._feature_gates.listener_rules_tagging:
            tags_by_arn = self.describe_resource_tags([r["RuleArn"] for r in rules])
        return [ListenerRuleWithTags(r, tags_by_arn.get(r["RuleArn"], {})) for r in rules]

    def describe_resource_tags(self, arns: Sequence[str]) -> dict[str, dict[str, str]]:
        """Fetch tags for many resources, chunked at the DescribeTags limit.

        Returns:
            Mapping of ARN to tag dict. Resources without tags map to ``{}``.
        """
        chunks = chunk(list(arns), self._chunk_size)
        if not chunks:
            return {}

        if self._parallel and len(chunks) > 1:
            workers = min(MAX_TAG_FETCH_WORKERS, len(chunks))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                partials = list(executor.map(self._describe_tags_chunk, chunks))
        else:
            partials = [self._describe_tags_chunk(c) for c in chunks]

        tags_by_arn: dict[str, dict[str, str]] = {}
        for partial in partials:
            tags_by_arn.update(partial)
        return tags_by_arn

    def _describe_tags_chunk(self, arns: list[str]) -> dict[str, dict[str, str]]:
        resp = self._client.describe_tags(ResourceArns=arns)
        result: dict[str, dict[str, str]] = {}
        for desc in resp.get("TagDescriptions", []):
            tags = desc.get("Tags", [])
            result[desc["ResourceArn"]] = {t["Key"]: t.get("Value", "") for t in tags}
        return result
