"""Listener rule manager and synthesizer.

Rules of one listener are matched in two rounds to avoid serving errors
while converging:

1. BY SETTINGS: a live rule whose actions, conditions and transforms equal a
   desired rule is kept. If only its priority differs it is moved with
   SetRulePriorities instead of being recreated.
2. BY PRIORITY: remaining desired and live rules sharing a priority are
   modified in place.

Whatever is left is created and deleted. Creation goes first so that traffic
keeps matching a rule at all times; when the listener's rule limit is hit
(TooManyRules) the synthesizer alternates deletions and creations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .algorithm import compact
from .config import FeatureGates
from .elbv2 import ELBV2Client
from .equality import actions_equal, conditions_equal, transforms_equal
from .errors import is_not_found, is_too_many_rules
from .models import Listener, ListenerRule, ListenerRuleStatus, Stack, actions_to_sdk
from .synthesizer import run_each, run_phases
from .tagging import ListenerRuleWithTags, TaggingManager
from .tracking import TrackingProvider

logger = logging.getLogger(__name__)

MAX_RULE_PRIORITY = 50000


@dataclass
class DesiredRuleConfig:
    """Resolved SDK payloads of a desired rule."""

    actions: list[dict[str, Any]]
    conditions: list[dict[str, Any]]
    transforms: list[dict[str, Any]]

    @classmethod
    def build(cls, res_lr: ListenerRule) -> DesiredRuleConfig:
        return cls(
            actions=actions_to_sdk(res_lr.spec.actions),
            conditions=[c.to_sdk() for c in res_lr.spec.conditions],
            transforms=[dict(t) for t in res_lr.spec.transforms],
        )

    def matches(self, live: dict[str, Any]) -> bool:
        return (
            actions_equal(self.actions, live.get("Actions"))
            and conditions_equal(self.conditions, live.get("Conditions"))
            and transforms_equal(self.transforms, live.get("Transforms"))
        )


@dataclass
class RuleMatch:
    """Outcome of matching the rules of one listener."""

    unchanged: list[tuple[ListenerRule, ListenerRuleWithTags]] = field(default_factory=list)
    reprioritize: list[tuple[ListenerRule, ListenerRuleWithTags]] = field(default_factory=list)
    modify: list[tuple[ListenerRule, ListenerRuleWithTags]] = field(default_factory=list)
    create: list[ListenerRule] = field(default_factory=list)
    delete: list[ListenerRuleWithTags] = field(default_factory=list)


def live_priority(live: ListenerRuleWithTags) -> int:
    return int(live.rule["Priority"])


def match_listener_rules(
    res_lrs: list[ListenerRule],
    live_lrs: list[ListenerRuleWithTags],
    configs: dict[str, DesiredRuleConfig],
) -> RuleMatch:
    """Match desired and live non-default rules of one listener."""
    match = RuleMatch()
    unmatched_live = list(live_lrs)
    unmatched_res: list[ListenerRule] = []

    for res_lr in res_lrs:
        config = configs[res_lr.id]
        for live in unmatched_live:
            if config.matches(live.rule):
                unmatched_live.remove(live)
                if res_lr.spec.priority == live_priority(live):
                    match.unchanged.append((res_lr, live))
                else:
                    match.reprioritize.append((res_lr, live))
                break
        else:
            unmatched_res.append(res_lr)

    res_by_priority = {r.spec.priority: r for r in unmatched_res}
    live_by_priority = {live_priority(live): live for live in unmatched_live}
    for priority in sorted(res_by_priority.keys() & live_by_priority.keys()):
        match.modify.append((res_by_priority[priority], live_by_priority[priority]))
    for priority in sorted(res_by_priority.keys() - live_by_priority.keys()):
        match.create.append(res_by_priority[priority])
    for priority in sorted(live_by_priority.keys() - res_by_priority.keys()):
        match.delete.append(live_by_priority[priority])
    return match


class ListenerRuleManager:
    """Creates, updates and deletes ELBv2 listener rules."""

    def __init__(
        self,
        client: ELBV2Client,
        tracking_provider: TrackingProvider,
        tagging_manager: TaggingManager,
        feature_gates: FeatureGates,
        external_managed_tags: tuple[str, ...] = (),
    ) -> None:
        self._client = client
        self._tracking_provider = tracking_provider
        self._tagging_manager = tagging_manager
        self._feature_gates = feature_gates
        self._external_managed_tags = external_managed_tags

    def create(
        self, stack: Stack, res_lr: ListenerRule, config: DesiredRuleConfig
    ) -> ListenerRuleStatus:
        req: dict[str, Any] = {
            "ListenerArn": res_lr.spec.listener_arn.resolve(),
            "Priority": res_lr.spec.priority,
            "Actions": config.actions,
            "Conditions": config.conditions,
            "Transforms": config.transforms,
        }
        if self._feature_gates.listener_rules_tagging:
            tags = self._tracking_provider.resource_tags(stack, res_lr, res_lr.spec.tags)
            req["Tags"] = [{"Key": k, "Value": tags[k]} for k in sorted(tags)]

        logger.info(
            "creating listener rule",
            extra={"stack": str(stack.stack_id), "resource_id": res_lr.id},
        )
        resp = self._client.create_rule(**compact(req))
        arn = resp["Rules"][0]["RuleArn"]
        logger.info(
            "created listener rule",
            extra={"stack": str(stack.stack_id), "resource_id": res_lr.id, "arn": arn},
        )
        return ListenerRuleStatus(arn=arn)

    def modify(
        self,
        stack: Stack,
        res_lr: ListenerRule,
        live: ListenerRuleWithTags,
        config: DesiredRuleConfig,
    ) -> ListenerRuleStatus:
        """Replace the settings of a live rule in place and reconcile its tags."""
        self.update_tags(stack, res_lr, live)
        if not config.matches(live.rule):
            logger.info("modifying listener rule", extra={"arn": live.arn})
            self._client.modify_rule(
                **compact(
                    {
                        "RuleArn": live.arn,
                        "Actions": config.actions,
                        "Conditions": config.conditions,
                        "Transforms": config.transforms,
                    }
                )
            )
            logger.info("modified listener rule", extra={"arn": live.arn})
        return ListenerRuleStatus(arn=live.arn)

    def update_tags(self, stack: Stack, res_lr: ListenerRule, live: ListenerRuleWithTags) -> None:
        if not self._feature_gates.listener_rules_tagging:
            return
        desired = self._tracking_provider.resource_tags(stack, res_lr, res_lr.spec.tags)
        ignored = [*self._tracking_provider.legacy_tag_keys(), *self._external_managed_tags]
        self._tagging_manager.reconcile_tags(live.arn, desired, live.tags, ignored)

    def delete(self, live: ListenerRuleWithTags) -> None:
        logger.info("deleting listener rule", extra={"arn": live.arn})
        try:
            self._client.delete_rule(RuleArn=live.arn)
        except Exception as e:
            if not is_not_found(e):
                raise
            logger.info("listener rule already deleted", extra={"arn": live.arn})
        logger.info("deleted listener rule", extra={"arn": live.arn})

    def set_rule_priorities(
        self,
        moves: list[tuple[ListenerRule, ListenerRuleWithTags]],
        occupants: list[ListenerRuleWithTags],
    ) -> None:
        """Move rules to their desired priorities in a single call.

        Live rules that are about to be deleted but occupy one of the target
        priorities are pushed to the lowest free priorities first.
        """
        targets = {res_lr.spec.priority for res_lr, _ in moves}
        moving = {live.arn for _, live in moves}
        used = {live_priority(live) for live in occupants} | targets
        pairs = [{"RuleArn": live.arn, "Priority": res_lr.spec.priority} for res_lr, live in moves]

        next_free = MAX_RULE_PRIORITY
        for live in occupants:
            if live.arn in moving or live_priority(live) not in targets:
                continue
            while next_free in used:
                next_free -= 1
            pairs.append({"RuleArn": live.arn, "Priority": next_free})
            used.add(next_free)

        logger.info("setting listener rule priorities", extra={"rule_priorities": pairs})
        self._client.set_rule_priorities(RulePriorities=pairs)
        logger.info("set listener rule priorities", extra={"count": len(pairs)})


class ListenerRuleSynthesizer:
    """Synthesizes the rules of every listener of one stack."""

    def __init__(
        self,
        tagging_manager: TaggingManager,
        lr_manager: ListenerRuleManager,
        stack: Stack,
    ) -> None:
        self._tagging_manager = tagging_manager
        self._lr_manager = lr_manager
        self._stack = stack

    def synthesize(self) -> None:
        res_lrs_by_listener: dict[str, list[ListenerRule]] = {}
        for res_lr in self._stack.list_resources(ListenerRule):
            ls_arn = res_lr.spec.listener_arn.resolve()
            res_lrs_by_listener.setdefault(ls_arn, []).append(res_lr)

        listener_arns = [
            res_ls.listener_arn().resolve() for res_ls in self._stack.list_resources(Listener)
        ]
        for ls_arn in res_lrs_by_listener:
            if ls_arn not in listener_arns:
                listener_arns.append(ls_arn)

        run_each(
            listener_arns,
            lambda arn: self._synthesize_on_listener(arn, res_lrs_by_listener.get(arn, [])),
            phase="synthesize",
            kind="listener rules",
        )

    def post_synthesize(self) -> None:
        pass

    def _synthesize_on_listener(self, ls_arn: str, res_lrs: list[ListenerRule]) -> None:
        live_lrs = [
            lr
            for lr in self._tagging_manager.list_listener_rules(ls_arn)
            if not lr.rule.get("IsDefault")
        ]
        configs = {res_lr.id: DesiredRuleConfig.build(res_lr) for res_lr in res_lrs}
        match = match_listener_rules(res_lrs, live_lrs, configs)

        if match.reprioritize:
            self._lr_manager.set_rule_priorities(match.reprioritize, match.delete)

        run_phases(
            lambda: run_each(
                match.modify,
                lambda pair: self._modify(pair, configs),
                phase="update",
                kind="listener rule",
                describe=lambda pair: pair[1].arn,
            ),
            lambda: self._create_and_delete(len(live_lrs), match.create, match.delete, configs),
            lambda: run_each(
                [*match.reprioritize, *match.unchanged],
                self._update_tags,
                phase="update",
                kind="listener rule",
                describe=lambda pair: pair[1].arn,
            ),
        )

    def _modify(
        self,
        pair: tuple[ListenerRule, ListenerRuleWithTags],
        configs: dict[str, DesiredRuleConfig],
    ) -> None:
        res_lr, live = pair
        res_lr.set_status(self._lr_manager.modify(self._stack, res_lr, live, configs[res_lr.id]))

    def _update_tags(self, pair: tuple[ListenerRule, ListenerRuleWithTags]) -> None:
        res_lr, live = pair
        self._lr_manager.update_tags(self._stack, res_lr, live)
        res_lr.set_status(ListenerRuleStatus(arn=live.arn))

    def _create_and_delete(
        self,
        initial_rule_count: int,
        to_create: list[ListenerRule],
        to_delete: list[ListenerRuleWithTags],
        configs: dict[str, DesiredRuleConfig],
    ) -> None:
        """Create all new rules before deleting stale ones.

        When the listener's rule limit is reached, the limit is recorded
        and creations alternate with deletions from then on.
        """
        create_index = 0
        delete_index = 0
        rule_count = initial_rule_count
        max_rules: int | None = None

        while create_index < len(to_create) or delete_index < len(to_delete):
            if create_index < len(to_create) and rule_count != max_rules:
                res_lr = to_create[create_index]
                try:
                    status = self._lr_manager.create(self._stack, res_lr, configs[res_lr.id])
                except Exception as e:
                    if is_too_many_rules(e) and max_rules is None:
                        logger.info(
                            "listener rule limit reached, deleting before creating",
                            extra={"rule_count": rule_count},
                        )
                        max_rules = rule_count
                        continue
                    raise
                res_lr.set_status(status)
                rule_count += 1
                create_index += 1
            elif delete_index < len(to_delete):
                self._lr_manager.delete(to_delete[delete_index])
                rule_count -= 1
                delete_index += 1
            else:
                raise RuntimeError("unable to synthesize listener rules, too many rules attached")
