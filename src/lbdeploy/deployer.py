"""Stack deployer: runs every synthesizer of one stack in dependency order.

ORDER:
    synthesize:       targetGroup -> loadBalancer -> listener -> listenerRule
                      -> targetGroupBinding
    post_synthesize:  the same list in reverse

Target groups come first so listener and rule actions can reference their
ARNs. Their deletion happens in post_synthesize, once listeners and rules
no longer point at them.

A fresh set of managers is built for every pass so that each pass carries
its own deadline and cancellation context. The boto3 client and the metrics
gauge are shared between passes.
"""

from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import CustomObjectsApi

from .config import Config, ConfigurationError
from .context import ReconcileContext
from .elbv2 import ELBV2Client
from .listener import ListenerManager, ListenerSynthesizer
from .listener_rule import ListenerRuleManager, ListenerRuleSynthesizer
from .load_balancer import LoadBalancerManager, LoadBalancerSynthesizer
from .metrics import ManagedResourceMetrics
from .models import Stack, TargetGroupBindingResource
from .synthesizer import Synthesizer
from .tagging import TaggingManager
from .target_group import TargetGroupManager, TargetGroupSynthesizer
from .target_group_binding import TargetGroupBindingManager, TargetGroupBindingSynthesizer
from .tracking import TrackingProvider

logger = logging.getLogger(__name__)


class StackDeployer:
    """Deploys stacks against ELBv2 and, optionally, the cluster API.

    Args:
        config: Validated controller configuration.
        elbv2_client: boto3 ``elbv2`` client (or a compatible fake).
        metrics: Managed load balancer gauge.
        cluster_api: CustomObjectsApi for TargetGroupBindings; stacks that
            declare bindings cannot be deployed without it.
    """

    def __init__(
        self,
        config: Config,
        elbv2_client: Any,
        metrics: ManagedResourceMetrics,
        cluster_api: CustomObjectsApi | None = None,
    ) -> None:
        self._config = config
        self._elbv2_client = elbv2_client
        self._metrics = metrics
        self._cluster_api = cluster_api
        self._tracking_provider = TrackingProvider(config.tag_prefix, config.cluster_name)

    @property
    def tracking_provider(self) -> TrackingProvider:
        return self._tracking_provider

    def deploy(self, stack: Stack, ctx: ReconcileContext | None = None) -> None:
        """Converge live resources to the stack.

        Raises:
            ConfigurationError: If the stack declares TargetGroupBindings and
                no cluster API is configured.
        """
        ctx = ctx or ReconcileContext.background()
        synthesizers = self._build_synthesizers(stack, ctx)

        logger.info(
            "deploying stack",
            extra={"stack": str(stack.stack_id), "resource_count": len(stack)},
        )
        for synthesizer in synthesizers:
            synthesizer.synthesize()
        for synthesizer in reversed(synthesizers):
            synthesizer.post_synthesize()
        logger.info("deployed stack", extra={"stack": str(stack.stack_id)})

    def _build_synthesizers(self, stack: Stack, ctx: ReconcileContext) -> list[Synthesizer]:
        config = self._config
        gates = config.feature_gates
        client = ELBV2Client(self._elbv2_client, ctx)
        tagging_manager = TaggingManager(
            client,
            config.vpc_id,
            gates,
            describe_tags_chunk_size=config.describe_tags_chunk_size,
            parallel=config.parallel_tag_fetch,
        )
        external = config.external_managed_tags

        tg_manager = TargetGroupManager(
            client, self._tracking_provider, tagging_manager, config.vpc_id, external
        )
        lb_manager = LoadBalancerManager(
            client, self._tracking_provider, tagging_manager, self._metrics, gates, external
        )
        ls_manager = ListenerManager(
            client, self._tracking_provider, tagging_manager, gates, external
        )
        lr_manager = ListenerRuleManager(
            client, self._tracking_provider, tagging_manager, gates, external
        )

        synthesizers: list[Synthesizer] = [
            TargetGroupSynthesizer(
                self._tracking_provider, tagging_manager, tg_manager, gates, stack
            ),
            LoadBalancerSynthesizer(self._tracking_provider, tagging_manager, lb_manager, stack),
            ListenerSynthesizer(tagging_manager, ls_manager, stack),
            ListenerRuleSynthesizer(tagging_manager, lr_manager, stack),
        ]

        if self._cluster_api is not None:
            tgb_manager = TargetGroupBindingManager(
                self._cluster_api, self._tracking_provider, ctx
            )
            synthesizers.append(TargetGroupBindingSynthesizer(tgb_manager, stack))
        elif stack.list_resources(TargetGroupBindingResource):
            raise ConfigurationError(
                f"stack {stack.stack_id} declares TargetGroupBindings "
                "but no cluster API is configured"
            )
        return synthesizers
