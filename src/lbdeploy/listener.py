"""Listener manager and synthesizer.

Listeners are not matched by tracking tag: tagging listeners is optional
(feature gate ListenerRulesTagging), and a load balancer can only hold one
listener per port, so desired and live listeners are matched by port under
their load balancer.

Only the first certificate of a listener is its default certificate; the
remaining ones are attached as extra certificates with separate calls.
"""

from __future__ import annotations

import logging
from typing import Any

from .algorithm import compact
from .attributes import listener_attributes_reconciler
from .config import (
    LISTENER_CREATE_POLL_INTERVAL_SECONDS,
    LISTENER_CREATE_TIMEOUT_SECONDS,
    FeatureGates,
)
from .elbv2 import ELBV2Client
from .equality import actions_equal
from .errors import DuplicateListenerPortError, is_listener_not_found, is_not_found
from .matcher import match_by_key
from .models import (
    LoadBalancer,
    Listener,
    ListenerStatus,
    Stack,
    actions_to_sdk,
    attributes_to_map,
)
from .polling import retry_on_error
from .synthesizer import run_each
from .tagging import ListenerWithTags, TaggingManager
from .tracking import TrackingProvider

logger = logging.getLogger(__name__)

# Listener attributes are only supported on TCP listeners
ATTRIBUTE_PROTOCOLS = frozenset({"TCP"})


class ListenerManager:
    """Creates, updates and deletes ELBv2 listeners."""

    def __init__(
        self,
        client: ELBV2Client,
        tracking_provider: TrackingProvider,
        tagging_manager: TaggingManager,
        feature_gates: FeatureGates,
        external_managed_tags: tuple[str, ...] = (),
        create_poll_interval: float = LISTENER_CREATE_POLL_INTERVAL_SECONDS,
        create_timeout: float = LISTENER_CREATE_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._tracking_provider = tracking_provider
        self._tagging_manager = tagging_manager
        self._feature_gates = feature_gates
        self._external_managed_tags = external_managed_tags
        self._attributes = listener_attributes_reconciler(client)
        self._create_poll_interval = create_poll_interval
        self._create_timeout = create_timeout

    def create(self, stack: Stack, res_ls: Listener) -> ListenerStatus:
        req = _build_listener_settings(res_ls)
        req["LoadBalancerArn"] = res_ls.spec.load_balancer_arn.resolve()
        if self._feature_gates.listener_rules_tagging:
            tags = self._tracking_provider.resource_tags(stack, res_ls, res_ls.spec.tags)
            req["Tags"] = [{"Key": k, "Value": tags[k]} for k in sorted(tags)]

        logger.info(
            "creating listener",
            extra={"stack": str(stack.stack_id), "resource_id": res_ls.id},
        )
        resp = self._client.create_listener(**compact(req))
        arn = resp["Listeners"][0]["ListenerArn"]
        ssl_policy = resp["Listeners"][0].get("SslPolicy")
        logger.info(
            "created listener",
            extra={"stack": str(stack.stack_id), "resource_id": res_ls.id, "arn": arn},
        )

        # A new listener may not be visible to certificate calls right away
        retry_on_error(
            lambda: self._update_extra_certificates(res_ls, arn, ssl_policy, is_new=True),
            is_retryable=is_listener_not_found,
            interval=self._create_poll_interval,
            timeout=self._create_timeout,
            reason=f"listener {arn} to become visible",
            ctx=self._client.ctx,
        )
        if res_ls.spec.protocol in ATTRIBUTE_PROTOCOLS:
            self._attributes.reconcile(arn, attributes_to_map(res_ls.spec.listener_attributes))
        return ListenerStatus(arn=arn)

    def update(self, stack: Stack, res_ls: Listener, live: ListenerWithTags) -> ListenerStatus:
        if self._feature_gates.listener_rules_tagging:
            desired_tags = self._tracking_provider.resource_tags(stack, res_ls, res_ls.spec.tags)
            ignored = [*self._tracking_provider.legacy_tag_keys(), *self._external_managed_tags]
            self._tagging_manager.reconcile_tags(live.arn, desired_tags, live.tags, ignored)

        if listener_settings_drifted(res_ls, live.listener):
            req = _build_listener_settings(res_ls)
            logger.info("modifying listener", extra={"arn": live.arn})
            self._client.modify_listener(ListenerArn=live.arn, **compact(req))
            logger.info("modified listener", extra={"arn": live.arn})

        self._update_extra_certificates(
            res_ls, live.arn, live.listener.get("SslPolicy"), is_new=False
        )
        if res_ls.spec.protocol in ATTRIBUTE_PROTOCOLS:
            self._attributes.reconcile(live.arn, attributes_to_map(res_ls.spec.listener_attributes))
        return ListenerStatus(arn=live.arn)

    def delete(self, live: ListenerWithTags) -> None:
        logger.info("deleting listener", extra={"arn": live.arn})
        try:
            self._client.delete_listener(ListenerArn=live.arn)
        except Exception as e:
            if not is_not_found(e):
                raise
            logger.info("listener already deleted", extra={"arn": live.arn})
        logger.info("deleted listener", extra={"arn": live.arn})

    def _update_extra_certificates(
        self,
        res_ls: Listener,
        arn: str,
        live_ssl_policy: str | None,
        is_new: bool,
    ) -> None:
        if res_ls.spec.ssl_policy is None and live_ssl_policy is None:
            return

        desired = {c.certificate_arn for c in res_ls.spec.certificates[1:]}
        current: set[str] = set()
        if not is_new:
            current = {
                c["CertificateArn"]
                for c in self._client.describe_listener_certificates_as_list(ListenerArn=arn)
                if not c.get("IsDefault")
            }

        for cert_arn in sorted(current - desired):
            logger.info(
                "removing certificate from listener",
                extra={"arn": arn, "certificate_arn": cert_arn},
            )
            self._client.remove_listener_certificates(
                ListenerArn=arn, Certificates=[{"CertificateArn": cert_arn}]
            )
        for cert_arn in sorted(desired - current):
            logger.info(
                "adding certificate to listener",
                extra={"arn": arn, "certificate_arn": cert_arn},
            )
            self._client.add_listener_certificates(
                ListenerArn=arn, Certificates=[{"CertificateArn": cert_arn}]
            )


def _build_listener_settings(res_ls: Listener) -> dict[str, Any]:
    spec = res_ls.spec
    default_certs = []
    if spec.certificates:
        default_certs = [{"CertificateArn": spec.certificates[0].certificate_arn}]
    return {
        "Port": spec.port,
        "Protocol": spec.protocol,
        "DefaultActions": actions_to_sdk(spec.default_actions),
        "Certificates": default_certs,
        "SslPolicy": spec.ssl_policy,
        "AlpnPolicy": list(spec.alpn_policy),
        "MutualAuthentication": (
            spec.mutual_authentication.to_sdk() if spec.mutual_authentication else None
        ),
    }


def listener_settings_drifted(res_ls: Listener, live: dict[str, Any]) -> bool:
    """Check whether the modifiable settings of a listener differ from live."""
    spec = res_ls.spec
    if spec.port != live.get("Port"):
        return True
    if spec.protocol != live.get("Protocol"):
        return True
    if not actions_equal(actions_to_sdk(spec.default_actions), live.get("DefaultActions")):
        return True
    desired_certs = {c.certificate_arn for c in spec.certificates[:1]}
    live_certs = {c.get("CertificateArn") for c in live.get("Certificates") or []}
    if desired_certs != live_certs:
        return True
    if spec.ssl_policy is not None and spec.ssl_policy != live.get("SslPolicy"):
        return True
    if spec.alpn_policy and list(spec.alpn_policy) != list(live.get("AlpnPolicy") or []):
        return True
    if spec.mutual_authentication is not None:
        live_mutual = live.get("MutualAuthentication") or {}
        for key, value in spec.mutual_authentication.to_sdk().items():
            if live_mutual.get(key) != value:
                return True
    return False


class ListenerSynthesizer:
    """Synthesizes the listeners of one stack, load balancer by load balancer."""

    def __init__(
        self,
        tagging_manager: TaggingManager,
        ls_manager: ListenerManager,
        stack: Stack,
    ) -> None:
        self._tagging_manager = tagging_manager
        self._ls_manager = ls_manager
        self._stack = stack

    def synthesize(self) -> None:
        res_lss_by_lb: dict[str, list[Listener]] = {}
        for res_lb in self._stack.list_resources(LoadBalancer):
            res_lss_by_lb.setdefault(res_lb.load_balancer_arn().resolve(), [])
        for res_ls in self._stack.list_resources(Listener):
            lb_arn = res_ls.spec.load_balancer_arn.resolve()
            res_lss_by_lb.setdefault(lb_arn, []).append(res_ls)

        run_each(
            list(res_lss_by_lb.items()),
            lambda item: self._synthesize_on_load_balancer(*item),
            phase="synthesize",
            kind="listeners",
            describe=lambda item: item[0],
        )

    def post_synthesize(self) -> None:
        pass

    def _synthesize_on_load_balancer(self, lb_arn: str, res_lss: list[Listener]) -> None:
        live_lss = self._tagging_manager.list_listeners(lb_arn)
        result = match_by_key(
            res_lss,
            live_lss,
            desired_key=lambda r: r.spec.port,
            live_key=lambda ls: ls.listener["Port"],
            duplicate_error=DuplicateListenerPortError,
        )
        run_each(
            result.live_only,
            self._ls_manager.delete,
            phase="delete",
            kind="listener",
            describe=lambda ls: ls.arn,
        )
        run_each(result.desired_only, self._create, phase="create", kind="listener")
        run_each(
            result.pairs,
            self._update,
            phase="update",
            kind="listener",
            describe=lambda pair: pair[1].arn,
        )

    def _create(self, res_ls: Listener) -> None:
        res_ls.set_status(self._ls_manager.create(self._stack, res_ls))

    def _update(self, pair: tuple[Listener, ListenerWithTags]) -> None:
        res_ls, live = pair
        res_ls.set_status(self._ls_manager.update(self._stack, res_ls, live))
