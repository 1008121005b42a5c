"""TargetGroupBinding manager and synthesizer.

Bindings are cluster custom resources (``elbv2.k8s.aws/v1beta1``) that tell
the in-cluster controller which pods or nodes to register in a target
group. They are labelled with the stack labels so that the bindings of a
stack can be listed with a label selector.

A binding update is complete only once the in-cluster controller has
observed the new generation; a delete is complete once the object is gone.
Both waits are bounded.
"""

from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from .config import (
    TARGET_GROUP_BINDING_POLL_INTERVAL_SECONDS,
    TARGET_GROUP_BINDING_TIMEOUT_SECONDS,
)
from .context import ReconcileContext
from .matcher import match_by_key
from .models import Stack, TargetGroupBindingResource, TargetGroupBindingStatus
from .polling import poll_until
from .synthesizer import run_each
from .tracking import TrackingProvider

logger = logging.getLogger(__name__)

TGB_GROUP = "elbv2.k8s.aws"
TGB_VERSION = "v1beta1"
TGB_PLURAL = "targetgroupbindings"
TGB_KIND = "TargetGroupBinding"

HTTP_NOT_FOUND = 404


def _object_key(obj: dict[str, Any]) -> tuple[str, str]:
    metadata = obj.get("metadata", {})
    return metadata.get("namespace", ""), metadata.get("name", "")


class TargetGroupBindingManager:
    """Creates, updates and deletes TargetGroupBinding objects."""

    def __init__(
        self,
        api: CustomObjectsApi,
        tracking_provider: TrackingProvider,
        ctx: ReconcileContext | None = None,
        poll_interval: float = TARGET_GROUP_BINDING_POLL_INTERVAL_SECONDS,
        timeout: float = TARGET_GROUP_BINDING_TIMEOUT_SECONDS,
    ) -> None:
        self._api = api
        self._tracking_provider = tracking_provider
        self._ctx = ctx or ReconcileContext.background()
        self._poll_interval = poll_interval
        self._timeout = timeout

    def list_for_stack(self, stack: Stack) -> list[dict[str, Any]]:
        labels = self._tracking_provider.stack_labels(stack)
        selector = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
        self._ctx.check()
        resp = self._api.list_cluster_custom_object(
            TGB_GROUP, TGB_VERSION, TGB_PLURAL, label_selector=selector
        )
        return list(resp.get("items", []))

    def create(self, stack: Stack, res_tgb: TargetGroupBindingResource) -> TargetGroupBindingStatus:
        template = res_tgb.spec.template
        body = {
            "apiVersion": f"{TGB_GROUP}/{TGB_VERSION}",
            "kind": TGB_KIND,
            "metadata": {
                "name": template.name,
                "namespace": template.namespace,
                "labels": self._desired_labels(stack, res_tgb),
                "annotations": dict(template.annotations),
            },
            "spec": template.spec.to_k8s(),
        }
        logger.info(
            "creating targetGroupBinding",
            extra={"stack": str(stack.stack_id), "resource_id": res_tgb.id},
        )
        self._ctx.check()
        self._api.create_namespaced_custom_object(
            TGB_GROUP, TGB_VERSION, template.namespace, TGB_PLURAL, body
        )
        logger.info(
            "created targetGroupBinding",
            extra={"namespace": template.namespace, "binding_name": template.name},
        )
        return TargetGroupBindingStatus(name=template.name, namespace=template.namespace)

    def update(
        self,
        stack: Stack,
        res_tgb: TargetGroupBindingResource,
        live: dict[str, Any],
    ) -> TargetGroupBindingStatus:
        template = res_tgb.spec.template
        desired_spec = template.spec.to_k8s()
        desired_labels = self._desired_labels(stack, res_tgb)
        metadata = live.get("metadata", {})
        live_spec = live.get("spec", {})

        removed_keys = sorted(live_spec.keys() - desired_spec.keys())
        spec_drifted = bool(removed_keys) or any(
            live_spec.get(k) != v for k, v in desired_spec.items()
        )
        labels = metadata.get("labels") or {}
        annotations = metadata.get("annotations") or {}
        metadata_drifted = any(labels.get(k) != v for k, v in desired_labels.items()) or any(
            annotations.get(k) != v for k, v in template.annotations.items()
        )
        status = TargetGroupBindingStatus(name=template.name, namespace=template.namespace)
        if not spec_drifted and not metadata_drifted:
            return status

        patch: dict[str, Any] = {
            "metadata": {"labels": desired_labels, "annotations": dict(template.annotations)},
            # Merge patch: null clears fields the desired spec no longer sets
            "spec": {**dict.fromkeys(removed_keys), **desired_spec},
        }
        logger.info(
            "modifying targetGroupBinding",
            extra={"namespace": template.namespace, "binding_name": template.name},
        )
        self._ctx.check()
        patched = self._api.patch_namespaced_custom_object(
            TGB_GROUP, TGB_VERSION, template.namespace, TGB_PLURAL, template.name, patch
        )
        logger.info(
            "modified targetGroupBinding",
            extra={"namespace": template.namespace, "binding_name": template.name},
        )
        if spec_drifted:
            generation = patched.get("metadata", {}).get("generation", 0)
            self._wait_until_observed(template.namespace, template.name, generation)
        return status

    def delete(self, live: dict[str, Any]) -> None:
        namespace, name = _object_key(live)
        logger.info(
            "deleting targetGroupBinding", extra={"namespace": namespace, "binding_name": name}
        )
        self._ctx.check()
        try:
            self._api.delete_namespaced_custom_object(
                TGB_GROUP, TGB_VERSION, namespace, TGB_PLURAL, name
            )
        except ApiException as e:
            if e.status != HTTP_NOT_FOUND:
                raise
        poll_until(
            lambda: self._get(namespace, name) is None,
            interval=self._poll_interval,
            timeout=self._timeout,
            reason=f"targetGroupBinding {namespace}/{name} to be deleted",
            ctx=self._ctx,
        )
        logger.info(
            "deleted targetGroupBinding", extra={"namespace": namespace, "binding_name": name}
        )

    def _wait_until_observed(self, namespace: str, name: str, generation: int) -> None:
        def observed() -> bool:
            obj = self._get(namespace, name)
            if obj is None:
                return False
            return obj.get("status", {}).get("observedGeneration", 0) >= generation

        poll_until(
            observed,
            interval=self._poll_interval,
            timeout=self._timeout,
            reason=f"targetGroupBinding {namespace}/{name} generation {generation} to be observed",
            ctx=self._ctx,
        )

    def _get(self, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return self._api.get_namespaced_custom_object(
                TGB_GROUP, TGB_VERSION, namespace, TGB_PLURAL, name
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise

    def _desired_labels(self, stack: Stack, res_tgb: TargetGroupBindingResource) -> dict[str, str]:
        labels = dict(res_tgb.spec.template.labels)
        labels.update(self._tracking_provider.stack_labels(stack))
        return labels


class TargetGroupBindingSynthesizer:
    """Synthesizes the TargetGroupBindings of one stack."""

    def __init__(self, tgb_manager: TargetGroupBindingManager, stack: Stack) -> None:
        self._tgb_manager = tgb_manager
        self._stack = stack

    def synthesize(self) -> None:
        res_tgbs = self._stack.list_resources(TargetGroupBindingResource)
        live_tgbs = self._tgb_manager.list_for_stack(self._stack)
        result = match_by_key(
            res_tgbs,
            live_tgbs,
            desired_key=lambda r: (r.spec.template.namespace, r.spec.template.name),
            live_key=_object_key,
        )
        run_each(
            result.live_only,
            self._tgb_manager.delete,
            phase="delete",
            kind="targetGroupBinding",
            describe=lambda obj: "/".join(_object_key(obj)),
        )
        run_each(result.desired_only, self._create, phase="create", kind="targetGroupBinding")
        run_each(result.pairs, self._update, phase="update", kind="targetGroupBinding")

    def post_synthesize(self) -> None:
        pass

    def _create(self, res_tgb: TargetGroupBindingResource) -> None:
        res_tgb.set_status(self._tgb_manager.create(self._stack, res_tgb))

    def _update(self, pair: tuple[TargetGroupBindingResource, dict[str, Any]]) -> None:
        res_tgb, live = pair
        res_tgb.set_status(self._tgb_manager.update(self._stack, res_tgb, live))
