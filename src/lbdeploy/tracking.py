"""Tracking tags and labels that tie cloud resources to their stack.

Every ELBv2 resource created for a stack carries:
- ``elbv2.k8s.aws/cluster``: the owning cluster
- ``<prefix>/stack``: the stack ID (``namespace/name`` or ``name``)
- ``<prefix>/resource``: the resource's logical ID within the stack

The resource tag is the identity used to correlate desired and live
resources. Older controller versions recorded the cluster under
``ingress.k8s.aws/cluster``; resources carrying it together with the stack
tag are still selected when listing. Legacy keys are never added or removed.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .models import Resource, Stack

CLUSTER_TAG_KEY = "elbv2.k8s.aws/cluster"

LEGACY_INGRESS_CLUSTER_TAG_KEY = "ingress.k8s.aws/cluster"
LEGACY_INGRESS_STACK_TAG_KEY = "ingress.k8s.aws/stack"
LEGACY_SERVICE_STACK_TAG_KEY = "service.k8s.aws/stack"


class TagFilter(dict[str, set[str]]):
    """Tag key to allowed values. All keys must match (AND)."""

    @classmethod
    def from_tags(cls, tags: Mapping[str, str]) -> TagFilter:
        return cls({key: {value} for key, value in tags.items()})

    def matches(self, tags: Mapping[str, str]) -> bool:
        for key, allowed in self.items():
            value = tags.get(key)
            if value is None or value not in allowed:
                return False
        return True


def matches_any(tags: Mapping[str, str], filters: Iterable[TagFilter]) -> bool:
    """Check whether tags satisfy at least one filter (OR across filters)."""
    return any(f.matches(tags) for f in filters)


class TrackingProvider:
    """Computes tracking tags and labels for a stack and its resources."""

    def __init__(self, tag_prefix: str, cluster_name: str) -> None:
        self._tag_prefix = tag_prefix
        self._cluster_name = cluster_name

    @property
    def stack_tag_key(self) -> str:
        return f"{self._tag_prefix}/stack"

    @property
    def resource_id_tag_key(self) -> str:
        return f"{self._tag_prefix}/resource"

    def stack_tags(self, stack: Stack) -> dict[str, str]:
        return {
            CLUSTER_TAG_KEY: self._cluster_name,
            self.stack_tag_key: str(stack.stack_id),
        }

    def resource_tags(
        self,
        stack: Stack,
        resource: Resource,
        additional_tags: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Tags for a resource; additional tags never override tracking tags."""
        tags = dict(additional_tags or {})
        tags.update(self.stack_tags(stack))
        tags[self.resource_id_tag_key] = resource.id
        return tags

    def stack_labels(self, stack: Stack) -> dict[str, str]:
        if not stack.stack_id.namespace:
            return {f"{self._tag_prefix}/stack": stack.stack_id.name}
        return {
            f"{self._tag_prefix}/stack-namespace": stack.stack_id.namespace,
            f"{self._tag_prefix}/stack-name": stack.stack_id.name,
        }

    def stack_tags_legacy(self, stack: Stack) -> dict[str, str]:
        return {
            LEGACY_INGRESS_CLUSTER_TAG_KEY: self._cluster_name,
            self.stack_tag_key: str(stack.stack_id),
        }

    def legacy_tag_keys(self) -> list[str]:
        return [
            f"kubernetes.io/cluster/{self._cluster_name}",
            "kubernetes.io/cluster-name",
            "kubernetes.io/namespace",
            "kubernetes.io/ingress-name",
            "kubernetes.io/service-name",
            "kubernetes.io/service-port",
            LEGACY_INGRESS_CLUSTER_TAG_KEY,
        ]

    def stack_owner(self, tags: Mapping[str, str]) -> tuple[str, str] | None:
        """Return the (namespace, name) of the stack a tagged resource belongs to."""
        return stack_id_from_tags(tags, self._tag_prefix)

    def stack_filters(self, stack: Stack) -> list[TagFilter]:
        """Filters selecting resources of a stack under either tag scheme."""
        return [
            TagFilter.from_tags(self.stack_tags(stack)),
            TagFilter.from_tags(self.stack_tags_legacy(stack)),
        ]


def stack_id_from_tags(tags: Mapping[str, str], tag_prefix: str) -> tuple[str, str] | None:
    """Recover the (namespace, name) pair from a resource's stack tag."""
    for key in (f"{tag_prefix}/stack", LEGACY_INGRESS_STACK_TAG_KEY, LEGACY_SERVICE_STACK_TAG_KEY):
        value = tags.get(key)
        if value:
            namespace, sep, name = value.partition("/")
            if not sep:
                return "", namespace
            return namespace, name
    return None
