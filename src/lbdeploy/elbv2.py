"""Thin wrapper over the boto3 ELBv2 client.

The wrapper checks the pass context before every call and exposes fully
drained ``*_as_list`` helpers for paginated describe operations. All other
operations pass through unchanged; boto3 handles HTTP retries itself.
"""

from __future__ import annotations

import logging
from typing import Any

import boto3

from .context import ReconcileContext

logger = logging.getLogger(__name__)


def new_boto3_client(region: str | None = None) -> Any:
    """Create the boto3 ELBv2 client using the default credential chain."""
    session = boto3.session.Session(region_name=region)
    return session.client("elbv2")


class ELBV2Client:
    """ELBv2 operations bound to one reconciliation pass."""

    def __init__(self, client: Any, ctx: ReconcileContext | None = None) -> None:
        self._client = client
        self._ctx = ctx or ReconcileContext.background()

    @property
    def ctx(self) -> ReconcileContext:
        return self._ctx

    def __getattr__(self, name: str) -> Any:
        operation = getattr(self._client, name)
        if not callable(operation):
            return operation

        def call(**kwargs: Any) -> Any:
            self._ctx.check()
            return operation(**kwargs)

        return call

    def _paginate(self, operation: str, result_key: str, **kwargs: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        paginator = self._client.get_paginator(operation)
        for page in paginator.paginate(**kwargs):
            self._ctx.check()
            items.extend(page.get(result_key, []))
        return items

    def describe_load_balancers_as_list(self, **kwargs: Any) -> list[dict[str, Any]]:
        return self._paginate("describe_load_balancers", "LoadBalancers", **kwargs)

    def describe_target_groups_as_list(self, **kwargs: Any) -> list[dict[str, Any]]:
        return self._paginate("describe_target_groups", "TargetGroups", **kwargs)

    def describe_listeners_as_list(self, **kwargs: Any) -> list[dict[str, Any]]:
        return self._paginate("describe_listeners", "Listeners", **kwargs)

    def describe_rules_as_list(self, **kwargs: Any) -> list[dict[str, Any]]:
        return self._paginate("describe_rules", "Rules", **kwargs)

    def describe_listener_certificates_as_list(self, **kwargs: Any) -> list[dict[str, Any]]:
        return self._paginate("describe_listener_certificates", "Certificates", **kwargs)
