"""Canonical forms for comparing desired and live ELBv2 payloads.

Describe calls return actions and conditions with server-side defaults
filled in and with legacy duplicate fields (``TargetGroupArn`` next to
``ForwardConfig``, ``Values`` next to ``HostHeaderConfig``). Both sides are
normalized into the same shape before comparing.
"""

from __future__ import annotations

from typing import Any

from .algorithm import compact

REDIRECT_DEFAULTS = {
    "Host": "#{host}",
    "Path": "/#{path}",
    "Port": "#{port}",
    "Protocol": "#{protocol}",
    "Query": "#{query}",
}

AUTHENTICATE_DEFAULTS = {
    "Scope": "openid",
    "SessionCookieName": "AWSELBAuthSessionCookie",
    "SessionTimeout": 604800,
    "OnUnauthenticatedRequest": "authenticate",
}

# Never returned by describe calls
AUTHENTICATE_WRITE_ONLY_KEYS = ("ClientSecret", "UseExistingClientSecret")

_CONDITION_CONFIG_KEYS = {
    "host-header": "HostHeaderConfig",
    "path-pattern": "PathPatternConfig",
    "http-request-method": "HttpRequestMethodConfig",
    "source-ip": "SourceIpConfig",
}


def normalize_action(action: dict[str, Any]) -> dict[str, Any]:
    action_type = action.get("Type")
    normalized: dict[str, Any] = {"Type": action_type}

    if action_type == "forward":
        forward = action.get("ForwardConfig") or {}
        groups = forward.get("TargetGroups") or []
        if not groups and action.get("TargetGroupArn"):
            groups = [{"TargetGroupArn": action["TargetGroupArn"]}]
        normalized["TargetGroups"] = sorted(
            (g["TargetGroupArn"], g.get("Weight") if g.get("Weight") is not None else 1)
            for g in groups
        )
        stickiness = forward.get("TargetGroupStickinessConfig") or {}
        enabled = bool(stickiness.get("Enabled"))
        normalized["Stickiness"] = (enabled, stickiness.get("DurationSeconds") if enabled else None)
    elif action_type == "redirect":
        redirect = dict(REDIRECT_DEFAULTS)
        redirect.update(compact(action.get("RedirectConfig") or {}))
        normalized["RedirectConfig"] = redirect
    elif action_type == "fixed-response":
        normalized["FixedResponseConfig"] = compact(action.get("FixedResponseConfig") or {})
    elif action_type in ("authenticate-oidc", "authenticate-cognito"):
        key = (
            "AuthenticateOidcConfig"
            if action_type == "authenticate-oidc"
            else "AuthenticateCognitoConfig"
        )
        config = dict(AUTHENTICATE_DEFAULTS)
        config.update(compact(action.get(key) or {}))
        for write_only in AUTHENTICATE_WRITE_ONLY_KEYS:
            config.pop(write_only, None)
        normalized[key] = config
    return normalized


def normalize_actions(actions: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    ordered = sorted(actions or [], key=lambda a: a.get("Order") or 0)
    return [normalize_action(a) for a in ordered]


def normalize_condition(condition: dict[str, Any]) -> tuple[Any, ...]:
    field_name = condition.get("Field")
    if field_name == "http-header":
        config = condition.get("HttpHeaderConfig") or {}
        return (field_name, config.get("HttpHeaderName"), tuple(sorted(config.get("Values") or [])))
    if field_name == "query-string":
        config = condition.get("QueryStringConfig") or {}
        pairs = sorted((kv.get("Key") or "", kv.get("Value")) for kv in config.get("Values") or [])
        return (field_name, tuple(pairs))
    config_key = _CONDITION_CONFIG_KEYS.get(field_name or "")
    values = (condition.get(config_key) or {}).get("Values") if config_key else None
    if values is None:
        values = condition.get("Values") or []
    return (field_name, tuple(sorted(values)))


def normalize_conditions(conditions: list[dict[str, Any]] | None) -> list[tuple[Any, ...]]:
    return sorted((normalize_condition(c) for c in conditions or []), key=repr)


def normalize_transforms(transforms: list[dict[str, Any]] | None) -> list[Any]:
    return sorted((compact(t) for t in transforms or []), key=repr)


def actions_equal(desired: list[dict[str, Any]], live: list[dict[str, Any]] | None) -> bool:
    return normalize_actions(desired) == normalize_actions(live)


def conditions_equal(desired: list[dict[str, Any]], live: list[dict[str, Any]] | None) -> bool:
    return normalize_conditions(desired) == normalize_conditions(live)


def transforms_equal(desired: list[dict[str, Any]], live: list[dict[str, Any]] | None) -> bool:
    return normalize_transforms(desired) == normalize_transforms(live)
