"""Builders for in-memory stacks used across synthesis tests."""

from __future__ import annotations

from typing import Any

from lbdeploy.models import (
    Listener,
    ListenerRule,
    ListenerRuleSpec,
    ListenerSpec,
    LoadBalancer,
    LoadBalancerSpec,
    Stack,
    StackID,
    TargetGroup,
    TargetGroupSpec,
)


def new_stack(name: str = "frontend", namespace: str = "shop") -> Stack:
    return Stack(StackID(namespace=namespace, name=name))


def forward_to(*tgs: TargetGroup) -> dict[str, Any]:
    groups = [{"targetGroupARN": tg.target_group_arn()} for tg in tgs]
    return {"type": "forward", "forwardConfig": {"targetGroups": groups}}


def fixed_response(status_code: str = "404") -> dict[str, Any]:
    return {"type": "fixed-response", "fixedResponseConfig": {"statusCode": status_code}}


def add_target_group(
    stack: Stack, resource_id: str = "web", name: str = "shop-web", **spec: Any
) -> TargetGroup:
    data: dict[str, Any] = {"name": name, "port": 80, "protocol": "HTTP", **spec}
    tg = TargetGroup(resource_id, TargetGroupSpec.model_validate(data))
    stack.add_resource(tg)
    return tg


def add_load_balancer(
    stack: Stack, resource_id: str = "main", name: str = "shop-main", **spec: Any
) -> LoadBalancer:
    data: dict[str, Any] = {"name": name, **spec}
    lb = LoadBalancer(resource_id, LoadBalancerSpec.model_validate(data))
    stack.add_resource(lb)
    return lb


def add_listener(
    stack: Stack,
    lb: LoadBalancer,
    default_action: dict[str, Any],
    port: int = 80,
    protocol: str = "HTTP",
    resource_id: str | None = None,
    **spec: Any,
) -> Listener:
    data: dict[str, Any] = {
        "loadBalancerARN": lb.load_balancer_arn(),
        "port": port,
        "protocol": protocol,
        "defaultActions": [default_action],
        **spec,
    }
    ls = Listener(resource_id or str(port), ListenerSpec.model_validate(data))
    stack.add_resource(ls)
    return ls


def add_path_rule(
    stack: Stack,
    ls: Listener,
    resource_id: str,
    priority: int,
    path: str,
    action: dict[str, Any],
) -> ListenerRule:
    data = {
        "listenerARN": ls.listener_arn(),
        "priority": priority,
        "actions": [action],
        "conditions": [{"field": "path-pattern", "values": [path]}],
    }
    rule = ListenerRule(resource_id, ListenerRuleSpec.model_validate(data))
    stack.add_resource(rule)
    return rule


def web_stack(
    rule_priority: int = 10,
    rule_path: str = "/api/*",
    name: str = "frontend",
    namespace: str = "shop",
) -> Stack:
    """A target group behind an HTTP listener with one path rule."""
    stack = new_stack(name, namespace)
    tg = add_target_group(stack)
    lb = add_load_balancer(stack)
    ls = add_listener(stack, lb, forward_to(tg))
    add_path_rule(stack, ls, "api", rule_priority, rule_path, forward_to(tg))
    return stack
