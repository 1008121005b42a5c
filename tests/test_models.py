"""Tests for the desired-state models."""

import pytest
from pydantic import ValidationError

from lbdeploy.errors import UnresolvedReferenceError
from lbdeploy.models import (
    Action,
    Attribute,
    HealthCheckConfig,
    HealthCheckMatcher,
    ListenerRuleSpec,
    LiteralToken,
    LoadBalancerSpec,
    LoadBalancerStatus,
    RuleCondition,
    StringToken,
    TargetGroup,
    TargetGroupBindingResourceSpec,
    TargetGroupSpec,
    TargetGroupStatus,
)
from stack_builders import add_load_balancer, add_target_group, new_stack


class TestTokens:
    """Tests for lazy string tokens."""

    def test_literal_token(self) -> None:
        token = LiteralToken("arn:x")

        assert token.resolve() == "arn:x"
        assert token.dependencies() == []
        assert token == LiteralToken("arn:x")

    def test_base_token_is_abstract(self) -> None:
        with pytest.raises(TypeError):
            StringToken()  # type: ignore[abstract]

    def test_resource_ref_before_status(self) -> None:
        """Test that resolving a reference to an unsynthesized resource fails."""
        stack = new_stack()
        tg = add_target_group(stack)

        with pytest.raises(UnresolvedReferenceError) as exc_info:
            tg.target_group_arn().resolve()

        assert "web" in str(exc_info.value)

    def test_resource_ref_after_status(self) -> None:
        stack = new_stack()
        lb = add_load_balancer(stack)
        lb.set_status(LoadBalancerStatus(arn="arn:lb", dns_name="lb.example.com"))

        assert lb.load_balancer_arn().resolve() == "arn:lb"
        assert lb.dns_name().resolve() == "lb.example.com"
        assert lb.dns_name().dependencies() == [lb]

    def test_plain_string_becomes_literal(self) -> None:
        spec = ListenerRuleSpec.model_validate(
            {
                "listenerARN": "arn:listener",
                "priority": 1,
                "actions": [
                    {"type": "fixed-response", "fixedResponseConfig": {"statusCode": "200"}}
                ],
            }
        )

        assert spec.listener_arn == LiteralToken("arn:listener")


class TestSpecValidation:
    """Tests for spec validation at the boundary."""

    def test_load_balancer_type(self) -> None:
        with pytest.raises(ValidationError):
            LoadBalancerSpec.model_validate({"name": "a", "type": "classic"})

    def test_load_balancer_name_length(self) -> None:
        with pytest.raises(ValidationError):
            LoadBalancerSpec.model_validate({"name": "x" * 33})

    def test_target_group_defaults(self) -> None:
        spec = TargetGroupSpec.model_validate({"name": "web"})

        assert spec.target_type == "instance"
        assert spec.port is None

    def test_target_group_protocol(self) -> None:
        with pytest.raises(ValidationError):
            TargetGroupSpec.model_validate({"name": "web", "protocol": "FTP"})

    def test_rule_priority_bounds(self) -> None:
        base = {
            "listenerARN": "arn:listener",
            "actions": [{"type": "fixed-response", "fixedResponseConfig": {"statusCode": "200"}}],
        }
        with pytest.raises(ValidationError):
            ListenerRuleSpec.model_validate({**base, "priority": 0})
        with pytest.raises(ValidationError):
            ListenerRuleSpec.model_validate({**base, "priority": 50001})

    def test_action_type(self) -> None:
        with pytest.raises(ValidationError):
            Action.model_validate({"type": "teleport"})

    def test_condition_field(self) -> None:
        with pytest.raises(ValidationError):
            RuleCondition.model_validate({"field": "cookie", "values": ["a"]})

    def test_attribute_values_are_strings(self) -> None:
        assert Attribute.model_validate({"key": "k", "value": True}).value == "true"
        assert Attribute.model_validate({"key": "k", "value": 60}).value == "60"


class TestSdkPayloads:
    """Tests for spec to ELBv2 payload conversion."""

    def test_forward_action(self) -> None:
        stack = new_stack()
        tg = add_target_group(stack)
        tg.set_status(TargetGroupStatus(arn="arn:tg"))
        action = Action.model_validate(
            {
                "type": "forward",
                "forwardConfig": {
                    "targetGroups": [{"targetGroupARN": tg.target_group_arn(), "weight": 10}],
                    "targetGroupStickinessConfig": {"enabled": True, "durationSeconds": 60},
                },
            }
        )

        assert action.dependencies() == [tg]
        assert action.to_sdk(order=1) == {
            "Type": "forward",
            "Order": 1,
            "ForwardConfig": {
                "TargetGroups": [{"TargetGroupArn": "arn:tg", "Weight": 10}],
                "TargetGroupStickinessConfig": {"Enabled": True, "DurationSeconds": 60},
            },
        }

    def test_redirect_action(self) -> None:
        action = Action.model_validate(
            {"type": "redirect", "redirectConfig": {"protocol": "HTTPS", "statusCode": "HTTP_301"}}
        )

        assert action.to_sdk(order=2)["RedirectConfig"] == {
            "Protocol": "HTTPS",
            "StatusCode": "HTTP_301",
        }

    def test_conditions(self) -> None:
        host = RuleCondition.model_validate({"field": "host-header", "values": ["a.com"]})
        header = RuleCondition.model_validate(
            {"field": "http-header", "httpHeaderConfig": {"httpHeaderName": "X", "values": ["1"]}}
        )
        query = RuleCondition.model_validate(
            {"field": "query-string", "queryStringConfig": [{"value": "beta"}]}
        )

        assert host.to_sdk() == {"Field": "host-header", "HostHeaderConfig": {"Values": ["a.com"]}}
        assert header.to_sdk()["HttpHeaderConfig"] == {"HttpHeaderName": "X", "Values": ["1"]}
        assert query.to_sdk()["QueryStringConfig"] == {"Values": [{"Value": "beta"}]}

    def test_health_check(self) -> None:
        hc = HealthCheckConfig.model_validate(
            {"port": "8080", "path": "/healthz", "matcher": {"httpCode": "200-299"}}
        )

        assert hc.to_sdk() == {
            "HealthCheckPort": "8080",
            "HealthCheckPath": "/healthz",
            "Matcher": {"HttpCode": "200-299"},
        }

    def test_health_check_port(self) -> None:
        assert HealthCheckConfig.model_validate({"port": "traffic-port"}).port == "traffic-port"
        with pytest.raises(ValidationError):
            HealthCheckConfig.model_validate({"port": "http"})

    def test_matcher_drift(self) -> None:
        matcher = HealthCheckMatcher.model_validate({"httpCode": "200"})

        assert not matcher.differs_from({"HttpCode": "200", "GrpcCode": "12"})
        assert matcher.differs_from({"HttpCode": "200-399"})
        assert matcher.differs_from(None)

    def test_binding_spec(self) -> None:
        spec = TargetGroupBindingResourceSpec.model_validate(
            {
                "targetGroupARN": "arn:tg",
                "targetType": "ip",
                "serviceRef": {"name": "web", "port": 80},
            }
        )

        assert spec.to_k8s() == {
            "targetGroupARN": "arn:tg",
            "targetType": "ip",
            "serviceRef": {"name": "web", "port": 80},
        }


class TestStack:
    """Tests for Stack."""

    def test_add_and_list(self) -> None:
        stack = new_stack()
        tg = add_target_group(stack)
        lb = add_load_balancer(stack)

        assert len(stack) == 2
        assert stack.list_resources(TargetGroup) == [tg]
        assert stack.resources() == [tg, lb]
        assert stack.get_resource(TargetGroup, "web") is tg
        assert stack.get_resource(TargetGroup, "missing") is None

    def test_duplicate_resource(self) -> None:
        stack = new_stack()
        add_target_group(stack)

        with pytest.raises(ValueError):
            add_target_group(stack, name="other")

    def test_stack_id_str(self) -> None:
        assert str(new_stack("frontend", "shop").stack_id) == "shop/frontend"
        assert str(new_stack("edge", "").stack_id) == "edge"

    def test_empty_resource_id(self) -> None:
        with pytest.raises(ValueError):
            TargetGroup("", TargetGroupSpec.model_validate({"name": "web"}))
