"""Tests for StackDeployer wiring: cluster API, bindings and cancellation."""

from unittest.mock import MagicMock

import pytest
from elbv2_mock import MockELBV2Client

from lbdeploy.config import Config, ConfigurationError
from lbdeploy.context import ReconcileContext
from lbdeploy.deployer import StackDeployer
from lbdeploy.errors import ReconcileCancelledError
from lbdeploy.metrics import ManagedResourceMetrics
from lbdeploy.models import (
    Stack,
    TargetGroup,
    TargetGroupBindingResource,
    TargetGroupBindingSpec,
)
from stack_builders import web_stack


def with_binding(stack: Stack) -> Stack:
    tg = stack.get_resource(TargetGroup, "web")
    assert tg is not None
    spec = TargetGroupBindingSpec.model_validate(
        {
            "template": {
                "name": "web-tgb",
                "namespace": "shop",
                "spec": {
                    "targetGroupARN": tg.target_group_arn(),
                    "serviceRef": {"name": "web", "port": 80},
                },
            }
        }
    )
    stack.add_resource(TargetGroupBindingResource("web", spec))
    return stack


@pytest.fixture
def cluster_api() -> MagicMock:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {"items": []}
    return api


class TestStackDeployer:
    """Tests for StackDeployer."""

    def test_bindings_require_cluster_api(
        self, deployer: StackDeployer, elbv2: MockELBV2Client
    ) -> None:
        """Test that nothing is touched when bindings cannot be deployed."""
        with pytest.raises(ConfigurationError) as exc_info:
            deployer.deploy(with_binding(web_stack()))

        assert "cluster API" in str(exc_info.value)
        assert elbv2.calls == []

    def test_stack_without_bindings_needs_no_cluster_api(
        self, deployer: StackDeployer, elbv2: MockELBV2Client
    ) -> None:
        deployer.deploy(web_stack())

        assert len(elbv2.load_balancers) == 1

    def test_binding_points_at_created_target_group(
        self,
        config: Config,
        elbv2: MockELBV2Client,
        metrics: ManagedResourceMetrics,
        cluster_api: MagicMock,
    ) -> None:
        deployer = StackDeployer(config, elbv2, metrics, cluster_api)

        deployer.deploy(with_binding(web_stack()))

        (tg_arn,) = elbv2.target_groups
        body = cluster_api.create_namespaced_custom_object.call_args.args[4]
        assert body["spec"]["targetGroupARN"] == tg_arn
        assert body["metadata"]["labels"] == {
            "elbv2.k8s.aws/stack-namespace": "shop",
            "elbv2.k8s.aws/stack-name": "frontend",
        }

    def test_bindings_listed_with_empty_stack(
        self,
        config: Config,
        elbv2: MockELBV2Client,
        metrics: ManagedResourceMetrics,
        cluster_api: MagicMock,
    ) -> None:
        """Test that an empty stack still sweeps bindings it owns."""
        deployer = StackDeployer(config, elbv2, metrics, cluster_api)

        deployer.deploy(Stack(web_stack().stack_id))

        cluster_api.list_cluster_custom_object.assert_called_once()
        cluster_api.create_namespaced_custom_object.assert_not_called()

    def test_cancelled_pass_issues_no_calls(
        self, deployer: StackDeployer, elbv2: MockELBV2Client
    ) -> None:
        ctx = ReconcileContext()
        ctx.cancel()

        with pytest.raises(ReconcileCancelledError):
            deployer.deploy(web_stack(), ctx)

        assert elbv2.calls == []

    def test_stack_tags_carry_cluster_name(self, deployer: StackDeployer) -> None:
        tags = deployer.tracking_provider.stack_tags(web_stack())

        assert "test-cluster" in tags.values()
        assert "shop/frontend" in tags.values()
