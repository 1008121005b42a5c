"""Tests for tag-filtered listing and tag reconciliation."""

import pytest
from elbv2_mock import MockELBV2Client

from lbdeploy.config import FeatureGates
from lbdeploy.elbv2 import ELBV2Client
from lbdeploy.tagging import TaggingManager
from lbdeploy.tracking import TagFilter

OWNED = {"elbv2.k8s.aws/cluster": "test-cluster", "elbv2.k8s.aws/stack": "shop/frontend"}


@pytest.fixture
def tagging(elbv2: MockELBV2Client) -> TaggingManager:
    return TaggingManager(ELBV2Client(elbv2), elbv2.vpc_id)


class TestListing:
    """Tests for listing resources with their tags."""

    def test_filters_by_tags(self, elbv2: MockELBV2Client, tagging: TaggingManager) -> None:
        owned = elbv2.add_target_group("owned", {**OWNED, "elbv2.k8s.aws/resource": "web"})
        elbv2.add_target_group("foreign", {"elbv2.k8s.aws/stack": "other/stack"})

        tgs = tagging.list_target_groups(TagFilter.from_tags(OWNED))

        assert [tg.arn for tg in tgs] == [owned]
        assert tgs[0].tags["elbv2.k8s.aws/resource"] == "web"

    def test_filters_by_vpc(self, elbv2: MockELBV2Client, tagging: TaggingManager) -> None:
        """Test that resources in another VPC are dropped before tags are fetched."""
        elbv2.add_load_balancer("elsewhere", OWNED, vpc_id="vpc-0fedcba9876543210")
        inside = elbv2.add_load_balancer("inside", OWNED)

        lbs = tagging.list_load_balancers(TagFilter.from_tags(OWNED))

        assert [lb.arn for lb in lbs] == [inside]
        assert elbv2.calls_of("describe_tags") == [{"ResourceArns": [inside]}]

    def test_no_filters_returns_nothing(
        self, elbv2: MockELBV2Client, tagging: TaggingManager
    ) -> None:
        elbv2.add_target_group("owned", OWNED)

        assert tagging.list_target_groups() == []

    def test_any_filter_matches(self, elbv2: MockELBV2Client, tagging: TaggingManager) -> None:
        a = elbv2.add_target_group("a", {"team": "a"})
        b = elbv2.add_target_group("b", {"team": "b"})
        elbv2.add_target_group("c", {"team": "c"})

        tgs = tagging.list_target_groups(
            TagFilter.from_tags({"team": "a"}), TagFilter.from_tags({"team": "b"})
        )

        assert sorted(tg.arn for tg in tgs) == sorted([a, b])


class TestDescribeResourceTags:
    """Tests for chunked DescribeTags."""

    @pytest.mark.parametrize("parallel", [False, True])
    def test_chunks_at_limit(self, elbv2: MockELBV2Client, parallel: bool) -> None:
        """Test that 45 ARNs are fetched in three calls of at most 20."""
        arns = [elbv2.add_target_group(f"tg-{i}", {"index": str(i)}) for i in range(45)]
        tagging = TaggingManager(ELBV2Client(elbv2), elbv2.vpc_id, parallel=parallel)

        tags = tagging.describe_resource_tags(arns)

        calls = elbv2.calls_of("describe_tags")
        assert sorted(len(c["ResourceArns"]) for c in calls) == [5, 20, 20]
        assert len(tags) == 45
        assert tags[arns[44]] == {"index": "44"}

    def test_empty(self, elbv2: MockELBV2Client, tagging: TaggingManager) -> None:
        assert tagging.describe_resource_tags([]) == {}
        assert elbv2.calls_of("describe_tags") == []

    def test_custom_chunk_size(self, elbv2: MockELBV2Client) -> None:
        arns = [elbv2.add_target_group(f"tg-{i}") for i in range(5)]
        tagging = TaggingManager(ELBV2Client(elbv2), elbv2.vpc_id, describe_tags_chunk_size=2)

        tagging.describe_resource_tags(arns)

        assert len(elbv2.calls_of("describe_tags")) == 3


class TestReconcileTags:
    """Tests for reconcile_tags."""

    def test_add_update_remove(self, elbv2: MockELBV2Client, tagging: TaggingManager) -> None:
        arn = elbv2.add_target_group("web", {"keep": "1", "change": "old", "drop": "x"})

        tagging.reconcile_tags(arn, {"keep": "1", "change": "new", "add": "y"})

        assert elbv2.tags[arn] == {"keep": "1", "change": "new", "add": "y"}
        assert elbv2.call_names(mutating_only=True) == ["add_tags", "remove_tags"]
        assert elbv2.calls_of("remove_tags") == [{"ResourceArns": [arn], "TagKeys": ["drop"]}]

    def test_no_change_no_call(self, elbv2: MockELBV2Client, tagging: TaggingManager) -> None:
        arn = elbv2.add_target_group("web", {"a": "1"})

        tagging.reconcile_tags(arn, {"a": "1"}, {"a": "1"})

        assert elbv2.mutating_calls == []

    def test_ignored_keys_untouched(
        self, elbv2: MockELBV2Client, tagging: TaggingManager
    ) -> None:
        """Test that externally managed tags are never removed."""
        arn = elbv2.add_target_group("web", {"a": "1", "cost-center": "42"})

        tagging.reconcile_tags(arn, {"a": "1"}, ignored_tag_keys=["cost-center"])

        assert elbv2.tags[arn] == {"a": "1", "cost-center": "42"}
        assert elbv2.mutating_calls == []


class TestListenerTaggingGate:
    """Tests for the ListenerRulesTagging gate on listing."""

    def test_listener_tags_skipped_when_gate_off(self, elbv2: MockELBV2Client) -> None:
        lb_arn = elbv2.add_load_balancer("main")
        elbv2.create_listener(
            LoadBalancerArn=lb_arn,
            Port=80,
            Protocol="HTTP",
            DefaultActions=[{"Type": "fixed-response"}],
        )
        elbv2.reset_calls()
        gates = FeatureGates(listener_rules_tagging=False)
        tagging = TaggingManager(ELBV2Client(elbv2), elbv2.vpc_id, gates)

        listeners = tagging.list_listeners(lb_arn)
        rules = tagging.list_listener_rules(listeners[0].arn)

        assert len(listeners) == 1
        assert [r.rule["IsDefault"] for r in rules] == [True]
        assert elbv2.calls_of("describe_tags") == []
