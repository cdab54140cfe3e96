#tests\test_analyzer_planner.py

"""Test rebalance analysis, candidate scoring and plan construction."""

from dataclasses import replace
from datetime import timedelta

import pytest

from vps_autoscaler.core.errors import PlanningError
from vps_autoscaler.core.models import (
    ANNOTATION_PROTECTED,
    NodePhase,
    RebalanceStrategy,
    RebalancingPolicy,
)
from vps_autoscaler.provider.interface import CheapestOfferingSource
from vps_autoscaler.rebalancer.planner import effective_batch_size, estimate_duration_seconds
from vps_autoscaler.rebalancer.types import (
    BatchStatus,
    BatchState,
    ExecutionState,
    Opportunity,
    RecommendedAction,
    RollbackAction,
)


@pytest.fixture
def opportunity():
    return Opportunity(
        opportunity_id="workers-small-to-amd",
        current_offering="small-2c4g",
        target_offering="medium-4c8g-amd",
        monthly_savings=40.0,
    )


def rebalancing_group(sample_group, **policy):
    return replace(sample_group, rebalancing_policy=RebalancingPolicy(enabled=True, **policy))


# -------------------------
# ANALYZER
# -------------------------

class TestAnalyzer:
    """Test candidate selection and recommendation."""

    def test_oldest_node_first(self, analyzer, seeded, sample_group, opportunity, now):
        """Test older nodes score higher and lead the candidate list."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))

        analysis = analyzer.analyze(group, opportunity, nodes, now)

        assert [c.node_id for c in analysis.candidates] == [
            "workers-n0", "workers-n1", "workers-n2", "workers-n3",
        ]
        assert analysis.candidates[0].age_days == pytest.approx(30.0)
        assert analysis.recommended_action == RecommendedAction.PROCEED
        assert analysis.safe_to_rebalance

    def test_protected_node_not_eligible(self, analyzer, seeded, sample_group, opportunity, now):
        """Test a protected node is reported but never eligible."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        nodes[0].annotations[ANNOTATION_PROTECTED] = "true"

        analysis = analyzer.analyze(group, opportunity, nodes, now)

        protected = next(c for c in analysis.candidates if c.node_id == "workers-n0")
        assert not protected.safe_to_rebalance
        assert "protected" in protected.reason
        assert len(analysis.eligible()) == 3

    def test_local_storage_skipped(self, analyzer, seeded, cluster, sample_group, opportunity, now):
        """Test nodes with local storage are skipped when the policy says so."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        cluster.local_storage.add(nodes[1].node_name)

        analysis = analyzer.analyze(group, opportunity, nodes, now)

        assert "workers-n1" not in [c.node_id for c in analysis.eligible()]

    def test_only_nodes_on_current_offering(self, analyzer, seeded, sample_group, opportunity, now):
        """Test nodes on other offerings are not candidates."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        nodes[3].offering_id = "medium-4c8g"

        analysis = analyzer.analyze(group, opportunity, nodes, now)

        assert len(analysis.candidates) == 3

    def test_cooldown_postpones(self, analyzer, seeded, sample_group, opportunity, now):
        """Test a recent rebalance postpones the next one."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        group.status.last_rebalance_time = now - timedelta(minutes=10)

        analysis = analyzer.analyze(group, opportunity, nodes, now)

        assert analysis.recommended_action == RecommendedAction.POSTPONE
        assert not analysis.safe_to_rebalance

    def test_missing_target_offering_rejects(self, analyzer, seeded, sample_group, now):
        """Test an unavailable target offering rejects the opportunity."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        gone = Opportunity("x", "small-2c4g", "retired-offering")

        analysis = analyzer.analyze(group, gone, nodes, now)

        assert analysis.recommended_action == RecommendedAction.REJECT

    def test_terminating_node_postpones(self, analyzer, seeded, sample_group, opportunity, now):
        """Test an in-progress termination blocks rebalancing."""
        group, nodes = seeded(5, group=rebalancing_group(sample_group))
        nodes[4].phase = NodePhase.TERMINATING

        analysis = analyzer.analyze(group, opportunity, nodes, now)

        assert analysis.recommended_action == RecommendedAction.POSTPONE


class TestCheapestOfferingSource:
    """Test the built-in opportunity source."""

    def test_suggests_cheaper_equal_or_larger(self, provider, seeded):
        """Test small nodes are not moved to a larger but pricier offering."""
        group, nodes = seeded(3, offering_id="medium-4c8g")

        found = CheapestOfferingSource(provider).opportunities(group, nodes)

        assert len(found) == 1
        assert found[0].target_offering == "medium-4c8g-amd"
        assert found[0].monthly_savings == pytest.approx(30.0)

    def test_nothing_cheaper(self, provider, seeded):
        """Test nodes already on the cheapest fitting offering produce nothing."""
        group, nodes = seeded(3)

        assert CheapestOfferingSource(provider).opportunities(group, nodes) == []


# -------------------------
# PLANNER
# -------------------------

class TestPlanner:
    """Test batching and plan validation."""

    def test_effective_batch_size(self):
        """Test the disruption budget caps the configured batch size."""
        policy = RebalancingPolicy(batch_size=5, min_healthy_percent=75)

        assert effective_batch_size(policy, 4) == 1
        assert effective_batch_size(policy, 3) == 0
        assert effective_batch_size(policy, 40) == 5

    def test_rolling_batches_chain(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test three eligible nodes in a group of four make three chained batches."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        nodes[3].annotations[ANNOTATION_PROTECTED] = "true"
        analysis = analyzer.analyze(group, opportunity, nodes, now)

        plan = planner.plan(analysis, group, now=now)

        assert [b.node_ids() for b in plan.batches] == [["workers-n0"], ["workers-n1"], ["workers-n2"]]
        assert [b.depends_on for b in plan.batches] == [[], [1], [2]]
        assert plan.max_concurrent == 2
        assert plan.plan_id.startswith("workers-")

    def test_surge_batches_independent(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test surge batches run without dependencies."""
        group, nodes = seeded(
            4,
            group=rebalancing_group(sample_group, strategy=RebalanceStrategy.SURGE, batch_size=2, min_healthy_percent=50),
        )
        analysis = analyzer.analyze(group, opportunity, nodes, now)

        plan = planner.plan(analysis, group, now=now)

        assert len(plan.batches) == 2
        assert all(b.depends_on == [] for b in plan.batches)

    def test_blue_green_single_batch(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test blue-green replaces every eligible node in one batch."""
        group, nodes = seeded(
            4,
            group=rebalancing_group(sample_group, strategy=RebalanceStrategy.BLUE_GREEN, min_healthy_percent=50),
        )
        analysis = analyzer.analyze(group, opportunity, nodes, now)

        plan = planner.plan(analysis, group, now=now)

        assert len(plan.batches) == 1
        assert len(plan.batches[0].nodes) == 4

    def test_every_eligible_node_in_exactly_one_batch(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test the batches partition the eligible candidates."""
        group, nodes = seeded(
            9,
            group=rebalancing_group(sample_group, strategy=RebalanceStrategy.SURGE, batch_size=2, min_healthy_percent=60),
        )
        nodes[4].annotations[ANNOTATION_PROTECTED] = "true"
        analysis = analyzer.analyze(group, opportunity, nodes, now)

        plan = planner.plan(analysis, group, now=now)

        planned = plan.all_node_ids()
        assert sorted(planned) == sorted(c.node_id for c in analysis.eligible())
        assert len(planned) == len(set(planned))

    def test_rollback_plan_covers_each_node(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test each node gets uncordon, terminate-replacement and recreate steps."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        analysis = analyzer.analyze(group, opportunity, nodes, now)

        plan = planner.plan(analysis, group, now=now)

        steps = plan.rollback_plan.steps_for(1)
        assert [s.action for s in steps] == [
            RollbackAction.UNCORDON,
            RollbackAction.TERMINATE_REPLACEMENT,
            RollbackAction.RECREATE_OLD,
        ]

    def test_postponed_analysis_not_planned(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test a failing cooldown yields no plan."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        group.status.last_rebalance_time = now - timedelta(minutes=5)
        analysis = analyzer.analyze(group, opportunity, nodes, now)

        with pytest.raises(PlanningError):
            planner.plan(analysis, group, now=now)

    def test_no_disruption_budget(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test three nodes at 75% minimum health leave nothing to replace."""
        group, nodes = seeded(3, group=rebalancing_group(sample_group))
        analysis = analyzer.analyze(group, opportunity, nodes, now)

        with pytest.raises(PlanningError):
            planner.plan(analysis, group, now=now)

    def test_validate_rejects_duplicate_node(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test a node listed twice is rejected."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        plan = planner.plan(analyzer.analyze(group, opportunity, nodes, now), group, now=now)
        plan.batches[1].nodes.append(plan.batches[0].nodes[0])

        with pytest.raises(PlanningError):
            planner.validate_plan(plan, group)

    def test_validate_rejects_forward_dependency(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test a batch may only depend on earlier batches."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        plan = planner.plan(analyzer.analyze(group, opportunity, nodes, now), group, now=now)
        plan.batches[0].depends_on = [2]

        with pytest.raises(PlanningError):
            planner.validate_plan(plan, group)

    def test_can_execute_batch(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test dependencies and the concurrency limit gate each batch."""
        group, nodes = seeded(4, group=rebalancing_group(sample_group))
        plan = planner.plan(analyzer.analyze(group, opportunity, nodes, now), group, now=now)
        state = ExecutionState(
            plan_id=plan.plan_id,
            group_name=group.name,
            batches=[BatchState(b.batch_number) for b in plan.batches],
        )

        assert planner.can_execute_batch(plan, state, 1)
        assert not planner.can_execute_batch(plan, state, 2)

        state.batch(1).status = BatchStatus.SUCCEEDED
        assert planner.can_execute_batch(plan, state, 2)

    def test_failure_limit_stops_new_batches(self, analyzer, planner, seeded, sample_group, opportunity, now):
        """Test no batch starts once max_concurrent batches have failed."""
        group, nodes = seeded(
            4,
            group=rebalancing_group(sample_group, strategy=RebalanceStrategy.SURGE, min_healthy_percent=50),
        )
        plan = planner.plan(analyzer.analyze(group, opportunity, nodes, now), group, now=now)
        state = ExecutionState(
            plan_id=plan.plan_id,
            group_name=group.name,
            batches=[BatchState(b.batch_number) for b in plan.batches],
        )
        assert plan.total_nodes == 4
        assert len(plan.batches) == 4

        state.batch(1).status = BatchStatus.FAILED
        assert planner.can_execute_batch(plan, state, 3)

        state.batch(2).status = BatchStatus.ROLLED_BACK
        assert not planner.can_execute_batch(plan, state, 3)

    def test_estimate_duration(self):
        """Test duration scales with sequential rounds plus a buffer."""
        rolling = RebalancingPolicy(batch_size=1)
        blue_green = RebalancingPolicy(strategy=RebalanceStrategy.BLUE_GREEN)

        assert estimate_duration_seconds(3, rolling) == int(3 * 900 * 1.2)
        assert estimate_duration_seconds(3, blue_green) == int(900 * 1.2)
        assert estimate_duration_seconds(0, rolling) == 0
