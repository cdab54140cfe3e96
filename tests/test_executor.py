#tests\test_executor.py

"""Test rebalance plan execution, pausing, fallback and rollback."""

from dataclasses import replace
from datetime import timedelta

import pytest

from vps_autoscaler.core.conditions import is_condition_true
from vps_autoscaler.core.errors import DrainError, LifecycleError, ProviderAPIError, RebalanceInProgressError
from vps_autoscaler.core.models import (
    ANNOTATION_PAUSED,
    ANNOTATION_PROTECTED,
    ConditionType,
    CreationReason,
    MaintenanceWindow,
    NodePhase,
    RebalanceStrategy,
    RebalancingPolicy,
)
from vps_autoscaler.provider.interface import ClusterHealth
from vps_autoscaler.rebalancer.executor import RebalanceExecutor
from vps_autoscaler.rebalancer.types import BatchStatus, ExecutionStatus, NodeStep, Opportunity


OPPORTUNITY = Opportunity(
    opportunity_id="workers-small-to-amd",
    current_offering="small-2c4g",
    target_offering="medium-4c8g-amd",
    monthly_savings=40.0,
)


@pytest.fixture
def make_plan(analyzer, planner, seeded, sample_group, now):
    """Seed `count` nodes and plan their move to medium-4c8g-amd."""

    def _make(count=4, protect=(), allow_mixed=False, **policy):
        group = replace(
            sample_group,
            allow_mixed_instances=allow_mixed,
            rebalancing_policy=RebalancingPolicy(enabled=True, **policy),
        )
        stored, nodes = seeded(count, group=group)
        for index in protect:
            nodes[index].annotations[ANNOTATION_PROTECTED] = "true"
        analysis = analyzer.analyze(stored, OPPORTUNITY, nodes, now)
        return planner.plan(analysis, stored, now=now)

    return _make


def drive(executor, lifecycle, nodes, plan, start, rounds=120):
    """Alternate executor passes with lifecycle reconciles until the plan finishes."""
    moment = start
    result = None
    for _ in range(rounds):
        result = executor.execute(plan, now=moment)
        if result.status.is_terminal():
            return result
        for node in nodes.list_all():
            lifecycle.reconcile(node.node_id, now=moment)
        moment += timedelta(seconds=1)
    return result


class TestHappyPath:
    """Test plans that complete."""

    def test_rolling_replaces_every_node(self, executor, lifecycle, nodes, groups, rebalances, emitter, make_plan, now):
        """Test a rolling plan replaces all four nodes one batch at a time."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        assert is_condition_true(groups.get("workers").status.conditions, ConditionType.REBALANCING)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert sorted(result.completed_nodes) == ["workers-n0", "workers-n1", "workers-n2", "workers-n3"]

        state = rebalances.get_execution(plan.plan_id)
        assert [b.status for b in state.batches] == [BatchStatus.SUCCEEDED] * 4

        remaining = nodes.list_by_group("workers")
        replacements = [n for n in remaining if n.owner_plan_id == plan.plan_id]
        assert len(replacements) == 4
        assert all(n.offering_id == "medium-4c8g-amd" for n in replacements)
        assert all(n.creation_reason == CreationReason.REBALANCE for n in replacements)
        assert all(n.is_ready() for n in replacements)
        assert all(n.node_id.startswith("workers-") for n in replacements)

        group = groups.get("workers")
        assert group.status.last_rebalance_time is not None
        assert not is_condition_true(group.status.conditions, ConditionType.REBALANCING)
        assert "RebalanceStarted" in emitter.reasons()
        assert emitter.reasons()[-1] == "RebalanceCompleted"

    def test_rolling_never_overlaps_batches(self, executor, lifecycle, nodes, cluster, make_plan, now):
        """Test each old node is cordoned only after the previous one was drained."""
        plan = make_plan(4)
        executor.start(plan, now=now)

        drive(executor, lifecycle, nodes, plan, now)

        order = [c[1] for c in cluster.calls if c[0] in ("cordon", "delete_node") and "workers-n" in c[1]]
        assert order == [
            "k8s-workers-n0", "k8s-workers-n0",
            "k8s-workers-n1", "k8s-workers-n1",
            "k8s-workers-n2", "k8s-workers-n2",
            "k8s-workers-n3", "k8s-workers-n3",
        ]

    def test_finished_plan_is_not_touched_again(self, executor, lifecycle, nodes, provider, cluster, make_plan, now):
        """Test re-running a succeeded plan performs no external calls."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        drive(executor, lifecycle, nodes, plan, now)
        provider.calls.clear()
        cluster.calls.clear()

        result = executor.execute(plan, now=now + timedelta(hours=1))

        assert result.status == ExecutionStatus.SUCCEEDED
        assert provider.mutations() == []
        assert cluster.mutations() == []

    def test_blue_green_provisions_everything_first(self, executor, lifecycle, nodes, cluster, make_plan, now):
        """Test no old node is cordoned before every replacement has joined."""
        plan = make_plan(4, strategy=RebalanceStrategy.BLUE_GREEN, min_healthy_percent=50)
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.SUCCEEDED
        kinds = [c[0] for c in cluster.calls]
        last_join = max(i for i, kind in enumerate(kinds) if kind == "join")
        first_cordon = kinds.index("cordon")
        assert last_join < first_cordon

    def test_resume_with_new_executor(
        self, groups, nodes, rebalances, lifecycle, cluster, gate, emitter, backoff, executor, make_plan, now
    ):
        """Test a fresh executor picks up persisted progress."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        drive(executor, lifecycle, nodes, plan, now, rounds=12)
        progressed = rebalances.get_execution(plan.plan_id)
        assert progressed.batch(1).status == BatchStatus.SUCCEEDED

        restarted = RebalanceExecutor(
            groups=groups,
            nodes=nodes,
            rebalances=rebalances,
            lifecycle=lifecycle,
            cluster=cluster,
            gate=gate,
            emitter=emitter,
            backoff=backoff,
        )
        result = drive(restarted, lifecycle, nodes, rebalances.get_plan(plan.plan_id), now + timedelta(minutes=1))

        assert result.status == ExecutionStatus.SUCCEEDED
        assert len([n for n in nodes.list_by_group("workers") if n.owner_plan_id == plan.plan_id]) == 4

    def test_second_plan_rejected_while_active(self, executor, make_plan, planner, now):
        """Test only one execution per group may be active."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        other = replace(plan, plan_id="workers-other")

        with pytest.raises(RebalanceInProgressError):
            executor.start(other, now=now)

    def test_plan_saved_before_execution(self, executor, rebalances, monkeypatch, make_plan, now):
        """Test the plan is readable by the time its execution state exists."""
        plan = make_plan(4)
        seen = []
        create = rebalances.create_execution

        def create_execution(state):
            seen.append(rebalances.get_plan(state.plan_id))
            create(state)

        monkeypatch.setattr(rebalances, "create_execution", create_execution)
        executor.start(plan, now=now)

        assert seen[0] is not None
        assert seen[0].plan_id == plan.plan_id


class TestRollback:
    """Test batch rollback on drain and workload-health failures."""

    def test_drain_failure_rolls_back_batch(
        self, executor, lifecycle, nodes, groups, rebalances, cluster, emitter, make_plan, now
    ):
        """Test a PDB refusal on batch 2 is retried, then restores its node and stops the plan."""
        plan = make_plan(4, protect=(3,), drain_timeout_seconds=20)
        assert [b.node_ids() for b in plan.batches] == [["workers-n0"], ["workers-n1"], ["workers-n2"]]
        cluster.drain_errors["k8s-workers-n1"] = DrainError("Cannot evict pod as it would violate the pod's disruption budget")
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.ROLLED_BACK
        assert cluster.calls.count(("drain", "k8s-workers-n1", False)) > 1
        state = rebalances.get_execution(plan.plan_id)
        assert state.batch(1).status == BatchStatus.SUCCEEDED
        assert state.batch(2).status == BatchStatus.ROLLED_BACK
        assert state.batch(3).status == BatchStatus.PENDING

        old = nodes.get("workers-n1")
        assert old.phase == NodePhase.READY
        assert not old.cordoned
        assert ("uncordon", "k8s-workers-n1") in cluster.calls

        replacement_id = state.batch(2).nodes[0].replacement_node_id
        assert nodes.get(replacement_id).is_leaving()
        assert state.batch(2).nodes[0].step == NodeStep.ROLLED_BACK

        assert nodes.get("workers-n2").phase == NodePhase.READY
        assert ("cordon", "k8s-workers-n2") not in cluster.calls

        reasons = emitter.reasons()
        assert "DrainFailed" in reasons
        assert "RebalanceRolledBack" in reasons
        assert not is_condition_true(groups.get("workers").status.conditions, ConditionType.REBALANCING)

    def test_early_rollback_finishes_long_rolling_plan(self, executor, lifecycle, nodes, rebalances, cluster, make_plan, now):
        """Test a rollback in batch 2 of 5 ends the plan although batches 3-5 never ran."""
        plan = make_plan(5, drain_timeout_seconds=20, min_healthy_percent=75)
        assert len(plan.batches) == 5
        cluster.drain_errors["k8s-workers-n1"] = DrainError("blocked")
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.ROLLED_BACK
        state = rebalances.get_execution(plan.plan_id)
        assert [b.status for b in state.batches] == [
            BatchStatus.SUCCEEDED,
            BatchStatus.ROLLED_BACK,
            BatchStatus.PENDING,
            BatchStatus.PENDING,
            BatchStatus.PENDING,
        ]

    def test_unhealthy_workloads_roll_back(self, executor, lifecycle, nodes, rebalances, cluster, emitter, monkeypatch, make_plan, now):
        """Test workloads that never settle on the replacement undo the batch after the health timeout."""
        plan = make_plan(4, protect=(1, 2, 3), health_check_timeout_seconds=10)
        monkeypatch.setattr(cluster, "workloads_healthy", lambda node_name: False)
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.ROLLED_BACK
        ns = rebalances.get_execution(plan.plan_id).batch(1).nodes[0]
        assert ns.step == NodeStep.ROLLED_BACK
        assert ns.verify_started_at is not None

        old = nodes.get("workers-n0")
        assert old.phase == NodePhase.READY
        assert not old.cordoned
        assert not old.drained
        assert nodes.get(ns.replacement_node_id).is_leaving()
        assert "RebalanceRolledBack" in emitter.reasons()

    def test_failed_rollback_fails_plan(self, executor, lifecycle, nodes, rebalances, cluster, emitter, monkeypatch, make_plan, now):
        """Test an error while restoring the old node fails the plan and reports the sub-step."""
        plan = make_plan(4, protect=(1, 2, 3), drain_timeout_seconds=20)
        cluster.drain_errors["k8s-workers-n0"] = DrainError("blocked")

        def uncordon_fails(node_name):
            raise LifecycleError(f"apiserver unreachable while uncordoning {node_name}")

        monkeypatch.setattr(cluster, "uncordon_node", uncordon_fails)
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.FAILED
        assert result.failed_nodes == ["workers-n0"]
        state = rebalances.get_execution(plan.plan_id)
        assert state.batch(1).nodes[0].step == NodeStep.FAILED
        assert any("restore-old" in e for e in state.errors)

        reasons = emitter.reasons()
        assert "RollbackFailed" in reasons
        assert reasons[-1] == "RebalanceFailed"

    def test_drain_failure_without_auto_rollback_fails(self, executor, lifecycle, nodes, rebalances, cluster, make_plan, now):
        """Test the batch fails in place when auto-rollback is off."""
        plan = make_plan(4, protect=(1, 2, 3), auto_rollback=False, drain_timeout_seconds=20)
        cluster.drain_errors["k8s-workers-n0"] = DrainError("blocked")
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.FAILED
        assert result.failed_nodes == ["workers-n0"]
        assert rebalances.get_execution(plan.plan_id).batch(1).status == BatchStatus.FAILED

    def test_refused_drain_retried_before_forcing(self, executor, lifecycle, nodes, cluster, rebalances, make_plan, now):
        """Test force_drain_on_timeout only forces once drain_timeout_seconds has passed."""
        plan = make_plan(4, protect=(1, 2, 3), force_drain_on_timeout=True, drain_timeout_seconds=20)
        cluster.drain_errors["k8s-workers-n0"] = DrainError("blocked")
        executor.start(plan, now=now)

        drive(executor, lifecycle, nodes, plan, now, rounds=15)

        ns = rebalances.get_execution(plan.plan_id).batch(1).nodes[0]
        assert ns.step == NodeStep.CORDONED
        assert ns.attempts >= 1
        assert ns.next_attempt_at is not None
        assert ("drain", "k8s-workers-n0", True) not in cluster.calls

        result = drive(executor, lifecycle, nodes, plan, now + timedelta(seconds=15))

        assert result.status == ExecutionStatus.SUCCEEDED
        forced_at = cluster.calls.index(("drain", "k8s-workers-n0", True))
        assert cluster.calls[:forced_at].count(("drain", "k8s-workers-n0", False)) >= 2


class TestProvisioningFailures:
    """Test replacement retries and offering fallback."""

    def test_falls_back_to_next_offering(self, executor, lifecycle, nodes, provider, rebalances, make_plan, now):
        """Test a sold-out target falls back to another allowed offering."""
        plan = make_plan(4, protect=(1, 2, 3), allow_mixed=True, max_retries=0)
        provider.create_errors = [ProviderAPIError(400, "offering sold out")]
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.SUCCEEDED
        ns = rebalances.get_execution(plan.plan_id).batch(1).nodes[0]
        assert ns.offering_id == "medium-4c8g"
        assert nodes.get(ns.replacement_node_id).offering_id == "medium-4c8g"

    def test_exhausted_without_fallback(self, executor, lifecycle, nodes, provider, emitter, make_plan, now):
        """Test the node fails once retries run out and mixing is not allowed."""
        plan = make_plan(4, protect=(1, 2, 3), max_retries=1)
        provider.create_errors = [ProviderAPIError(400, "offering sold out")] * 2
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.FAILED
        assert result.failed_nodes == ["workers-n0"]
        assert nodes.get("workers-n0").phase == NodePhase.READY
        assert emitter.reasons()[-1] == "RebalanceFailed"


class TestPause:
    """Test pausing and resuming."""

    def test_annotation_pauses_and_resumes(self, executor, groups, nodes, rebalances, emitter, make_plan, now):
        """Test the paused annotation halts progress until removed."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        group = groups.get("workers")
        group.annotations[ANNOTATION_PAUSED] = "true"
        groups.update(group)

        result = executor.execute(plan, now=now)
        executor.execute(plan, now=now + timedelta(seconds=1))

        assert result.status == ExecutionStatus.PAUSED
        assert emitter.reasons().count("RebalancePaused") == 1
        assert len(nodes.list_by_group("workers")) == 4

        group = groups.get("workers")
        del group.annotations[ANNOTATION_PAUSED]
        groups.update(group)

        result = executor.execute(plan, now=now + timedelta(seconds=2))

        assert result.status == ExecutionStatus.RUNNING
        assert len(nodes.list_by_group("workers")) == 5

    def test_unhealthy_cluster_pauses(self, executor, cluster, make_plan, now):
        """Test a failing cluster health check pauses the plan."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        cluster.health_override = ClusterHealth(True, 4, 1)

        assert executor.execute(plan, now=now).status == ExecutionStatus.PAUSED

        cluster.health_override = None
        assert executor.execute(plan, now=now).status == ExecutionStatus.RUNNING

    def test_disruption_budget_holds_batch(self, executor, nodes, cluster, rebalances, make_plan, now):
        """Test a batch does not start while a PDB blocks its node."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        cluster.pdb_blocked.add("k8s-workers-n0")

        executor.execute(plan, now=now)

        assert rebalances.get_execution(plan.plan_id).batch(1).status == BatchStatus.PENDING
        assert len(nodes.list_by_group("workers")) == 4

    def test_peak_hours_hold_batch(self, executor, groups, nodes, rebalances, make_plan, now):
        """Test a batch does not start inside peak hours even though the plan already runs."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        group = groups.get("workers")
        group.rebalancing_policy.peak_hours = [MaintenanceWindow("11:00", "13:00")]
        groups.update(group)

        executor.execute(plan, now=now)

        assert rebalances.get_execution(plan.plan_id).batch(1).status == BatchStatus.PENDING
        assert len(nodes.list_by_group("workers")) == 4

    def test_quota_holds_batch(self, executor, nodes, provider, rebalances, make_plan, now):
        """Test a batch waits while the provider quota cannot fit its replacements."""
        plan = make_plan(4)
        executor.start(plan, now=now)
        provider.quota = 0

        executor.execute(plan, now=now)
        assert rebalances.get_execution(plan.plan_id).batch(1).status == BatchStatus.PENDING

        provider.quota = 5
        executor.execute(plan, now=now + timedelta(seconds=1))
        assert rebalances.get_execution(plan.plan_id).batch(1).status == BatchStatus.RUNNING
        assert len(nodes.list_by_group("workers")) == 5


# -------------------------
# SURGE
# -------------------------

class TestSurge:
    """Test concurrent batches under the surge strategy."""

    def test_more_batches_than_concurrency(self, executor, lifecycle, nodes, cluster, rebalances, make_plan, now):
        """Test four single-node batches complete two at a time."""
        plan = make_plan(4, strategy=RebalanceStrategy.SURGE, min_healthy_percent=50, max_concurrent=2)
        assert len(plan.batches) == 4
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert [b.status for b in rebalances.get_execution(plan.plan_id).batches] == [BatchStatus.SUCCEEDED] * 4
        for index in range(4):
            assert ("cordon", f"k8s-workers-n{index}") in cluster.calls

    def test_old_nodes_out_of_service_stay_within_budget(self, executor, lifecycle, nodes, make_plan, now):
        """Test no more than half of four nodes are cordoned at once with min_healthy_percent=50."""
        plan = make_plan(4, strategy=RebalanceStrategy.SURGE, min_healthy_percent=50, max_concurrent=4)
        executor.start(plan, now=now)

        peak = 0
        moment = now
        result = None
        for _ in range(120):
            result = executor.execute(plan, now=moment)
            out = [n for n in nodes.list_by_group("workers") if n.cordoned and n.phase != NodePhase.DELETING]
            peak = max(peak, len(out))
            if result.status.is_terminal():
                break
            for node in nodes.list_all():
                lifecycle.reconcile(node.node_id, now=moment)
            moment += timedelta(seconds=1)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert peak == 2

    def test_failed_batches_reach_concurrency_limit(self, executor, lifecycle, nodes, cluster, rebalances, make_plan, now):
        """Test the plan fails once max_concurrent batches failed and no further batch starts."""
        plan = make_plan(
            4,
            strategy=RebalanceStrategy.SURGE,
            min_healthy_percent=50,
            max_concurrent=2,
            auto_rollback=False,
            drain_timeout_seconds=20,
        )
        cluster.drain_errors["k8s-workers-n0"] = DrainError("blocked")
        cluster.drain_errors["k8s-workers-n1"] = DrainError("blocked")
        executor.start(plan, now=now)

        result = drive(executor, lifecycle, nodes, plan, now)

        assert result.status == ExecutionStatus.FAILED
        assert sorted(result.failed_nodes) == ["workers-n0", "workers-n1"]
        state = rebalances.get_execution(plan.plan_id)
        assert [b.status for b in state.batches] == [
            BatchStatus.FAILED,
            BatchStatus.FAILED,
            BatchStatus.PENDING,
            BatchStatus.PENDING,
        ]
        assert ("cordon", "k8s-workers-n2") not in cluster.calls
        assert not [n for n in nodes.list_by_group("workers") if n.replaces_node_id == "workers-n2"]
