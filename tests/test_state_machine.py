#tests\test_state_machine.py

"""Test the managed node lifecycle state machine."""

from datetime import timedelta

import pytest

from vps_autoscaler.core.errors import DrainError, InvalidPhaseTransition, LifecycleError, TransientProviderError
from vps_autoscaler.core.models import ConditionType, ManagedNode, NodePhase
from vps_autoscaler.core.conditions import is_condition_true
from vps_autoscaler.core.state_machine import NodeLifecycleStateMachine
from vps_autoscaler.provider.interface import InstanceSpec, InstanceStatus


def pending_node(group, node_id="workers-abc123"):
    return ManagedNode(
        node_id=node_id,
        group_name=group.name,
        offering_id="small-2c4g",
        datacenter_id=group.datacenter_id,
    )


class TestTransitions:
    """Test the static transition table."""

    def test_forward_transition_stamps_timestamps(self, sample_group, now):
        """Test Provisioned and Ready record when they happened."""
        node = pending_node(sample_group)
        NodeLifecycleStateMachine.transition(node, NodePhase.PROVISIONING, now=now)
        NodeLifecycleStateMachine.transition(node, NodePhase.PROVISIONED, now=now)

        assert node.provisioned_at == now
        assert node.phase_changed_at == now

    def test_illegal_transition_rejected(self, sample_group, now):
        """Test skipping phases is not allowed."""
        node = pending_node(sample_group)

        with pytest.raises(InvalidPhaseTransition):
            NodeLifecycleStateMachine.transition(node, NodePhase.READY, now=now)

    def test_deleting_is_one_way(self, sample_group, now):
        """Test a deleting node cannot return to service."""
        node = pending_node(sample_group)
        node.phase = NodePhase.DELETING

        with pytest.raises(InvalidPhaseTransition):
            NodeLifecycleStateMachine.transition(node, NodePhase.READY, now=now)


class TestProvisioning:
    """Test Pending -> Ready."""

    def test_happy_path_to_ready(self, lifecycle, groups, nodes, provider, cluster, emitter, sample_group, now):
        """Test a pending node walks through every phase to Ready."""
        groups.create(sample_group)
        nodes.create(pending_node(sample_group))

        phases = []
        for step in range(4):
            lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=step))
            phases.append(nodes.get("workers-abc123").phase)

        assert phases == [
            NodePhase.PROVISIONING,
            NodePhase.PROVISIONED,
            NodePhase.JOINING,
            NodePhase.READY,
        ]
        node = nodes.get("workers-abc123")
        assert node.instance_id == "vm-0001"
        assert node.node_name == "k8s-workers-abc123"
        assert is_condition_true(node.conditions, ConditionType.NODE_READY)
        assert ["VPSCreated", "NodeJoined", "NodeReady"] == emitter.reasons()

    def test_create_uses_node_id_as_idempotency_key(self, lifecycle, groups, nodes, provider, sample_group, now):
        """Test the provider receives a stable idempotency key."""
        groups.create(sample_group)
        nodes.create(pending_node(sample_group))

        lifecycle.reconcile("workers-abc123", now=now)

        spec = provider.specs["vm-0001"]
        assert spec.idempotency_key == "workers-abc123"
        assert "nodegroup:workers" in spec.tags

    def test_restart_after_checkpoint_adopts_instance(self, lifecycle, groups, nodes, provider, sample_group, now):
        """Test a create that went through before a crash is not repeated."""
        groups.create(sample_group)
        node = pending_node(sample_group)
        node.create_requested_at = now - timedelta(seconds=30)
        nodes.create(node)
        # the earlier create reached the provider
        provider.create_instance(InstanceSpec("workers-abc123", "workers-abc123", "dc-fra1", "small-2c4g", "ubuntu-22.04"))
        provider.calls.clear()

        lifecycle.reconcile("workers-abc123", now=now)

        assert provider.mutations() == []
        stored = nodes.get("workers-abc123")
        assert stored.phase == NodePhase.PROVISIONING
        assert stored.instance_id == "vm-0001"

    def test_provisioning_timeout_fails_node(self, lifecycle, groups, nodes, provider, emitter, sample_group, now):
        """Test an instance that never runs fails the node."""
        provider.initial_status = InstanceStatus.PROVISIONING
        groups.create(sample_group)
        nodes.create(pending_node(sample_group))

        lifecycle.reconcile("workers-abc123", now=now)
        lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=60))
        assert nodes.get("workers-abc123").phase == NodePhase.PROVISIONING

        lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=700))

        node = nodes.get("workers-abc123")
        assert node.phase == NodePhase.FAILED
        assert "600s" in node.last_error
        assert "ProvisioningFailed" in emitter.reasons()

    def test_join_timeout_fails_node(self, lifecycle, groups, nodes, cluster, emitter, sample_group, now):
        """Test a node that never turns Ready fails with JoinFailed."""
        cluster.join_ready = False
        groups.create(sample_group)
        nodes.create(pending_node(sample_group))

        for step in range(3):
            lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=step))
        assert nodes.get("workers-abc123").phase == NodePhase.JOINING

        lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=1000))

        assert nodes.get("workers-abc123").phase == NodePhase.FAILED
        assert "JoinFailed" in emitter.reasons()


class TestTransientErrors:
    """Test backoff on retryable provider failures."""

    def test_transient_error_backs_off_then_succeeds(self, lifecycle, groups, nodes, provider, sample_group, now):
        """Test a transient create error is retried after the backoff delay."""
        provider.create_errors = [TransientProviderError("503 from provider")]
        groups.create(sample_group)
        nodes.create(pending_node(sample_group))

        result = lifecycle.reconcile("workers-abc123", now=now)

        node = nodes.get("workers-abc123")
        assert result.requeue_after == 5
        assert node.attempts == 1
        assert node.phase == NodePhase.PENDING

        early = lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=1))
        assert early.requeue_after == pytest.approx(4)
        assert [c for c in provider.mutations() if c[0] == "create"] == [("create", "workers-abc123")]

        lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=6))

        node = nodes.get("workers-abc123")
        assert node.phase == NodePhase.PROVISIONING
        assert node.attempts == 0

    def test_exhausted_retries_fail_node(self, lifecycle, groups, nodes, provider, emitter, sample_group, now):
        """Test the node fails once the retry budget is spent."""
        provider.create_errors = [TransientProviderError("timeout")] * 3
        groups.create(sample_group)
        nodes.create(pending_node(sample_group))

        lifecycle.reconcile("workers-abc123", now=now)
        lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=5))
        lifecycle.reconcile("workers-abc123", now=now + timedelta(seconds=15))

        node = nodes.get("workers-abc123")
        assert node.phase == NodePhase.FAILED
        assert "giving up after 3 attempts" in node.last_error
        assert "ProvisioningFailed" in emitter.reasons()


class TestTermination:
    """Test Terminating -> Deleting -> removed."""

    def test_drain_delete_and_remove(self, lifecycle, groups, nodes, provider, cluster, emitter, seeded, now):
        """Test a Ready node is cordoned, drained, deleted and forgotten."""
        _, created = seeded(3)
        node = nodes.get(created[0].node_id)

        lifecycle.request_termination(node, now=now, reason="scale-down")
        lifecycle.reconcile(node.node_id, now=now)

        stored = nodes.get(node.node_id)
        assert stored.phase == NodePhase.DELETING
        assert stored.delete_requested_at == now
        assert ("cordon", node.node_name) in cluster.mutations()
        assert ("drain", node.node_name, False) in cluster.mutations()
        assert ("delete_node", node.node_name) in cluster.mutations()
        assert ("delete", node.instance_id) in provider.mutations()

        result = lifecycle.reconcile(node.node_id, now=now + timedelta(seconds=10))

        assert result.removed
        assert nodes.get(node.node_id) is None
        assert emitter.reasons() == ["Terminating", "NodeDeleted"]

    def test_drain_in_progress_requeues(self, lifecycle, nodes, cluster, seeded, now):
        """Test an unfinished drain keeps the node Terminating."""
        _, created = seeded(3)
        cluster.drain_result = False
        node = nodes.get(created[0].node_id)
        lifecycle.request_termination(node, now=now)

        result = lifecycle.reconcile(node.node_id, now=now)

        assert nodes.get(node.node_id).phase == NodePhase.TERMINATING
        assert result.requeue_after == lifecycle.fast_requeue

    def test_repeated_drain_failure_returns_node_to_service(self, lifecycle, nodes, cluster, emitter, seeded, now):
        """Test a drain that keeps failing is abandoned and the node uncordoned."""
        _, created = seeded(3)
        node = nodes.get(created[0].node_id)
        cluster.drain_errors[node.node_name] = DrainError("PodDisruptionBudget blocks eviction")
        lifecycle.request_termination(node, now=now)

        lifecycle.reconcile(node.node_id, now=now)
        lifecycle.reconcile(node.node_id, now=now + timedelta(seconds=6))
        lifecycle.reconcile(node.node_id, now=now + timedelta(seconds=20))

        stored = nodes.get(node.node_id)
        assert stored.phase == NodePhase.READY
        assert not stored.cordoned
        assert ("uncordon", node.node_name) in cluster.mutations()
        assert emitter.reasons().count("DrainFailed") == 3

    def test_pre_drained_node_skips_drain(self, lifecycle, nodes, cluster, seeded, now):
        """Test a node handed over already drained goes straight to deletion."""
        _, created = seeded(3)
        node = nodes.get(created[0].node_id)
        lifecycle.request_termination(node, now=now, drained=True)

        lifecycle.reconcile(node.node_id, now=now)

        assert nodes.get(node.node_id).phase == NodePhase.DELETING
        assert not any(call[0] == "drain" for call in cluster.mutations())

    def test_cancel_after_delete_requested_fails(self, lifecycle, nodes, seeded, now):
        """Test a node cannot be recalled once deletion was requested."""
        _, created = seeded(3)
        node = nodes.get(created[0].node_id)
        lifecycle.request_termination(node, now=now, drained=True)
        lifecycle.reconcile(node.node_id, now=now)

        with pytest.raises(LifecycleError):
            lifecycle.cancel_termination(nodes.get(node.node_id), now=now)


class TestReady:
    """Test steady-state readiness tracking."""

    def test_not_ready_kubelet_flips_condition(self, lifecycle, nodes, cluster, seeded, now):
        """Test NodeReady follows the kubelet without changing phase."""
        _, created = seeded(3)
        node = nodes.get(created[0].node_id)
        lifecycle.reconcile(node.node_id, now=now)
        assert is_condition_true(nodes.get(node.node_id).conditions, ConditionType.NODE_READY)

        cluster.ready[node.node_name] = False
        lifecycle.reconcile(node.node_id, now=now + timedelta(seconds=30))

        stored = nodes.get(node.node_id)
        assert stored.phase == NodePhase.READY
        assert not is_condition_true(stored.conditions, ConditionType.NODE_READY)
