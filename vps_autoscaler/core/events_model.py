"""Event models for the autoscaler controller."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


NORMAL = "Normal"
WARNING = "Warning"


@dataclass
class ControllerEvent:
    """Kubernetes-style event recorded against a group or a node."""

    reason: str
    event_type: str
    object_kind: str
    object_name: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    # -------------------------
    # GROUP EVENTS
    # -------------------------

    @staticmethod
    def scaling_up(group, current: int, desired: int):
        return ControllerEvent(
            reason="ScalingUp",
            event_type=NORMAL,
            object_kind="NodeGroup",
            object_name=group.name,
            message=f"Scaling up from {current} to {desired} nodes",
            metadata={"current": current, "desired": desired},
        )

    @staticmethod
    def scaling_down(group, current: int, desired: int, node_ids):
        return ControllerEvent(
            reason="ScalingDown",
            event_type=NORMAL,
            object_kind="NodeGroup",
            object_name=group.name,
            message=f"Scaling down from {current} to {desired} nodes",
            metadata={"current": current, "desired": desired, "nodes": list(node_ids)},
        )

    @staticmethod
    def scale_limit_reached(group, limit: int):
        return ControllerEvent(
            reason="ScaleLimitReached",
            event_type=WARNING,
            object_kind="NodeGroup",
            object_name=group.name,
            message=f"Desired capacity clamped at max_nodes={limit}",
            metadata={"limit": limit},
        )

    @staticmethod
    def provisioning_failed(group, message: str):
        return ControllerEvent(
            reason="ProvisioningFailed",
            event_type=WARNING,
            object_kind="NodeGroup",
            object_name=group.name,
            message=message,
        )

    @staticmethod
    def invalid_configuration(group, message: str):
        return ControllerEvent(
            reason="InvalidConfiguration",
            event_type=WARNING,
            object_kind="NodeGroup",
            object_name=group.name,
            message=message,
        )

    @staticmethod
    def safety_check_failed(group_name: str, message: str):
        return ControllerEvent(
            reason="SafetyCheckFailed",
            event_type=WARNING,
            object_kind="NodeGroup",
            object_name=group_name,
            message=message,
        )

    @staticmethod
    def rebalance(reason: str, group_name: str, plan_id: str, message: str, warning: bool = False):
        return ControllerEvent(
            reason=reason,
            event_type=WARNING if warning else NORMAL,
            object_kind="NodeGroup",
            object_name=group_name,
            message=message,
            metadata={"plan_id": plan_id},
        )

    # -------------------------
    # NODE EVENTS
    # -------------------------

    @staticmethod
    def for_node(node, reason: str, message: str, warning: bool = False):
        return ControllerEvent(
            reason=reason,
            event_type=WARNING if warning else NORMAL,
            object_kind="ManagedNode",
            object_name=node.node_id,
            message=message,
            metadata={
                "group": node.group_name,
                "instance_id": node.instance_id,
                "phase": node.phase.value,
            },
        )
