from typing import List

from fastapi import APIRouter, Depends, HTTPException

from vps_autoscaler.api.container import get_container
from vps_autoscaler.api.schemas.nodegroup import (
    BatchResponse,
    ConditionResponse,
    ManagedNodeResponse,
    NodeGroupResponse,
    RebalanceResponse,
)
from vps_autoscaler.core.models import ManagedNode, NodeGroup
from vps_autoscaler.rebalancer.types import ExecutionState

router = APIRouter(prefix="/nodegroups", tags=["nodegroups"])


def _group_response(group: NodeGroup) -> NodeGroupResponse:
    status = group.status
    return NodeGroupResponse(
        name=group.name,
        min_nodes=group.min_nodes,
        max_nodes=group.max_nodes,
        datacenter_id=group.datacenter_id,
        offering_ids=list(group.offering_ids),
        paused=group.is_paused(),
        rebalancing_enabled=group.rebalancing_policy.enabled,
        current_nodes=status.current_nodes,
        desired_nodes=status.desired_nodes,
        ready_nodes=status.ready_nodes,
        last_scale_time=status.last_scale_time,
        last_rebalance_time=status.last_rebalance_time,
        conditions=[
            ConditionResponse(
                type=c.type.value,
                status=c.status,
                reason=c.reason,
                message=c.message,
                last_transition_time=c.last_transition_time,
            )
            for c in status.conditions
        ],
    )


def _node_response(node: ManagedNode) -> ManagedNodeResponse:
    return ManagedNodeResponse(
        node_id=node.node_id,
        group_name=node.group_name,
        phase=node.phase.value,
        offering_id=node.offering_id,
        instance_id=node.instance_id,
        node_name=node.node_name,
        ip_address=node.ip_address,
        creation_reason=node.creation_reason.value,
        owner_plan_id=node.owner_plan_id,
        last_error=node.last_error,
        created_at=node.created_at,
        annotations=dict(node.annotations),
    )


def _rebalance_response(state: ExecutionState) -> RebalanceResponse:
    return RebalanceResponse(
        plan_id=state.plan_id,
        group_name=state.group_name,
        status=state.status.value,
        current_batch=state.current_batch,
        batches=[
            BatchResponse(
                batch_number=b.batch_number,
                status=b.status.value,
                node_ids=[n.node_id for n in b.nodes],
            )
            for b in state.batches
        ],
        completed_nodes=list(state.completed_nodes),
        failed_nodes=list(state.failed_nodes),
        errors=list(state.errors),
        started_at=state.started_at,
        completed_at=state.completed_at,
    )


@router.get("/", response_model=List[NodeGroupResponse])
def list_node_groups(container=Depends(get_container)):
    return [_group_response(g) for g in container.groups.list()]


@router.get("/{name}", response_model=NodeGroupResponse)
def get_node_group(name: str, container=Depends(get_container)):
    group = container.groups.get(name)

    if not group:
        raise HTTPException(status_code=404, detail="Node group not found")

    return _group_response(group)


@router.get("/{name}/nodes", response_model=List[ManagedNodeResponse])
def list_group_nodes(name: str, container=Depends(get_container)):
    if not container.groups.get(name):
        raise HTTPException(status_code=404, detail="Node group not found")

    return [_node_response(n) for n in container.nodes.list_by_group(name)]


@router.get("/{name}/rebalance", response_model=List[RebalanceResponse])
def list_group_rebalances(name: str, limit: int = 10, container=Depends(get_container)):
    """Most recent rebalance executions of the group, newest first."""
    if not container.groups.get(name):
        raise HTTPException(status_code=404, detail="Node group not found")

    return [_rebalance_response(s) for s in container.rebalances.list_executions(name)[:limit]]
