from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class ConditionResponse(BaseModel):
    type: str
    status: bool
    reason: str
    message: str
    last_transition_time: datetime


class NodeGroupResponse(BaseModel):
    name: str
    min_nodes: int
    max_nodes: int
    datacenter_id: str
    offering_ids: List[str]
    paused: bool
    rebalancing_enabled: bool
    current_nodes: int
    desired_nodes: int
    ready_nodes: int
    last_scale_time: Optional[datetime] = None
    last_rebalance_time: Optional[datetime] = None
    conditions: List[ConditionResponse]


class ManagedNodeResponse(BaseModel):
    node_id: str
    group_name: str
    phase: str
    offering_id: str
    instance_id: Optional[str] = None
    node_name: Optional[str] = None
    ip_address: Optional[str] = None
    creation_reason: str
    owner_plan_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    annotations: Dict[str, str]


class BatchResponse(BaseModel):
    batch_number: int
    status: str
    node_ids: List[str]


class RebalanceResponse(BaseModel):
    plan_id: str
    group_name: str
    status: str
    current_batch: int
    batches: List[BatchResponse]
    completed_nodes: List[str]
    failed_nodes: List[str]
    errors: List[str]
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class EventResponse(BaseModel):
    reason: str
    type: str
    object_kind: str
    object_name: str
    message: str
    timestamp: datetime
