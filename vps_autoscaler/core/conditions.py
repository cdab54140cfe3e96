"""Condition helpers shared by groups and nodes."""

from datetime import datetime
from typing import List, Optional

from vps_autoscaler.core.models import Condition, ConditionType


def get_condition(conditions: List[Condition], type_: ConditionType) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == type_:
            return condition
    return None


def set_condition(
    conditions: List[Condition],
    type_: ConditionType,
    status: bool,
    reason: str,
    message: str = "",
    *,
    now: datetime,
) -> Condition:
    """
    Upsert a condition in place.

    last_transition_time only moves when the status flips.
    """
    existing = get_condition(conditions, type_)
    if existing is None:
        condition = Condition(
            type=type_,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=now,
        )
        conditions.append(condition)
        return condition

    if existing.status != status:
        existing.last_transition_time = now
    existing.status = status
    existing.reason = reason
    existing.message = message
    return existing


def is_condition_true(conditions: List[Condition], type_: ConditionType) -> bool:
    condition = get_condition(conditions, type_)
    return condition is not None and condition.status
