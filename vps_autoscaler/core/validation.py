#vps_autoscaler\core\validation.py

import logging
from typing import List, Tuple

from vps_autoscaler.core.errors import ValidationError
from vps_autoscaler.core.models import (
    ANNOTATION_MAX_NODES_OVERRIDE,
    ANNOTATION_MIN_NODES_OVERRIDE,
    MaintenanceWindow,
    NodeGroup,
    parse_hhmm,
)

logger = logging.getLogger(__name__)


def _require(condition: bool, field: str, message: str) -> None:
    if not condition:
        raise ValidationError(field, message)


def _validate_threshold(value: float, field: str) -> None:
    _require(0 <= value <= 100, field, f"must be within [0, 100], got {value}")


def _validate_window(window: MaintenanceWindow, field: str) -> None:
    for part in ("start", "end"):
        raw = getattr(window, part)
        try:
            parse_hhmm(raw)
        except ValueError as e:
            raise ValidationError(f"{field}.{part}", f"invalid HH:MM value {raw!r}") from e


def validate_node_group(group: NodeGroup) -> None:
    """Raise ValidationError on the first rule the group breaks."""
    _require(bool(group.name), "name", "must not be empty")
    _require(group.min_nodes >= 0, "min_nodes", "must be >= 0")
    _require(group.max_nodes >= 1, "max_nodes", "must be >= 1")
    _require(
        group.max_nodes >= group.min_nodes,
        "max_nodes",
        f"must be >= min_nodes ({group.min_nodes})",
    )
    _require(bool(group.datacenter_id), "datacenter_id", "must not be empty")
    _require(bool(group.os_image_id), "os_image_id", "must not be empty")
    _require(len(group.offering_ids) > 0, "offering_ids", "at least one offering is required")
    for offering_id in group.offering_ids:
        _require(bool(offering_id), "offering_ids", "offering ids must not be empty")

    up = group.scale_up_policy
    _validate_threshold(up.cpu_threshold, "scale_up_policy.cpu_threshold")
    _validate_threshold(up.memory_threshold, "scale_up_policy.memory_threshold")
    _require(up.stabilization_window_seconds > 0, "scale_up_policy.stabilization_window_seconds", "must be > 0")
    _require(up.increment >= 1, "scale_up_policy.increment", "must be >= 1")

    down = group.scale_down_policy
    _validate_threshold(down.cpu_threshold, "scale_down_policy.cpu_threshold")
    _validate_threshold(down.memory_threshold, "scale_down_policy.memory_threshold")
    _require(down.stabilization_window_seconds > 0, "scale_down_policy.stabilization_window_seconds", "must be > 0")
    _require(down.unneeded_time_seconds >= 0, "scale_down_policy.unneeded_time_seconds", "must be >= 0")
    _require(down.cooldown_seconds >= 0, "scale_down_policy.cooldown_seconds", "must be >= 0")
    _require(down.decrement >= 1, "scale_down_policy.decrement", "must be >= 1")

    rebalance = group.rebalancing_policy
    _require(rebalance.batch_size >= 1, "rebalancing_policy.batch_size", "must be >= 1")
    _require(rebalance.max_concurrent >= 1, "rebalancing_policy.max_concurrent", "must be >= 1")
    _require(
        0 <= rebalance.min_healthy_percent <= 100,
        "rebalancing_policy.min_healthy_percent",
        "must be within [0, 100]",
    )
    _require(rebalance.provision_timeout_seconds > 0, "rebalancing_policy.provision_timeout_seconds", "must be > 0")
    _require(rebalance.drain_timeout_seconds > 0, "rebalancing_policy.drain_timeout_seconds", "must be > 0")
    _require(rebalance.max_retries >= 0, "rebalancing_policy.max_retries", "must be >= 0")
    for i, window in enumerate(rebalance.maintenance_windows):
        _validate_window(window, f"rebalancing_policy.maintenance_windows[{i}]")
    for i, window in enumerate(rebalance.peak_hours):
        _validate_window(window, f"rebalancing_policy.peak_hours[{i}]")


def effective_bounds(group: NodeGroup) -> Tuple[int, int, List[str]]:
    """
    Resolve [min, max] with the override annotations applied.

    Overrides apply at evaluation time only and never change the stored
    spec. An override that is not an integer, or that would produce an
    invalid range, is ignored and reported in the returned warnings.
    """
    low, high = group.min_nodes, group.max_nodes
    warnings: List[str] = []

    raw_min = group.annotations.get(ANNOTATION_MIN_NODES_OVERRIDE)
    raw_max = group.annotations.get(ANNOTATION_MAX_NODES_OVERRIDE)

    new_low, new_high = low, high
    if raw_min is not None:
        try:
            new_low = int(raw_min)
        except ValueError:
            warnings.append(f"ignoring non-integer min-nodes override {raw_min!r}")
    if raw_max is not None:
        try:
            new_high = int(raw_max)
        except ValueError:
            warnings.append(f"ignoring non-integer max-nodes override {raw_max!r}")

    if new_low < 0 or new_high < 1 or new_low > new_high:
        warnings.append(
            f"ignoring bounds override min={new_low} max={new_high}: invalid range"
        )
        new_low, new_high = low, high

    for warning in warnings:
        logger.warning(f"[validation] group={group.name} {warning}")
    return new_low, new_high, warnings
