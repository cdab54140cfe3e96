#vps_autoscaler\core\loader.py

"""Apply node group definitions from a JSON file."""

import json
import logging
from dataclasses import replace
from typing import List

from pydantic import TypeAdapter

from vps_autoscaler.core.errors import ValidationError
from vps_autoscaler.core.models import NodeGroup
from vps_autoscaler.core.repository import NodeGroupRepository
from vps_autoscaler.core.validation import validate_node_group

logger = logging.getLogger(__name__)

_groups_adapter = TypeAdapter(List[NodeGroup])


def parse_node_groups(raw: str) -> List[NodeGroup]:
    """Parse a JSON list of node groups. Status and version in the input are ignored."""
    try:
        groups = _groups_adapter.validate_python(json.loads(raw))
    except ValueError as e:
        raise ValidationError("nodegroups", f"cannot parse node group definitions: {e}") from e
    return [replace(g, version=0) for g in groups]


def apply_node_groups(repo: NodeGroupRepository, groups: List[NodeGroup]) -> List[str]:
    """
    Create or update each group's spec, preserving its stored status.

    Invalid groups are still stored; the group reconciler reports them with
    an InvalidConfiguration condition.
    """
    applied = []
    for group in groups:
        try:
            validate_node_group(group)
        except ValidationError as e:
            logger.warning(f"[loader] {group.name} is invalid and will not scale: {e}")

        existing = repo.get(group.name)
        if existing is None:
            repo.create(group)
            logger.info(f"[loader] created node group {group.name}")
        else:
            updated = replace(group, status=existing.status, version=existing.version)
            repo.update(updated)
            logger.info(f"[loader] updated node group {group.name}")
        applied.append(group.name)
    return applied


def load_node_groups_file(repo: NodeGroupRepository, path: str) -> List[str]:
    with open(path, encoding="utf-8") as handle:
        return apply_node_groups(repo, parse_node_groups(handle.read()))
