"""Resource tagging and EC2 describe filters.

Ownership of every resource the operator creates is recorded in tags, so the
tags double as the lookup keys used to find resources again on the next
reconciliation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Tag keys
CLUSTER_TAG_PREFIX = "sigs.k8s.io/cluster-api-provider-aws/cluster/"
ROLE_TAG = "sigs.k8s.io/cluster-api-provider-aws/role"
NAME_TAG = "Name"
CLOUD_PROVIDER_TAG_PREFIX = "kubernetes.io/cluster/"


class ResourceLifecycle(str, Enum):
    """Whether the cluster owns a resource or merely uses it."""

    OWNED = "owned"
    SHARED = "shared"


def cluster_tag_key(cluster_name: str) -> str:
    return f"{CLUSTER_TAG_PREFIX}{cluster_name}"


def build(
    cluster_name: str,
    lifecycle: ResourceLifecycle = ResourceLifecycle.OWNED,
    name: str | None = None,
    role: str | None = None,
    additional: dict[str, str] | None = None,
    cloud_provider: bool = False,
) -> dict[str, str]:
    """Build the tag map for a resource.

    Additional tags are applied first so they can never override the
    ownership, Name or role tags.
    """
    tags: dict[str, str] = dict(additional or {})
    tags[cluster_tag_key(cluster_name)] = lifecycle.value
    if cloud_provider:
        tags[f"{CLOUD_PROVIDER_TAG_PREFIX}{cluster_name}"] = lifecycle.value
    if name:
        tags[NAME_TAG] = name
    if role:
        tags[ROLE_TAG] = role
    return tags


def is_owned(tags: dict[str, str], cluster_name: str) -> bool:
    """Check whether tags mark the resource as owned by the cluster."""
    return tags.get(cluster_tag_key(cluster_name)) == ResourceLifecycle.OWNED.value


@dataclass
class TagDiff:
    """Tags to create (or overwrite) and tags to remove."""

    create: dict[str, str] = field(default_factory=dict)
    remove: dict[str, str] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.create and not self.remove


def compute_diff(current: dict[str, str], desired: dict[str, str]) -> TagDiff:
    """Compute the changes needed to turn current tags into desired tags."""
    diff = TagDiff()
    for key, value in desired.items():
        if current.get(key) != value:
            diff.create[key] = value
    for key, value in current.items():
        if key not in desired:
            diff.remove[key] = value
    return diff


def to_sdk(tags: dict[str, str]) -> list[dict[str, str]]:
    """Convert a tag map to the SDK list shape, sorted by key."""
    return [{"Key": key, "Value": tags[key]} for key in sorted(tags)]


def from_sdk(tags: list[dict[str, Any]] | None) -> dict[str, str]:
    """Convert the SDK list shape to a tag map."""
    return {t["Key"]: t.get("Value", "") for t in tags or []}


def tag_specification(resource_type: str, tags: dict[str, str]) -> dict[str, Any]:
    """Build a TagSpecifications entry for a create call."""
    return {"ResourceType": resource_type, "Tags": to_sdk(tags)}


# =============================================================================
# EC2 filters
# =============================================================================


def filter_vpc(vpc_id: str) -> dict[str, Any]:
    return {"Name": "vpc-id", "Values": [vpc_id]}


def filter_cluster_owned(cluster_name: str) -> dict[str, Any]:
    return {"Name": f"tag:{cluster_tag_key(cluster_name)}", "Values": [ResourceLifecycle.OWNED.value]}


def filter_name(name: str) -> dict[str, Any]:
    return {"Name": f"tag:{NAME_TAG}", "Values": [name]}


def filter_instance_states(*states: str) -> dict[str, Any]:
    return {"Name": "instance-state-name", "Values": list(states)}


def filter_subnet_states(*states: str) -> dict[str, Any]:
    return {"Name": "state", "Values": list(states)}


def filter_availability_zone(zone: str) -> dict[str, Any]:
    return {"Name": "availability-zone", "Values": [zone]}


def filter_cidr_block(cidr_block: str) -> dict[str, Any]:
    return {"Name": "cidr-block", "Values": [cidr_block]}


def filter_group_name(name: str) -> dict[str, Any]:
    return {"Name": "group-name", "Values": [name]}


def filter_attachment_vpc(vpc_id: str) -> dict[str, Any]:
    return {"Name": "attachment.vpc-id", "Values": [vpc_id]}


def filter_nat_gateway_states(*states: str) -> dict[str, Any]:
    return {"Name": "state", "Values": list(states)}
