"""Typed status conditions attached to an AWSCluster.

Conditions are pure data. Setting a condition whose status has not changed
keeps the original transition time, so repeated reconciliations do not churn
the persisted object.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .models import AWSCluster


class ConditionStatus(str, Enum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(str, Enum):
    """How bad a False condition is. Empty for True conditions."""

    NONE = ""
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


# Condition types
READY = "Ready"
VPC_READY = "VpcReady"
SUBNETS_READY = "SubnetsReady"
INTERNET_GATEWAY_READY = "InternetGatewayReady"
NAT_GATEWAYS_READY = "NatGatewaysReady"
ROUTE_TABLES_READY = "RouteTablesReady"
SECURITY_GROUPS_READY = "ClusterSecurityGroupsReady"
BASTION_HOST_READY = "BastionHostReady"
LOAD_BALANCER_READY = "LoadBalancerReady"
S3_BUCKET_READY = "S3BucketReady"
INSTANCE_STATE_EVENTS_READY = "InstanceStateEventsReady"

# Reasons
VPC_RECONCILIATION_FAILED = "VpcReconciliationFailed"
SUBNETS_RECONCILIATION_FAILED = "SubnetsReconciliationFailed"
INTERNET_GATEWAY_FAILED = "InternetGatewayFailed"
NAT_GATEWAYS_RECONCILIATION_FAILED = "NatGatewaysReconciliationFailed"
ROUTE_TABLE_RECONCILIATION_FAILED = "RouteTableReconciliationFailed"
SECURITY_GROUP_RECONCILIATION_FAILED = "SecurityGroupReconciliationFailed"
BASTION_HOST_FAILED = "BastionHostFailed"
LOAD_BALANCER_FAILED = "LoadBalancerFailed"
WAIT_FOR_DNS_NAME = "WaitForDNSName"
WAIT_FOR_DNS_NAME_RESOLVE = "WaitForDNSNameResolve"
S3_BUCKET_FAILED = "S3BucketCreationFailed"
DELETING = "Deleting"


class Condition(BaseModel):
    """A single typed, timestamped status fact."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: ConditionStatus
    severity: ConditionSeverity = ConditionSeverity.NONE
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="lastTransitionTime"
    )


def _sort_key(condition: Condition) -> tuple[int, str]:
    # Ready always sorts first, everything else alphabetically
    return (0 if condition.type == READY else 1, condition.type)


def get(obj: AWSCluster, condition_type: str) -> Condition | None:
    """Return the condition of the given type, or None."""
    for condition in obj.status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(obj: AWSCluster, condition: Condition) -> None:
    """Set a condition, replacing any existing condition of the same type.

    The transition time is carried over from the existing condition when the
    status is unchanged.
    """
    existing = get(obj, condition.type)
    if existing is not None and existing.status == condition.status:
        condition.last_transition_time = existing.last_transition_time

    conditions = [c for c in obj.status.conditions if c.type != condition.type]
    conditions.append(condition)
    conditions.sort(key=_sort_key)
    obj.status.conditions = conditions


def mark_true(obj: AWSCluster, condition_type: str) -> None:
    """Mark a condition True."""
    set_condition(obj, Condition(type=condition_type, status=ConditionStatus.TRUE))


def mark_false(
    obj: AWSCluster,
    condition_type: str,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
) -> None:
    """Mark a condition False with a reason, severity and message."""
    set_condition(
        obj,
        Condition(
            type=condition_type,
            status=ConditionStatus.FALSE,
            reason=reason,
            severity=severity,
            message=message,
        ),
    )


def delete(obj: AWSCluster, condition_type: str) -> None:
    """Remove the condition of the given type, if present."""
    obj.status.conditions = [c for c in obj.status.conditions if c.type != condition_type]


def is_true(obj: AWSCluster, condition_type: str) -> bool:
    condition = get(obj, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def is_false(obj: AWSCluster, condition_type: str) -> bool:
    condition = get(obj, condition_type)
    return condition is not None and condition.status == ConditionStatus.FALSE


def error_severity_after_init(obj: AWSCluster) -> ConditionSeverity:
    """Failures are only errors once the cluster has been ready at least once."""
    if obj.status.ready:
        return ConditionSeverity.ERROR
    return ConditionSeverity.WARNING
