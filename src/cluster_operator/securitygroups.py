"""Security group convergence.

One group per role, named ``<cluster>-<role>``. Groups are created first and
ingress rules authorized second, because rules reference other groups of the
same cluster. Deletion runs the other way around: cross-group rules are
revoked before any group is deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from . import tags as tagging
from .errors import ReconcileError, is_not_found
from .instances import InstanceService
from .models import SecurityGroup, SecurityGroupRole

if TYPE_CHECKING:
    from .scope import ClusterScope

logger = logging.getLogger(__name__)

ANY_IPV4 = "0.0.0.0/0"
PROTOCOL_TCP = "tcp"
PROTOCOL_ALL = "-1"

SSH_PORT = 22
ETCD_PORTS = (2379, 2380)
KUBELET_PORT = 10250
NODE_PORT_RANGE = (30000, 32767)


@dataclass(frozen=True)
class IngressRule:
    """One ingress permission, from either a CIDR block or another group."""

    description: str
    protocol: str
    from_port: int
    to_port: int
    cidr_block: str | None = None
    source_group_id: str | None = None

    def key(self) -> tuple[str, int, int, str]:
        source = self.cidr_block if self.cidr_block is not None else f"sg:{self.source_group_id}"
        if self.protocol == PROTOCOL_ALL:
            return (self.protocol, -1, -1, source)
        return (self.protocol, self.from_port, self.to_port, source)

    def to_sdk(self) -> dict[str, Any]:
        permission: dict[str, Any] = {"IpProtocol": self.protocol}
        if self.protocol != PROTOCOL_ALL:
            permission["FromPort"] = self.from_port
            permission["ToPort"] = self.to_port
        if self.cidr_block is not None:
            permission["IpRanges"] = [{"CidrIp": self.cidr_block, "Description": self.description}]
        else:
            permission["UserIdGroupPairs"] = [
                {"GroupId": self.source_group_id, "Description": self.description}
            ]
        return permission


def permission_keys(permissions: list[dict[str, Any]]) -> set[tuple[str, int, int, str]]:
    """Flatten SDK IpPermissions into comparable rule keys."""
    keys: set[tuple[str, int, int, str]] = set()
    for permission in permissions:
        protocol = permission.get("IpProtocol", "")
        if protocol == PROTOCOL_ALL:
            from_port, to_port = -1, -1
        else:
            from_port = int(permission.get("FromPort", -1))
            to_port = int(permission.get("ToPort", -1))
        for ip_range in permission.get("IpRanges", []):
            keys.add((protocol, from_port, to_port, ip_range["CidrIp"]))
        for pair in permission.get("UserIdGroupPairs", []):
            keys.add((protocol, from_port, to_port, f"sg:{pair['GroupId']}"))
    return keys


class SecurityGroupService:
    """Converges the cluster's role security groups."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._ec2 = scope.clients.ec2

    def roles(self) -> list[SecurityGroupRole]:
        roles = [
            SecurityGroupRole.BASTION,
            SecurityGroupRole.API_SERVER_LB,
            SecurityGroupRole.LB,
            SecurityGroupRole.CONTROL_PLANE,
            SecurityGroupRole.NODE,
        ]
        if self._scope.is_eks_managed():
            roles.append(SecurityGroupRole.EKS_NODE_ADDITIONAL)
        return roles

    def group_name(self, role: SecurityGroupRole) -> str:
        return f"{self._scope.name}-{role.value}"

    def reconcile_security_groups(self) -> None:
        """Ensure every role group exists, is tagged and has its ingress rules."""
        logger.debug("Reconciling security groups", extra={"cluster": self._scope.name})

        vpc_id = self._scope.vpc().id
        existing = {g["GroupName"]: g for g in self._describe_cluster_groups(vpc_id)}
        tagger = InstanceService(self._scope)

        observed: dict[SecurityGroupRole, SecurityGroup] = {}
        permissions: dict[SecurityGroupRole, list[dict[str, Any]]] = {}

        for role in self.roles():
            name = self.group_name(role)
            desired_tags = self._group_tags(role)
            raw = existing.get(name)

            if raw is None:
                group_id = self._create_group(vpc_id, role, desired_tags)
                observed[role] = SecurityGroup(id=group_id, name=name, tags=desired_tags)
                permissions[role] = []
                continue

            current_tags = tagging.from_sdk(raw.get("Tags"))
            diff = tagging.compute_diff(current_tags, desired_tags)
            if not diff.empty:
                tagger.update_resource_tags(raw["GroupId"], diff.create, diff.remove)
            observed[role] = SecurityGroup(id=raw["GroupId"], name=name, tags=desired_tags)
            permissions[role] = list(raw.get("IpPermissions", []))

        # Rules reference group ids, so every group must exist first
        self._scope.network().security_groups = observed

        for role, group in observed.items():
            current = permission_keys(permissions[role])
            missing = [rule for rule in self.ingress_rules(role) if rule.key() not in current]
            if missing:
                self._authorize(group.id, missing)

    def ingress_rules(self, role: SecurityGroupRole) -> list[IngressRule]:
        """Desired ingress rules of a role group."""
        groups = self._scope.security_groups()
        api_port = self._scope.api_server_port()

        def group_id(r: SecurityGroupRole) -> str:
            return groups[r].id

        match role:
            case SecurityGroupRole.BASTION:
                return [
                    IngressRule("SSH", PROTOCOL_TCP, SSH_PORT, SSH_PORT, cidr_block=cidr)
                    for cidr in self._scope.cluster.spec.bastion.allowed_cidr_blocks
                ]
            case SecurityGroupRole.API_SERVER_LB:
                return [IngressRule("Kubernetes API", PROTOCOL_TCP, api_port, api_port, cidr_block=ANY_IPV4)]
            case SecurityGroupRole.CONTROL_PLANE:
                return [
                    IngressRule(
                        "SSH", PROTOCOL_TCP, SSH_PORT, SSH_PORT,
                        source_group_id=group_id(SecurityGroupRole.BASTION),
                    ),
                    IngressRule(
                        "Kubernetes API", PROTOCOL_TCP, api_port, api_port,
                        source_group_id=group_id(SecurityGroupRole.API_SERVER_LB),
                    ),
                    IngressRule(
                        "Kubernetes API", PROTOCOL_TCP, api_port, api_port,
                        source_group_id=group_id(SecurityGroupRole.CONTROL_PLANE),
                    ),
                    IngressRule(
                        "Kubernetes API", PROTOCOL_TCP, api_port, api_port,
                        source_group_id=group_id(SecurityGroupRole.NODE),
                    ),
                    IngressRule(
                        "etcd", PROTOCOL_TCP, ETCD_PORTS[0], ETCD_PORTS[1],
                        source_group_id=group_id(SecurityGroupRole.CONTROL_PLANE),
                    ),
                ]
            case SecurityGroupRole.NODE:
                return [
                    IngressRule(
                        "SSH", PROTOCOL_TCP, SSH_PORT, SSH_PORT,
                        source_group_id=group_id(SecurityGroupRole.BASTION),
                    ),
                    IngressRule(
                        "Node Port Services", PROTOCOL_TCP, NODE_PORT_RANGE[0], NODE_PORT_RANGE[1],
                        cidr_block=ANY_IPV4,
                    ),
                    IngressRule(
                        "Kubelet API", PROTOCOL_TCP, KUBELET_PORT, KUBELET_PORT,
                        source_group_id=group_id(SecurityGroupRole.CONTROL_PLANE),
                    ),
                    IngressRule(
                        "Node to node", PROTOCOL_ALL, -1, -1,
                        source_group_id=group_id(SecurityGroupRole.NODE),
                    ),
                ]
            case _:
                return []

    def _group_tags(self, role: SecurityGroupRole) -> dict[str, str]:
        return tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=self.group_name(role),
            role=role.value,
            additional=self._scope.additional_tags(),
            # The cloud provider attaches service load balancers to this group
            cloud_provider=role == SecurityGroupRole.LB,
        )

    def _describe_cluster_groups(self, vpc_id: str) -> list[dict[str, Any]]:
        filters = [tagging.filter_cluster_owned(self._scope.name)]
        if vpc_id:
            filters.insert(0, tagging.filter_vpc(vpc_id))
        try:
            return list(self._ec2.describe_security_groups(Filters=filters).get("SecurityGroups", []))
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe security groups: {e}",
                resource="security-group",
                operation="describe",
            ) from e

    def _create_group(self, vpc_id: str, role: SecurityGroupRole, tags: dict[str, str]) -> str:
        name = self.group_name(role)
        try:
            response = self._ec2.create_security_group(
                GroupName=name,
                Description=f"Kubernetes cluster {self._scope.name}: {role.value}",
                VpcId=vpc_id,
                TagSpecifications=[tagging.tag_specification("security-group", tags)],
            )
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster,
                "FailedCreateSecurityGroup",
                f"Failed to create managed SecurityGroup for Role {role.value!r}: {e}",
            )
            raise ReconcileError(
                f"failed to create security group {name!r}: {e}",
                resource="security-group",
                operation="create",
            ) from e

        group_id = str(response["GroupId"])
        self._scope.recorder.event(
            self._scope.cluster,
            "SuccessfulCreateSecurityGroup",
            f"Created managed SecurityGroup {group_id!r} for Role {role.value!r}",
        )
        logger.info("Created security group", extra={"group_id": group_id, "role": role.value})
        return group_id

    def _authorize(self, group_id: str, rules: list[IngressRule]) -> None:
        try:
            self._ec2.authorize_security_group_ingress(
                GroupId=group_id, IpPermissions=[rule.to_sdk() for rule in rules]
            )
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster,
                "FailedAuthorizeSecurityGroupIngressRules",
                f"Failed to authorize security group ingress rules for {group_id!r}: {e}",
            )
            raise ReconcileError(
                f"failed to authorize ingress rules for security group {group_id!r}: {e}",
                resource="security-group",
                operation="authorize",
            ) from e

        logger.info(
            "Authorized security group ingress rules",
            extra={"group_id": group_id, "rules": [rule.description for rule in rules]},
        )

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete_security_groups(self) -> None:
        """Revoke cross-group rules, then delete every owned group."""
        groups = self._describe_cluster_groups(self._scope.vpc().id)

        for raw in groups:
            referencing = [p for p in raw.get("IpPermissions", []) if p.get("UserIdGroupPairs")]
            if referencing:
                self._revoke(raw["GroupId"], referencing)

        for raw in groups:
            self._delete_group(raw["GroupId"], raw.get("GroupName", ""))

        self._scope.network().security_groups = {}

    def _revoke(self, group_id: str, permissions: list[dict[str, Any]]) -> None:
        try:
            self._ec2.revoke_security_group_ingress(GroupId=group_id, IpPermissions=permissions)
        except ClientError as e:
            if is_not_found(e):
                return
            raise ReconcileError(
                f"failed to revoke ingress rules of security group {group_id!r}: {e}",
                resource="security-group",
                operation="revoke",
            ) from e

    def _delete_group(self, group_id: str, name: str) -> None:
        try:
            self._ec2.delete_security_group(GroupId=group_id)
        except ClientError as e:
            if is_not_found(e):
                return
            self._scope.recorder.warning(
                self._scope.cluster,
                "FailedDeleteSecurityGroup",
                f"Failed to delete managed SecurityGroup {group_id!r}: {e}",
            )
            raise ReconcileError(
                f"failed to delete security group {group_id!r}: {e}",
                resource="security-group",
                operation="delete",
            ) from e

        self._scope.recorder.event(
            self._scope.cluster, "SuccessfulDeleteSecurityGroup", f"Deleted managed SecurityGroup {group_id!r}"
        )
        logger.info("Deleted security group", extra={"group_id": group_id, "group_name": name})
