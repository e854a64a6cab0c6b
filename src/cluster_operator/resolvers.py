"""Translate machine templates and observed state into request parameters.

Each resolver answers one question for the instance provisioner: which
subnet, which security groups, which image, which SSH key, which purchase
market. Resolvers only read; the few that need AWS perform describe calls
and never mutate anything.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from . import tags as tagging
from .errors import (
    FailedDependencyError,
    InstanceCreateError,
    ReconcileError,
    UnknownRoleError,
    is_not_found,
)
from .models import (
    AWSResourceReference,
    EKSAMILookupType,
    MachineRole,
    SecurityGroupRole,
    SpotMarketOptions,
)

if TYPE_CHECKING:
    from .scope import MachineScope

logger = logging.getLogger(__name__)

# Image lookup defaults, used when neither the machine nor the cluster sets them
DEFAULT_IMAGE_LOOKUP_FORMAT = "capa-ami-{base_os}-?{k8s_version}-*"
DEFAULT_IMAGE_LOOKUP_ORG = "258751437250"
DEFAULT_IMAGE_LOOKUP_BASE_OS = "ubuntu-18.04"
DEFAULT_ARCHITECTURE = "x86_64"

# Canonical's Ubuntu images for the bastion host
UBUNTU_OWNER_ID = "099720109477"
DEFAULT_BASTION_IMAGE_NAME = "ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-*"

EKS_AMI_PARAMETER_FORMAT = "/aws/service/eks/optimized-ami/{version}/{flavour}/recommended/image_id"
EKS_AMI_FLAVOURS = {
    EKSAMILookupType.AMAZON_LINUX: "amazon-linux-2",
    EKSAMILookupType.AMAZON_LINUX_GPU: "amazon-linux-2-gpu",
}


# =============================================================================
# Subnets
# =============================================================================


def find_subnet(scope: MachineScope, ec2: Any) -> str:
    """Pick the subnet an instance is launched into.

    Strict priority, first match wins:
    1. Explicit subnet id (must agree with the failure domain, if one is set)
    2. Subnet filters, queried against EC2
    3. First private subnet in the failure domain
    4. First private subnet

    Raises:
        FailedDependencyError: If no acceptable subnet exists.
        ReconcileError: If the subnet query fails.
    """
    cluster_scope = scope.cluster_scope
    failure_domain = scope.failure_domain
    subnet_ref = scope.machine.subnet

    if subnet_ref is not None and subnet_ref.id:
        if failure_domain is not None:
            subnet = cluster_scope.network().find_subnet(subnet_ref.id)
            if subnet is None:
                raise FailedDependencyError(
                    f"failed to run machine {scope.name!r}, subnet with id {subnet_ref.id!r} not found",
                    resource="subnet",
                    operation="resolve",
                )
            if subnet.availability_zone != failure_domain:
                raise FailedDependencyError(
                    f"failed to run machine {scope.name!r}, subnet's availability zone "
                    f"{subnet.availability_zone!r} does not match with the failure domain "
                    f"{failure_domain!r}",
                    resource="subnet",
                    operation="resolve",
                )
        return subnet_ref.id

    if subnet_ref is not None and subnet_ref.filters is not None:
        criteria = [tagging.filter_subnet_states("pending", "available")]
        if not scope.is_externally_managed():
            criteria.append(tagging.filter_vpc(cluster_scope.vpc().id))
        if failure_domain is not None:
            criteria.append(tagging.filter_availability_zone(failure_domain))
        for f in subnet_ref.filters:
            criteria.append({"Name": f.name, "Values": list(f.values)})

        try:
            subnets = ec2.describe_subnets(Filters=criteria).get("Subnets", [])
        except ClientError as e:
            raise ReconcileError(
                f"failed to filter subnets for criteria {criteria!r}: {e}",
                resource="subnet",
                operation="describe",
            ) from e

        if not subnets:
            filters = [f.model_dump() for f in subnet_ref.filters]
            raise FailedDependencyError(
                f"failed to run machine {scope.name!r}, no subnets available matching filters {filters!r}",
                resource="subnet",
                operation="resolve",
            )
        return str(subnets[0]["SubnetId"])

    private = cluster_scope.network().private_subnets()

    if failure_domain is not None:
        in_zone = [s for s in private if s.availability_zone == failure_domain]
        if not in_zone:
            raise FailedDependencyError(
                f"failed to run machine {scope.name!r}, no subnets available in availability zone "
                f"{failure_domain!r}",
                resource="subnet",
                operation="resolve",
            )
        return in_zone[0].id

    if not private:
        raise FailedDependencyError(
            f"failed to run machine {scope.name!r}, no subnets available",
            resource="subnet",
            operation="resolve",
        )
    return private[0].id


# =============================================================================
# Security groups
# =============================================================================


def core_security_group_roles(scope: MachineScope) -> list[SecurityGroupRole]:
    """Security group roles every machine of this role must carry.

    Raises:
        UnknownRoleError: If the machine role is not recognised.
    """
    roles = [SecurityGroupRole.NODE]

    if not scope.is_eks_managed():
        roles.append(SecurityGroupRole.LB)

    match scope.role:
        case MachineRole.NODE.value:
            if scope.is_eks_managed():
                roles.append(SecurityGroupRole.EKS_NODE_ADDITIONAL)
        case MachineRole.CONTROL_PLANE.value:
            roles.append(SecurityGroupRole.CONTROL_PLANE)
        case _:
            raise UnknownRoleError(f"Unknown node role {scope.role!r}")

    return roles


def get_core_security_groups(scope: MachineScope) -> list[str]:
    """Resolve the core security group roles to group ids.

    Raises:
        UnknownRoleError: If the machine role is not recognised.
        FailedDependencyError: If a role has no group yet.
    """
    if scope.is_externally_managed():
        return []

    observed = scope.cluster_scope.security_groups()
    ids: list[str] = []
    for role in core_security_group_roles(scope):
        group = observed.get(role)
        if group is None:
            raise FailedDependencyError(
                f"{role.value} security group not available",
                resource="security-group",
                operation="resolve",
            )
        ids.append(group.id)
    return ids


def get_filtered_security_group_id(ref: AWSResourceReference, ec2: Any) -> str:
    """Resolve a security group reference given by filters.

    Returns "" when the reference has no filters.

    Raises:
        FailedDependencyError: If no group matches.
        ReconcileError: If the query fails.
    """
    if ref.filters is None:
        return ""

    filters = [{"Name": f.name, "Values": list(f.values)} for f in ref.filters]
    try:
        groups = ec2.describe_security_groups(Filters=filters).get("SecurityGroups", [])
    except ClientError as e:
        raise ReconcileError(
            f"failed to describe security groups matching filters {filters!r}: {e}",
            resource="security-group",
            operation="describe",
        ) from e

    if not groups:
        raise FailedDependencyError(
            f"failed to find security group matching filters {filters!r}",
            resource="security-group",
            operation="resolve",
        )
    return str(groups[0]["GroupId"])


def get_additional_security_groups(scope: MachineScope, ec2: Any) -> list[str]:
    """Resolve the machine's additional security groups by id or filters."""
    ids: list[str] = []
    for ref in scope.machine.additional_security_groups:
        if ref.id:
            ids.append(ref.id)
            continue
        group_id = get_filtered_security_group_id(ref, ec2)
        if group_id:
            ids.append(group_id)
    return ids


# =============================================================================
# Images
# =============================================================================


def resolve_image_id(scope: MachineScope, ec2: Any, ssm: Any) -> str:
    """Pick the image an instance boots from.

    An explicit image id wins. Otherwise the lookup settings fall back from
    the machine to the cluster, and the image is found either through the
    EKS-optimized SSM parameter or by name pattern.

    Raises:
        InstanceCreateError: If neither an image id nor a version is set.
        FailedDependencyError: If no image matches.
    """
    machine = scope.machine
    if machine.ami.id:
        return machine.ami.id

    if not machine.version:
        raise InstanceCreateError(
            "either the machine's ami.id or version must be defined",
            resource="image",
            operation="resolve",
        )

    cluster_scope = scope.cluster_scope
    lookup_format = machine.image_lookup_format or cluster_scope.image_lookup_format()
    lookup_org = machine.image_lookup_org or cluster_scope.image_lookup_org()
    lookup_base_os = machine.image_lookup_base_os or cluster_scope.image_lookup_base_os()

    if scope.is_eks_managed() and not (lookup_format or lookup_org or lookup_base_os):
        return eks_ami_lookup(ssm, machine.version, machine.ami.eks_lookup_type)

    return default_ami_lookup(ec2, lookup_format, lookup_org, lookup_base_os, machine.version)


def _trim_version(version: str) -> str:
    return version[1:] if version.startswith("v") else version


def default_ami_lookup(ec2: Any, lookup_format: str, org: str, base_os: str, version: str) -> str:
    """Find the newest image whose name matches the lookup format."""
    name = (lookup_format or DEFAULT_IMAGE_LOOKUP_FORMAT).format(
        base_os=base_os or DEFAULT_IMAGE_LOOKUP_BASE_OS,
        k8s_version=_trim_version(version),
    )
    filters = [
        {"Name": "owner-id", "Values": [org or DEFAULT_IMAGE_LOOKUP_ORG]},
        {"Name": "name", "Values": [name]},
        {"Name": "architecture", "Values": [DEFAULT_ARCHITECTURE]},
        {"Name": "state", "Values": ["available"]},
        {"Name": "virtualization-type", "Values": ["hvm"]},
    ]
    return _latest_image(ec2, filters, description=name)


def default_bastion_ami_lookup(ec2: Any) -> str:
    """Find the newest Ubuntu image for the bastion host."""
    filters = [
        {"Name": "owner-id", "Values": [UBUNTU_OWNER_ID]},
        {"Name": "name", "Values": [DEFAULT_BASTION_IMAGE_NAME]},
        {"Name": "architecture", "Values": [DEFAULT_ARCHITECTURE]},
        {"Name": "state", "Values": ["available"]},
        {"Name": "virtualization-type", "Values": ["hvm"]},
    ]
    return _latest_image(ec2, filters, description=DEFAULT_BASTION_IMAGE_NAME)


def _latest_image(ec2: Any, filters: list[dict[str, Any]], description: str) -> str:
    try:
        images = ec2.describe_images(Filters=filters).get("Images", [])
    except ClientError as e:
        raise ReconcileError(
            f"failed to find ami {description!r}: {e}", resource="image", operation="describe"
        ) from e

    if not images:
        raise FailedDependencyError(
            f"found no AMIs with the name {description!r}", resource="image", operation="resolve"
        )

    latest = max(images, key=lambda image: image.get("CreationDate", ""))
    logger.debug("Found image", extra={"image_id": latest["ImageId"], "pattern": description})
    return str(latest["ImageId"])


def eks_ami_lookup(ssm: Any, version: str, lookup_type: EKSAMILookupType | None) -> str:
    """Read the EKS-optimized image id from its public SSM parameter."""
    major, _, rest = _trim_version(version).partition(".")
    minor = rest.split(".", 1)[0]
    flavour = EKS_AMI_FLAVOURS[lookup_type or EKSAMILookupType.AMAZON_LINUX]
    param_name = EKS_AMI_PARAMETER_FORMAT.format(version=f"{major}.{minor}", flavour=flavour)

    try:
        response = ssm.get_parameter(Name=param_name)
    except ClientError as e:
        if is_not_found(e):
            raise FailedDependencyError(
                f"EKS image parameter {param_name!r} not found",
                resource="image",
                operation="resolve",
            ) from e
        raise ReconcileError(
            f"failed to get EKS image parameter {param_name!r}: {e}",
            resource="image",
            operation="describe",
        ) from e

    return str(response["Parameter"]["Value"])


# =============================================================================
# SSH keys and market options
# =============================================================================


def resolve_ssh_key_name(scope: MachineScope, default: str) -> str | None:
    """Pick the SSH key pair name.

    The machine value wins, then the cluster value, then the default (only
    for clusters this operator manages). An empty string at any level means
    no key pair at all, reported as None.
    """
    if scope.machine.ssh_key_name is not None:
        key_name = scope.machine.ssh_key_name
    elif scope.cluster_scope.ssh_key_name() is not None:
        key_name = scope.cluster_scope.ssh_key_name() or ""
    elif not scope.is_externally_managed():
        key_name = default
    else:
        key_name = ""

    return key_name or None


def get_instance_market_options(spot: SpotMarketOptions | None) -> dict[str, Any] | None:
    """Translate spot options into the RunInstances market options.

    Interrupted instances are always terminated and never resubmitted: one
    machine maps to exactly one instance for its whole life.
    """
    if spot is None:
        return None

    spot_options: dict[str, Any] = {
        "InstanceInterruptionBehavior": "terminate",
        "SpotInstanceType": "one-time",
    }
    if spot.max_price:
        spot_options["MaxPrice"] = spot.max_price

    return {"MarketType": "spot", "SpotOptions": spot_options}
