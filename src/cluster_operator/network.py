"""VPC and subnet convergence.

A VPC declared by id is adopted: it is described, recorded in status and
otherwise left alone (never tagged, never deleted). Without an id the VPC is
found by its ownership tag or created.
"""

from __future__ import annotations

import ipaddress
import logging
import math
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError, WaiterError

from . import conditions
from . import tags as tagging
from .errors import FailedDependencyError, ReconcileError, is_not_found
from .models import SubnetSpec, VPCSpec
from .routing import RoutingService

if TYPE_CHECKING:
    from .scope import ClusterScope

logger = logging.getLogger(__name__)

# Default subnets are spread over at most this many zones
MAX_DEFAULT_ZONES = 3

# Role tags the cloud provider uses to place load balancers
PUBLIC_ELB_ROLE_TAG = "kubernetes.io/role/elb"
INTERNAL_ELB_ROLE_TAG = "kubernetes.io/role/internal-elb"

VPC_WAIT_DELAY_SECONDS = 5
VPC_WAIT_MAX_ATTEMPTS = 24


class NetworkService:
    """Converges the cluster VPC and its subnets."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._ec2 = scope.clients.ec2

    def _vpc_unmanaged(self) -> bool:
        return bool(self._scope.cluster.spec.network.vpc.id)

    def reconcile_network(self) -> None:
        """Converge the VPC, the subnets inside it, then gateways and routes."""
        logger.debug("Reconciling network", extra={"cluster": self._scope.name})
        cluster = self._scope.cluster

        try:
            self.reconcile_vpc()
        except ReconcileError as e:
            conditions.mark_false(
                cluster,
                conditions.VPC_READY,
                conditions.VPC_RECONCILIATION_FAILED,
                conditions.error_severity_after_init(cluster),
                str(e),
            )
            raise
        conditions.mark_true(cluster, conditions.VPC_READY)

        try:
            self.reconcile_subnets()
        except ReconcileError as e:
            conditions.mark_false(
                cluster,
                conditions.SUBNETS_READY,
                conditions.SUBNETS_RECONCILIATION_FAILED,
                conditions.error_severity_after_init(cluster),
                str(e),
            )
            raise
        conditions.mark_true(cluster, conditions.SUBNETS_READY)

        if self._vpc_unmanaged():
            logger.debug(
                "Skipping gateways and route tables in unmanaged mode", extra={"vpc_id": self._scope.vpc().id}
            )
            return

        routing = RoutingService(self._scope)
        self._converge(
            routing.reconcile_internet_gateway,
            conditions.INTERNET_GATEWAY_READY,
            conditions.INTERNET_GATEWAY_FAILED,
        )
        self._converge(
            routing.reconcile_nat_gateways,
            conditions.NAT_GATEWAYS_READY,
            conditions.NAT_GATEWAYS_RECONCILIATION_FAILED,
        )
        self._converge(
            routing.reconcile_route_tables,
            conditions.ROUTE_TABLES_READY,
            conditions.ROUTE_TABLE_RECONCILIATION_FAILED,
        )

    def _converge(self, run: Callable[[], Any], condition_type: str, reason: str) -> None:
        cluster = self._scope.cluster
        try:
            run()
        except ReconcileError as e:
            conditions.mark_false(
                cluster, condition_type, reason, conditions.error_severity_after_init(cluster), str(e)
            )
            raise
        conditions.mark_true(cluster, condition_type)

    # -------------------------------------------------------------------------
    # VPC
    # -------------------------------------------------------------------------

    def reconcile_vpc(self) -> VPCSpec:
        declared = self._scope.cluster.spec.network.vpc
        status = self._scope.network()

        if self._vpc_unmanaged():
            raw = self._describe_vpc_by_id(declared.id)
            if raw is None:
                raise FailedDependencyError(
                    f"VPC {declared.id!r} not found", resource="vpc", operation="describe"
                )
            status.vpc = _vpc_from_sdk(raw)
            logger.debug("Using unmanaged VPC", extra={"vpc_id": declared.id})
            return status.vpc

        raw = self._describe_owned_vpc()
        if raw is None:
            raw = self._create_vpc(declared.cidr_block)

        vpc = _vpc_from_sdk(raw)
        desired = self._vpc_tags()
        diff = tagging.compute_diff(vpc.tags, desired)
        if diff.create:
            self._create_tags(vpc.id, diff.create)
            vpc.tags.update(diff.create)

        status.vpc = vpc
        return vpc

    def _vpc_tags(self) -> dict[str, str]:
        return tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=f"{self._scope.name}-vpc",
            role="common",
            additional=self._scope.additional_tags(),
        )

    def _describe_vpc_by_id(self, vpc_id: str) -> dict[str, Any] | None:
        try:
            vpcs = self._ec2.describe_vpcs(VpcIds=[vpc_id]).get("Vpcs", [])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise ReconcileError(
                f"failed to describe VPC {vpc_id!r}: {e}", resource="vpc", operation="describe"
            ) from e
        return vpcs[0] if vpcs else None

    def _describe_owned_vpc(self) -> dict[str, Any] | None:
        filters = [
            tagging.filter_cluster_owned(self._scope.name),
            {"Name": "state", "Values": ["pending", "available"]},
        ]
        try:
            vpcs = self._ec2.describe_vpcs(Filters=filters).get("Vpcs", [])
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe VPCs: {e}", resource="vpc", operation="describe"
            ) from e
        return vpcs[0] if vpcs else None

    def _create_vpc(self, cidr_block: str) -> dict[str, Any]:
        tags = self._vpc_tags()
        try:
            raw = self._ec2.create_vpc(
                CidrBlock=cidr_block,
                TagSpecifications=[tagging.tag_specification("vpc", tags)],
            )["Vpc"]
        except ClientError as e:
            self._scope.recorder.warning(self._scope.cluster, "FailedCreateVPC", f"Failed to create new VPC: {e}")
            raise ReconcileError(
                f"failed to create new VPC: {e}", resource="vpc", operation="create"
            ) from e

        vpc_id = raw["VpcId"]
        try:
            self._ec2.get_waiter("vpc_available").wait(
                VpcIds=[vpc_id],
                WaiterConfig={"Delay": VPC_WAIT_DELAY_SECONDS, "MaxAttempts": VPC_WAIT_MAX_ATTEMPTS},
            )
        except WaiterError as e:
            raise ReconcileError(
                f"failed to wait for VPC {vpc_id!r} to become available: {e}",
                resource="vpc",
                operation="create",
            ) from e

        for attribute in ("EnableDnsSupport", "EnableDnsHostnames"):
            try:
                self._ec2.modify_vpc_attribute(VpcId=vpc_id, **{attribute: {"Value": True}})
            except ClientError as e:
                raise ReconcileError(
                    f"failed to set {attribute} on VPC {vpc_id!r}: {e}",
                    resource="vpc",
                    operation="modify",
                ) from e

        self._scope.recorder.event(
            self._scope.cluster, "SuccessfulCreateVPC", f"Created new managed VPC {vpc_id!r}"
        )
        logger.info("Created VPC", extra={"vpc_id": vpc_id, "cidr_block": cidr_block})
        return raw

    # -------------------------------------------------------------------------
    # Subnets
    # -------------------------------------------------------------------------

    def reconcile_subnets(self) -> list[SubnetSpec]:
        vpc_id = self._scope.vpc().id
        existing = self._describe_vpc_subnets(vpc_id)

        declared = list(self._scope.cluster.spec.network.subnets)
        if not declared:
            if self._vpc_unmanaged():
                # Adopt whatever the unmanaged VPC already has
                adopted = [_subnet_from_sdk(raw) for raw in existing]
                self._scope.network().subnets = adopted
                return adopted
            declared = self._default_subnets()

        observed: list[SubnetSpec] = []
        for spec in declared:
            raw = self._find_subnet(existing, spec)
            if raw is None:
                if spec.id:
                    raise FailedDependencyError(
                        f"subnet {spec.id!r} not found in VPC {vpc_id!r}",
                        resource="subnet",
                        operation="describe",
                    )
                if self._vpc_unmanaged():
                    raise FailedDependencyError(
                        f"subnet with CIDR {spec.cidr_block!r} not found in unmanaged VPC {vpc_id!r}",
                        resource="subnet",
                        operation="describe",
                    )
                raw = self._create_subnet(vpc_id, spec)
                existing.append(raw)

            subnet = _subnet_from_sdk(raw)
            subnet.is_public = spec.is_public

            if tagging.is_owned(subnet.tags, self._scope.name) or not self._vpc_unmanaged():
                self._converge_subnet(raw, subnet)

            observed.append(subnet)

        self._scope.network().subnets = observed
        return observed

    def _subnet_tags(self, spec: SubnetSpec) -> dict[str, str]:
        role_tag = PUBLIC_ELB_ROLE_TAG if spec.is_public else INTERNAL_ELB_ROLE_TAG
        additional = self._scope.additional_tags()
        additional[role_tag] = "1"
        visibility = "public" if spec.is_public else "private"
        return tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=f"{self._scope.name}-subnet-{visibility}-{spec.availability_zone}",
            role=visibility,
            additional=additional,
            cloud_provider=True,
        )

    def _converge_subnet(self, raw: dict[str, Any], subnet: SubnetSpec) -> None:
        diff = tagging.compute_diff(subnet.tags, self._subnet_tags(subnet))
        if diff.create:
            self._create_tags(subnet.id, diff.create)
            subnet.tags.update(diff.create)

        if subnet.is_public and not raw.get("MapPublicIpOnLaunch", False):
            self._map_public_ip(subnet.id)
            raw["MapPublicIpOnLaunch"] = True

    def _describe_vpc_subnets(self, vpc_id: str) -> list[dict[str, Any]]:
        filters = [tagging.filter_vpc(vpc_id), tagging.filter_subnet_states("pending", "available")]
        try:
            return list(self._ec2.describe_subnets(Filters=filters).get("Subnets", []))
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe subnets in VPC {vpc_id!r}: {e}",
                resource="subnet",
                operation="describe",
            ) from e

    @staticmethod
    def _find_subnet(existing: list[dict[str, Any]], spec: SubnetSpec) -> dict[str, Any] | None:
        for raw in existing:
            if spec.id and raw["SubnetId"] == spec.id:
                return raw
            if not spec.id and raw.get("CidrBlock") == spec.cidr_block:
                return raw
        return None

    def _create_subnet(self, vpc_id: str, spec: SubnetSpec) -> dict[str, Any]:
        request: dict[str, Any] = {
            "VpcId": vpc_id,
            "CidrBlock": spec.cidr_block,
            "TagSpecifications": [tagging.tag_specification("subnet", self._subnet_tags(spec))],
        }
        if spec.availability_zone:
            request["AvailabilityZone"] = spec.availability_zone

        try:
            raw = self._ec2.create_subnet(**request)["Subnet"]
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster, "FailedCreateSubnet", f"Failed creating new subnet: {e}"
            )
            raise ReconcileError(
                f"failed to create subnet with CIDR {spec.cidr_block!r}: {e}",
                resource="subnet",
                operation="create",
            ) from e

        self._scope.recorder.event(
            self._scope.cluster, "SuccessfulCreateSubnet", f"Created new managed subnet {raw['SubnetId']!r}"
        )
        logger.info(
            "Created subnet",
            extra={"subnet_id": raw["SubnetId"], "cidr_block": spec.cidr_block, "public": spec.is_public},
        )
        return raw

    def _map_public_ip(self, subnet_id: str) -> None:
        try:
            self._ec2.modify_subnet_attribute(SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})
        except ClientError as e:
            raise ReconcileError(
                f"failed to set MapPublicIpOnLaunch on subnet {subnet_id!r}: {e}",
                resource="subnet",
                operation="modify",
            ) from e

    def _default_subnets(self) -> list[SubnetSpec]:
        """One public and one private subnet per zone, carved from the VPC CIDR."""
        zones = self._availability_zones()[:MAX_DEFAULT_ZONES]
        if not zones:
            raise FailedDependencyError(
                f"no availability zones available in region {self._scope.region!r}",
                resource="subnet",
                operation="plan",
            )

        network = ipaddress.ip_network(self._scope.vpc().cidr_block)
        prefix_diff = math.ceil(math.log2(len(zones) * 2))
        blocks = list(network.subnets(prefixlen_diff=prefix_diff))

        subnets: list[SubnetSpec] = []
        for index, zone in enumerate(zones):
            subnets.append(SubnetSpec(cidr_block=str(blocks[index]), availability_zone=zone, is_public=True))
        for index, zone in enumerate(zones):
            subnets.append(
                SubnetSpec(cidr_block=str(blocks[len(zones) + index]), availability_zone=zone, is_public=False)
            )
        return subnets

    def _availability_zones(self) -> list[str]:
        try:
            response = self._ec2.describe_availability_zones(
                Filters=[{"Name": "state", "Values": ["available"]}]
            )
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe availability zones: {e}", resource="subnet", operation="plan"
            ) from e
        return sorted(z["ZoneName"] for z in response.get("AvailabilityZones", []))

    def _create_tags(self, resource_id: str, tags: dict[str, str]) -> None:
        try:
            self._ec2.create_tags(Resources=[resource_id], Tags=tagging.to_sdk(tags))
        except ClientError as e:
            raise ReconcileError(
                f"failed to tag resource {resource_id!r}: {e}", resource=resource_id, operation="tag"
            ) from e

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete_network(self) -> None:
        """Delete routing, owned subnets, then the VPC. Unmanaged VPCs are skipped."""
        if self._vpc_unmanaged():
            logger.info(
                "Skipping VPC deletion in unmanaged mode",
                extra={"vpc_id": self._scope.cluster.spec.network.vpc.id},
            )
            return

        vpc_id = self._scope.vpc().id
        if not vpc_id:
            raw = self._describe_owned_vpc()
            if raw is None:
                logger.debug("No VPC to delete", extra={"cluster": self._scope.name})
                return
            vpc_id = raw["VpcId"]

        routing = RoutingService(self._scope)
        routing.delete_route_tables(vpc_id)
        routing.delete_nat_gateways(vpc_id)
        routing.delete_internet_gateway(vpc_id)

        filters = [tagging.filter_vpc(vpc_id), tagging.filter_cluster_owned(self._scope.name)]
        try:
            owned = self._ec2.describe_subnets(Filters=filters).get("Subnets", [])
        except ClientError as e:
            if not is_not_found(e):
                raise ReconcileError(
                    f"failed to describe subnets in VPC {vpc_id!r}: {e}",
                    resource="subnet",
                    operation="describe",
                ) from e
            owned = []

        for raw in owned:
            self._delete_subnet(raw["SubnetId"])

        try:
            self._ec2.delete_vpc(VpcId=vpc_id)
        except ClientError as e:
            if not is_not_found(e):
                self._scope.recorder.warning(
                    self._scope.cluster, "FailedDeleteVPC", f"Failed to delete managed VPC {vpc_id!r}: {e}"
                )
                raise ReconcileError(
                    f"failed to delete VPC {vpc_id!r}: {e}", resource="vpc", operation="delete"
                ) from e
            logger.debug("VPC already deleted", extra={"vpc_id": vpc_id})
        else:
            self._scope.recorder.event(
                self._scope.cluster, "SuccessfulDeleteVPC", f"Deleted managed VPC {vpc_id!r}"
            )
            logger.info("Deleted VPC", extra={"vpc_id": vpc_id})

        self._scope.network().subnets = []
        self._scope.network().vpc = VPCSpec(cidr_block=self._scope.cluster.spec.network.vpc.cidr_block)

    def _delete_subnet(self, subnet_id: str) -> None:
        try:
            self._ec2.delete_subnet(SubnetId=subnet_id)
        except ClientError as e:
            if is_not_found(e):
                return
            raise ReconcileError(
                f"failed to delete subnet {subnet_id!r}: {e}", resource="subnet", operation="delete"
            ) from e
        logger.info("Deleted subnet", extra={"subnet_id": subnet_id})


def _vpc_from_sdk(raw: dict[str, Any]) -> VPCSpec:
    return VPCSpec(id=raw["VpcId"], cidr_block=raw.get("CidrBlock", ""), tags=tagging.from_sdk(raw.get("Tags")))


def _subnet_from_sdk(raw: dict[str, Any]) -> SubnetSpec:
    return SubnetSpec(
        id=raw["SubnetId"],
        cidr_block=raw.get("CidrBlock", ""),
        availability_zone=raw.get("AvailabilityZone", ""),
        is_public=bool(raw.get("MapPublicIpOnLaunch", False)),
        tags=tagging.from_sdk(raw.get("Tags")),
    )
