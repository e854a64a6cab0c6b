"""Internet gateway, NAT gateway and route table convergence.

Only managed VPCs are routed. Public subnets send 0.0.0.0/0 to the internet
gateway. Every zone with a public subnet gets one NAT gateway in its first
public subnet, and private subnets send 0.0.0.0/0 to the NAT gateway of their
own zone, or to the first NAT gateway when their zone has none.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError, WaiterError

from . import tags as tagging
from .errors import ReconcileError, is_not_found
from .models import SubnetSpec

if TYPE_CHECKING:
    from .scope import ClusterScope

logger = logging.getLogger(__name__)

ANY_IPV4 = "0.0.0.0/0"

NAT_WAIT_DELAY_SECONDS = 15
NAT_WAIT_MAX_ATTEMPTS = 40

LIVE_NAT_GATEWAY_STATES = ("pending", "available")


class RoutingService:
    """Converges the gateways and route tables of a managed VPC."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._ec2 = scope.clients.ec2

    def _tags(self, name: str) -> dict[str, str]:
        return tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=name,
            role="common",
            additional=self._scope.additional_tags(),
        )

    # -------------------------------------------------------------------------
    # Internet gateway
    # -------------------------------------------------------------------------

    def reconcile_internet_gateway(self) -> str:
        """Ensure an internet gateway is attached to the VPC. Returns its id."""
        vpc_id = self._scope.vpc().id
        desired = self._tags(f"{self._scope.name}-igw")

        raw = self._describe_internet_gateway(vpc_id)
        if raw is None:
            raw = self._create_internet_gateway(vpc_id, desired)
        else:
            diff = tagging.compute_diff(tagging.from_sdk(raw.get("Tags")), desired)
            if diff.create:
                self._create_tags(raw["InternetGatewayId"], diff.create)

        igw_id = str(raw["InternetGatewayId"])
        self._scope.vpc().internet_gateway_id = igw_id
        return igw_id

    def _describe_internet_gateway(self, vpc_id: str, owned_only: bool = False) -> dict[str, Any] | None:
        filters = [tagging.filter_attachment_vpc(vpc_id)]
        if owned_only:
            filters.append(tagging.filter_cluster_owned(self._scope.name))
        try:
            gateways = self._ec2.describe_internet_gateways(Filters=filters).get("InternetGateways", [])
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe internet gateways in VPC {vpc_id!r}: {e}",
                resource="internet-gateway",
                operation="describe",
            ) from e
        return gateways[0] if gateways else None

    def _create_internet_gateway(self, vpc_id: str, tags: dict[str, str]) -> dict[str, Any]:
        try:
            raw = self._ec2.create_internet_gateway(
                TagSpecifications=[tagging.tag_specification("internet-gateway", tags)]
            )["InternetGateway"]
            self._ec2.attach_internet_gateway(InternetGatewayId=raw["InternetGatewayId"], VpcId=vpc_id)
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster, "FailedCreateInternetGateway", f"Failed to create new internet gateway: {e}"
            )
            raise ReconcileError(
                f"failed to create internet gateway for VPC {vpc_id!r}: {e}",
                resource="internet-gateway",
                operation="create",
            ) from e

        igw_id = raw["InternetGatewayId"]
        self._scope.recorder.event(
            self._scope.cluster,
            "SuccessfulCreateInternetGateway",
            f"Created new managed internet gateway {igw_id!r}",
        )
        logger.info("Created internet gateway", extra={"igw_id": igw_id, "vpc_id": vpc_id})
        return raw

    # -------------------------------------------------------------------------
    # NAT gateways
    # -------------------------------------------------------------------------

    def reconcile_nat_gateways(self) -> None:
        """Ensure one NAT gateway per zone that has a public subnet."""
        vpc_id = self._scope.vpc().id
        public = self._scope.network().public_subnets()
        if not public:
            logger.debug("No public subnets, skipping NAT gateways", extra={"vpc_id": vpc_id})
            return

        by_subnet = {raw["SubnetId"]: raw for raw in self._describe_nat_gateways(vpc_id)}

        created: list[str] = []
        zones: set[str] = set()
        for subnet in public:
            if subnet.availability_zone in zones:
                continue
            zones.add(subnet.availability_zone)

            raw = by_subnet.get(subnet.id)
            if raw is None:
                raw = self._create_nat_gateway(subnet)
                created.append(raw["NatGatewayId"])
            subnet.nat_gateway_id = raw["NatGatewayId"]

        if created:
            self._wait_nat_gateways("nat_gateway_available", created)

    def _describe_nat_gateways(
        self, vpc_id: str, states: tuple[str, ...] = LIVE_NAT_GATEWAY_STATES, owned_only: bool = False
    ) -> list[dict[str, Any]]:
        filters = [tagging.filter_vpc(vpc_id), tagging.filter_nat_gateway_states(*states)]
        if owned_only:
            filters.append(tagging.filter_cluster_owned(self._scope.name))
        try:
            # DescribeNatGateways takes "Filter", not "Filters"
            return list(self._ec2.describe_nat_gateways(Filter=filters).get("NatGateways", []))
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe NAT gateways in VPC {vpc_id!r}: {e}",
                resource="nat-gateway",
                operation="describe",
            ) from e

    def _create_nat_gateway(self, subnet: SubnetSpec) -> dict[str, Any]:
        allocation_id = self._free_address(subnet)
        tags = self._tags(f"{self._scope.name}-nat-{subnet.availability_zone}")
        try:
            raw = self._ec2.create_nat_gateway(
                SubnetId=subnet.id,
                AllocationId=allocation_id,
                TagSpecifications=[tagging.tag_specification("natgateway", tags)],
            )["NatGateway"]
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster, "FailedCreateNATGateway", f"Failed to create new NAT gateway: {e}"
            )
            raise ReconcileError(
                f"failed to create NAT gateway in subnet {subnet.id!r}: {e}",
                resource="nat-gateway",
                operation="create",
            ) from e

        self._scope.recorder.event(
            self._scope.cluster,
            "SuccessfulCreateNATGateway",
            f"Created new NAT gateway {raw['NatGatewayId']!r}",
        )
        logger.info(
            "Created NAT gateway",
            extra={"nat_gateway_id": raw["NatGatewayId"], "subnet_id": subnet.id, "allocation_id": allocation_id},
        )
        return raw

    def _owned_addresses(self) -> list[dict[str, Any]]:
        try:
            response = self._ec2.describe_addresses(Filters=[tagging.filter_cluster_owned(self._scope.name)])
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe elastic IPs: {e}", resource="elastic-ip", operation="describe"
            ) from e
        return list(response.get("Addresses", []))

    def _free_address(self, subnet: SubnetSpec) -> str:
        """Reuse an unassociated cluster elastic IP, or allocate a new one."""
        for address in self._owned_addresses():
            if not address.get("AssociationId"):
                return str(address["AllocationId"])

        tags = self._tags(f"{self._scope.name}-eip-nat-{subnet.availability_zone}")
        try:
            response = self._ec2.allocate_address(
                Domain="vpc", TagSpecifications=[tagging.tag_specification("elastic-ip", tags)]
            )
        except ClientError as e:
            raise ReconcileError(
                f"failed to allocate elastic IP: {e}", resource="elastic-ip", operation="create"
            ) from e
        logger.info("Allocated elastic IP", extra={"allocation_id": response["AllocationId"]})
        return str(response["AllocationId"])

    def _wait_nat_gateways(self, waiter: str, gateway_ids: list[str]) -> None:
        try:
            self._ec2.get_waiter(waiter).wait(
                NatGatewayIds=gateway_ids,
                WaiterConfig={"Delay": NAT_WAIT_DELAY_SECONDS, "MaxAttempts": NAT_WAIT_MAX_ATTEMPTS},
            )
        except WaiterError as e:
            raise ReconcileError(
                f"failed to wait for NAT gateways {gateway_ids}: {e}",
                resource="nat-gateway",
                operation="wait",
            ) from e

    # -------------------------------------------------------------------------
    # Route tables
    # -------------------------------------------------------------------------

    def reconcile_route_tables(self) -> None:
        """Give every subnet its own route table with the right default route."""
        vpc_id = self._scope.vpc().id
        network = self._scope.network()

        by_subnet: dict[str, dict[str, Any]] = {}
        for table in self._describe_route_tables(vpc_id):
            for association in table.get("Associations", []):
                if association.get("SubnetId"):
                    by_subnet[association["SubnetId"]] = table

        nat_by_zone: dict[str, str] = {}
        for subnet in network.public_subnets():
            if subnet.nat_gateway_id:
                nat_by_zone.setdefault(subnet.availability_zone, subnet.nat_gateway_id)

        for subnet in network.subnets:
            table = by_subnet.get(subnet.id)
            if table is None:
                table = self._create_route_table(vpc_id, subnet)
                self._associate_route_table(table["RouteTableId"], subnet.id)

            target = self._default_route_target(subnet, nat_by_zone)
            if target is not None:
                self._converge_default_route(table, target)

            subnet.route_table_id = table["RouteTableId"]

    def _default_route_target(self, subnet: SubnetSpec, nat_by_zone: dict[str, str]) -> dict[str, str] | None:
        if subnet.is_public:
            return {"GatewayId": self._scope.vpc().internet_gateway_id}
        nat_gateway_id = nat_by_zone.get(subnet.availability_zone) or next(iter(nat_by_zone.values()), None)
        if nat_gateway_id is None:
            # Private-only networks get a local route only
            return None
        return {"NatGatewayId": nat_gateway_id}

    def _describe_route_tables(self, vpc_id: str) -> list[dict[str, Any]]:
        filters = [tagging.filter_vpc(vpc_id), tagging.filter_cluster_owned(self._scope.name)]
        try:
            return list(self._ec2.describe_route_tables(Filters=filters).get("RouteTables", []))
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe route tables in VPC {vpc_id!r}: {e}",
                resource="route-table",
                operation="describe",
            ) from e

    def _create_route_table(self, vpc_id: str, subnet: SubnetSpec) -> dict[str, Any]:
        visibility = "public" if subnet.is_public else "private"
        tags = self._tags(f"{self._scope.name}-rt-{visibility}-{subnet.availability_zone}")
        try:
            raw = self._ec2.create_route_table(
                VpcId=vpc_id, TagSpecifications=[tagging.tag_specification("route-table", tags)]
            )["RouteTable"]
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster, "FailedCreateRouteTable", f"Failed to create managed RouteTable: {e}"
            )
            raise ReconcileError(
                f"failed to create route table for subnet {subnet.id!r}: {e}",
                resource="route-table",
                operation="create",
            ) from e

        self._scope.recorder.event(
            self._scope.cluster,
            "SuccessfulCreateRouteTable",
            f"Created managed RouteTable {raw['RouteTableId']!r}",
        )
        logger.info("Created route table", extra={"route_table_id": raw["RouteTableId"], "subnet_id": subnet.id})
        return raw

    def _associate_route_table(self, route_table_id: str, subnet_id: str) -> None:
        try:
            self._ec2.associate_route_table(RouteTableId=route_table_id, SubnetId=subnet_id)
        except ClientError as e:
            raise ReconcileError(
                f"failed to associate route table {route_table_id!r} with subnet {subnet_id!r}: {e}",
                resource="route-table",
                operation="associate",
            ) from e

    def _converge_default_route(self, table: dict[str, Any], target: dict[str, str]) -> None:
        route_table_id = table["RouteTableId"]
        current = next(
            (r for r in table.get("Routes", []) if r.get("DestinationCidrBlock") == ANY_IPV4), None
        )
        if current is not None and all(current.get(k) == v for k, v in target.items()):
            return

        request = {"RouteTableId": route_table_id, "DestinationCidrBlock": ANY_IPV4, **target}
        try:
            if current is None:
                self._ec2.create_route(**request)
            else:
                self._ec2.replace_route(**request)
        except ClientError as e:
            raise ReconcileError(
                f"failed to set default route in route table {route_table_id!r}: {e}",
                resource="route-table",
                operation="route",
            ) from e
        logger.info(
            "Updated default route",
            extra={"route_table_id": route_table_id, "route_target": next(iter(target.values()))},
        )

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

    def delete_route_tables(self, vpc_id: str) -> None:
        for table in self._describe_route_tables(vpc_id):
            route_table_id = table["RouteTableId"]
            try:
                for association in table.get("Associations", []):
                    if association.get("Main"):
                        continue
                    self._ec2.disassociate_route_table(AssociationId=association["RouteTableAssociationId"])
                self._ec2.delete_route_table(RouteTableId=route_table_id)
            except ClientError as e:
                if is_not_found(e):
                    continue
                raise ReconcileError(
                    f"failed to delete route table {route_table_id!r}: {e}",
                    resource="route-table",
                    operation="delete",
                ) from e
            logger.info("Deleted route table", extra={"route_table_id": route_table_id})

    def delete_nat_gateways(self, vpc_id: str) -> None:
        """Delete the cluster NAT gateways, then release their elastic IPs."""
        deleted: list[str] = []
        for raw in self._describe_nat_gateways(vpc_id, LIVE_NAT_GATEWAY_STATES + ("deleting",), owned_only=True):
            nat_gateway_id = raw["NatGatewayId"]
            try:
                self._ec2.delete_nat_gateway(NatGatewayId=nat_gateway_id)
            except ClientError as e:
                if is_not_found(e):
                    continue
                raise ReconcileError(
                    f"failed to delete NAT gateway {nat_gateway_id!r}: {e}",
                    resource="nat-gateway",
                    operation="delete",
                ) from e
            deleted.append(nat_gateway_id)

        if deleted:
            self._wait_nat_gateways("nat_gateway_deleted", deleted)
            logger.info("Deleted NAT gateways", extra={"nat_gateway_ids": deleted})

        for address in self._owned_addresses():
            allocation_id = address["AllocationId"]
            try:
                self._ec2.release_address(AllocationId=allocation_id)
            except ClientError as e:
                if is_not_found(e):
                    continue
                raise ReconcileError(
                    f"failed to release elastic IP {allocation_id!r}: {e}",
                    resource="elastic-ip",
                    operation="delete",
                ) from e
            logger.info("Released elastic IP", extra={"allocation_id": allocation_id})

    def delete_internet_gateway(self, vpc_id: str) -> None:
        raw = self._describe_internet_gateway(vpc_id, owned_only=True)
        if raw is None:
            logger.debug("No internet gateway to delete", extra={"vpc_id": vpc_id})
            return

        igw_id = raw["InternetGatewayId"]
        try:
            self._ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
            self._ec2.delete_internet_gateway(InternetGatewayId=igw_id)
        except ClientError as e:
            if is_not_found(e):
                return
            self._scope.recorder.warning(
                self._scope.cluster,
                "FailedDeleteInternetGateway",
                f"Failed to delete internet gateway {igw_id!r}: {e}",
            )
            raise ReconcileError(
                f"failed to delete internet gateway {igw_id!r}: {e}",
                resource="internet-gateway",
                operation="delete",
            ) from e

        self._scope.recorder.event(
            self._scope.cluster, "SuccessfulDeleteInternetGateway", f"Deleted internet gateway {igw_id!r}"
        )
        logger.info("Deleted internet gateway", extra={"igw_id": igw_id, "vpc_id": vpc_id})
