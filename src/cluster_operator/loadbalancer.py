"""API server classic load balancer convergence."""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from . import tags as tagging
from .errors import FailedDependencyError, ReconcileError, is_not_found
from .models import LoadBalancer, LoadBalancerScheme, SecurityGroupRole, SubnetSpec

if TYPE_CHECKING:
    from .scope import ClusterScope

logger = logging.getLogger(__name__)

# Classic load balancer names are limited to 32 characters
MAX_ELB_NAME_LENGTH = 32
APISERVER_ELB_SUFFIX = "-apiserver"
APISERVER_ROLE = "apiserver"

HEALTH_CHECK_INTERVAL_SECONDS = 10
HEALTH_CHECK_TIMEOUT_SECONDS = 5
HEALTH_CHECK_HEALTHY_THRESHOLD = 5
HEALTH_CHECK_UNHEALTHY_THRESHOLD = 3
IDLE_TIMEOUT_SECONDS = 600


def elb_name(cluster_name: str) -> str:
    """Name of the cluster's API server load balancer.

    Names that would exceed the classic load balancer limit are replaced by
    a stable hash of the cluster name.
    """
    name = f"{cluster_name}{APISERVER_ELB_SUFFIX}"
    if len(name) <= MAX_ELB_NAME_LENGTH:
        return name
    digest = hashlib.sha256(cluster_name.encode("utf-8")).hexdigest()
    return f"{digest[: MAX_ELB_NAME_LENGTH - len(APISERVER_ELB_SUFFIX)]}{APISERVER_ELB_SUFFIX}"


class LoadBalancerService:
    """Converges the classic load balancer in front of the API servers."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._elb = scope.clients.elb

    @property
    def name(self) -> str:
        return elb_name(self._scope.name)

    def reconcile_load_balancer(self) -> None:
        """Ensure the API server load balancer exists and record it in status."""
        if self._scope.is_eks_managed():
            logger.debug("Managed control plane, skipping API server load balancer")
            return

        scheme = self._scope.load_balancer_scheme()
        subnets = self._subnets(scheme)
        desired_tags = self._tags()

        raw = self._describe()
        if raw is None:
            raw = self._create(scheme, subnets, desired_tags)
        else:
            self._converge(raw, subnets, desired_tags)

        self._scope.network().api_server_elb = LoadBalancer(
            name=raw["LoadBalancerName"],
            dns_name=raw.get("DNSName", ""),
            scheme=LoadBalancerScheme(raw.get("Scheme", scheme.value)),
            availability_zones=sorted(raw.get("AvailabilityZones", [])),
            subnet_ids=sorted(raw.get("Subnets", [])),
        )

    def _subnets(self, scheme: LoadBalancerScheme) -> list[SubnetSpec]:
        network = self._scope.network()
        if scheme == LoadBalancerScheme.INTERNAL:
            subnets = network.private_subnets()
        else:
            subnets = network.public_subnets()

        if not subnets:
            raise FailedDependencyError(
                f"no {'private' if scheme == LoadBalancerScheme.INTERNAL else 'public'} subnets "
                f"available for the {scheme.value} API server load balancer",
                resource="load-balancer",
                operation="create",
            )
        return subnets

    def _tags(self) -> dict[str, str]:
        return tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=self.name,
            role=APISERVER_ROLE,
            additional=self._scope.additional_tags(),
        )

    def _describe(self) -> dict[str, Any] | None:
        try:
            response = self._elb.describe_load_balancers(LoadBalancerNames=[self.name])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise ReconcileError(
                f"failed to describe load balancer {self.name!r}: {e}",
                resource="load-balancer",
                operation="describe",
            ) from e

        descriptions = response.get("LoadBalancerDescriptions", [])
        return descriptions[0] if descriptions else None

    def _create(
        self, scheme: LoadBalancerScheme, subnets: list[SubnetSpec], tags: dict[str, str]
    ) -> dict[str, Any]:
        group = self._scope.security_groups().get(SecurityGroupRole.API_SERVER_LB)
        if group is None:
            raise FailedDependencyError(
                "API server load balancer security group not available",
                resource="load-balancer",
                operation="create",
            )

        port = self._scope.api_server_port()
        try:
            response = self._elb.create_load_balancer(
                LoadBalancerName=self.name,
                Listeners=[
                    {
                        "Protocol": "TCP",
                        "LoadBalancerPort": port,
                        "InstanceProtocol": "TCP",
                        "InstancePort": port,
                    }
                ],
                Subnets=[s.id for s in subnets],
                SecurityGroups=[group.id],
                Scheme=scheme.value,
                Tags=tagging.to_sdk(tags),
            )
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster,
                "FailedCreateLoadBalancer",
                f"Failed to create load balancer {self.name!r}: {e}",
            )
            raise ReconcileError(
                f"failed to create load balancer {self.name!r}: {e}",
                resource="load-balancer",
                operation="create",
            ) from e

        try:
            self._elb.configure_health_check(
                LoadBalancerName=self.name,
                HealthCheck={
                    "Target": f"TCP:{port}",
                    "Interval": HEALTH_CHECK_INTERVAL_SECONDS,
                    "Timeout": HEALTH_CHECK_TIMEOUT_SECONDS,
                    "UnhealthyThreshold": HEALTH_CHECK_UNHEALTHY_THRESHOLD,
                    "HealthyThreshold": HEALTH_CHECK_HEALTHY_THRESHOLD,
                },
            )
            self._elb.modify_load_balancer_attributes(
                LoadBalancerName=self.name,
                LoadBalancerAttributes={
                    "CrossZoneLoadBalancing": {"Enabled": self._cross_zone()},
                    "ConnectionSettings": {"IdleTimeout": IDLE_TIMEOUT_SECONDS},
                },
            )
        except ClientError as e:
            raise ReconcileError(
                f"failed to configure load balancer {self.name!r}: {e}",
                resource="load-balancer",
                operation="configure",
            ) from e

        self._scope.recorder.event(
            self._scope.cluster, "SuccessfulCreateLoadBalancer", f"Created load balancer {self.name!r}"
        )
        logger.info("Created load balancer", extra={"elb_name": self.name, "dns_name": response.get("DNSName", "")})

        return {
            "LoadBalancerName": self.name,
            "DNSName": response.get("DNSName", ""),
            "Scheme": scheme.value,
            "AvailabilityZones": sorted({s.availability_zone for s in subnets if s.availability_zone}),
            "Subnets": [s.id for s in subnets],
        }

    def _cross_zone(self) -> bool:
        spec = self._scope.cluster.spec.control_plane_load_balancer
        return spec.cross_zone_load_balancing if spec is not None else False

    def _converge(self, raw: dict[str, Any], subnets: list[SubnetSpec], desired_tags: dict[str, str]) -> None:
        """Attach missing subnets and reconcile tags of an existing load balancer."""
        current_subnets = set(raw.get("Subnets", []))
        missing = [s.id for s in subnets if s.id not in current_subnets]
        if missing:
            try:
                response = self._elb.attach_load_balancer_to_subnets(
                    LoadBalancerName=self.name, Subnets=missing
                )
            except ClientError as e:
                raise ReconcileError(
                    f"failed to attach load balancer {self.name!r} to subnets: {e}",
                    resource="load-balancer",
                    operation="attach",
                ) from e
            raw["Subnets"] = response.get("Subnets", sorted(current_subnets | set(missing)))
            zones = set(raw.get("AvailabilityZones", []))
            zones.update(s.availability_zone for s in subnets if s.id in missing and s.availability_zone)
            raw["AvailabilityZones"] = sorted(zones)

        try:
            descriptions = self._elb.describe_tags(LoadBalancerNames=[self.name]).get("TagDescriptions", [])
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe tags of load balancer {self.name!r}: {e}",
                resource="load-balancer",
                operation="describe",
            ) from e

        current_tags = tagging.from_sdk(descriptions[0].get("Tags")) if descriptions else {}
        diff = tagging.compute_diff(current_tags, desired_tags)
        try:
            if diff.create:
                self._elb.add_tags(LoadBalancerNames=[self.name], Tags=tagging.to_sdk(diff.create))
            if diff.remove:
                self._elb.remove_tags(
                    LoadBalancerNames=[self.name], Tags=[{"Key": key} for key in sorted(diff.remove)]
                )
        except ClientError as e:
            raise ReconcileError(
                f"failed to update tags of load balancer {self.name!r}: {e}",
                resource="load-balancer",
                operation="tag",
            ) from e

    def delete_load_balancers(self) -> None:
        """Delete the API server load balancer; a missing one is fine."""
        if self._scope.is_eks_managed():
            return

        if self._describe() is None:
            logger.debug("No load balancer to delete", extra={"elb_name": self.name})
        else:
            try:
                self._elb.delete_load_balancer(LoadBalancerName=self.name)
            except ClientError as e:
                if not is_not_found(e):
                    self._scope.recorder.warning(
                        self._scope.cluster,
                        "FailedDeleteLoadBalancer",
                        f"Failed to delete load balancer {self.name!r}: {e}",
                    )
                    raise ReconcileError(
                        f"failed to delete load balancer {self.name!r}: {e}",
                        resource="load-balancer",
                        operation="delete",
                    ) from e
            else:
                self._scope.recorder.event(
                    self._scope.cluster, "SuccessfulDeleteLoadBalancer", f"Deleted load balancer {self.name!r}"
                )
                logger.info("Deleted load balancer", extra={"elb_name": self.name})

        self._scope.network().api_server_elb = LoadBalancer()
