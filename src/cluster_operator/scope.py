"""Reconciliation scopes.

A ClusterScope bundles everything one reconciliation of one AWSCluster
needs: the object being converged, its owner, the AWS clients, operator
configuration and the event sink. Convergers only ever see a scope, which
keeps them substitutable in tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import boto3

from .models import (
    AWSCluster,
    FailureDomainSpec,
    LoadBalancerScheme,
    MachineSpec,
    NetworkStatus,
    OwnerCluster,
    SecurityGroup,
    SecurityGroupRole,
    SubnetSpec,
    VPCSpec,
)

if TYPE_CHECKING:
    from .config import Config
    from .events import EventRecorder
    from .store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class AWSClients:
    """The AWS service clients the convergers talk to."""

    ec2: Any
    elb: Any
    s3: Any
    ssm: Any
    events: Any
    sqs: Any

    @classmethod
    def from_session(cls, session: boto3.Session) -> AWSClients:
        """Create all clients from one session."""
        return cls(
            ec2=session.client("ec2"),
            elb=session.client("elb"),
            s3=session.client("s3"),
            ssm=session.client("ssm"),
            events=session.client("events"),
            sqs=session.client("sqs"),
        )


def new_clients(region: str) -> AWSClients:
    """Create clients bound to a region."""
    return AWSClients.from_session(boto3.Session(region_name=region))


class ClusterScope:
    """State and collaborators for one reconciliation of one AWSCluster."""

    def __init__(
        self,
        cluster: AWSCluster,
        owner: OwnerCluster,
        clients: AWSClients,
        config: Config,
        recorder: EventRecorder,
        store: ObjectStore,
    ) -> None:
        self.cluster = cluster
        self.owner = owner
        self.clients = clients
        self.config = config
        self.recorder = recorder
        self._store = store

    @property
    def name(self) -> str:
        return self.cluster.metadata.name

    @property
    def namespace(self) -> str:
        return self.cluster.metadata.namespace

    @property
    def region(self) -> str:
        return self.cluster.spec.region

    def network(self) -> NetworkStatus:
        return self.cluster.status.network

    def vpc(self) -> VPCSpec:
        return self.cluster.status.network.vpc

    def subnets(self) -> list[SubnetSpec]:
        return self.cluster.status.network.subnets

    def security_groups(self) -> dict[SecurityGroupRole, SecurityGroup]:
        return self.cluster.status.network.security_groups

    def is_externally_managed(self) -> bool:
        return self.cluster.is_externally_managed()

    def is_eks_managed(self) -> bool:
        return self.cluster.spec.eks_managed

    def api_server_port(self) -> int:
        if self.owner.api_server_port:
            return self.owner.api_server_port
        return self.config.api_server_port

    def ssh_key_name(self) -> str | None:
        return self.cluster.spec.ssh_key_name

    def additional_tags(self) -> dict[str, str]:
        return dict(self.cluster.spec.additional_tags)

    def load_balancer_scheme(self) -> LoadBalancerScheme:
        if self.cluster.spec.control_plane_load_balancer is None:
            return LoadBalancerScheme.INTERNET_FACING
        return self.cluster.spec.control_plane_load_balancer.scheme

    def image_lookup_format(self) -> str:
        return self.cluster.spec.image_lookup_format

    def image_lookup_org(self) -> str:
        return self.cluster.spec.image_lookup_org

    def image_lookup_base_os(self) -> str:
        return self.cluster.spec.image_lookup_base_os

    def set_failure_domain(self, zone: str, spec: FailureDomainSpec) -> None:
        self.cluster.status.failure_domains[zone] = spec

    def patch_object(self) -> None:
        """Persist the object, adopting the stored resource version.

        Raises:
            ConflictError: If the object changed since it was read.
        """
        self.cluster = self._store.patch(self.cluster)
        logger.debug(
            "Object persisted",
            extra={"object": self.cluster.key, "resource_version": self.cluster.metadata.resource_version},
        )


@dataclass
class MachineScope:
    """A ClusterScope narrowed to one machine's instance template."""

    cluster_scope: ClusterScope
    machine: MachineSpec

    @property
    def name(self) -> str:
        return self.machine.name

    @property
    def role(self) -> str:
        return self.machine.role

    @property
    def version(self) -> str | None:
        return self.machine.version

    @property
    def failure_domain(self) -> str | None:
        return self.machine.failure_domain

    def is_control_plane(self) -> bool:
        return self.machine.role == "control-plane"

    def is_externally_managed(self) -> bool:
        return self.cluster_scope.is_externally_managed()

    def is_eks_managed(self) -> bool:
        return self.cluster_scope.is_eks_managed()

    def additional_tags(self) -> dict[str, str]:
        """Cluster tags merged with machine tags; the machine wins."""
        tags = self.cluster_scope.additional_tags()
        tags.update(self.machine.additional_tags)
        return tags
