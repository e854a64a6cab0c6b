"""Bastion host convergence.

The bastion is a single SSH jump host in the first public subnet. It is
found by its Name tag, so a lost status never leads to a second bastion.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from . import resolvers
from . import tags as tagging
from .errors import FailedDependencyError, ReconcileError, is_not_found
from .instances import InstanceService
from .models import Instance, InstanceState, MachineSpec, SecurityGroupRole
from .scope import MachineScope

if TYPE_CHECKING:
    from .scope import ClusterScope

logger = logging.getLogger(__name__)

BASTION_ROLE = "bastion"

# Every state from which an instance can still be terminated
LIVE_INSTANCE_STATES = (
    InstanceState.PENDING.value,
    InstanceState.RUNNING.value,
    InstanceState.STOPPING.value,
    InstanceState.STOPPED.value,
)


class BastionService:
    """Converges the cluster's bastion host."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._ec2 = scope.clients.ec2
        self._instances = InstanceService(scope)

    @property
    def name(self) -> str:
        return f"{self._scope.name}-bastion"

    def reconcile_bastion(self) -> None:
        """Create the bastion when enabled, remove it when disabled."""
        spec = self._scope.cluster.spec.bastion
        if not spec.enabled:
            logger.debug("Bastion host is disabled", extra={"cluster": self._scope.name})
            self.delete_bastion()
            return

        existing = self._describe_bastion()
        if existing is not None:
            self._scope.cluster.status.bastion = existing
            logger.debug("Found existing bastion host", extra={"instance_id": existing.id})
            return

        public = self._scope.network().public_subnets()
        if not public:
            raise FailedDependencyError(
                "failed to run bastion host, no public subnets available",
                resource="bastion",
                operation="create",
            )

        group = self._scope.security_groups().get(SecurityGroupRole.BASTION)
        if group is None:
            raise FailedDependencyError(
                "failed to run bastion host, bastion security group not available",
                resource="bastion",
                operation="create",
            )

        image_id = spec.ami or resolvers.default_bastion_ami_lookup(self._ec2)

        machine = MachineSpec(name=self.name, role=BASTION_ROLE)
        key_name = resolvers.resolve_ssh_key_name(
            MachineScope(self._scope, machine), self._scope.config.default_ssh_key_name
        )

        instance = Instance(
            type=spec.instance_type,
            image_id=image_id,
            subnet_id=public[0].id,
            security_group_ids=[group.id],
            ssh_key_name=key_name,
            tags=tagging.build(
                self._scope.name,
                tagging.ResourceLifecycle.OWNED,
                name=self.name,
                role=BASTION_ROLE,
                additional=self._scope.additional_tags(),
            ),
        )

        created = self._instances.run_instance(BASTION_ROLE, instance)
        self._scope.cluster.status.bastion = created
        logger.info(
            "Created bastion host",
            extra={"instance_id": created.id, "subnet_id": instance.subnet_id},
        )

    def delete_bastion(self) -> None:
        """Terminate the bastion, if any, and clear it from status."""
        instance = self._describe_bastion(LIVE_INSTANCE_STATES)
        if instance is None:
            self._scope.cluster.status.bastion = None
            return

        self._instances.terminate_instance_and_wait(instance.id)
        self._scope.cluster.status.bastion = None
        logger.info("Deleted bastion host", extra={"instance_id": instance.id})

    def _describe_bastion(
        self, states: tuple[str, ...] = (InstanceState.PENDING.value, InstanceState.RUNNING.value)
    ) -> Instance | None:
        filters: list[dict[str, Any]] = [
            tagging.filter_cluster_owned(self._scope.name),
            tagging.filter_name(self.name),
            tagging.filter_instance_states(*states),
        ]
        vpc_id = self._scope.vpc().id
        if vpc_id:
            filters.insert(0, tagging.filter_vpc(vpc_id))

        try:
            response = self._ec2.describe_instances(Filters=filters)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise ReconcileError(
                f"failed to describe bastion host: {e}", resource="bastion", operation="describe"
            ) from e

        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                return self._instances.sdk_to_instance(raw)
        return None
