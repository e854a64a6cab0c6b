"""EC2 instance provisioning.

InstanceService turns a machine template into exactly one running instance
and manages that instance afterwards: security group membership, tags and
termination. All lookups treat a missing instance as None, never as an
error.
"""

from __future__ import annotations

import base64
import gzip
import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError, WaiterError

from . import resolvers
from . import tags as tagging
from .errors import (
    FailedDependencyError,
    InstanceCreateError,
    ReconcileError,
    is_failed_dependency,
    is_not_found,
)
from .models import (
    AddressType,
    Instance,
    InstanceState,
    MachineAddress,
    SpotMarketOptions,
    Volume,
)

if TYPE_CHECKING:
    from .scope import ClusterScope, MachineScope

logger = logging.getLogger(__name__)

# Polling interval of the instance waiters
WAITER_DELAY_SECONDS = 5

# Event reasons
SUCCESSFUL_CREATE = "SuccessfulCreate"
FAILED_CREATE = "FailedCreate"
SUCCESSFUL_TERMINATE = "SuccessfulTerminate"
FAILED_TERMINATE = "FailedTerminate"
FAILED_UPDATE_TAGS = "FailedUpdateTags"


class InstanceService:
    """Finds, creates and terminates EC2 instances for one cluster."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._ec2 = scope.clients.ec2

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get_running_instance_by_tags(self, machine_scope: MachineScope) -> Instance | None:
        """Find a pending or running instance for the machine.

        Instances are matched by VPC, cluster ownership and Name tag. The
        first match wins; nothing guarantees there is only one.
        """
        filters = [
            tagging.filter_vpc(self._scope.vpc().id),
            tagging.filter_cluster_owned(self._scope.name),
            tagging.filter_name(machine_scope.name),
            tagging.filter_instance_states(InstanceState.PENDING.value, InstanceState.RUNNING.value),
        ]

        try:
            response = self._ec2.describe_instances(Filters=filters)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise ReconcileError(
                f"failed to describe running instances: {e}",
                resource="instance",
                operation="describe",
            ) from e

        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                return self.sdk_to_instance(raw)

        return None

    def instance_if_exists(self, instance_id: str | None) -> Instance | None:
        """Look an instance up by id."""
        if not instance_id:
            logger.debug("Instance does not have an instance id")
            return None

        raw = self._describe_raw(instance_id)
        return self.sdk_to_instance(raw) if raw is not None else None

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_instance(self, machine_scope: MachineScope) -> Instance:
        """Create the instance described by a machine template.

        Raises:
            FailedDependencyError: If a prerequisite (subnet, security group,
                image, load balancer) is not there yet.
            InstanceCreateError: If the template cannot produce a valid request.
            ReconcileError: If an AWS call fails.
        """
        try:
            return self._create_instance(machine_scope)
        except (ReconcileError, ValueError) as e:
            if not is_failed_dependency(e):
                self._scope.recorder.warning(
                    self._scope.cluster,
                    FAILED_CREATE,
                    f"Failed to create instance for machine {machine_scope.name!r}: {e}",
                )
            raise

    def _create_instance(self, machine_scope: MachineScope) -> Instance:
        logger.debug("Creating an instance for a machine", extra={"machine": machine_scope.name})

        machine = machine_scope.machine
        ec2 = self._ec2
        ssm = self._scope.clients.ssm

        instance = Instance(
            type=machine.instance_type,
            iam_profile=machine.iam_instance_profile,
            root_volume=machine.root_volume,
            non_root_volumes=list(machine.non_root_volumes),
            network_interfaces=list(machine.network_interfaces),
        )

        if machine.user_data:
            payload = machine.user_data.encode("utf-8")
            if not machine.uncompressed_user_data:
                payload = gzip.compress(payload)
            instance.user_data = base64.b64encode(payload).decode("ascii")

        instance.image_id = resolvers.resolve_image_id(machine_scope, ec2, ssm)
        instance.subnet_id = resolvers.find_subnet(machine_scope, ec2)

        if (
            not machine_scope.is_externally_managed()
            and not machine_scope.is_eks_managed()
            and not self._scope.network().api_server_elb.dns_name
        ):
            raise FailedDependencyError(
                "failed to run controlplane, APIServer ELB not available",
                resource="instance",
                operation="create",
            )

        instance.security_group_ids = resolvers.get_core_security_groups(machine_scope)
        instance.security_group_ids.extend(resolvers.get_additional_security_groups(machine_scope, ec2))

        instance.ssh_key_name = resolvers.resolve_ssh_key_name(
            machine_scope, self._scope.config.default_ssh_key_name
        )
        instance.spot_market_options = machine.spot_market_options
        instance.tenancy = machine.tenancy

        instance.tags = tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=machine_scope.name,
            role=machine_scope.role,
            additional=machine_scope.additional_tags(),
            cloud_provider=True,
        )

        created = self.run_instance(machine_scope.role, instance)

        for eni_id in instance.network_interfaces:
            self.attach_security_groups_to_network_interface(instance.security_group_ids, eni_id)

        return created

    def run_instance(self, role: str, instance: Instance) -> Instance:
        """Issue RunInstances for a fully resolved instance request.

        Raises:
            InstanceCreateError: If a volume definition is invalid.
            ReconcileError: If the request fails.
        """
        request: dict[str, Any] = {
            "ImageId": instance.image_id,
            "InstanceType": instance.type,
            "MinCount": 1,
            "MaxCount": 1,
        }

        if instance.ssh_key_name:
            request["KeyName"] = instance.ssh_key_name

        if instance.user_data:
            # The SDK base64-encodes UserData itself
            request["UserData"] = base64.b64decode(instance.user_data)

        if instance.network_interfaces:
            request["NetworkInterfaces"] = [
                {"NetworkInterfaceId": eni_id, "DeviceIndex": index}
                for index, eni_id in enumerate(instance.network_interfaces)
            ]
        else:
            request["SubnetId"] = instance.subnet_id
            if instance.security_group_ids:
                request["SecurityGroupIds"] = list(instance.security_group_ids)

        if instance.iam_profile:
            request["IamInstanceProfile"] = {"Name": instance.iam_profile}

        block_devices = self._block_device_mappings(instance)
        if block_devices:
            request["BlockDeviceMappings"] = block_devices

        if instance.tags:
            request["TagSpecifications"] = [tagging.tag_specification("instance", instance.tags)]

        market_options = resolvers.get_instance_market_options(instance.spot_market_options)
        if market_options is not None:
            request["InstanceMarketOptions"] = market_options

        if instance.tenancy:
            request["Placement"] = {"Tenancy": instance.tenancy}

        try:
            response = self._ec2.run_instances(**request)
        except ClientError as e:
            raise ReconcileError(
                f"failed to run instance: {e}", resource="instance", operation="run"
            ) from e

        raw_instances = response.get("Instances", [])
        if not raw_instances:
            raise ReconcileError("no instance returned for reservation", resource="instance", operation="run")

        instance_id = raw_instances[0]["InstanceId"]
        self._wait_until_running(instance_id)

        self._scope.recorder.event(
            self._scope.cluster,
            SUCCESSFUL_CREATE,
            f"Created new {role} instance with id {instance_id!r}",
        )
        return self.sdk_to_instance(raw_instances[0])

    def _wait_until_running(self, instance_id: str) -> None:
        timeout = self._scope.config.instance_wait_timeout_seconds
        waiter = self._ec2.get_waiter("instance_running")
        try:
            waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig={
                    "Delay": WAITER_DELAY_SECONDS,
                    "MaxAttempts": max(1, timeout // WAITER_DELAY_SECONDS),
                },
            )
        except WaiterError as e:
            # Not fatal: the instance exists and will be found by tags next time
            logger.warning(
                "Timed out waiting for instance to run",
                extra={"instance_id": instance_id, "timeout_seconds": timeout, "error": str(e)},
            )

    def _block_device_mappings(self, instance: Instance) -> list[dict[str, Any]]:
        mappings: list[dict[str, Any]] = []

        if instance.root_volume is not None:
            device_name, snapshot_size = self._image_root_device(instance.image_id)
            if instance.root_volume.size < snapshot_size:
                raise InstanceCreateError(
                    f"root volume size ({instance.root_volume.size}) must be greater than or "
                    f"equal to the image's snapshot size ({snapshot_size})",
                    resource="instance",
                    operation="run",
                )
            mappings.append({"DeviceName": device_name, "Ebs": _ebs(instance.root_volume)})

        for volume in instance.non_root_volumes:
            if not volume.device_name:
                raise InstanceCreateError(
                    "non root volume should have device name specified",
                    resource="instance",
                    operation="run",
                )
            mappings.append({"DeviceName": volume.device_name, "Ebs": _ebs(volume)})

        return mappings

    def _image_root_device(self, image_id: str) -> tuple[str, int]:
        """Return the root device name and snapshot size of an image."""
        try:
            images = self._ec2.describe_images(ImageIds=[image_id]).get("Images", [])
        except ClientError as e:
            if is_not_found(e):
                raise FailedDependencyError(
                    f"image {image_id!r} not found", resource="image", operation="describe"
                ) from e
            raise ReconcileError(
                f"failed to describe image {image_id!r}: {e}", resource="image", operation="describe"
            ) from e

        if not images:
            raise FailedDependencyError(
                f"image {image_id!r} not found", resource="image", operation="describe"
            )

        image = images[0]
        device_name = image.get("RootDeviceName", "")
        snapshot_size = 0
        for mapping in image.get("BlockDeviceMappings", []):
            if mapping.get("DeviceName") == device_name:
                snapshot_size = int(mapping.get("Ebs", {}).get("VolumeSize", 0))
                break
        return device_name, snapshot_size

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    def terminate_instance(self, instance_id: str) -> None:
        """Request termination of an instance.

        Raises:
            ReconcileError: If the request fails.
        """
        logger.debug("Terminating instance", extra={"instance_id": instance_id})
        try:
            self._ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            self._scope.recorder.warning(
                self._scope.cluster, FAILED_TERMINATE, f"Failed to terminate instance {instance_id!r}: {e}"
            )
            raise ReconcileError(
                f"failed to terminate instance with id {instance_id!r}: {e}",
                resource="instance",
                operation="terminate",
            ) from e

        self._scope.recorder.event(
            self._scope.cluster, SUCCESSFUL_TERMINATE, f"Terminated instance {instance_id!r}"
        )
        logger.info("Terminated instance", extra={"instance_id": instance_id})

    def terminate_instance_and_wait(self, instance_id: str) -> None:
        """Terminate an instance and block until it is gone.

        Raises:
            ReconcileError: If termination fails or does not finish in time.
        """
        self.terminate_instance(instance_id)

        timeout = self._scope.config.instance_wait_timeout_seconds
        waiter = self._ec2.get_waiter("instance_terminated")
        try:
            waiter.wait(
                InstanceIds=[instance_id],
                WaiterConfig={
                    "Delay": WAITER_DELAY_SECONDS,
                    "MaxAttempts": max(1, timeout // WAITER_DELAY_SECONDS),
                },
            )
        except WaiterError as e:
            raise ReconcileError(
                f"failed to wait for instance {instance_id!r} termination: {e}",
                resource="instance",
                operation="terminate",
            ) from e

    # -------------------------------------------------------------------------
    # Security groups
    # -------------------------------------------------------------------------

    def get_instance_security_groups(self, instance_id: str) -> dict[str, list[str]]:
        """Map each network interface of an instance to its security group ids."""
        instance = self._describe_raw(instance_id)
        if instance is None:
            return {}

        groups: dict[str, list[str]] = {}
        for eni in instance.get("NetworkInterfaces", []):
            groups[eni["NetworkInterfaceId"]] = [g["GroupId"] for g in eni.get("Groups", [])]
        return groups

    def update_instance_security_groups(self, instance_id: str, group_ids: list[str]) -> None:
        """Ensure every network interface of an instance carries the groups.

        Existing memberships are kept. Interfaces that already carry every
        requested group are left untouched.
        """
        for eni_id in self.get_instance_security_groups(instance_id):
            self.attach_security_groups_to_network_interface(group_ids, eni_id)

    def attach_security_groups_to_network_interface(self, group_ids: list[str], eni_id: str) -> None:
        existing = self._network_interface_groups(eni_id)
        total = list(existing)
        for group_id in group_ids:
            if group_id not in total:
                total.append(group_id)

        if len(total) == len(existing):
            logger.debug("Network interface already has the security groups", extra={"eni": eni_id})
            return

        self._modify_network_interface_groups(eni_id, total)

    def detach_security_groups_from_network_interface(self, group_ids: list[str], eni_id: str) -> None:
        """Remove the groups from an interface, keeping every other membership."""
        existing = self._network_interface_groups(eni_id)
        remaining = [g for g in existing if g not in set(group_ids)]
        if len(remaining) == len(existing):
            return

        self._modify_network_interface_groups(eni_id, remaining)

    def _network_interface_groups(self, eni_id: str) -> list[str]:
        try:
            response = self._ec2.describe_network_interfaces(NetworkInterfaceIds=[eni_id])
        except ClientError as e:
            raise ReconcileError(
                f"failed to look up network interface {eni_id!r}: {e}",
                resource="network-interface",
                operation="describe",
            ) from e

        interfaces = response.get("NetworkInterfaces", [])
        if not interfaces:
            raise FailedDependencyError(
                f"network interface {eni_id!r} not found",
                resource="network-interface",
                operation="describe",
            )
        return [g["GroupId"] for g in interfaces[0].get("Groups", [])]

    def _modify_network_interface_groups(self, eni_id: str, group_ids: list[str]) -> None:
        try:
            self._ec2.modify_network_interface_attribute(NetworkInterfaceId=eni_id, Groups=group_ids)
        except ClientError as e:
            raise ReconcileError(
                f"failed to modify network interfaces security groups: {e}",
                resource="network-interface",
                operation="modify",
            ) from e

        logger.info(
            "Updated network interface security groups",
            extra={"eni": eni_id, "security_groups": group_ids},
        )

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def update_resource_tags(
        self, resource_id: str, create: dict[str, str], remove: dict[str, str]
    ) -> None:
        """Apply a tag diff to a resource.

        Creation and removal are separate calls; either is skipped when it has
        nothing to do.
        """
        if create:
            try:
                self._ec2.create_tags(Resources=[resource_id], Tags=tagging.to_sdk(create))
            except ClientError as e:
                self._scope.recorder.warning(
                    self._scope.cluster, FAILED_UPDATE_TAGS, f"Failed to tag {resource_id!r}: {e}"
                )
                raise ReconcileError(
                    f"failed to create tags for resource {resource_id!r}: {e}",
                    resource=resource_id,
                    operation="tag",
                ) from e

        if remove:
            try:
                self._ec2.delete_tags(
                    Resources=[resource_id], Tags=[{"Key": key} for key in sorted(remove)]
                )
            except ClientError as e:
                self._scope.recorder.warning(
                    self._scope.cluster, FAILED_UPDATE_TAGS, f"Failed to untag {resource_id!r}: {e}"
                )
                raise ReconcileError(
                    f"failed to delete tags for resource {resource_id!r}: {e}",
                    resource=resource_id,
                    operation="untag",
                ) from e

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------

    def _describe_raw(self, instance_id: str) -> dict[str, Any] | None:
        try:
            response = self._ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise ReconcileError(
                f"failed to describe instance {instance_id!r}: {e}",
                resource="instance",
                operation="describe",
            ) from e

        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                return raw
        return None

    @staticmethod
    def sdk_to_instance(raw: dict[str, Any]) -> Instance:
        """Convert an EC2 API instance description to an Instance."""
        placement = raw.get("Placement", {})
        instance = Instance(
            id=raw["InstanceId"],
            state=InstanceState.parse(raw.get("State", {}).get("Name")),
            type=raw.get("InstanceType", ""),
            image_id=raw.get("ImageId", ""),
            subnet_id=raw.get("SubnetId", ""),
            availability_zone=placement.get("AvailabilityZone", ""),
            tenancy=placement.get("Tenancy", ""),
            ssh_key_name=raw.get("KeyName"),
            private_ip=raw.get("PrivateIpAddress"),
            public_ip=raw.get("PublicIpAddress"),
            security_group_ids=[g["GroupId"] for g in raw.get("SecurityGroups", [])],
            tags=tagging.from_sdk(raw.get("Tags")),
        )

        profile_arn = raw.get("IamInstanceProfile", {}).get("Arn", "")
        if "instance-profile/" in profile_arn:
            instance.iam_profile = profile_arn.split("instance-profile/", 1)[1]

        if raw.get("InstanceLifecycle") == "spot":
            instance.spot_market_options = SpotMarketOptions()

        for mapping in raw.get("BlockDeviceMappings", []):
            volume_id = mapping.get("Ebs", {}).get("VolumeId")
            if volume_id:
                instance.volume_ids.append(volume_id)

        for eni in raw.get("NetworkInterfaces", []):
            instance.network_interfaces.append(eni["NetworkInterfaceId"])
            instance.addresses.extend(_eni_addresses(eni))

        return instance


def _ebs(volume: Volume) -> dict[str, Any]:
    ebs: dict[str, Any] = {
        "DeleteOnTermination": True,
        "VolumeSize": volume.size,
        "Encrypted": volume.encrypted,
    }
    if volume.iops:
        ebs["Iops"] = volume.iops
    if volume.encryption_key:
        ebs["Encrypted"] = True
        ebs["KmsKeyId"] = volume.encryption_key
    if volume.type:
        ebs["VolumeType"] = volume.type
    return ebs


def _eni_addresses(eni: dict[str, Any]) -> list[MachineAddress]:
    addresses: list[MachineAddress] = []
    if eni.get("PrivateDnsName"):
        addresses.append(MachineAddress(type=AddressType.INTERNAL_DNS, address=eni["PrivateDnsName"]))
    if eni.get("PrivateIpAddress"):
        addresses.append(MachineAddress(type=AddressType.INTERNAL_IP, address=eni["PrivateIpAddress"]))

    association = eni.get("Association")
    if association:
        if association.get("PublicDnsName"):
            addresses.append(
                MachineAddress(type=AddressType.EXTERNAL_DNS, address=association["PublicDnsName"])
            )
        if association.get("PublicIp"):
            addresses.append(MachineAddress(type=AddressType.EXTERNAL_IP, address=association["PublicIp"]))
    return addresses
