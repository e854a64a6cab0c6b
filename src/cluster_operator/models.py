"""Pydantic models for the AWSCluster object and its machines.

These models provide:
1. Type-safe manifest parsing (camelCase on the wire, snake_case in code)
2. The observed status written back by the reconciler
3. The Instance shape shared by the bastion and machine provisioning
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field

from .conditions import Condition

# Finalizer gating physical deletion of an AWSCluster
CLUSTER_FINALIZER = "awscluster.infrastructure.cluster.x-k8s.io"

# Annotations
MANAGED_BY_ANNOTATION = "cluster.x-k8s.io/managed-by"
PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"

DEFAULT_VPC_CIDR = "10.0.0.0/16"


class ManifestModel(BaseModel):
    """Base model with the shared parsing configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Enumerations
# =============================================================================


class InstanceState(str, Enum):
    """EC2 instance lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> InstanceState:
        try:
            return cls(value or "unknown")
        except ValueError:
            return cls.UNKNOWN


class SecurityGroupRole(str, Enum):
    """Roles the operator manages a security group for."""

    BASTION = "bastion"
    API_SERVER_LB = "apiserver-lb"
    LB = "lb"
    CONTROL_PLANE = "controlplane"
    NODE = "node"
    EKS_NODE_ADDITIONAL = "node-eks-additional"


class MachineRole(str, Enum):
    """Machine roles understood by the instance provisioner."""

    CONTROL_PLANE = "control-plane"
    NODE = "node"


class AddressType(str, Enum):
    """Machine address kinds."""

    INTERNAL_DNS = "InternalDNS"
    INTERNAL_IP = "InternalIP"
    EXTERNAL_DNS = "ExternalDNS"
    EXTERNAL_IP = "ExternalIP"


class ClusterPhase(str, Enum):
    """Coarse lifecycle phase reported in status."""

    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    DELETING = "Deleting"


class LoadBalancerScheme(str, Enum):
    """Classic ELB schemes."""

    INTERNET_FACING = "internet-facing"
    INTERNAL = "internal"


class EKSAMILookupType(str, Enum):
    """Flavours of the EKS-optimized image."""

    AMAZON_LINUX = "AmazonLinux"
    AMAZON_LINUX_GPU = "AmazonLinuxGPU"


# =============================================================================
# Shared references
# =============================================================================


class Filter(ManifestModel):
    """An EC2 describe filter."""

    name: Annotated[str, Field(min_length=1)]
    values: list[str] = Field(default_factory=list)


class AWSResourceReference(ManifestModel):
    """Reference to an AWS resource by id or by filters."""

    id: str | None = None
    filters: list[Filter] | None = None


class AMIReference(ManifestModel):
    """Image selection: an explicit id, or a lookup flavour."""

    id: str | None = None
    eks_lookup_type: EKSAMILookupType | None = Field(None, alias="eksLookupType")


class Volume(ManifestModel):
    """EBS volume definition."""

    device_name: str = Field("", alias="deviceName")
    size: Annotated[int, Field(ge=1)]
    type: str = ""
    iops: int = 0
    encrypted: bool = False
    encryption_key: str = Field("", alias="encryptionKey")


class SpotMarketOptions(ManifestModel):
    """Spot purchase options. Presence alone selects the spot market."""

    max_price: str | None = Field(None, alias="maxPrice")


class MachineAddress(ManifestModel):
    """An address reported for an instance."""

    type: AddressType
    address: str


# =============================================================================
# Machines and instances
# =============================================================================


class MachineSpec(ManifestModel):
    """Per-machine instance template."""

    name: Annotated[str, Field(min_length=1)]
    role: str = MachineRole.NODE.value
    version: str | None = None
    failure_domain: str | None = Field(None, alias="failureDomain")

    instance_type: str = Field("t3.large", alias="instanceType")
    ami: AMIReference = Field(default_factory=AMIReference)
    image_lookup_format: str = Field("", alias="imageLookupFormat")
    image_lookup_org: str = Field("", alias="imageLookupOrg")
    image_lookup_base_os: str = Field("", alias="imageLookupBaseOS")
    iam_instance_profile: str = Field("", alias="iamInstanceProfile")

    subnet: AWSResourceReference | None = None
    additional_security_groups: list[AWSResourceReference] = Field(
        default_factory=list, alias="additionalSecurityGroups"
    )
    # None inherits the cluster value, "" requests no key at all
    ssh_key_name: str | None = Field(None, alias="sshKeyName")

    root_volume: Volume | None = Field(None, alias="rootVolume")
    non_root_volumes: list[Volume] = Field(default_factory=list, alias="nonRootVolumes")
    network_interfaces: list[str] = Field(default_factory=list, alias="networkInterfaces")
    spot_market_options: SpotMarketOptions | None = Field(None, alias="spotMarketOptions")
    tenancy: str = ""

    additional_tags: dict[str, str] = Field(default_factory=dict, alias="additionalTags")
    user_data: str = Field("", alias="userData")
    uncompressed_user_data: bool = Field(False, alias="uncompressedUserData")


class Instance(ManifestModel):
    """An EC2 instance as seen by the operator."""

    id: str = ""
    state: InstanceState = InstanceState.UNKNOWN
    type: str = ""
    image_id: str = Field("", alias="imageId")
    subnet_id: str = Field("", alias="subnetId")
    availability_zone: str = Field("", alias="availabilityZone")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIds")
    tags: dict[str, str] = Field(default_factory=dict)
    iam_profile: str = Field("", alias="iamProfile")
    ssh_key_name: str | None = Field(None, alias="sshKeyName")
    user_data: str | None = Field(None, alias="userData")
    root_volume: Volume | None = Field(None, alias="rootVolume")
    non_root_volumes: list[Volume] = Field(default_factory=list, alias="nonRootVolumes")
    network_interfaces: list[str] = Field(default_factory=list, alias="networkInterfaces")
    spot_market_options: SpotMarketOptions | None = Field(None, alias="spotMarketOptions")
    tenancy: str = ""
    addresses: list[MachineAddress] = Field(default_factory=list)
    volume_ids: list[str] = Field(default_factory=list, alias="volumeIds")
    private_ip: str | None = Field(None, alias="privateIp")
    public_ip: str | None = Field(None, alias="publicIp")


# =============================================================================
# Cluster spec
# =============================================================================


class VPCSpec(ManifestModel):
    """VPC declaration. A non-empty id adopts an unmanaged VPC."""

    id: str = ""
    cidr_block: str = Field(DEFAULT_VPC_CIDR, alias="cidrBlock")
    internet_gateway_id: str = Field("", alias="internetGatewayId")
    tags: dict[str, str] = Field(default_factory=dict)


class SubnetSpec(ManifestModel):
    """Subnet declaration and observation."""

    id: str = ""
    cidr_block: str = Field("", alias="cidrBlock")
    availability_zone: str = Field("", alias="availabilityZone")
    is_public: bool = Field(False, alias="isPublic")
    route_table_id: str = Field("", alias="routeTableId")
    nat_gateway_id: str = Field("", alias="natGatewayId")
    tags: dict[str, str] = Field(default_factory=dict)


class NetworkSpec(ManifestModel):
    """Network topology declaration."""

    vpc: VPCSpec = Field(default_factory=VPCSpec)
    subnets: list[SubnetSpec] = Field(default_factory=list)


class Bastion(ManifestModel):
    """Bastion host configuration."""

    enabled: bool = False
    instance_type: str = Field("t3.micro", alias="instanceType")
    ami: str | None = None
    allowed_cidr_blocks: list[str] = Field(
        default_factory=lambda: ["0.0.0.0/0"], alias="allowedCIDRBlocks"
    )


class LoadBalancerSpec(ManifestModel):
    """API server load balancer configuration."""

    scheme: LoadBalancerScheme = LoadBalancerScheme.INTERNET_FACING
    cross_zone_load_balancing: bool = Field(False, alias="crossZoneLoadBalancing")


class S3Bucket(ManifestModel):
    """Object store bucket owned by the cluster."""

    name: Annotated[str, Field(min_length=3, max_length=63)]


class APIEndpoint(ManifestModel):
    """Control-plane endpoint. Write-once once the host is set."""

    host: str = ""
    port: int = 0

    @property
    def is_zero(self) -> bool:
        return not self.host and self.port == 0


class IdentityReference(ManifestModel):
    """Reference to the identity used to talk to AWS."""

    kind: str = "AWSClusterControllerIdentity"
    name: str = "default"


class AWSClusterSpec(ManifestModel):
    """Desired state of a cluster's AWS infrastructure."""

    region: str
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    ssh_key_name: str | None = Field(None, alias="sshKeyName")
    control_plane_endpoint: APIEndpoint = Field(
        default_factory=APIEndpoint, alias="controlPlaneEndpoint"
    )
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="additionalTags")
    control_plane_load_balancer: LoadBalancerSpec | None = Field(
        None, alias="controlPlaneLoadBalancer"
    )
    image_lookup_format: str = Field("", alias="imageLookupFormat")
    image_lookup_org: str = Field("", alias="imageLookupOrg")
    image_lookup_base_os: str = Field("", alias="imageLookupBaseOS")
    bastion: Bastion = Field(default_factory=Bastion)
    identity_ref: IdentityReference = Field(default_factory=IdentityReference, alias="identityRef")
    s3_bucket: S3Bucket | None = Field(None, alias="s3Bucket")
    # Managed control plane variant: no API server ELB, EKS image lookup
    eks_managed: bool = Field(False, alias="eksManaged")


# =============================================================================
# Cluster status
# =============================================================================


class SecurityGroup(ManifestModel):
    """An observed security group."""

    id: str
    name: str
    tags: dict[str, str] = Field(default_factory=dict)


class LoadBalancer(ManifestModel):
    """An observed classic load balancer."""

    name: str = ""
    dns_name: str = Field("", alias="dnsName")
    scheme: LoadBalancerScheme = LoadBalancerScheme.INTERNET_FACING
    availability_zones: list[str] = Field(default_factory=list, alias="availabilityZones")
    subnet_ids: list[str] = Field(default_factory=list, alias="subnetIds")


class NetworkStatus(ManifestModel):
    """Observed network snapshot."""

    vpc: VPCSpec = Field(default_factory=VPCSpec)
    subnets: list[SubnetSpec] = Field(default_factory=list)
    security_groups: dict[SecurityGroupRole, SecurityGroup] = Field(
        default_factory=dict, alias="securityGroups"
    )
    api_server_elb: LoadBalancer = Field(default_factory=LoadBalancer, alias="apiServerElb")

    def private_subnets(self) -> list[SubnetSpec]:
        return [s for s in self.subnets if not s.is_public]

    def public_subnets(self) -> list[SubnetSpec]:
        return [s for s in self.subnets if s.is_public]

    def find_subnet(self, subnet_id: str) -> SubnetSpec | None:
        for subnet in self.subnets:
            if subnet.id == subnet_id:
                return subnet
        return None


class FailureDomainSpec(ManifestModel):
    """Whether a zone may host control-plane machines."""

    control_plane: bool = Field(False, alias="controlPlane")


class AWSClusterStatus(ManifestModel):
    """Observed state of the cluster's AWS infrastructure."""

    ready: bool = False
    phase: ClusterPhase = ClusterPhase.PENDING
    network: NetworkStatus = Field(default_factory=NetworkStatus)
    failure_domains: dict[str, FailureDomainSpec] = Field(
        default_factory=dict, alias="failureDomains"
    )
    bastion: Instance | None = None
    conditions: list[Condition] = Field(default_factory=list)


# =============================================================================
# Objects
# =============================================================================


class ObjectMeta(ManifestModel):
    """Identity and lifecycle metadata of a stored object."""

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    resource_version: int = Field(0, alias="resourceVersion")
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    annotations: dict[str, str] = Field(default_factory=dict)
    # "namespace/name" of the owning cluster, resolved through the store
    owner_cluster: str | None = Field(None, alias="ownerCluster")


class OwnerCluster(ManifestModel):
    """The generic cluster object that owns an AWSCluster."""

    name: str
    namespace: str = "default"
    paused: bool = False
    api_server_port: int | None = Field(None, alias="apiServerPort")


class AWSCluster(ManifestModel):
    """Desired and observed state of one cluster's infrastructure."""

    api_version: str = Field("infrastructure.cluster.x-k8s.io/v1beta1", alias="apiVersion")
    kind: str = "AWSCluster"
    metadata: ObjectMeta
    spec: AWSClusterSpec
    status: AWSClusterStatus = Field(default_factory=AWSClusterStatus)

    @property
    def key(self) -> str:
        return object_key(self.metadata.namespace, self.metadata.name)

    @property
    def name(self) -> str:
        return self.metadata.name

    def is_externally_managed(self) -> bool:
        return MANAGED_BY_ANNOTATION in self.metadata.annotations

    def is_paused(self) -> bool:
        return PAUSED_ANNOTATION in self.metadata.annotations

    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self) -> bool:
        return CLUSTER_FINALIZER in self.metadata.finalizers

    def add_finalizer(self) -> bool:
        """Add the cluster finalizer. Returns True if it was missing."""
        if self.has_finalizer():
            return False
        self.metadata.finalizers.append(CLUSTER_FINALIZER)
        return True

    def remove_finalizer(self) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != CLUSTER_FINALIZER]


def object_key(namespace: str, name: str) -> str:
    """Build the "namespace/name" key used by the store."""
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    """Split a "namespace/name" key; a bare name lives in "default"."""
    if "/" in key:
        namespace, _, name = key.partition("/")
        return namespace, name
    return "default", key
