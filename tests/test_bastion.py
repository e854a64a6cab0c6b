"""Tests for bastion host convergence."""

from __future__ import annotations

import pytest
from aws_mock import MockAWSState
from conftest import make_cluster

from cluster_operator.bastion import BastionService
from cluster_operator.errors import FailedDependencyError
from cluster_operator.events import EventRecorder
from cluster_operator.models import SecurityGroup, SecurityGroupRole, SubnetSpec, VPCSpec
from cluster_operator.scope import ClusterScope

UBUNTU_OWNER_ID = "099720109477"


@pytest.fixture
def bastion_scope(make_scope, state: MockAWSState):
    """Factory for a scope with a VPC, one public subnet and the bastion group."""

    def factory(cluster=None, public: bool = True) -> ClusterScope:
        scope = make_scope(cluster or make_cluster(bastion={"enabled": True}))
        vpc_id = state.add_vpc()
        subnet_id = state.add_subnet(vpc_id, "10.0.0.0/24", "us-west-2a", public=public)
        group_id = state.add_security_group(vpc_id, "test-cluster-bastion")

        network = scope.network()
        network.vpc = VPCSpec(id=vpc_id)
        network.subnets = [
            SubnetSpec(id=subnet_id, cidr_block="10.0.0.0/24", availability_zone="us-west-2a", is_public=public)
        ]
        network.security_groups = {
            SecurityGroupRole.BASTION: SecurityGroup(id=group_id, name="test-cluster-bastion"),
        }
        return scope

    return factory


@pytest.fixture
def ubuntu_image(state: MockAWSState) -> str:
    state.add_image(
        "ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-20230101",
        owner_id=UBUNTU_OWNER_ID,
        creation_date="2023-01-01T00:00:00.000Z",
    )
    return state.add_image(
        "ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-20240101",
        owner_id=UBUNTU_OWNER_ID,
        creation_date="2024-01-01T00:00:00.000Z",
    )


class TestReconcileBastion:
    """Tests for BastionService.reconcile_bastion."""

    def test_disabled_runs_nothing(self, make_scope, state: MockAWSState) -> None:
        scope = make_scope()

        BastionService(scope).reconcile_bastion()

        assert state.calls_to("ec2", "run_instances") == []
        assert scope.cluster.status.bastion is None

    def test_creates_bastion(
        self, bastion_scope, ubuntu_image: str, state: MockAWSState, recorder: EventRecorder
    ) -> None:
        scope = bastion_scope()

        BastionService(scope).reconcile_bastion()

        (call,) = state.calls_to("ec2", "run_instances")
        assert call.params["ImageId"] == ubuntu_image
        assert call.params["InstanceType"] == "t3.micro"
        assert call.params["SubnetId"] == scope.network().subnets[0].id
        assert call.params["SecurityGroupIds"] == [scope.security_groups()[SecurityGroupRole.BASTION].id]
        assert call.params["KeyName"] == "default"

        bastion = scope.cluster.status.bastion
        assert bastion is not None
        raw = state.instances[bastion.id]
        assert raw["Tags"]["Name"] == "test-cluster-bastion"
        assert raw["Tags"]["sigs.k8s.io/cluster-api-provider-aws/role"] == "bastion"
        assert raw["PublicIpAddress"]
        assert recorder.reasons() == ["SuccessfulCreate"]

    def test_explicit_ami_and_type(self, bastion_scope, state: MockAWSState) -> None:
        image_id = state.add_image("custom-bastion")
        scope = bastion_scope(make_cluster(bastion={"enabled": True, "ami": image_id, "instanceType": "t3.small"}))

        BastionService(scope).reconcile_bastion()

        (call,) = state.calls_to("ec2", "run_instances")
        assert call.params["ImageId"] == image_id
        assert call.params["InstanceType"] == "t3.small"
        assert state.calls_to("ec2", "describe_images") == []

    def test_cluster_without_ssh_key(self, bastion_scope, ubuntu_image: str, state: MockAWSState) -> None:
        scope = bastion_scope(make_cluster(bastion={"enabled": True}, sshKeyName=""))

        BastionService(scope).reconcile_bastion()

        (call,) = state.calls_to("ec2", "run_instances")
        assert "KeyName" not in call.params

    def test_second_pass_finds_existing(self, bastion_scope, ubuntu_image: str, state: MockAWSState) -> None:
        scope = bastion_scope()
        BastionService(scope).reconcile_bastion()
        bastion_id = scope.cluster.status.bastion.id
        scope.cluster.status.bastion = None
        state.reset_calls()

        BastionService(scope).reconcile_bastion()

        assert state.mutating_calls() == []
        assert scope.cluster.status.bastion.id == bastion_id
        assert len(state.instances) == 1

    def test_no_public_subnet(self, bastion_scope, ubuntu_image: str, state: MockAWSState) -> None:
        scope = bastion_scope(public=False)

        with pytest.raises(FailedDependencyError):
            BastionService(scope).reconcile_bastion()

        assert state.calls_to("ec2", "run_instances") == []

    def test_no_bastion_group(self, bastion_scope, ubuntu_image: str) -> None:
        scope = bastion_scope()
        scope.network().security_groups = {}

        with pytest.raises(FailedDependencyError):
            BastionService(scope).reconcile_bastion()

    def test_no_ubuntu_image(self, bastion_scope, state: MockAWSState) -> None:
        state.add_image("ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-20240101", owner_id="111111111111")

        with pytest.raises(FailedDependencyError):
            BastionService(bastion_scope()).reconcile_bastion()

    def test_disabling_terminates(self, bastion_scope, ubuntu_image: str, state: MockAWSState) -> None:
        scope = bastion_scope()
        BastionService(scope).reconcile_bastion()
        bastion_id = scope.cluster.status.bastion.id
        scope.cluster.spec.bastion.enabled = False

        BastionService(scope).reconcile_bastion()

        assert state.instances[bastion_id]["State"]["Name"] == "terminated"
        assert scope.cluster.status.bastion is None


class TestDeleteBastion:
    """Tests for BastionService.delete_bastion."""

    def test_terminates_and_waits(
        self, bastion_scope, ubuntu_image: str, state: MockAWSState, recorder: EventRecorder
    ) -> None:
        scope = bastion_scope()
        service = BastionService(scope)
        service.reconcile_bastion()
        bastion_id = scope.cluster.status.bastion.id
        state.reset_calls()

        service.delete_bastion()

        assert [c.operation for c in state.calls_to("ec2")][-2:] == [
            "terminate_instances",
            "wait_instance_terminated",
        ]
        assert state.instances[bastion_id]["State"]["Name"] == "terminated"
        assert scope.cluster.status.bastion is None
        assert recorder.reasons()[-1] == "SuccessfulTerminate"

    def test_nothing_to_delete(self, bastion_scope, state: MockAWSState) -> None:
        scope = bastion_scope()

        BastionService(scope).delete_bastion()

        assert state.mutating_calls() == []
