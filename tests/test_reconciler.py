"""End-to-end tests for ClusterReconciler against the mock AWS account."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

import pytest
from aws_mock import MockAWSState
from conftest import NAMESPACE, make_cluster

from cluster_operator import conditions
from cluster_operator.config import Config
from cluster_operator.errors import FailedDependencyError, ReconcileError
from cluster_operator.events import EventRecorder
from cluster_operator.models import (
    CLUSTER_FINALIZER,
    PAUSED_ANNOTATION,
    AWSCluster,
    ClusterPhase,
    OwnerCluster,
)
from cluster_operator.reconciler import ClusterReconciler, ServiceFactories
from cluster_operator.scope import AWSClients
from cluster_operator.store import ConflictError, InMemoryObjectStore

KEY = f"{NAMESPACE}/test-cluster"
ELB_DNS = "test-cluster-apiserver-1234567890.us-west-2.elb.amazonaws.com"


def _resolves(host: str) -> list[str]:
    return ["192.0.2.10"]


def _does_not_resolve(host: str) -> list[str]:
    raise OSError(f"Name or service not known: {host}")


@pytest.fixture
def reconciler_for(store: InMemoryObjectStore, recorder: EventRecorder, config: Config, clients: AWSClients):
    """Factory for a reconciler wired to the mock account."""

    def factory(resolver=_resolves, **kwargs) -> ClusterReconciler:
        return ClusterReconciler(
            store,
            recorder,
            kwargs.pop("config", config),
            clients_factory=lambda region: clients,
            resolver=resolver,
            **kwargs,
        )

    return factory


def _seed(store: InMemoryObjectStore, cluster: AWSCluster | None = None, owner: OwnerCluster | None = None) -> None:
    cluster = cluster or make_cluster()
    store.put(cluster)
    store.put_owner(owner or OwnerCluster(name=cluster.name, namespace=cluster.metadata.namespace))


def _mark_deleting(store: InMemoryObjectStore) -> None:
    cluster = store.get(KEY)
    cluster.metadata.deletion_timestamp = datetime.now(UTC)
    store.put(cluster)


class BrokenNotifications:
    """Event notification service that fails with a non-AWS error."""

    def __init__(self, scope) -> None:
        self._scope = scope

    def reconcile_ec2_events(self) -> None:
        raise RuntimeError("queue policy could not be rendered")

    def delete_ec2_events(self) -> None:
        raise RuntimeError("queue policy could not be rendered")


class TestCreatePath:
    """Tests for the create path."""

    def test_full_pass_reaches_ready(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store)

        result = reconciler_for().reconcile(KEY)

        assert result.done
        cluster = store.get(KEY)
        assert cluster.status.ready
        assert cluster.status.phase == ClusterPhase.READY
        assert cluster.has_finalizer()
        assert cluster.spec.control_plane_endpoint.host == ELB_DNS
        assert cluster.spec.control_plane_endpoint.port == 6443

        for condition_type in (
            conditions.READY,
            conditions.VPC_READY,
            conditions.SUBNETS_READY,
            conditions.INTERNET_GATEWAY_READY,
            conditions.NAT_GATEWAYS_READY,
            conditions.ROUTE_TABLES_READY,
            conditions.SECURITY_GROUPS_READY,
            conditions.LOAD_BALANCER_READY,
        ):
            assert conditions.is_true(cluster, condition_type), condition_type
        assert conditions.get(cluster, conditions.BASTION_HOST_READY) is None
        assert cluster.status.conditions[0].type == conditions.READY

        assert len(state.vpcs) == 1
        assert len(state.subnets) == 6
        assert len(state.security_groups) == 5
        assert len(state.internet_gateways) == 1
        assert len(state.nat_gateways) == 3
        assert len(state.route_tables) == 6
        assert list(state.load_balancers) == ["test-cluster-apiserver"]
        assert state.rules == {}

    def test_failure_domains(self, reconciler_for, store: InMemoryObjectStore) -> None:
        _seed(store)

        reconciler_for().reconcile(KEY)

        domains = store.get(KEY).status.failure_domains
        assert sorted(domains) == ["us-west-2a", "us-west-2b", "us-west-2c"]
        assert all(d.control_plane for d in domains.values())

    def test_failure_domain_without_load_balancer_zone(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        # Public subnet only in zone a, private subnets in a and b
        _seed(
            store,
            make_cluster(
                network={
                    "subnets": [
                        {"cidrBlock": "10.0.0.0/24", "availabilityZone": "us-west-2a", "isPublic": True},
                        {"cidrBlock": "10.0.1.0/24", "availabilityZone": "us-west-2a"},
                        {"cidrBlock": "10.0.2.0/24", "availabilityZone": "us-west-2b"},
                    ]
                }
            ),
        )

        reconciler_for().reconcile(KEY)

        domains = store.get(KEY).status.failure_domains
        assert domains["us-west-2a"].control_plane
        assert not domains["us-west-2b"].control_plane

    def test_second_pass_makes_no_changes(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store)
        reconciler = reconciler_for()
        reconciler.reconcile(KEY)
        first = store.get(KEY)
        state.reset_calls()

        result = reconciler.reconcile(KEY)

        assert result.done
        assert state.mutating_calls() == []
        second = store.get(KEY)
        assert second.status.network == first.status.network
        assert second.spec.control_plane_endpoint == first.spec.control_plane_endpoint

    def test_existing_endpoint_is_kept(self, reconciler_for, store: InMemoryObjectStore) -> None:
        _seed(store, make_cluster(controlPlaneEndpoint={"host": "api.example.com", "port": 443}))

        reconciler_for().reconcile(KEY)

        endpoint = store.get(KEY).spec.control_plane_endpoint
        assert (endpoint.host, endpoint.port) == ("api.example.com", 443)

    def test_waits_for_dns_name(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        state.elb_dns_pending = True
        _seed(store)

        result = reconciler_for().reconcile(KEY)

        assert result.error is None
        assert result.requeue_after == 15
        cluster = store.get(KEY)
        assert not cluster.status.ready
        assert cluster.status.phase == ClusterPhase.PROVISIONING
        assert cluster.spec.control_plane_endpoint.host == ""
        condition = conditions.get(cluster, conditions.LOAD_BALANCER_READY)
        assert condition.reason == conditions.WAIT_FOR_DNS_NAME
        assert condition.severity == conditions.ConditionSeverity.INFO

    def test_waits_for_dns_resolution(self, reconciler_for, store: InMemoryObjectStore) -> None:
        _seed(store)

        result = reconciler_for(resolver=_does_not_resolve).reconcile(KEY)

        assert result.requeue_after == 15
        cluster = store.get(KEY)
        assert conditions.get(cluster, conditions.LOAD_BALANCER_READY).reason == conditions.WAIT_FOR_DNS_NAME_RESOLVE
        assert cluster.spec.control_plane_endpoint.host == ""

    def test_eks_managed_skips_endpoint(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store, make_cluster(eksManaged=True))

        result = reconciler_for(resolver=_does_not_resolve).reconcile(KEY)

        assert result.done
        cluster = store.get(KEY)
        assert cluster.status.ready
        assert cluster.spec.control_plane_endpoint.is_zero
        assert state.load_balancers == {}
        assert len(state.security_groups) == 6

    def test_bucket_and_bastion(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        state.add_image(
            "ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-20240101", owner_id="099720109477"
        )
        _seed(store, make_cluster(bastion={"enabled": True}, s3Bucket={"name": "test-cluster-artifacts"}))

        result = reconciler_for().reconcile(KEY)

        assert result.done
        cluster = store.get(KEY)
        assert cluster.status.bastion is not None
        assert conditions.is_true(cluster, conditions.BASTION_HOST_READY)
        assert conditions.is_true(cluster, conditions.S3_BUCKET_READY)
        assert "test-cluster-artifacts" in state.buckets

    def test_event_notifications(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState, tmp_path: Path
    ) -> None:
        _seed(store)
        config = Config(region="us-west-2", store_dir=tmp_path, enable_event_notifications=True)

        reconciler_for(config=config).reconcile(KEY)

        assert "test-cluster-ec2-rule" in state.rules
        assert "test-cluster-queue" in state.queues
        assert conditions.is_true(store.get(KEY), conditions.INSTANCE_STATE_EVENTS_READY)

    def test_event_notification_failure_is_not_fatal(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState, tmp_path: Path
    ) -> None:
        _seed(store)
        state.inject_error("sqs", "create_queue", "AccessDenied")
        config = Config(region="us-west-2", store_dir=tmp_path, enable_event_notifications=True)

        result = reconciler_for(config=config).reconcile(KEY)

        assert result.done
        assert conditions.get(store.get(KEY), conditions.INSTANCE_STATE_EVENTS_READY) is None

    def test_unexpected_notification_error_is_not_fatal(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState, tmp_path: Path
    ) -> None:
        _seed(store)
        config = Config(region="us-west-2", store_dir=tmp_path, enable_event_notifications=True)
        reconciler = reconciler_for(
            config=config, service_factories=ServiceFactories(instance_state=BrokenNotifications)
        )

        result = reconciler.reconcile(KEY)

        assert result.done
        assert store.get(KEY).status.ready
        assert list(state.load_balancers) == ["test-cluster-apiserver"]


class TestFailures:
    """Tests for failed steps."""

    def test_failed_dependency_records_no_event(
        self, reconciler_for, store: InMemoryObjectStore, recorder: EventRecorder
    ) -> None:
        _seed(store, make_cluster(network={"vpc": {"id": "vpc-0000000000000000"}}))

        result = reconciler_for().reconcile(KEY)

        assert isinstance(result.error, FailedDependencyError)
        assert recorder.reasons() == []
        cluster = store.get(KEY)
        assert conditions.is_false(cluster, conditions.VPC_READY)
        assert not cluster.status.ready

    def test_failed_step_records_event_and_stops(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState, recorder: EventRecorder
    ) -> None:
        _seed(store)
        state.inject_error("ec2", "create_security_group", "UnauthorizedOperation")

        result = reconciler_for().reconcile(KEY)

        assert isinstance(result.error, ReconcileError)
        assert recorder.reasons()[-1] == "FailedReconcile"
        assert state.calls_to("elb") == []
        cluster = store.get(KEY)
        condition = conditions.get(cluster, conditions.SECURITY_GROUPS_READY)
        assert condition.reason == conditions.SECURITY_GROUP_RECONCILIATION_FAILED
        assert condition.severity == conditions.ConditionSeverity.WARNING

    def test_severity_is_error_once_ready(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store)
        reconciler = reconciler_for()
        reconciler.reconcile(KEY)
        state.inject_error("elb", "describe_load_balancers", "Throttling")

        result = reconciler.reconcile(KEY)

        assert result.error is not None
        condition = conditions.get(store.get(KEY), conditions.LOAD_BALANCER_READY)
        assert condition.reason == conditions.LOAD_BALANCER_FAILED
        assert condition.severity == conditions.ConditionSeverity.ERROR

    def test_bucket_failure_is_always_error(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store, make_cluster(s3Bucket={"name": "test-cluster-artifacts"}))
        state.inject_error("s3", "create_bucket", "AccessDenied")

        result = reconciler_for().reconcile(KEY)

        assert isinstance(result.error, ReconcileError)
        cluster = store.get(KEY)
        assert not cluster.status.ready
        condition = conditions.get(cluster, conditions.S3_BUCKET_READY)
        assert condition.reason == conditions.S3_BUCKET_FAILED
        assert condition.severity == conditions.ConditionSeverity.ERROR

    def test_unexpected_error_still_persists_status(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store)

        class Crashing:
            """Load balancer step that fails with a non-AWS error."""

            def __init__(self, scope) -> None:
                self._scope = scope

            def reconcile_load_balancer(self) -> None:
                raise RuntimeError("listener table corrupted")

        reconciler = reconciler_for(service_factories=ServiceFactories(load_balancer=Crashing))

        result = reconciler.reconcile(KEY)

        assert isinstance(result.error, RuntimeError)
        cluster = store.get(KEY)
        assert cluster.has_finalizer()
        assert cluster.status.network.vpc.id in state.vpcs
        assert conditions.is_true(cluster, conditions.SECURITY_GROUPS_READY)
        assert not cluster.status.ready

    def test_conflict_discards_status(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store)

        class Meddling:
            """Network step that lets another writer update the object."""

            def __init__(self, scope) -> None:
                self._scope = scope

            def reconcile_network(self) -> None:
                other = store.get(KEY)
                other.metadata.annotations["touched"] = "yes"
                store.patch(other)

        reconciler = reconciler_for(service_factories=ServiceFactories(network=Meddling))

        result = reconciler.reconcile(KEY)

        assert isinstance(result.error, ConflictError)
        stored = store.get(KEY)
        assert stored.metadata.annotations == {"touched": "yes"}
        assert not stored.status.ready


class TestSkipped:
    """Tests for objects that are not reconciled."""

    def test_missing_object(self, reconciler_for, state: MockAWSState) -> None:
        result = reconciler_for().reconcile("default/absent")

        assert result.done
        assert state.calls == []

    def test_no_owner(self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState) -> None:
        cluster = make_cluster()
        cluster.metadata.owner_cluster = None
        store.put(cluster)

        result = reconciler_for().reconcile(KEY)

        assert result.done
        assert state.calls == []
        assert store.patch_count == 0

    def test_owner_not_stored(self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState) -> None:
        store.put(make_cluster())

        result = reconciler_for().reconcile(KEY)

        assert result.done
        assert state.calls == []

    def test_owner_paused(self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState) -> None:
        _seed(store, owner=OwnerCluster(name="test-cluster", paused=True))

        result = reconciler_for().reconcile(KEY)

        assert result.done
        assert state.calls == []
        assert not store.get(KEY).has_finalizer()

    def test_annotation_paused(self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState) -> None:
        cluster = make_cluster()
        cluster.metadata.annotations[PAUSED_ANNOTATION] = "true"
        _seed(store, cluster)

        result = reconciler_for().reconcile(KEY)

        assert result.done
        assert state.calls == []


class TestDeletePath:
    """Tests for the delete path."""

    def test_deletes_in_reverse_order_and_releases(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        _seed(store)
        reconciler = reconciler_for()
        reconciler.reconcile(KEY)
        _mark_deleting(store)
        state.reset_calls()

        result = reconciler.reconcile(KEY)

        assert result.done
        operations = [c.operation for c in state.mutating_calls()]
        assert operations[0] == "delete_load_balancer"
        assert operations.index("delete_security_group") < operations.index("delete_subnet")
        assert operations.index("delete_internet_gateway") < operations.index("delete_subnet")
        assert operations[-1] == "delete_vpc"
        assert state.vpcs == {}
        assert state.subnets == {}
        assert state.internet_gateways == {}
        assert state.route_tables == {}
        assert state.security_groups == {}
        assert state.load_balancers == {}
        assert store.get(KEY) is None

    def test_deletes_bastion_and_bucket(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        state.add_image(
            "ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-20240101", owner_id="099720109477"
        )
        _seed(store, make_cluster(bastion={"enabled": True}, s3Bucket={"name": "test-cluster-artifacts"}))
        reconciler = reconciler_for()
        reconciler.reconcile(KEY)
        _mark_deleting(store)

        result = reconciler.reconcile(KEY)

        assert result.done
        assert state.live_instances() == []
        assert state.buckets == {}
        assert store.get(KEY) is None

    def test_failed_delete_keeps_finalizer(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState, recorder: EventRecorder
    ) -> None:
        _seed(store)
        reconciler = reconciler_for()
        reconciler.reconcile(KEY)
        _mark_deleting(store)
        state.inject_error("ec2", "delete_security_group", "DependencyViolation")

        result = reconciler.reconcile(KEY)

        assert isinstance(result.error, ReconcileError)
        assert recorder.reasons()[-1] == "FailedDelete"
        cluster = store.get(KEY)
        assert cluster.metadata.finalizers == [CLUSTER_FINALIZER]
        assert cluster.status.phase == ClusterPhase.DELETING
        assert conditions.get(cluster, conditions.READY).reason == conditions.DELETING
        assert state.vpcs

    def test_unexpected_notification_error_does_not_block_delete(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState, tmp_path: Path
    ) -> None:
        _seed(store)
        reconciler_for().reconcile(KEY)
        _mark_deleting(store)
        config = Config(region="us-west-2", store_dir=tmp_path, enable_event_notifications=True)
        reconciler = reconciler_for(
            config=config, service_factories=ServiceFactories(instance_state=BrokenNotifications)
        )

        result = reconciler.reconcile(KEY)

        assert result.done
        assert state.vpcs == {}
        assert store.get(KEY) is None

    def test_delete_before_anything_was_created(
        self, reconciler_for, store: InMemoryObjectStore, state: MockAWSState
    ) -> None:
        cluster = make_cluster()
        cluster.metadata.finalizers = [CLUSTER_FINALIZER]
        cluster.metadata.deletion_timestamp = datetime.now(UTC)
        _seed(store, cluster)

        result = reconciler_for().reconcile(KEY)

        assert result.done
        assert state.mutating_calls() == []
        assert store.get(KEY) is None


class TestWithInfoLogging:
    """The full create and delete paths with INFO records enabled."""

    def test_create_and_delete(
        self,
        reconciler_for,
        store: InMemoryObjectStore,
        state: MockAWSState,
        tmp_path: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        caplog.set_level(logging.INFO)
        state.add_image(
            "ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-20240101", owner_id="099720109477"
        )
        _seed(store, make_cluster(bastion={"enabled": True}, s3Bucket={"name": "test-cluster-artifacts"}))
        config = Config(region="us-west-2", store_dir=tmp_path, enable_event_notifications=True)
        reconciler = reconciler_for(config=config)

        result = reconciler.reconcile(KEY)

        assert result.done, result.error
        cluster = store.get(KEY)
        assert cluster.status.ready
        assert cluster.status.network.api_server_elb.name == "test-cluster-apiserver"
        assert conditions.is_true(cluster, conditions.INSTANCE_STATE_EVENTS_READY)
        assert any(getattr(r, "elb_name", None) == "test-cluster-apiserver" for r in caplog.records)
        assert any(getattr(r, "rule_created", None) is True for r in caplog.records)

        _mark_deleting(store)
        result = reconciler.reconcile(KEY)

        assert result.done, result.error
        assert state.load_balancers == {}
        assert state.rules == {}
        assert store.get(KEY) is None
