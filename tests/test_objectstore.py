"""Tests for S3 bucket convergence."""

from __future__ import annotations

import pytest
from aws_mock import MockAWSState, mock_clients
from conftest import make_cluster

from cluster_operator.config import Config
from cluster_operator.errors import ReconcileError
from cluster_operator.events import EventRecorder
from cluster_operator.models import OwnerCluster
from cluster_operator.objectstore import ObjectStoreService
from cluster_operator.scope import ClusterScope
from cluster_operator.store import InMemoryObjectStore

BUCKET = "test-cluster-artifacts"


def _with_bucket(**spec):
    return make_cluster(s3Bucket={"name": BUCKET}, **spec)


class TestReconcileBucket:
    """Tests for ObjectStoreService.reconcile_bucket."""

    def test_no_bucket_declared(self, make_scope, state: MockAWSState) -> None:
        ObjectStoreService(make_scope()).reconcile_bucket()

        assert state.calls == []

    def test_creates_with_location_constraint(
        self, make_scope, state: MockAWSState, recorder: EventRecorder
    ) -> None:
        ObjectStoreService(make_scope(_with_bucket())).reconcile_bucket()

        (call,) = state.calls_to("s3", "create_bucket")
        assert call.params["CreateBucketConfiguration"] == {"LocationConstraint": "us-west-2"}
        assert BUCKET in state.buckets
        assert recorder.reasons() == ["SuccessfulCreateBucket"]

    def test_us_east_1_sends_no_configuration(self, config: Config, recorder: EventRecorder) -> None:
        east = MockAWSState(region="us-east-1")
        store = InMemoryObjectStore()
        cluster = store.put(_with_bucket(region="us-east-1"))
        scope = ClusterScope(
            cluster=cluster,
            owner=OwnerCluster(name=cluster.name),
            clients=mock_clients(east),
            config=config,
            recorder=recorder,
            store=store,
        )

        ObjectStoreService(scope).reconcile_bucket()

        (call,) = east.calls_to("s3", "create_bucket")
        assert call.params["CreateBucketConfiguration"] is None
        assert east.buckets[BUCKET]["Region"] == "us-east-1"

    def test_applies_tags(self, make_scope, state: MockAWSState) -> None:
        ObjectStoreService(make_scope(_with_bucket(additionalTags={"team": "platform"}))).reconcile_bucket()

        assert state.buckets[BUCKET]["Tags"] == {
            "sigs.k8s.io/cluster-api-provider-aws/cluster/test-cluster": "owned",
            "Name": BUCKET,
            "sigs.k8s.io/cluster-api-provider-aws/role": "node",
            "team": "platform",
        }

    def test_second_pass_makes_no_changes(self, make_scope, state: MockAWSState) -> None:
        scope = make_scope(_with_bucket())
        ObjectStoreService(scope).reconcile_bucket()
        state.reset_calls()

        ObjectStoreService(scope).reconcile_bucket()

        assert state.mutating_calls() == []

    def test_bucket_already_owned(self, make_scope, state: MockAWSState, recorder: EventRecorder) -> None:
        state.buckets[BUCKET] = {"Name": BUCKET, "Region": "us-west-2", "Tags": None}
        state.inject_error("s3", "head_bucket", "404", times=1)

        ObjectStoreService(make_scope(_with_bucket())).reconcile_bucket()

        assert len(state.calls_to("s3", "create_bucket")) == 1
        assert state.buckets[BUCKET]["Tags"]
        assert recorder.reasons() == []

    def test_create_failure(self, make_scope, state: MockAWSState) -> None:
        state.inject_error("s3", "create_bucket", "BucketAlreadyExists")

        with pytest.raises(ReconcileError):
            ObjectStoreService(make_scope(_with_bucket())).reconcile_bucket()

    def test_access_denied(self, make_scope, state: MockAWSState) -> None:
        state.inject_error("s3", "head_bucket", "403")

        with pytest.raises(ReconcileError):
            ObjectStoreService(make_scope(_with_bucket())).reconcile_bucket()

        assert state.calls_to("s3", "create_bucket") == []


class TestDeleteBucket:
    """Tests for ObjectStoreService.delete_bucket."""

    def test_deletes(self, make_scope, state: MockAWSState, recorder: EventRecorder) -> None:
        scope = make_scope(_with_bucket())
        service = ObjectStoreService(scope)
        service.reconcile_bucket()

        service.delete_bucket()

        assert state.buckets == {}
        assert recorder.reasons()[-1] == "SuccessfulDeleteBucket"

    def test_missing_bucket(self, make_scope, state: MockAWSState, recorder: EventRecorder) -> None:
        ObjectStoreService(make_scope(_with_bucket())).delete_bucket()

        assert recorder.reasons() == []

    def test_no_bucket_declared(self, make_scope, state: MockAWSState) -> None:
        ObjectStoreService(make_scope()).delete_bucket()

        assert state.calls == []
