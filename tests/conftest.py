"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from aws_mock import MockAWSState, mock_clients  # noqa: E402

from cluster_operator.config import Config  # noqa: E402
from cluster_operator.events import EventRecorder  # noqa: E402
from cluster_operator.models import AWSCluster, OwnerCluster  # noqa: E402
from cluster_operator.scope import AWSClients, ClusterScope  # noqa: E402
from cluster_operator.store import InMemoryObjectStore  # noqa: E402

REGION = "us-west-2"
CLUSTER_NAME = "test-cluster"
NAMESPACE = "default"


def make_cluster(name: str = CLUSTER_NAME, **spec: Any) -> AWSCluster:
    """Build an AWSCluster owned by the cluster of the same name."""
    return AWSCluster.model_validate(
        {
            "metadata": {"name": name, "namespace": NAMESPACE, "ownerCluster": f"{NAMESPACE}/{name}"},
            "spec": {"region": REGION, **spec},
        }
    )


@pytest.fixture
def state() -> MockAWSState:
    """Empty mock AWS account."""
    return MockAWSState(region=REGION)


@pytest.fixture
def clients(state: MockAWSState) -> AWSClients:
    return mock_clients(state)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(region=REGION, store_dir=tmp_path, instance_wait_timeout_seconds=10)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def make_scope(clients: AWSClients, config: Config, recorder: EventRecorder, store: InMemoryObjectStore):
    """Factory building a ClusterScope around a cluster stored in the store."""

    def factory(cluster: AWSCluster | None = None, owner: OwnerCluster | None = None) -> ClusterScope:
        cluster = cluster or make_cluster()
        owner = owner or OwnerCluster(name=cluster.name, namespace=cluster.metadata.namespace)
        stored = store.put(cluster)
        store.put_owner(owner)
        return ClusterScope(
            cluster=stored,
            owner=owner,
            clients=clients,
            config=config,
            recorder=recorder,
            store=store,
        )

    return factory
