"""Integration tests for the CLI against the mock AWS account."""

import logging
import socket
from pathlib import Path
from unittest import mock

import pytest
import yaml
from aws_mock import MockAWSContext
from click.testing import CliRunner
from conftest import make_cluster

from cluster_operator.cli import cli
from cluster_operator.store import dump_manifest

AWSCLUSTER_FILE = Path("default") / "test-cluster.awscluster.yaml"


def _fake_getaddrinfo(host, port, *args, **kwargs):
    return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("192.0.2.10", 0))]


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Drop the handlers the CLI attaches to the root logger."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def store_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Manifest directory holding one AWSCluster and its owner."""
    namespace_dir = tmp_path / "default"
    namespace_dir.mkdir()
    (namespace_dir / "test-cluster.awscluster.yaml").write_text(
        yaml.safe_dump(dump_manifest(make_cluster())), encoding="utf-8"
    )
    (namespace_dir / "test-cluster.cluster.yaml").write_text(
        yaml.safe_dump({"name": "test-cluster"}), encoding="utf-8"
    )

    monkeypatch.setenv("AWS_REGION", "us-west-2")
    monkeypatch.setenv("STORE_DIR", str(tmp_path))
    monkeypatch.setenv("INSTANCE_WAIT_TIMEOUT", "10")
    return tmp_path


class TestReconcileCommand:
    """Tests for `cluster-operator reconcile`."""

    def test_reconciles_to_ready(self, store_dir: Path) -> None:
        runner = CliRunner()

        with MockAWSContext() as ctx, mock.patch(
            "cluster_operator.reconciler.socket.getaddrinfo", side_effect=_fake_getaddrinfo
        ):
            result = runner.invoke(cli, ["reconcile", "default/test-cluster"])

        assert result.exit_code == 0, result.output
        assert "done" in result.output
        assert len(ctx.state.vpcs) == 1
        assert ctx.state.load_balancers

        stored = yaml.safe_load((store_dir / AWSCLUSTER_FILE).read_text())
        assert stored["status"]["ready"] is True
        assert stored["status"]["phase"] == "Ready"
        assert stored["spec"]["controlPlaneEndpoint"]["port"] == 6443

    def test_requeues_until_dns_resolves(self, store_dir: Path) -> None:
        runner = CliRunner()

        with MockAWSContext(), mock.patch(
            "cluster_operator.reconciler.socket.getaddrinfo", side_effect=socket.gaierror("not known")
        ):
            result = runner.invoke(cli, ["reconcile", "default/test-cluster"])

        assert result.exit_code == 0, result.output
        assert "requeue after 15s" in result.output

    def test_failure_exit_code(self, store_dir: Path) -> None:
        runner = CliRunner()

        with MockAWSContext() as ctx:
            ctx.state.inject_error("ec2", "create_vpc", "UnauthorizedOperation")
            result = runner.invoke(cli, ["reconcile", "default/test-cluster"])

        assert result.exit_code == 1
        assert "UnauthorizedOperation" in result.output

    def test_invalid_configuration(self, store_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AWS_REGION", "nowhere")
        runner = CliRunner()

        result = runner.invoke(cli, ["reconcile", "default/test-cluster"])

        assert result.exit_code == 1


class TestStatusCommand:
    """Tests for `cluster-operator status`."""

    def test_shows_status(self, store_dir: Path) -> None:
        runner = CliRunner()
        with MockAWSContext(), mock.patch(
            "cluster_operator.reconciler.socket.getaddrinfo", side_effect=_fake_getaddrinfo
        ):
            runner.invoke(cli, ["reconcile", "default/test-cluster"])

        result = runner.invoke(cli, ["status", "default/test-cluster"])

        assert result.exit_code == 0, result.output
        assert "Ready:    True" in result.output
        assert "Phase:    Ready" in result.output
        assert "Endpoint: test-cluster-apiserver-1234567890.us-west-2.elb.amazonaws.com:6443" in result.output
        assert "us-west-2a (control plane)" in result.output
        assert "VpcReady: True" in result.output

    def test_bare_name_uses_default_namespace(self, store_dir: Path) -> None:
        result = CliRunner().invoke(cli, ["status", "test-cluster"])

        assert result.exit_code == 0, result.output
        assert "AWSCluster default/test-cluster" in result.output
        assert "Phase:    Pending" in result.output

    def test_missing_cluster(self, store_dir: Path) -> None:
        result = CliRunner().invoke(cli, ["status", "default/absent"])

        assert result.exit_code == 1
        assert "not found" in result.output
