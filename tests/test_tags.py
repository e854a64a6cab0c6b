"""Tests for resource tagging and errors."""

from botocore.exceptions import ClientError

from cluster_operator import tags as tagging
from cluster_operator.errors import (
    FailedDependencyError,
    ReconcileError,
    error_code,
    is_failed_dependency,
    is_not_found,
)


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "boom"}}, "Operation")


class TestBuild:
    """Tests for tag map construction."""

    def test_owned_tags(self) -> None:
        tags = tagging.build("prod", name="prod-vpc", role="common")

        assert tags == {
            "sigs.k8s.io/cluster-api-provider-aws/cluster/prod": "owned",
            "Name": "prod-vpc",
            "sigs.k8s.io/cluster-api-provider-aws/role": "common",
        }

    def test_cloud_provider_tag(self) -> None:
        tags = tagging.build("prod", tagging.ResourceLifecycle.SHARED, cloud_provider=True)

        assert tags["kubernetes.io/cluster/prod"] == "shared"
        assert tags["sigs.k8s.io/cluster-api-provider-aws/cluster/prod"] == "shared"

    def test_additional_tags_cannot_override_ownership(self) -> None:
        additional = {
            "team": "platform",
            "Name": "spoofed",
            "sigs.k8s.io/cluster-api-provider-aws/cluster/prod": "shared",
        }

        tags = tagging.build("prod", name="real", additional=additional)

        assert tags["team"] == "platform"
        assert tags["Name"] == "real"
        assert tagging.is_owned(tags, "prod")
        # The caller's map is not modified
        assert additional["Name"] == "spoofed"


class TestDiff:
    """Tests for tag diffs."""

    def test_no_changes(self) -> None:
        diff = tagging.compute_diff({"a": "1"}, {"a": "1"})
        assert diff.empty

    def test_create_update_and_remove(self) -> None:
        diff = tagging.compute_diff({"a": "1", "b": "2", "c": "3"}, {"a": "1", "b": "20", "d": "4"})

        assert diff.create == {"b": "20", "d": "4"}
        assert diff.remove == {"c": "3"}


class TestSdkShape:
    """Tests for SDK conversions and filters."""

    def test_to_sdk_sorted(self) -> None:
        assert tagging.to_sdk({"b": "2", "a": "1"}) == [{"Key": "a", "Value": "1"}, {"Key": "b", "Value": "2"}]

    def test_from_sdk_handles_none(self) -> None:
        assert tagging.from_sdk(None) == {}
        assert tagging.from_sdk([{"Key": "a"}]) == {"a": ""}

    def test_cluster_owned_filter(self) -> None:
        assert tagging.filter_cluster_owned("prod") == {
            "Name": "tag:sigs.k8s.io/cluster-api-provider-aws/cluster/prod",
            "Values": ["owned"],
        }


class TestErrors:
    """Tests for error classification."""

    def test_error_code(self) -> None:
        assert error_code(_client_error("Throttling")) == "Throttling"
        assert error_code(ValueError("x")) == ""

    def test_not_found_codes(self) -> None:
        for code in (
            "InvalidVpcID.NotFound",
            "InvalidInstanceID.Malformed",
            "LoadBalancerNotFound",
            "NoSuchBucket",
            "404",
            "ParameterNotFound",
            "ResourceNotFoundException",
            "AWS.SimpleQueueService.NonExistentQueue",
        ):
            assert is_not_found(_client_error(code)), code

    def test_other_codes_are_not_not_found(self) -> None:
        assert not is_not_found(_client_error("DependencyViolation"))
        assert not is_not_found(_client_error("UnauthorizedOperation"))
        assert not is_not_found(ValueError("NotFound"))

    def test_failed_dependency_in_cause_chain(self) -> None:
        try:
            try:
                raise FailedDependencyError("subnet missing", resource="subnet", operation="resolve")
            except FailedDependencyError as inner:
                raise ReconcileError("instance failed", resource="instance", operation="create") from inner
        except ReconcileError as outer:
            assert is_failed_dependency(outer)

    def test_plain_error_is_not_failed_dependency(self) -> None:
        assert not is_failed_dependency(ReconcileError("boom"))
        assert not is_failed_dependency(None)
