"""Tests for instance state-change notifications."""

from __future__ import annotations

import json

import pytest
from aws_mock import MockAWSState

from cluster_operator import tags as tagging
from cluster_operator.errors import ReconcileError
from cluster_operator.instancestate import InstanceStateService

QUEUE = "test-cluster-queue"
RULE = "test-cluster-ec2-rule"
QUEUE_ARN = "arn:aws:sqs:us-west-2:123456789012:test-cluster-queue"


def _add_instance(state: MockAWSState, instance_id: str, status: str = "running") -> None:
    state.instances[instance_id] = {
        "InstanceId": instance_id,
        "State": {"Name": status},
        "Placement": {"AvailabilityZone": "us-west-2a"},
        "Tags": tagging.build("test-cluster"),
        "NetworkInterfaceIds": [],
    }


class TestReconcileEvents:
    """Tests for InstanceStateService.reconcile_ec2_events."""

    def test_creates_queue_rule_and_target(self, make_scope, state: MockAWSState) -> None:
        InstanceStateService(make_scope()).reconcile_ec2_events()

        queue = state.queues[QUEUE]
        assert queue["QueueArn"] == QUEUE_ARN
        policy = json.loads(queue["Attributes"]["Policy"])
        assert policy["Statement"][0]["Principal"] == {"Service": "events.amazonaws.com"}
        assert queue["Tags"]["sigs.k8s.io/cluster-api-provider-aws/cluster/test-cluster"] == "owned"

        rule = state.rules[RULE]
        assert rule["State"] == "ENABLED"
        assert rule["Targets"] == [{"Id": QUEUE, "Arn": QUEUE_ARN}]

    def test_pattern_without_instances(self, make_scope, state: MockAWSState) -> None:
        InstanceStateService(make_scope()).reconcile_ec2_events()

        pattern = json.loads(state.rules[RULE]["EventPattern"])
        assert pattern["source"] == ["aws.ec2"]
        assert pattern["detail-type"] == ["EC2 Instance State-change Notification"]
        assert "instance-id" not in pattern["detail"]
        assert "terminated" in pattern["detail"]["state"]

    def test_pattern_lists_live_cluster_instances(self, make_scope, state: MockAWSState) -> None:
        _add_instance(state, "i-0002")
        _add_instance(state, "i-0001", "stopped")
        _add_instance(state, "i-0003", "terminated")

        InstanceStateService(make_scope()).reconcile_ec2_events()

        pattern = json.loads(state.rules[RULE]["EventPattern"])
        assert pattern["detail"]["instance-id"] == ["i-0001", "i-0002"]

    def test_second_pass_makes_no_changes(self, make_scope, state: MockAWSState) -> None:
        scope = make_scope()
        InstanceStateService(scope).reconcile_ec2_events()
        state.reset_calls()

        InstanceStateService(scope).reconcile_ec2_events()

        assert state.mutating_calls() == []

    def test_new_instance_updates_rule(self, make_scope, state: MockAWSState) -> None:
        scope = make_scope()
        InstanceStateService(scope).reconcile_ec2_events()
        _add_instance(state, "i-0001")
        state.reset_calls()

        InstanceStateService(scope).reconcile_ec2_events()

        assert [c.operation for c in state.mutating_calls()] == ["put_rule"]
        assert json.loads(state.rules[RULE]["EventPattern"])["detail"]["instance-id"] == ["i-0001"]

    def test_queue_failure(self, make_scope, state: MockAWSState) -> None:
        state.inject_error("sqs", "create_queue", "AccessDenied")

        with pytest.raises(ReconcileError):
            InstanceStateService(make_scope()).reconcile_ec2_events()

        assert state.rules == {}


class TestDeleteEvents:
    """Tests for InstanceStateService.delete_ec2_events."""

    def test_deletes_everything(self, make_scope, state: MockAWSState) -> None:
        scope = make_scope()
        service = InstanceStateService(scope)
        service.reconcile_ec2_events()
        state.reset_calls()

        service.delete_ec2_events()

        assert [c.operation for c in state.mutating_calls()] == [
            "remove_targets",
            "delete_rule",
            "delete_queue",
        ]
        assert state.rules == {}
        assert state.queues == {}

    def test_nothing_to_delete(self, make_scope, state: MockAWSState) -> None:
        InstanceStateService(make_scope()).delete_ec2_events()

        assert state.rules == {}
        assert state.calls_to("events", "delete_rule") == []
        assert state.calls_to("sqs", "delete_queue") == []
