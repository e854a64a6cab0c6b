"""EC2 instance state-change notifications.

An EventBridge rule matches state changes of the cluster's instances and
forwards them to an SQS queue owned by the cluster, so consumers learn about
terminated instances without polling EC2.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from . import tags as tagging
from .errors import ReconcileError, is_not_found
from .models import InstanceState

if TYPE_CHECKING:
    from .scope import ClusterScope

logger = logging.getLogger(__name__)

EC2_EVENT_SOURCE = "aws.ec2"
EC2_STATE_CHANGE_DETAIL_TYPE = "EC2 Instance State-change Notification"
WATCHED_STATES = (
    InstanceState.SHUTTING_DOWN.value,
    InstanceState.TERMINATED.value,
    InstanceState.STOPPING.value,
    InstanceState.STOPPED.value,
    InstanceState.RUNNING.value,
)


def queue_name(cluster_name: str) -> str:
    return f"{cluster_name}-queue"


def rule_name(cluster_name: str) -> str:
    return f"{cluster_name}-ec2-rule"


class InstanceStateService:
    """Converges the event rule and queue for instance state changes."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._ec2 = scope.clients.ec2
        self._events = scope.clients.events
        self._sqs = scope.clients.sqs

    @property
    def queue_name(self) -> str:
        return queue_name(self._scope.name)

    @property
    def rule_name(self) -> str:
        return rule_name(self._scope.name)

    def reconcile_ec2_events(self) -> None:
        """Ensure the queue, the rule and the rule's queue target exist."""
        queue_url = self._get_queue_url()
        if queue_url is None:
            queue_url = self._create_queue()
        queue_arn = self._queue_arn(queue_url)

        self._ensure_rule()
        self._ensure_target(queue_arn)

    def event_pattern(self) -> dict[str, Any]:
        """Event pattern matching state changes of the cluster's instances."""
        detail: dict[str, Any] = {"state": list(WATCHED_STATES)}
        instance_ids = self._cluster_instance_ids()
        if instance_ids:
            detail["instance-id"] = instance_ids
        return {
            "source": [EC2_EVENT_SOURCE],
            "detail-type": [EC2_STATE_CHANGE_DETAIL_TYPE],
            "detail": detail,
        }

    def _cluster_instance_ids(self) -> list[str]:
        filters = [
            tagging.filter_cluster_owned(self._scope.name),
            tagging.filter_instance_states(
                InstanceState.PENDING.value,
                InstanceState.RUNNING.value,
                InstanceState.STOPPING.value,
                InstanceState.STOPPED.value,
            ),
        ]
        try:
            response = self._ec2.describe_instances(Filters=filters)
        except ClientError as e:
            raise ReconcileError(
                f"failed to describe cluster instances: {e}", resource="instance", operation="describe"
            ) from e

        ids = [
            raw["InstanceId"]
            for reservation in response.get("Reservations", [])
            for raw in reservation.get("Instances", [])
        ]
        return sorted(ids)

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    def _get_queue_url(self) -> str | None:
        try:
            return str(self._sqs.get_queue_url(QueueName=self.queue_name)["QueueUrl"])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise ReconcileError(
                f"failed to look up queue {self.queue_name!r}: {e}", resource="queue", operation="describe"
            ) from e

    def _create_queue(self) -> str:
        policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "EventBridgeSendMessage",
                    "Effect": "Allow",
                    "Principal": {"Service": "events.amazonaws.com"},
                    "Action": "sqs:SendMessage",
                    "Resource": "*",
                }
            ],
        }
        tags = tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=self.queue_name,
            additional=self._scope.additional_tags(),
        )
        try:
            response = self._sqs.create_queue(
                QueueName=self.queue_name,
                Attributes={"Policy": json.dumps(policy)},
                tags=tags,
            )
        except ClientError as e:
            raise ReconcileError(
                f"failed to create queue {self.queue_name!r}: {e}", resource="queue", operation="create"
            ) from e

        logger.info("Created instance state queue", extra={"queue": self.queue_name})
        return str(response["QueueUrl"])

    def _queue_arn(self, queue_url: str) -> str:
        try:
            response = self._sqs.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["QueueArn"])
        except ClientError as e:
            raise ReconcileError(
                f"failed to get attributes of queue {self.queue_name!r}: {e}",
                resource="queue",
                operation="describe",
            ) from e
        return str(response["Attributes"]["QueueArn"])

    # -------------------------------------------------------------------------
    # Rule
    # -------------------------------------------------------------------------

    def _ensure_rule(self) -> None:
        desired = self.event_pattern()
        try:
            current = self._events.describe_rule(Name=self.rule_name)
        except ClientError as e:
            if not is_not_found(e):
                raise ReconcileError(
                    f"failed to describe rule {self.rule_name!r}: {e}", resource="rule", operation="describe"
                ) from e
            current = None

        if current is not None and json.loads(current.get("EventPattern") or "{}") == desired:
            return

        try:
            self._events.put_rule(
                Name=self.rule_name,
                EventPattern=json.dumps(desired, sort_keys=True),
                State="ENABLED",
                Description=f"Instance state changes of cluster {self._scope.name}",
            )
        except ClientError as e:
            raise ReconcileError(
                f"failed to put rule {self.rule_name!r}: {e}", resource="rule", operation="put"
            ) from e

        logger.info(
            "Instance state rule updated",
            extra={"rule": self.rule_name, "rule_created": current is None},
        )

    def _ensure_target(self, queue_arn: str) -> None:
        try:
            targets = self._events.list_targets_by_rule(Rule=self.rule_name).get("Targets", [])
        except ClientError as e:
            raise ReconcileError(
                f"failed to list targets of rule {self.rule_name!r}: {e}", resource="rule", operation="describe"
            ) from e

        if any(t.get("Arn") == queue_arn for t in targets):
            return

        try:
            response = self._events.put_targets(
                Rule=self.rule_name, Targets=[{"Id": self.queue_name, "Arn": queue_arn}]
            )
        except ClientError as e:
            raise ReconcileError(
                f"failed to add queue target to rule {self.rule_name!r}: {e}", resource="rule", operation="put"
            ) from e

        if response.get("FailedEntryCount", 0):
            raise ReconcileError(
                f"failed to add queue target to rule {self.rule_name!r}: {response.get('FailedEntries')}",
                resource="rule",
                operation="put",
            )

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def delete_ec2_events(self) -> None:
        """Remove the rule's targets, the rule and the queue."""
        try:
            self._events.remove_targets(Rule=self.rule_name, Ids=[self.queue_name])
            self._events.delete_rule(Name=self.rule_name)
        except ClientError as e:
            if not is_not_found(e):
                raise ReconcileError(
                    f"failed to delete rule {self.rule_name!r}: {e}", resource="rule", operation="delete"
                ) from e

        queue_url = self._get_queue_url()
        if queue_url is None:
            return

        try:
            self._sqs.delete_queue(QueueUrl=queue_url)
        except ClientError as e:
            if not is_not_found(e):
                raise ReconcileError(
                    f"failed to delete queue {self.queue_name!r}: {e}", resource="queue", operation="delete"
                ) from e

        logger.info("Deleted instance state notifications", extra={"rule": self.rule_name})
