"""AWS API Mock for Integration Testing.

This module provides a mock implementation of the EC2, ELB, S3, SSM,
EventBridge and SQS APIs used by the operator, enabling integration tests
without AWS connectivity.

Key Features:
- In-memory account state with botocore-shaped requests and responses
- EC2 filter matching, including tag filters and wildcards
- Dependency checks on deletion (DependencyViolation) as AWS enforces them
- Call log for asserting which mutating calls were (not) made
- Error injection for testing failure scenarios

Usage:
    from aws_mock import MockAWSState, mock_clients

    state = MockAWSState()
    clients = mock_clients(state)
    ...
    assert not state.mutating_calls()
"""

from .context import MockAWSContext, MockSession, mock_aws_context, mock_clients
from .ec2 import MockEC2Client, MockEC2Waiter
from .services import MockELBClient, MockEventsClient, MockS3Client, MockSQSClient, MockSSMClient
from .state import MockAWSState, MockCall, client_error

__all__ = [
    "MockAWSContext",
    "MockAWSState",
    "MockCall",
    "MockEC2Client",
    "MockEC2Waiter",
    "MockELBClient",
    "MockEventsClient",
    "MockS3Client",
    "MockSQSClient",
    "MockSSMClient",
    "MockSession",
    "client_error",
    "mock_aws_context",
    "mock_clients",
]
