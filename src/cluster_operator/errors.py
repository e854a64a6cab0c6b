"""Error taxonomy for reconciliation.

Absence of a remote resource is never an error: lookups return None.
Everything that stops a reconciliation is one of:

- FailedDependencyError: a precondition that a later attempt may satisfy.
  Surfaced for backoff but never recorded as a failure event.
- ReconcileError: any other failure, wrapped with the resource and the
  operation that failed.
"""

from __future__ import annotations

from typing import Any

from botocore.exceptions import ClientError

# Error codes AWS uses to signal that a resource does not exist
NOT_FOUND_CODES = frozenset(
    {
        "NoSuchBucket",
        "NotFound",
        "404",
        "LoadBalancerNotFound",
        "ParameterNotFound",
        "ResourceNotFoundException",
        "AWS.SimpleQueueService.NonExistentQueue",
        "QueueDoesNotExist",
    }
)

# Malformed ids can never match an existing resource
NOT_FOUND_SUFFIXES = (".NotFound", ".Malformed")


class ReconcileError(Exception):
    """Raised when a converger fails; carries the resource and operation."""

    def __init__(self, message: str, *, resource: str = "", operation: str = "") -> None:
        super().__init__(message)
        self.resource = resource
        self.operation = operation


class FailedDependencyError(ReconcileError):
    """Raised when a precondition is not yet satisfiable."""

    pass


class InstanceCreateError(ReconcileError):
    """Raised when an instance request is rejected before any remote call."""

    pass


class UnknownRoleError(ValueError):
    """Raised for a machine role the operator does not know."""

    pass


def error_code(err: BaseException) -> str:
    """Return the AWS error code of a ClientError, or "" for anything else."""
    if not isinstance(err, ClientError):
        return ""
    response: dict[str, Any] = err.response or {}
    return str(response.get("Error", {}).get("Code", ""))


def is_not_found(err: BaseException) -> bool:
    """Check whether an error means the resource does not exist."""
    code = error_code(err)
    if not code:
        return False
    return code in NOT_FOUND_CODES or code.endswith(NOT_FOUND_SUFFIXES)


def is_failed_dependency(err: BaseException | None) -> bool:
    """Walk the cause chain looking for a FailedDependencyError."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, FailedDependencyError):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False
