"""S3 bucket convergence for clusters that declare one."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError

from . import tags as tagging
from .errors import ReconcileError, error_code, is_not_found

if TYPE_CHECKING:
    from .scope import ClusterScope

logger = logging.getLogger(__name__)

# The one region where CreateBucket rejects a LocationConstraint
DEFAULT_S3_REGION = "us-east-1"

# Returned by CreateBucket when we already own the bucket
ALREADY_OWNED_CODES = frozenset({"BucketAlreadyOwnedByYou"})


class ObjectStoreService:
    """Converges the cluster's S3 bucket."""

    def __init__(self, scope: ClusterScope) -> None:
        self._scope = scope
        self._s3 = scope.clients.s3

    def _bucket_name(self) -> str | None:
        bucket = self._scope.cluster.spec.s3_bucket
        return bucket.name if bucket is not None else None

    def reconcile_bucket(self) -> None:
        """Ensure the declared bucket exists and carries the cluster tags."""
        name = self._bucket_name()
        if name is None:
            return

        if not self._exists(name):
            self._create(name)

        desired = tagging.build(
            self._scope.name,
            tagging.ResourceLifecycle.OWNED,
            name=name,
            role="node",
            additional=self._scope.additional_tags(),
        )
        if self._current_tags(name) != desired:
            try:
                self._s3.put_bucket_tagging(Bucket=name, Tagging={"TagSet": tagging.to_sdk(desired)})
            except ClientError as e:
                raise ReconcileError(
                    f"failed to tag bucket {name!r}: {e}", resource="bucket", operation="tag"
                ) from e

        logger.debug("Bucket reconciled", extra={"bucket": name})

    def _exists(self, name: str) -> bool:
        try:
            self._s3.head_bucket(Bucket=name)
        except ClientError as e:
            if is_not_found(e):
                return False
            raise ReconcileError(
                f"failed to check bucket {name!r}: {e}", resource="bucket", operation="describe"
            ) from e
        return True

    def _create(self, name: str) -> None:
        request: dict[str, Any] = {"Bucket": name}
        region = self._scope.region
        if region != DEFAULT_S3_REGION:
            request["CreateBucketConfiguration"] = {"LocationConstraint": region}

        try:
            self._s3.create_bucket(**request)
        except ClientError as e:
            if error_code(e) in ALREADY_OWNED_CODES:
                return
            raise ReconcileError(
                f"failed to create bucket {name!r}: {e}", resource="bucket", operation="create"
            ) from e

        self._scope.recorder.event(
            self._scope.cluster, "SuccessfulCreateBucket", f"Created bucket {name!r}"
        )
        logger.info("Created bucket", extra={"bucket": name, "region": region})

    def _current_tags(self, name: str) -> dict[str, str]:
        try:
            response = self._s3.get_bucket_tagging(Bucket=name)
        except ClientError as e:
            # S3 reports an untagged bucket as an error
            if error_code(e) == "NoSuchTagSet":
                return {}
            raise ReconcileError(
                f"failed to get tags of bucket {name!r}: {e}", resource="bucket", operation="describe"
            ) from e
        return tagging.from_sdk(response.get("TagSet"))

    def delete_bucket(self) -> None:
        """Delete the declared bucket; a missing one is fine."""
        name = self._bucket_name()
        if name is None:
            return

        try:
            self._s3.delete_bucket(Bucket=name)
        except ClientError as e:
            if is_not_found(e):
                logger.debug("Bucket already deleted", extra={"bucket": name})
                return
            raise ReconcileError(
                f"failed to delete bucket {name!r}: {e}", resource="bucket", operation="delete"
            ) from e

        self._scope.recorder.event(self._scope.cluster, "SuccessfulDeleteBucket", f"Deleted bucket {name!r}")
        logger.info("Deleted bucket", extra={"bucket": name})
