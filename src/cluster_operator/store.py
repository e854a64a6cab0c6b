"""Declarative object store with optimistic concurrency.

The reconciler never locks the stored object. Every write is a
compare-and-swap on ``metadata.resourceVersion``: a write based on a stale
read raises ConflictError and the caller discards its in-memory state.

Two implementations are provided:
- InMemoryObjectStore: dict-backed, for embedding and tests
- YAMLObjectStore: one manifest file per object under a directory

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import AWSCluster, OwnerCluster, split_key

logger = logging.getLogger(__name__)

AWSCLUSTER_SUFFIX = ".awscluster.yaml"
CLUSTER_SUFFIX = ".cluster.yaml"

ModelT = TypeVar("ModelT", bound=BaseModel)


class StoreError(Exception):
    """Base class for object store errors."""

    pass


class StoreLoadError(StoreError):
    """Raised when a manifest cannot be loaded or fails validation."""

    pass


class ConflictError(StoreError):
    """Raised when a write is based on a stale resource version."""

    pass


class ObjectStore(Protocol):
    """Capability interface the reconciler persists through."""

    def get(self, key: str) -> AWSCluster | None: ...

    def get_owner(self, ref: str) -> OwnerCluster | None: ...

    def patch(self, obj: AWSCluster) -> AWSCluster: ...


def _next_version(current: AWSCluster | None, obj: AWSCluster) -> AWSCluster:
    """Check the swap precondition and return the object to store."""
    if current is None:
        raise ConflictError(f"Object {obj.key} no longer exists")
    if current.metadata.resource_version != obj.metadata.resource_version:
        raise ConflictError(
            f"Object {obj.key} was modified: have version {obj.metadata.resource_version}, "
            f"stored version is {current.metadata.resource_version}"
        )
    updated = obj.model_copy(deep=True)
    updated.metadata.resource_version = current.metadata.resource_version + 1
    return updated


def _released(obj: AWSCluster) -> bool:
    # A deleting object with no finalizers left is physically removed
    return obj.is_deleting() and not obj.metadata.finalizers


class InMemoryObjectStore:
    """Dict-backed object store."""

    def __init__(self) -> None:
        self._clusters: dict[str, AWSCluster] = {}
        self._owners: dict[str, OwnerCluster] = {}
        self.patch_count = 0

    def put(self, obj: AWSCluster) -> AWSCluster:
        """Create or replace an object, bypassing the version check."""
        stored = obj.model_copy(deep=True)
        self._clusters[stored.key] = stored
        return stored.model_copy(deep=True)

    def put_owner(self, owner: OwnerCluster) -> None:
        self._owners[f"{owner.namespace}/{owner.name}"] = owner.model_copy(deep=True)

    def get(self, key: str) -> AWSCluster | None:
        stored = self._clusters.get(key)
        return stored.model_copy(deep=True) if stored is not None else None

    def get_owner(self, ref: str) -> OwnerCluster | None:
        namespace, name = split_key(ref)
        owner = self._owners.get(f"{namespace}/{name}")
        return owner.model_copy(deep=True) if owner is not None else None

    def patch(self, obj: AWSCluster) -> AWSCluster:
        updated = _next_version(self._clusters.get(obj.key), obj)
        self.patch_count += 1
        if _released(updated):
            del self._clusters[obj.key]
            logger.info("Object released", extra={"object": obj.key})
        else:
            self._clusters[obj.key] = updated
        return updated.model_copy(deep=True)


class YAMLObjectStore:
    """Manifest-file object store.

    Layout::

        <root>/<namespace>/<name>.awscluster.yaml
        <root>/<namespace>/<name>.cluster.yaml
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path(self, key: str, suffix: str) -> Path:
        namespace, name = split_key(key)
        return self._root / namespace / f"{name}{suffix}"

    def get(self, key: str) -> AWSCluster | None:
        path = self._path(key, AWSCLUSTER_SUFFIX)
        if not path.exists():
            return None
        return load_manifest(path, AWSCluster)

    def get_owner(self, ref: str) -> OwnerCluster | None:
        path = self._path(ref, CLUSTER_SUFFIX)
        if not path.exists():
            return None
        return load_manifest(path, OwnerCluster)

    def patch(self, obj: AWSCluster) -> AWSCluster:
        path = self._path(obj.key, AWSCLUSTER_SUFFIX)
        current = load_manifest(path, AWSCluster) if path.exists() else None
        updated = _next_version(current, obj)

        if _released(updated):
            path.unlink()
            logger.info("Object released", extra={"object": obj.key, "path": str(path)})
            return updated

        _write_atomic(path, dump_manifest(updated))
        return updated


def dump_manifest(obj: BaseModel) -> dict[str, Any]:
    """Serialize a model to its wire (camelCase) form."""
    return obj.model_dump(mode="json", by_alias=True, exclude_none=True)


def _write_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_manifest(path: Path, model: type[ModelT]) -> ModelT:
    """Load and validate a manifest file.

    Args:
        path: Manifest file path.
        model: Model class to validate against.

    Returns:
        Validated model instance.

    Raises:
        StoreLoadError: If the file cannot be read or fails validation.
    """
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise StoreLoadError(f"Failed to stat manifest {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise StoreLoadError(
            f"Manifest exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreLoadError(f"Failed to read manifest {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise StoreLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise StoreLoadError(f"Manifest must contain a YAML mapping: {path}")

    try:
        return model.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise StoreLoadError(f"Validation failed for {path}:\n{error_list}") from e
