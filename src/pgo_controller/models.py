"""Data models and object helpers shared by informers and controllers.

Custom resources arrive from ``CustomObjectsApi`` as plain dicts while
built-in resources arrive as typed ``kubernetes.client`` models, so the
accessors here accept either shape.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CRD_GROUP = "crunchydata.com"
CRD_VERSION = "v1"

LABEL_PG_CLUSTER = "pg-cluster"
"""Label carried by every pod that belongs to a pgcluster."""

LABEL_PG_TASK = "pg-task"
"""Label linking a job to the pgtask that launched it."""

STATE_PROCESSED = "processed"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    """Watch event types as sent by the API server."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


# ---------------------------------------------------------------------------
# Resource kinds
# ---------------------------------------------------------------------------


class ResourceKind(BaseModel):
    """Identifies one watchable resource type."""

    model_config = ConfigDict(frozen=True)

    kind: str
    plural: str
    group: str = ""
    version: str = "v1"

    def __str__(self) -> str:
        return f"{self.plural}.{self.group}" if self.group else self.plural


PGCLUSTERS = ResourceKind(kind="Pgcluster", plural="pgclusters", group=CRD_GROUP, version=CRD_VERSION)
PGREPLICAS = ResourceKind(kind="Pgreplica", plural="pgreplicas", group=CRD_GROUP, version=CRD_VERSION)
PGTASKS = ResourceKind(kind="Pgtask", plural="pgtasks", group=CRD_GROUP, version=CRD_VERSION)
PGPOLICIES = ResourceKind(kind="Pgpolicy", plural="pgpolicies", group=CRD_GROUP, version=CRD_VERSION)
PODS = ResourceKind(kind="Pod", plural="pods")
JOBS = ResourceKind(kind="Job", plural="jobs")


# ---------------------------------------------------------------------------
# Object accessors
# ---------------------------------------------------------------------------


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


_SNAKE_CASE = {"resourceVersion": "resource_version"}


def meta(obj: Any, name: str) -> Any:
    """Read ``metadata.<name>`` from a dict or typed API object."""
    metadata = _field(obj, "metadata")
    if isinstance(metadata, dict):
        return metadata.get(name)
    return _field(metadata, _SNAKE_CASE.get(name, name))


def labels_of(obj: Any) -> dict[str, str]:
    return meta(obj, "labels") or {}


def status_of(obj: Any) -> Any:
    return _field(obj, "status")


def status_state(obj: Any) -> str | None:
    """Return ``status.state`` of a custom resource dict, if any."""
    status = status_of(obj)
    if isinstance(status, dict):
        return status.get("state")
    return None


def meta_namespace_key(obj: Any) -> str:
    """Build the ``namespace/name`` work-queue key for an object.

    Cluster-scoped objects yield just ``name``.
    """
    name = meta(obj, "name")
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = meta(obj, "namespace")
    return f"{namespace}/{name}" if namespace else name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Inverse of :func:`meta_namespace_key`; returns ``(namespace, name)``."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")
