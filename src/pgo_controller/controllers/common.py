"""Shared helpers for controllers of the operator's custom resources."""

from __future__ import annotations

from typing import Any, ClassVar

import structlog
from kubernetes.client import CustomObjectsApi

from pgo_controller.controllers.base import QueueController
from pgo_controller.models import STATE_PROCESSED, ResourceKind, split_meta_namespace_key, status_state

logger = structlog.get_logger(__name__)


def update_status(
    custom_api: CustomObjectsApi,
    kind: ResourceKind,
    namespace: str,
    name: str,
    state: str,
    message: str = "",
) -> Any:
    """Merge-patch ``status.state`` and ``status.message`` of a custom resource."""
    return custom_api.patch_namespaced_custom_object(
        group=kind.group,
        version=kind.version,
        namespace=namespace,
        plural=kind.plural,
        name=name,
        body={"status": {"state": state, "message": message}},
    )


class AcknowledgingController(QueueController):
    """Queue-bearing controller that marks new custom resources as processed.

    Objects that have vanished from the cache are skipped.  Objects whose
    ``status.state`` is one of ``final_states`` are left alone.
    """

    final_states: ClassVar[frozenset[str]] = frozenset({STATE_PROCESSED})
    message: ClassVar[str] = "accepted by operator"

    def sync_handler(self, key: str) -> None:
        obj = self.informer.get(key)
        if obj is None:
            logger.debug("object_not_found", kind=str(self.kind), key=key)
            return
        if status_state(obj) in self.final_states:
            return

        self.check_ready(obj)
        namespace, name = split_meta_namespace_key(key)
        update_status(self.clients.custom_api, self.kind, namespace, name, STATE_PROCESSED, self.message)
        logger.info("object_processed", kind=str(self.kind), key=key)

    def check_ready(self, obj: Any) -> None:
        """Raise to postpone processing of *obj* until a later retry."""
