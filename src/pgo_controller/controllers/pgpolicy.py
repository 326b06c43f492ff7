"""Controller for pgpolicy custom resources.

Acknowledging a policy is a single idempotent patch, so it happens directly
in the informer callback without a work queue.
"""

from __future__ import annotations

from typing import Any

import structlog
from kubernetes.client import ApiException

from pgo_controller.controllers.base import ResourceController
from pgo_controller.controllers.common import update_status
from pgo_controller.models import STATE_PROCESSED, meta, status_state

logger = structlog.get_logger(__name__)


class PgpolicyController(ResourceController):
    def on_add(self, obj: Any) -> None:
        if status_state(obj) == STATE_PROCESSED:
            return
        name = meta(obj, "name")
        try:
            update_status(self.clients.custom_api, self.kind, self.namespace, name, STATE_PROCESSED, "policy accepted")
        except ApiException as exc:
            logger.error("pgpolicy_update_failed", namespace=self.namespace, name=name, status=exc.status)
            return
        logger.info("pgpolicy_added", namespace=self.namespace, name=name)

    def on_delete(self, obj: Any) -> None:
        logger.info("pgpolicy_deleted", namespace=self.namespace, name=meta(obj, "name"))
