"""Controller for pods belonging to a pgcluster."""

from __future__ import annotations

from typing import Any

import structlog

from pgo_controller.controllers.base import ResourceController
from pgo_controller.models import LABEL_PG_CLUSTER, labels_of, meta, status_of

logger = structlog.get_logger(__name__)


def pod_phase(pod: Any) -> str | None:
    status = status_of(pod)
    if isinstance(status, dict):
        return status.get("phase")
    return getattr(status, "phase", None)


class PodController(ResourceController):
    """Logs lifecycle changes of database pods."""

    def on_update(self, old: Any, new: Any) -> None:
        cluster = labels_of(new).get(LABEL_PG_CLUSTER)
        if cluster is None:
            return
        old_phase, new_phase = pod_phase(old), pod_phase(new)
        if old_phase == new_phase:
            return
        logger.info(
            "pod_phase_changed",
            namespace=self.namespace,
            pod=meta(new, "name"),
            cluster=cluster,
            old_phase=old_phase,
            new_phase=new_phase,
        )

    def on_delete(self, obj: Any) -> None:
        cluster = labels_of(obj).get(LABEL_PG_CLUSTER)
        if cluster is not None:
            logger.info("pod_deleted", namespace=self.namespace, pod=meta(obj, "name"), cluster=cluster)
