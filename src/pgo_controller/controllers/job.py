"""Controller for jobs launched on behalf of a pgtask.

When such a job finishes, the pgtask is marked ``completed`` or ``failed``.
"""

from __future__ import annotations

from typing import Any

import structlog
from kubernetes.client import ApiException

from pgo_controller.controllers.base import ResourceController
from pgo_controller.controllers.common import update_status
from pgo_controller.informer import SharedInformer
from pgo_controller.kubeapi import ControllerClients
from pgo_controller.models import (
    LABEL_PG_TASK,
    PGTASKS,
    STATE_COMPLETED,
    STATE_FAILED,
    ResourceKind,
    labels_of,
    meta,
    status_of,
)

logger = structlog.get_logger(__name__)


def job_outcome(job: Any) -> str | None:
    """Return ``completed``, ``failed`` or ``None`` while the job is still running."""
    status = status_of(job)
    if status is None:
        return None
    if isinstance(status, dict):
        succeeded, failed = status.get("succeeded"), status.get("failed")
    else:
        succeeded, failed = status.succeeded, status.failed
    if succeeded:
        return STATE_COMPLETED
    if failed:
        return STATE_FAILED
    return None


class JobController(ResourceController):
    def __init__(
        self,
        clients: ControllerClients,
        informer: SharedInformer,
        task_kind: ResourceKind = PGTASKS,
    ) -> None:
        super().__init__(clients, informer)
        self.task_kind = task_kind

    def on_add(self, obj: Any) -> None:
        # Jobs that finished while nobody was watching show up as adds.
        self._record_outcome(obj, previous=None)

    def on_update(self, old: Any, new: Any) -> None:
        self._record_outcome(new, previous=job_outcome(old))

    def _record_outcome(self, job: Any, previous: str | None) -> None:
        task = labels_of(job).get(LABEL_PG_TASK)
        if task is None:
            return
        outcome = job_outcome(job)
        if outcome is None or outcome == previous:
            return

        job_name = meta(job, "name")
        try:
            update_status(
                self.clients.custom_api,
                self.task_kind,
                self.namespace,
                task,
                outcome,
                f"job {job_name} {outcome}",
            )
        except ApiException as exc:
            logger.error("pgtask_update_failed", namespace=self.namespace, task=task, job=job_name, status=exc.status)
            return
        logger.info("job_finished", namespace=self.namespace, job=job_name, task=task, outcome=outcome)
