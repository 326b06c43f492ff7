"""Controller for pgreplica custom resources.

A replica is only acknowledged once the pgcluster it belongs to has been
processed.  Until then the key is retried with backoff.
"""

from __future__ import annotations

from typing import Any

from pgo_controller.controllers.base import DEFAULT_MAX_RETRIES
from pgo_controller.controllers.common import AcknowledgingController
from pgo_controller.informer import ResourceEventHandler, SharedInformer
from pgo_controller.kubeapi import ControllerClients
from pgo_controller.models import STATE_PROCESSED, meta, status_state
from pgo_controller.workqueue import RateLimitingQueue


class ClusterNotReadyError(Exception):
    """The pgcluster a replica refers to does not exist or is not processed yet."""


class PgreplicaController(AcknowledgingController):
    message = "replica accepted"

    def __init__(
        self,
        clients: ControllerClients,
        informer: SharedInformer,
        queue: RateLimitingQueue,
        cluster_informer: SharedInformer,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        super().__init__(clients, informer, queue, max_retries=max_retries)
        self.cluster_informer = cluster_informer

    def add_event_handler(self) -> None:
        super().add_event_handler()
        self.cluster_informer.add_event_handler(
            ResourceEventHandler(on_add=self._cluster_changed, on_update=lambda _old, new: self._cluster_changed(new))
        )

    def _cluster_changed(self, cluster: Any) -> None:
        """Requeue the replicas of *cluster* so they notice it became ready."""
        cluster_name = meta(cluster, "name")
        for replica in self.informer.list():
            if (replica.get("spec") or {}).get("clusterName") == cluster_name:
                self.enqueue(replica)

    def check_ready(self, obj: Any) -> None:
        spec = obj.get("spec") or {}
        cluster_name = spec.get("clusterName")
        if not cluster_name:
            raise ClusterNotReadyError(f"pgreplica {meta(obj, 'name')} has no spec.clusterName")

        cluster = self.cluster_informer.get(f"{self.namespace}/{cluster_name}")
        if cluster is None or status_state(cluster) != STATE_PROCESSED:
            raise ClusterNotReadyError(f"pgcluster {cluster_name} is not ready")
