"""Base classes for resource controllers.

Two flavours exist, chosen per resource kind:

* :class:`ResourceController` reacts inside the informer callback.  Suitable
  when the reaction is cheap, idempotent and never needs a retry.
* :class:`QueueController` only records *that* an object changed by putting
  its ``namespace/name`` key on a rate-limited work queue.  Worker threads
  call :meth:`QueueController.run_worker`, which re-reads the current object
  from the informer cache and reconciles it, retrying failures with backoff.
"""

from __future__ import annotations

import abc
from typing import Any, ClassVar

import structlog

from pgo_controller.informer import ResourceEventHandler, SharedInformer
from pgo_controller.kubeapi import ControllerClients
from pgo_controller.models import ResourceKind, meta_namespace_key
from pgo_controller.workqueue import RateLimitingQueue

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 5


class ResourceController:
    """Handler-only controller: reactions run synchronously in the informer thread.

    Parameters
    ----------
    clients:
        Kubernetes clients of the owning controller group.
    informer:
        Informer delivering notifications for this controller's kind.
    """

    has_workers: ClassVar[bool] = False

    def __init__(self, clients: ControllerClients, informer: SharedInformer) -> None:
        self.clients = clients
        self.informer = informer

    @property
    def kind(self) -> ResourceKind:
        return self.informer.kind

    @property
    def namespace(self) -> str:
        return self.informer.namespace

    def add_event_handler(self) -> None:
        """Wire this controller's callbacks into its informer."""
        self.informer.add_event_handler(
            ResourceEventHandler(
                on_add=self.on_add,
                on_update=self.on_update,
                on_delete=self.on_delete,
            )
        )

    def on_add(self, obj: Any) -> None:
        pass

    def on_update(self, old: Any, new: Any) -> None:
        pass

    def on_delete(self, obj: Any) -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(namespace={self.namespace!r})"


class QueueController(ResourceController, abc.ABC):
    """Queue-bearing controller: watch -> queue -> worker.

    Subclasses implement :meth:`sync_handler`, which receives a key and must
    be idempotent.  Raising from it schedules a rate-limited retry until
    ``max_retries`` is reached, after which the key is dropped.
    """

    has_workers: ClassVar[bool] = True

    def __init__(
        self,
        clients: ControllerClients,
        informer: SharedInformer,
        queue: RateLimitingQueue,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        super().__init__(clients, informer)
        self.queue = queue
        self.max_retries = max_retries

    # -- watch -> queue ---------------------------------------------------------

    def enqueue(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except ValueError:
            logger.warning("unkeyable_object", kind=str(self.kind), namespace=self.namespace)
            return
        self.queue.add(key)

    def on_add(self, obj: Any) -> None:
        self.enqueue(obj)

    def on_update(self, old: Any, new: Any) -> None:
        self.enqueue(new)

    def on_delete(self, obj: Any) -> None:
        self.enqueue(obj)

    # -- queue -> worker --------------------------------------------------------

    def run_worker(self) -> None:
        """Process keys until the queue shuts down.  Launch once per worker slot."""
        logger.debug("worker_started", kind=str(self.kind), namespace=self.namespace)
        while self.process_next_work_item():
            pass
        logger.debug("worker_stopped", kind=str(self.kind), namespace=self.namespace)

    def process_next_work_item(self) -> bool:
        """Handle one key.  Returns ``False`` once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        try:
            self.sync_handler(key)
        except Exception as exc:
            self.handle_err(exc, key)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def handle_err(self, err: Exception, key: str) -> None:
        """Requeue *key* with backoff, or drop it once retries are exhausted."""
        retries = self.queue.num_requeues(key)
        if retries < self.max_retries:
            logger.warning(
                "work_item_retry",
                kind=str(self.kind),
                key=key,
                attempt=retries + 1,
                error=str(err),
            )
            self.queue.add_rate_limited(key)
            return

        self.queue.forget(key)
        logger.error(
            "work_item_dropped",
            kind=str(self.kind),
            key=key,
            attempts=retries + 1,
            error=str(err),
        )

    @abc.abstractmethod
    def sync_handler(self, key: str) -> None:
        """Reconcile the object identified by *key*."""
