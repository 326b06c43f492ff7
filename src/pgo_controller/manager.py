"""Controller manager: one controller group per namespace.

A :class:`ControllerGroup` holds every controller needed to handle events in
one namespace, the two informer factories those controllers share (custom
resources and built-in resources) and the worker threads of the
queue-bearing controllers.  The :class:`ControllerManager` keeps the
namespace -> group registry and owns the root :class:`~pgo_controller.scope.Scope`
every group scope is derived from.

Operations on a namespace without a registered group raise
:class:`NamespaceNotFoundError`.

``add_and_run_controller_group`` is not atomic: a ``remove_group`` for the
same namespace running concurrently may remove the group between the add
and the run, in which case the run raises :class:`NamespaceNotFoundError`.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterable

import structlog

from pgo_controller.config import ControllerSettings
from pgo_controller.controllers.base import ResourceController
from pgo_controller.controllers.job import JobController
from pgo_controller.controllers.pgcluster import PgclusterController
from pgo_controller.controllers.pgpolicy import PgpolicyController
from pgo_controller.controllers.pgreplica import PgreplicaController
from pgo_controller.controllers.pgtask import PgtaskController
from pgo_controller.controllers.pod import PodController
from pgo_controller.informer import CustomResourceInformerFactory, KubeInformerFactory
from pgo_controller.kubeapi import ControllerClients, new_controller_clients
from pgo_controller.scope import Scope, until
from pgo_controller.workqueue import RateLimitingQueue, default_controller_rate_limiter

logger = structlog.get_logger(__name__)

ClientsFactory = Callable[[ControllerSettings], ControllerClients]


class NamespaceNotFoundError(LookupError):
    """Raised when no controller group is registered for a namespace."""

    def __init__(self, namespace: str) -> None:
        super().__init__(f"no controller group registered for namespace {namespace!r}")
        self.namespace = namespace


class ControllerGroup:
    """The controllers, informer factories and workers for a single namespace.

    Parameters
    ----------
    namespace:
        Namespace this group handles.
    scope:
        Scope of the group, derived from the manager's root scope.
        Cancelling it shuts down every work queue of the group.
    pgo_informer_factory / kube_informer_factory:
        The two informer factories shared by all controllers of the group.
    controllers:
        Every controller of the group, queue-bearing or not.
    workers_per_controller:
        Worker threads launched per queue-bearing controller.
    worker_restart_period:
        Minimum delay between two runs of a worker loop.
    """

    def __init__(
        self,
        namespace: str,
        scope: Scope,
        pgo_informer_factory: CustomResourceInformerFactory,
        kube_informer_factory: KubeInformerFactory,
        controllers: list[ResourceController],
        workers_per_controller: int = 1,
        worker_restart_period: float = 1.0,
    ) -> None:
        self.namespace = namespace
        self.scope = scope
        self.pgo_informer_factory = pgo_informer_factory
        self.kube_informer_factory = kube_informer_factory
        self.controllers = controllers
        self.controllers_with_workers = [c for c in controllers if c.has_workers]
        self.workers_per_controller = workers_per_controller
        self.worker_restart_period = worker_restart_period

        self._lock = threading.Lock()
        self._started = False
        self._workers: list[threading.Thread] = []

        scope.on_cancel(self._shut_down_queues)

    # -- state ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        with self._lock:
            return self._started

    @property
    def stopped(self) -> bool:
        return self.scope.cancelled

    @property
    def worker_count(self) -> int:
        """Number of worker threads currently alive."""
        with self._lock:
            return sum(1 for t in self._workers if t.is_alive())

    # -- lifecycle --------------------------------------------------------------

    def run(self) -> bool:
        """Start the informers and worker threads.  Returns immediately.

        Returns ``False`` without doing anything if the group was already
        started or has been stopped.
        """
        with self._lock:
            if self._started:
                return False
            if self.scope.cancelled:
                logger.warning("controller_group_already_stopped", namespace=self.namespace)
                return False

            self.kube_informer_factory.start(self.scope)
            self.pgo_informer_factory.start(self.scope)

            for controller in self.controllers_with_workers:
                for slot in range(self.workers_per_controller):
                    t = threading.Thread(
                        target=until,
                        args=(controller.run_worker, self.worker_restart_period, self.scope),
                        daemon=True,
                        name=f"worker-{controller.kind.plural}-{self.namespace}-{slot}",
                    )
                    self._workers.append(t)
                    t.start()

            self._started = True

        logger.debug("controller_group_running", namespace=self.namespace, workers=len(self._workers))
        return True

    def stop(self, wait: bool = False, timeout: float | None = None) -> bool:
        """Cancel the group's scope.

        With ``wait=False`` this only signals the workers and informers.  With
        ``wait=True`` it also blocks until they have exited or *timeout*
        passes, and returns whether everything stopped in time.
        """
        self.scope.cancel()
        if wait:
            return self.join(timeout)
        return True

    def join(self, timeout: float | None = None) -> bool:
        """Wait for in-flight keys to finish and for worker and informer threads to exit.

        Returns ``False`` if anything was still running when *timeout* passed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        def remaining() -> float | None:
            return None if deadline is None else max(0.0, deadline - time.monotonic())

        drained = True
        for controller in self.controllers_with_workers:
            drained = controller.queue.shut_down_with_drain(remaining()) and drained

        with self._lock:
            workers = list(self._workers)
        for t in workers:
            t.join(remaining())
        informers_done = self.kube_informer_factory.join(remaining())
        informers_done = self.pgo_informer_factory.join(remaining()) and informers_done

        alive = [t for t in workers if t.is_alive()]
        if alive or not drained or not informers_done:
            logger.warning(
                "controller_group_join_timeout",
                namespace=self.namespace,
                workers_alive=len(alive),
                queues_drained=drained,
                informers_stopped=informers_done,
            )
            return False
        return True

    def wait_for_cache_sync(self, timeout: float | None = None) -> bool:
        """Block until every informer of the group has completed its initial list.

        Returns ``False`` if *timeout* passed or the group was stopped first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        synced = self.kube_informer_factory.wait_for_cache_sync(self.scope, timeout)
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        synced.update(self.pgo_informer_factory.wait_for_cache_sync(self.scope, remaining))

        pending = sorted(kind for kind, done in synced.items() if not done)
        if pending:
            logger.warning("controller_group_cache_not_synced", namespace=self.namespace, pending=pending)
            return False
        logger.debug("controller_group_cache_synced", namespace=self.namespace)
        return True

    def _shut_down_queues(self) -> None:
        for controller in self.controllers_with_workers:
            controller.queue.shut_down()

    def __repr__(self) -> str:
        return f"ControllerGroup(namespace={self.namespace!r}, started={self._started}, stopped={self.stopped})"


class ControllerManager:
    """Registry of controller groups, one per namespace.

    Parameters
    ----------
    namespaces:
        Namespaces to create controller groups for right away.
    settings:
        Controller configuration.  Defaults to ``ControllerSettings()``.
    clients_factory:
        Builds the Kubernetes clients of a new group.  Must raise
        :class:`~pgo_controller.kubeapi.ClientSetupError` on failure.

    Raises
    ------
    ClientSetupError
        If the group for any of *namespaces* cannot be built.
    """

    def __init__(
        self,
        namespaces: Iterable[str] = (),
        settings: ControllerSettings | None = None,
        clients_factory: ClientsFactory = new_controller_clients,
    ) -> None:
        self.settings = settings or ControllerSettings()
        self._clients_factory = clients_factory
        self._scope = Scope("controller-manager")
        self._lock = threading.Lock()
        self._groups: dict[str, ControllerGroup] = {}

        namespaces = list(namespaces)
        try:
            for ns in namespaces:
                self.add_controller_group(ns)
        except Exception:
            logger.exception("controller_manager_init_failed", namespaces=namespaces)
            self._scope.cancel()
            raise

        logger.debug("controller_manager_created", namespaces=namespaces)

    # -- registry ---------------------------------------------------------------

    @property
    def namespaces(self) -> list[str]:
        with self._lock:
            return list(self._groups)

    def __contains__(self, namespace: object) -> bool:
        with self._lock:
            return namespace in self._groups

    def __len__(self) -> int:
        with self._lock:
            return len(self._groups)

    def get_group(self, namespace: str) -> ControllerGroup:
        with self._lock:
            return self._lookup(namespace)

    def _lookup(self, namespace: str) -> ControllerGroup:
        group = self._groups.get(namespace)
        if group is None:
            raise NamespaceNotFoundError(namespace)
        return group

    # -- add --------------------------------------------------------------------

    def add_controller_group(self, namespace: str) -> bool:
        """Create the controller group for *namespace* unless it already exists.

        Each group receives its own clients and two informer factories (custom
        resources and pods/jobs) shared by its controllers for pgclusters,
        pgreplicas, pgtasks, pgpolicies, pods and jobs.  Returns ``True`` if a
        group was created.
        """
        with self._lock:
            if namespace in self._groups:
                return False

            clients = self._clients_factory(self.settings)
            self._groups[namespace] = self._new_group(namespace, clients)

        logger.debug("controller_group_added", namespace=namespace)
        return True

    def _new_group(self, namespace: str, clients: ControllerClients) -> ControllerGroup:
        settings = self.settings
        pgo_informer_factory = CustomResourceInformerFactory(
            clients.custom_api,
            namespace,
            group=settings.crd_group,
            version=settings.crd_version,
            resync_period=settings.informer_resync_seconds,
            watch_timeout=settings.watch_timeout_seconds,
        )
        kube_informer_factory = KubeInformerFactory(
            clients.core_api,
            clients.batch_api,
            namespace,
            resync_period=settings.informer_resync_seconds,
            watch_timeout=settings.watch_timeout_seconds,
        )

        def new_queue(plural: str) -> RateLimitingQueue:
            limiter = default_controller_rate_limiter(
                base_delay=settings.rate_limit_base_delay,
                max_delay=settings.rate_limit_max_delay,
                qps=settings.rate_limit_qps,
                burst=settings.rate_limit_burst,
            )
            return RateLimitingQueue(limiter, name=f"{plural}-{namespace}")

        pgtask_controller = PgtaskController(
            clients,
            pgo_informer_factory.pgtasks(),
            new_queue("pgtasks"),
            max_retries=settings.max_retries,
        )
        pgcluster_controller = PgclusterController(
            clients,
            pgo_informer_factory.pgclusters(),
            new_queue("pgclusters"),
            max_retries=settings.max_retries,
        )
        pgreplica_controller = PgreplicaController(
            clients,
            pgo_informer_factory.pgreplicas(),
            new_queue("pgreplicas"),
            cluster_informer=pgo_informer_factory.pgclusters(),
            max_retries=settings.max_retries,
        )
        pgpolicy_controller = PgpolicyController(clients, pgo_informer_factory.pgpolicies())
        pod_controller = PodController(clients, kube_informer_factory.pods())
        job_controller = JobController(
            clients,
            kube_informer_factory.jobs(),
            task_kind=pgo_informer_factory.pgtasks().kind,
        )

        controllers: list[ResourceController] = [
            pgtask_controller,
            pgcluster_controller,
            pgreplica_controller,
            pgpolicy_controller,
            pod_controller,
            job_controller,
        ]
        for controller in controllers:
            controller.add_event_handler()

        return ControllerGroup(
            namespace,
            self._scope.child(f"controller-group-{namespace}"),
            pgo_informer_factory,
            kube_informer_factory,
            controllers,
            workers_per_controller=settings.workers_per_controller,
            worker_restart_period=settings.worker_restart_period,
        )

    def add_and_run_controller_group(self, namespace: str) -> None:
        """Add the controller group for *namespace* and run it right away."""
        self.add_controller_group(namespace)
        self.run_group(namespace)

    # -- run --------------------------------------------------------------------

    def run_all(self) -> None:
        """Run every registered controller group."""
        with self._lock:
            groups = list(self._groups.values())
        for group in groups:
            group.run()
        logger.debug("controller_groups_running", count=len(groups))

    def run_group(self, namespace: str) -> bool:
        """Run the controller group for *namespace*.  See :meth:`ControllerGroup.run`."""
        group = self.get_group(namespace)
        started = group.run()
        if started:
            logger.info("controller_group_started", namespace=namespace)
        return started

    # -- stop -------------------------------------------------------------------

    def stop_all(self) -> None:
        """Stop every controller group by cancelling the root scope."""
        with self._lock:
            self._scope.cancel()
        logger.debug("controller_groups_stopped")

    def stop_group(self, namespace: str, wait: bool = False, timeout: float | None = None) -> bool:
        """Stop the controller group for *namespace*.  See :meth:`ControllerGroup.stop`."""
        group = self.get_group(namespace)
        stopped = group.stop(wait=wait, timeout=timeout)
        logger.info("controller_group_stopped", namespace=namespace)
        return stopped

    # -- remove -----------------------------------------------------------------

    def remove_all(self, wait: bool = False, timeout: float | None = None) -> None:
        """Stop and remove every controller group.

        The root scope is replaced afterwards, so groups added later run
        normally.
        """
        with self._lock:
            self._scope.cancel()
            groups = list(self._groups.values())
            self._groups = {}
            self._scope = Scope("controller-manager")

        if wait:
            deadline = None if timeout is None else time.monotonic() + timeout
            for group in groups:
                group.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        logger.debug("controller_groups_removed", count=len(groups))

    def remove_group(self, namespace: str, wait: bool = False, timeout: float | None = None) -> None:
        """Stop the controller group for *namespace*, then remove it from the registry."""
        with self._lock:
            group = self._lookup(namespace)
            group.stop()
            del self._groups[namespace]

        if wait:
            group.join(timeout)
        logger.info("controller_group_removed", namespace=namespace)
