"""Tests for the resource controllers (unit-level, mocking the Kubernetes API)."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client import ApiException
from structlog.testing import capture_logs

from pgo_controller.controllers.base import QueueController
from pgo_controller.controllers.job import JobController, job_outcome
from pgo_controller.controllers.pgcluster import PgclusterController
from pgo_controller.controllers.pgpolicy import PgpolicyController
from pgo_controller.controllers.pgreplica import ClusterNotReadyError, PgreplicaController
from pgo_controller.controllers.pgtask import PgtaskController
from pgo_controller.controllers.pod import PodController
from pgo_controller.informer import SharedInformer
from pgo_controller.kubeapi import ControllerClients
from pgo_controller.models import JOBS, PGCLUSTERS, PGPOLICIES, PGREPLICAS, PGTASKS, PODS
from pgo_controller.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue


def _clients() -> ControllerClients:
    return ControllerClients(
        api_client=MagicMock(),
        custom_api=MagicMock(),
        core_api=MagicMock(),
        batch_api=MagicMock(),
    )


def _informer(kind, *objects) -> SharedInformer:
    informer = SharedInformer(kind, MagicMock(), "db")
    informer._replace(list(objects), "1")
    return informer


def _cr(name: str, state: str | None = None, spec: dict | None = None, rv: str = "1") -> dict:
    obj = {"metadata": {"name": name, "namespace": "db", "resourceVersion": rv}, "spec": spec or {}}
    if state is not None:
        obj["status"] = {"state": state}
    return obj


class RecordingLimiter(ItemExponentialFailureRateLimiter):
    def __init__(self) -> None:
        super().__init__(base_delay=0.001, max_delay=0.02)
        self.delays: list[float] = []

    def when(self, item):
        delay = super().when(item)
        self.delays.append(delay)
        return delay


class ScriptedController(QueueController):
    """Fails the first ``failures`` attempts for every key, then succeeds."""

    def __init__(self, *args, failures: int = 0, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.attempts: list[str] = []

    def sync_handler(self, key: str) -> None:
        self.attempts.append(key)
        if len(self.attempts) <= self.failures:
            raise RuntimeError("transient")


def _scripted(failures: int = 0, max_retries: int = 5) -> ScriptedController:
    queue = RateLimitingQueue(RecordingLimiter())
    return ScriptedController(
        _clients(),
        _informer(PGCLUSTERS),
        queue,
        max_retries=max_retries,
        failures=failures,
    )


class TestQueueControllerEnqueue:
    def test_notifications_enqueue_keys_not_objects(self) -> None:
        controller = _scripted()
        controller.add_event_handler()

        controller.informer._handle_event({"type": "ADDED", "object": _cr("a")})

        assert controller.queue.get(timeout=1) == ("db/a", False)
        controller.queue.shut_down()

    def test_repeated_updates_collapse(self) -> None:
        controller = _scripted()
        controller.add_event_handler()

        for rv in ("1", "2", "3"):
            controller.informer._handle_event({"type": "MODIFIED", "object": _cr("a", rv=rv)})

        assert len(controller.queue) == 1
        controller.queue.shut_down()

    def test_delete_enqueues_key(self) -> None:
        controller = _scripted()
        controller.add_event_handler()
        controller.informer._handle_event({"type": "ADDED", "object": _cr("a")})
        controller.queue.get(timeout=1)
        controller.queue.done("db/a")

        controller.informer._handle_event({"type": "DELETED", "object": _cr("a")})

        assert len(controller.queue) == 1
        controller.queue.shut_down()

    def test_unkeyable_object_is_ignored(self) -> None:
        controller = _scripted()
        controller.enqueue({"metadata": {}})
        assert len(controller.queue) == 0
        controller.queue.shut_down()

    def test_capability_flags(self) -> None:
        assert QueueController.has_workers is True
        assert PgclusterController.has_workers is True
        assert PodController.has_workers is False
        assert JobController.has_workers is False
        assert PgpolicyController.has_workers is False


class TestQueueControllerWorker:
    def test_success_forgets_key(self) -> None:
        controller = _scripted()
        controller.queue.add("db/a")

        assert controller.process_next_work_item() is True

        assert controller.attempts == ["db/a"]
        assert controller.queue.num_requeues("db/a") == 0
        assert len(controller.queue) == 0
        controller.queue.shut_down()

    def test_retries_with_growing_backoff_then_succeeds(self) -> None:
        controller = _scripted(failures=3, max_retries=5)
        controller.queue.add("db/a")

        for _ in range(4):
            assert controller.process_next_work_item() is True

        assert controller.attempts == ["db/a"] * 4
        delays = controller.queue.rate_limiter.delays
        assert len(delays) == 3
        assert delays == sorted(delays)
        assert controller.queue.num_requeues("db/a") == 0
        controller.queue.shut_down()

    def test_exhausted_retries_drop_key(self) -> None:
        controller = _scripted(failures=100, max_retries=2)
        controller.queue.add("db/a")

        with capture_logs() as logs:
            for _ in range(3):
                controller.process_next_work_item()

        assert len(controller.attempts) == 3
        assert controller.queue.num_requeues("db/a") == 0
        assert controller.queue.get(timeout=0.1) == (None, False)
        dropped = [entry for entry in logs if entry["event"] == "work_item_dropped"]
        assert len(dropped) == 1
        assert dropped[0]["key"] == "db/a"
        controller.queue.shut_down()

    def test_failure_of_one_key_does_not_block_another(self) -> None:
        controller = _scripted(failures=1, max_retries=5)
        controller.queue.add("db/a")
        controller.queue.add("db/b")

        controller.process_next_work_item()
        controller.process_next_work_item()

        assert controller.attempts == ["db/a", "db/b"]
        controller.queue.shut_down()

    def test_run_worker_drains_then_exits_on_shutdown(self) -> None:
        controller = _scripted()
        controller.queue.add("db/a")
        controller.queue.add("db/b")
        controller.queue.shut_down()

        t = threading.Thread(target=controller.run_worker)
        t.start()
        t.join(timeout=5)

        assert not t.is_alive()
        assert controller.attempts == ["db/a", "db/b"]


class TestAcknowledgingControllers:
    def test_pgcluster_marks_processed(self) -> None:
        clients = _clients()
        controller = PgclusterController(clients, _informer(PGCLUSTERS, _cr("hippo")), RateLimitingQueue())

        controller.sync_handler("db/hippo")

        clients.custom_api.patch_namespaced_custom_object.assert_called_once_with(
            group="crunchydata.com",
            version="v1",
            namespace="db",
            plural="pgclusters",
            name="hippo",
            body={"status": {"state": "processed", "message": "cluster accepted"}},
        )
        controller.queue.shut_down()

    def test_already_processed_is_skipped(self) -> None:
        clients = _clients()
        informer = _informer(PGCLUSTERS, _cr("hippo", state="processed"))
        controller = PgclusterController(clients, informer, RateLimitingQueue())

        controller.sync_handler("db/hippo")

        clients.custom_api.patch_namespaced_custom_object.assert_not_called()
        controller.queue.shut_down()

    def test_missing_object_is_skipped(self) -> None:
        clients = _clients()
        controller = PgclusterController(clients, _informer(PGCLUSTERS), RateLimitingQueue())

        controller.sync_handler("db/gone")

        clients.custom_api.patch_namespaced_custom_object.assert_not_called()
        controller.queue.shut_down()

    def test_api_error_propagates_for_retry(self) -> None:
        clients = _clients()
        clients.custom_api.patch_namespaced_custom_object.side_effect = ApiException(status=500)
        controller = PgclusterController(clients, _informer(PGCLUSTERS, _cr("hippo")), RateLimitingQueue())

        with pytest.raises(ApiException):
            controller.sync_handler("db/hippo")
        controller.queue.shut_down()

    @pytest.mark.parametrize("state", ["completed", "failed", "processed"])
    def test_finished_pgtask_is_left_alone(self, state: str) -> None:
        clients = _clients()
        controller = PgtaskController(clients, _informer(PGTASKS, _cr("backup", state=state)), RateLimitingQueue())

        controller.sync_handler("db/backup")

        clients.custom_api.patch_namespaced_custom_object.assert_not_called()
        controller.queue.shut_down()


class TestPgreplicaController:
    def _controller(self, clusters, replicas) -> tuple[PgreplicaController, ControllerClients]:
        clients = _clients()
        controller = PgreplicaController(
            clients,
            _informer(PGREPLICAS, *replicas),
            RateLimitingQueue(),
            cluster_informer=_informer(PGCLUSTERS, *clusters),
        )
        return controller, clients

    def test_waits_for_cluster(self) -> None:
        controller, clients = self._controller([], [_cr("r1", spec={"clusterName": "hippo"})])

        with pytest.raises(ClusterNotReadyError):
            controller.sync_handler("db/r1")

        clients.custom_api.patch_namespaced_custom_object.assert_not_called()
        controller.queue.shut_down()

    def test_unprocessed_cluster_is_not_ready(self) -> None:
        controller, _ = self._controller([_cr("hippo")], [_cr("r1", spec={"clusterName": "hippo"})])
        with pytest.raises(ClusterNotReadyError):
            controller.sync_handler("db/r1")
        controller.queue.shut_down()

    def test_missing_cluster_name(self) -> None:
        controller, _ = self._controller([], [_cr("r1")])
        with pytest.raises(ClusterNotReadyError):
            controller.sync_handler("db/r1")
        controller.queue.shut_down()

    def test_processed_cluster_lets_replica_through(self) -> None:
        controller, clients = self._controller(
            [_cr("hippo", state="processed")],
            [_cr("r1", spec={"clusterName": "hippo"})],
        )

        controller.sync_handler("db/r1")

        _, kwargs = clients.custom_api.patch_namespaced_custom_object.call_args
        assert kwargs["plural"] == "pgreplicas"
        assert kwargs["name"] == "r1"
        controller.queue.shut_down()

    def test_cluster_change_requeues_its_replicas(self) -> None:
        controller, _ = self._controller(
            [_cr("hippo")],
            [_cr("r1", spec={"clusterName": "hippo"}), _cr("r2", spec={"clusterName": "other"})],
        )
        controller.add_event_handler()
        # Drain the replay of existing replicas and clusters.
        while len(controller.queue):
            key, _ = controller.queue.get()
            controller.queue.done(key)

        controller.cluster_informer._handle_event(
            {"type": "MODIFIED", "object": _cr("hippo", state="processed", rv="2")}
        )

        assert controller.queue.get(timeout=1) == ("db/r1", False)
        assert len(controller.queue) == 0
        controller.queue.shut_down()


class TestPgpolicyController:
    def test_add_marks_processed(self) -> None:
        clients = _clients()
        controller = PgpolicyController(clients, _informer(PGPOLICIES))

        controller.on_add(_cr("audit"))

        _, kwargs = clients.custom_api.patch_namespaced_custom_object.call_args
        assert kwargs["plural"] == "pgpolicies"
        assert kwargs["body"]["status"]["state"] == "processed"

    def test_processed_policy_is_skipped(self) -> None:
        clients = _clients()
        controller = PgpolicyController(clients, _informer(PGPOLICIES))
        controller.on_add(_cr("audit", state="processed"))
        clients.custom_api.patch_namespaced_custom_object.assert_not_called()

    def test_api_error_is_logged_not_raised(self) -> None:
        clients = _clients()
        clients.custom_api.patch_namespaced_custom_object.side_effect = ApiException(status=403)
        controller = PgpolicyController(clients, _informer(PGPOLICIES))

        with capture_logs() as logs:
            controller.on_add(_cr("audit"))

        assert any(entry["event"] == "pgpolicy_update_failed" for entry in logs)


def _job(name: str, task: str | None = "backup", succeeded: int | None = None, failed: int | None = None):
    labels = {"pg-task": task} if task else {}
    return client.V1Job(
        metadata=client.V1ObjectMeta(name=name, namespace="db", labels=labels),
        status=client.V1JobStatus(succeeded=succeeded, failed=failed),
    )


class TestJobController:
    def test_job_outcome(self) -> None:
        assert job_outcome(_job("j")) is None
        assert job_outcome(_job("j", succeeded=1)) == "completed"
        assert job_outcome(_job("j", failed=1)) == "failed"
        assert job_outcome({"status": {"succeeded": 1}}) == "completed"
        assert job_outcome({}) is None

    def test_finished_job_updates_task(self) -> None:
        clients = _clients()
        controller = JobController(clients, _informer(JOBS))

        controller.on_update(_job("backup-job"), _job("backup-job", succeeded=1))

        clients.custom_api.patch_namespaced_custom_object.assert_called_once_with(
            group="crunchydata.com",
            version="v1",
            namespace="db",
            plural="pgtasks",
            name="backup",
            body={"status": {"state": "completed", "message": "job backup-job completed"}},
        )

    def test_failed_job_marks_task_failed(self) -> None:
        clients = _clients()
        controller = JobController(clients, _informer(JOBS))
        controller.on_update(_job("backup-job"), _job("backup-job", failed=1))
        _, kwargs = clients.custom_api.patch_namespaced_custom_object.call_args
        assert kwargs["body"]["status"]["state"] == "failed"

    def test_unlabelled_job_is_ignored(self) -> None:
        clients = _clients()
        controller = JobController(clients, _informer(JOBS))
        controller.on_update(_job("j", task=None), _job("j", task=None, succeeded=1))
        clients.custom_api.patch_namespaced_custom_object.assert_not_called()

    def test_job_finished_before_first_list_updates_task(self) -> None:
        clients = _clients()
        informer = SharedInformer(JOBS, MagicMock(), "db")
        JobController(clients, informer).add_event_handler()

        informer._replace([_job("backup-job", succeeded=1), _job("running-job")], "1")

        clients.custom_api.patch_namespaced_custom_object.assert_called_once()
        _, kwargs = clients.custom_api.patch_namespaced_custom_object.call_args
        assert kwargs["name"] == "backup"
        assert kwargs["body"]["status"]["state"] == "completed"

    def test_unchanged_outcome_is_ignored(self) -> None:
        clients = _clients()
        controller = JobController(clients, _informer(JOBS))
        controller.on_update(_job("j", succeeded=1), _job("j", succeeded=1))
        clients.custom_api.patch_namespaced_custom_object.assert_not_called()


def _pod(phase: str, cluster: str | None = "hippo"):
    labels = {"pg-cluster": cluster} if cluster else {}
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name="hippo-0", namespace="db", labels=labels),
        status=client.V1PodStatus(phase=phase),
    )


class TestPodController:
    def test_logs_phase_change(self) -> None:
        controller = PodController(_clients(), _informer(PODS))

        with capture_logs() as logs:
            controller.on_update(_pod("Pending"), _pod("Running"))

        changes = [entry for entry in logs if entry["event"] == "pod_phase_changed"]
        assert len(changes) == 1
        assert changes[0]["new_phase"] == "Running"
        assert changes[0]["cluster"] == "hippo"

    def test_ignores_same_phase_and_foreign_pods(self) -> None:
        controller = PodController(_clients(), _informer(PODS))

        with capture_logs() as logs:
            controller.on_update(_pod("Running"), _pod("Running"))
            controller.on_update(_pod("Pending", cluster=None), _pod("Running", cluster=None))

        assert logs == []
