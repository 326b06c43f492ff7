"""Kubernetes client construction for controller groups."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from kubernetes import client, config

from pgo_controller.config import ControllerSettings

logger = structlog.get_logger(__name__)


class ClientSetupError(Exception):
    """Raised when Kubernetes clients cannot be built (bad credentials, no config, ...)."""


@dataclass
class ControllerClients:
    """The clients shared by every controller of one controller group.

    ``custom_api`` talks to the custom resource API group, ``core_api`` and
    ``batch_api`` to built-in pods and jobs.
    """

    api_client: client.ApiClient
    custom_api: client.CustomObjectsApi
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api


def load_k8s_config(kubeconfig: str | None = None) -> client.Configuration:
    """Load Kubernetes configuration (in-cluster preferred, fallback to kubeconfig)."""
    configuration = client.Configuration()
    if kubeconfig is None:
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.debug("k8s_config_loaded", source="in-cluster")
            return configuration
        except config.ConfigException:
            pass
    config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
    logger.debug("k8s_config_loaded", source="kubeconfig", path=kubeconfig)
    return configuration


def new_controller_clients(settings: ControllerSettings) -> ControllerClients:
    """Build a fresh set of clients for one controller group.

    Raises
    ------
    ClientSetupError
        If no usable configuration or credentials could be loaded.
    """
    try:
        configuration = load_k8s_config(settings.kubeconfig)
    except (config.ConfigException, OSError) as exc:
        raise ClientSetupError(f"unable to load Kubernetes configuration: {exc}") from exc

    api_client = client.ApiClient(configuration)
    return ControllerClients(
        api_client=api_client,
        custom_api=client.CustomObjectsApi(api_client),
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
    )
