"""Configuration management for the PostgreSQL operator controller manager.

Settings are loaded from (highest priority wins):
1. Environment variables  (``PGO_*``)
2. ``NAMESPACE`` for the watched namespace list, when ``PGO_NAMESPACES`` is unset
3. Defaults
"""

from __future__ import annotations

import os
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

from pgo_controller.models import CRD_GROUP, CRD_VERSION


class ControllerSettings(BaseSettings):
    """All configurable knobs for the controller manager.

    Values can be set via environment variables with the ``PGO_`` prefix,
    e.g. ``PGO_NAMESPACES``, ``PGO_MAX_RETRIES``, etc.
    """

    # Namespaces ----------------------------------------------------------------
    namespaces: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Namespaces to manage, one controller group each. Comma-separated via env var.",
    )

    # Workers -------------------------------------------------------------------
    workers_per_controller: int = Field(
        default=1,
        ge=1,
        description="Worker threads launched for every queue-bearing controller.",
    )
    worker_restart_period: float = Field(
        default=1.0,
        gt=0,
        description="Minimum seconds between two runs of a worker loop.",
    )
    max_retries: int = Field(
        default=5,
        ge=0,
        description="Failed attempts allowed for a key before it is dropped.",
    )

    # Rate limiting -------------------------------------------------------------
    rate_limit_base_delay: float = Field(
        default=0.005,
        gt=0,
        description="Backoff after the first failure of a key, in seconds. Doubles per failure.",
    )
    rate_limit_max_delay: float = Field(
        default=1000.0,
        gt=0,
        description="Upper bound for the per-key backoff, in seconds.",
    )
    rate_limit_qps: float = Field(
        default=10.0,
        gt=0,
        description="Overall requeue rate shared by every key of a queue.",
    )
    rate_limit_burst: int = Field(
        default=100,
        ge=1,
        description="Token bucket size for the overall requeue rate.",
    )

    # Informers -----------------------------------------------------------------
    informer_resync_seconds: float = Field(
        default=0,
        ge=0,
        description="Periodic full resync interval. 0 relies solely on watch notifications.",
    )
    watch_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="Server-side timeout of a single watch request.",
    )
    cache_sync_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait at startup for every informer to complete its initial list.",
    )

    # Kubernetes ----------------------------------------------------------------
    crd_group: str = Field(default=CRD_GROUP, description="API group of the custom resources.")
    crd_version: str = Field(default=CRD_VERSION, description="API version of the custom resources.")
    kubeconfig: str | None = Field(
        default=None,
        description="Explicit kubeconfig path. In-cluster config is tried first when unset.",
    )

    # Logging -------------------------------------------------------------------
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR).",
    )
    log_format: str = Field(
        default="json",
        description="Log format: 'json' (structured) or 'console' (human-readable).",
    )

    # ---- Validators -----------------------------------------------------------

    @field_validator("namespaces", mode="before")
    @classmethod
    def _parse_comma_separated(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [ns.strip() for ns in v.split(",") if ns.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, v: str) -> str:
        return v.upper()

    # ---- Pydantic-settings config ---------------------------------------------

    model_config = {
        "env_prefix": "PGO_",
        "case_sensitive": False,
    }


def load_settings() -> ControllerSettings:
    """Load and validate controller settings from the environment.

    Returns
    -------
    ControllerSettings
        Fully-resolved configuration.

    Raises
    ------
    pydantic.ValidationError
        If a setting is invalid.
    """
    # The deployment manifests export the watched namespaces as NAMESPACE
    if "PGO_NAMESPACES" not in os.environ and "NAMESPACE" in os.environ:
        os.environ["PGO_NAMESPACES"] = os.environ["NAMESPACE"]

    return ControllerSettings()
