"""Tests for settings loading."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from pgo_controller.config import ControllerSettings, load_settings


class TestControllerSettings:
    def test_defaults(self) -> None:
        settings = ControllerSettings()
        assert settings.namespaces == []
        assert settings.workers_per_controller == 1
        assert settings.max_retries == 5
        assert settings.informer_resync_seconds == 0
        assert settings.crd_group == "crunchydata.com"
        assert settings.log_level == "INFO"

    def test_comma_separated_namespaces(self) -> None:
        settings = ControllerSettings(namespaces="a, b,,c ")
        assert settings.namespaces == ["a", "b", "c"]

    def test_namespaces_from_env(self) -> None:
        with patch.dict(os.environ, {"PGO_NAMESPACES": "db1,db2", "PGO_WORKERS_PER_CONTROLLER": "3"}):
            settings = ControllerSettings()
        assert settings.namespaces == ["db1", "db2"]
        assert settings.workers_per_controller == 3

    def test_log_level_is_normalised(self) -> None:
        assert ControllerSettings(log_level="debug").log_level == "DEBUG"

    def test_rejects_zero_workers(self) -> None:
        with pytest.raises(ValidationError):
            ControllerSettings(workers_per_controller=0)


class TestLoadSettings:
    def test_falls_back_to_namespace_env(self) -> None:
        with patch.dict(os.environ, {"NAMESPACE": "pgo,hippo"}):
            os.environ.pop("PGO_NAMESPACES", None)
            settings = load_settings()
        assert settings.namespaces == ["pgo", "hippo"]

    def test_prefixed_variable_wins(self) -> None:
        with patch.dict(os.environ, {"NAMESPACE": "pgo", "PGO_NAMESPACES": "hippo"}):
            settings = load_settings()
        assert settings.namespaces == ["hippo"]
