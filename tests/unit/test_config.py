"""
Unit tests for configuration loading.
"""

import pytest
import yaml

from core.config import (
    OrchestratorSettings,
    load_config,
    load_training_defaults,
    merge_configs,
)
from core.constants import DEFAULT_TRAINING_CONFIG


def write_yaml(data, path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


class TestYaml:
    """Test YAML helpers."""

    def test_load_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "cfg.yaml"
        write_yaml({"hpc": {"timeout_seconds": 3.0}}, path)
        assert load_config(str(path)) == {"hpc": {"timeout_seconds": 3.0}}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_merge_is_recursive(self):
        merged = merge_configs({"a": 1, "b": {"c": 2, "d": 3}}, {"b": {"d": 4}, "e": 5})
        assert merged == {"a": 1, "b": {"c": 2, "d": 4}, "e": 5}


class TestOrchestratorSettings:
    """Test settings construction and overrides."""

    def test_sections_flattened(self):
        settings = OrchestratorSettings.from_dict({
            "store": {"backend": "memory", "max_retries": 5},
            "hpc": {"base_url": "https://hpc/api", "timeout_seconds": 2.5},
            "reconcile": {"workers": 8, "embedded": False},
            "subscriber_buffer_size": 32,
            "unknown_section": {"x": 1},
        })
        assert settings.store_backend == "memory"
        assert settings.store_max_retries == 5
        assert settings.hpc_base_url == "https://hpc/api"
        assert settings.hpc_timeout_seconds == 2.5
        assert settings.reconcile_workers == 8
        assert settings.reconcile_embedded is False
        assert settings.subscriber_buffer_size == 32

    def test_environment_overrides_yaml(self, tmp_path):
        path = tmp_path / "orchestrator.yaml"
        write_yaml({"reconcile": {"workers": 2}, "hpc": {"base_url": "https://yaml"}}, path)

        settings = OrchestratorSettings.load(str(path), environ={
            "RECONCILE_WORKERS": "6",
            "HPC_BASE_URL": "https://env",
            "RECONCILE_EMBEDDED": "no",
            "CORS_ORIGINS": "http://a, http://b",
        })
        assert settings.reconcile_workers == 6
        assert settings.hpc_base_url == "https://env"
        assert settings.reconcile_embedded is False
        assert settings.cors_origins == ["http://a", "http://b"]

    def test_invalid_env_value_ignored(self, tmp_path):
        settings = OrchestratorSettings.load(str(tmp_path / "absent.yaml"), environ={
            "RECONCILE_WORKERS": "lots",
            "RECONCILE_EMBEDDED": "maybe",
        })
        assert settings.reconcile_workers == OrchestratorSettings().reconcile_workers
        assert settings.reconcile_embedded is True

    def test_empty_base_url_means_not_configured(self, tmp_path):
        settings = OrchestratorSettings.load(str(tmp_path / "absent.yaml"), environ={"HPC_BASE_URL": ""})
        assert settings.hpc_base_url is None

    def test_round_trip_through_dict(self):
        settings = OrchestratorSettings(hpc_base_url="https://hpc/api", reconcile_workers=3)
        data = settings.to_dict()
        assert data["reconcile_workers"] == 3
        assert OrchestratorSettings(**data) == settings


class TestTrainingDefaults:
    """Test default hyperparameter loading."""

    def test_builtin_fallback(self, tmp_path):
        assert load_training_defaults(str(tmp_path / "absent.yaml")) == DEFAULT_TRAINING_CONFIG

    def test_file_overrides_builtins(self, tmp_path):
        path = tmp_path / "training.yaml"
        write_yaml({"training": {"epochs": 7}}, path)
        defaults = load_training_defaults(str(path))
        assert defaults["epochs"] == 7
        assert defaults["batch_size"] == DEFAULT_TRAINING_CONFIG["batch_size"]
