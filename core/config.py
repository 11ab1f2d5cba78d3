"""
Configuration management utilities.

This module provides functions for loading YAML configuration
files, merging defaults with user overrides, and building the
orchestrator settings from a YAML file plus environment variables.
"""
import copy
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Any, List, Optional

import yaml

from core.constants import (
    BASE_MODELS,
    DEFAULT_HPC_TIMEOUT_SECONDS,
    DEFAULT_RECONCILE_INTERVAL_SECONDS,
    DEFAULT_RECONCILE_WORKERS,
    DEFAULT_REDIS_URL,
    DEFAULT_SUBSCRIBER_BUFFER_SIZE,
    DEFAULT_TRAINING_CONFIG,
    ORCHESTRATOR_CONFIG_PATH,
    TRAINING_DEFAULTS_PATH,
)

logger = logging.getLogger(__name__)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Example:
        >>> config = load_config('configs/defaults/orchestrator.yaml')
        >>> print(config['reconcile']['workers'])
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    logger.info("Loaded config from: %s", config_path)
    return config or {}


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge override config into base config.

    Args:
        base: Base configuration dictionary
        override: Override configuration dictionary

    Returns:
        Merged configuration

    Example:
        >>> base = {'a': 1, 'b': {'c': 2, 'd': 3}}
        >>> override = {'b': {'d': 4}, 'e': 5}
        >>> merged = merge_configs(base, override)
        >>> # Result: {'a': 1, 'b': {'c': 2, 'd': 4}, 'e': 5}
    """
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def _parse_bool(value: str) -> bool:
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def load_training_defaults(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load default training hyperparameters.

    Falls back to the built-in defaults when the YAML file is absent.
    """
    path = Path(path) if path else TRAINING_DEFAULTS_PATH
    if not path.exists():
        return dict(DEFAULT_TRAINING_CONFIG)
    config = load_config(str(path))
    return merge_configs(DEFAULT_TRAINING_CONFIG, config.get('training', {}))


@dataclass
class OrchestratorSettings:
    """
    Runtime settings for the orchestrator, reconciler and API.

    Attributes:
        redis_url: Redis connection URL for the job/metric/log store
        store_backend: "redis" or "memory"
        hpc_base_url: Base URL of the remote compute API (None = not configured)
        hpc_api_key: Bearer credential for the remote compute API
        hpc_timeout_seconds: Per-call timeout for remote calls
        hpc_max_retries: Retries for transient remote failures
        hpc_backoff_seconds: Base backoff between remote retries
        hpc_submit_grace_seconds: Age after which an unconfirmed submission is retried
        reconcile_interval_seconds: Delay between reconciliation ticks
        reconcile_workers: Max concurrent per-job reconciliation tasks
        reconcile_embedded: Run the reconciler inside the API process
        subscriber_buffer_size: Per-subscriber event buffer bound
        store_max_retries: Retries for failed store writes
        store_backoff_seconds: Base backoff between store write retries
        base_models: Known base model ids accepted at submission
        cors_origins: Allowed CORS origins for the API
    """
    redis_url: str = DEFAULT_REDIS_URL
    store_backend: str = "redis"
    hpc_base_url: Optional[str] = None
    hpc_api_key: str = ""
    hpc_timeout_seconds: float = DEFAULT_HPC_TIMEOUT_SECONDS
    hpc_max_retries: int = 2
    hpc_backoff_seconds: float = 0.5
    hpc_submit_grace_seconds: float = 60.0
    reconcile_interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS
    reconcile_workers: int = DEFAULT_RECONCILE_WORKERS
    reconcile_embedded: bool = True
    subscriber_buffer_size: int = DEFAULT_SUBSCRIBER_BUFFER_SIZE
    store_max_retries: int = 3
    store_backoff_seconds: float = 0.2
    base_models: List[str] = field(default_factory=lambda: list(BASE_MODELS))
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    # env var -> (attribute, converter)
    ENV_VARS = {
        "REDIS_URL": ("redis_url", str),
        "STORE_BACKEND": ("store_backend", str),
        "HPC_BASE_URL": ("hpc_base_url", str),
        "HPC_API_KEY": ("hpc_api_key", str),
        "HPC_TIMEOUT_SECONDS": ("hpc_timeout_seconds", float),
        "RECONCILE_INTERVAL_SECONDS": ("reconcile_interval_seconds", float),
        "RECONCILE_WORKERS": ("reconcile_workers", int),
        "RECONCILE_EMBEDDED": ("reconcile_embedded", _parse_bool),
        "SUBSCRIBER_BUFFER_SIZE": ("subscriber_buffer_size", int),
        "CORS_ORIGINS": ("cors_origins", lambda v: [o.strip() for o in v.split(",") if o.strip()]),
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorSettings":
        """Build settings from the flattened sections of orchestrator.yaml."""
        known = set(cls.__dataclass_fields__)
        flat: Dict[str, Any] = {}
        for section, values in (data or {}).items():
            if isinstance(values, dict):
                for key, value in values.items():
                    flat[f"{section}_{key}"] = value
            else:
                flat[section] = values
        unknown = sorted(k for k in flat if k not in known)
        if unknown:
            logger.warning("Ignoring unknown settings: %s", unknown)
        return cls(**{k: v for k, v in flat.items() if k in known})

    @classmethod
    def load(
        cls,
        config_path: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None
    ) -> "OrchestratorSettings":
        """
        Load settings from YAML (if present) and apply environment overrides.

        Args:
            config_path: Optional YAML path (defaults to configs/defaults/orchestrator.yaml)
            environ: Environment mapping (defaults to os.environ)
        """
        path = Path(config_path) if config_path else ORCHESTRATOR_CONFIG_PATH
        settings = cls.from_dict(load_config(str(path))) if path.exists() else cls()

        environ = os.environ if environ is None else environ
        for var, (attr, convert) in cls.ENV_VARS.items():
            value = environ.get(var)
            if value is None or value == "":
                continue
            try:
                setattr(settings, attr, convert(value))
            except ValueError:
                logger.warning("Invalid value for %s: %r (keeping %r)",
                               var, value, getattr(settings, attr))

        if not settings.hpc_base_url:
            settings.hpc_base_url = None
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
