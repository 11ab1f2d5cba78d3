"""Core configuration and utility modules."""

from .config import load_config, merge_configs, OrchestratorSettings
from .logger import setup_logger, get_logger, log_event

__all__ = [
    'load_config',
    'merge_configs',
    'OrchestratorSettings',
    'setup_logger',
    'get_logger',
    'log_event',
]
