"""
Constants and default values for the platform.
"""

from pathlib import Path

# ============================================================================
# Directory Paths
# ============================================================================

PROJECT_ROOT = Path(__file__).parent.parent
CONFIGS_DIR = PROJECT_ROOT / 'configs'
LOGS_DIR = PROJECT_ROOT / 'logs'

DEFAULT_CONFIGS_DIR = CONFIGS_DIR / 'defaults'
ORCHESTRATOR_CONFIG_PATH = DEFAULT_CONFIGS_DIR / 'orchestrator.yaml'
TRAINING_DEFAULTS_PATH = DEFAULT_CONFIGS_DIR / 'training.yaml'

# ============================================================================
# Base Models
# ============================================================================

MISTRAL_7B = 'mistral-7b'
LLAMA3_8B = 'llama3-8b'
PHI3_MINI = 'phi3-mini'

BASE_MODELS = {
    MISTRAL_7B: {
        'name': 'Mistral 7B',
        'params': '7B',
        'provider': 'Mistral AI',
        'vram': '~16 GB (4-bit)',
        'recommended': True,
    },
    LLAMA3_8B: {
        'name': 'LLaMA 3 8B',
        'params': '8B',
        'provider': 'Meta',
        'vram': '~18 GB (4-bit)',
    },
    PHI3_MINI: {
        'name': 'Phi-3 Mini',
        'params': '3.8B',
        'provider': 'Microsoft',
        'vram': '~8 GB (4-bit)',
    },
}

# ============================================================================
# Training Hyperparameters
# ============================================================================

# Used when configs/defaults/training.yaml is missing
DEFAULT_TRAINING_CONFIG = {
    'learning_rate': 2e-4,
    'batch_size': 8,
    'epochs': 3,
    'lora_rank': 16,
    'lora_alpha': 32,
    'warmup_steps': 100,
    'weight_decay': 0.01,
    'max_seq_length': 2048,
}

# key -> (type, minimum, exclusive minimum)
CONFIG_RANGES = {
    'learning_rate': (float, 0.0, True),
    'batch_size': (int, 1, False),
    'epochs': (int, 1, False),
    'lora_rank': (int, 1, False),
    'lora_alpha': (int, 1, False),
    'warmup_steps': (int, 0, False),
    'weight_decay': (float, 0.0, False),
    'max_seq_length': (int, 1, False),
    'chunk_size': (int, 1, False),
    'chunk_overlap': (int, 0, False),
    'gpu_count': (int, 1, False),
}

# ============================================================================
# Orchestrator Defaults
# ============================================================================

DEFAULT_REDIS_URL = 'redis://localhost:6379'
DEFAULT_HPC_TIMEOUT_SECONDS = 10.0
DEFAULT_RECONCILE_INTERVAL_SECONDS = 5.0
DEFAULT_RECONCILE_WORKERS = 4
DEFAULT_SUBSCRIBER_BUFFER_SIZE = 256
