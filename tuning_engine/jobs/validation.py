"""
Submission validation.

Checks a JobSpec before anything is written or sent to the backend:
base model is known, config keys are recognized and within range.
"""

from typing import Any, Dict, Iterable, List, Optional

from core.constants import BASE_MODELS, CONFIG_RANGES
from tuning_engine.jobs.errors import ValidationError
from tuning_engine.jobs.models import JobSpec


def _check_type(key: str, value: Any, expected: type) -> Optional[str]:
    # bool is a subclass of int; reject it explicitly
    if isinstance(value, bool):
        return f"'{key}' must be a {expected.__name__}"
    if expected is float:
        if not isinstance(value, (int, float)):
            return f"'{key}' must be a number"
    elif not isinstance(value, expected):
        return f"'{key}' must be an {expected.__name__}"
    return None


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate training config keys and ranges.

    Args:
        config: Hyperparameter mapping

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not isinstance(config, dict):
        return ["'config' must be a mapping"]

    for key in sorted(config):
        if key not in CONFIG_RANGES:
            errors.append(f"Unknown config key '{key}'")

    for key, (expected, minimum, exclusive) in CONFIG_RANGES.items():
        if key not in config or config[key] is None:
            continue
        value = config[key]
        type_error = _check_type(key, value, expected)
        if type_error:
            errors.append(type_error)
            continue
        if exclusive and not value > minimum:
            errors.append(f"'{key}' must be > {minimum}")
        elif not exclusive and value < minimum:
            errors.append(f"'{key}' must be >= {minimum}")

    size = config.get("chunk_size")
    overlap = config.get("chunk_overlap")
    if (
        isinstance(size, int) and isinstance(overlap, int)
        and not isinstance(size, bool) and not isinstance(overlap, bool)
        and overlap >= size
    ):
        errors.append("'chunk_overlap' must be smaller than 'chunk_size'")

    return errors


def validate_spec(spec: JobSpec, known_models: Optional[Iterable[str]] = None) -> None:
    """
    Validate a submission spec.

    Raises:
        ValidationError: with every problem found, before any side effect
    """
    errors = []
    models = set(known_models) if known_models is not None else set(BASE_MODELS)

    if not spec.owner:
        errors.append("'owner' is required")
    if not spec.base_model:
        errors.append("'base_model' is required")
    elif spec.base_model not in models:
        errors.append(
            f"Unknown base model '{spec.base_model}'. Must be one of: {sorted(models)}"
        )
    if spec.corpus_ref is not None and not isinstance(spec.corpus_ref, str):
        errors.append("'corpus_ref' must be a string")

    errors.extend(validate_config(spec.config))

    if errors:
        raise ValidationError(f"Invalid job spec: {'; '.join(errors)}", errors)
