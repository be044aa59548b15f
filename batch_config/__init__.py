"""
batch_config -- single public entrypoint for job configuration.

Responsibility:
    Provides the way to obtain job settings at runtime through
    ``get_job_settings()``.  Settings come from YAML configuration sets
    under ``batch_config/sets/`` (one ``<job_name>.yaml`` per job), are
    parsed into frozen dataclasses and validated before they are returned.

Architecture position:
    Configuration.  Sits above ``batch_kernel`` and ``batch_engine``
    (whose enums it parses into) and below the job packages.  Neither
    the kernel nor the engine imports from ``batch_config``.

Failure modes:
    - ``FileNotFoundError`` -- no configuration set for the job.
    - ``InvalidJobConfigurationError`` -- the set does not parse or fails
      validation.

Audit relevance:
    Every successful ``get_job_settings()`` call emits a
    ``job_config_loaded`` log entry with the job name, checksum and the
    step tunables.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from batch_kernel.exceptions import InvalidJobConfigurationError
from batch_kernel.logging_config import get_logger

from batch_config.loader import load_job_settings
from batch_config.schema import JobSettings, StepSettings
from batch_config.validator import ConfigValidationResult, validate_job_settings

__all__ = [
    "ConfigValidationResult",
    "JobSettings",
    "StepSettings",
    "get_job_settings",
    "validate_job_settings",
]

_logger = get_logger("config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_job_settings(job_name: str, config_dir: Path | None = None) -> JobSettings:
    """Load, validate and return the settings of ``job_name``.

    Args:
        job_name: Name of the job; selects ``<config_dir>/<job_name>.yaml``.
        config_dir: Override path to the configuration sets directory.
            Defaults to batch_config/sets/.

    Raises:
        FileNotFoundError: If no configuration file exists for the job.
        InvalidJobConfigurationError: If parsing or validation fails.
    """
    sets_dir = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{job_name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"No configuration set for job '{job_name}': {path}")

    try:
        settings = load_job_settings(path)
    except (KeyError, ValueError, yaml.YAMLError) as exc:
        raise InvalidJobConfigurationError(
            job_name, [f"{path.name}: {exc!r}"],
        ) from exc

    validation = validate_job_settings(settings)
    for warning in validation.warnings:
        _logger.warning(
            "job_config_warning", extra={"job_name": job_name, "warning": warning},
        )
    if not validation.is_valid:
        raise InvalidJobConfigurationError(job_name, validation.errors)

    step = settings.step
    _logger.info(
        "job_config_loaded",
        extra={
            "job_name": settings.job_name,
            "checksum": settings.checksum,
            "step_name": step.step_name,
            "chunk_size": step.chunk_size,
            "mode": step.mode.value,
            "reader_strategy": step.reader_strategy.value,
            "grid_size": step.grid_size,
            "max_workers": step.max_workers,
            "throttle_limit": step.throttle_limit,
        },
    )
    return settings
