"""
Configuration Loader (``batch_config.loader``).

Responsibility
--------------
Loads a YAML job configuration file and parses it into the frozen
``batch_config.schema`` dataclasses.  Runtime callers go through
``batch_config.get_job_settings()``, which also validates.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  parsed document, for configuration identity in trace logs.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown mode / reader strategy, non-numeric values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from batch_engine.domain.types import ExecutionMode, ReaderStrategy

from batch_config.schema import JobSettings, StepSettings


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return value


def parse_step_settings(data: dict[str, Any]) -> StepSettings:
    """Parse a StepSettings from the ``step`` mapping."""
    chunk_size = _as_int(data["chunk_size"], "chunk_size")
    timeout = data.get("chunk_timeout_seconds")
    return StepSettings(
        step_name=data["name"],
        chunk_size=chunk_size,
        page_size=_as_int(data.get("page_size", chunk_size), "page_size"),
        mode=ExecutionMode(data.get("mode", ExecutionMode.PARTITIONED.value)),
        reader_strategy=ReaderStrategy(
            data.get("reader_strategy", ReaderStrategy.FROZEN_PAGE.value)
        ),
        grid_size=_as_int(data.get("grid_size", 1), "grid_size"),
        max_workers=_as_int(data.get("max_workers", 4), "max_workers"),
        throttle_limit=_as_int(data.get("throttle_limit", 1), "throttle_limit"),
        chunk_timeout_seconds=float(timeout) if timeout is not None else None,
    )


def parse_job_settings(data: dict[str, Any]) -> JobSettings:
    """Parse a JobSettings from a whole configuration document."""
    job = data["job"]
    return JobSettings(
        job_name=job["name"],
        step=parse_step_settings(data["step"]),
        prevent_restart=bool(job.get("prevent_restart", True)),
        inactive_after_years=_as_int(
            job.get("inactive_after_years", 1), "inactive_after_years",
        ),
        checksum=compute_checksum(data),
    )


def load_job_settings(path: Path) -> JobSettings:
    """Load and parse one configuration file (no validation)."""
    return parse_job_settings(load_yaml_file(path))
