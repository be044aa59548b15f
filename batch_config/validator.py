"""
Configuration Validator (``batch_config.validator``).

Checks a parsed ``JobSettings`` for structural errors before any job is
built from it.  Errors block the job; warnings are logged and allowed.

Checks performed
----------------
1. Names are non-empty.
2. ``chunk_size``, ``page_size``, ``grid_size`` and ``max_workers`` are >= 1.
3. ``throttle_limit`` is within 1..max_workers (warning when it equals
   ``max_workers``: no pool headroom is left).
4. ``multi_threaded`` mode uses the ``snapshot`` reader strategy.
5. ``chunk_timeout_seconds`` is positive when set.
6. ``inactive_after_years`` is >= 1.
7. ``chunk_size`` outside 10..15 is a warning.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from batch_engine.domain.types import ExecutionMode, ReaderStrategy

from batch_config.schema import JobSettings

RECOMMENDED_CHUNK_RANGE = (10, 15)


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    ``is_valid`` returns ``True`` only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_job_settings(settings: JobSettings) -> ConfigValidationResult:
    """Run every check and collect the findings."""
    result = ConfigValidationResult()
    step = settings.step

    if not settings.job_name:
        result.add_error("job name is empty")
    if not step.step_name:
        result.add_error("step name is empty")

    for name in ("chunk_size", "page_size", "grid_size", "max_workers"):
        value = getattr(step, name)
        if value < 1:
            result.add_error(f"{name} must be >= 1, got {value}")

    if step.max_workers >= 1:
        if not 1 <= step.throttle_limit <= step.max_workers:
            result.add_error(
                f"throttle_limit must be between 1 and max_workers "
                f"({step.max_workers}), got {step.throttle_limit}"
            )
        elif step.throttle_limit == step.max_workers:
            result.add_warning(
                f"throttle_limit equals max_workers ({step.max_workers}); "
                f"the pool has no headroom"
            )

    if (
        step.mode == ExecutionMode.MULTI_THREADED
        and step.reader_strategy != ReaderStrategy.SNAPSHOT
    ):
        result.add_error(
            "multi_threaded mode requires reader_strategy 'snapshot', "
            f"got '{step.reader_strategy.value}'"
        )

    if step.chunk_timeout_seconds is not None and step.chunk_timeout_seconds <= 0:
        result.add_error(
            f"chunk_timeout_seconds must be > 0, got {step.chunk_timeout_seconds}"
        )

    if settings.inactive_after_years < 1:
        result.add_error(
            f"inactive_after_years must be >= 1, got {settings.inactive_after_years}"
        )

    low, high = RECOMMENDED_CHUNK_RANGE
    if step.chunk_size >= 1 and not low <= step.chunk_size <= high:
        result.add_warning(
            f"chunk_size {step.chunk_size} is outside the usual {low}..{high}"
        )

    return result
