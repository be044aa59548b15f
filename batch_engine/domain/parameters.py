"""
batch_engine.domain.parameters -- Job parameter declarations and validation.

ZERO I/O.

A job declares the parameters it needs as a tuple of ``ParameterSpec``.
``validate_parameters()`` runs before any run record exists; a missing or
mistyped parameter is a startup fault, never a per-record fault.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from batch_kernel.exceptions import (
    InvalidJobParameterError,
    MissingJobParameterError,
)


@dataclass(frozen=True)
class ParameterSpec:
    """Declaration of one named job parameter.

    ``default`` may be a value or a zero-argument callable evaluated at
    validation time (e.g. a clock read).  ``check`` returns an error
    message, or None when the value is acceptable.
    """

    name: str
    type: type | tuple[type, ...] = object
    required: bool = True
    default: Any = None
    check: Callable[[Any], str | None] | None = None
    identifying: bool = True  # Contributes to the job key


def validate_parameters(
    job_name: str,
    specs: tuple[ParameterSpec, ...],
    supplied: Mapping[str, Any],
) -> Mapping[str, Any]:
    """Validate ``supplied`` against ``specs`` and return the effective bag.

    Unknown parameters are passed through unchanged.

    Raises:
        MissingJobParameterError: A required parameter is absent or None.
        InvalidJobParameterError: A parameter has the wrong type or fails
            its ``check``.
    """
    effective: dict[str, Any] = dict(supplied)

    for spec in specs:
        value = effective.get(spec.name)
        if value is None:
            if spec.required:
                raise MissingJobParameterError(job_name, spec.name)
            if spec.default is None:
                continue
            value = spec.default() if callable(spec.default) else spec.default
            effective[spec.name] = value

        # bool is an int subclass; reject it where an int is declared
        if isinstance(value, bool) and spec.type is int:
            raise InvalidJobParameterError(
                job_name, spec.name, "expected int, got bool",
            )
        if not isinstance(value, spec.type):
            expected = (
                spec.type.__name__
                if isinstance(spec.type, type)
                else " | ".join(t.__name__ for t in spec.type)
            )
            raise InvalidJobParameterError(
                job_name,
                spec.name,
                f"expected {expected}, got {type(value).__name__}",
            )
        if spec.check is not None:
            problem = spec.check(value)
            if problem:
                raise InvalidJobParameterError(job_name, spec.name, problem)

    return MappingProxyType(effective)


def identifying_parameters(
    specs: tuple[ParameterSpec, ...],
    parameters: Mapping[str, Any],
) -> dict[str, Any]:
    """Subset of ``parameters`` that defines the job instance key."""
    non_identifying = {s.name for s in specs if not s.identifying}
    return {k: v for k, v in parameters.items() if k not in non_identifying}
