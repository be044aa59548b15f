"""Pure kernel domain types (zero I/O)."""

from batch_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
