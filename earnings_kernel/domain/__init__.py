"""Pure domain helpers for the earnings kernel (no I/O)."""

from earnings_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
