"""
Pure domain layer.

Contains the injectable clock.  No ORM, database, or I/O dependencies
beyond SystemClock.
"""

from farmers_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
