"""
Pure domain helpers.

Nothing here touches the ORM or the database.  The clock is the one
sanctioned boundary for time.
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
