"""
Billing Kernel

Persistence, transactions and audit for the catering billing engine:
- Stable line item ordering with optimistic concurrency
- Payment milestone schedules reconciled to the cent
- Append-only, hash-chained change records for customer facts
"""

__version__ = "0.1.0"
