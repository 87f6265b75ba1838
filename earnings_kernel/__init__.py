"""
Earnings Kernel

The durable core of the gig earnings subsystem:
- Per-worker wallet accounts with available and frozen balances
- Append-only wallet transactions with reversal chains
- Order settlement records
- Full auditability via hash chain
"""

__version__ = "0.1.0"
