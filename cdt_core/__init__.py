"""
CDT Core

Lifecycle and ledger engine for fixed-term deposit certificates (CDTs):
the certificate state machine, a hash-chained audit trail, daily-compounded
interest with Decimal math, and a cache layer kept consistent with the store.
"""

__version__ = "1.0.0"
