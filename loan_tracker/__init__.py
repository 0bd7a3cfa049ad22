"""
Loan Tracker

Loan amortization math and transactional loan payment recording, with
Decimal money, hash-chained audit trails and pluggable storage.
"""

__version__ = "1.0.0"
