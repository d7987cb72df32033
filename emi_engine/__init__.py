"""
EMI Engine

Loan amortization and repayment tracking for a personal-finance dashboard:
fixed-EMI schedules, an append-only payment ledger, derived loan and lending
status, and per-user overviews, all on Decimal money.
"""

__version__ = "1.0.0"
