"""
Loan Engine

Loan lifecycle and amortization engine: origination, approval, disbursement,
repayment, lateness and default, with Decimal financial math and a
hash-chained audit trail.
"""

__version__ = "1.0.0"
