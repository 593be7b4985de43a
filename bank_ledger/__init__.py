"""
Bank Core Ledger

Account and transaction ledger with guarded state transitions: balance
mutation, PIN authorization with lockout counters, reversible transactions
and loan lifecycle metadata. All money is handled as Decimal.
"""

__version__ = "1.0.0"
