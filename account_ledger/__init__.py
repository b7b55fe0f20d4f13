"""
Account Ledger

Authoritative ledger for customer account balances, status and transfer
limits, with atomic debits that never leave a balance negative or touch a
frozen or closed account.
"""

__version__ = "1.0.0"
