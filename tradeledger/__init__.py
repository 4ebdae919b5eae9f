"""
TradeLedger
Transactional trading-log engine for a personal trading-operations backend.

Users link through OAuth providers, register trading platforms with encrypted
credentials, split each platform into single-symbol sub-accounts, and record
trading logs. Business log types (long, short, stop_loss, deposit, withdraw)
move sub-account balances and emit paired ledger transactions inside one
database transaction.
"""

__version__ = "1.0.0"
__author__ = "TradeLedger"
