"""
TradeLedger Utilities
"""
