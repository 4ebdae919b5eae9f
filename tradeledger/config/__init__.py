"""
TradeLedger Configuration Package
"""
