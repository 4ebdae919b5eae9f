"""
TradeLedger Database Package
"""
