"""
TradeLedger Trading Logs Package
Payload validation, event processors and the trading-log service.
"""

from .events import EventProcessingStore
from .processors import ProcessingResult, build_processors
from .service import TradingLogService
from .validators import TradingLogValidator

__all__ = [
    "EventProcessingStore",
    "ProcessingResult",
    "TradingLogService",
    "TradingLogValidator",
    "build_processors",
]
