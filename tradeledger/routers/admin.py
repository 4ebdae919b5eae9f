"""
Admin Router

Cross-user transaction and trading-log listings and event maintenance.
"""

from datetime import datetime
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies.auth import Caller, require_admin
from ..dependencies.services import get_trading_log_service, get_transaction_service
from ..schemas import (
    EventProcessingResponse,
    Page,
    PurgeEventsResponse,
    TradingLogFilter,
    TradingLogResponse,
    TransactionFilter,
    TransactionResponse,
)
from ..services.transactions import TransactionService
from ..trading_logs.service import TradingLogService

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/transactions", response_model=Page[TransactionResponse])
async def list_all_transactions(
    start_time: datetime,
    end_time: datetime,
    filters: Annotated[TransactionFilter, Query()],
    caller: Caller = Depends(require_admin),
    service: TransactionService = Depends(get_transaction_service),
):
    return await service.admin_list_by_time_range(start_time, end_time, filters)


@router.get("/trading-logs", response_model=Page[TradingLogResponse])
async def list_all_trading_logs(
    filters: Annotated[TradingLogFilter, Query()],
    caller: Caller = Depends(require_admin),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.admin_list_logs(filters)


@router.get("/events/failed", response_model=List[EventProcessingResponse])
async def list_failed_events(
    limit: int = Query(default=100, ge=1, le=1000),
    caller: Caller = Depends(require_admin),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.list_failed_events(limit)


@router.delete("/events/processed", response_model=PurgeEventsResponse)
async def purge_processed_events(
    older_than: Optional[datetime] = Query(default=None),
    caller: Caller = Depends(require_admin),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.purge_processed_events(older_than)
