"""
Trading Log Router

Trading log submission and ownership-scoped queries.
"""

import uuid
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from ..dependencies.auth import Caller, require_permission
from ..dependencies.services import get_trading_log_service
from ..schemas import CreateTradingLogRequest, Page, TradingLogFilter, TradingLogResponse
from ..trading_logs.service import TradingLogService

router = APIRouter(prefix="/trading-logs", tags=["Trading Logs"])


@router.post("", response_model=TradingLogResponse, status_code=status.HTTP_201_CREATED)
async def create_trading_log(
    request: CreateTradingLogRequest,
    caller: Caller = Depends(require_permission("trade")),
    service: TradingLogService = Depends(get_trading_log_service),
):
    """
    Record a trading log.

    Business types (long, short, stop_loss, deposit, withdraw) move balances
    and emit transactions atomically with the log.
    """
    return await service.create_trading_log(caller.user_id, request)


@router.get("", response_model=Page[TradingLogResponse])
async def list_trading_logs(
    filters: Annotated[TradingLogFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.list_user_logs(caller.user_id, filters)


@router.get("/time-range", response_model=Page[TradingLogResponse])
async def list_by_time_range(
    start_time: datetime,
    end_time: datetime,
    filters: Annotated[TradingLogFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.list_logs_by_time_range(caller.user_id, start_time, end_time, filters)


@router.get("/sub-account/{sub_account_id}", response_model=Page[TradingLogResponse])
async def list_sub_account_logs(
    sub_account_id: uuid.UUID,
    filters: Annotated[TradingLogFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.list_sub_account_logs(caller.user_id, sub_account_id, filters)


@router.get("/platform/{platform_id}", response_model=Page[TradingLogResponse])
async def list_platform_logs(
    platform_id: uuid.UUID,
    filters: Annotated[TradingLogFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.list_platform_logs(caller.user_id, platform_id, filters)


@router.get("/{trading_log_id}", response_model=TradingLogResponse)
async def get_trading_log(
    trading_log_id: uuid.UUID,
    caller: Caller = Depends(require_permission("read")),
    service: TradingLogService = Depends(get_trading_log_service),
):
    return await service.get_trading_log(caller.user_id, trading_log_id)


@router.delete("/{trading_log_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_trading_log(
    trading_log_id: uuid.UUID,
    caller: Caller = Depends(require_permission("write")),
    service: TradingLogService = Depends(get_trading_log_service),
):
    await service.delete_trading_log(caller.user_id, trading_log_id)
