"""
Transaction Router

Read-only, ownership-scoped access to ledger transactions.
"""

import uuid
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from ..dependencies.auth import Caller, require_permission
from ..dependencies.services import get_transaction_service
from ..schemas import Page, TransactionFilter, TransactionResponse
from ..services.transactions import TransactionService

router = APIRouter(prefix="/transactions", tags=["Transactions"])


@router.get("", response_model=Page[TransactionResponse])
async def list_transactions(
    filters: Annotated[TransactionFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TransactionService = Depends(get_transaction_service),
):
    return await service.list_user_transactions(caller.user_id, filters)


@router.get("/time-range", response_model=Page[TransactionResponse])
async def list_by_time_range(
    start_time: datetime,
    end_time: datetime,
    filters: Annotated[TransactionFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TransactionService = Depends(get_transaction_service),
):
    return await service.list_by_time_range(caller.user_id, start_time, end_time, filters)


@router.get("/sub-account/{sub_account_id}", response_model=Page[TransactionResponse])
async def list_sub_account_transactions(
    sub_account_id: uuid.UUID,
    filters: Annotated[TransactionFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TransactionService = Depends(get_transaction_service),
):
    return await service.list_sub_account_transactions(caller.user_id, sub_account_id, filters)


@router.get("/platform/{platform_id}", response_model=Page[TransactionResponse])
async def list_platform_transactions(
    platform_id: uuid.UUID,
    filters: Annotated[TransactionFilter, Query()],
    caller: Caller = Depends(require_permission("read")),
    service: TransactionService = Depends(get_transaction_service),
):
    return await service.list_platform_transactions(caller.user_id, platform_id, filters)


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: uuid.UUID,
    caller: Caller = Depends(require_permission("read")),
    service: TransactionService = Depends(get_transaction_service),
):
    return await service.get_transaction(caller.user_id, transaction_id)
