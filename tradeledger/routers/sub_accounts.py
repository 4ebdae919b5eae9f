"""
Sub-Account Router

Sub-account CRUD and manual balance adjustments.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..dependencies.auth import Caller, require_permission
from ..dependencies.services import get_sub_account_service
from ..schemas import (
    BalanceUpdateResponse,
    CreateSubAccountRequest,
    SubAccountResponse,
    UpdateBalanceRequest,
    UpdateSubAccountRequest,
)
from ..services.sub_accounts import SubAccountService

router = APIRouter(prefix="/sub-accounts", tags=["Sub-Accounts"])


@router.post("", response_model=SubAccountResponse, status_code=status.HTTP_201_CREATED)
async def create_sub_account(
    request: CreateSubAccountRequest,
    caller: Caller = Depends(require_permission("write")),
    service: SubAccountService = Depends(get_sub_account_service),
):
    return await service.create_sub_account(caller.user_id, request)


@router.get("", response_model=List[SubAccountResponse])
async def list_sub_accounts(
    platform_id: Optional[uuid.UUID] = Query(default=None),
    caller: Caller = Depends(require_permission("read")),
    service: SubAccountService = Depends(get_sub_account_service),
):
    return await service.list_sub_accounts(caller.user_id, platform_id)


@router.get("/symbol/{symbol}", response_model=List[SubAccountResponse])
async def list_by_symbol(
    symbol: str,
    caller: Caller = Depends(require_permission("read")),
    service: SubAccountService = Depends(get_sub_account_service),
):
    return await service.list_by_symbol(caller.user_id, symbol)


@router.get("/{sub_account_id}", response_model=SubAccountResponse)
async def get_sub_account(
    sub_account_id: uuid.UUID,
    caller: Caller = Depends(require_permission("read")),
    service: SubAccountService = Depends(get_sub_account_service),
):
    return await service.get_sub_account(caller.user_id, sub_account_id)


@router.put("/{sub_account_id}", response_model=SubAccountResponse)
async def update_sub_account(
    sub_account_id: uuid.UUID,
    request: UpdateSubAccountRequest,
    caller: Caller = Depends(require_permission("write")),
    service: SubAccountService = Depends(get_sub_account_service),
):
    return await service.update_sub_account(caller.user_id, sub_account_id, request)


@router.put("/{sub_account_id}/balance", response_model=BalanceUpdateResponse)
async def update_balance(
    sub_account_id: uuid.UUID,
    request: UpdateBalanceRequest,
    caller: Caller = Depends(require_permission("trade")),
    service: SubAccountService = Depends(get_sub_account_service),
):
    return await service.update_balance(caller.user_id, sub_account_id, request)


@router.delete("/{sub_account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_sub_account(
    sub_account_id: uuid.UUID,
    caller: Caller = Depends(require_permission("write")),
    service: SubAccountService = Depends(get_sub_account_service),
):
    await service.delete_sub_account(caller.user_id, sub_account_id)
