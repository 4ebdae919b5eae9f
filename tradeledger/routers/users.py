"""
User Router

Current-user profile and stats, plus admin user management.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status

from ..dependencies.auth import Caller, require_admin, require_permission
from ..dependencies.services import get_user_service
from ..schemas import Page, UpdateUserRequest, UserResponse, UserStatsResponse
from ..services.users import UserService

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user(
    caller: Caller = Depends(require_permission("read")),
    service: UserService = Depends(get_user_service),
):
    return await service.get_current_user(caller.user_id)


@router.put("/me", response_model=UserResponse)
async def update_current_user(
    request: UpdateUserRequest,
    caller: Caller = Depends(require_permission("write")),
    service: UserService = Depends(get_user_service),
):
    return await service.update_current_user(caller.user_id, request)


@router.get("/me/stats", response_model=UserStatsResponse)
async def get_user_stats(
    caller: Caller = Depends(require_permission("read")),
    service: UserService = Depends(get_user_service),
):
    return await service.get_user_stats(caller.user_id)


# Admin

@router.get("", response_model=Page[UserResponse])
async def list_users(
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(require_admin),
    service: UserService = Depends(get_user_service),
):
    return await service.list_users(limit, offset)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: uuid.UUID,
    caller: Caller = Depends(require_admin),
    service: UserService = Depends(get_user_service),
):
    return await service.get_user_by_id(user_id)


@router.put("/{user_id}/disable", status_code=status.HTTP_204_NO_CONTENT)
async def disable_user(
    user_id: uuid.UUID,
    caller: Caller = Depends(require_admin),
    service: UserService = Depends(get_user_service),
):
    await service.disable_user(user_id)
