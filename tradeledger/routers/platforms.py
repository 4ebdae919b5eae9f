"""
Trading Platform Router

Platform CRUD and owner-only credential access.
"""

import uuid
from typing import List

from fastapi import APIRouter, Depends, status

from ..dependencies.auth import Caller, require_permission
from ..dependencies.services import get_platform_service
from ..schemas import CreatePlatformRequest, PlatformCredentials, PlatformResponse, UpdatePlatformRequest
from ..services.platforms import PlatformService

router = APIRouter(prefix="/platforms", tags=["Trading Platforms"])


@router.post("", response_model=PlatformResponse, status_code=status.HTTP_201_CREATED)
async def create_platform(
    request: CreatePlatformRequest,
    caller: Caller = Depends(require_permission("write")),
    service: PlatformService = Depends(get_platform_service),
):
    return await service.create_platform(caller.user_id, request)


@router.get("", response_model=List[PlatformResponse])
async def list_platforms(
    caller: Caller = Depends(require_permission("read")),
    service: PlatformService = Depends(get_platform_service),
):
    return await service.list_platforms(caller.user_id)


@router.get("/{platform_id}", response_model=PlatformResponse)
async def get_platform(
    platform_id: uuid.UUID,
    caller: Caller = Depends(require_permission("read")),
    service: PlatformService = Depends(get_platform_service),
):
    return await service.get_platform(caller.user_id, platform_id)


@router.put("/{platform_id}", response_model=PlatformResponse)
async def update_platform(
    platform_id: uuid.UUID,
    request: UpdatePlatformRequest,
    caller: Caller = Depends(require_permission("write")),
    service: PlatformService = Depends(get_platform_service),
):
    return await service.update_platform(caller.user_id, platform_id, request)


@router.delete("/{platform_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_platform(
    platform_id: uuid.UUID,
    caller: Caller = Depends(require_permission("write")),
    service: PlatformService = Depends(get_platform_service),
):
    await service.delete_platform(caller.user_id, platform_id)


@router.get("/{platform_id}/credentials", response_model=PlatformCredentials)
async def get_credentials(
    platform_id: uuid.UUID,
    caller: Caller = Depends(require_permission("trade")),
    service: PlatformService = Depends(get_platform_service),
):
    """Decrypted credentials; every access is recorded."""
    return await service.get_credentials(caller.user_id, platform_id)
