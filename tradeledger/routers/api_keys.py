"""
API Key Router

Issue, list, rotate and revoke the caller's API keys. Requires a user
session; API keys cannot manage API keys.
"""

import uuid
from typing import List

from fastapi import APIRouter, Depends, Query, status

from ..api_keys.manager import APIKeyManager
from ..dependencies.auth import Caller, require_session
from ..dependencies.services import get_api_key_manager
from ..schemas import APIKeyCreatedResponse, APIKeyResponse, CreateAPIKeyRequest

router = APIRouter(prefix="/api-keys", tags=["API Keys"])


@router.post("", response_model=APIKeyCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    request: CreateAPIKeyRequest,
    caller: Caller = Depends(require_session),
    manager: APIKeyManager = Depends(get_api_key_manager),
):
    """The plaintext key is in this response only."""
    api_key = await manager.create_key(caller.user_id, request.name, request.permissions, request.expires_at)
    return manager.to_created_response(api_key)


@router.get("", response_model=List[APIKeyResponse])
async def list_api_keys(
    include_revoked: bool = Query(default=False),
    caller: Caller = Depends(require_session),
    manager: APIKeyManager = Depends(get_api_key_manager),
):
    keys = await manager.list_keys(caller.user_id, include_revoked)
    return [manager.to_response(k) for k in keys]


@router.post("/{key_id}/rotate", response_model=APIKeyCreatedResponse)
async def rotate_api_key(
    key_id: uuid.UUID,
    caller: Caller = Depends(require_session),
    manager: APIKeyManager = Depends(get_api_key_manager),
):
    api_key = await manager.rotate_key(caller.user_id, key_id)
    return manager.to_created_response(api_key)


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: uuid.UUID,
    caller: Caller = Depends(require_session),
    manager: APIKeyManager = Depends(get_api_key_manager),
):
    await manager.revoke_key(caller.user_id, key_id)
