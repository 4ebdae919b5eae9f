"""
Authentication Router

OAuth login, callback and token refresh.
"""

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Response

from ..auth.service import AuthService
from ..dependencies.auth import Caller, get_current_caller
from ..dependencies.services import get_auth_service
from ..schemas import AuthResponse, CallbackRequest, LoginRequest, LoginResponse, RefreshRequest

router = APIRouter(prefix="/auth", tags=["Authentication"])

STATE_COOKIE = "oauth_state"
STATE_MAX_AGE = 600


@router.post("/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
):
    """Start an OAuth login; the state is also kept in a short-lived cookie."""
    result = service.initiate_login(request)
    response.set_cookie(
        STATE_COOKIE, result.state, max_age=STATE_MAX_AGE, httponly=True, samesite="lax"
    )
    return result


@router.post("/callback", response_model=AuthResponse)
async def callback(
    request: CallbackRequest,
    response: Response,
    oauth_state: Optional[str] = Cookie(default=None),
    service: AuthService = Depends(get_auth_service),
):
    result = await service.handle_callback(request, oauth_state)
    response.delete_cookie(STATE_COOKIE)
    return result


@router.post("/refresh", response_model=AuthResponse)
async def refresh(request: RefreshRequest, service: AuthService = Depends(get_auth_service)):
    return await service.refresh(request)


@router.post("/logout")
async def logout(response: Response, caller: Caller = Depends(get_current_caller)):
    """Tokens are stateless; clients discard them."""
    response.delete_cookie(STATE_COOKIE)
    return {"message": "logged out"}
