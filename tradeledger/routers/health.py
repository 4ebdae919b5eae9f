"""
Health Router

Liveness and database readiness probes.
"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config.settings import settings
from ..database.connection import check_database_health, get_session_maker
from ..utils.helpers import utc_now

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def health_check(session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker)):
    db_health = await check_database_health(session_maker.kw.get("bind"))
    body = {
        "status": "healthy" if db_health["connected"] else "unhealthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "database": db_health,
    }
    code = status.HTTP_200_OK if db_health["connected"] else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=body)


@router.get("/live")
async def liveness_check() -> dict:
    return {"alive": True, "timestamp": utc_now().isoformat()}


@router.get("/ready")
async def readiness_check(session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker)):
    db_health = await check_database_health(session_maker.kw.get("bind"))
    code = status.HTTP_200_OK if db_health["connected"] else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(
        status_code=code,
        content={"ready": db_health["connected"], "timestamp": utc_now().isoformat()},
    )
