"""Health Check Endpoints"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from typing import Dict, Any, Union

from app.services.container import TwoFactorServices, get_two_factor_services
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)

HEALTH_CHECK_USER_ID = "_health_check"


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> Dict[str, Any]:
    """
    Basic health check endpoint.
    Bypasses authentication for load balancer health checks.

    Returns:
        200 OK with basic status
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": services.settings.app_name,
    }


@router.get("/ready", status_code=status.HTTP_200_OK, response_model=None)
async def readiness_check(
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> Union[Dict[str, Any], JSONResponse]:
    """
    Readiness check with dependency validation.
    Reads from the second-factor and session stores.

    Returns:
        200 OK if all dependencies are healthy
        503 Service Unavailable if any dependency fails
    """
    checks = {"secret_store": False, "session_store": False}

    try:
        await services.store.get(HEALTH_CHECK_USER_ID)
        checks["secret_store"] = True
    except Exception as e:
        logger.error("Secret store check failed", error=str(e))

    try:
        await services.sessions.find_user_login_tokens(HEALTH_CHECK_USER_ID)
        checks["session_store"] = True
    except Exception as e:
        logger.error("Session store check failed", error=str(e))

    all_healthy = all(checks.values())

    response = {
        "status": "ready" if all_healthy else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "storage_backend": services.settings.storage_backend,
        "checks": checks,
    }

    if not all_healthy:
        logger.warning("Readiness check failed", checks=checks)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=response
        )

    return response
