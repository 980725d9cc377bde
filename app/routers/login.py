"""Login API Router

POST /api/v1/login accepts either password credentials or a resume token,
plus an optional second-factor payload:

    {"user": "alice", "password": "<sha256 hex>", "totp": {"code": "123456"}}
    {"totp": {"code": "123456", "login": {"user": "alice", "password": "..."}}}
    {"resume": "<login token>"}

The second factor may also be sent as x-2fa-code / x-2fa-method headers.
"""

from fastapi import APIRouter, Depends, Request

from app.middleware.token_auth import get_connection_info
from app.models.two_factor import LoginRequest, LoginResponse
from app.services.container import TwoFactorServices, get_two_factor_services
from app.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["login"])


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> LoginResponse:
    """Log in and receive a login token for X-User-Id / X-Auth-Token.

    Raises:
        login-failed (401): Unknown user or wrong password
        totp-required (401): The account has a second factor; retry with code
        totp-invalid (401): The second-factor code was wrong
        totp-max-attempts (429): Too many wrong codes
    """
    options = body.model_dump(exclude_none=True)
    attempt, token = await services.login_gate.login(
        options, connection=get_connection_info(request)
    )
    return LoginResponse(user_id=attempt.user.user_id, token=token, type=attempt.type)
