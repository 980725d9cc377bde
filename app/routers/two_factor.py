"""Two-Factor API Router

Enrollment and management of the caller's own second factor:
- POST /api/v1/2fa/enable            - start (or restart) TOTP enrollment
- POST /api/v1/2fa/validate          - confirm enrollment, returns backup codes
- POST /api/v1/2fa/disable           - turn TOTP off with a TOTP or backup code
- POST /api/v1/2fa/regenerate-codes  - replace backup codes
- GET  /api/v1/2fa/codes-remaining   - count of unused backup codes
- POST /api/v1/2fa/email             - opt in/out of email codes
- POST /api/v1/2fa/send-email-code   - mail a code before login (no auth)
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from app.middleware.token_auth import get_call_context
from app.models.two_factor import (
    BackupCodesResponse,
    CodesRemainingResponse,
    EmailTwoFactorRequest,
    EnableResponse,
    SendEmailCodeRequest,
    TwoFactorCodeRequest,
)
from app.services.container import TwoFactorServices, get_two_factor_services
from app.services.totp import generate_qr_code_data_uri
from app.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/2fa", tags=["two-factor"])


@router.post("/enable", response_model=EnableResponse)
async def enable_totp(
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> EnableResponse:
    """Start TOTP enrollment.

    Returns the pending secret, its otpauth URL and a scannable QR code. The
    current TOTP setup (if any) keeps working until `/validate` succeeds.
    """
    context = get_call_context(request)
    pending = await services.enrollment.begin_enrollment(context.user_id)

    return EnableResponse(
        secret=pending.secret,
        url=pending.url,
        qr_code_data_uri=generate_qr_code_data_uri(pending.url),
    )


@router.post("/validate", response_model=BackupCodesResponse)
async def validate_temp_token(
    body: TwoFactorCodeRequest,
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> BackupCodesResponse:
    """Confirm enrollment with a code from the new authenticator entry.

    Other login sessions of the user are logged out; the calling session
    stays.
    """
    context = get_call_context(request)
    batch = await services.enrollment.confirm_enrollment(
        context.user_id,
        body.code,
        auth_token=context.connection.auth_token if context.connection else None,
    )
    return BackupCodesResponse(codes=batch.plaintext_codes)


@router.post("/disable")
async def disable_totp(
    body: TwoFactorCodeRequest,
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> Dict[str, Any]:
    context = get_call_context(request)
    disabled = await services.enrollment.disable(context.user_id, body.code)
    return {"success": disabled}


@router.post("/regenerate-codes", response_model=BackupCodesResponse)
async def regenerate_codes(
    body: TwoFactorCodeRequest,
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> BackupCodesResponse:
    """Replace all backup codes. `codes` is null when the code was wrong."""
    context = get_call_context(request)
    batch = await services.enrollment.regenerate_backup_codes(
        context.user_id, body.code
    )
    return BackupCodesResponse(codes=batch.plaintext_codes if batch else None)


@router.get("/codes-remaining", response_model=CodesRemainingResponse)
async def codes_remaining(
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> CodesRemainingResponse:
    context = get_call_context(request)
    remaining = await services.enrollment.codes_remaining(context.user_id)
    return CodesRemainingResponse(remaining=remaining)


@router.post("/email")
async def set_email_two_factor(
    body: EmailTwoFactorRequest,
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> Dict[str, Any]:
    context = get_call_context(request)
    enabled = await services.enrollment.set_email_two_factor(
        context.user_id, body.enabled
    )
    return {"enabled": enabled}


@router.post("/send-email-code")
async def send_email_code(
    body: SendEmailCodeRequest,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> Dict[str, Any]:
    """Mail a login code.

    Always answers the same way so the endpoint cannot be used to find out
    which accounts exist or use email codes.
    """
    user = await services.users.get_user_by_email_or_username(body.email_or_username)
    if user is not None and await services.email_check.is_enabled(user):
        await services.email_check.send_email_code(user)
    else:
        logger.debug("Email code not sent: no eligible account")

    return {"success": True}
