"""Method API Router

POST /api/v1/method/{name} invokes a method registered on the method
pipeline. A second factor for gated methods can be sent in the body
(`two_factor_code`, `two_factor_method`), as the legacy trailing
`{"twoFactorCode", "twoFactorMethod"}` parameter, or as x-2fa-* headers.

`2fa:resetTOTP` is limited to the user IDs in `two_factor_admin_users`.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.middleware.method_pipeline import MethodNotFoundError
from app.middleware.token_auth import get_call_context
from app.middleware.two_factor_required import CallContext
from app.models.two_factor import MethodCallRequest, TwoFactorMethod, TwoFactorPayload
from app.services.container import TwoFactorServices, get_two_factor_services
from app.services.errors import NotAuthorizedError
from app.services.session_store import PERSONAL_ACCESS_TOKEN, hash_login_token
from app.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["methods"])


def register_default_methods(services: TwoFactorServices) -> None:
    """Register the built-in methods on the services' pipeline."""
    pipeline = services.pipeline
    sessions = services.sessions
    store = services.store

    @pipeline.method("2fa:status")
    async def two_factor_status(context: CallContext) -> Dict[str, Any]:
        record = await store.get_or_default(context.user_id)
        return {
            "totp": record.enabled,
            "email": record.email_enabled,
            "pending_enrollment": record.has_pending_enrollment,
        }

    @pipeline.method(
        "personalAccessTokens:generate",
        interceptors=[services.two_factor_required(disable_remember_me=True)],
    )
    async def generate_personal_access_token(
        context: CallContext, token_name: str = ""
    ) -> Dict[str, Any]:
        token = await sessions.insert_login_token(
            context.user_id, token_type=PERSONAL_ACCESS_TOKEN
        )
        logger.log_security_event(
            "personal_access_token_created", user_id=context.user_id, token_name=token_name
        )
        return {"token": token}

    @pipeline.method(
        "personalAccessTokens:remove",
        interceptors=[services.two_factor_required()],
    )
    async def remove_personal_access_token(
        context: CallContext, token: str
    ) -> Dict[str, Any]:
        removed = await sessions.remove_login_token(
            context.user_id, hash_login_token(token)
        )
        return {"removed": removed}

    async def require_admin(invocation, call_next):
        if invocation.context.user_id not in services.settings.two_factor_admin_user_ids:
            logger.log_security_event(
                "totp_reset_denied", user_id=invocation.context.user_id, success=False
            )
            raise NotAuthorizedError("Not allowed to reset two-factor authentication")
        return await call_next(invocation)

    @pipeline.method(
        "2fa:resetTOTP",
        interceptors=[require_admin, services.two_factor_required()],
    )
    async def reset_totp(
        context: CallContext, user_id: str, notify_user: bool = False
    ) -> Dict[str, Any]:
        reset = await services.enrollment.reset_totp(user_id, notify_user=notify_user)
        logger.log_security_event(
            "totp_reset_by_admin", user_id=user_id, success=reset, admin_id=context.user_id
        )
        return {"reset": reset}


@router.post("/method/{name}")
async def call_method(
    name: str,
    body: MethodCallRequest,
    request: Request,
    services: TwoFactorServices = Depends(get_two_factor_services),
) -> Dict[str, Any]:
    context = get_call_context(request)

    two_factor = None
    if body.two_factor_code:
        two_factor = TwoFactorPayload(
            code=body.two_factor_code,
            method=body.two_factor_method or TwoFactorMethod.TOTP.value,
        )

    try:
        result = await services.pipeline.call(
            name, context, body.params, two_factor=two_factor
        )
    except MethodNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Method '{name}' not found",
        )
    except TypeError as e:
        logger.warning("Bad method arguments", method=name, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid arguments for method '{name}'",
        )

    return {"result": result}
