"""Login Token Authentication Middleware

Authenticates API calls with the `X-User-Id` / `X-Auth-Token` header pair
issued by `/api/v1/login`. The token is hashed and must belong to the user
named in `X-User-Id`.
"""
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from typing import Optional

from app.config import get_settings
from app.middleware.two_factor_required import CallContext
from app.models.two_factor import ConnectionInfo
from app.services.session_store import SessionStore, hash_login_token
from app.utils.logger import get_logger

logger = get_logger(__name__)

USER_ID_HEADER = "x-user-id"
AUTH_TOKEN_HEADER = "x-auth-token"


class TokenAuthMiddleware:
    """
    ASGI middleware checking login tokens on every non-bypassed path.

    On success `request.state` carries `user_id` and `auth_token`; on
    failure the request ends with 401 before reaching a router.
    """

    def __init__(self, app, sessions: SessionStore, bypass_paths: Optional[list] = None):
        self.app = app
        self.sessions = sessions
        self.bypass_paths = [
            p.rstrip('/') for p in (bypass_paths or get_settings().auth_bypass_paths)
        ]

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)

        if self._should_bypass_auth(request.url.path):
            logger.debug("Bypassing token auth", path=request.url.path)
            await self.app(scope, receive, send)
            return

        user_id = request.headers.get(USER_ID_HEADER)
        auth_token = request.headers.get(AUTH_TOKEN_HEADER)

        if not user_id or not auth_token or not await self._token_belongs_to(user_id, auth_token):
            logger.warning(
                "Rejected unauthenticated request",
                path=request.url.path,
                has_user_id=bool(user_id),
                has_token=bool(auth_token),
            )
            response = JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={
                    "error": "not-authorized",
                    "reason": "You must be logged in to do this.",
                },
            )
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})
        scope["state"]["user_id"] = user_id
        scope["state"]["auth_token"] = auth_token

        await self.app(scope, receive, send)

    def _should_bypass_auth(self, path: str) -> bool:
        """Check if path should bypass authentication"""
        clean_path = path.split('?')[0].rstrip('/')
        return clean_path in self.bypass_paths

    async def _token_belongs_to(self, user_id: str, auth_token: str) -> bool:
        owner = await self.sessions.find_user_id_by_token(hash_login_token(auth_token))
        return owner == user_id


def get_call_context(request: Request) -> CallContext:
    """
    Build the call context for an authenticated request.

    Raises:
        HTTPException 401 if the request was not authenticated
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        logger.error("Attempted to access user context without authentication")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not authenticated",
        )

    return CallContext(
        user_id=user_id,
        connection=get_connection_info(request),
    )


def get_connection_info(request: Request) -> ConnectionInfo:
    return ConnectionInfo(
        client_address=request.client.host if request.client else None,
        http_headers=dict(request.headers),
        auth_token=getattr(request.state, "auth_token", None),
    )
