"""Security middleware for FastAPI - session validation and user context."""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from api.base import error_json, ErrorCodes
from identity.exceptions import SessionExpiredError, SessionRevokedError
from identity.session import SessionManager
from utils.user_context import set_current_user_id, clear_current_user_id

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_token"


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that validates session and sets user context.

    For protected routes:
    1. Extracts session token from the 'session_token' cookie
    2. Validates session (expiry, account state, session_version)
    3. Sets user_id and user in request.state and the user context
    4. Clears context after request completes

    Public paths bypass authentication entirely.
    """

    PUBLIC_PATHS = [
        "/auth/login",
        "/auth/forgot-password",
        "/auth/reset-password",
        "/auth/logout",
        "/auth/invite/",
        "/health",
        "/docs",
        "/openapi.json",
    ]

    def __init__(self, app, session_manager: SessionManager):
        super().__init__(app)
        self._session_manager = session_manager

    def _is_public_path(self, path: str) -> bool:
        for public_path in self.PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path):
                return True
        return False

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if self._is_public_path(path):
            return await call_next(request)

        session_token = request.cookies.get(SESSION_COOKIE)
        if not session_token:
            return error_json(401, ErrorCodes.NOT_AUTHENTICATED, "Authentication required")

        try:
            session, user = await self._session_manager.validate_session(session_token)
        except SessionExpiredError:
            return error_json(401, ErrorCodes.SESSION_EXPIRED, "Session has expired")
        except SessionRevokedError:
            return error_json(401, ErrorCodes.SESSION_REVOKED, "Please sign in again")

        set_current_user_id(session.user_id)
        request.state.user_id = session.user_id
        request.state.user = user
        request.state.session = session

        try:
            return await call_next(request)
        finally:
            clear_current_user_id()
