"""HTTP routes for sign-in, password reset, invites and password change."""

import ipaddress
import logging
from uuid import UUID

from fastapi import APIRouter, Request, Response, Query

from api.base import success_response, error_json, ErrorCodes
from identity.emails import mask_email_address
from identity.interfaces import UserRepository
from identity.invites import InviteService
from identity.password_change import PasswordChangeService
from identity.security_logger import SecurityEvent, SecurityLogger
from identity.security_middleware import SESSION_COOKIE
from identity.service import AuthService
from identity.session import SessionManager
from identity.types import (
    ChangePasswordResendRequest,
    ChangePasswordStartRequest,
    ChangePasswordVerifyRequest,
    CreateUserRequest,
    FailureKind,
    ForgotPasswordRequest,
    InviteSetPasswordRequest,
    InviteTokenRequest,
    InviteVerifyOtpRequest,
    LoginRequest,
    ResetPasswordRequest,
    Session,
    TwoFactorRequest,
    UserRecord,
)
from utils.user_context import get_current_user_id

logger = logging.getLogger(__name__)

_FAILURE_STATUS = {
    FailureKind.VALIDATION: (400, ErrorCodes.VALIDATION_ERROR),
    FailureKind.AUTHENTICATION: (401, ErrorCodes.VERIFICATION_FAILED),
    FailureKind.RATE_LIMITED: (429, ErrorCodes.RATE_LIMITED),
    FailureKind.INFRASTRUCTURE: (503, ErrorCodes.SERVICE_UNAVAILABLE),
}


def _get_client_ip(request: Request) -> str | None:
    """Extract valid IP address from request, or None if invalid."""
    if not request.client:
        return None
    host = request.client.host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return None


def _failure(failure: FailureKind | None, message: str, code: str | None = None):
    status_code, default_code = _FAILURE_STATUS.get(
        failure, (400, ErrorCodes.INVALID_REQUEST)
    )
    return error_json(status_code, code or default_code, message)


def _user_payload(user: UserRecord) -> dict:
    return {
        "id": str(user.id),
        "email": user.email_address,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "is_admin": user.is_admin,
        "use_gravatar": user.use_gravatar,
    }


def _set_session_cookie(response: Response, session: Session) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session.token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=int((session.expires_at - session.created_at).total_seconds()),
    )


def create_identity_router(
    auth_service: AuthService,
    invite_service: InviteService,
    password_change_service: PasswordChangeService,
    session_manager: SessionManager,
    security_logger: SecurityLogger,
    users: UserRepository,
) -> APIRouter:
    """Create identity router with injected services. Mount under /auth."""
    router = APIRouter(tags=["identity"])

    def _signed_in_user(request: Request) -> UserRecord | None:
        return getattr(request.state, "user", None)

    # Sign-in

    @router.post("/login")
    async def login(request: Request, body: LoginRequest):
        """Password step. On success a code is emailed and rid identifies the attempt."""
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")

        result = await auth_service.begin_login(body.email, body.password, ip_address, user_agent)

        if not result.success:
            event = (
                SecurityEvent.LOGIN_RATE_LIMITED
                if result.failure == FailureKind.RATE_LIMITED
                else SecurityEvent.LOGIN_FAILED
            )
            await security_logger.log(
                event,
                email=body.email,
                user_id=result.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"locked_out": result.locked_out, "reason_code": result.reason_code},
            )
            code = (
                ErrorCodes.INVALID_CREDENTIALS
                if result.failure == FailureKind.AUTHENTICATION
                else None
            )
            return _failure(result.failure, result.message, code)

        await security_logger.log(
            SecurityEvent.LOGIN_STARTED,
            email=body.email,
            user_id=result.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return success_response({
            "rid": result.rid,
            "message": result.message,
            "masked_email": mask_email_address(result.email_address),
        })

    @router.post("/login/verify")
    async def verify_login(request: Request, response: Response, body: TwoFactorRequest):
        """Code step. Sets the session cookie on success."""
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")

        result = await auth_service.complete_two_factor_login(
            body.rid, body.email, body.code, ip_address, user_agent
        )
        if not result.success:
            await security_logger.log(
                SecurityEvent.TWO_FACTOR_FAILED,
                email=body.email,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": result.otp_failure.value if result.otp_failure else None},
            )
            return _failure(result.failure, result.message)

        session = await session_manager.create_session(result.user)
        _set_session_cookie(response, session)

        await security_logger.log(
            SecurityEvent.TWO_FACTOR_SUCCEEDED,
            email=result.user.email_address,
            user_id=result.user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await security_logger.log(
            SecurityEvent.SESSION_CREATED,
            user_id=result.user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return success_response({"message": result.message, "user": _user_payload(result.user)})

    @router.post("/forgot-password")
    async def forgot_password(request: Request, body: ForgotPasswordRequest):
        """Always answers the same way, whether or not the address is registered."""
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")

        message = await auth_service.request_forgot_password(
            body.email, None, ip_address, user_agent
        )
        await security_logger.log(
            SecurityEvent.FORGOT_PASSWORD_REQUESTED,
            email=body.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return success_response({"message": message})

    @router.post("/reset-password")
    async def reset_password(request: Request, body: ResetPasswordRequest):
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")

        result = await auth_service.reset_password(
            body.rid, body.email, body.code, body.new_password, body.confirm_password
        )
        if not result.success:
            await security_logger.log(
                SecurityEvent.PASSWORD_RESET_FAILED,
                email=body.email,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"failure": result.failure.value if result.failure else None},
            )
            return _failure(result.failure, result.message)

        await security_logger.log(
            SecurityEvent.PASSWORD_RESET,
            email=result.user.email_address,
            user_id=result.user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return success_response({"message": result.message})

    @router.post("/logout")
    async def logout(request: Request, response: Response):
        """Logout - revoke session and clear cookie."""
        session_token = request.cookies.get(SESSION_COOKIE)
        if session_token:
            await session_manager.revoke_session(session_token)
            await security_logger.log(
                SecurityEvent.SESSION_REVOKED,
                ip_address=_get_client_ip(request),
                details={"reason": "logout"},
            )

        response.delete_cookie(key=SESSION_COOKIE)
        return success_response({"message": "Logged out successfully"})

    @router.get("/me")
    async def get_current_user(request: Request):
        user = _signed_in_user(request)
        if user is None:
            return error_json(401, ErrorCodes.NOT_AUTHENTICATED, "Authentication required")
        return success_response({"user": _user_payload(user)})

    # Invite acceptance (public, token-authenticated)

    @router.post("/invite/validate")
    async def validate_invite(body: InviteTokenRequest):
        result = await invite_service.validate_invite_token(body.token)
        if not result.success:
            return _failure(result.failure, result.message, ErrorCodes.INVALID_TOKEN)

        invite = result.invite
        return success_response({
            "masked_email": invite_service.mask_email_address(invite.email_address),
            "otp_verified": invite.otp_verified_at is not None,
            "expires_at": invite.expires_at.isoformat(),
        })

    @router.post("/invite/send-otp")
    async def send_invite_otp(request: Request, body: InviteTokenRequest):
        ip_address = _get_client_ip(request)

        result = await invite_service.send_otp(body.token, ip_address)
        if not result.success:
            return _failure(result.failure, result.message)

        if result.otp_sent:
            await security_logger.log(
                SecurityEvent.INVITE_OTP_SENT,
                user_id=result.invite.user_id,
                ip_address=ip_address,
            )
        return success_response({
            "message": result.message,
            "otp_sent": result.otp_sent,
            "otp_verified": result.otp_verified,
        })

    @router.post("/invite/verify-otp")
    async def verify_invite_otp(request: Request, body: InviteVerifyOtpRequest):
        ip_address = _get_client_ip(request)

        result = await invite_service.verify_otp(body.token, body.code, ip_address)
        if not result.success:
            if result.invite is not None:
                await security_logger.log(
                    SecurityEvent.INVITE_OTP_FAILED,
                    user_id=result.invite.user_id,
                    ip_address=ip_address,
                    details={"reason": result.otp_failure.value if result.otp_failure else None},
                )
            return _failure(result.failure, result.message)

        await security_logger.log(
            SecurityEvent.INVITE_VERIFIED, user_id=result.invite.user_id, ip_address=ip_address
        )
        return success_response({"message": result.message, "otp_verified": True})

    @router.post("/invite/set-password")
    async def set_invite_password(request: Request, body: InviteSetPasswordRequest):
        result = await invite_service.set_password(
            body.token, body.new_password, body.confirm_password, body.use_gravatar
        )
        if not result.success:
            return _failure(result.failure, result.message)

        await security_logger.log(
            SecurityEvent.INVITE_COMPLETED,
            user_id=result.user_id,
            ip_address=_get_client_ip(request),
        )
        return success_response({"message": result.message})

    # Admin

    @router.post("/admin/users")
    async def create_user(request: Request, body: CreateUserRequest):
        """Create a pending user and email the invite link. Admins only."""
        admin = _signed_in_user(request)
        if admin is None or not admin.is_admin:
            return error_json(403, ErrorCodes.ADMIN_REQUIRED, "Administrator access required")

        ip_address = _get_client_ip(request)
        result = await invite_service.create_user_and_invite(
            body.first_name, body.last_name, body.email, admin.id, None, ip_address
        )
        if result.user_id is not None:
            await security_logger.log(
                SecurityEvent.INVITE_CREATED,
                email=body.email,
                user_id=result.user_id,
                ip_address=ip_address,
                details={"created_by": str(admin.id), "email_sent": result.success},
            )
        if not result.success:
            return _failure(result.failure, result.message)
        return success_response({"message": result.message, "user_id": str(result.user_id)})

    @router.post("/admin/users/{user_id}/resend-invite")
    async def resend_invite(request: Request, user_id: UUID):
        admin = _signed_in_user(request)
        if admin is None or not admin.is_admin:
            return error_json(403, ErrorCodes.ADMIN_REQUIRED, "Administrator access required")

        ip_address = _get_client_ip(request)
        result = await invite_service.resend_invite(user_id, admin.id, None, ip_address)
        if not result.success:
            return _failure(result.failure, result.message)

        await security_logger.log(
            SecurityEvent.INVITE_RESENT,
            user_id=user_id,
            ip_address=ip_address,
            details={"created_by": str(admin.id)},
        )
        return success_response({"message": result.message})

    # Change password (signed-in)

    @router.post("/password/change/start")
    async def start_password_change(request: Request, body: ChangePasswordStartRequest):
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")
        user_id = get_current_user_id()

        result = await password_change_service.start(
            user_id, body.current_password, ip_address, user_agent
        )
        if not result.success:
            await security_logger.log(
                SecurityEvent.PASSWORD_CHANGE_FAILED,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"stage": "start", "reason_code": result.reason_code},
            )
            code = (
                ErrorCodes.INVALID_CREDENTIALS
                if result.failure == FailureKind.AUTHENTICATION
                else None
            )
            return _failure(result.failure, result.message, code)

        await security_logger.log(
            SecurityEvent.PASSWORD_CHANGE_STARTED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return success_response({"message": result.message, "correlation_id": result.correlation_id})

    @router.post("/password/change/resend")
    async def resend_password_change(request: Request, body: ChangePasswordResendRequest):
        result = await password_change_service.resend(
            get_current_user_id(),
            body.correlation_id,
            _get_client_ip(request),
            request.headers.get("User-Agent"),
        )
        if not result.success:
            return _failure(result.failure, result.message)
        return success_response({"message": result.message, "correlation_id": result.correlation_id})

    @router.get("/password/change/challenge")
    async def get_password_change_challenge(correlation_id: str = Query(None)):
        result = await password_change_service.get_challenge(get_current_user_id(), correlation_id)
        if not result.success:
            return error_json(404, ErrorCodes.NOT_FOUND, result.message)
        return success_response({
            "correlation_id": result.challenge.correlation_id,
            "expires_at": result.challenge.expires_at.isoformat(),
        })

    @router.post("/password/change/verify")
    async def verify_password_change(
        request: Request, response: Response, body: ChangePasswordVerifyRequest
    ):
        """Change the password. Other sessions end; this one is reissued."""
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")
        user_id = get_current_user_id()

        result = await password_change_service.verify_and_change_password(
            user_id,
            body.correlation_id,
            body.code,
            body.new_password,
            body.confirm_password,
            ip_address,
            user_agent,
        )
        if not result.success:
            await security_logger.log(
                SecurityEvent.PASSWORD_CHANGE_FAILED,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={
                    "stage": "verify",
                    "reason": result.otp_failure.value if result.otp_failure else None,
                },
            )
            return _failure(result.failure, result.message)

        await security_logger.log(
            SecurityEvent.PASSWORD_CHANGED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        old_token = request.cookies.get(SESSION_COOKIE)
        if old_token:
            await session_manager.revoke_session(old_token)
        user = await users.get_by_id(user_id)
        if user is not None and user.can_sign_in:
            session = await session_manager.create_session(user)
            _set_session_cookie(response, session)

        return success_response({"message": result.message})

    return router
