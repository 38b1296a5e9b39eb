from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from loginguard.api.error_handling import (
    ACCESS_TOKEN_COOKIE,
    SESSION_TOKEN_COOKIE,
    clear_auth_cookies,
)
from loginguard.api.schemas import (
    AuditEventResponse,
    AuditListResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    PasswordStatusResponse,
    RegisterRequest,
    TwoFactorCodeRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserProfileResponse,
)
from loginguard.logging import get_logger
from loginguard.service.audit import AuditAction
from loginguard.service.errors import (
    AccountLockedError,
    AuthenticationError,
    HumanVerificationError,
    PasswordExpiredError,
    SessionExpiredError,
)
from loginguard.service.login import LoginAttemptContext, LoginOutcome, LoginResult
from loginguard.service.password_policy import PasswordStatus
from loginguard.service.runtime import get_runtime
from loginguard.service.session_guard import SESSION_EXPIRED_MESSAGE, session_fingerprint
from loginguard.storage.common import parse_ip_address
from loginguard.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class Principal:
    user: User
    session_token: Optional[str]
    client_ip: Optional[str]
    user_agent: Optional[str]


def _client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    host = request.client.host if request.client else None
    return parse_ip_address(host), request.headers.get("user-agent")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def _resolve_principal(
    request: Request,
    authorization: Optional[str],
    session_header: Optional[str],
    *,
    enforce_password_expiry: bool,
) -> Principal:
    """Identity token -> user -> single-session check -> password expiry."""
    runtime = get_runtime()
    client_ip, user_agent = _client_info(request)
    identity = _bearer_token(authorization) or request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not identity:
        raise AuthenticationError("Authentication required.")

    claims = runtime.tokens.decode(identity)
    user = runtime.credentials.find_by_id(claims["sub"]) if claims else None
    if user is None:
        runtime.audit.log(
            None,
            AuditAction.SESSION_EXPIRED,
            f"Path: {request.url.path}",
            ip=client_ip,
            user_agent=user_agent,
        )
        raise SessionExpiredError(SESSION_EXPIRED_MESSAGE)

    session_token = session_header or request.cookies.get(SESSION_TOKEN_COOKIE)
    runtime.session_guard.enforce(
        user,
        session_token,
        session_id=claims.get("sid"),
        ip=client_ip,
        user_agent=user_agent,
    )

    if enforce_password_expiry:
        status = runtime.policy.evaluate_expiry(user)
        if status.expired:
            raise PasswordExpiredError(
                status.message or "Your password has expired.",
                detail={"days_until_expiry": 0},
            )
    return Principal(
        user=user, session_token=session_token, client_ip=client_ip, user_agent=user_agent
    )


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
) -> Principal:
    return await _resolve_principal(
        request, authorization, x_session_token, enforce_password_expiry=True
    )


async def get_principal_allow_expired(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_session_token: Optional[str] = Header(None, alias="X-Session-Token"),
) -> Principal:
    """Same checks minus password expiry, for change-password, logout and /me."""
    return await _resolve_principal(
        request, authorization, x_session_token, enforce_password_expiry=False
    )


def _status_response(status: Optional[PasswordStatus]) -> Optional[PasswordStatusResponse]:
    if status is None:
        return None
    return PasswordStatusResponse(
        expired=status.expired,
        warning=status.warning,
        days_until_expiry=status.days_until_expiry,
        last_changed_at=status.last_changed_at,
        message=status.message,
    )


def _apply_session_cookies(
    response: Response,
    access_token: str,
    session_token: str,
    *,
    persistent_seconds: Optional[int],
    secure: bool,
) -> None:
    # Without remember-me both cookies end with the browser session
    for name, value in ((ACCESS_TOKEN_COOKIE, access_token), (SESSION_TOKEN_COOKIE, session_token)):
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=secure,
            samesite="lax",
            max_age=persistent_seconds,
            path="/",
        )


def _sign_in(response: Response, user_id: str, session_token: str, *, remember_me: bool) -> str:
    runtime = get_runtime()
    settings = runtime.settings
    if remember_me:
        ttl_seconds = settings.remember_me_ttl_days * 86400
    else:
        ttl_seconds = settings.session_ttl_minutes * 60
    access_token = runtime.tokens.issue(
        user_id,
        ttl_seconds=ttl_seconds,
        persistent=remember_me,
        session_id=session_fingerprint(session_token),
    )
    _apply_session_cookies(
        response,
        access_token,
        session_token,
        persistent_seconds=ttl_seconds if remember_me else None,
        secure=settings.cookie_secure,
    )
    return access_token


def _raise_for_outcome(result: LoginResult) -> None:
    if result.outcome is LoginOutcome.HUMAN_CHECK_FAILED:
        raise HumanVerificationError(
            result.message, detail={"error_code": result.verification_error}
        )
    if result.outcome is LoginOutcome.LOCKED_OUT:
        retry_after = (
            math.ceil(result.lockout_remaining.total_seconds())
            if result.lockout_remaining
            else None
        )
        raise AccountLockedError(result.message, detail={"retry_after_seconds": retry_after})
    if result.outcome in (LoginOutcome.INVALID_CREDENTIALS, LoginOutcome.INVALID_CODE):
        detail = None
        if result.remaining_attempts is not None:
            detail = {"remaining_attempts": result.remaining_attempts}
        raise AuthenticationError(result.message, detail=detail)
    if result.outcome is LoginOutcome.EXPIRED:
        raise AuthenticationError(result.message, detail={"reason": "two_factor_expired"})


def _login_envelope(response: Response, result: LoginResult) -> Envelope:
    _raise_for_outcome(result)
    if result.outcome is LoginOutcome.TWO_FACTOR_REQUIRED:
        return Envelope(
            status="ok",
            data=LoginResponse(
                outcome=result.outcome.value,
                message=result.message,
                user_id=result.user_id,
                two_factor_required=True,
                continuation=result.continuation,
            ),
        )
    access_token = _sign_in(
        response, result.user_id, result.session_token, remember_me=result.remember_me
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            outcome=result.outcome.value,
            message=result.message,
            user_id=result.user_id,
            access_token=access_token,
            session_token=result.session_token,
            token_type="bearer",
            password_status=_status_response(result.password_status),
        ),
    )


# -- auth ------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    client_ip, user_agent = _client_info(request)
    registration = await runtime.accounts.register(
        body.email,
        body.password,
        body.confirm_password,
        body.verification_token,
        client_ip=client_ip,
        user_agent=user_agent,
    )
    access_token = _sign_in(
        response, registration.user.id, registration.session_token, remember_me=False
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            outcome=LoginOutcome.SUCCESS.value,
            message="Registration successful.",
            user_id=registration.user.id,
            access_token=access_token,
            session_token=registration.session_token,
            token_type="bearer",
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Run one login attempt through the state machine.

    Raises:
        400: human verification failed
        401: invalid credentials
        423: account locked
    """
    runtime = get_runtime()
    client_ip, user_agent = _client_info(request)
    result = await runtime.login.login(
        LoginAttemptContext(
            email=body.email,
            password=body.password,
            verification_token=body.verification_token,
            remember_me=body.remember_me,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    )
    return _login_envelope(response, result)


@router.post("/auth/login/2fa", response_model=Envelope, tags=["auth"])
async def login_two_factor(body: TwoFactorLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    client_ip, user_agent = _client_info(request)
    result = await runtime.login.complete_two_factor(
        body.continuation, body.code, client_ip=client_ip, user_agent=user_agent
    )
    return _login_envelope(response, result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: Principal = Depends(get_principal_allow_expired)):
    runtime = get_runtime()
    await runtime.accounts.logout(
        principal.user, client_ip=principal.client_ip, user_agent=principal.user_agent
    )
    clear_auth_cookies(response, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data=MessageResponse(message="Signed out."))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_principal_allow_expired),
):
    runtime = get_runtime()
    updated = await runtime.accounts.change_password(
        principal.user,
        body.current_password,
        body.new_password,
        body.confirm_password,
        client_ip=principal.client_ip,
        user_agent=principal.user_agent,
    )
    status = runtime.accounts.password_status(updated)
    return Envelope(
        status="ok",
        data={
            "message": "Password changed successfully.",
            "password_status": _status_response(status),
        },
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest, request: Request):
    runtime = get_runtime()
    client_ip, user_agent = _client_info(request)
    message = await runtime.accounts.request_password_reset(
        body.email, client_ip=client_ip, user_agent=user_agent
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    client_ip, user_agent = _client_info(request)
    await runtime.accounts.complete_password_reset(
        body.user_id,
        body.token,
        body.new_password,
        body.confirm_password,
        client_ip=client_ip,
        user_agent=user_agent,
    )
    # The reset cleared the stored session; drop whatever the client still holds
    clear_auth_cookies(response, secure=runtime.settings.cookie_secure)
    return Envelope(
        status="ok",
        data=MessageResponse(message="Your password has been reset. Please sign in."),
    )


# -- two-factor enrolment --------------------------------------------------


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def two_factor_setup(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    setup = await runtime.accounts.setup_two_factor(principal.user)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def two_factor_enable(
    body: TwoFactorCodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    updated = await runtime.accounts.enable_two_factor(
        principal.user, body.code, client_ip=principal.client_ip, user_agent=principal.user_agent
    )
    return Envelope(status="ok", data=TwoFactorStatusResponse(enabled=updated.two_factor_enabled))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def two_factor_disable(
    body: TwoFactorCodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    updated = await runtime.accounts.disable_two_factor(
        principal.user, body.code, client_ip=principal.client_ip, user_agent=principal.user_agent
    )
    return Envelope(status="ok", data=TwoFactorStatusResponse(enabled=updated.two_factor_enabled))


# -- profile ---------------------------------------------------------------


@router.get("/me", response_model=Envelope, tags=["users"])
async def me(principal: Principal = Depends(get_principal_allow_expired)):
    runtime = get_runtime()
    user = principal.user
    return Envelope(
        status="ok",
        data=UserProfileResponse(
            id=user.id,
            email=user.email,
            two_factor_enabled=user.two_factor_enabled,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
            password_status=_status_response(runtime.accounts.password_status(user)),
        ),
    )


@router.get("/audit", response_model=Envelope, tags=["users"])
async def audit_log(
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    events = runtime.accounts.audit_events(principal.user, limit=limit)
    return Envelope(
        status="ok",
        data=AuditListResponse(
            items=[
                AuditEventResponse(
                    id=event.id,
                    action=event.action,
                    detail=event.detail,
                    score=event.score,
                    ip=event.ip,
                    user_agent=event.user_agent,
                    timestamp=event.timestamp,
                )
                for event in events
            ]
        ),
    )
