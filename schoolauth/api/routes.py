from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Request, Response

from schoolauth.api.schemas import (
    AccountResponse,
    ChangePasswordRequest,
    CheckEmailResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    PasswordResetConfirm,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPairResponse,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from schoolauth.logging import get_logger
from schoolauth.service import admission
from schoolauth.service.auth import AuthContext, ClientInfo
from schoolauth.service.errors import ForbiddenError
from schoolauth.service.runtime import get_runtime
from schoolauth.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RateLimitInfo:
    """Bucket state echoed back to the client."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client(request: Request) -> ClientInfo:
    return ClientInfo(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def _enforce_rate_limit(
    route: str, request: Request, response: Optional[Response] = None
) -> RateLimitInfo:
    """Admit the request for ``route`` keyed by client IP or raise 429."""
    runtime = get_runtime()
    decision = await runtime.admission.admit(route, _client(request).ip or "unknown")
    info = RateLimitInfo(decision.limit, decision.remaining, decision.retry_after)
    if response is not None and decision.limit:
        info.apply_headers(response)
    return info


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().auth.authenticate(authorization)


async def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if ctx.account.role != Role.ADMIN:
        raise ForbiddenError("admin access required")
    return ctx


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified account and send the verification email.

    Raises:
        400: malformed input or weak password
        409: email already registered
        429: registration rate limit exceeded
    """
    await _enforce_rate_limit(admission.REGISTER, request, response)
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        first_name=body.first_name,
        last_name=body.last_name,
        confirm_password=body.confirm_password,
        role=body.role,
        phone=body.phone,
        address=body.address,
        date_of_birth=body.date_of_birth,
        client=_client(request),
    )
    return Envelope(
        status="success",
        message="Registration successful. Please check your email to verify your account.",
        data=RegisterResponse(user=AccountResponse.from_account(result.account)),
    )


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange credentials for an access/refresh token pair.

    Raises:
        401: bad credentials, locked, suspended or unverified account
        429: login rate limit exceeded
    """
    await _enforce_rate_limit(admission.LOGIN, request, response)
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.identifier,
        body.password,
        remember_me=body.remember_me,
        client=_client(request),
    )
    tokens = result.tokens
    return Envelope(
        status="success",
        message="Login successful",
        data=LoginResponse(
            user=AccountResponse.from_account(result.account),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            token_type=tokens.token_type,
        ),
    )


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = Body(default=None),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    scheme, _, token = (authorization or "").partition(" ")
    access_token = token.strip() if scheme.lower() == "bearer" else None
    await runtime.auth.logout(
        access_token,
        body.refresh_token if body else None,
        client=_client(request),
    )
    return Envelope(status="success", message="Logout successful")


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: RefreshRequest, request: Request, response: Response):
    await _enforce_rate_limit(admission.REFRESH, request, response)
    runtime = get_runtime()
    pair = await runtime.auth.refresh_token_pair(body.refresh_token, client=_client(request))
    return Envelope(
        status="success",
        message="Token refreshed successfully",
        data=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            token_type=pair.token_type,
        ),
    )


@router.post("/request-password-reset", response_model=Envelope)
async def request_password_reset(body: EmailRequest, request: Request, response: Response):
    await _enforce_rate_limit(admission.PASSWORD_RESET, request, response)
    runtime = get_runtime()
    message = await runtime.auth.request_password_reset(body.email, client=_client(request))
    return Envelope(status="success", message=message)


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.token,
        body.password,
        confirm_password=body.confirm_password,
        client=_client(request),
    )
    return Envelope(
        status="success",
        message="Password reset successful. You can now log in with your new password.",
    )


async def _verify_email(token: str, request: Request) -> Envelope:
    runtime = get_runtime()
    account, already_verified = await runtime.auth.verify_email(token, client=_client(request))
    return Envelope(
        status="success",
        message="Email is already verified" if already_verified else "Email verified successfully",
        data=VerifyEmailResponse(
            user=AccountResponse.from_account(account), already_verified=already_verified
        ),
    )


@router.get("/verify-email/{token}", response_model=Envelope)
async def verify_email_link(request: Request, token: str = Path(..., max_length=4096)):
    return await _verify_email(token, request)


@router.post("/verify-email/{token}", response_model=Envelope)
async def verify_email_path(request: Request, token: str = Path(..., max_length=4096)):
    return await _verify_email(token, request)


@router.post("/verify-email", response_model=Envelope)
async def verify_email_body(body: VerifyEmailRequest, request: Request):
    return await _verify_email(body.token, request)


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(body: EmailRequest, request: Request, response: Response):
    await _enforce_rate_limit(admission.RESEND_VERIFICATION, request, response)
    runtime = get_runtime()
    message = await runtime.auth.resend_verification(body.email, client=_client(request))
    return Envelope(status="success", message=message)


@router.get("/me", response_model=Envelope)
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(status="success", data=AccountResponse.from_account(ctx.account))


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        ctx.account.id,
        body.current_password,
        body.new_password,
        confirm_password=body.confirm_password,
        client=_client(request),
    )
    return Envelope(status="success", message="Password changed successfully")


@router.patch("/profile", response_model=Envelope)
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    account = await runtime.auth.update_profile(
        ctx.account.id,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        address=body.address,
        client=_client(request),
    )
    return Envelope(
        status="success",
        message="Profile updated successfully",
        data=AccountResponse.from_account(account),
    )


@router.post("/check-email", response_model=Envelope)
async def check_email(body: EmailRequest, request: Request, response: Response):
    await _enforce_rate_limit(admission.REGISTER, request, response)
    runtime = get_runtime()
    result = await runtime.auth.check_email(body.email)
    return Envelope(status="success", data=CheckEmailResponse(**result))


@router.post("/admin/accounts/{account_id}/unlock", response_model=Envelope)
async def admin_unlock(
    request: Request,
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_admin_context),
):
    account = await get_runtime().auth.unlock_account(ctx.account, account_id, client=_client(request))
    return Envelope(status="success", message="Account unlocked", data=AccountResponse.from_account(account))


@router.post("/admin/accounts/{account_id}/suspend", response_model=Envelope)
async def admin_suspend(
    request: Request,
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_admin_context),
):
    account = await get_runtime().auth.suspend_account(ctx.account, account_id, client=_client(request))
    return Envelope(status="success", message="Account suspended", data=AccountResponse.from_account(account))


@router.post("/admin/accounts/{account_id}/reinstate", response_model=Envelope)
async def admin_reinstate(
    request: Request,
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_admin_context),
):
    account = await get_runtime().auth.reinstate_account(ctx.account, account_id, client=_client(request))
    return Envelope(status="success", message="Account reinstated", data=AccountResponse.from_account(account))


@router.delete("/admin/accounts/{account_id}", response_model=Envelope)
async def admin_delete(
    request: Request,
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_admin_context),
):
    account = await get_runtime().auth.delete_account(ctx.account, account_id, client=_client(request))
    return Envelope(status="success", message="Account deleted", data=AccountResponse.from_account(account))
