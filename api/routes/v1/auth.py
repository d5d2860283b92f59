"""
api/routes/v1/auth.py -- Authentication, session and verification REST endpoints.

Routes:
  POST /api/v1/auth/register             -- create account; sets refresh cookie; 201
  POST /api/v1/auth/login                -- password login; sets refresh cookie
  POST /api/v1/auth/refresh              -- rotate refresh token (cookie or body)
  POST /api/v1/auth/logout               -- revoke this device (requires auth)
  POST /api/v1/auth/logout-all           -- revoke every device (requires auth)
  GET  /api/v1/auth/me                   -- profile + session count (requires auth)
  GET  /api/v1/auth/sessions             -- signed-in devices (requires auth)
  POST /api/v1/auth/forgot-password      -- start password reset (public)
  POST /api/v1/auth/reset-password       -- finish password reset (public)
  POST /api/v1/auth/change-password      -- change password (requires auth)
  GET  /api/v1/auth/verify-email?token=  -- confirm email address (public)
  POST /api/v1/auth/resend-verification  -- mail a fresh verification link (requires auth)
  GET  /api/v1/auth/audit-logs           -- audit trail (admin only)

Security:
  [H2] register, login, forgot/reset/change password and resend-verification
       are rate-limited per client IP.
  [M5] Cache-Control: no-store on every response that carries a token.
  @limiter.limit sits BELOW @router so the registered endpoint is the
       rate-limited wrapper. SlowAPIMiddleware skips routes that carry a
       decorator limit, so the reverse order would enforce nothing.
  Route handlers are sync (def, not async def) so bcrypt runs in the thread
  pool instead of blocking the event loop.

Errors raised by AuthService propagate to the AuthError handler in
api/main.py; handlers here only translate successful results.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, PASSWORD_RATE_LIMIT, limiter
from api.models import (
    AuditLogPage,
    AuditLogRow,
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_user, require_admin
from auth.models import User
from auth.service import AuthResult, AuthService, RequestContext
from auth.tokens import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie

# Auth policy:
# - POST /auth/register, /login, /refresh:         public -- they establish authentication
# - POST /auth/forgot-password, /reset-password:   public -- the user cannot sign in
# - GET  /auth/verify-email:                       public -- reached from an emailed link
# - POST /auth/logout, /logout-all:                requires auth (get_current_user)
# - GET  /auth/me, /sessions:                      requires auth (get_current_user)
# - POST /auth/change-password, /resend-verification: requires auth (get_current_user)
# - GET  /auth/audit-logs:                         requires admin (require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _context(request: Request) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> Optional[str]:
    """Cookie first, then the JSON body for clients that cannot hold cookies."""
    token = request.cookies.get(REFRESH_COOKIE_NAME)
    if not token and body is not None:
        token = body.refresh_token
    return token or None


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_response(request: Request, result: AuthResult, message: str, status_code: int) -> JSONResponse:
    settings = _service(request).settings
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(
            message=message,
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.access_token_expire_seconds,
        ).model_dump(),
    )
    set_refresh_cookie(resp, result.refresh_token)
    return _no_store(resp)


def _message(message: str) -> JSONResponse:
    return JSONResponse(content=MessageResponse(message=message).model_dump())


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and sign it in.

    A verification email is sent; the account works before it is verified.
    """
    result = _service(request).register(
        body.username,
        body.email,
        body.password,
        _context(request),
        role=body.role,
    )
    return _auth_response(
        request,
        result,
        "User registered successfully. Please check your email to verify your account.",
        201,
    )


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password both return 401 invalid_credentials.
    A locked account returns 423 until the lock expires.
    """
    result = _service(request).login(body.email, body.password, _context(request))
    return _auth_response(request, result, "Login successful.", 200)


# ---------------------------------------------------------------------------
# Tokens and sessions
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Rotate the refresh token and issue a new access token.

    The presented refresh token is revoked by the rotation; replaying it
    returns 401.
    """
    service = _service(request)
    result = service.refresh(_presented_refresh_token(request, body), _context(request))
    resp = JSONResponse(
        content=TokenResponse(
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=service.settings.access_token_expire_seconds,
        ).model_dump()
    )
    set_refresh_cookie(resp, result.refresh_token)
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: Optional[RefreshRequest] = None,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Revoke the current device's refresh token and clear the cookie."""
    _service(request).logout(current_user.id, _presented_refresh_token(request, body), _context(request))
    resp = _message("Logged out successfully.")
    clear_refresh_cookie(resp)
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke every session of the current user."""
    _service(request).logout_all(current_user.id, _context(request))
    resp = _message("Logged out from all devices successfully.")
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/me", response_model=ProfileResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> ProfileResponse:
    """Return the profile of the authenticated user."""
    return ProfileResponse.from_user(_service(request).get_profile(current_user.id))


@router.get("/auth/sessions", response_model=SessionListResponse)
def sessions(request: Request, current_user: User = Depends(get_current_user)) -> SessionListResponse:
    """List signed-in devices. Raw refresh tokens are never included."""
    views = _service(request).list_sessions(current_user.id)
    return SessionListResponse(
        sessions=[
            SessionResponse(ip=v.ip, user_agent=v.user_agent, created_at=v.created_at, is_current=v.is_current)
            for v in views
        ]
    )


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(PASSWORD_RATE_LIMIT)  # [H2]
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Mail a reset link if the account exists. The response never says which."""
    return _message(_service(request).forgot_password(body.email, _context(request)))


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(PASSWORD_RATE_LIMIT)  # [H2]
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password from a reset token and sign out every device."""
    _service(request).reset_password(body.token, body.new_password, _context(request))
    resp = _message("Password has been reset successfully. Please log in with your new password.")
    clear_refresh_cookie(resp)
    return resp


@router.post("/auth/change-password", response_model=MessageResponse)
@limiter.limit(PASSWORD_RATE_LIMIT)  # [H2]
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Change the password of the authenticated user. Other sessions stay signed in."""
    _service(request).change_password(
        current_user.id, body.current_password, body.new_password, _context(request)
    )
    return _message("Password changed successfully.")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, token: str = Query(min_length=1, max_length=128)) -> JSONResponse:
    """Confirm an email address from the emailed link. Each token works once."""
    _service(request).verify_email(token, _context(request))
    return _message("Email verified successfully.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
@limiter.limit(PASSWORD_RATE_LIMIT)  # [H2]
def resend_verification(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Replace any outstanding verification link with a new one."""
    _service(request).resend_verification(current_user.id, _context(request))
    return _message("Verification email sent successfully.")


# ---------------------------------------------------------------------------
# Audit trail (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/audit-logs", response_model=AuditLogPage)
def audit_logs(
    request: Request,
    user_id: Optional[int] = Query(default=None, ge=1),
    action: Optional[str] = Query(default=None, max_length=30),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=100),
    current_user: User = Depends(require_admin),
) -> AuditLogPage:
    """Return audit entries newest first, optionally filtered by user or action."""
    entries, total = _service(request).list_audit_logs(
        user_id=user_id, action=action, page=page, page_size=page_size
    )
    return AuditLogPage(
        entries=[AuditLogRow.from_entry(e) for e in entries],
        total=total,
        page=page,
        page_size=page_size,
    )
