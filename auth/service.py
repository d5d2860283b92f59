"""
auth/service.py -- The authentication / session state machine.

AuthService ties the Credential Store, Token Service, Verification Token Store,
Audit Log and Email Sender together. It holds no per-request state: every flow
reads the user record, mutates it, and writes it back. Each write leaves the
record valid on its own, so a request aborted half-way never needs a rollback.

Errors are raised from auth/errors.py and translated to HTTP responses by the
API layer. Audit writes and email sends are side channels: neither can fail a
flow.

Security notes:
  [C1] Login with an unknown email still runs one bcrypt check so response
       time does not reveal whether the account exists.
  [C2] Unknown email and wrong password produce the same InvalidCredentials.
  [C3] forgot_password() returns the same message whether or not the email
       exists, and whether or not delivery worked.
  [C4] Self-registration can only produce "user" or "moderator" accounts.
  [C5] reset_password() revokes every session; change_password() does not,
       because the caller has just proven possession of the current password.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from auth import passwords
from auth.audit import AuditLog
from auth.email import EmailSender, redact_email, send_password_reset_email, send_verification_email
from auth.errors import (
    AccountLockedError,
    DuplicateKeyError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from auth.models import (
    SELF_SERVICE_ROLES,
    TOKEN_TYPE_EMAIL,
    TOKEN_TYPE_PASSWORD_RESET,
    AuditLogEntry,
    Session,
    User,
    add_session,
    is_locked,
)
from auth.store import UserStore
from auth.tokens import create_access_token, create_refresh_token, decode_refresh_token
from auth.verification import VerificationTokenStore
from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.service")

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent."


@dataclass
class RequestContext:
    """Client facts recorded with sessions and audit entries."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str


@dataclass
class SessionView:
    """A session as shown to its owner. Never carries the raw token."""

    ip: str | None
    user_agent: str | None
    created_at: str
    is_current: bool


class AuthService:
    def __init__(
        self,
        users: UserStore,
        tokens: VerificationTokenStore,
        audit: AuditLog,
        email_sender: EmailSender,
        settings: Settings,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.audit = audit
        self.email_sender = email_sender
        self.settings = settings

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _audit(
        self,
        event: str,
        ctx: RequestContext,
        user_id: int | None = None,
        status: str = "success",
        **details,
    ) -> None:
        self.audit.record(
            AuditLogEntry(
                action=event,
                status=status,
                user_id=user_id,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                details=details,
            )
        )

    def _require_user(self, user_id: int, include_secrets: bool = False) -> User:
        user = self.users.get_by_id(user_id, include_secrets=include_secrets)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def _issue_tokens(self, user: User) -> tuple[str, str]:
        return create_access_token(user.id, user.role), create_refresh_token(user.id)

    def _send_verification(self, user: User) -> None:
        """Create a fresh email token and mail it. Delivery failure is logged only."""
        ttl = self.settings.verification_token_ttl_hours
        record = self.tokens.create_token(user.id, TOKEN_TYPE_EMAIL, ttl_hours=ttl)
        try:
            send_verification_email(
                self.email_sender, self.settings.frontend_url, user.email, user.username, record.token, ttl
            )
        except Exception:
            logger.warning("Failed to send verification email to %s", redact_email(user.email), exc_info=True)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        ctx: RequestContext,
        role: str | None = None,
    ) -> AuthResult:
        """Create an account, mail a verification link and sign the user in.

        Raises DuplicateKeyError if the email or username is taken. A role
        outside SELF_SERVICE_ROLES is silently replaced with "user" [C4].
        """
        email = email.strip().lower()
        if self.users.get_by_email(email) is not None:
            raise DuplicateKeyError("Email already registered.", field="email")
        if self.users.get_by_username(username) is not None:
            raise DuplicateKeyError("Username already taken.", field="username")

        allowed_role = role if role in SELF_SERVICE_ROLES else "user"
        new_user = User(username=username, email=email, role=allowed_role)
        new_user.hashed_password, new_user.password_history = passwords.set_password(new_user, password)
        user_id = self.users.create_user(new_user)
        user = self._require_user(user_id)

        self._send_verification(user)

        access_token, refresh_token = self._issue_tokens(user)
        self.users.update_user(user.id, refresh_token=refresh_token)

        self._audit(
            "register",
            ctx,
            user_id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
        )
        logger.info("Registered user %s (role=%s)", user.id, user.role)
        return AuthResult(user=user, access_token=access_token, refresh_token=refresh_token)

    # ------------------------------------------------------------------
    # Login / lockout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, ctx: RequestContext) -> AuthResult:
        """Authenticate by email and password.

        Raises InvalidCredentialsError for an unknown email or a wrong password
        [C2], AccountLockedError while the account is locked. A locked account
        does not count further attempts.
        """
        user = self.users.get_by_email(email, include_secrets=True)
        if user is None:
            passwords.equalize_timing(password)  # [C1]
            self._audit("login", ctx, status="failure", email=email.strip().lower(), reason="unknown_email")
            raise InvalidCredentialsError()

        now = time.time()
        if is_locked(user.lock_until, now):
            minutes = math.ceil((user.lock_until - now) / 60)
            self._audit("login", ctx, user_id=user.id, status="failure", reason="account_locked")
            raise AccountLockedError(minutes)

        if not passwords.verify_password(password, user.hashed_password):
            _attempts, lock_until = self.users.record_failed_login(
                user.id,
                max_attempts=self.settings.max_login_attempts,
                lock_seconds=self.settings.lock_seconds,
                now=now,
            )
            if is_locked(lock_until, now):
                logger.warning("Account %s locked after repeated failed logins", user.id)
                self._audit("account_lock", ctx, user_id=user.id, reason="too_many_failed_attempts")
            else:
                self._audit("login", ctx, user_id=user.id, status="failure", reason="invalid_password")
            raise InvalidCredentialsError()

        self.users.reset_login_attempts(user.id)

        access_token, refresh_token = self._issue_tokens(user)
        sessions = add_session(
            user.sessions,
            Session(
                token=refresh_token,
                ip=ctx.ip,
                user_agent=ctx.user_agent,
                created_at=datetime.now(timezone.utc).isoformat(),
            ),
            cap=self.settings.max_sessions,
        )
        self.users.update_user(
            user.id,
            last_login=datetime.now(timezone.utc).isoformat(),
            last_login_ip=ctx.ip,
            refresh_token=refresh_token,
            sessions=sessions,
        )

        self._audit("login", ctx, user_id=user.id, email=user.email)
        return AuthResult(user=self._require_user(user.id), access_token=access_token, refresh_token=refresh_token)

    # ------------------------------------------------------------------
    # Refresh-token rotation and logout
    # ------------------------------------------------------------------

    def refresh(self, token: str | None, ctx: RequestContext) -> AuthResult:
        """Exchange a refresh token for a new access + refresh pair.

        The presented token must verify AND equal the value stored on the
        user. On success the stored value and the matching session entry are
        overwritten, so the presented token can never be used again.
        """
        if not token:
            raise InvalidTokenError("Refresh token required.", status_code=401)
        payload = decode_refresh_token(token)

        user = self.users.get_by_id(payload["user_id"], include_secrets=True)
        if user is None or user.refresh_token != token:
            self._audit(
                "token_refresh",
                ctx,
                user_id=user.id if user else None,
                status="failure",
                reason="token_mismatch",
            )
            raise InvalidTokenError("Invalid refresh token.", status_code=401)

        access_token, new_refresh = self._issue_tokens(user)
        sessions = [
            Session(token=new_refresh, ip=s.ip, user_agent=s.user_agent, created_at=s.created_at)
            if s.token == token
            else s
            for s in user.sessions
        ]
        self.users.update_user(user.id, refresh_token=new_refresh, sessions=sessions)

        self._audit("token_refresh", ctx, user_id=user.id)
        return AuthResult(user=user, access_token=access_token, refresh_token=new_refresh)

    def logout(self, user_id: int, token: str | None, ctx: RequestContext) -> None:
        """Revoke the stored refresh token and drop the session it belongs to."""
        user = self.users.get_by_id(user_id, include_secrets=True)
        if user is not None:
            sessions = [s for s in user.sessions if s.token != token] if token else user.sessions
            self.users.update_user(user.id, refresh_token=None, sessions=sessions)
        self._audit("logout", ctx, user_id=user_id)

    def logout_all(self, user_id: int, ctx: RequestContext) -> None:
        """Revoke the refresh token and every tracked session."""
        self.users.update_user(user_id, refresh_token=None, sessions=[])
        self._audit("session_destroy", ctx, user_id=user_id, action="logout_all")

    # ------------------------------------------------------------------
    # Profile and sessions
    # ------------------------------------------------------------------

    def get_profile(self, user_id: int) -> User:
        # session_count needs the session list, a secret column.
        return self._require_user(user_id, include_secrets=True)

    def list_sessions(self, user_id: int) -> list[SessionView]:
        user = self._require_user(user_id, include_secrets=True)
        return [
            SessionView(
                ip=s.ip,
                user_agent=s.user_agent,
                created_at=s.created_at,
                is_current=user.refresh_token is not None and s.token == user.refresh_token,
            )
            for s in user.sessions
        ]

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, user_id: int, current_password: str, new_password: str, ctx: RequestContext) -> None:
        """Replace the password of an authenticated user.

        Raises InvalidCredentialsError if current_password is wrong,
        ValidationError if new_password equals the current one or any of the
        remembered previous passwords. Existing sessions stay valid [C5].
        """
        user = self._require_user(user_id, include_secrets=True)

        if not passwords.verify_password(current_password, user.hashed_password):
            self._audit(
                "password_change",
                ctx,
                user_id=user.id,
                status="failure",
                action="failed",
                reason="invalid_current_password",
            )
            raise InvalidCredentialsError("Current password is incorrect.")

        if passwords.verify_password(new_password, user.hashed_password):
            raise ValidationError("New password must be different from current password.")
        if passwords.is_password_in_history(user, new_password):
            raise ValidationError(
                "You cannot use a password that you have used recently. Please choose a different password."
            )

        hashed, history = passwords.set_password(user, new_password)
        self.users.update_user(user.id, hashed_password=hashed, password_history=history)

        self._audit("password_change", ctx, user_id=user.id, action="success")
        logger.info("Password changed for user %s", user.id)

    def forgot_password(self, email: str, ctx: RequestContext) -> str:
        """Start a password reset. Always returns FORGOT_PASSWORD_MESSAGE [C3].

        Delivery failures are logged and swallowed: surfacing them would tell
        the caller that the address belongs to an account.
        """
        user = self.users.get_by_email(email)
        if user is None:
            self._audit("password_reset", ctx, status="failure", action="request", reason="unknown_email")
            return FORGOT_PASSWORD_MESSAGE

        ttl = self.settings.reset_token_ttl_hours
        record = self.tokens.create_token(user.id, TOKEN_TYPE_PASSWORD_RESET, ttl_hours=ttl)
        try:
            send_password_reset_email(
                self.email_sender, self.settings.frontend_url, user.email, user.username, record.token, ttl
            )
        except Exception:
            logger.warning("Failed to send password reset email to %s", redact_email(user.email), exc_info=True)

        self._audit("password_reset", ctx, user_id=user.id, action="request")
        logger.info("Password reset requested for user %s", user.id)
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(self, token: str, new_password: str, ctx: RequestContext) -> None:
        """Complete a password reset and sign the user out everywhere.

        Raises InvalidTokenError / TokenExpiredError (400) for a bad token and
        ValidationError if new_password is the current or a remembered
        previous password.
        """
        record = self.tokens.verify_token(token, TOKEN_TYPE_PASSWORD_RESET)
        user = self._require_user(record.user_id, include_secrets=True)

        if passwords.verify_password(new_password, user.hashed_password) or passwords.is_password_in_history(
            user, new_password
        ):
            raise ValidationError(
                "You cannot use a password that you have used recently. Please choose a different password."
            )

        hashed, history = passwords.set_password(user, new_password)
        self.users.update_user(user.id, hashed_password=hashed, password_history=history)
        self.tokens.delete_token(record.id)
        self.users.update_user(user.id, refresh_token=None, sessions=[])

        self._audit("password_reset", ctx, user_id=user.id, action="complete")
        logger.info("Password reset completed for user %s", user.id)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str, ctx: RequestContext) -> User:
        """Mark the token owner's email as verified and consume the token."""
        record = self.tokens.verify_token(token, TOKEN_TYPE_EMAIL)
        user = self._require_user(record.user_id)
        if user.is_verified:
            raise ValidationError("Email already verified.")

        self.users.update_user(user.id, is_verified=True)
        self.tokens.delete_token(record.id)

        self._audit("email_verification", ctx, user_id=user.id, email=user.email)
        logger.info("Email verified for user %s", user.id)
        user.is_verified = True
        return user

    def resend_verification(self, user_id: int, ctx: RequestContext) -> None:
        user = self._require_user(user_id)
        if user.is_verified:
            raise ValidationError("Email already verified.")
        self._send_verification(user)
        self._audit("email_verification", ctx, user_id=user.id, action="resend")

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def list_audit_logs(
        self,
        user_id: int | None = None,
        action: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLogEntry], int]:
        return self.audit.query(user_id=user_id, action=action, page=page, page_size=page_size)
