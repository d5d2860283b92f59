"""
auth/tokens.py -- JWT access/refresh tokens, verification secrets, cookie helpers.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY. Every token carries a
       "type" claim ("access" or "refresh") and decoding checks it, so a
       refresh token can never be replayed as a bearer credential or vice
       versa.

  Access tokens are short-lived (default 15 minutes) and fully stateless.

  Refresh tokens live for days. Signature and expiry are necessary but not
       sufficient: the service must also compare the presented value with the
       one stored on the user record. Logout and rotation overwrite that value,
       which revokes the old token immediately without a blocklist. Each
       refresh token carries a random jti so two tokens issued in the same
       second for the same user are still distinct.

  Verification tokens: secrets.token_hex(32) gives 256 bits of entropy --
       brute-force is computationally infeasible.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import InvalidTokenError
from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

REFRESH_COOKIE_NAME = "refresh_token"

# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, role: str, expire_seconds: int = 0) -> str:
    """Encode a short-lived signed JWT identifying user_id.

    Args:
        user_id:        Numeric user ID stored in the DB.
        role:           User role, carried for clients; the server re-reads
                        the role from the store on every request.
        expire_seconds: Lifetime override. 0 uses
                        Settings.access_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "role": role,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def create_refresh_token(user_id: int) -> str:
    """Encode a long-lived refresh JWT with a unique jti."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "type": "refresh",
        "jti": secrets.token_hex(16),
        "iat": now,
        "exp": now + timedelta(days=_settings.refresh_token_expire_days),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def _decode(token: str, expected_type: str) -> dict | None:
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != expected_type or not isinstance(payload.get("user_id"), int):
        return None
    return payload


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT. Returns the payload dict or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated. The dependency layer turns None into 401.
    """
    return _decode(token, "access")


def decode_refresh_token(token: str) -> dict:
    """Decode and verify a refresh JWT.

    Raises InvalidTokenError (401) on a bad signature, expiry, or wrong token
    type. A valid result still has to be compared with the stored token.
    """
    payload = _decode(token, "refresh")
    if payload is None:
        raise InvalidTokenError("Invalid or expired refresh token.", status_code=401)
    return payload


# ---------------------------------------------------------------------------
# Verification secrets
# ---------------------------------------------------------------------------


def generate_verification_token() -> str:
    """Return 64 hex chars (256 bits) of CSPRNG output."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests (CSRF mitigation).
    secure: only sent over HTTPS unless SECURE_COOKIES=false.
    max_age: matches the refresh JWT lifetime so both expire together.
    """
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.refresh_token_expire_days * 24 * 60 * 60,
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
    )
