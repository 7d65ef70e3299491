"""
auth/tokens.py -- Password hashing, HMAC keying, JWT, cookies, and login.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-force of low-entropy secrets expensive. The _DUMMY_HASH constant
       enables timing equalization in authenticate_account() so response time
       does not reveal whether an email exists.

  Opaque secrets (session tokens, reset tokens): high-entropy random values
       from secrets. We store HMAC-SHA256(SECRET_KEY, value) so lookup is O(1)
       through a UNIQUE index and a database dump alone cannot replay them.

  JWT: python-jose with HS256, handed to API clients at login as a Bearer
       token. Verification returns None on any failure -- the dependency
       layer turns that into "anonymous".

  Cookies: the auth_session cookie is always written and cleared through
       set_session_cookie() / clear_session_cookie() so the attribute set
       (httpOnly, SameSite=Lax, Secure in production, path=/) cannot drift
       between login and logout.

  Lockout: after LOGIN_MAX_ATTEMPTS consecutive failures an account is
       locked for LOGIN_LOCK_SECONDS. Locked accounts still pay the bcrypt
       cost on every attempt.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import LoginResult
from auth.store import from_iso, utcnow
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Account
    from auth.store import AccountStore

logger = logging.getLogger("storefront.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE_NAME = "auth_session"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    fields at 255 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash. Malformed hashes give False."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def looks_like_bcrypt(value: str | None) -> bool:
    return bool(value) and value.startswith("$2")


# Timing equalization dummy hash.
_DUMMY_HASH: str = hash_password("storefront_timing_dummy")


# ---------------------------------------------------------------------------
# HMAC keying for opaque tokens
# ---------------------------------------------------------------------------


def hmac_token(raw: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a 64-char hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode (Bearer access tokens for API clients)
# ---------------------------------------------------------------------------


def create_access_token(account_id: int, email: str, roles: list[str], expire_seconds: int = 0) -> str:
    """Encode a signed JWT carrying the account identity.

    The roles claim is informational only. Authorization always re-reads
    roles and groups from the store, so a stale token cannot widen access.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": email,
        "account_id": account_id,
        "roles": roles,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "account_id" not in payload or payload.get("type") != "access":
        return None
    return payload


# ---------------------------------------------------------------------------
# Login (constant-time + lockout)
# ---------------------------------------------------------------------------


def _is_locked(account: Account, now: datetime) -> bool:
    return account.locked_until is not None and from_iso(account.locked_until) > now


def authenticate_account(store: AccountStore, email: str, password: str) -> tuple[LoginResult, Account | None]:
    """Authenticate an email/password login with timing equalization and lockout.

    bcrypt always runs, whether or not the email exists:
      - Unknown / deleted / passwordless account: against _DUMMY_HASH
      - Locked account: against the real hash, result ignored
      - Otherwise: against the real hash

    Returns (LoginResult.SUCCESS, account), (LoginResult.LOCKED, None) or
    (LoginResult.INVALID, None).
    """
    account = store.get_by_email(email)
    if account is None or account.hashed_password is None or account.deleted_at is not None:
        verify_password(password, _DUMMY_HASH)
        return LoginResult.INVALID, None

    if _is_locked(account, utcnow()):
        verify_password(password, account.hashed_password)
        logger.warning("Login refused for locked account_id=%s", account.id)
        return LoginResult.LOCKED, None

    if not verify_password(password, account.hashed_password):
        attempts = store.record_login_failure(
            account.id, _settings.login_max_attempts, _settings.login_lock_seconds
        )
        logger.info("Failed login for account_id=%s (attempt %d)", account.id, attempts)
        if attempts >= _settings.login_max_attempts:
            logger.warning("Account_id=%s locked after %d failed logins", account.id, attempts)
            return LoginResult.LOCKED, None
        return LoginResult.INVALID, None

    if not account.can_authenticate:
        return LoginResult.INVALID, None

    store.record_login_success(account.id)
    return LoginResult.SUCCESS, account


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str) -> None:
    """Write the opaque session token as the auth_session cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on same-site navigations and top-level GETs, not
        on cross-site POST.
    secure: HTTPS only when SECURE_COOKIES=true or ENVIRONMENT=production.
    max_age: SESSION_MAX_AGE_SECONDS (7 days), same as the server-side record.
    """
    response.set_cookie(
        SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        path="/",
        max_age=_settings.session_max_age_seconds,
    )


def clear_session_cookie(response) -> None:
    """Overwrite auth_session with an empty, zero-lifetime cookie."""
    response.set_cookie(
        SESSION_COOKIE_NAME,
        value="",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        path="/",
        max_age=0,
    )
