"""
auth/verification.py -- One-time codes and password-reset tokens.

OTP codes
  issue() generates a fixed-length decimal code (each digit independently
  uniform via secrets.randbelow), stores it against (account, purpose) --
  replacing any earlier token for that purpose -- and returns the raw code
  for out-of-band delivery.

  verify() evaluates, in order:
    1. no token for (account, purpose)        -> INVALID_CODE
    2. attempts += 1, committed immediately   (a security control, never
                                               rolled back with the request)
    3. token already used                     -> INVALID_CODE
    4. now >= expires_at                      -> EXPIRED
    5. attempts > OTP_MAX_ATTEMPTS            -> TOO_MANY_ATTEMPTS
    6. candidate != stored code               -> INVALID_CODE
    7. mark used (compare-and-set)            -> SUCCESS

  Stored codes are bcrypt hashes when OTP_HASH_CODES is on. Rows written
  with plaintext codes stay verifiable: a stored value beginning with "$2"
  is compared with bcrypt, anything else with hmac.compare_digest.

Reset tokens
  A 192-bit hex token (secrets.token_hex(24)) kept on the account row as an
  HMAC, with an absolute expiry (default 1 hour). A successful reset stores
  the new password hash and clears token, expiry and lockout in one write,
  then revokes every session the account has open.

Expected failures are returned as VerifyOutcome values / False, never raised.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta

import bcrypt

from auth.models import TokenPurpose, VerificationToken, VerifyOutcome
from auth.store import AccountStore, from_iso, to_iso, utcnow
from auth.tokens import hash_password, hmac_token, looks_like_bcrypt, verify_password
from core.config import Settings, get_settings

logger = logging.getLogger("storefront.auth")


def generate_otp(length: int = 6) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def generate_reset_token() -> str:
    return secrets.token_hex(24)


def code_matches(stored: str, candidate: str) -> bool:
    """Hash-aware comparison of a stored OTP against a candidate."""
    if looks_like_bcrypt(stored):
        return verify_password(candidate, stored)
    return hmac.compare_digest(stored.encode("utf-8"), candidate.encode("utf-8"))


def _as_timedelta(ttl: int | timedelta | None, default_seconds: int) -> timedelta:
    if ttl is None:
        return timedelta(seconds=default_seconds)
    if isinstance(ttl, timedelta):
        return ttl
    return timedelta(seconds=ttl)


class VerificationService:
    def __init__(self, store: AccountStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    def issue(
        self,
        account_id: int,
        purpose: TokenPurpose,
        ttl: int | timedelta | None = None,
        now: datetime | None = None,
    ) -> str:
        code = generate_otp(self.settings.otp_length)
        if self.settings.otp_hash_codes:
            stored = bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")
        else:
            stored = code
        expires_at = (now or utcnow()) + _as_timedelta(ttl, self.settings.otp_ttl_seconds)
        self.store.replace_verification_token(
            VerificationToken(account_id=account_id, purpose=purpose, code=stored, expires_at=to_iso(expires_at))
        )
        logger.info("Issued %s code for account_id=%s", purpose.value, account_id)
        return code

    def verify(
        self,
        account_id: int,
        purpose: TokenPurpose,
        candidate: str,
        now: datetime | None = None,
    ) -> VerifyOutcome:
        token = self.store.get_verification_token(account_id, purpose)
        if token is None:
            return VerifyOutcome.INVALID_CODE

        attempts = self.store.increment_token_attempts(token.id)

        if token.is_used:
            return VerifyOutcome.INVALID_CODE
        if (now or utcnow()) >= from_iso(token.expires_at):
            return VerifyOutcome.EXPIRED
        if attempts > self.settings.otp_max_attempts:
            logger.warning("Too many %s attempts for account_id=%s", purpose.value, account_id)
            return VerifyOutcome.TOO_MANY_ATTEMPTS
        if not code_matches(token.code, candidate):
            return VerifyOutcome.INVALID_CODE
        if not self.store.mark_token_used(token.id):
            # Another request consumed it between our read and now.
            return VerifyOutcome.INVALID_CODE
        logger.info("Verified %s code for account_id=%s", purpose.value, account_id)
        return VerifyOutcome.SUCCESS

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def issue_reset_token(
        self,
        account_id: int,
        ttl: int | timedelta | None = None,
        now: datetime | None = None,
    ) -> str:
        token = generate_reset_token()
        expires_at = (now or utcnow()) + _as_timedelta(ttl, self.settings.reset_token_ttl_seconds)
        self.store.set_reset_token(account_id, hmac_token(token), expires_at)
        logger.info("Issued password reset token for account_id=%s", account_id)
        return token

    def reset_password(self, token: str, new_password: str, now: datetime | None = None) -> bool:
        """Consume a reset token and set the new password. False for any bad/expired token."""
        if not token:
            return False
        account = self.store.get_by_reset_token_hash(hmac_token(token))
        if account is None or account.reset_token_expiry is None or account.deleted_at is not None:
            return False
        if (now or utcnow()) >= from_iso(account.reset_token_expiry):
            self.store.clear_reset_token(account.id)
            return False
        self.store.set_password(account.id, hash_password(new_password))
        self.store.revoke_sessions_for_account(account.id)
        logger.info("Password reset completed for account_id=%s", account.id)
        return True
