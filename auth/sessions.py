"""
auth/sessions.py -- Cookie session lifecycle: issue, validate, revoke.

The cookie carries a 256-bit random token and nothing else -- no account id,
no email, no role. The server keeps a session record keyed by
HMAC-SHA256(SECRET_KEY, token) with an absolute expiry matching the cookie
max-age. Revocation marks the record, so it takes effect on the very next
request everywhere, not when the browser drops the cookie.

validate_session() is fail-open-to-anonymous: any missing, malformed,
unknown, expired or revoked token returns None and never raises.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from auth.models import SessionRecord
from auth.store import AccountStore, to_iso, utcnow
from auth.tokens import hmac_token
from core.config import get_settings

logger = logging.getLogger("storefront.auth")

# token_urlsafe(32) yields 43 chars; anything far outside that is not ours.
_MAX_TOKEN_LENGTH = 128


def _well_formed(token) -> bool:
    return isinstance(token, str) and 0 < len(token) <= _MAX_TOKEN_LENGTH and token.isascii()


class SessionManager:
    def __init__(self, store: AccountStore, max_age_seconds: int | None = None) -> None:
        self.store = store
        self.max_age_seconds = max_age_seconds or get_settings().session_max_age_seconds

    def issue_session(self, account_id: int, now: datetime | None = None) -> str:
        """Create a session for account_id and return the raw token for the cookie."""
        token = secrets.token_urlsafe(32)
        expires_at = (now or utcnow()) + timedelta(seconds=self.max_age_seconds)
        self.store.create_session(
            SessionRecord(account_id=account_id, token_hash=hmac_token(token), expires_at=to_iso(expires_at))
        )
        logger.info("Session issued for account_id=%s", account_id)
        return token

    def validate_session(self, token: str | None, now: datetime | None = None) -> int | None:
        """Return the account id the token belongs to, or None."""
        if not _well_formed(token):
            return None
        record = self.store.get_live_session(hmac_token(token), now=now)
        return record.account_id if record is not None else None

    def revoke_session(self, token: str | None) -> None:
        """Invalidate token for all later requests. Revoking twice is a no-op."""
        if not _well_formed(token):
            return
        if self.store.revoke_session(hmac_token(token)):
            logger.info("Session revoked")

    def revoke_all(self, account_id: int) -> int:
        """Revoke every live session of an account. Returns how many were revoked."""
        count = self.store.revoke_sessions_for_account(account_id)
        if count:
            logger.info("Revoked %d session(s) for account_id=%s", count, account_id)
        return count
