"""
auth/models.py -- Domain dataclasses and outcome enums for the trust core.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores, services and routes do the work.

Outcome enums (AccessDecision, VerifyOutcome, LoginResult) are the
discriminated results returned for expected failure modes. Nothing in auth/
raises for a bad code, an expired token or a missing permission -- callers
branch on the enum and the API layer maps it to a status code.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TokenPurpose(str, Enum):
    verify_email = "verify_email"
    reset_password = "reset_password"
    login = "login"


class VerifyOutcome(str, Enum):
    SUCCESS = "success"
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"


class AccessDecision(str, Enum):
    GRANTED = "granted"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


class LoginResult(str, Enum):
    SUCCESS = "success"
    INVALID = "invalid"
    LOCKED = "locked"


@dataclass
class Account:
    """An identity that can sign in to the admin backend.

    email is stored lower-cased and is unique. role_keys and group_ids are
    references only -- the resolver looks the Role/Group rows up on every
    check, so edits to a role apply retroactively to every holder.

    permissions holds direct grants on top of roles and groups.

    deleted_at marks a soft delete. Deleted accounts stay in the table
    (audit history references them) but never authenticate.
    """

    email: str
    name: str = ""
    id: int | None = None
    hashed_password: str | None = None
    role_keys: list[str] = field(default_factory=list)
    group_ids: list[int] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    is_active: bool = True
    is_blocked: bool = False
    is_verified: bool = False
    deleted_at: str | None = None
    reset_token_hash: str | None = None  # HMAC-SHA256 of the raw reset token
    reset_token_expiry: str | None = None
    login_attempts: int = 0
    locked_until: str | None = None
    last_login: str | None = None
    created_at: str | None = None

    @property
    def can_authenticate(self) -> bool:
        return self.is_active and not self.is_blocked and self.deleted_at is None


@dataclass
class Role:
    """A reusable named bundle of permission keys."""

    key: str
    name: str
    description: str = ""
    permissions: list[str] = field(default_factory=list)
    created_at: str | None = None


@dataclass
class Group:
    """An administrative bundle of permission keys, identified by unique name."""

    name: str
    description: str = ""
    permissions: list[str] = field(default_factory=list)
    id: int | None = None
    created_at: str | None = None


@dataclass
class PermissionInfo:
    """Display metadata for one catalog permission."""

    key: str
    name: str
    category: str
    description: str = ""


@dataclass
class VerificationToken:
    """A short-lived, attempt-limited, single-use code bound to one account.

    code is either the plaintext code or a bcrypt hash of it. The two are
    told apart by the "$2" prefix at compare time (see auth/verification.py).
    """

    account_id: int
    purpose: TokenPurpose
    code: str
    expires_at: str
    attempts: int = 0
    is_used: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass
class SessionRecord:
    """Server-side half of a cookie session. The raw token is never stored."""

    account_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    revoked_at: str | None = None
