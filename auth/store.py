"""
auth/store.py -- SQLAlchemy Core persistence layer for the trust core.

Pattern: Repository + Data Mapper.
AccountStore is the repository; the _row_to_* functions are the mappers.
Services, dependencies and route code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Secrets are never stored raw. Session tokens and reset tokens are stored as
  HMAC-SHA256(SECRET_KEY, token) so the lookup stays O(1) through a UNIQUE
  index. OTP codes are bcrypt-hashed by the verification service before they
  reach this layer (plaintext codes remain readable for legacy rows).

Concurrency:
  One Engine per process (see get_store()). The engine's pool hands out
  connections on first use and reuses them afterwards; SQLite connections run
  in WAL mode so readers do not block behind writers. The store keeps no
  in-process lock -- the database's own transaction handling is the only
  concurrency control. Counters that act as security controls
  (verification attempts, login attempts) are incremented in SQL
  ("SET n = n + 1") and committed immediately, never read-modify-written.

Timestamps are ISO 8601 UTC strings with microsecond precision, so string
comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Account, Group, PermissionInfo, Role, SessionRecord, TokenPurpose, VerificationToken
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema -- defined exactly once per process, at module import
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased before insert
    Column("name", String(100), nullable=False, server_default=""),
    Column("hashed_password", Text),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON list of direct grants
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_blocked", Integer, nullable=False, server_default="0"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("deleted_at", String(40)),
    Column("reset_token_hash", String(64), unique=True),  # HMAC-SHA256 hex
    Column("reset_token_expiry", String(40)),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("key", String(64), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("permissions", Text, nullable=False, server_default="[]"),
    Column("created_at", String(40), nullable=False),
)

# "groups" is a reserved word on some backends.
_groups = Table(
    "admin_groups",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("permissions", Text, nullable=False, server_default="[]"),
    Column("created_at", String(40), nullable=False),
)

_account_roles = Table(
    "account_roles",
    _metadata,
    Column("account_id", Integer, ForeignKey("accounts.id"), primary_key=True),
    Column("role_key", String(64), primary_key=True),  # no FK: unknown keys resolve to nothing
)

_account_groups = Table(
    "account_groups",
    _metadata,
    Column("account_id", Integer, ForeignKey("accounts.id"), primary_key=True),
    Column("group_id", Integer, ForeignKey("admin_groups.id"), primary_key=True),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("key", String(64), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("category", String(50), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("revoked_at", String(40)),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("code", Text, nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(40), nullable=False),
    Column("created_at", String(40), nullable=False),
    # One live token per purpose -- issuing a new one replaces the row.
    UniqueConstraint("account_id", "purpose", name="uq_verification_account_purpose"),
)

# Columns update_account() accepts. Everything else has a dedicated method
# with its own invariants (passwords, reset tokens, lockout, soft delete).
_ACCOUNT_MUTABLE_FIELDS: frozenset[str] = frozenset(
    {"name", "email", "is_active", "is_blocked", "is_verified", "permissions"}
)
_BOOL_COLUMNS: frozenset[str] = frozenset({"is_active", "is_blocked", "is_verified"})


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return to_iso(utcnow())


def _dump_keys(keys: Iterable[str]) -> str:
    return json.dumps(list(keys))


def _load_keys(raw: str | None) -> list[str]:
    if not raw:
        return []
    return list(json.loads(raw))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for accounts, roles, groups, sessions and verification tokens.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.create_account(Account(email="ops@example.com", hashed_password=...))
        store.set_account_roles(account_id, ["support"])
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return (result or 0) > 0

    def create_account(self, account: Account) -> int:
        """Insert a new account (plus its role/group links) and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email.strip().lower(),
                    name=account.name,
                    hashed_password=account.hashed_password,
                    permissions=_dump_keys(account.permissions),
                    is_active=1 if account.is_active else 0,
                    is_blocked=1 if account.is_blocked else 0,
                    is_verified=1 if account.is_verified else 0,
                    created_at=_now_iso(),
                )
            )
            account_id = result.inserted_primary_key[0]
            for key in dict.fromkeys(account.role_keys):
                conn.execute(_account_roles.insert().values(account_id=account_id, role_key=key))
            for group_id in dict.fromkeys(account.group_ids):
                conn.execute(_account_groups.insert().values(account_id=account_id, group_id=group_id))
            conn.commit()
        return account_id

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive). Soft-deleted rows are included."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email.strip().lower())).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def get_by_reset_token_hash(self, token_hash: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.reset_token_hash == token_hash)).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def list_accounts(self, include_deleted: bool = False) -> list[Account]:
        query = _accounts.select().order_by(_accounts.c.email)
        if not include_deleted:
            query = query.where(_accounts.c.deleted_at.is_(None))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            return [self._hydrate(conn, r) for r in rows]

    def update_account(self, account_id: int, **fields) -> bool:
        """Update simple mutable fields on an account.

        Accepted fields: name, email, is_active, is_blocked, is_verified,
        permissions (list of keys). Unknown fields raise ValueError.

        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - _ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if not fields:
            return False
        for name in _BOOL_COLUMNS & fields.keys():
            fields[name] = 1 if fields[name] else 0
        if "permissions" in fields:
            fields["permissions"] = _dump_keys(fields["permissions"])
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_password(self, account_id: int, hashed_password: str) -> bool:
        """Store a new password hash and clear recovery + lockout state in the same write."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    hashed_password=hashed_password,
                    reset_token_hash=None,
                    reset_token_expiry=None,
                    login_attempts=0,
                    locked_until=None,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def soft_delete_account(self, account_id: int) -> bool:
        """Flag an account deleted and inactive. The row is never purged."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.deleted_at.is_(None)))
                .values(deleted_at=_now_iso(), is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def set_account_roles(self, account_id: int, role_keys: Iterable[str]) -> None:
        """Replace the account's role references."""
        with self.engine.connect() as conn:
            conn.execute(_account_roles.delete().where(_account_roles.c.account_id == account_id))
            for key in dict.fromkeys(role_keys):
                conn.execute(_account_roles.insert().values(account_id=account_id, role_key=key))
            conn.commit()

    def set_account_groups(self, account_id: int, group_ids: Iterable[int]) -> None:
        """Replace the account's group memberships."""
        with self.engine.connect() as conn:
            conn.execute(_account_groups.delete().where(_account_groups.c.account_id == account_id))
            for group_id in dict.fromkeys(group_ids):
                conn.execute(_account_groups.insert().values(account_id=account_id, group_id=group_id))
            conn.commit()

    # ------------------------------------------------------------------
    # Login lockout
    # ------------------------------------------------------------------

    def record_login_failure(self, account_id: int, max_attempts: int, lock_seconds: int) -> int:
        """Count one failed login; lock the account once max_attempts is reached.

        A lock that has already expired restarts the counter at 1. The
        increment is done in SQL and committed before the lock decision is
        made, so concurrent failures are never lost.

        Returns the attempt count after this failure.
        """
        now = utcnow()
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            locked_until = conn.execute(
                select(_accounts.c.locked_until).where(_accounts.c.id == account_id)
            ).scalar()
            if locked_until is not None and locked_until <= now_iso:
                conn.execute(
                    _accounts.update().where(_accounts.c.id == account_id).values(login_attempts=1, locked_until=None)
                )
                conn.commit()
                return 1
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(login_attempts=_accounts.c.login_attempts + 1)
            )
            conn.commit()
            attempts = conn.execute(
                select(_accounts.c.login_attempts).where(_accounts.c.id == account_id)
            ).scalar()
            if attempts is not None and attempts >= max_attempts and locked_until is None:
                conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == account_id)
                    .values(locked_until=to_iso(now + timedelta(seconds=lock_seconds)))
                )
                conn.commit()
        return attempts or 0

    def record_login_success(self, account_id: int) -> None:
        """Reset lockout state and stamp last_login."""
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(login_attempts=0, locked_until=None, last_login=_now_iso())
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Password reset tokens (stored on the account row)
    # ------------------------------------------------------------------

    def set_reset_token(self, account_id: int, token_hash: str, expires_at: datetime) -> None:
        """Store a reset token hash, replacing any previous one."""
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(reset_token_hash=token_hash, reset_token_expiry=to_iso(expires_at))
            )
            conn.commit()

    def clear_reset_token(self, account_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(reset_token_hash=None, reset_token_expiry=None)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> None:
        """Insert a role. Raises IntegrityError if the key already exists."""
        with self.engine.connect() as conn:
            conn.execute(
                _roles.insert().values(
                    key=role.key,
                    name=role.name,
                    description=role.description,
                    permissions=_dump_keys(role.permissions),
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def upsert_role(self, role: Role) -> None:
        """Create the role or overwrite its name/description/permissions."""
        if self.get_role(role.key) is None:
            self.create_role(role)
            return
        self.update_role(role.key, name=role.name, description=role.description, permissions=role.permissions)

    def get_role(self, key: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.key == key)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_roles_by_keys(self, keys: Iterable[str]) -> list[Role]:
        keys = list(keys)
        if not keys:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.key.in_(keys))).fetchall()
        return [_row_to_role(r) for r in rows]

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.key)).fetchall()
        return [_row_to_role(r) for r in rows]

    def update_role(self, key: str, **fields) -> bool:
        """Update name, description and/or permissions. Last writer wins."""
        values: dict = {}
        if fields.get("name") is not None:
            values["name"] = fields["name"]
        if fields.get("description") is not None:
            values["description"] = fields["description"]
        if fields.get("permissions") is not None:
            values["permissions"] = _dump_keys(fields["permissions"])
        if not values:
            return self.get_role(key) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.key == key).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, key: str) -> bool:
        """Delete a role and every account reference to it."""
        with self.engine.connect() as conn:
            conn.execute(_account_roles.delete().where(_account_roles.c.role_key == key))
            result = conn.execute(_roles.delete().where(_roles.c.key == key))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, group: Group) -> int:
        """Insert a group and return its ID. Raises IntegrityError on duplicate name."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _groups.insert().values(
                    name=group.name,
                    description=group.description,
                    permissions=_dump_keys(group.permissions),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_group(self, group_id: int) -> Group | None:
        with self.engine.connect() as conn:
            row = conn.execute(_groups.select().where(_groups.c.id == group_id)).fetchone()
        return _row_to_group(row) if row is not None else None

    def get_groups_by_ids(self, group_ids: Iterable[int]) -> list[Group]:
        group_ids = list(group_ids)
        if not group_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(_groups.select().where(_groups.c.id.in_(group_ids))).fetchall()
        return [_row_to_group(r) for r in rows]

    def list_groups(self, search: str | None = None) -> list[Group]:
        query = _groups.select().order_by(_groups.c.name)
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(
                func.lower(_groups.c.name).like(pattern) | func.lower(_groups.c.description).like(pattern)
            )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_group(r) for r in rows]

    def update_group(self, group_id: int, **fields) -> bool:
        values: dict = {}
        if fields.get("name") is not None:
            values["name"] = fields["name"]
        if fields.get("description") is not None:
            values["description"] = fields["description"]
        if fields.get("permissions") is not None:
            values["permissions"] = _dump_keys(fields["permissions"])
        if not values:
            return self.get_group(group_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_groups.update().where(_groups.c.id == group_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_group(self, group_id: int) -> bool:
        with self.engine.connect() as conn:
            conn.execute(_account_groups.delete().where(_account_groups.c.group_id == group_id))
            result = conn.execute(_groups.delete().where(_groups.c.id == group_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Permission catalog
    # ------------------------------------------------------------------

    def seed_permissions(self, catalog: Iterable[PermissionInfo]) -> int:
        """Insert catalog entries that are missing. Existing rows are left alone.

        Returns the number of rows inserted.
        """
        inserted = 0
        with self.engine.connect() as conn:
            existing = set(conn.execute(select(_permissions.c.key)).scalars())
            for perm in catalog:
                if perm.key in existing:
                    continue
                conn.execute(
                    _permissions.insert().values(
                        key=perm.key, name=perm.name, category=perm.category, description=perm.description
                    )
                )
                inserted += 1
            conn.commit()
        return inserted

    def list_permissions(self, category: str | None = None) -> list[PermissionInfo]:
        query = _permissions.select().order_by(_permissions.c.key)
        if category:
            query = query.where(_permissions.c.category == category)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            PermissionInfo(key=r.key, name=r.name, category=r.category, description=r.description or "")
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, record: SessionRecord) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    token_hash=record.token_hash,
                    account_id=record.account_id,
                    created_at=_now_iso(),
                    expires_at=record.expires_at,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_live_session(self, token_hash: str, now: datetime | None = None) -> SessionRecord | None:
        """Return the session for token_hash if it is neither revoked nor expired."""
        now_iso = to_iso(now or utcnow())
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.token_hash == token_hash)
                    & (_sessions.c.revoked_at.is_(None))
                    & (_sessions.c.expires_at > now_iso)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def revoke_session(self, token_hash: str) -> bool:
        """Mark a session revoked. Returns False if unknown or already revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == token_hash) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_sessions_for_account(self, account_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.account_id == account_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        """Delete expired or revoked session rows. Returns the number removed."""
        now_iso = to_iso(now or utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.expires_at <= now_iso) | (_sessions.c.revoked_at.is_not(None)))
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def replace_verification_token(self, token: VerificationToken) -> int:
        """Store token as the only live token for (account_id, purpose).

        The delete and insert share one transaction, so a concurrent verify()
        sees either the old token or the new one, never both.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.account_id == token.account_id)
                    & (_verification_tokens.c.purpose == token.purpose.value)
                )
            )
            result = conn.execute(
                _verification_tokens.insert().values(
                    account_id=token.account_id,
                    purpose=token.purpose.value,
                    code=token.code,
                    attempts=0,
                    is_used=0,
                    expires_at=token.expires_at,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_verification_token(self, account_id: int, purpose: TokenPurpose) -> VerificationToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(
                    (_verification_tokens.c.account_id == account_id)
                    & (_verification_tokens.c.purpose == purpose.value)
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def increment_token_attempts(self, token_id: int) -> int:
        """Atomically add one attempt, commit, and return the new count."""
        with self.engine.connect() as conn:
            conn.execute(
                _verification_tokens.update()
                .where(_verification_tokens.c.id == token_id)
                .values(attempts=_verification_tokens.c.attempts + 1)
            )
            conn.commit()
            attempts = conn.execute(
                select(_verification_tokens.c.attempts).where(_verification_tokens.c.id == token_id)
            ).scalar()
        return attempts or 0

    def mark_token_used(self, token_id: int) -> bool:
        """Compare-and-set is_used 0 -> 1. Only one concurrent caller can win."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _verification_tokens.update()
                .where((_verification_tokens.c.id == token_id) & (_verification_tokens.c.is_used == 0))
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount > 0

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        now_iso = to_iso(now or utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.expires_at <= now_iso))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _hydrate(self, conn, row) -> Account:
        role_keys = list(
            conn.execute(
                select(_account_roles.c.role_key)
                .where(_account_roles.c.account_id == row.id)
                .order_by(_account_roles.c.role_key)
            ).scalars()
        )
        group_ids = list(
            conn.execute(
                select(_account_groups.c.group_id)
                .where(_account_groups.c.account_id == row.id)
                .order_by(_account_groups.c.group_id)
            ).scalars()
        )
        return _row_to_account(row, role_keys, group_ids)


@lru_cache
def get_store() -> AccountStore:
    """Return the process-wide AccountStore.

    lru_cache is the init-once guard: the engine and the schema are created
    on the first call and every later call reuses them.
    """
    return AccountStore()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, role_keys: list[str], group_ids: list[int]) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name or "",
        hashed_password=row.hashed_password,
        role_keys=role_keys,
        group_ids=group_ids,
        permissions=_load_keys(row.permissions),
        is_active=bool(row.is_active),
        is_blocked=bool(row.is_blocked),
        is_verified=bool(row.is_verified),
        deleted_at=row.deleted_at,
        reset_token_hash=row.reset_token_hash,
        reset_token_expiry=row.reset_token_expiry,
        login_attempts=row.login_attempts or 0,
        locked_until=row.locked_until,
        last_login=row.last_login,
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        key=row.key,
        name=row.name,
        description=row.description or "",
        permissions=_load_keys(row.permissions),
        created_at=row.created_at,
    )


def _row_to_group(row) -> Group:
    return Group(
        id=row.id,
        name=row.name,
        description=row.description or "",
        permissions=_load_keys(row.permissions),
        created_at=row.created_at,
    )


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
    )


def _row_to_token(row) -> VerificationToken:
    return VerificationToken(
        id=row.id,
        account_id=row.account_id,
        purpose=TokenPurpose(row.purpose),
        code=row.code,
        attempts=row.attempts or 0,
        is_used=bool(row.is_used),
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
