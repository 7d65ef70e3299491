"""
auth/permissions.py -- Permission catalog, default role mapping, and resolver.

The catalog is a fixed, enumerable tuple of "resource:action" keys plus the
wildcard "*". Role and group permission lists must be subsets of the catalog
(wildcard excepted); validate_permission_keys() enforces that at every write
boundary (API models, role-defaults loader, CLI).

The default role -> permissions mapping is data. load_role_defaults() reads an
override from a JSON file so deployments can reshape roles without touching
the resolver.

Resolution:
  effective_permissions(account) = union of
      permissions of every Role the account holds (looked up by key, live)
    | permissions of every Group the account belongs to
    | the account's direct permissions

  has_permission() short-circuits on the wildcard.
  authorize() is the single checkpoint: unauthenticated / forbidden / granted.
  Unknown permission keys fail closed in authorize(), wildcard or not.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from auth.models import AccessDecision, Account, PermissionInfo, Role

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("storefront.auth")

WILDCARD = "*"

# (key, display name, category)
_CATALOG: tuple[tuple[str, str, str], ...] = (
    ("admin:read", "Read Admins", "admin"),
    ("admin:write", "Manage Admins", "admin"),
    ("group:read", "Read Groups", "groups"),
    ("group:write", "Manage Groups", "groups"),
    ("role:read", "Read Roles", "roles"),
    ("role:write", "Manage Roles", "roles"),
    ("user:read", "Read Users", "users"),
    ("user:write", "Manage Users", "users"),
    ("product:read", "Read Products", "products"),
    ("product:write", "Manage Products", "products"),
    ("order:read", "Read Orders", "orders"),
    ("order:write", "Manage Orders", "orders"),
    ("cms:access", "Access CMS", "cms"),
    ("cms:read", "Read CMS", "cms"),
    ("cms:write", "Manage CMS", "cms"),
)

PERMISSIONS: tuple[str, ...] = tuple(key for key, _, _ in _CATALOG)
PERMISSION_CATALOG: tuple[PermissionInfo, ...] = tuple(
    PermissionInfo(key=key, name=name, category=category) for key, name, category in _CATALOG
)

ROLE_DEFAULT_PERMISSIONS: dict[str, list[str]] = {
    "super_admin": [WILDCARD],
    "admin": list(PERMISSIONS),
    "moderator": ["user:read", "user:write", "product:read", "product:write", "order:read"],
    "support": ["user:read", "order:read"],
}

ROLE_DISPLAY_NAMES: dict[str, str] = {
    "super_admin": "Super Admin",
    "admin": "Admin",
    "moderator": "Moderator",
    "support": "Support",
}


def is_known_permission(key: str) -> bool:
    return key in PERMISSIONS


def validate_permission_keys(keys: Iterable[str]) -> list[str]:
    """Return keys deduplicated (order preserved). Raise ValueError on unknown keys.

    The wildcard is accepted. Everything else must be in the catalog.
    """
    seen: set[str] = set()
    result: list[str] = []
    unknown: list[str] = []
    for key in keys:
        key = str(key).strip()
        if key != WILDCARD and key not in PERMISSIONS:
            unknown.append(key)
            continue
        if key not in seen:
            seen.add(key)
            result.append(key)
    if unknown:
        raise ValueError(f"Unknown permission keys: {sorted(set(unknown))!r}")
    return result


def load_role_defaults(path: str | Path | None = None) -> dict[str, list[str]]:
    """Return the role -> permissions mapping, optionally overridden from JSON.

    The file is a JSON object of {"role_key": ["perm", ...]}. Roles in the
    file replace the built-in entry of the same key; roles not mentioned keep
    their defaults. Every list is validated against the catalog, so a typo in
    the file fails at startup instead of silently granting nothing.
    """
    mapping = {key: list(perms) for key, perms in ROLE_DEFAULT_PERMISSIONS.items()}
    if not path:
        return mapping
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Role permissions file must contain a JSON object.")
    for role_key, perms in raw.items():
        if not isinstance(perms, list):
            raise ValueError(f"Permissions for role {role_key!r} must be a list.")
        mapping[str(role_key)] = validate_permission_keys(perms)
    logger.info("Loaded role permission overrides for %d role(s) from %s", len(raw), path)
    return mapping


def has_permission(effective: Iterable[str], required: str) -> bool:
    """True if effective contains the wildcard, otherwise membership of required."""
    effective = set(effective)
    if WILDCARD in effective:
        return True
    return required in effective


class PermissionResolver:
    """Computes effective permissions against the live role/group tables.

    Holds no state beyond the store handle, so one instance is safe to share
    across concurrent requests.
    """

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def effective_permissions(self, account: Account) -> set[str]:
        effective: set[str] = set(account.permissions)
        for role in self.store.get_roles_by_keys(account.role_keys):
            effective.update(role.permissions)
        for group in self.store.get_groups_by_ids(account.group_ids):
            effective.update(group.permissions)
        return effective

    def covers(self, account: Account, granted: Iterable[str]) -> bool:
        """True if account already holds every key in granted.

        Only a wildcard holder covers the wildcard itself.
        """
        effective = self.effective_permissions(account)
        if WILDCARD in effective:
            return True
        return set(granted) <= effective

    def authorize(self, account: Account | None, required: str) -> AccessDecision:
        if account is None:
            return AccessDecision.UNAUTHENTICATED
        if not is_known_permission(required):
            logger.warning("Permission check for unknown key %r denied (account_id=%s)", required, account.id)
            return AccessDecision.FORBIDDEN
        if not has_permission(self.effective_permissions(account), required):
            logger.info("Permission %s denied for account_id=%s", required, account.id)
            return AccessDecision.FORBIDDEN
        return AccessDecision.GRANTED


def seed_defaults(store: AccountStore, roles_file: str | Path | None = None, overwrite: bool = False) -> int:
    """Seed the permission catalog and the default roles.

    Missing roles are always created. Existing roles keep their stored
    permissions unless overwrite is set, so admin edits survive restarts.
    Returns the number of roles written.
    """
    store.seed_permissions(PERMISSION_CATALOG)
    written = 0
    for key, perms in load_role_defaults(roles_file).items():
        role = Role(key=key, name=ROLE_DISPLAY_NAMES.get(key, key.replace("_", " ").title()), permissions=perms)
        if overwrite:
            store.upsert_role(role)
        elif store.get_role(key) is None:
            store.create_role(role)
        else:
            continue
        written += 1
    if written:
        logger.info("Seeded %d role(s)", written)
    return written
