"""
tests/test_permissions.py -- Permission catalog, role defaults and the resolver.

Coverage:
  - effective_permissions = roles | groups | direct grants, read live from the store
  - wildcard satisfies every catalog key
  - support scenario: user:write is forbidden
  - unknown keys fail closed, even for wildcard holders
  - require_permission() rejects unknown keys at declaration time
  - validate_permission_keys() / load_role_defaults() reject typos
"""

from __future__ import annotations

import json

import pytest

from auth.dependencies import require_permission
from auth.models import AccessDecision
from auth.permissions import (
    PERMISSIONS,
    ROLE_DEFAULT_PERMISSIONS,
    WILDCARD,
    PermissionResolver,
    has_permission,
    load_role_defaults,
    seed_defaults,
    validate_permission_keys,
)
from conftest import add_account, add_group


class TestHasPermission:
    def test_membership(self) -> None:
        assert has_permission({"user:read"}, "user:read")
        assert not has_permission({"user:read"}, "user:write")

    def test_wildcard_short_circuits(self) -> None:
        for key in PERMISSIONS:
            assert has_permission({WILDCARD}, key)

    def test_empty_set_denies(self) -> None:
        assert not has_permission(set(), "order:read")


class TestResolver:
    def test_union_of_roles_groups_and_direct(self, store) -> None:
        group_id = add_group(store, "catalog-editors", ["product:write", "cms:write"])
        account = add_account(store, "mix@example.com", roles=["support"], groups=[group_id], permissions=["cms:read"])

        effective = PermissionResolver(store).effective_permissions(account)
        assert effective == {"user:read", "order:read", "product:write", "cms:write", "cms:read"}

    def test_multiple_roles_union(self, store) -> None:
        account = add_account(store, "two@example.com", roles=["support", "moderator"])
        effective = PermissionResolver(store).effective_permissions(account)
        assert effective == set(ROLE_DEFAULT_PERMISSIONS["support"]) | set(ROLE_DEFAULT_PERMISSIONS["moderator"])

    def test_missing_role_contributes_nothing(self, store) -> None:
        account = add_account(store, "ghost@example.com", roles=["support"])
        store.delete_role("support")
        account = store.get_by_id(account.id)
        assert PermissionResolver(store).effective_permissions(account) == set()

    def test_role_edits_apply_to_existing_holders(self, store) -> None:
        account = add_account(store, "retro@example.com", roles=["support"])
        resolver = PermissionResolver(store)
        assert resolver.authorize(account, "order:write") is AccessDecision.FORBIDDEN

        store.update_role("support", permissions=["user:read", "order:read", "order:write"])
        assert resolver.authorize(account, "order:write") is AccessDecision.GRANTED

    def test_support_cannot_write_users(self, store) -> None:
        account = add_account(store, "support@example.com", roles=["support"])
        assert PermissionResolver(store).authorize(account, "user:write") is AccessDecision.FORBIDDEN

    def test_super_admin_granted_everything_in_catalog(self, store) -> None:
        account = add_account(store, "root@example.com", roles=["super_admin"])
        resolver = PermissionResolver(store)
        for key in PERMISSIONS:
            assert resolver.authorize(account, key) is AccessDecision.GRANTED

    def test_unknown_key_forbidden_even_with_wildcard(self, store) -> None:
        account = add_account(store, "root2@example.com", roles=["super_admin"])
        assert PermissionResolver(store).authorize(account, "billing:refund") is AccessDecision.FORBIDDEN

    def test_anonymous_is_unauthenticated(self, store) -> None:
        assert PermissionResolver(store).authorize(None, "user:read") is AccessDecision.UNAUTHENTICATED

    def test_covers_own_subset_only(self, store) -> None:
        account = add_account(store, "mod@example.com", roles=["moderator"])
        resolver = PermissionResolver(store)
        assert resolver.covers(account, ["user:read", "order:read"])
        assert resolver.covers(account, [])
        assert not resolver.covers(account, ["role:write"])
        assert not resolver.covers(account, ["*"])

    def test_wildcard_covers_wildcard(self, store) -> None:
        account = add_account(store, "root3@example.com", roles=["super_admin"])
        assert PermissionResolver(store).covers(account, ["*", "admin:write"])


class TestCatalogValidation:
    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="billing:refund"):
            validate_permission_keys(["user:read", "billing:refund"])

    def test_wildcard_and_duplicates(self) -> None:
        assert validate_permission_keys(["*", "user:read", "user:read"]) == ["*", "user:read"]

    def test_require_permission_rejects_unknown_key_at_declaration(self) -> None:
        with pytest.raises(ValueError):
            require_permission("user:delete")

    def test_require_permission_accepts_catalog_key(self) -> None:
        assert callable(require_permission("order:read"))


class TestRoleDefaults:
    def test_builtin_mapping(self) -> None:
        mapping = load_role_defaults()
        assert mapping["super_admin"] == [WILDCARD]
        assert set(mapping["admin"]) == set(PERMISSIONS)
        assert mapping["support"] == ["user:read", "order:read"]

    def test_file_override_replaces_named_roles_only(self, tmp_path) -> None:
        path = tmp_path / "roles.json"
        path.write_text(json.dumps({"support": ["order:read"], "auditor": ["user:read", "order:read"]}))

        mapping = load_role_defaults(path)
        assert mapping["support"] == ["order:read"]
        assert mapping["auditor"] == ["user:read", "order:read"]
        assert mapping["moderator"] == ROLE_DEFAULT_PERMISSIONS["moderator"]

    def test_file_with_unknown_permission_fails(self, tmp_path) -> None:
        path = tmp_path / "roles.json"
        path.write_text(json.dumps({"support": ["orders:read"]}))
        with pytest.raises(ValueError):
            load_role_defaults(path)

    def test_seed_keeps_admin_edits_unless_overwriting(self, store) -> None:
        store.update_role("support", permissions=["order:read"])

        assert seed_defaults(store) == 0
        assert store.get_role("support").permissions == ["order:read"]

        seed_defaults(store, overwrite=True)
        assert store.get_role("support").permissions == ROLE_DEFAULT_PERMISSIONS["support"]
