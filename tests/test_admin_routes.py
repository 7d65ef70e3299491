"""
tests/test_admin_routes.py -- Role, group, permission and account administration over HTTP.

Coverage:
  - every admin route answers 401 anonymous and 403 without the permission
  - role CRUD, protected super_admin, role edits apply to holders immediately
  - group CRUD and membership-derived permissions
  - account CRUD: unknown roles/groups rejected, duplicates 409,
    self-lockout guards, block/delete revoke sessions
  - PUT /users/{id}/password requires user:write and >= 8 characters
  - grants need admin:write and never exceed the caller's own permissions
"""

from __future__ import annotations

import pytest

from auth.sessions import SessionManager
from conftest import DEFAULT_PASSWORD, add_account, add_group

_PROTECTED = [
    ("get", "/api/v1/roles", None),
    ("post", "/api/v1/roles", {"key": "auditor", "name": "Auditor"}),
    ("get", "/api/v1/groups", None),
    ("get", "/api/v1/permissions", None),
    ("get", "/api/v1/users", None),
    ("put", "/api/v1/users/1/password", {"newPassword": "another-pass-1"}),
]


@pytest.mark.parametrize("method,url,body", _PROTECTED)
def test_anonymous_gets_401(api, method: str, url: str, body) -> None:
    resp = getattr(api.client, method)(url, **({"json": body} if body else {}))
    assert resp.status_code == 401


@pytest.mark.parametrize("method,url,body", _PROTECTED)
def test_account_without_permission_gets_403(api, method: str, url: str, body) -> None:
    add_account(api.store, "nobody@example.com")
    api.as_account("nobody@example.com")
    resp = getattr(api.client, method)(url, **({"json": body} if body else {}))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


@pytest.fixture
def admin(api):
    account = add_account(api.store, "admin@example.com", roles=["admin"])
    api.as_account("admin@example.com")
    return account


class TestRoles:
    def test_list_seeded_roles(self, api, admin) -> None:
        keys = [r["key"] for r in api.client.get("/api/v1/roles").json()]
        assert keys == ["admin", "moderator", "super_admin", "support"]

    def test_create_get_update_delete(self, api, admin) -> None:
        created = api.client.post(
            "/api/v1/roles", json={"key": "auditor", "name": "Auditor", "permissions": ["order:read"]}
        )
        assert created.status_code == 201
        assert created.json()["permissions"] == ["order:read"]

        assert api.client.get("/api/v1/roles/auditor").json()["name"] == "Auditor"

        updated = api.client.put("/api/v1/roles/auditor", json={"permissions": ["order:read", "user:read"]})
        assert updated.status_code == 200
        assert updated.json()["permissions"] == ["order:read", "user:read"]
        assert updated.json()["name"] == "Auditor"

        assert api.client.delete("/api/v1/roles/auditor").status_code == 204
        assert api.client.get("/api/v1/roles/auditor").status_code == 404

    def test_duplicate_key_is_409(self, api, admin) -> None:
        resp = api.client.post("/api/v1/roles", json={"key": "support", "name": "Support"})
        assert resp.status_code == 409

    def test_unknown_permission_is_422(self, api, admin) -> None:
        resp = api.client.post("/api/v1/roles", json={"key": "bad", "name": "Bad", "permissions": ["orders:read"]})
        assert resp.status_code == 422

    def test_wildcard_accepted_from_wildcard_holder(self, api) -> None:
        add_account(api.store, "root@example.com", roles=["super_admin"])
        api.as_account("root@example.com")
        resp = api.client.post("/api/v1/roles", json={"key": "owner", "name": "Owner", "permissions": ["*"]})
        assert resp.status_code == 201

    def test_wildcard_refused_without_wildcard(self, api, admin) -> None:
        resp = api.client.post("/api/v1/roles", json={"key": "owner", "name": "Owner", "permissions": ["*"]})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "grant_exceeds_own"

        widened = api.client.put("/api/v1/roles/support", json={"permissions": ["*"]})
        assert widened.status_code == 403
        assert api.store.get_role("support").permissions == ["user:read", "order:read"]

    def test_super_admin_is_protected(self, api, admin) -> None:
        resp = api.client.delete("/api/v1/roles/super_admin")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "protected_role"

    def test_empty_update_is_400(self, api, admin) -> None:
        assert api.client.put("/api/v1/roles/support", json={}).status_code == 400

    def test_role_edit_applies_to_holders_immediately(self, api, admin) -> None:
        add_account(api.store, "helper@example.com", roles=["support"])
        api.client.put("/api/v1/roles/support", json={"permissions": ["user:read", "order:read", "role:read"]})

        api.as_account("helper@example.com")
        assert api.client.get("/api/v1/roles").status_code == 200


class TestGroups:
    def test_crud_and_search(self, api, admin) -> None:
        created = api.client.post("/api/v1/groups", json={"name": "Catalog", "permissions": ["product:write"]})
        assert created.status_code == 201
        gid = created.json()["id"]

        assert [g["id"] for g in api.client.get("/api/v1/groups", params={"search": "cata"}).json()] == [gid]
        patched = api.client.patch(f"/api/v1/groups/{gid}", json={"description": "Product editors"})
        assert patched.json()["description"] == "Product editors"
        assert patched.json()["permissions"] == ["product:write"]

        assert api.client.delete(f"/api/v1/groups/{gid}").status_code == 204
        assert api.client.get(f"/api/v1/groups/{gid}").status_code == 404

    def test_duplicate_name_is_409(self, api, admin) -> None:
        api.client.post("/api/v1/groups", json={"name": "Ops"})
        assert api.client.post("/api/v1/groups", json={"name": "Ops"}).status_code == 409

    def test_group_membership_grants_permission(self, api, admin) -> None:
        gid = add_group(api.store, "Role Readers", ["role:read"])
        add_account(api.store, "member@example.com", groups=[gid])
        api.as_account("member@example.com")
        assert api.client.get("/api/v1/roles").status_code == 200
        assert api.client.get("/api/v1/users").status_code == 403


class TestPermissionsCatalog:
    def test_list_and_filter(self, api, admin) -> None:
        everything = api.client.get("/api/v1/permissions").json()
        assert len(everything) == 15
        orders = api.client.get("/api/v1/permissions", params={"category": "orders"}).json()
        assert [p["key"] for p in orders] == ["order:read", "order:write"]


class TestUsers:
    def test_create_and_fetch(self, api, admin) -> None:
        resp = api.client.post(
            "/api/v1/users",
            json={"email": "New@Example.com", "name": "New", "password": "initial-pass", "roles": ["support"]},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["email"] == "new@example.com"
        assert body["roles"] == ["support"]
        assert "hashed_password" not in body

        assert api.client.get(f"/api/v1/users/{body['id']}").json()["email"] == "new@example.com"
        api.client.cookies.clear()
        assert api.login("new@example.com", "initial-pass").status_code == 200

    def test_duplicate_email_is_409(self, api, admin) -> None:
        body = {"email": "admin@example.com", "password": "initial-pass"}
        assert api.client.post("/api/v1/users", json=body).status_code == 409

    def test_unknown_role_or_group_is_400(self, api, admin) -> None:
        bad_role = api.client.post(
            "/api/v1/users", json={"email": "x@example.com", "password": "initial-pass", "roles": ["wizard"]}
        )
        assert bad_role.status_code == 400
        assert bad_role.json()["error"]["code"] == "unknown_role"

        bad_group = api.client.post(
            "/api/v1/users", json={"email": "y@example.com", "password": "initial-pass", "group_ids": [404]}
        )
        assert bad_group.status_code == 400
        assert bad_group.json()["error"]["code"] == "unknown_group"

    def test_patch_roles_and_flags(self, api, admin) -> None:
        target = add_account(api.store, "target@example.com", roles=["support"])
        resp = api.client.patch(f"/api/v1/users/{target.id}", json={"roles": ["moderator"], "name": "Target"})
        assert resp.status_code == 200
        assert resp.json()["roles"] == ["moderator"]
        assert resp.json()["name"] == "Target"

    def test_blocking_revokes_sessions(self, api, admin) -> None:
        target = add_account(api.store, "victim@example.com")
        session = SessionManager(api.store).issue_session(target.id)

        resp = api.client.patch(f"/api/v1/users/{target.id}", json={"is_blocked": True})
        assert resp.status_code == 200
        assert resp.json()["is_blocked"] is True
        assert SessionManager(api.store).validate_session(session) is None

    def test_cannot_block_self(self, api, admin) -> None:
        resp = api.client.patch(f"/api/v1/users/{admin.id}", json={"is_blocked": True})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"

    def test_empty_patch_is_400(self, api, admin) -> None:
        target = add_account(api.store, "idle@example.com")
        assert api.client.patch(f"/api/v1/users/{target.id}", json={}).status_code == 400

    def test_soft_delete(self, api, admin) -> None:
        target = add_account(api.store, "leaver@example.com")
        session = SessionManager(api.store).issue_session(target.id)

        assert api.client.delete(f"/api/v1/users/{target.id}").status_code == 204
        assert api.client.delete(f"/api/v1/users/{target.id}").status_code == 404
        assert SessionManager(api.store).validate_session(session) is None

        listed = [u["email"] for u in api.client.get("/api/v1/users").json()]
        assert "leaver@example.com" not in listed
        with_deleted = api.client.get("/api/v1/users", params={"include_deleted": "true"}).json()
        assert any(u["email"] == "leaver@example.com" and u["is_deleted"] for u in with_deleted)

    def test_cannot_delete_self(self, api, admin) -> None:
        assert api.client.delete(f"/api/v1/users/{admin.id}").status_code == 400

    def test_missing_user_is_404(self, api, admin) -> None:
        assert api.client.get("/api/v1/users/9999").status_code == 404


class TestSetPassword:
    def test_sets_password_and_revokes_sessions(self, api, admin) -> None:
        target = add_account(api.store, "reset-me@example.com")
        session = SessionManager(api.store).issue_session(target.id)

        resp = api.client.put(f"/api/v1/users/{target.id}/password", json={"newPassword": "chosen-by-admin"})
        assert resp.status_code == 200
        assert SessionManager(api.store).validate_session(session) is None

        api.client.cookies.clear()
        assert api.login("reset-me@example.com", DEFAULT_PASSWORD).status_code == 401
        assert api.login("reset-me@example.com", "chosen-by-admin").status_code == 200

    def test_short_password_rejected(self, api, admin) -> None:
        target = add_account(api.store, "short@example.com")
        resp = api.client.put(f"/api/v1/users/{target.id}/password", json={"newPassword": "1234567"})
        assert resp.status_code == 422

    def test_support_role_cannot_set_passwords(self, api) -> None:
        target = add_account(api.store, "victim2@example.com")
        add_account(api.store, "support@example.com", roles=["support"])
        api.as_account("support@example.com")
        resp = api.client.put(f"/api/v1/users/{target.id}/password", json={"newPassword": "another-pass-1"})
        assert resp.status_code == 403


class TestPrivilegeEscalation:
    """user:write covers customer-style fields only; grants need admin:write
    and can never exceed what the caller holds."""

    @pytest.fixture
    def moderator(self, api):
        account = add_account(api.store, "mod@example.com", roles=["moderator"])
        api.as_account("mod@example.com")
        return account

    def test_moderator_cannot_grant_itself_super_admin(self, api, moderator) -> None:
        assert api.client.get("/api/v1/roles").status_code == 403

        resp = api.client.patch(f"/api/v1/users/{moderator.id}", json={"roles": ["super_admin"]})
        assert resp.status_code == 403
        assert api.store.get_by_id(moderator.id).role_keys == ["moderator"]
        assert api.client.get("/api/v1/roles").status_code == 403

    def test_moderator_cannot_grant_itself_wildcard(self, api, moderator) -> None:
        resp = api.client.patch(f"/api/v1/users/{moderator.id}", json={"permissions": ["*"]})
        assert resp.status_code == 403
        assert api.store.get_by_id(moderator.id).permissions == []

    def test_moderator_cannot_create_privileged_account(self, api, moderator) -> None:
        body = {"email": "sock@example.com", "password": "initial-pass", "roles": ["super_admin"]}
        assert api.client.post("/api/v1/users", json=body).status_code == 403
        assert api.store.get_by_email("sock@example.com") is None

    def test_moderator_cannot_reset_super_admin_password(self, api, moderator) -> None:
        root = add_account(api.store, "root@example.com", roles=["super_admin"])
        resp = api.client.put(f"/api/v1/users/{root.id}/password", json={"newPassword": "taken-over-1"})
        assert resp.status_code == 403

        api.client.cookies.clear()
        assert api.login("root@example.com", "taken-over-1").status_code == 401
        assert api.login("root@example.com", DEFAULT_PASSWORD).status_code == 200

    def test_moderator_cannot_block_or_delete_privileged_account(self, api, moderator) -> None:
        root = add_account(api.store, "root@example.com", roles=["super_admin"])
        assert api.client.patch(f"/api/v1/users/{root.id}", json={"is_blocked": True}).status_code == 403
        assert api.client.delete(f"/api/v1/users/{root.id}").status_code == 403
        assert api.store.get_by_id(root.id).can_authenticate

    def test_moderator_still_manages_plain_accounts(self, api, moderator) -> None:
        customer = add_account(api.store, "customer@example.com")
        created = api.client.post("/api/v1/users", json={"email": "new@example.com", "password": "initial-pass"})
        assert created.status_code == 201
        assert api.client.patch(f"/api/v1/users/{customer.id}", json={"name": "Customer"}).status_code == 200
        resp = api.client.put(f"/api/v1/users/{customer.id}/password", json={"newPassword": "another-pass-1"})
        assert resp.status_code == 200

    def test_moderator_can_rename_itself(self, api, moderator) -> None:
        resp = api.client.patch(f"/api/v1/users/{moderator.id}", json={"name": "Mod"})
        assert resp.status_code == 200
        assert resp.json()["roles"] == ["moderator"]

    def test_admin_cannot_grant_beyond_own_permissions(self, api, admin) -> None:
        target = add_account(api.store, "target@example.com")
        resp = api.client.patch(f"/api/v1/users/{target.id}", json={"roles": ["super_admin"]})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "grant_exceeds_own"

        root = add_account(api.store, "root@example.com", roles=["super_admin"])
        resp = api.client.put(f"/api/v1/users/{root.id}/password", json={"newPassword": "another-pass-1"})
        assert resp.status_code == 403

    def test_wildcard_holder_can_grant_super_admin(self, api) -> None:
        add_account(api.store, "root@example.com", roles=["super_admin"])
        target = add_account(api.store, "heir@example.com", roles=["admin"])
        api.as_account("root@example.com")
        resp = api.client.patch(f"/api/v1/users/{target.id}", json={"roles": ["super_admin"]})
        assert resp.status_code == 200
        assert resp.json()["roles"] == ["super_admin"]
