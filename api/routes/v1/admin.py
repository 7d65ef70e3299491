"""
api/routes/v1/admin.py -- Role, group, permission and account administration.

Routes:
  GET    /api/v1/roles                 -- list roles                (role:read)
  POST   /api/v1/roles                 -- create role               (role:write)
  GET    /api/v1/roles/{key}           -- role detail               (role:read)
  PUT    /api/v1/roles/{key}           -- update role               (role:write)
  DELETE /api/v1/roles/{key}           -- delete role               (role:write)
  GET    /api/v1/groups                -- list groups, ?search=     (group:read)
  POST   /api/v1/groups                -- create group              (group:write)
  GET    /api/v1/groups/{id}           -- group detail              (group:read)
  PATCH  /api/v1/groups/{id}           -- update group              (group:write)
  DELETE /api/v1/groups/{id}           -- delete group              (group:write)
  GET    /api/v1/permissions           -- catalog, ?category=       (role:read)
  GET    /api/v1/users                 -- list accounts             (user:read)
  POST   /api/v1/users                 -- create account            (user:write)
  GET    /api/v1/users/{id}            -- account detail            (user:read)
  PATCH  /api/v1/users/{id}            -- update account            (user:write)
  DELETE /api/v1/users/{id}            -- soft-delete account       (user:write)
  PUT    /api/v1/users/{id}/password   -- set account password      (user:write)

Every route goes through require_permission(). Role edits apply to every
holder on their next request because accounts reference roles by key.

Security:
  Assigning roles, groups or direct permissions to an account additionally
       requires admin:write. So does editing, deleting or setting the
       password of an account that already holds any of them.
  No caller can hand out a permission it does not hold itself, whether
       through an account, a role or a group. Only wildcard holders can
       grant the wildcard.
  PATCH/DELETE /users/{id} block self-deactivation, self-block and
       self-deletion so an admin cannot lock themselves out.
  Blocking, deactivating, deleting or re-keying an account revokes all of
  its sessions immediately.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import (
    AccountCreate,
    AccountPatch,
    AccountResponse,
    GroupCreate,
    GroupResponse,
    GroupUpdate,
    MessageResponse,
    PermissionResponse,
    RoleCreate,
    RoleResponse,
    RoleUpdate,
    SetPasswordRequest,
)
from auth.dependencies import require_permission
from auth.models import AccessDecision, Account, Group, Role
from auth.permissions import PermissionResolver
from auth.sessions import SessionManager
from auth.store import AccountStore
from auth.tokens import hash_password

logger = logging.getLogger("storefront.api")

# super_admin holds the wildcard; deleting it would strand every holder.
PROTECTED_ROLES = frozenset({"super_admin"})

router = APIRouter()


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{what} not found."})


def _conflict(message: str) -> HTTPException:
    return HTTPException(status_code=409, detail={"code": "conflict", "message": message})


def _no_changes() -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "no_changes", "message": "No fields to update."})


def _check_references(store: AccountStore, role_keys: list[str] | None, group_ids: list[int] | None) -> None:
    """Reject role keys and group ids that do not exist."""
    if role_keys:
        found = {r.key for r in store.get_roles_by_keys(role_keys)}
        missing = sorted(set(role_keys) - found)
        if missing:
            raise HTTPException(
                status_code=400,
                detail={"code": "unknown_role", "message": "Unknown role key.", "detail": ", ".join(missing)},
            )
    if group_ids:
        found_ids = {g.id for g in store.get_groups_by_ids(group_ids)}
        missing_ids = sorted(set(group_ids) - found_ids)
        if missing_ids:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "unknown_group",
                    "message": "Unknown group id.",
                    "detail": ", ".join(str(i) for i in missing_ids),
                },
            )


def _forbidden(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": code, "message": message})


def _check_ceiling(request: Request, current: Account, conferred: Iterable[str] | None) -> None:
    """Refuse to hand out permissions the caller does not hold itself."""
    resolver: PermissionResolver = request.app.state.resolver
    if conferred and not resolver.covers(current, conferred):
        logger.warning("Grant beyond own permissions refused for account_id=%s", current.id)
        raise _forbidden("grant_exceeds_own", "You cannot grant permissions you do not hold.")


def _check_grant(
    request: Request,
    current: Account,
    role_keys: list[str] | None,
    group_ids: list[int] | None,
    permissions: list[str] | None,
) -> None:
    """Require admin:write to hand out roles, groups or direct permissions,
    and cap what they confer at the caller's own permissions."""
    resolver: PermissionResolver = request.app.state.resolver
    if resolver.authorize(current, "admin:write") is not AccessDecision.GRANTED:
        raise _forbidden("forbidden", "Managing roles, groups or permissions requires admin:write.")
    conferred = resolver.effective_permissions(
        Account(email="", role_keys=role_keys or [], group_ids=group_ids or [], permissions=permissions or [])
    )
    _check_ceiling(request, current, conferred)


def _check_target(request: Request, current: Account, target: Account) -> None:
    """Accounts holding any role, group or direct grant are managed under admin:write."""
    if target.role_keys or target.group_ids or target.permissions:
        _check_grant(request, current, target.role_keys, target.group_ids, target.permissions)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, _: Account = Depends(require_permission("role:read"))) -> list[RoleResponse]:
    store: AccountStore = request.app.state.store
    return [RoleResponse.from_role(r) for r in store.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    current: Account = Depends(require_permission("role:write")),
) -> RoleResponse:
    store: AccountStore = request.app.state.store
    _check_ceiling(request, current, body.permissions)
    try:
        store.create_role(
            Role(key=body.key, name=body.name, description=body.description, permissions=body.permissions)
        )
    except IntegrityError as exc:
        raise _conflict("A role with that key already exists.") from exc
    logger.info("Role %s created by account_id=%s", body.key, current.id)
    return RoleResponse.from_role(store.get_role(body.key))


@router.get("/roles/{key}", response_model=RoleResponse)
def get_role(request: Request, key: str, _: Account = Depends(require_permission("role:read"))) -> RoleResponse:
    store: AccountStore = request.app.state.store
    role = store.get_role(key)
    if role is None:
        raise _not_found("Role")
    return RoleResponse.from_role(role)


@router.put("/roles/{key}", response_model=RoleResponse)
def update_role(
    request: Request,
    key: str,
    body: RoleUpdate,
    current: Account = Depends(require_permission("role:write")),
) -> RoleResponse:
    """Update a role. Permission changes reach every holder on their next request."""
    store: AccountStore = request.app.state.store
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise _no_changes()
    _check_ceiling(request, current, body.permissions)
    if not store.update_role(key, **updates):
        raise _not_found("Role")
    logger.info("Role %s updated by account_id=%s", key, current.id)
    return RoleResponse.from_role(store.get_role(key))


@router.delete("/roles/{key}", status_code=204)
def delete_role(
    request: Request,
    key: str,
    current: Account = Depends(require_permission("role:write")),
) -> Response:
    store: AccountStore = request.app.state.store
    if key in PROTECTED_ROLES:
        raise HTTPException(
            status_code=400,
            detail={"code": "protected_role", "message": "This role cannot be deleted."},
        )
    if not store.delete_role(key):
        raise _not_found("Role")
    logger.info("Role %s deleted by account_id=%s", key, current.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@router.get("/groups", response_model=list[GroupResponse])
def list_groups(
    request: Request,
    search: Optional[str] = Query(default=None, max_length=100),
    _: Account = Depends(require_permission("group:read")),
) -> list[GroupResponse]:
    store: AccountStore = request.app.state.store
    return [GroupResponse.from_group(g) for g in store.list_groups(search)]


@router.post("/groups", response_model=GroupResponse, status_code=201)
def create_group(
    request: Request,
    body: GroupCreate,
    current: Account = Depends(require_permission("group:write")),
) -> GroupResponse:
    store: AccountStore = request.app.state.store
    _check_ceiling(request, current, body.permissions)
    try:
        group_id = store.create_group(
            Group(name=body.name, description=body.description, permissions=body.permissions)
        )
    except IntegrityError as exc:
        raise _conflict("A group with that name already exists.") from exc
    logger.info("Group %s created by account_id=%s", group_id, current.id)
    return GroupResponse.from_group(store.get_group(group_id))


@router.get("/groups/{group_id}", response_model=GroupResponse)
def get_group(
    request: Request, group_id: int, _: Account = Depends(require_permission("group:read"))
) -> GroupResponse:
    store: AccountStore = request.app.state.store
    group = store.get_group(group_id)
    if group is None:
        raise _not_found("Group")
    return GroupResponse.from_group(group)


@router.patch("/groups/{group_id}", response_model=GroupResponse)
def update_group(
    request: Request,
    group_id: int,
    body: GroupUpdate,
    current: Account = Depends(require_permission("group:write")),
) -> GroupResponse:
    store: AccountStore = request.app.state.store
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise _no_changes()
    _check_ceiling(request, current, body.permissions)
    try:
        updated = store.update_group(group_id, **updates)
    except IntegrityError as exc:
        raise _conflict("A group with that name already exists.") from exc
    if not updated:
        raise _not_found("Group")
    logger.info("Group %s updated by account_id=%s", group_id, current.id)
    return GroupResponse.from_group(store.get_group(group_id))


@router.delete("/groups/{group_id}", status_code=204)
def delete_group(
    request: Request,
    group_id: int,
    current: Account = Depends(require_permission("group:write")),
) -> Response:
    store: AccountStore = request.app.state.store
    if not store.delete_group(group_id):
        raise _not_found("Group")
    logger.info("Group %s deleted by account_id=%s", group_id, current.id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Permission catalog
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(
    request: Request,
    category: Optional[str] = Query(default=None, max_length=50),
    _: Account = Depends(require_permission("role:read")),
) -> list[PermissionResponse]:
    store: AccountStore = request.app.state.store
    return [PermissionResponse.from_info(p) for p in store.list_permissions(category)]


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[AccountResponse])
def list_users(
    request: Request,
    include_deleted: bool = False,
    _: Account = Depends(require_permission("user:read")),
) -> list[AccountResponse]:
    store: AccountStore = request.app.state.store
    return [AccountResponse.from_account(a) for a in store.list_accounts(include_deleted=include_deleted)]


@router.post("/users", response_model=AccountResponse, status_code=201)
def create_user(
    request: Request,
    body: AccountCreate,
    current: Account = Depends(require_permission("user:write")),
) -> AccountResponse:
    store: AccountStore = request.app.state.store
    _check_references(store, body.roles, body.group_ids)
    if body.roles or body.group_ids or body.permissions:
        _check_grant(request, current, body.roles, body.group_ids, body.permissions)
    try:
        account_id = store.create_account(
            Account(
                email=body.email,
                name=body.name,
                hashed_password=hash_password(body.password),
                role_keys=body.roles,
                group_ids=body.group_ids,
                permissions=body.permissions,
            )
        )
    except IntegrityError as exc:
        raise _conflict("An account with that email already exists.") from exc
    logger.info("Account %s created by account_id=%s", account_id, current.id)
    return AccountResponse.from_account(store.get_by_id(account_id))


@router.get("/users/{account_id}", response_model=AccountResponse)
def get_user(
    request: Request, account_id: int, _: Account = Depends(require_permission("user:read"))
) -> AccountResponse:
    store: AccountStore = request.app.state.store
    account = store.get_by_id(account_id)
    if account is None:
        raise _not_found("Account")
    return AccountResponse.from_account(account)


@router.patch("/users/{account_id}", response_model=AccountResponse)
def update_user(
    request: Request,
    account_id: int,
    body: AccountPatch,
    current: Account = Depends(require_permission("user:write")),
) -> AccountResponse:
    """Update an account's profile, flags, roles, groups or direct permissions."""
    store: AccountStore = request.app.state.store
    sessions: SessionManager = request.app.state.sessions

    target = store.get_by_id(account_id)
    if target is None or target.deleted_at is not None:
        raise _not_found("Account")

    # Block self-lockout
    if target.id == current.id and (body.is_active is False or body.is_blocked is True):
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate or block your own account."},
        )

    fields = body.model_dump(exclude_none=True, include={"name", "permissions", "is_active", "is_blocked"})
    if not fields and body.roles is None and body.group_ids is None:
        raise _no_changes()

    _check_references(store, body.roles, body.group_ids)
    if target.id != current.id:
        _check_target(request, current, target)
    if body.roles is not None or body.group_ids is not None or body.permissions is not None:
        _check_grant(request, current, body.roles, body.group_ids, body.permissions)
    if fields:
        store.update_account(account_id, **fields)
    if body.roles is not None:
        store.set_account_roles(account_id, body.roles)
    if body.group_ids is not None:
        store.set_account_groups(account_id, body.group_ids)

    if body.is_active is False or body.is_blocked is True:
        sessions.revoke_all(account_id)
    logger.info("Account %s updated by account_id=%s", account_id, current.id)
    return AccountResponse.from_account(store.get_by_id(account_id))


@router.delete("/users/{account_id}", status_code=204)
def delete_user(
    request: Request,
    account_id: int,
    current: Account = Depends(require_permission("user:write")),
) -> Response:
    """Soft-delete an account. The row stays for audit history; its sessions end now."""
    store: AccountStore = request.app.state.store
    sessions: SessionManager = request.app.state.sessions

    if account_id == current.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    target = store.get_by_id(account_id)
    if target is None or target.deleted_at is not None:
        raise _not_found("Account")
    _check_target(request, current, target)
    if not store.soft_delete_account(account_id):
        raise _not_found("Account")
    sessions.revoke_all(account_id)
    logger.info("Account %s deleted by account_id=%s", account_id, current.id)
    return Response(status_code=204)


@router.put("/users/{account_id}/password", response_model=MessageResponse)
def set_user_password(
    request: Request,
    account_id: int,
    body: SetPasswordRequest,
    current: Account = Depends(require_permission("user:write")),
) -> MessageResponse:
    """Set another account's password. Clears lockout and revokes its sessions."""
    store: AccountStore = request.app.state.store
    sessions: SessionManager = request.app.state.sessions

    target = store.get_by_id(account_id)
    if target is None or target.deleted_at is not None:
        raise _not_found("Account")
    _check_target(request, current, target)
    store.set_password(account_id, hash_password(body.new_password))
    sessions.revoke_all(account_id)
    logger.info("Password for account %s set by account_id=%s", account_id, current.id)
    return MessageResponse(message="Password updated.")
