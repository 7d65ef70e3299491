"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

Two credentials are checked in priority order:
  1. auth_session cookie -- opaque token resolved through the SessionManager.
  2. Authorization: Bearer <jwt> -- access token handed to API clients at login.

Both converge on an Account. Inactive, blocked and soft-deleted accounts
resolve to anonymous, exactly like a missing credential.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.
require_permission("resource:action") builds a dependency that is the single
authorization checkpoint for privileged routes: 401 when anonymous, 403 when
the permission is missing. The 403 body never names the missing permission.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AccessDecision, Account
from auth.permissions import PermissionResolver, is_known_permission
from auth.sessions import SessionManager
from auth.store import AccountStore
from auth.tokens import SESSION_COOKIE_NAME, decode_access_token

_UNAUTHENTICATED = {"code": "unauthorized", "message": "Authentication required."}
_FORBIDDEN = {"code": "forbidden", "message": "You do not have permission to perform this action."}


def resolve_session_account_id(request: Request) -> int | None:
    """Account id behind the auth_session cookie, or None."""
    sessions: SessionManager = request.app.state.sessions
    return sessions.validate_session(request.cookies.get(SESSION_COOKIE_NAME))


def try_get_current_account(request: Request) -> Account | None:
    """Attempt to authenticate the request via session cookie or Bearer JWT.

    Returns the Account on success, None on any failure. Never raises.
    """
    store: AccountStore = request.app.state.store

    account_id = resolve_session_account_id(request)

    if account_id is None:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            payload = decode_access_token(auth_header[7:])
            if payload:
                account_id = payload["account_id"]

    if account_id is None:
        return None
    account = store.get_by_id(account_id)
    if account is None or not account.can_authenticate:
        return None
    return account


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(status_code=401, detail=_UNAUTHENTICATED)
    return account


def require_permission(required: str):
    """Build a dependency that admits only callers holding `required`.

    Use as a FastAPI dependency:
        @router.post("/roles")
        def create_role(account: Account = Depends(require_permission("role:write"))): ...

    Keys outside the catalog are rejected here, when the route is declared,
    so a typo fails at import time instead of denying every request.
    """
    if not is_known_permission(required):
        raise ValueError(f"Unknown permission key: {required!r}")

    def dependency(request: Request) -> Account:
        resolver: PermissionResolver = request.app.state.resolver
        account = try_get_current_account(request)
        decision = resolver.authorize(account, required)
        if decision is AccessDecision.UNAUTHENTICATED:
            raise HTTPException(status_code=401, detail=_UNAUTHENTICATED)
        if decision is AccessDecision.FORBIDDEN:
            raise HTTPException(status_code=403, detail=_FORBIDDEN)
        return account

    dependency.__name__ = f"require_{required.replace(':', '_')}"
    return dependency
