"""
api/routes/v1/auth.py -- Login, session and credential-recovery endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets auth_session cookie, returns JWT
  POST /api/v1/auth/logout             -- revokes the session, clears the cookie
  GET  /api/v1/auth/me                 -- current account and effective permissions
  POST /api/v1/auth/forgot-password    -- issue a reset token (uniform response)
  POST /api/v1/auth/reset-password     -- consume a reset token
  POST /api/v1/auth/change-password    -- self-service password change
  POST /api/v1/auth/otp/request        -- issue a one-time code (uniform response)
  POST /api/v1/auth/otp/verify         -- check a one-time code

Security:
  login and the recovery endpoints are rate-limited per client IP.
  authenticate_account() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
  Enumeration: forgot-password and otp/request answer identically whether
  or not the email belongs to an account.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_RATE_LIMIT, RECOVERY_RATE_LIMIT, limiter
from api.models import (
    OTP_REQUESTED_MESSAGE,
    RESET_REQUESTED_MESSAGE,
    AccountSummary,
    ChangeOwnPasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    OtpRequest,
    OtpVerifyRequest,
    ResetPasswordRequest,
)
from auth.delivery import TokenDelivery
from auth.dependencies import get_current_account, require_permission
from auth.gate import safe_next
from auth.models import Account, LoginResult, TokenPurpose, VerifyOutcome
from auth.permissions import PermissionResolver
from auth.sessions import SessionManager
from auth.store import AccountStore
from auth.tokens import (
    SESSION_COOKIE_NAME,
    authenticate_account,
    clear_session_cookie,
    create_access_token,
    hash_password,
    set_session_cookie,
    verify_password,
)
from auth.verification import VerificationService
from core.config import get_settings

logger = logging.getLogger("storefront.api")

_INVALID_CREDENTIAL = {"code": "invalid_credential", "message": "Invalid or expired credential."}
_TOO_MANY_ATTEMPTS = {"code": "too_many_attempts", "message": "Too many attempts. Try again later."}

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:           public -- revoking an unknown cookie is a no-op
# - GET  /api/v1/auth/me:               requires auth (get_current_account)
# - POST /api/v1/auth/forgot-password:  public
# - POST /api/v1/auth/reset-password:   public -- the reset token is the credential
# - POST /api/v1/auth/change-password:  requires admin:read
# - POST /api/v1/auth/otp/request:      public
# - POST /api/v1/auth/otp/verify:       public -- the code is the credential
router = APIRouter()


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(LOGIN_RATE_LIMIT)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong email and wrong password produce the same "bad_credentials" body.
    A locked account is reported distinctly (429) so clients stop retrying;
    that state is only reachable by someone who already knows the email.
    """
    store: AccountStore = request.app.state.store
    sessions: SessionManager = request.app.state.sessions

    result, account = authenticate_account(store, body.email, body.password)
    if result is LoginResult.LOCKED:
        resp = JSONResponse(status_code=429, content={"error": _TOO_MANY_ATTEMPTS})
        resp.headers["Cache-Control"] = "no-store"
        return resp
    if result is not LoginResult.SUCCESS:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    session_token = sessions.issue_session(account.id)
    expires_in = get_settings().token_expire_seconds
    access_token = create_access_token(account.id, account.email, account.role_keys, expires_in)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            account=AccountSummary(id=account.id, email=account.email, name=account.name, roles=account.role_keys),
            redirect_to=safe_next(body.next),
        ).model_dump(),
    )
    set_session_cookie(resp, session_token)
    resp.headers["Cache-Control"] = "no-store"
    logger.info("Login succeeded for account_id=%s", account.id)
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the caller's session server-side and expire the cookie."""
    sessions: SessionManager = request.app.state.sessions
    sessions.revoke_session(request.cookies.get(SESSION_COOKIE_NAME))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current: Account = Depends(get_current_account)) -> MeResponse:
    """Return the current account with its effective permissions."""
    resolver: PermissionResolver = request.app.state.resolver
    return MeResponse(
        id=current.id,
        email=current.email,
        name=current.name,
        roles=current.role_keys,
        group_ids=current.group_ids,
        permissions=sorted(resolver.effective_permissions(current)),
        is_verified=current.is_verified,
    )


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(RECOVERY_RATE_LIMIT)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Issue a reset token and hand it to the delivery collaborator.

    The response is the same for unknown, blocked and deleted accounts.
    """
    store: AccountStore = request.app.state.store
    verification: VerificationService = request.app.state.verification
    delivery: TokenDelivery = request.app.state.delivery

    account = store.get_by_email(body.email)
    if account is not None and account.can_authenticate:
        token = verification.issue_reset_token(account.id)
        delivery.send_reset_token(account.email, token)
    else:
        logger.info("Password reset requested for unknown or disabled account")
    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(RECOVERY_RATE_LIMIT)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Consume a reset token. Any bad, used or expired token gets the same 400."""
    verification: VerificationService = request.app.state.verification
    if not verification.reset_password(body.token, body.new_password):
        raise HTTPException(status_code=400, detail=_INVALID_CREDENTIAL)
    return MessageResponse(message="Password has been reset.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangeOwnPasswordRequest,
    current: Account = Depends(require_permission("admin:read")),
) -> JSONResponse:
    """Change the caller's own password.

    Every existing session of the account is revoked, then a fresh one is
    issued for this client so the caller stays signed in.
    """
    store: AccountStore = request.app.state.store
    sessions: SessionManager = request.app.state.sessions

    if not current.hashed_password or not verify_password(body.current_password, current.hashed_password):
        raise HTTPException(status_code=400, detail=_INVALID_CREDENTIAL)
    if body.new_password == body.current_password:
        raise HTTPException(
            status_code=400,
            detail={"code": "password_unchanged", "message": "New password must differ from the current one."},
        )

    store.set_password(current.id, hash_password(body.new_password))
    sessions.revoke_all(current.id)
    logger.info("Password changed for account_id=%s", current.id)

    resp = JSONResponse(content={"message": "Password updated."})
    set_session_cookie(resp, sessions.issue_session(current.id))
    return resp


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


@router.post("/auth/otp/request", response_model=MessageResponse)
@limiter.limit(RECOVERY_RATE_LIMIT)
def request_otp(request: Request, body: OtpRequest) -> MessageResponse:
    """Issue a one-time code for (account, purpose). Supersedes any earlier code."""
    store: AccountStore = request.app.state.store
    verification: VerificationService = request.app.state.verification
    delivery: TokenDelivery = request.app.state.delivery

    account = store.get_by_email(body.email)
    if account is not None and account.can_authenticate:
        code = verification.issue(account.id, body.purpose)
        delivery.send_otp(account.email, code, body.purpose)
    return MessageResponse(message=OTP_REQUESTED_MESSAGE)


@router.post("/auth/otp/verify", response_model=MessageResponse)
@limiter.limit(RECOVERY_RATE_LIMIT)
def verify_otp(request: Request, body: OtpVerifyRequest) -> MessageResponse:
    """Check a one-time code.

    Unknown accounts, wrong codes, used codes and expired codes all return the
    same 400. Exceeding the attempt ceiling returns 429.
    """
    store: AccountStore = request.app.state.store
    verification: VerificationService = request.app.state.verification

    account = store.get_by_email(body.email)
    if account is None or not account.can_authenticate:
        raise HTTPException(status_code=400, detail=_INVALID_CREDENTIAL)

    outcome = verification.verify(account.id, body.purpose, body.code)
    if outcome is VerifyOutcome.TOO_MANY_ATTEMPTS:
        raise HTTPException(status_code=429, detail=_TOO_MANY_ATTEMPTS)
    if outcome is not VerifyOutcome.SUCCESS:
        raise HTTPException(status_code=400, detail=_INVALID_CREDENTIAL)

    if body.purpose is TokenPurpose.verify_email and not account.is_verified:
        store.update_account(account.id, is_verified=True)
        logger.info("Email verified for account_id=%s", account.id)
    return MessageResponse(message="Code verified.")
