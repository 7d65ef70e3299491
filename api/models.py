"""
API request and response models for the storefront auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Permission lists on every write model are validated against the catalog
(auth.permissions.validate_permission_keys) so an unknown key is a 422 at the
boundary and never reaches the store.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, Group, PermissionInfo, Role, TokenPurpose
from auth.permissions import validate_permission_keys

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
ROLE_KEY_PATTERN = r"^[a-z][a-z0-9_]{1,63}$"
OTP_PATTERN = r"^\d{4,10}$"

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 255

# Uniform bodies for the recovery endpoints -- identical whether or not the
# email exists, so the response cannot be used to enumerate accounts.
RESET_REQUESTED_MESSAGE = "If the account exists, a reset link has been sent."
OTP_REQUESTED_MESSAGE = "If the account exists, a verification code has been sent."


# ---------------------------------------------------------------------------
# Validation bases
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    """Base for request bodies keyed by an email address."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()


class _PermissionsBody(BaseModel):
    """Base for write bodies carrying a permission list.

    Subclasses declare the permissions field themselves (required or
    optional); check_fields=False lets the validator live here.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("permissions", check_fields=False)
    @classmethod
    def check_permissions(cls, values: Optional[list[str]]) -> Optional[list[str]]:
        if values is None:
            return None
        return validate_permission_keys(values)


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(_EmailBody):
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)
    # Path the gate stored in ?next=; validated by auth.gate.safe_next().
    next: Optional[str] = Field(default=None, max_length=2048)


class ForgotPasswordRequest(_EmailBody):
    pass


class ResetPasswordRequest(BaseModel):
    """Request body for POST /auth/reset-password. Accepts camelCase newPassword."""

    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(alias="newPassword", min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH)


class ChangeOwnPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword", min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(alias="newPassword", min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH)


class SetPasswordRequest(BaseModel):
    """Request body for PUT /users/{id}/password (admin sets another account's password)."""

    model_config = ConfigDict(populate_by_name=True)

    new_password: str = Field(alias="newPassword", min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH)


class OtpRequest(_EmailBody):
    purpose: TokenPurpose = TokenPurpose.verify_email


class OtpVerifyRequest(_EmailBody):
    purpose: TokenPurpose = TokenPurpose.verify_email
    code: str = Field(pattern=OTP_PATTERN)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class AccountSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    roles: list[str]


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountSummary
    redirect_to: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    roles: list[str]
    group_ids: list[int]
    permissions: list[str]
    is_verified: bool


# ---------------------------------------------------------------------------
# RBAC -- roles, groups, permissions
# ---------------------------------------------------------------------------


class RoleCreate(_PermissionsBody):
    key: str = Field(pattern=ROLE_KEY_PATTERN)
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[str] = Field(default_factory=list)


class RoleUpdate(_PermissionsBody):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[list[str]] = None


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    description: str
    permissions: list[str]

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(key=role.key, name=role.name, description=role.description, permissions=role.permissions)


class GroupCreate(_PermissionsBody):
    name: str = Field(min_length=2, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[str] = Field(default_factory=list)


class GroupUpdate(_PermissionsBody):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[list[str]] = None


class GroupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str
    permissions: list[str]

    @classmethod
    def from_group(cls, group: Group) -> "GroupResponse":
        return cls(id=group.id, name=group.name, description=group.description, permissions=group.permissions)


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    category: str
    description: str

    @classmethod
    def from_info(cls, info: PermissionInfo) -> "PermissionResponse":
        return cls(key=info.key, name=info.name, category=info.category, description=info.description)


# ---------------------------------------------------------------------------
# Accounts (admin user management)
# ---------------------------------------------------------------------------


class AccountCreate(_EmailBody, _PermissionsBody):
    name: str = Field(default="", max_length=100)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH)
    roles: list[str] = Field(default_factory=list)
    group_ids: list[int] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)


class AccountPatch(_PermissionsBody):
    name: Optional[str] = Field(default=None, max_length=100)
    roles: Optional[list[str]] = None
    group_ids: Optional[list[int]] = None
    permissions: Optional[list[str]] = None
    is_active: Optional[bool] = None
    is_blocked: Optional[bool] = None


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    roles: list[str]
    group_ids: list[int]
    permissions: list[str]
    is_active: bool
    is_blocked: bool
    is_verified: bool
    is_deleted: bool
    last_login: Optional[str] = None
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            roles=account.role_keys,
            group_ids=account.group_ids,
            permissions=account.permissions,
            is_active=account.is_active,
            is_blocked=account.is_blocked,
            is_verified=account.is_verified,
            is_deleted=account.deleted_at is not None,
            last_login=account.last_login,
            created_at=account.created_at or "",
        )
