"""
auth/gate.py -- Route policy evaluated before any handler runs.

evaluate(path, has_session) is a pure, total function: every path maps to
exactly one GateDecision and nothing raises. Rule order is precedence order:

  1. API prefix                      -> allow (API handlers authorize themselves)
  2. static / build / image assets   -> allow
  3. session + landing or sign-in    -> redirect /dashboard (query dropped)
  4. public allow-list               -> allow
  5. no session                      -> redirect /?next=<path>
  6. otherwise                       -> allow

The HTTP middleware in api/main.py resolves session presence through the
SessionManager and applies the decision.

Layer rule: no imports from api/ or fastapi.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

API_PREFIX = "/api"
ASSET_PREFIXES: tuple[str, ...] = ("/_next", "/static", "/images", "/public")
ASSET_PATHS: frozenset[str] = frozenset({"/favicon.ico"})

LANDING_PATH = "/"
SIGNIN_PATH = "/signin"
DASHBOARD_PATH = "/dashboard"

PUBLIC_PATHS: frozenset[str] = frozenset({LANDING_PATH, SIGNIN_PATH, "/signup", "/api/auth/login"})
AUTH_ENTRY_PATHS: frozenset[str] = frozenset({LANDING_PATH, SIGNIN_PATH})


class GateRule(str, Enum):
    API = "api"
    ASSET = "asset"
    AUTHENTICATED_ENTRY = "authenticated_entry"
    PUBLIC = "public"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class GateDecision:
    rule: GateRule
    redirect_to: str | None = None

    @property
    def allowed(self) -> bool:
        return self.redirect_to is None


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def is_api_path(path: str) -> bool:
    return _under(path, API_PREFIX)


def is_asset_path(path: str) -> bool:
    return path in ASSET_PATHS or any(_under(path, p) for p in ASSET_PREFIXES)


def login_redirect(path: str) -> str:
    """Landing page URL carrying path as next=, for post-login redirect-back."""
    return f"{LANDING_PATH}?{urlencode({'next': path}, safe='/')}"


def evaluate(path: str, has_session: bool) -> GateDecision:
    if is_api_path(path):
        return GateDecision(GateRule.API)
    if is_asset_path(path):
        return GateDecision(GateRule.ASSET)
    if has_session and path in AUTH_ENTRY_PATHS:
        return GateDecision(GateRule.AUTHENTICATED_ENTRY, redirect_to=DASHBOARD_PATH)
    if path in PUBLIC_PATHS:
        return GateDecision(GateRule.PUBLIC)
    if not has_session:
        return GateDecision(GateRule.UNAUTHENTICATED, redirect_to=login_redirect(path))
    return GateDecision(GateRule.AUTHENTICATED)


def safe_next(next_url: str | None) -> str:
    """Return next_url if it is a same-site relative path, else the dashboard.

    Blocks open redirects such as ?next=https://attacker.com or
    ?next=//attacker.com after sign-in.
    """
    if not next_url or not next_url.startswith("/") or next_url.startswith("//") or "\\" in next_url:
        return DASHBOARD_PATH
    return next_url
