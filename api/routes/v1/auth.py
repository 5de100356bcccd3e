"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login                     -- credentials (+ 2FA code) -> tokens
  POST /api/v1/auth/register                  -- create account with default role
  POST /api/v1/auth/refresh                   -- refresh token -> new access token
  POST /api/v1/auth/logout                    -- revoke the caller's session
  GET  /api/v1/auth/me                        -- claims of the presented token
  GET  /api/v1/auth/me/permissions            -- caller's effective permissions
  POST /api/v1/auth/password                  -- change password, revoke other sessions
  GET  /api/v1/auth/users/{id}/permissions    -- another user's permissions (user.read)

Security:
  POST /login is rate-limited per client address (LOGIN_RATE_LIMIT).
  Token-bearing responses and auth errors carry Cache-Control: no-store.
  Unknown identifier and wrong password return the same 401 body.

Handlers are plain ``def``: every one of them does blocking store I/O, so
FastAPI runs them in its threadpool.

Errors: handlers let core.errors.AuthError propagate; api/main.py maps it to
the standard error envelope with the status the error class declares.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import (
    LoginRequest,
    LogoutResponse,
    MeResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PermissionEntry,
    PermissionsResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_current_claims, require_permission
from auth.models import AuthResult, Origin, TokenClaims
from auth.service import AuthService

# Auth policy:
# - POST /auth/login, /auth/register, /auth/refresh:  public
# - POST /auth/logout, /auth/password:                requires bearer token
# - GET  /auth/me, /auth/me/permissions:              requires bearer token
# - GET  /auth/users/{id}/permissions:                requires ("user", "read") or admin
router = APIRouter()


def _origin(request: Request) -> Origin:
    return Origin(
        ip_address=request.client.host if request.client else "",
        user_agent=request.headers.get("User-Agent", "")[:512],
    )


def _token_response(request: Request, result: AuthResult) -> JSONResponse:
    expires_in = request.app.state.settings.access_token_ttl_seconds
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse.from_result(result, expires_in).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _permission_entries(permissions: frozenset[tuple[str, str]]) -> list[PermissionEntry]:
    return [PermissionEntry(resource=r, action=a) for r, a in sorted(permissions)]


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username-or-email and password (and a 2FA code when enabled)."""
    auth: AuthService = get_auth_service(request)
    result = auth.authenticate(body.identifier, body.password, body.two_factor_code, _origin(request))
    return _token_response(request, result)


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account. Disabled when SELF_REGISTRATION_ENABLED=false."""
    if not request.app.state.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    auth: AuthService = get_auth_service(request)
    user = auth.register(body.username, body.email, body.password, body.first_name, body.last_name)
    return UserResponse.from_user(user, auth.role_names(user.id))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access token. The refresh token is returned unchanged."""
    auth: AuthService = get_auth_service(request)
    return _token_response(request, auth.refresh(body.refresh_token))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> LogoutResponse:
    """Revoke the session the presented token belongs to. Repeating it is harmless."""
    auth: AuthService = get_auth_service(request)
    revoked = auth.logout(claims.session_id, user_id=claims.user_id)
    return LogoutResponse(revoked=revoked)


@router.get("/auth/me", response_model=MeResponse)
def me(claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    return MeResponse(
        user_id=claims.user_id,
        username=claims.username,
        email=claims.email,
        roles=list(claims.roles),
        session_id=claims.session_id,
        expires_at=claims.expires_at,
    )


@router.get("/auth/me/permissions", response_model=PermissionsResponse)
def my_permissions(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> PermissionsResponse:
    auth: AuthService = get_auth_service(request)
    return PermissionsResponse(
        user_id=claims.user_id,
        permissions=_permission_entries(auth.permissions_of(claims.user_id)),
    )


@router.post("/auth/password", response_model=PasswordChangeResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    claims: TokenClaims = Depends(get_current_claims),
) -> PasswordChangeResponse:
    """Change the caller's password. Every other session of the caller is revoked."""
    auth: AuthService = get_auth_service(request)
    revoked = auth.change_password(
        claims.user_id, body.current_password, body.new_password, keep_session_id=claims.session_id
    )
    return PasswordChangeResponse(revoked_sessions=len(revoked))


@router.get("/auth/users/{user_id}/permissions", response_model=PermissionsResponse)
def user_permissions(
    request: Request,
    user_id: str,
    claims: TokenClaims = Depends(require_permission("user", "read")),
) -> PermissionsResponse:
    auth: AuthService = get_auth_service(request)
    return PermissionsResponse(user_id=user_id, permissions=_permission_entries(auth.permissions_of(user_id)))
