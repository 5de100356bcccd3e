"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Token transport: ``Authorization: Bearer <access token>``.

try_get_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it, raises HTTP 401 if unauthenticated, and attaches
the claims to request.state.claims for downstream handlers.
require_permission(resource, action) builds a per-route dependency that
raises HTTP 403 unless the caller holds the permission (or the admin role).
require_role(name) gates on a role name carried in the token claims.

Validation is stateless -- no store or cache round trip per request. Only
the permission gate reads the store; the role gate trusts the claims, so a
role change reaches it with the next access token.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import TokenClaims
from auth.rbac import ADMIN_ROLE
from auth.service import AuthService
from core.errors import AuthError, InvalidToken, PermissionDenied


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _http_error(exc: AuthError) -> HTTPException:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return HTTPException(
        status_code=exc.status_code,
        detail={"code": exc.code, "message": exc.message, "detail": exc.detail},
        headers=headers,
    )


def try_get_claims(request: Request) -> TokenClaims | None:
    """Validate the bearer token if one is present. Never raises."""
    token = _bearer_token(request)
    if token is None:
        return None
    try:
        return get_auth_service(request).validate_token(token)
    except InvalidToken:
        return None


def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_claims(request)
    if claims is None:
        raise _http_error(InvalidToken("Authentication required."))
    request.state.claims = claims
    return claims


def require_permission(resource: str, action: str) -> Callable[[Request], TokenClaims]:
    """Build a dependency gating a route on (resource, action).

    Use as a FastAPI dependency:
        @router.post("/domains", dependencies=[Depends(require_permission("domain", "create"))])
    """

    def dependency(request: Request) -> TokenClaims:
        claims = get_current_claims(request)
        try:
            get_auth_service(request).require_permission(claims.user_id, resource, action)
        except AuthError as exc:
            raise _http_error(exc) from exc
        return claims

    return dependency


def require_role(name: str) -> Callable[[Request], TokenClaims]:
    """Build a dependency gating a route on a role held in the token. Admin always passes.

    Use as a FastAPI dependency:
        @router.get("/resellers", dependencies=[Depends(require_role("reseller"))])
    """

    def dependency(request: Request) -> TokenClaims:
        claims = get_current_claims(request)
        if name not in claims.roles and ADMIN_ROLE not in claims.roles:
            raise _http_error(PermissionDenied(f"Role {name} required."))
        return claims

    return dependency
