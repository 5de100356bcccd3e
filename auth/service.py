"""
auth/service.py -- AuthService: the surface the HTTP layer and the CLI call.

Wiring (AuthService.build):
    Settings -> TokenCodec, PasswordHasher, PasswordPolicy
    AuthStore + session cache -> RBACResolver, SessionManager,
    SecurityEventRecorder, CredentialManager

Everything is constructed once at startup and passed by reference; the
signing secret lives only inside the TokenCodec instance.

Infrastructure failures from the relational store (SQLAlchemyError), the
Redis mirror (RedisError) or the SQLite mirror (sqlite3.Error) are re-raised
as Unavailable so callers never confuse "database down" with "wrong
password". validate_token() touches neither and needs no translation.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Callable, Iterator
from datetime import datetime, timezone

import redis
from sqlalchemy.exc import SQLAlchemyError

from auth.audit import SecurityEventRecorder
from auth.credentials import CredentialManager
from auth.models import AuthResult, Origin, Role, SecurityEvent, TokenClaims, User
from auth.passwords import PasswordHasher, PasswordPolicy
from auth.rbac import RBACResolver
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import TokenCodec
from auth.twofactor import TotpVerifier, TwoFactorVerifier
from cache.store import SessionMirror
from core.config import Settings
from core.errors import PermissionDenied, Unavailable

logger = logging.getLogger("hostpanel.auth")

_BACKEND_ERRORS = (SQLAlchemyError, redis.RedisError, sqlite3.Error)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextlib.contextmanager
def _backend_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except _BACKEND_ERRORS as exc:
        logger.exception("Auth backend failure during %s", operation)
        raise Unavailable() from exc


class AuthService:
    def __init__(
        self,
        store: AuthStore,
        cache: SessionMirror,
        codec: TokenCodec,
        credentials: CredentialManager,
        sessions: SessionManager,
        rbac: RBACResolver,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.credentials = credentials
        self.sessions = sessions
        self.rbac = rbac

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: AuthStore,
        cache: SessionMirror,
        *,
        verifier: TwoFactorVerifier | None = None,
        hasher: PasswordHasher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "AuthService":
        codec = TokenCodec.from_settings(settings, clock=clock)
        rbac = RBACResolver(store)
        sessions = SessionManager(
            store,
            cache,
            codec,
            rbac,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            session_timeout_seconds=settings.session_timeout_seconds,
            clock=clock,
        )
        credentials = CredentialManager(
            store,
            hasher or PasswordHasher(),
            PasswordPolicy.from_settings(settings),
            verifier or TotpVerifier(),
            SecurityEventRecorder(store),
            rbac,
            sessions,
            lockout_threshold=settings.lockout_threshold,
            lockout_minutes=settings.lockout_minutes,
            two_factor_enabled=settings.two_factor_enabled,
            clock=clock,
        )
        return cls(store, cache, codec, credentials, sessions, rbac)

    # ------------------------------------------------------------------
    # Login / registration
    # ------------------------------------------------------------------

    def authenticate(
        self,
        identifier: str,
        password: str,
        two_factor_code: str | None = None,
        origin: Origin = Origin(),
    ) -> AuthResult:
        with _backend_errors("authenticate"):
            user, session, roles, access_token = self.credentials.authenticate(
                identifier, password, two_factor_code, origin
            )
        return AuthResult(
            access_token=access_token,
            refresh_token=session.refresh_token,
            expires_at=session.expires_at,
            user=user,
            session_id=session.id,
            roles=roles,
        )

    def register(self, username: str, email: str, password: str, first_name: str = "", last_name: str = "") -> User:
        with _backend_errors("register"):
            return self.credentials.register(username, email, password, first_name, last_name)

    def change_password(
        self, user_id: str, current_password: str, new_password: str, keep_session_id: str | None = None
    ) -> list[str]:
        with _backend_errors("change_password"):
            return self.credentials.change_password(user_id, current_password, new_password, keep_session_id)

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    def validate_token(self, token: str) -> TokenClaims:
        """Stateless: signature, algorithm and time bounds only."""
        return self.codec.validate(token)

    def refresh(self, refresh_token: str) -> AuthResult:
        with _backend_errors("refresh"):
            user, session, roles, access_token = self.sessions.refresh(refresh_token)
        return AuthResult(
            access_token=access_token,
            refresh_token=session.refresh_token,
            expires_at=session.expires_at,
            user=user,
            session_id=session.id,
            roles=roles,
        )

    def logout(self, session_id: str, user_id: str | None = None) -> bool:
        """Revoke session_id. Idempotent.

        With user_id, refuses to revoke a live session owned by someone else.
        """
        with _backend_errors("logout"):
            if user_id is not None:
                owner = self.sessions.owner_of(session_id)
                if owner is not None and owner != user_id:
                    raise PermissionDenied("Session belongs to another user.")
            return self.sessions.revoke(session_id)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def has_permission(self, user_id: str, resource: str, action: str) -> bool:
        with _backend_errors("has_permission"):
            return self.rbac.has_permission(user_id, resource, action)

    def require_permission(self, user_id: str, resource: str, action: str) -> None:
        if not self.has_permission(user_id, resource, action):
            raise PermissionDenied(f"Missing permission {resource}.{action}.")

    def permissions_of(self, user_id: str) -> frozenset[tuple[str, str]]:
        with _backend_errors("permissions_of"):
            return self.rbac.permissions_of(user_id)

    def role_names(self, user_id: str) -> list[str]:
        with _backend_errors("role_names"):
            return self.rbac.role_names(user_id)

    # ------------------------------------------------------------------
    # Administration (CLI)
    # ------------------------------------------------------------------

    def find_user(self, identifier: str) -> User | None:
        with _backend_errors("find_user"):
            return self.store.get_by_identifier(identifier)

    def ensure_role(
        self, name: str, display_name: str | None = None, description: str = "", is_system: bool = False
    ) -> Role:
        with _backend_errors("ensure_role"):
            return self.rbac.ensure_role(name, display_name, description, is_system=is_system)

    def grant(self, role_name: str, resource: str, action: str) -> bool:
        with _backend_errors("grant"):
            return self.rbac.grant(role_name, resource, action)

    def revoke_grant(self, role_name: str, resource: str, action: str) -> bool:
        with _backend_errors("revoke_grant"):
            return self.rbac.revoke_grant(role_name, resource, action)

    def assign_role(self, user_id: str, role_name: str) -> bool:
        with _backend_errors("assign_role"):
            return self.rbac.assign_role(user_id, role_name)

    def remove_role(self, user_id: str, role_name: str) -> bool:
        with _backend_errors("remove_role"):
            return self.rbac.remove_role(user_id, role_name)

    def unlock(self, user_id: str) -> bool:
        with _backend_errors("unlock"):
            return self.credentials.unlock(user_id)

    def set_active(self, user_id: str, active: bool) -> bool:
        with _backend_errors("set_active"):
            return self.credentials.set_active(user_id, active)

    def security_events(self, user_id: str | None = None, limit: int = 100) -> list[SecurityEvent]:
        with _backend_errors("security_events"):
            return self.store.list_security_events(user_id=user_id, limit=limit)

    def close(self) -> None:
        self.cache.close()
        self.store.close()
