"""
auth/sessions.py -- Session lifecycle across the relational store and the cache.

Write order (every mutating operation):
  1. relational store (authoritative)
  2. cache mirror, always last

If step 2 never happens (timeout, crash, cancelled request) the mirror is
simply missing, and a missing mirror is a cache miss that owner_of() heals
from the store. Nothing reads the cache before the store write it depends on
has succeeded.

Refresh tokens are 32 random bytes, URL-safe base64. They are not rotated on
use: refresh() re-issues the access token on the same session row and hands
back the same refresh token.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import Origin, Session, User
from auth.rbac import RBACResolver
from auth.store import AuthStore
from auth.tokens import TokenCodec
from cache.store import SessionMirror
from core.errors import InvalidRefreshToken

logger = logging.getLogger("hostpanel.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(32)


class SessionManager:
    def __init__(
        self,
        store: AuthStore,
        cache: SessionMirror,
        codec: TokenCodec,
        rbac: RBACResolver,
        *,
        refresh_ttl_seconds: int,
        session_timeout_seconds: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.rbac = rbac
        self.refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self.session_timeout = session_timeout_seconds
        self._clock = clock

    def create(self, user: User, origin: Origin, roles: list[str]) -> tuple[Session, str]:
        """Open a session for user and mint its first access token.

        Returns (session, access_token). One row per call.
        """
        now = self._clock()
        session = Session(
            user_id=user.id,
            refresh_token=generate_refresh_token(),
            expires_at=now + self.refresh_ttl,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            last_used_at=now,
            created_at=now,
        )
        session.id = self.store.create_session(session)
        access_token = self.codec.issue(user, session.id, roles)
        self.store.update_session_token(session.id, access_token, now)
        session.token = access_token
        self._mirror(session)
        logger.info("Session created session_id=%s user_id=%s ip=%s", session.id, user.id, origin.ip_address)
        return session, access_token

    def refresh(self, refresh_token: str) -> tuple[User, Session, list[str], str]:
        """Mint a new access token for the session owning refresh_token.

        Raises InvalidRefreshToken if no unrevoked, unexpired session holds the
        token, or its owner is gone or disabled. The session identity never
        changes.
        """
        if not refresh_token:
            raise InvalidRefreshToken()
        now = self._clock()
        session = self.store.get_active_session_by_refresh_token(refresh_token, now)
        if session is None:
            raise InvalidRefreshToken()
        user = self.store.get_user(session.user_id)
        if user is None or not user.is_active:
            raise InvalidRefreshToken()

        roles = self.rbac.role_names(user.id)
        access_token = self.codec.issue(user, session.id, roles)
        self.store.update_session_token(session.id, access_token, now)
        session.token = access_token
        session.last_used_at = now
        self._mirror(session)
        logger.info("Session refreshed session_id=%s user_id=%s", session.id, user.id)
        return user, session, roles, access_token

    def revoke(self, session_id: str) -> bool:
        """Revoke a session. Idempotent: True only the first time, never an error."""
        revoked = self.store.revoke_session(session_id, self._clock())
        self.cache.delete(session_id)
        if revoked:
            logger.info("Session revoked session_id=%s", session_id)
        return revoked

    def revoke_all(self, user_id: str, keep_session_id: str | None = None) -> list[str]:
        """Revoke every open session of user_id, optionally sparing one."""
        revoked = self.store.revoke_user_sessions(user_id, self._clock(), keep_session_id=keep_session_id)
        for session_id in revoked:
            self.cache.delete(session_id)
        if revoked:
            logger.info("Revoked %d session(s) for user_id=%s", len(revoked), user_id)
        return revoked

    def owner_of(self, session_id: str) -> str | None:
        """Return the user ID owning a live session, or None.

        Read-through: a cache hit answers directly; a miss falls back to the
        store and re-mirrors the session if it is still valid.
        """
        cached = self.cache.get(session_id)
        if cached is not None:
            return cached
        session = self.store.get_session(session_id)
        if session is None or not session.is_valid(self._clock()):
            return None
        self._mirror(session)
        return session.user_id

    def _mirror(self, session: Session) -> None:
        self.cache.set(session.id, session.user_id, self.session_timeout)
