"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
the domain shape; the store maps rows to them and the managers do the work.
The only behaviour kept here is what is a pure function of the fields
(Session.is_valid, User.is_locked) so every caller agrees on it.

All timestamps are timezone-aware UTC datetimes. The store persists them as
ISO 8601 text and converts at the mapper boundary.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """An account that can log in to the panel.

    deleted_at marks a soft delete: the row is kept for audit but every
    lookup in the store filters it out. failed_login_count and locked_until
    are driven exclusively by the credential manager.
    """

    username: str
    email: str
    id: str | None = None
    password_hash: str | None = None
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    is_email_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    failed_login_count: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Role:
    """A named bundle of permissions. is_system marks roles the panel ships with."""

    name: str
    display_name: str
    id: str | None = None
    description: str = ""
    is_system: bool = False
    created_at: datetime | None = None


@dataclass
class Permission:
    """A (resource, action) grant, e.g. ("domain", "create")."""

    resource: str
    action: str
    name: str = ""
    display_name: str = ""
    id: str | None = None
    description: str = ""
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"{self.resource}.{self.action}"
        if not self.display_name:
            self.display_name = f"{self.action.title()} {self.resource}"

    @property
    def key(self) -> tuple[str, str]:
        return (self.resource, self.action)


@dataclass
class Session:
    """One login instance.

    token holds the most recently issued access token; refresh_token is the
    opaque credential used to mint new ones. A refresh mutates this row --
    it never creates a new one.
    """

    user_id: str
    refresh_token: str
    expires_at: datetime
    id: str | None = None
    token: str | None = None
    ip_address: str = ""
    user_agent: str = ""
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    revoked_at: datetime | None = None

    def is_valid(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass
class SecurityEvent:
    """Append-only record of a security-relevant occurrence.

    event_type: "login_failed", "account_locked".
    severity:   "low", "medium", "high", "critical".
    The is_resolved / resolved_* fields belong to a human reviewer; the core
    only ever writes new rows.
    """

    event_type: str
    severity: str
    description: str
    user_id: str | None = None
    source: str = "web"
    ip_address: str = ""
    user_agent: str = ""
    metadata: dict = field(default_factory=dict)
    id: str | None = None
    is_resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Origin:
    """Where a login or refresh came from (client address and user agent)."""

    ip_address: str = ""
    user_agent: str = ""


@dataclass(frozen=True)
class TokenClaims:
    """Identity claims carried by a validated access token."""

    user_id: str
    username: str
    email: str
    roles: tuple[str, ...]
    session_id: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime


@dataclass
class AuthResult:
    """What a successful login or refresh hands back to the caller.

    expires_at is the session's absolute expiry (the refresh token's
    lifetime), not the access token's.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime
    user: User
    session_id: str
    roles: list[str] = field(default_factory=list)
