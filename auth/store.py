"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Managers and route code never touch SQL directly.

Tables: users, roles, permissions, user_roles, role_permissions, sessions,
security_events. Primary keys are UUID4 strings so identifiers are opaque
and can be minted before the row is written.

Timestamps are stored as ISO 8601 UTC text with fixed microsecond precision.
The fixed width matters: expiry and lockout checks compare these strings in
SQL, and lexicographic order only equals chronological order when every
value has the same shape.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  Every public method opens its own connection and commits before returning.
  Multi-column updates that must not interleave (the failed-login counter and
  the lockout stamp) are written as a single UPDATE so the store's row
  atomicity covers them.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    exists,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Permission, Role, SecurityEvent, Session, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("is_email_verified", Boolean, nullable=False, server_default="0"),
    Column("two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("two_factor_secret", Text),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login_at", String(32)),
    Column("last_login_ip", String(45)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32), index=True),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("is_system", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("resource", String(100), nullable=False, index=True),
    Column("action", String(100), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(36), ForeignKey("users.id"), primary_key=True),
    Column("role_id", String(36), ForeignKey("roles.id"), primary_key=True),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(36), ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", String(36), ForeignKey("permissions.id"), primary_key=True),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    # NULL until the first access token is attached right after creation.
    Column("token", Text, unique=True),
    Column("refresh_token", String(64), nullable=False, unique=True),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("expires_at", String(32), nullable=False),
    Column("last_used_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
)

_security_events = Table(
    "security_events",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), index=True),
    Column("type", String(50), nullable=False),
    Column("severity", String(20), nullable=False),
    Column("source", String(30), nullable=False),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("description", Text, nullable=False, server_default=""),
    Column("metadata", Text, nullable=False, server_default="{}"),
    Column("is_resolved", Boolean, nullable=False, server_default="0"),
    Column("resolved_at", String(32)),
    Column("resolved_by", String(36)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _new_id() -> str:
    return str(uuid.uuid4())


_DATETIME_USER_FIELDS = {"locked_until", "last_login_at", "deleted_at"}


_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'data' / 'hostpanel_auth.db'}"


def _ensure_sqlite_dir(db_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not db_url.startswith("sqlite:///") or ":memory:" in db_url or "mode=memory" in db_url:
        return
    Path(db_url[len("sqlite:///") :]).parent.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, roles, permissions, sessions and security events.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        user_id = store.create_user(User(username="alice", email="a@x.com", password_hash=h))
        user = store.get_by_identifier("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, connect_timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            _ensure_sqlite_dir(db_url)
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = connect_timeout
        elif db_url.startswith(("postgresql", "mysql")):
            connect_args["connect_timeout"] = int(connect_timeout)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1)).scalar()
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. The credential manager checks first and maps a race that slips
        past the check to DuplicateIdentity.
        """
        user_id = user.id or _new_id()
        now = _iso(_now())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    is_active=user.is_active,
                    is_email_verified=user.is_email_verified,
                    two_factor_enabled=user.two_factor_enabled,
                    two_factor_secret=user.two_factor_secret,
                    failed_login_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_user(self, user_id: str) -> User | None:
        """Look up a live (not soft-deleted) user by ID."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(and_(_users.c.id == user_id, _users.c.deleted_at.is_(None)))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_identifier(self, identifier: str) -> User | None:
        """Look up a live user whose username OR email equals identifier."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    and_(
                        or_(_users.c.username == identifier, _users.c.email == identifier),
                        _users.c.deleted_at.is_(None),
                    )
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def identity_exists(self, username: str, email: str) -> bool:
        """Return True if any user row (soft-deleted ones included) holds either identity.

        Soft-deleted identities are never reissued so audit trails keyed on
        username or email stay unambiguous.
        """
        with self.engine.connect() as conn:
            found = conn.execute(
                select(exists().where(or_(_users.c.username == username, _users.c.email == email)))
            ).scalar()
        return bool(found)

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.deleted_at.is_(None)).order_by(_users.c.username)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable columns on a live user. Datetime values are converted to ISO text.

        Returns True if a row was updated, False if user_id was not found.
        """
        values = {k: (_iso(v) if k in _DATETIME_USER_FIELDS else v) for k, v in fields.items()}
        values["updated_at"] = _iso(_now())
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(and_(_users.c.id == user_id, _users.c.deleted_at.is_(None)))
                .values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def record_failed_login(self, user_id: str, threshold: int, lock_until: datetime) -> User | None:
        """Increment the failed-login counter and stamp the lockout when it reaches threshold.

        One UPDATE statement so the increment and the lockout decision see the
        same counter value. Returns the user as stored afterwards.
        """
        new_count = _users.c.failed_login_count + 1
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_count=new_count,
                    locked_until=case(
                        (new_count >= threshold, _iso(lock_until)),
                        else_=_users.c.locked_until,
                    ),
                    updated_at=_iso(_now()),
                )
            )
            conn.commit()
        return self.get_user(user_id)

    def record_successful_login(self, user_id: str, ip_address: str, at: datetime) -> None:
        """Reset the failed counter, clear any lockout and stamp last-login metadata."""
        self.update_user(
            user_id,
            failed_login_count=0,
            locked_until=None,
            last_login_at=at,
            last_login_ip=ip_address,
        )

    def soft_delete_user(self, user_id: str) -> bool:
        """Retire a user: deactivate and stamp deleted_at. The row stays for audit."""
        return self.update_user(user_id, is_active=False, deleted_at=_now())

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> str:
        """Insert a role and return its ID. Raises IntegrityError on a duplicate name."""
        role_id = role.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role_id,
                    name=role.name,
                    display_name=role.display_name,
                    description=role.description,
                    is_system=role.is_system,
                    created_at=_iso(_now()),
                )
            )
            conn.commit()
        return role_id

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def create_permission(self, permission: Permission) -> str:
        """Insert a permission and return its ID. Raises IntegrityError on a duplicate name."""
        permission_id = permission.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _permissions.insert().values(
                    id=permission_id,
                    name=permission.name,
                    display_name=permission.display_name,
                    description=permission.description,
                    resource=permission.resource,
                    action=permission.action,
                    created_at=_iso(_now()),
                )
            )
            conn.commit()
        return permission_id

    def get_permission(self, resource: str, action: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _permissions.select().where(
                    and_(_permissions.c.resource == resource, _permissions.c.action == action)
                )
            ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def add_user_role(self, user_id: str, role_id: str) -> bool:
        """Assign a role. Returns False (no error) when the assignment already exists."""
        with self.engine.connect() as conn:
            already = conn.execute(
                select(
                    exists().where(and_(_user_roles.c.user_id == user_id, _user_roles.c.role_id == role_id))
                )
            ).scalar()
            if already:
                return False
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, created_at=_iso(_now())))
            conn.commit()
        return True

    def remove_user_role(self, user_id: str, role_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.delete().where(and_(_user_roles.c.user_id == user_id, _user_roles.c.role_id == role_id))
            )
            conn.commit()
        return result.rowcount > 0

    def add_role_permission(self, role_id: str, permission_id: str) -> bool:
        """Grant a permission to a role. Returns False when the grant already exists."""
        with self.engine.connect() as conn:
            already = conn.execute(
                select(
                    exists().where(
                        and_(
                            _role_permissions.c.role_id == role_id,
                            _role_permissions.c.permission_id == permission_id,
                        )
                    )
                )
            ).scalar()
            if already:
                return False
            conn.execute(
                _role_permissions.insert().values(
                    role_id=role_id, permission_id=permission_id, created_at=_iso(_now())
                )
            )
            conn.commit()
        return True

    def remove_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_permissions.delete().where(
                    and_(
                        _role_permissions.c.role_id == role_id,
                        _role_permissions.c.permission_id == permission_id,
                    )
                )
            )
            conn.commit()
        return result.rowcount > 0

    def role_ids_for_user(self, user_id: str) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_user_roles.c.role_id).where(_user_roles.c.user_id == user_id)).fetchall()
        return [r.role_id for r in rows]

    def role_names_for_user(self, user_id: str) -> list[str]:
        """Return the user's role names, sorted for stable claim output."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_roles.c.name)
                .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
                .where(_user_roles.c.user_id == user_id)
                .order_by(_roles.c.name)
            ).fetchall()
        return [r.name for r in rows]

    def grants_for_roles(self, role_ids: Iterable[str]) -> list[tuple[str, str, str]]:
        """Return (role_id, resource, action) for every grant held by the given roles."""
        role_ids = list(role_ids)
        if not role_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_role_permissions.c.role_id, _permissions.c.resource, _permissions.c.action)
                .select_from(
                    _role_permissions.join(_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                )
                .where(_role_permissions.c.role_id.in_(role_ids))
            ).fetchall()
        return [(r.role_id, r.resource, r.action) for r in rows]

    def user_has_grant(self, user_id: str, resource: str, action: str) -> bool:
        """EXISTS check across user_roles -> role_permissions -> permissions."""
        joined = _user_roles.join(
            _role_permissions, _user_roles.c.role_id == _role_permissions.c.role_id
        ).join(_permissions, _role_permissions.c.permission_id == _permissions.c.id)
        with self.engine.connect() as conn:
            found = conn.execute(
                select(
                    exists()
                    .select_from(joined)
                    .where(
                        and_(
                            _user_roles.c.user_id == user_id,
                            _permissions.c.resource == resource,
                            _permissions.c.action == action,
                        )
                    )
                )
            ).scalar()
        return bool(found)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> str:
        session_id = session.id or _new_id()
        now = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session_id,
                    user_id=session.user_id,
                    token=session.token,
                    refresh_token=session.refresh_token,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    expires_at=_iso(session.expires_at),
                    last_used_at=_iso(session.last_used_at or now),
                    created_at=_iso(session.created_at or now),
                )
            )
            conn.commit()
        return session_id

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_active_session_by_refresh_token(self, refresh_token: str, now: datetime) -> Session | None:
        """Return the session for refresh_token only if it is unrevoked and unexpired at now."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    and_(
                        _sessions.c.refresh_token == refresh_token,
                        _sessions.c.revoked_at.is_(None),
                        _sessions.c.expires_at > _iso(now),
                    )
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def update_session_token(self, session_id: str, token: str, last_used_at: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session_id)
                .values(token=token, last_used_at=_iso(last_used_at))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_session(self, session_id: str, at: datetime) -> bool:
        """Stamp revoked_at if not already set. Returns True only on the first revocation."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.id == session_id, _sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_iso(at))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_user_sessions(self, user_id: str, at: datetime, keep_session_id: str | None = None) -> list[str]:
        """Revoke every open session of user_id (optionally sparing one). Returns the revoked IDs."""
        conditions = [_sessions.c.user_id == user_id, _sessions.c.revoked_at.is_(None)]
        if keep_session_id is not None:
            conditions.append(_sessions.c.id != keep_session_id)
        with self.engine.connect() as conn:
            ids = [r.id for r in conn.execute(select(_sessions.c.id).where(and_(*conditions))).fetchall()]
            if ids:
                conn.execute(
                    _sessions.update()
                    .where(and_(_sessions.c.id.in_(ids), _sessions.c.revoked_at.is_(None)))
                    .values(revoked_at=_iso(at))
                )
                conn.commit()
        return ids

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def add_security_event(self, sec_event: SecurityEvent) -> str:
        event_id = sec_event.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _security_events.insert().values(
                    id=event_id,
                    user_id=sec_event.user_id,
                    type=sec_event.event_type,
                    severity=sec_event.severity,
                    source=sec_event.source,
                    ip_address=sec_event.ip_address,
                    user_agent=sec_event.user_agent,
                    description=sec_event.description,
                    metadata=json.dumps(sec_event.metadata, sort_keys=True),
                    is_resolved=False,
                    created_at=_iso(sec_event.created_at or _now()),
                )
            )
            conn.commit()
        return event_id

    def list_security_events(self, user_id: str | None = None, limit: int = 100) -> list[SecurityEvent]:
        """Newest first. For operators and reviewers; the auth flow never reads events back."""
        query = _security_events.select()
        if user_id is not None:
            query = query.where(_security_events.c.user_id == user_id)
        query = query.order_by(_security_events.c.created_at.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        failed_login_count=row.failed_login_count or 0,
        locked_until=_parse(row.locked_until),
        last_login_at=_parse(row.last_login_at),
        last_login_ip=row.last_login_ip,
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
        deleted_at=_parse(row.deleted_at),
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description or "",
        is_system=bool(row.is_system),
        created_at=_parse(row.created_at),
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description or "",
        resource=row.resource,
        action=row.action,
        created_at=_parse(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        refresh_token=row.refresh_token,
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        expires_at=_parse(row.expires_at),
        last_used_at=_parse(row.last_used_at),
        created_at=_parse(row.created_at),
        revoked_at=_parse(row.revoked_at),
    )


def _row_to_event(row) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        user_id=row.user_id,
        event_type=row.type,
        severity=row.severity,
        source=row.source,
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        description=row.description or "",
        metadata=json.loads(row._mapping["metadata"] or "{}"),
        is_resolved=bool(row.is_resolved),
        resolved_at=_parse(row.resolved_at),
        resolved_by=row.resolved_by,
        created_at=_parse(row.created_at),
    )
