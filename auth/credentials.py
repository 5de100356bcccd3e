"""
auth/credentials.py -- Credential verification, lockout policy and registration.

authenticate() check order:
  1. lookup by username OR email   -> InvalidCredentials (dummy bcrypt run first)
  2. active flag                   -> AccountDisabled
  3. lockout window                -> AccountLocked(locked_until)
  4. password                      -> counter +1, maybe lock, audit, InvalidCredentials
  5. two-factor (if enrolled)      -> TwoFactorRequired / InvalidTwoFactorCode
  6. success                       -> reset counter, stamp last login, open session

An unknown identifier and a wrong password produce the same exception with
the same message, and both pay for one bcrypt verify, so neither the
response nor its timing reveals whether an account exists.

An enrolled account always needs its code; TWO_FACTOR_ENABLED only decides
whether new enrolments are accepted.

A missing or wrong two-factor code is not a password guess: it does not touch
the failed-login counter. The attacker already had to know the password to
get that far.

Lockout: the counter is incremented in the store by a single UPDATE that also
sets locked_until once the counter reaches the threshold. Two concurrent
wrong-password attempts may under-count by one; lockout is a throttle, not an
exact tally. The counter is only reset by a successful login or an operator
unlock, so after a lockout expires the next wrong password locks again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.audit import SecurityEventRecorder
from auth.models import Origin, Session, User
from auth.passwords import PasswordHasher, PasswordPolicy
from auth.rbac import DEFAULT_ROLE, RBACResolver
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.twofactor import TwoFactorVerifier
from core.errors import (
    AccountDisabled,
    AccountLocked,
    DuplicateIdentity,
    InvalidCredentials,
    InvalidTwoFactorCode,
    PermissionDenied,
    TwoFactorRequired,
)

logger = logging.getLogger("hostpanel.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialManager:
    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        policy: PasswordPolicy,
        verifier: TwoFactorVerifier,
        recorder: SecurityEventRecorder,
        rbac: RBACResolver,
        sessions: SessionManager,
        *,
        lockout_threshold: int = 5,
        lockout_minutes: int = 30,
        two_factor_enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.verifier = verifier
        self.recorder = recorder
        self.rbac = rbac
        self.sessions = sessions
        self.lockout_threshold = lockout_threshold
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self.two_factor_enabled = two_factor_enabled
        self._clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(
        self,
        identifier: str,
        password: str,
        two_factor_code: str | None = None,
        origin: Origin = Origin(),
    ) -> tuple[User, Session, list[str], str]:
        """Verify credentials and open a session.

        Returns (user, session, role_names, access_token).
        """
        user = self.store.get_by_identifier(identifier)
        if user is None:
            self.hasher.burn(password)
            logger.info("Login failed: unknown identifier ip=%s", origin.ip_address)
            raise InvalidCredentials()

        if not user.is_active:
            logger.info("Login refused: account disabled user_id=%s", user.id)
            raise AccountDisabled()

        now = self._clock()
        if user.is_locked(now):
            logger.info("Login refused: account locked user_id=%s until=%s", user.id, user.locked_until)
            raise AccountLocked(user.locked_until)

        if not self.hasher.verify(password, user.password_hash):
            self._register_failure(user, origin, now)
            raise InvalidCredentials()

        if user.two_factor_enabled:
            if not two_factor_code:
                raise TwoFactorRequired()
            if not self.verifier.verify(user.two_factor_secret or "", two_factor_code):
                logger.info("Login failed: invalid two-factor code user_id=%s", user.id)
                raise InvalidTwoFactorCode()

        self.store.record_successful_login(user.id, origin.ip_address, now)
        user.failed_login_count = 0
        user.locked_until = None
        user.last_login_at = now
        user.last_login_ip = origin.ip_address

        roles = self.rbac.role_names(user.id)
        session, access_token = self.sessions.create(user, origin, roles)
        logger.info("Login succeeded user_id=%s session_id=%s", user.id, session.id)
        return user, session, roles, access_token

    def _register_failure(self, user: User, origin: Origin, now: datetime) -> None:
        updated = self.store.record_failed_login(user.id, self.lockout_threshold, now + self.lockout_duration)
        failed_count = updated.failed_login_count if updated else user.failed_login_count + 1
        logger.info("Login failed: bad password user_id=%s failed_count=%d", user.id, failed_count)
        self.recorder.login_failed(user.id, user.username, origin, failed_count)
        if updated is not None and updated.is_locked(now):
            logger.warning("Account locked user_id=%s until=%s", user.id, updated.locked_until.isoformat())
            self.recorder.account_locked(user.id, user.username, origin, updated.locked_until)

    # ------------------------------------------------------------------
    # Registration and password management
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        """Create an active account with the default "user" role.

        The default role is created on first use; this is the only place the
        system creates a role on its own.
        """
        self.policy.check(password)
        if self.store.identity_exists(username, email):
            raise DuplicateIdentity()

        new_user = User(
            username=username,
            email=email,
            password_hash=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            is_active=True,
        )
        try:
            user_id = self.store.create_user(new_user)
        except IntegrityError as exc:
            raise DuplicateIdentity() from exc

        self.rbac.ensure_role(DEFAULT_ROLE, "User", "Default user role", is_system=True)
        self.rbac.assign_role(user_id, DEFAULT_ROLE)
        logger.info("Registered user_id=%s username=%s", user_id, username)
        return self.store.get_user(user_id)

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        keep_session_id: str | None = None,
    ) -> list[str]:
        """Replace the password after re-verifying the current one.

        Every other open session of the user is revoked. Returns the revoked
        session IDs.
        """
        user = self.store.get_user(user_id)
        if user is None or not self.hasher.verify(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect.")
        self.policy.check(new_password)
        self.store.update_user(user_id, password_hash=self.hasher.hash(new_password))
        logger.info("Password changed user_id=%s", user_id)
        return self.sessions.revoke_all(user_id, keep_session_id=keep_session_id)

    def enable_two_factor(self, user_id: str, secret: str) -> bool:
        if not self.two_factor_enabled:
            raise PermissionDenied("Two-factor enrolment is disabled.")
        return self.store.update_user(user_id, two_factor_enabled=True, two_factor_secret=secret)

    def disable_two_factor(self, user_id: str) -> bool:
        return self.store.update_user(user_id, two_factor_enabled=False, two_factor_secret=None)

    def unlock(self, user_id: str) -> bool:
        """Operator reset of the failed-login counter and any lockout."""
        return self.store.update_user(user_id, failed_login_count=0, locked_until=None)

    def set_active(self, user_id: str, active: bool) -> bool:
        """Enable or disable an account. Disabling also revokes its sessions."""
        updated = self.store.update_user(user_id, is_active=active)
        if updated and not active:
            self.sessions.revoke_all(user_id)
        return updated

    def retire(self, user_id: str) -> bool:
        """Soft-delete an account: hidden from lookups, kept for audit, sessions revoked."""
        retired = self.store.soft_delete_user(user_id)
        if retired:
            self.sessions.revoke_all(user_id)
        return retired
