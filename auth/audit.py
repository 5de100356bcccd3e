"""
auth/audit.py -- Append-only security event recorder.

The credential manager writes one event per failed login and one per lockout
it triggers. Events are never read back by the auth flow; reviewers and
alerting consume them elsewhere.

Recording must never change the outcome of the action being recorded: any
exception from the store is logged here and swallowed, so a broken audit
table cannot turn a wrong-password response into a 500 or a successful login
into a failure.
"""

from __future__ import annotations

import logging

from auth.models import Origin, SecurityEvent
from auth.store import AuthStore

logger = logging.getLogger("hostpanel.audit")

LOGIN_FAILED = "login_failed"
ACCOUNT_LOCKED = "account_locked"


class SecurityEventRecorder:
    def __init__(self, store: AuthStore, source: str = "web") -> None:
        self.store = store
        self.source = source

    def record(self, sec_event: SecurityEvent) -> str | None:
        """Append sec_event. Returns its ID, or None if the write failed."""
        try:
            return self.store.add_security_event(sec_event)
        except Exception:
            logger.exception(
                "Failed to record security event type=%s user_id=%s",
                sec_event.event_type,
                sec_event.user_id,
            )
            return None

    def login_failed(self, user_id: str, username: str, origin: Origin, failed_count: int) -> str | None:
        return self.record(
            SecurityEvent(
                event_type=LOGIN_FAILED,
                severity="medium",
                source=self.source,
                user_id=user_id,
                ip_address=origin.ip_address,
                user_agent=origin.user_agent,
                description=f"Failed login attempt for user {username}",
                metadata={"failed_login_count": failed_count},
            )
        )

    def account_locked(self, user_id: str, username: str, origin: Origin, locked_until) -> str | None:
        return self.record(
            SecurityEvent(
                event_type=ACCOUNT_LOCKED,
                severity="high",
                source=self.source,
                user_id=user_id,
                ip_address=origin.ip_address,
                user_agent=origin.user_agent,
                description=f"Account {username} locked after repeated failed logins",
                metadata={"locked_until": locked_until.isoformat()},
            )
        )
