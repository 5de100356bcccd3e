"""
auth/passwords.py -- Password hashing and the password strength policy.

Hashing: bcrypt, used directly (no passlib wrapper). bcrypt's cost factor is
what makes offline guessing of low-entropy secrets expensive. The hasher is a
small class so the credential manager depends on the hash/verify capability
rather than on bcrypt itself; tests can pass a cheaper cost.

_DUMMY_HASH enables timing equalisation: authenticate() always runs one
bcrypt verify, even for an unknown identifier, so response time does not
reveal whether the account exists.

Policy: length bounds plus four character-class rules, each independently
toggleable from Settings. check() returns every violation, not just the
first, so a registration form can show them all at once.
"""

from __future__ import annotations

from dataclasses import dataclass

import bcrypt

from core.config import Settings
from core.errors import WeakPassword

# bcrypt reads at most this many bytes of input; bcrypt 5 refuses longer input.
MAX_PASSWORD_BYTES = 72


def _is_special(c: str) -> bool:
    return not c.isalnum() and not c.isspace()


class PasswordHasher:
    """One-way hash + constant-time verify over bcrypt."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once per hasher so the first failed lookup is not slower
        # than the rest.
        self._dummy_hash = self.hash("hostpanel_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password.

        Callers run PasswordPolicy.check() first, which rejects anything
        longer than MAX_PASSWORD_BYTES.
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if plain matches hashed. A missing or malformed hash never matches."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    def burn(self, plain: str) -> None:
        """Spend one verify's worth of time against the dummy hash."""
        self.verify(plain, self._dummy_hash)


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_upper=settings.password_require_upper,
            require_lower=settings.password_require_lower,
            require_digit=settings.password_require_digit,
            require_special=settings.password_require_special,
        )

    def violations(self, password: str) -> list[str]:
        problems: list[str] = []
        if len(password) < self.min_length:
            problems.append(f"must be at least {self.min_length} characters long")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            problems.append(f"must be at most {MAX_PASSWORD_BYTES} bytes long")
        if self.require_upper and not any(c.isupper() for c in password):
            problems.append("must contain an uppercase letter")
        if self.require_lower and not any(c.islower() for c in password):
            problems.append("must contain a lowercase letter")
        if self.require_digit and not any(c.isdigit() for c in password):
            problems.append("must contain a digit")
        if self.require_special and not any(_is_special(c) for c in password):
            problems.append("must contain a special character")
        return problems

    def check(self, password: str) -> None:
        """Raise WeakPassword listing every rule the password breaks."""
        problems = self.violations(password)
        if problems:
            raise WeakPassword(problems)
