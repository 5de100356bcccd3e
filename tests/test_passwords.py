"""
tests/test_passwords.py -- Unit tests for auth/passwords.py.

Covers:
  - bcrypt hash/verify, including missing and malformed hashes
  - every policy rule reported, not just the first
  - rules individually toggleable
  - the 72-byte bcrypt input limit, counted in UTF-8 bytes
  - non-ASCII symbols count as special characters
"""

from __future__ import annotations

import pytest

from auth.passwords import PasswordHasher, PasswordPolicy
from core.errors import WeakPassword


@pytest.fixture(scope="module")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


def test_hash_is_not_plaintext_and_verifies(hasher):
    hashed = hasher.hash("Str0ng!Passw0rd")
    assert hashed != "Str0ng!Passw0rd"
    assert hashed.startswith("$2")
    assert hasher.verify("Str0ng!Passw0rd", hashed)
    assert not hasher.verify("Str0ng!Passw0rD", hashed)


def test_same_password_hashes_differently(hasher):
    assert hasher.hash("Str0ng!Passw0rd") != hasher.hash("Str0ng!Passw0rd")


@pytest.mark.parametrize("stored", [None, "", "not-a-bcrypt-hash"])
def test_missing_or_malformed_hash_never_matches(hasher, stored):
    assert hasher.verify("anything", stored) is False


def test_burn_does_not_raise(hasher):
    hasher.burn("whatever")


def test_strong_password_passes_default_policy():
    PasswordPolicy().check("Str0ng!Passw0rd")


def test_every_violation_reported():
    with pytest.raises(WeakPassword) as exc_info:
        PasswordPolicy().check("abc")
    violations = exc_info.value.violations
    assert len(violations) == 4
    assert any("8 characters" in v for v in violations)
    assert any("uppercase" in v for v in violations)
    assert any("digit" in v for v in violations)
    assert any("special" in v for v in violations)
    assert exc_info.value.status_code == 400


@pytest.mark.parametrize(
    "password, rule",
    [
        ("str0ng!passw0rd", "uppercase"),
        ("STR0NG!PASSW0RD", "lowercase"),
        ("Strong!Password", "digit"),
        ("Str0ngPassw0rd", "special"),
        ("S0!a", "characters"),
    ],
)
def test_single_rule_violation(password, rule):
    violations = PasswordPolicy().violations(password)
    assert len(violations) == 1
    assert rule in violations[0]


def test_rules_can_be_switched_off():
    policy = PasswordPolicy(
        min_length=4, require_upper=False, require_lower=False, require_digit=False, require_special=False
    )
    assert policy.violations("abcd") == []
    assert policy.violations("abc") == ["must be at least 4 characters long"]


def test_policy_from_settings(settings):
    policy = PasswordPolicy.from_settings(settings.model_copy(update={"password_min_length": 12}))
    assert policy.min_length == 12
    assert policy.require_special is True


def test_byte_limit_counts_utf8_bytes():
    policy = PasswordPolicy()
    assert policy.violations("Aa1!" + "x" * 68) == []
    assert policy.violations("Aa1!" + "x" * 69) == ["must be at most 72 bytes long"]
    # 4 + 23 * 3 = 73 bytes in 27 characters.
    assert policy.violations("Aa1!" + "€" * 23) == ["must be at most 72 bytes long"]


@pytest.mark.parametrize("symbol", ["€", "§", "£", "¿"])
def test_non_ascii_symbols_count_as_special(symbol):
    assert PasswordPolicy().violations(f"Str0ngPassw0rd{symbol}") == []


def test_whitespace_is_not_a_special_character():
    assert PasswordPolicy().violations("Str0ng Passw0rd") == ["must contain a special character"]
