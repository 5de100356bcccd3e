"""
tests/test_cli.py -- Operator command line in main.py.

The service builder is patched to hand back the in-memory AuthService from
conftest.py, and close() is neutralised so the store survives main()'s
finally block long enough to assert on it.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

import main as cli
from core.errors import InvalidCredentials

PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def run(service, monkeypatch, capsys):
    monkeypatch.setattr(cli, "_build_service", lambda: service)
    monkeypatch.setattr(service, "close", lambda: None)

    def _run(*argv):
        code = cli.main(list(argv))
        return code, capsys.readouterr().out

    return _run


def test_no_command_prints_help(run):
    code, out = run()
    assert code == 0
    assert "COMMAND" in out


def test_create_user_with_extra_role(run, service):
    code, out = run("create-user", "root", "root@example.com", "--password", PASSWORD, "--role", "admin")
    assert code == 0
    assert "Created user root" in out
    user = service.store.get_by_identifier("root")
    assert service.rbac.role_names(user.id) == ["admin", "user"]
    assert service.store.get_role_by_name("admin").is_system


def test_create_user_weak_password_fails(run, service):
    code, out = run("create-user", "root", "root@example.com", "--password", "weak")
    assert code == 1
    assert "[!]" in out
    assert service.store.get_by_identifier("root") is None


def test_role_grant_and_permissions(run, service, alice):
    assert run("create-role", "reseller", "--display-name", "Reseller")[0] == 0
    assert run("grant", "reseller", "domain", "create")[0] == 0
    _, out = run("grant", "reseller", "domain", "create")
    assert "already granted" in out
    assert run("assign-role", "alice", "reseller")[0] == 0

    code, out = run("permissions", "alice@x.com")
    assert code == 0
    assert "reseller" in out
    assert "domain" in out and "create" in out
    assert service.has_permission(alice.id, "domain", "create")

    assert run("revoke-grant", "reseller", "domain", "create")[0] == 0
    assert not service.has_permission(alice.id, "domain", "create")
    assert run("remove-role", "alice", "reseller")[0] == 0
    assert service.rbac.role_names(alice.id) == ["user"]


def test_grant_to_unknown_role_fails(run):
    code, out = run("grant", "ghost", "domain", "create")
    assert code == 1
    assert "Unknown role" in out


def test_unknown_user_fails(run):
    code, out = run("unlock", "nobody")
    assert code == 1
    assert "No user matches" in out


def test_unlock_and_disable(run, service, alice, clock):
    service.store.record_failed_login(alice.id, 1, clock())
    assert run("unlock", "alice")[0] == 0
    assert service.store.get_user(alice.id).failed_login_count == 0

    assert run("disable", "alice")[0] == 0
    assert service.store.get_user(alice.id).is_active is False


def test_events_listing(run, service, alice):
    with pytest.raises(InvalidCredentials):
        service.authenticate("alice", "wrong-password")
    code, out = run("events", "--user", "alice")
    assert code == 0
    assert "login_failed" in out


def test_store_outage_reported_not_raised(run, service, alice, monkeypatch):
    def _db_down(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(service.store, "get_by_identifier", _db_down)
    code, out = run("unlock", "alice")
    assert code == 1
    assert "backend unavailable" in out
