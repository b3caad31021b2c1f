import pytest
from fastapi import HTTPException

from filetrack.auth import authenticate_user
from filetrack.bootstrap import ensure_admin, main
from filetrack.database import Database
from filetrack.models import AuditLog, User, UserRole


def test_ensure_admin_creates_an_audited_admin(session):
    user, created = ensure_admin(session, "Root@Example.com", "Passw0rdX")

    assert created is True
    assert (user.email, user.role, user.department) == ("root@example.com", UserRole.ADMIN, "IT")
    entry = session.query(AuditLog).one()
    assert (entry.action, entry.resource_type, entry.resource_id) == ("register", "user", user.id)
    assert entry.details["source"] == "setup"


def test_ensure_admin_is_idempotent(session):
    first, _ = ensure_admin(session, "root@example.com", "Passw0rdX")
    again, created = ensure_admin(session, "ROOT@example.com", "Different1X")

    assert created is False
    assert again.id == first.id
    assert session.query(User).count() == 1
    assert session.query(AuditLog).count() == 1


def test_ensure_admin_validates_password(session):
    with pytest.raises(HTTPException):
        ensure_admin(session, "root@example.com", "weak")
    assert session.query(User).count() == 0


def test_main_seeds_admin_once(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'filetrack.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("ADMIN_EMAIL", "boss@example.com")
    monkeypatch.setenv("ADMIN_PASSWORD", "Passw0rdX")

    assert main() == 0
    assert main() == 0

    database = Database(url).open()
    db = database.session()
    try:
        assert db.query(User).filter(User.role == UserRole.ADMIN).count() == 1
        assert db.query(AuditLog).filter(AuditLog.action == "register").count() == 1
        assert authenticate_user(db, "boss@example.com", "Passw0rdX") is not None
    finally:
        db.close()
        database.close()


def test_main_requires_a_password(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'filetrack.db'}")
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)

    assert main() == 1


def test_main_rejects_a_weak_password(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'filetrack.db'}")
    monkeypatch.setenv("ADMIN_PASSWORD", "weak")

    assert main() == 1
