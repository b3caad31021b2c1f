import itertools
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from filetrack.auth import Identity, create_access_token, hash_password
from filetrack.database import Database
from filetrack.main import create_app
from filetrack.models import FileRecord, FileStatus, User, UserRole
from filetrack.storage import DatabaseStorageAdapter

PASSWORD = "Secret123"
PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture
def database():
    db = Database("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    db.open()
    yield db
    db.close()


@pytest.fixture
def session(database):
    db = database.session()
    yield db
    db.close()


@pytest.fixture
def storage(session):
    return DatabaseStorageAdapter(session)


@pytest.fixture
def users(session):
    seeded = {
        "admin": User(email="admin@example.com", name="Ada Admin", role=UserRole.ADMIN, department="IT"),
        "manager": User(email="manager@example.com", name="Max Manager", role=UserRole.MANAGER,
                        department="Finance"),
        "alice": User(email="alice@example.com", name="Alice", role=UserRole.USER, department="Finance"),
        "bob": User(email="bob@example.com", name="Bob", role=UserRole.USER, department="HR"),
    }
    for user in seeded.values():
        user.password_hash = PASSWORD_HASH
        user.is_active = True
        session.add(user)
    session.commit()
    return seeded


@pytest.fixture
def identities(users):
    return {key: Identity.from_user(user) for key, user in users.items()}


@pytest.fixture
def make_file(session):
    """Insert a file record directly; creation times increase by one minute per call."""
    counter = itertools.count(1)

    def _make(owner, original_name="report.pdf", status=FileStatus.ACTIVE, tags=(), created_at=None, **fields):
        n = next(counter)
        record = FileRecord(
            file_name=f"stored_{n}_{original_name}",
            original_name=original_name,
            file_type=fields.pop("file_type", "application/pdf"),
            file_size=fields.pop("file_size", 1024),
            storage_ref=f"db://stored_{n}",
            uploaded_by=owner.id,
            department=fields.pop("department", owner.department or "Unassigned"),
            category=fields.pop("category", "general"),
            description=fields.pop("description", ""),
            status=status,
            checksum="0" * 64,
            created_at=created_at or datetime(2024, 1, 1) + timedelta(minutes=n),
            **fields,
        )
        record.tags = list(tags)
        session.add(record)
        session.commit()
        session.refresh(record)
        return record

    return _make


@pytest.fixture
def client(database, session, users):
    with TestClient(create_app(database)) as test_client:
        yield test_client
        # release the shared connection before shutdown disposes the engine
        session.close()


@pytest.fixture
def headers(users):
    """Bearer headers per seeded user."""
    return {key: {"Authorization": f"Bearer {create_access_token(user)}"} for key, user in users.items()}


@pytest.fixture
def password():
    """Plain-text password of every seeded user."""
    return PASSWORD
