import hashlib
import re

import pytest

from filetrack.errors import Conflict, NotFound, PermissionDenied, StorageUnavailable
from filetrack.files import (
    approve_file, bulk_approve_files, bulk_delete_files, delete_file, download_file, get_file, reject_file,
    update_file_metadata, upload_file,
)
from filetrack.models import AuditLog, FileBlob, FileRecord, FileStatus, Notification, NotificationType
from filetrack.storage import FilesystemStorageAdapter, generate_storage_key


def audit_actions(session, resource_id=None):
    query = session.query(AuditLog).order_by(AuditLog.id)
    if resource_id is not None:
        query = query.filter(AuditLog.resource_id == resource_id, AuditLog.resource_type == "file")
    return [entry.action for entry in query]


def test_upload_creates_pending_record(session, storage, users, identities):
    data = b"quarterly numbers"

    record = upload_file(session, storage, identities["alice"], data, "Q1 report.pdf",
                         file_type="application/pdf", category="reports", tags=["q1", "q1", "finance"])

    assert record.status == FileStatus.PENDING_APPROVAL
    assert record.checksum == hashlib.sha256(data).hexdigest()
    assert record.file_size == len(data)
    assert record.department == "Finance"
    assert record.tags == ["q1", "finance"]
    assert record.storage_ref == f"db://{record.file_name}"
    assert session.get(FileBlob, record.file_name).data == data
    assert audit_actions(session, record.id) == ["upload"]

    notified = {n.user_id for n in session.query(Notification)
                if n.type == NotificationType.FILE_APPROVAL_PENDING}
    assert notified == {users["admin"].id, users["manager"].id}


def test_download_counts_access(session, storage, users, identities):
    record = upload_file(session, storage, identities["alice"], b"abc", "a.txt")

    fetched, data = download_file(session, storage, record.id, identities["alice"])
    download_file(session, storage, record.id, identities["manager"])

    assert data == b"abc"
    assert fetched.access_count == 2
    assert fetched.last_accessed_at is not None
    assert audit_actions(session, record.id) == ["upload", "download", "download"]


def test_download_missing_blob_is_audited_as_failure(session, storage, users, identities, make_file):
    record = make_file(users["alice"], "ghost.pdf")

    with pytest.raises(NotFound):
        download_file(session, storage, record.id, identities["alice"])

    entry = session.query(AuditLog).one()
    assert entry.action == "download"
    assert entry.success is False


def test_plain_user_cannot_reach_foreign_file(session, storage, users, identities, make_file):
    record = make_file(users["alice"], "private.pdf")

    with pytest.raises(PermissionDenied):
        get_file(session, record.id, identities["bob"])
    with pytest.raises(PermissionDenied):
        delete_file(session, record.id, identities["bob"])
    with pytest.raises(NotFound):
        get_file(session, 9999, identities["admin"])


def test_approve_notifies_uploader(session, users, identities, make_file):
    record = make_file(users["alice"], "a.pdf", status=FileStatus.PENDING_APPROVAL)

    approve_file(session, record.id, identities["manager"])

    assert record.status == FileStatus.ACTIVE
    assert record.approved_by == users["manager"].id
    assert audit_actions(session, record.id) == ["approve"]
    notification = session.query(Notification).filter(Notification.user_id == users["alice"].id).one()
    assert notification.type == NotificationType.FILE_APPROVED

    with pytest.raises(Conflict):
        approve_file(session, record.id, identities["manager"])


def test_reject_keeps_reason(session, users, identities, make_file):
    record = make_file(users["alice"], "a.pdf", status=FileStatus.PENDING_APPROVAL)

    reject_file(session, record.id, identities["admin"], reason="Wrong template")

    assert record.status == FileStatus.REJECTED
    assert record.rejection_reason == "Wrong template"
    notification = session.query(Notification).filter(Notification.user_id == users["alice"].id).one()
    assert notification.message.endswith("Wrong template")


def test_update_metadata_records_previous_values(session, users, identities, make_file):
    record = make_file(users["alice"], "a.pdf", category="drafts", tags=["old"])

    update_file_metadata(session, record.id, identities["alice"], category="final", tags=["new"])

    assert record.category == "final"
    assert record.tags == ["new"]
    entry = session.query(AuditLog).one()
    assert entry.action == "edit"
    assert entry.details["previousValue"]["category"] == "drafts"
    assert entry.details["newValue"]["tags"] == ["new"]


def test_delete_archives_and_keeps_blob(session, storage, users, identities):
    record = upload_file(session, storage, identities["alice"], b"abc", "a.txt")

    delete_file(session, record.id, identities["alice"])

    assert record.status == FileStatus.ARCHIVED
    assert storage.get(record.file_name) == b"abc"
    with pytest.raises(NotFound):
        download_file(session, storage, record.id, identities["alice"])


def test_bulk_approve_only_changes_pending_files(session, users, identities, make_file):
    pending = [make_file(users["alice"], f"p{n}.pdf", status=FileStatus.PENDING_APPROVAL) for n in range(3)]
    active = make_file(users["alice"], "live.pdf", status=FileStatus.ACTIVE)

    changed = bulk_approve_files(session, [f.id for f in pending] + [active.id, 9999], identities["manager"])

    assert changed == 3
    session.expire_all()
    assert {f.status for f in pending} == {FileStatus.ACTIVE}
    entries = session.query(AuditLog).filter(AuditLog.action == "approve").all()
    assert sorted(e.resource_id for e in entries) == sorted(f.id for f in pending)
    assert all(e.details == {"bulkOperation": True} for e in entries)


def test_bulk_delete(session, users, identities, make_file):
    files = [make_file(users["bob"], f"f{n}.pdf") for n in range(2)]
    archived = make_file(users["bob"], "old.pdf", status=FileStatus.ARCHIVED)

    assert bulk_delete_files(session, [f.id for f in files] + [archived.id], identities["admin"]) == 2
    assert bulk_delete_files(session, [], identities["admin"]) == 0
    assert session.query(FileRecord).filter(FileRecord.status == FileStatus.ARCHIVED).count() == 3


def test_storage_keys_are_unique_and_keep_extension():
    first = generate_storage_key("My Report.PDF")
    second = generate_storage_key("My Report.PDF")

    assert first != second
    assert re.fullmatch(r"My_Report_\d+_[0-9a-f]{16}\.PDF", first)


def test_filesystem_storage_roundtrip(tmp_path):
    adapter = FilesystemStorageAdapter(str(tmp_path / "blobs"))

    key = adapter.put(b"payload", "../../etc/passwd")

    assert "/" not in key
    assert adapter.get(key) == b"payload"
    assert adapter.ref(key).startswith(str(tmp_path))
    assert adapter.delete(key) is True
    assert adapter.get(key) is None
    assert adapter.delete(key) is False


def test_filesystem_storage_failure_is_reported(tmp_path):
    adapter = FilesystemStorageAdapter(str(tmp_path))
    adapter.storage_path = str(tmp_path / "removed")

    with pytest.raises(StorageUnavailable):
        adapter.put(b"x", "a.txt")
