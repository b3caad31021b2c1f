"""
File lifecycle operations for FileTrack.
Upload, download, approval, metadata edits and archival, each followed by
an audit entry and, where someone should hear about it, a notification.
"""
import hashlib
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filetrack.audit import record_action
from filetrack.errors import Conflict, NotFound, PermissionDenied
from filetrack.models import AuditAction, FileRecord, FileStatus, NotificationType, ResourceType, UserRole
from filetrack.notifications import create_notification, notify_roles
from filetrack.storage import StorageAdapter
from filetrack.utils import isoformat

logger = logging.getLogger(__name__)


def calculate_checksum(data: bytes) -> str:
    """Calculate SHA-256 checksum of file data."""
    return hashlib.sha256(data).hexdigest()


def serialize_file(record: FileRecord) -> dict:
    uploader = record.uploader
    return {
        "id": record.id,
        "file_name": record.file_name,
        "original_name": record.original_name,
        "file_type": record.file_type,
        "file_size": record.file_size,
        "department": record.department,
        "category": record.category,
        "tags": record.tags,
        "description": record.description,
        "status": record.status.value,
        "uploaded_by": {
            "id": uploader.id,
            "name": uploader.name,
            "email": uploader.email,
        } if uploader else None,
        "approved_by": record.approved_by,
        "approved_at": isoformat(record.approved_at),
        "rejection_reason": record.rejection_reason,
        "created_at": isoformat(record.created_at),
        "updated_at": isoformat(record.updated_at),
        "metadata": {
            "version": record.version,
            "checksum": record.checksum,
            "access_count": record.access_count,
            "last_accessed_at": isoformat(record.last_accessed_at),
        },
    }


def _notify(db: Session, send, *args, **kwargs) -> None:
    # notifications are outside the critical path of the file operation
    try:
        send(db, *args, **kwargs)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not create notification")


def _can_manage(record: FileRecord, identity) -> bool:
    return identity.is_privileged or record.uploaded_by == identity.user_id


def upload_file(db: Session, storage: StorageAdapter, identity, data: bytes, original_name: str,
                file_type: Optional[str] = None, category: Optional[str] = None,
                tags: Optional[Iterable[str]] = None, description: Optional[str] = None,
                department: Optional[str] = None, ip_address: Optional[str] = None) -> FileRecord:
    """
    Store an uploaded document and create its record in pending_approval.
    The checksum is computed here once and never recomputed.
    """
    key = storage.put(data, original_name)

    record = FileRecord(
        file_name=key,
        original_name=original_name,
        file_type=file_type or "application/octet-stream",
        file_size=len(data),
        storage_ref=storage.ref(key),
        uploaded_by=identity.user_id,
        department=department or identity.department or "Unassigned",
        category=category or "general",
        description=description or "",
        status=FileStatus.PENDING_APPROVAL,
        checksum=calculate_checksum(data),
        version=1,
        access_count=0,
    )
    record.tags = list(tags or [])

    try:
        db.add(record)
        db.commit()
        db.refresh(record)
    except SQLAlchemyError:
        db.rollback()
        storage.delete(key)
        raise

    logger.info("User %s uploaded %s as file %s", identity.user_id, original_name, record.id)
    record_action(db, identity.user_id, AuditAction.UPLOAD, ResourceType.FILE, record.id,
                  details={"fileName": original_name, "fileSize": record.file_size,
                           "fileType": record.file_type},
                  ip_address=ip_address)

    _notify(db, notify_roles, (UserRole.ADMIN, UserRole.MANAGER), NotificationType.FILE_APPROVAL_PENDING,
            "File awaiting approval", f"{identity.name} uploaded {original_name}",
            file_id=record.id, exclude_user_id=identity.user_id)
    return record


def get_file(db: Session, file_id: int, identity) -> FileRecord:
    record = db.get(FileRecord, file_id)
    if record is None:
        raise NotFound("File not found")
    if identity.role == UserRole.USER and record.uploaded_by != identity.user_id:
        raise PermissionDenied("Access denied")
    return record


def download_file(db: Session, storage: StorageAdapter, file_id: int, identity,
                  ip_address: Optional[str] = None) -> Tuple[FileRecord, bytes]:
    """Return the record and its bytes, counting the access."""
    record = get_file(db, file_id, identity)
    if record.status == FileStatus.ARCHIVED:
        raise NotFound("File not found")

    data = storage.get(record.file_name)
    if data is None:
        record_action(db, identity.user_id, AuditAction.DOWNLOAD, ResourceType.FILE, record.id,
                      details={"fileName": record.original_name}, success=False,
                      error_message="File data not found", ip_address=ip_address)
        raise NotFound("File data not found")

    record.access_count = (record.access_count or 0) + 1
    record.last_accessed_at = datetime.utcnow()
    db.commit()

    record_action(db, identity.user_id, AuditAction.DOWNLOAD, ResourceType.FILE, record.id,
                  details={"fileName": record.original_name}, ip_address=ip_address)
    return record, data


def update_file_metadata(db: Session, file_id: int, identity, description: Optional[str] = None,
                         category: Optional[str] = None, tags: Optional[List[str]] = None,
                         ip_address: Optional[str] = None) -> FileRecord:
    """Edit descriptive fields (owner or admin/manager). Status is not editable here."""
    record = get_file(db, file_id, identity)
    if not _can_manage(record, identity):
        raise PermissionDenied("Access denied")

    previous = {"description": record.description, "category": record.category, "tags": record.tags}
    if description is not None:
        record.description = description
    if category:
        record.category = category
    if tags is not None:
        record.tags = tags
    record.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(record)

    record_action(db, identity.user_id, AuditAction.EDIT, ResourceType.FILE, record.id,
                  details={"fileName": record.original_name, "previousValue": previous,
                           "newValue": {"description": record.description, "category": record.category,
                                        "tags": record.tags}},
                  ip_address=ip_address)
    return record


def approve_file(db: Session, file_id: int, identity, ip_address: Optional[str] = None) -> FileRecord:
    record = db.get(FileRecord, file_id)
    if record is None:
        raise NotFound("File not found")
    if record.status != FileStatus.PENDING_APPROVAL:
        raise Conflict("File is not pending approval")

    now = datetime.utcnow()
    record.status = FileStatus.ACTIVE
    record.approved_by = identity.user_id
    record.approved_at = now
    record.updated_at = now
    db.commit()

    record_action(db, identity.user_id, AuditAction.APPROVE, ResourceType.FILE, record.id,
                  details={"fileName": record.original_name}, ip_address=ip_address)
    _notify(db, create_notification, record.uploaded_by, NotificationType.FILE_APPROVED,
            "File approved", f"{record.original_name} was approved by {identity.name}", file_id=record.id)
    return record


def reject_file(db: Session, file_id: int, identity, reason: Optional[str] = None,
                ip_address: Optional[str] = None) -> FileRecord:
    record = db.get(FileRecord, file_id)
    if record is None:
        raise NotFound("File not found")
    if record.status != FileStatus.PENDING_APPROVAL:
        raise Conflict("File is not pending approval")

    record.status = FileStatus.REJECTED
    record.rejection_reason = reason
    record.updated_at = datetime.utcnow()
    db.commit()

    record_action(db, identity.user_id, AuditAction.REJECT, ResourceType.FILE, record.id,
                  details={"fileName": record.original_name, "reason": reason}, ip_address=ip_address)
    message = f"{record.original_name} was rejected"
    if reason:
        message = f"{message}: {reason}"
    _notify(db, create_notification, record.uploaded_by, NotificationType.FILE_REJECTED,
            "File rejected", message, file_id=record.id)
    return record


def delete_file(db: Session, file_id: int, identity, ip_address: Optional[str] = None) -> FileRecord:
    """
    Archive a file (owner or admin/manager).
    The stored bytes are kept so the record stays recoverable.
    """
    record = get_file(db, file_id, identity)
    if not _can_manage(record, identity):
        raise PermissionDenied("Access denied")
    if record.status == FileStatus.ARCHIVED:
        raise NotFound("File not found")

    record.status = FileStatus.ARCHIVED
    record.updated_at = datetime.utcnow()
    db.commit()

    record_action(db, identity.user_id, AuditAction.DELETE, ResourceType.FILE, record.id,
                  details={"fileName": record.original_name}, ip_address=ip_address)
    return record


def _bulk_transition(db: Session, file_ids: Iterable[int], identity, from_statuses, values: dict,
                     action: AuditAction, ip_address: Optional[str]) -> int:
    ids = sorted({int(file_id) for file_id in file_ids})
    if not ids:
        return 0

    candidates = [
        file_id for (file_id,) in
        db.query(FileRecord.id).filter(FileRecord.id.in_(ids), FileRecord.status.in_(from_statuses)).all()
    ]
    if not candidates:
        return 0

    # each row flips atomically; rows changed by someone else in between are skipped by the status guard
    changed = 0
    changed_ids = []
    for file_id in candidates:
        count = (
            db.query(FileRecord)
            .filter(FileRecord.id == file_id, FileRecord.status.in_(from_statuses))
            .update(values, synchronize_session=False)
        )
        if count:
            changed += count
            changed_ids.append(file_id)
    db.commit()

    for file_id in changed_ids:
        record_action(db, identity.user_id, action, ResourceType.FILE, file_id,
                      details={"bulkOperation": True}, ip_address=ip_address)
    logger.info("User %s bulk %s %d of %d files", identity.user_id, action.value, changed, len(ids))
    return changed


def bulk_approve_files(db: Session, file_ids: Iterable[int], identity, ip_address: Optional[str] = None) -> int:
    """Approve every pending file among ``file_ids``; returns how many changed."""
    now = datetime.utcnow()
    return _bulk_transition(
        db, file_ids, identity, [FileStatus.PENDING_APPROVAL],
        {FileRecord.status: FileStatus.ACTIVE, FileRecord.approved_by: identity.user_id,
         FileRecord.approved_at: now, FileRecord.updated_at: now},
        AuditAction.APPROVE, ip_address,
    )


def bulk_delete_files(db: Session, file_ids: Iterable[int], identity, ip_address: Optional[str] = None) -> int:
    """Archive every not yet archived file among ``file_ids``; returns how many changed."""
    return _bulk_transition(
        db, file_ids, identity,
        [FileStatus.PENDING_APPROVAL, FileStatus.ACTIVE, FileStatus.REJECTED],
        {FileRecord.status: FileStatus.ARCHIVED, FileRecord.updated_at: datetime.utcnow()},
        AuditAction.DELETE, ip_address,
    )
