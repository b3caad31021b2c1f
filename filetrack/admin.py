"""
Administration module for FileTrack.
User management and system-wide statistics for admins and managers.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from filetrack.audit import record_action
from filetrack.auth import create_account, validate_email
from filetrack.errors import Conflict, NotFound, PermissionDenied
from filetrack.filters import check_page
from filetrack.models import AuditAction, AuditLog, FileRecord, FileStatus, ResourceType, User, UserRole
from filetrack.utils import format_file_size, isoformat

logger = logging.getLogger(__name__)

# analytics windows further back than this overflow datetime arithmetic
MAX_ANALYTICS_DAYS = 100000


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "department": user.department,
        "is_active": user.is_active,
        "created_at": isoformat(user.created_at),
        "updated_at": isoformat(user.updated_at),
    }


def get_system_stats(db: Session) -> dict:
    total_users, active_users = db.query(
        func.count(User.id),
        func.sum(case((User.is_active.is_(True), 1), else_=0)),
    ).one()

    total_files, total_storage, pending = db.query(
        func.count(FileRecord.id),
        func.sum(FileRecord.file_size),
        func.sum(case((FileRecord.status == FileStatus.PENDING_APPROVAL, 1), else_=0)),
    ).one()

    since = datetime.utcnow() - timedelta(days=1)
    recent_activity = db.query(AuditLog).filter(AuditLog.timestamp >= since).count()

    total_storage = int(total_storage or 0)
    return {
        "total_users": total_users or 0,
        "active_users": int(active_users or 0),
        "total_files": total_files or 0,
        "total_storage": total_storage,
        "total_storage_display": format_file_size(total_storage),
        "pending_approvals": int(pending or 0),
        "recent_activity": recent_activity,
    }


def list_users(db: Session, limit: int = 50, offset: int = 0) -> dict:
    """Users with their file count, storage used and last successful login, newest first."""
    check_page(limit, offset)

    file_stats = (
        db.query(
            FileRecord.uploaded_by.label("user_id"),
            func.count(FileRecord.id).label("file_count"),
            func.sum(FileRecord.file_size).label("storage_used"),
        )
        .group_by(FileRecord.uploaded_by)
        .subquery()
    )
    last_login = (
        db.query(AuditLog.user_id.label("user_id"), func.max(AuditLog.timestamp).label("last_login"))
        .filter(AuditLog.action == AuditAction.LOGIN.value, AuditLog.success.is_(True))
        .group_by(AuditLog.user_id)
        .subquery()
    )

    total = db.query(User).count()
    rows = (
        db.query(User, file_stats.c.file_count, file_stats.c.storage_used, last_login.c.last_login)
        .outerjoin(file_stats, file_stats.c.user_id == User.id)
        .outerjoin(last_login, last_login.c.user_id == User.id)
        .order_by(User.created_at.desc(), User.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )

    users = []
    for user, file_count, storage_used, login_at in rows:
        item = serialize_user(user)
        item["file_count"] = file_count or 0
        item["storage_used"] = int(storage_used or 0)
        item["last_login"] = isoformat(login_at)
        users.append(item)
    return {"users": users, "total": total}


def create_user(db: Session, identity, email: str, password: str, name: str,
                role: UserRole = UserRole.USER, department: Optional[str] = None,
                ip_address: Optional[str] = None) -> User:
    user = create_account(db, email, password, name, role=role, department=department)
    record_action(db, identity.user_id, AuditAction.REGISTER, ResourceType.USER, user.id,
                  details={"email": user.email, "role": user.role.value, "createdBy": identity.user_id},
                  ip_address=ip_address)
    return user


def update_user(db: Session, identity, user_id: int, ip_address: Optional[str] = None, **changes) -> User:
    """Update name, email, role, department or is_active; None values are left alone."""
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    if user.id == identity.user_id and (changes.get("role") not in (None, user.role)
                                        or changes.get("is_active") is False):
        raise PermissionDenied("Cannot change your own role or deactivate yourself")

    previous = serialize_user(user)
    for name in ("name", "email", "role", "department", "is_active"):
        value = changes.get(name)
        if value is None:
            continue
        if name == "email":
            value = value.strip().lower()
            validate_email(value)
            clash = db.query(User).filter(User.email == value, User.id != user.id).first()
            if clash:
                raise Conflict("User with this email already exists")
        setattr(user, name, value)
    user.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(user)

    current = serialize_user(user)
    record_action(db, identity.user_id, AuditAction.EDIT, ResourceType.USER, user.id,
                  details={
                      "previousValue": {k: previous[k] for k in previous if previous[k] != current[k]},
                      "newValue": {k: current[k] for k in current if previous[k] != current[k]},
                  },
                  ip_address=ip_address)
    return user


def deactivate_user(db: Session, identity, user_id: int, ip_address: Optional[str] = None) -> User:
    """Soft delete: the account is deactivated, never removed."""
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFound("User not found")
    if user.id == identity.user_id:
        raise PermissionDenied("Cannot delete yourself")

    user.is_active = False
    user.updated_at = datetime.utcnow()
    db.commit()
    logger.info("User %s deactivated account %s", identity.user_id, user.id)

    record_action(db, identity.user_id, AuditAction.DELETE, ResourceType.USER, user.id,
                  details={"email": user.email}, ip_address=ip_address)
    return user


def get_system_analytics(db: Session, days: int = 30) -> dict:
    """Upload and activity trends over the last ``days`` days plus department and category totals."""
    since = datetime.utcnow() - timedelta(days=days)

    upload_day = func.date(FileRecord.created_at)
    upload_trends = (
        db.query(upload_day, func.count(FileRecord.id), func.sum(FileRecord.file_size))
        .filter(FileRecord.created_at >= since)
        .group_by(upload_day)
        .order_by(upload_day)
        .all()
    )

    activity_day = func.date(AuditLog.timestamp)
    activity_trends = (
        db.query(activity_day, func.count(AuditLog.id), func.count(func.distinct(AuditLog.user_id)))
        .filter(AuditLog.timestamp >= since)
        .group_by(activity_day)
        .order_by(activity_day)
        .all()
    )

    department_count = func.count(FileRecord.id).label("count")
    department_stats = (
        db.query(FileRecord.department, department_count, func.sum(FileRecord.file_size))
        .group_by(FileRecord.department)
        .order_by(department_count.desc(), FileRecord.department)
        .all()
    )

    category_count = func.count(FileRecord.id).label("count")
    category_stats = (
        db.query(FileRecord.category, category_count, func.sum(FileRecord.file_size))
        .group_by(FileRecord.category)
        .order_by(category_count.desc(), FileRecord.category)
        .all()
    )

    return {
        "upload_trends": [
            {"date": str(day), "uploads": uploads, "total_size": int(size or 0)}
            for day, uploads, size in upload_trends
        ],
        "activity_trends": [
            {"date": str(day), "actions": actions, "unique_users": users}
            for day, actions, users in activity_trends
        ],
        "department_stats": [
            {"department": name, "file_count": count, "total_size": int(size or 0)}
            for name, count, size in department_stats
        ],
        "category_stats": [
            {"category": name, "count": count, "total_size": int(size or 0)}
            for name, count, size in category_stats
        ],
    }
