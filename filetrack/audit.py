"""
Audit logging module for FileTrack.
Provides best-effort append-only logging, audit trail queries, statistics
and report export.
"""
import csv
import hashlib
import io
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from filetrack.errors import InvalidFilter
from filetrack.filters import AuditFilters, check_page, compile_audit_filters
from filetrack.models import AuditLog, FileRecord, ResourceType, User
from filetrack.utils import enum_value

logger = logging.getLogger(__name__)

EXPORT_LIMIT = 10000
ACTIVITY_DAYS = 30
TOP_USERS_LIMIT = 10

CSV_HEADERS = [
    "Timestamp",
    "User",
    "Action",
    "Resource Type",
    "Resource Name",
    "Success",
    "Details",
    "IP Address",
]


def _signature(user_id, action, resource_type, resource_id, ip_address, timestamp: datetime) -> str:
    signature_data = f"{user_id}:{action}:{resource_type}:{resource_id}:{ip_address}:{timestamp.isoformat()}"
    return hashlib.sha256(signature_data.encode('utf-8')).hexdigest()


def record_action(db: Session, user_id: int, action, resource_type, resource_id: Optional[int],
                  details: Optional[dict] = None, success: bool = True,
                  error_message: Optional[str] = None, ip_address: Optional[str] = None,
                  user_agent: Optional[str] = None) -> Optional[AuditLog]:
    """
    Append an audit log entry.

    The timestamp is assigned here, never by the caller. Recording is best
    effort: a failed write is rolled back and logged, and None is returned so
    the operation being audited is not affected.
    """
    action = enum_value(action)
    resource_type = enum_value(resource_type)
    # whole seconds so the signature survives DATETIME columns without fractions
    timestamp = datetime.utcnow().replace(microsecond=0)

    log_entry = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details or {},
        ip_address=ip_address,
        user_agent=user_agent,
        timestamp=timestamp,
        success=success,
        error_message=error_message,
        signature_hash=_signature(user_id, action, resource_type, resource_id, ip_address, timestamp),
    )

    try:
        db.add(log_entry)
        db.commit()
        db.refresh(log_entry)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record audit entry %s on %s %s by user %s",
                         action, resource_type, resource_id, user_id)
        return None

    return log_entry


def verify_log_integrity(log_entry: AuditLog) -> bool:
    """
    Verify the integrity of an audit log entry.
    Recalculates signature hash and compares with stored value.
    """
    calculated_hash = _signature(log_entry.user_id, log_entry.action, log_entry.resource_type,
                                 log_entry.resource_id, log_entry.ip_address, log_entry.timestamp)
    return calculated_hash == log_entry.signature_hash


def _resolve_files(db: Session, ids) -> dict:
    rows = db.query(FileRecord.id, FileRecord.original_name, FileRecord.file_name, FileRecord.category) \
        .filter(FileRecord.id.in_(ids)).all()
    return {
        row.id: {"id": row.id, "original_name": row.original_name,
                 "file_name": row.file_name, "category": row.category}
        for row in rows
    }


def _resolve_users(db: Session, ids) -> dict:
    rows = db.query(User.id, User.name, User.email).filter(User.id.in_(ids)).all()
    return {row.id: {"id": row.id, "name": row.name, "email": row.email} for row in rows}


# resource_type -> loader of {id: projection}; types without an entry have no resource
RESOURCE_RESOLVERS = {
    ResourceType.FILE.value: _resolve_files,
    ResourceType.USER.value: _resolve_users,
}


def resolve_resources(db: Session, entries) -> dict:
    """Batch-resolve the resources referenced by ``entries`` keyed by (resource_type, resource_id)."""
    wanted = {}
    for entry in entries:
        if entry.resource_id is not None and entry.resource_type in RESOURCE_RESOLVERS:
            wanted.setdefault(entry.resource_type, set()).add(entry.resource_id)

    resolved = {}
    for resource_type, ids in wanted.items():
        for resource_id, projection in RESOURCE_RESOLVERS[resource_type](db, ids).items():
            resolved[(resource_type, resource_id)] = projection
    return resolved


def serialize_entry(entry: AuditLog, resource: Optional[dict] = None) -> dict:
    user = entry.user
    return {
        "id": entry.id,
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "details": entry.details or {},
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "timestamp": entry.timestamp.isoformat(),
        "success": entry.success,
        "error_message": entry.error_message,
        "user": {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role.value,
            "department": user.department,
        } if user else None,
        "resource": resource,
    }


def query_audit_logs(db: Session, filters: AuditFilters, identity, limit: int = 100, offset: int = 0) -> dict:
    """
    Retrieve audit logs matching ``filters``, newest first.
    ``total`` counts every matching entry regardless of pagination.
    """
    check_page(limit, offset)

    query = db.query(AuditLog).filter(*compile_audit_filters(filters, identity))
    total = query.count()

    entries = (
        query.options(joinedload(AuditLog.user))
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    resources = resolve_resources(db, entries)

    return {
        "entries": [serialize_entry(e, resources.get((e.resource_type, e.resource_id))) for e in entries],
        "total": total,
    }


def get_audit_stats(db: Session, filters: AuditFilters, identity) -> dict:
    """
    Aggregate audit statistics for dashboard display.
    Top users are only reported to admins and managers.
    """
    criteria = compile_audit_filters(filters, identity)

    total, successful, unique_users = (
        db.query(
            func.count(AuditLog.id),
            func.sum(case((AuditLog.success.is_(True), 1), else_=0)),
            func.count(func.distinct(AuditLog.user_id)),
        )
        .filter(*criteria)
        .one()
    )
    total = total or 0
    successful = int(successful or 0)

    action_count = func.count(AuditLog.id).label("count")
    action_breakdown = (
        db.query(AuditLog.action, action_count)
        .filter(*criteria)
        .group_by(AuditLog.action)
        .order_by(action_count.desc(), AuditLog.action)
        .all()
    )

    since = datetime.utcnow() - timedelta(days=ACTIVITY_DAYS)
    day = func.date(AuditLog.timestamp)
    daily_activity = (
        db.query(day, func.count(AuditLog.id))
        .filter(*criteria, AuditLog.timestamp >= since)
        .group_by(day)
        .order_by(day)
        .all()
    )

    top_users = []
    if identity.is_privileged:
        user_count = func.count(AuditLog.id).label("count")
        top_users = [
            {"user_id": user_id, "user": name, "count": count}
            for user_id, name, count in (
                db.query(User.id, User.name, user_count)
                .join(AuditLog, AuditLog.user_id == User.id)
                .filter(*criteria)
                .group_by(User.id, User.name)
                .order_by(user_count.desc(), User.name)
                .limit(TOP_USERS_LIMIT)
                .all()
            )
        ]

    return {
        "total_actions": total,
        "successful_actions": successful,
        "failed_actions": total - successful,
        "unique_users": unique_users or 0,
        "action_breakdown": [{"action": action, "count": count} for action, count in action_breakdown],
        "daily_activity": [{"date": str(date), "count": count} for date, count in daily_activity],
        "top_users": top_users,
    }


def get_recent_activity(db: Session, identity, limit: int = 20) -> list:
    """Latest audit entries visible to the caller."""
    return query_audit_logs(db, AuditFilters(), identity, limit=limit)["entries"]


def _resource_name(entry: dict) -> str:
    resource = entry.get("resource") or {}
    return resource.get("original_name") or resource.get("name") or entry["details"].get("fileName") or ""


def export_audit_logs_csv(entries: list) -> str:
    """Render audit entries as CSV with the fixed report header."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for entry in entries:
        writer.writerow([
            entry["timestamp"],
            (entry.get("user") or {}).get("name") or "Unknown",
            entry["action"],
            entry["resource_type"],
            _resource_name(entry),
            "Success" if entry["success"] else "Failed",
            json.dumps(entry["details"], sort_keys=True, default=str),
            entry.get("ip_address") or entry["details"].get("ipAddress") or "",
        ])
    return buffer.getvalue()


def export_audit_logs_json(entries: list) -> str:
    return json.dumps(entries, indent=2, default=str)


def export_audit_report(db: Session, filters: AuditFilters, identity, fmt: str = "csv") -> str:
    """
    Export the filtered audit trail (capped at EXPORT_LIMIT entries) as CSV or JSON.
    """
    fmt = (fmt or "csv").lower()
    if fmt not in ("csv", "json"):
        raise InvalidFilter(f"Unsupported export format: {fmt}")

    entries = query_audit_logs(db, filters, identity, limit=EXPORT_LIMIT)["entries"]
    logger.info("Exporting %d audit entries as %s for user %s", len(entries), fmt, identity.user_id)

    if fmt == "json":
        return export_audit_logs_json(entries)
    return export_audit_logs_csv(entries)


def export_filename(fmt: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"audit-report-{now.date().isoformat()}.{fmt.lower()}"
