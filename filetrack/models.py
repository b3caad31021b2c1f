"""
Database models for FileTrack.
Defines users, file records, audit log, notifications and saved searches.
"""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Enum, ForeignKey, Integer, LargeBinary,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class UserRole(enum.Enum):
    """User role enumeration for RBAC."""
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class FileStatus(enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class AuditAction(enum.Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    SHARE = "share"
    LOGIN = "login"
    REGISTER = "register"
    SEARCH = "search"


class ResourceType(enum.Enum):
    FILE = "file"
    USER = "user"
    SYSTEM = "system"


class NotificationType(enum.Enum):
    FILE_APPROVAL_PENDING = "file_approval_pending"
    FILE_APPROVED = "file_approved"
    FILE_REJECTED = "file_rejected"
    FILE_SHARED = "file_shared"
    SYSTEM_ALERT = "system_alert"


class DigestFrequency(enum.Enum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"
    NEVER = "never"


class User(Base):
    """User table with authentication, role and department."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.USER)
    department = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    files = relationship("FileRecord", back_populates="uploader", foreign_keys="FileRecord.uploaded_by")
    audit_logs = relationship("AuditLog", back_populates="user")


class FileRecord(Base):
    """
    Metadata for an uploaded document.
    Content bytes live in the blob store under ``file_name``.
    """
    __tablename__ = 'files'

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_name = Column(String(255), unique=True, nullable=False)
    original_name = Column(String(255), nullable=False)
    file_type = Column(String(255), nullable=False, default="application/octet-stream")
    file_size = Column(Integer, nullable=False)
    storage_ref = Column(String(512), nullable=False)
    uploaded_by = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    department = Column(String(100), nullable=False, default="Unassigned")
    category = Column(String(100), nullable=False, default="general")
    description = Column(Text, nullable=True)
    status = Column(Enum(FileStatus), nullable=False, default=FileStatus.PENDING_APPROVAL, index=True)
    approved_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    version = Column(Integer, nullable=False, default=1)
    checksum = Column(String(64), nullable=False)
    access_count = Column(Integer, nullable=False, default=0)
    last_accessed_at = Column(DateTime, nullable=True)

    uploader = relationship("User", back_populates="files", foreign_keys=[uploaded_by])
    approver = relationship("User", foreign_keys=[approved_by])
    tag_rows = relationship("FileTag", back_populates="file", cascade="all, delete-orphan",
                            order_by="FileTag.id")

    @property
    def tags(self):
        return [row.tag for row in self.tag_rows]

    @tags.setter
    def tags(self, values):
        seen = []
        for value in values or []:
            value = value.strip()
            if value and value not in seen:
                seen.append(value)
        self.tag_rows = [FileTag(tag=value) for value in seen]


class FileTag(Base):
    __tablename__ = 'file_tags'
    __table_args__ = (UniqueConstraint('file_id', 'tag'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_id = Column(Integer, ForeignKey('files.id', ondelete="CASCADE"), nullable=False, index=True)
    tag = Column(String(100), nullable=False, index=True)

    file = relationship("FileRecord", back_populates="tag_rows")


class FileBlob(Base):
    """Content bytes for the database blob store, keyed by storage key."""
    __tablename__ = 'file_blobs'

    key = Column(String(255), primary_key=True)
    data = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class AuditLog(Base):
    """Append-only audit log. resource_id points at a file or user depending on resource_type."""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    resource_type = Column(String(20), nullable=False)
    resource_id = Column(Integer, nullable=True, index=True)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(255), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    signature_hash = Column(String(64), nullable=False)

    user = relationship("User", back_populates="audit_logs")


class Notification(Base):
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    type = Column(Enum(NotificationType), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    file_id = Column(Integer, ForeignKey('files.id'), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True)


class NotificationPreference(Base):
    """One row per user; upserted, no history."""
    __tablename__ = 'notification_preferences'

    user_id = Column(Integer, ForeignKey('users.id'), primary_key=True)
    email_notifications = Column(Boolean, nullable=False, default=True)
    push_notifications = Column(Boolean, nullable=False, default=True)
    file_approval_notifications = Column(Boolean, nullable=False, default=True)
    file_upload_notifications = Column(Boolean, nullable=False, default=True)
    system_alert_notifications = Column(Boolean, nullable=False, default=True)
    digest_frequency = Column(Enum(DigestFrequency), nullable=False, default=DigestFrequency.IMMEDIATE)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class SavedSearch(Base):
    __tablename__ = 'saved_searches'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    search_query = Column(String(255), nullable=False, default="")
    filters = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
