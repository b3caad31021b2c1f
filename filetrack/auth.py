"""
Authentication and authorization module for FileTrack.
Handles JWT-based authentication, password hashing, and role checks.
"""
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from filetrack.audit import record_action
from filetrack.database import get_db
from filetrack.errors import Conflict, PermissionDenied
from filetrack.models import AuditAction, ResourceType, User, UserRole

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "your_secret_key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

PERMISSIONS = {
    UserRole.ADMIN: {"upload", "download", "delete", "approve", "view_logs", "export_logs", "manage_users"},
    UserRole.MANAGER: {"upload", "download", "delete", "approve", "view_logs", "export_logs"},
    UserRole.USER: {"upload", "download", "delete", "view_logs"},
}

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of an operation."""
    user_id: int
    email: str
    name: str
    role: UserRole
    department: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.MANAGER)

    def has_permission(self, action: str) -> bool:
        return action in PERMISSIONS.get(self.role, set())

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            department=user.department,
        )


def validate_email(email: str) -> None:
    if not email or not EMAIL_PATTERN.match(email):
        raise HTTPException(status_code=400, detail="A valid email address is required")


def validate_password_strength(password: str) -> None:
    """
    Validate password requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one numeric digit

    Raises HTTPException if password doesn't meet requirements.
    """
    if len(password) < 8:
        raise HTTPException(
            status_code=400,
            detail="Password must be at least 8 characters long"
        )

    if not re.search(r'[A-Z]', password):
        raise HTTPException(
            status_code=400,
            detail="Password must contain at least one uppercase letter"
        )

    if not re.search(r'[0-9]', password):
        raise HTTPException(
            status_code=400,
            detail="Password must contain at least one numeric digit"
        )


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt()
    password_hash = bcrypt.hashpw(password.encode('utf-8'), salt)
    return password_hash.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def create_access_token(user: User) -> str:
    """Create a JWT access token for authenticated user."""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user.id,
        "email": user.email,
        "role": user.role.value,
        "department": user.department,
        "exp": now + timedelta(hours=JWT_EXPIRATION_HOURS),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Identity:
    """
    Dependency function to get the caller identity from the bearer token.
    The user row is re-read so role changes and deactivation apply immediately.
    """
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    payload = decode_token(credentials.credentials)

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found")

    return Identity.from_user(user)


def require_roles(*roles: UserRole):
    """Dependency factory restricting an endpoint to the given roles."""
    def role_checker(identity: Identity = Depends(get_current_identity)) -> Identity:
        if identity.role not in roles:
            raise PermissionDenied("Insufficient permissions")
        return identity
    return role_checker


def require_permission(permission: str):
    """Dependency factory checking a named permission against the caller's role."""
    def permission_checker(identity: Identity = Depends(get_current_identity)) -> Identity:
        if not identity.has_permission(permission):
            raise PermissionDenied(f"Access denied. Required permission: {permission}")
        return identity
    return permission_checker


def create_account(db: Session, email: str, password: str, name: str,
                   role: UserRole = UserRole.USER, department: Optional[str] = None) -> User:
    """Validate and insert a new active user. Email addresses are unique."""
    email = (email or "").strip().lower()
    validate_email(email)
    validate_password_strength(password)
    if not name or not name.strip():
        raise HTTPException(status_code=400, detail="Name is required")

    if db.query(User).filter(User.email == email).first():
        raise Conflict("User with this email already exists")

    user = User(
        email=email,
        password_hash=hash_password(password),
        name=name.strip(),
        role=role,
        department=department,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def register_user(db: Session, email: str, password: str, name: str,
                  department: Optional[str] = None, role: UserRole = UserRole.USER,
                  ip_address: Optional[str] = None) -> User:
    """Register a new user with email and password validation."""
    user = create_account(db, email, password, name, role=role, department=department)
    record_action(db, user.id, AuditAction.REGISTER, ResourceType.USER, user.id,
                  details={"email": user.email, "role": user.role.value},
                  ip_address=ip_address)
    return user


def authenticate_user(db: Session, email: str, password: str,
                      ip_address: Optional[str] = None) -> Optional[User]:
    """Authenticate user credentials and return user if valid."""
    email = (email or "").strip().lower()
    user = db.query(User).filter(User.email == email).first()
    if not user:
        return None

    if not user.is_active or not verify_password(password, user.password_hash):
        reason = "Account disabled" if not user.is_active else "Invalid password"
        record_action(db, user.id, AuditAction.LOGIN, ResourceType.USER, user.id,
                      ip_address=ip_address, success=False, error_message=reason)
        return None

    record_action(db, user.id, AuditAction.LOGIN, ResourceType.USER, user.id, ip_address=ip_address)
    return user


def get_client_ip(request: Request) -> str:
    """Extract client IP address from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
