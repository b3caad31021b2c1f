"""
Database setup for FileTrack.
Creates the schema and seeds the first admin account so the HTTP surface
has someone who can create every other user.

    ADMIN_PASSWORD=... python -m filetrack.bootstrap
"""
import logging
import sys
from typing import Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.orm import Session

from filetrack.audit import record_action
from filetrack.auth import create_account
from filetrack.database import Database
from filetrack.errors import FileTrackError
from filetrack.models import AuditAction, ResourceType, User, UserRole
from filetrack.utils import (
    get_admin_department, get_admin_email, get_admin_name, get_admin_password, get_database_url, get_log_level,
)

logger = logging.getLogger(__name__)


def ensure_admin(db: Session, email: str, password: str, name: str = "System Administrator",
                 department: Optional[str] = "IT") -> Tuple[User, bool]:
    """
    Create an admin account unless a user with ``email`` already exists.
    Returns the user and whether it was created by this call.
    """
    existing = db.query(User).filter(User.email == (email or "").strip().lower()).first()
    if existing is not None:
        if existing.role != UserRole.ADMIN:
            logger.warning("User %s already exists with role %s", existing.email, existing.role.value)
        return existing, False

    user = create_account(db, email, password, name, role=UserRole.ADMIN, department=department)
    record_action(db, user.id, AuditAction.REGISTER, ResourceType.USER, user.id,
                  details={"email": user.email, "role": user.role.value, "source": "setup"})
    logger.info("Created admin account %s", user.email)
    return user, True


def setup_database(database: Database, email: str, password: str, name: str = "System Administrator",
                   department: Optional[str] = "IT") -> Tuple[User, bool]:
    """Create missing tables and indexes, then make sure the admin account exists."""
    database.open()
    db = database.session()
    try:
        return ensure_admin(db, email, password, name=name, department=department)
    finally:
        db.close()


def main() -> int:
    logging.basicConfig(level=get_log_level(), format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    password = get_admin_password()
    if not password:
        logger.error("ADMIN_PASSWORD must be set")
        return 1

    email = get_admin_email()
    database = Database(get_database_url())
    try:
        _, created = setup_database(database, email, password,
                                    name=get_admin_name(), department=get_admin_department())
    except HTTPException as exc:
        logger.error("Invalid admin account: %s", exc.detail)
        return 1
    except FileTrackError as exc:
        logger.error("Setup failed: %s", exc.message)
        return 1
    finally:
        database.close()

    if not created:
        logger.info("Admin account %s already exists, nothing to do", email)
    return 0


if __name__ == "__main__":
    sys.exit(main())
