"""
Main FastAPI application for FileTrack.
Provides REST API endpoints for authentication, files, search, audit,
notifications and administration.
"""
import logging
from io import BytesIO
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, File as FastAPIFile, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from filetrack import admin, audit, files, notifications, search
from filetrack.auth import (
    Identity, authenticate_user, create_access_token, decode_token, get_client_ip, get_current_identity,
    register_user, require_permission, require_roles, security,
)
from filetrack.database import Database, get_db
from filetrack.errors import FileTrackError, NotFound
from filetrack.filters import AuditFilters, SearchFilters, check_page
from filetrack.models import AuditAction, AuditLog, ResourceType, UserRole
from filetrack.storage import StorageAdapter, get_storage_adapter
from filetrack.utils import get_database_url, get_log_level, sanitize_filename, validate_file_size

logging.basicConfig(
    level=get_log_level(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("filetrack")

privileged = require_roles(UserRole.ADMIN, UserRole.MANAGER)
admin_only = require_roles(UserRole.ADMIN)


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str
    department: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class FileUpdateRequest(BaseModel):
    description: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class BulkFilesRequest(BaseModel):
    file_ids: List[int]


class SaveSearchRequest(BaseModel):
    search_query: str = ""
    filters: Dict[str, Any] = {}


class PreferencesRequest(BaseModel):
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    file_approval_notifications: Optional[bool] = None
    file_upload_notifications: Optional[bool] = None
    system_alert_notifications: Optional[bool] = None
    digest_frequency: Optional[str] = None


class CreateUserRequest(BaseModel):
    email: str
    password: str
    name: str
    role: str = "user"
    department: Optional[str] = None


class UpdateUserRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None
    is_active: Optional[bool] = None


def get_storage(db: Session = Depends(get_db)) -> StorageAdapter:
    return get_storage_adapter(db)


def query_params(request: Request) -> dict:
    """Flatten query parameters, keeping repeated ``tags`` values as a list."""
    params = dict(request.query_params)
    tags = request.query_params.getlist("tags")
    if len(tags) > 1:
        params["tags"] = tags
    return params


def parse_role(value: Optional[str]) -> Optional[UserRole]:
    if value is None:
        return None
    try:
        return UserRole(value.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid role. Use 'admin', 'manager' or 'user'")


def user_payload(user) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "department": user.department,
    }


def create_app(database: Optional[Database] = None) -> FastAPI:
    """Build the API around an explicitly provided database handle."""
    app = FastAPI(title="FileTrack API", version="1.0.0")
    app.state.database = database or Database(get_database_url(), pool_pre_ping=True)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Open the database handle on application startup."""
        app.state.database.open()
        db = app.state.database.session()
        try:
            notifications.cleanup_expired_notifications(db)
        finally:
            db.close()
        logger.info("FileTrack API ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        app.state.database.close()

    @app.exception_handler(FileTrackError)
    async def filetrack_error_handler(request: Request, exc: FileTrackError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(OperationalError)
    async def database_error_handler(request: Request, exc: OperationalError):
        logger.exception("Database unavailable during %s %s", request.method, request.url.path)
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error during %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # ---------------------------------------------------------------- auth

    @app.post("/api/auth/register", status_code=201)
    async def register(request: RegisterRequest, req: Request, db: Session = Depends(get_db)):
        """Register a new user. All self-registered users get the user role."""
        user = register_user(db, request.email, request.password, request.name,
                             department=request.department, ip_address=get_client_ip(req))
        return {
            "status": "success",
            "message": "User registered successfully",
            "access_token": create_access_token(user),
            "user": user_payload(user),
        }

    @app.post("/api/auth/login")
    async def login(request: LoginRequest, req: Request, db: Session = Depends(get_db)):
        """Authenticate user and issue a JWT access token."""
        user = authenticate_user(db, request.email, request.password, ip_address=get_client_ip(req))
        if not user:
            raise HTTPException(status_code=401, detail="Invalid credentials")

        return {
            "status": "success",
            "access_token": create_access_token(user),
            "user": user_payload(user),
        }

    @app.post("/api/auth/logout")
    async def logout(identity: Identity = Depends(get_current_identity)):
        # tokens are stateless; the client drops its copy
        return {"status": "success", "message": "Logged out"}

    @app.get("/api/auth/verify")
    async def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
        """Check a bearer token without touching the database."""
        if credentials is None:
            raise HTTPException(status_code=401, detail="No token provided")
        payload = decode_token(credentials.credentials)
        return {
            "status": "success",
            "user": {key: payload.get(key) for key in ("user_id", "email", "role", "department")},
        }

    @app.get("/api/auth/me")
    async def me(identity: Identity = Depends(get_current_identity)):
        return {
            "status": "success",
            "user": {
                "id": identity.user_id,
                "email": identity.email,
                "name": identity.name,
                "role": identity.role.value,
                "department": identity.department,
            },
        }

    # ---------------------------------------------------------------- files

    @app.post("/api/files/upload", status_code=201)
    async def upload(
        req: Request,
        file: UploadFile = FastAPIFile(...),
        category: Optional[str] = Form(None),
        tags: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        department: Optional[str] = Form(None),
        identity: Identity = Depends(require_permission("upload")),
        db: Session = Depends(get_db),
        storage: StorageAdapter = Depends(get_storage),
    ):
        """
        Upload a file for approval.
        Stores file data, records metadata and logs the action.
        """
        data = await file.read()
        if not validate_file_size(len(data)):
            raise HTTPException(status_code=413, detail="File is empty or too large")

        record = files.upload_file(
            db, storage, identity, data,
            original_name=sanitize_filename(file.filename),
            file_type=file.content_type,
            category=category,
            tags=[t for t in (tags or "").split(",") if t.strip()],
            description=description,
            department=department if identity.role != UserRole.USER else None,
            ip_address=get_client_ip(req),
        )
        return {"status": "success", "message": "File uploaded successfully", "file": files.serialize_file(record)}

    @app.get("/api/files")
    async def list_files(
        request: Request,
        limit: int = 50,
        skip: int = 0,
        identity: Identity = Depends(get_current_identity),
        db: Session = Depends(get_db),
    ):
        """List files visible to the caller, newest first, with the same filters as search."""
        filters = SearchFilters.from_params(query_params(request))
        page = search.search_files(db, filters, identity, limit=limit, offset=skip)
        return {"status": "success", "files": page["results"], "total": page["total"]}

    @app.get("/api/files/{file_id}")
    async def get_file(file_id: int, identity: Identity = Depends(get_current_identity),
                       db: Session = Depends(get_db)):
        record = files.get_file(db, file_id, identity)
        return {"status": "success", "file": files.serialize_file(record)}

    @app.put("/api/files/{file_id}")
    async def update_file(file_id: int, request: FileUpdateRequest, req: Request,
                          identity: Identity = Depends(get_current_identity),
                          db: Session = Depends(get_db)):
        record = files.update_file_metadata(db, file_id, identity, description=request.description,
                                            category=request.category, tags=request.tags,
                                            ip_address=get_client_ip(req))
        return {"status": "success", "file": files.serialize_file(record)}

    @app.delete("/api/files/{file_id}")
    async def delete_file(file_id: int, req: Request,
                          identity: Identity = Depends(require_permission("delete")),
                          db: Session = Depends(get_db)):
        """Archive a file (owner or Admin/Manager only)."""
        files.delete_file(db, file_id, identity, ip_address=get_client_ip(req))
        return {"status": "success", "message": "File deleted successfully"}

    @app.get("/api/files/{file_id}/download")
    async def download_file(file_id: int, req: Request,
                            identity: Identity = Depends(require_permission("download")),
                            db: Session = Depends(get_db),
                            storage: StorageAdapter = Depends(get_storage)):
        """Stream file data to the client and count the access."""
        record, data = files.download_file(db, storage, file_id, identity, ip_address=get_client_ip(req))
        return StreamingResponse(
            BytesIO(data),
            media_type=record.file_type or "application/octet-stream",
            headers={
                "Content-Disposition": f'attachment; filename="{record.original_name}"',
                "Content-Length": str(len(data)),
            },
        )

    @app.post("/api/files/{file_id}/approve")
    async def approve_file(file_id: int, req: Request,
                           identity: Identity = Depends(require_permission("approve")),
                           db: Session = Depends(get_db)):
        record = files.approve_file(db, file_id, identity, ip_address=get_client_ip(req))
        return {"status": "success", "message": "File approved successfully", "file": files.serialize_file(record)}

    @app.post("/api/files/{file_id}/reject")
    async def reject_file(file_id: int, req: Request, request: Optional[RejectRequest] = None,
                          identity: Identity = Depends(require_permission("approve")),
                          db: Session = Depends(get_db)):
        reason = request.reason if request else None
        record = files.reject_file(db, file_id, identity, reason=reason, ip_address=get_client_ip(req))
        return {"status": "success", "message": "File rejected", "file": files.serialize_file(record)}

    # ---------------------------------------------------------------- search

    @app.get("/api/search/advanced")
    async def advanced_search(request: Request, limit: int = 50, skip: int = 0,
                              identity: Identity = Depends(get_current_identity),
                              db: Session = Depends(get_db)):
        filters = SearchFilters.from_params(query_params(request))
        return run_search(db, filters, identity, limit, skip, get_client_ip(request))

    @app.post("/api/search/advanced")
    async def advanced_search_body(request: Request, payload: Optional[Dict[str, Any]] = Body(None),
                                   limit: int = 50, skip: int = 0,
                                   identity: Identity = Depends(get_current_identity),
                                   db: Session = Depends(get_db)):
        filters = SearchFilters.from_params(payload or {})
        return run_search(db, filters, identity, limit, skip, get_client_ip(request))

    @app.get("/api/search/suggestions")
    async def suggestions(q: str = "", identity: Identity = Depends(get_current_identity),
                          db: Session = Depends(get_db)):
        return {"status": "success", "suggestions": search.get_suggestions(db, q, identity)}

    @app.post("/api/search/save", status_code=201)
    async def save_search(request: SaveSearchRequest, identity: Identity = Depends(get_current_identity),
                          db: Session = Depends(get_db)):
        # parse once so bad filters are rejected before they are stored
        filters = SearchFilters.from_params(request.filters)
        saved = search.save_search(db, identity, request.search_query, filters.to_dict())
        return {"status": "success", "search": search.serialize_saved_search(saved)}

    @app.get("/api/search/saved")
    async def saved_searches(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
        return {"status": "success", "searches": search.get_saved_searches(db, identity)}

    @app.get("/api/search/analytics")
    async def search_analytics(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
        return {"status": "success", "analytics": search.get_search_analytics(db, identity)}

    # ---------------------------------------------------------------- audit

    @app.get("/api/audit/logs")
    async def audit_logs(request: Request, limit: int = 100, skip: int = 0,
                         identity: Identity = Depends(require_permission("view_logs")),
                         db: Session = Depends(get_db)):
        """Audit trail; plain users only ever see their own entries."""
        filters = AuditFilters.from_params(query_params(request))
        result = audit.query_audit_logs(db, filters, identity, limit=limit, offset=skip)
        return {"status": "success", "logs": result["entries"], "total": result["total"]}

    @app.get("/api/audit/logs/{log_id}/verify")
    async def verify_log(log_id: int, identity: Identity = Depends(privileged), db: Session = Depends(get_db)):
        entry = db.get(AuditLog, log_id)
        if entry is None:
            raise NotFound("Audit entry not found")
        return {"status": "success", "log_id": log_id, "valid": audit.verify_log_integrity(entry)}

    @app.get("/api/audit/stats")
    async def audit_stats(request: Request, identity: Identity = Depends(require_permission("view_logs")),
                          db: Session = Depends(get_db)):
        filters = AuditFilters.from_params(query_params(request))
        return {"status": "success", "statistics": audit.get_audit_stats(db, filters, identity)}

    @app.get("/api/audit/recent")
    async def audit_recent(limit: int = 20, identity: Identity = Depends(require_permission("view_logs")),
                           db: Session = Depends(get_db)):
        return {"status": "success", "activity": audit.get_recent_activity(db, identity, limit=limit)}

    @app.get("/api/audit/export")
    async def audit_export(request: Request, format: str = "csv",
                           identity: Identity = Depends(require_permission("export_logs")),
                           db: Session = Depends(get_db)):
        """Export the filtered audit trail as a CSV or JSON attachment."""
        filters = AuditFilters.from_params(query_params(request))
        report = audit.export_audit_report(db, filters, identity, format)
        media_type = "text/csv" if format.lower() == "csv" else "application/json"
        return Response(
            content=report,
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="{audit.export_filename(format)}"'},
        )

    # ---------------------------------------------------------------- notifications

    @app.get("/api/notifications")
    async def list_notifications(limit: int = 50, skip: int = 0, unread_only: bool = False,
                                 identity: Identity = Depends(get_current_identity),
                                 db: Session = Depends(get_db)):
        check_page(limit, skip)
        items = notifications.list_notifications(db, identity.user_id, limit=limit, offset=skip,
                                                 unread_only=unread_only)
        return {
            "status": "success",
            "notifications": [notifications.serialize_notification(n) for n in items],
            "unread_count": notifications.get_unread_count(db, identity.user_id),
        }

    @app.get("/api/notifications/unread-count")
    async def unread_count(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
        return {"status": "success", "count": notifications.get_unread_count(db, identity.user_id)}

    @app.post("/api/notifications/mark-all-read")
    async def mark_all_read(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
        updated = notifications.mark_all_as_read(db, identity.user_id)
        return {"status": "success", "updated": updated}

    @app.get("/api/notifications/preferences")
    async def get_preferences(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
        return {"status": "success", "preferences": notifications.get_preferences(db, identity.user_id)}

    @app.put("/api/notifications/preferences")
    async def update_preferences(request: PreferencesRequest, identity: Identity = Depends(get_current_identity),
                                 db: Session = Depends(get_db)):
        preferences = notifications.update_preferences(db, identity.user_id, **request.model_dump())
        return {"status": "success", "preferences": preferences}

    @app.post("/api/notifications/{notification_id}/read")
    async def mark_read(notification_id: int, identity: Identity = Depends(get_current_identity),
                        db: Session = Depends(get_db)):
        if not notifications.mark_as_read(db, notification_id, identity.user_id):
            raise NotFound("Notification not found")
        return {"status": "success"}

    @app.delete("/api/notifications/{notification_id}")
    async def delete_notification(notification_id: int, identity: Identity = Depends(get_current_identity),
                                  db: Session = Depends(get_db)):
        if not notifications.delete_notification(db, notification_id, identity.user_id):
            raise NotFound("Notification not found")
        return {"status": "success"}

    # ---------------------------------------------------------------- admin

    @app.get("/api/admin/stats")
    async def system_stats(identity: Identity = Depends(privileged), db: Session = Depends(get_db)):
        return {"status": "success", "statistics": admin.get_system_stats(db)}

    @app.get("/api/admin/analytics")
    async def system_analytics(days: int = 30, identity: Identity = Depends(admin_only),
                               db: Session = Depends(get_db)):
        if not 0 < days <= admin.MAX_ANALYTICS_DAYS:
            raise HTTPException(status_code=400, detail=f"days must be between 1 and {admin.MAX_ANALYTICS_DAYS}")
        return {"status": "success", "analytics": admin.get_system_analytics(db, days)}

    @app.get("/api/admin/users")
    async def list_users(limit: int = 50, skip: int = 0, identity: Identity = Depends(admin_only),
                         db: Session = Depends(get_db)):
        result = admin.list_users(db, limit=limit, offset=skip)
        return {"status": "success", "users": result["users"], "total": result["total"]}

    @app.post("/api/admin/users", status_code=201)
    async def create_user(request: CreateUserRequest, req: Request, identity: Identity = Depends(admin_only),
                          db: Session = Depends(get_db)):
        user = admin.create_user(db, identity, request.email, request.password, request.name,
                                 role=parse_role(request.role), department=request.department,
                                 ip_address=get_client_ip(req))
        return {"status": "success", "message": "User created successfully", "user": admin.serialize_user(user)}

    @app.put("/api/admin/users/{user_id}")
    async def update_user(user_id: int, request: UpdateUserRequest, req: Request,
                          identity: Identity = Depends(admin_only), db: Session = Depends(get_db)):
        changes = request.model_dump()
        changes["role"] = parse_role(request.role)
        user = admin.update_user(db, identity, user_id, ip_address=get_client_ip(req), **changes)
        return {"status": "success", "user": admin.serialize_user(user)}

    @app.delete("/api/admin/users/{user_id}")
    async def delete_user(user_id: int, req: Request, identity: Identity = Depends(admin_only),
                          db: Session = Depends(get_db)):
        """Deactivate a user account (soft delete)."""
        user = admin.deactivate_user(db, identity, user_id, ip_address=get_client_ip(req))
        return {"status": "success", "message": f"User {user.email} deactivated"}

    @app.post("/api/admin/files/bulk-approve")
    async def bulk_approve(request: BulkFilesRequest, req: Request, identity: Identity = Depends(privileged),
                           db: Session = Depends(get_db)):
        count = files.bulk_approve_files(db, request.file_ids, identity, ip_address=get_client_ip(req))
        return {"status": "success", "approved": count}

    @app.post("/api/admin/files/bulk-delete")
    async def bulk_delete(request: BulkFilesRequest, req: Request, identity: Identity = Depends(privileged),
                          db: Session = Depends(get_db)):
        count = files.bulk_delete_files(db, request.file_ids, identity, ip_address=get_client_ip(req))
        return {"status": "success", "deleted": count}

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "FileTrack API"
        }


def run_search(db: Session, filters: SearchFilters, identity: Identity, limit: int, skip: int,
               ip_address: str) -> dict:
    page = search.search_files(db, filters, identity, limit=limit, offset=skip)
    audit.record_action(db, identity.user_id, AuditAction.SEARCH, ResourceType.SYSTEM, None,
                        details={"filters": filters.to_dict(), "total": page["total"]},
                        ip_address=ip_address)
    return {"status": "success", "results": page["results"], "total": page["total"]}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
