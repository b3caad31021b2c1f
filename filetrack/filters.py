"""
Filter compilation for file search and audit queries.

Raw request parameters are parsed into ``SearchFilters`` / ``AuditFilters``
and then compiled into lists of SQLAlchemy criteria that the search and
audit layers AND together. Role scoping is applied here for every query
path: a ``user`` caller only ever sees their own files and their own audit
entries, whatever the supplied filters say.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from sqlalchemy import or_

from filetrack.errors import InvalidFilter, InvalidPageSize
from filetrack.models import AuditAction, AuditLog, FileRecord, FileStatus, FileTag, ResourceType, UserRole

ALL = "all"
# largest value a BIGINT column or bound parameter can hold
MAX_INTEGER = 2 ** 63 - 1


def _blank(value: Any, sentinel: bool = True) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        text = value.strip()
        return text == "" or (sentinel and text.lower() == ALL)
    return False


def _parse_text(value: Any, sentinel: bool = True) -> Optional[str]:
    if _blank(value, sentinel):
        return None
    return str(value).strip()


def _parse_date(name: str, value: Any) -> Optional[datetime]:
    if _blank(value):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidFilter(f"Invalid date for {name}: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_int(name: str, value: Any, minimum: int = 0) -> Optional[int]:
    if _blank(value):
        return None
    if isinstance(value, bool):
        raise InvalidFilter(f"Invalid value for {name}: {value!r}")
    try:
        number = int(str(value).strip())
    except ValueError:
        raise InvalidFilter(f"Invalid value for {name}: {value!r}")
    if number < minimum:
        raise InvalidFilter(f"{name} must be >= {minimum}")
    if number > MAX_INTEGER:
        raise InvalidFilter(f"{name} is too large")
    return number


def _parse_bool(name: str, value: Any) -> Optional[bool]:
    if _blank(value):
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise InvalidFilter(f"Invalid boolean for {name}: {value!r}")


def _parse_enum(name: str, enum_cls, value: Any):
    if _blank(value):
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise InvalidFilter(f"Invalid value for {name}: {value!r}")


def _parse_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    elif not isinstance(value, (list, tuple)):
        raise InvalidFilter(f"Invalid value for tags: {value!r}")
    tags = []
    for tag in value:
        tag = str(tag).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def check_page(limit: int, offset: int) -> None:
    """Reject pagination values that are out of range for a query."""
    if limit is None or not 0 < limit <= MAX_INTEGER:
        raise InvalidPageSize("limit must be a positive integer")
    if offset is None or not 0 <= offset <= MAX_INTEGER:
        raise InvalidPageSize("skip must be a non-negative integer")


def contains_ci(column, text: str):
    """Case-insensitive substring match with LIKE wildcards escaped."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return column.ilike(f"%{escaped}%", escape="\\")


@dataclass
class SearchFilters:
    query: Optional[str] = None
    status: Optional[FileStatus] = None
    category: Optional[str] = None
    department: Optional[str] = None
    file_type: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    uploaded_by: Optional[int] = None

    def __post_init__(self):
        # a blank query is no query at all
        if self.query is not None:
            self.query = str(self.query).strip() or None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "SearchFilters":
        """Parse request parameters; accepts both camelCase and snake_case keys."""
        def get(*names):
            for name in names:
                if params.get(name) is not None:
                    return params.get(name)
            return None

        filters = cls(
            query=_parse_text(get("q", "query"), sentinel=False),
            status=_parse_enum("status", FileStatus, get("status")),
            category=_parse_text(get("category")),
            department=_parse_text(get("department")),
            file_type=_parse_text(get("fileType", "file_type")),
            date_from=_parse_date("dateFrom", get("dateFrom", "date_from")),
            date_to=_parse_date("dateTo", get("dateTo", "date_to")),
            min_size=_parse_int("minSize", get("minSize", "min_size")),
            max_size=_parse_int("maxSize", get("maxSize", "max_size")),
            tags=_parse_tags(get("tags")),
            uploaded_by=_parse_int("uploadedBy", get("uploadedBy", "uploaded_by"), minimum=1),
        )
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise InvalidFilter("dateFrom must not be after dateTo")
        if filters.min_size is not None and filters.max_size is not None and filters.min_size > filters.max_size:
            raise InvalidFilter("minSize must not be greater than maxSize")
        return filters

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value if self.status else None
        data["date_from"] = self.date_from.isoformat() if self.date_from else None
        data["date_to"] = self.date_to.isoformat() if self.date_to else None
        return {key: value for key, value in data.items() if value not in (None, [])}


@dataclass
class AuditFilters:
    user_id: Optional[int] = None
    action: Optional[AuditAction] = None
    resource_type: Optional[ResourceType] = None
    resource_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    success: Optional[bool] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "AuditFilters":
        def get(*names):
            for name in names:
                if params.get(name) is not None:
                    return params.get(name)
            return None

        filters = cls(
            user_id=_parse_int("userId", get("userId", "user_id"), minimum=1),
            action=_parse_enum("action", AuditAction, get("action")),
            resource_type=_parse_enum("resourceType", ResourceType, get("resourceType", "resource_type")),
            resource_id=_parse_int("resourceId", get("resourceId", "resource_id"), minimum=1),
            date_from=_parse_date("dateFrom", get("dateFrom", "date_from")),
            date_to=_parse_date("dateTo", get("dateTo", "date_to")),
            success=_parse_bool("success", get("success")),
        )
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise InvalidFilter("dateFrom must not be after dateTo")
        return filters


def ownership_scope(identity) -> list:
    """Criteria limiting file queries to what the caller may see."""
    if identity.role == UserRole.USER:
        return [FileRecord.uploaded_by == identity.user_id]
    return []


def text_match(query: str):
    """OR of case-insensitive substring matches across the searchable file fields."""
    return or_(
        contains_ci(FileRecord.file_name, query),
        contains_ci(FileRecord.original_name, query),
        contains_ci(FileRecord.description, query),
        FileRecord.tag_rows.any(contains_ci(FileTag.tag, query)),
        contains_ci(FileRecord.department, query),
        contains_ci(FileRecord.category, query),
    )


def compile_file_filters(filters: SearchFilters, identity) -> list:
    """Translate search filters into role-scoped criteria over FileRecord."""
    criteria = ownership_scope(identity)

    if filters.status is not None:
        criteria.append(FileRecord.status == filters.status)
    if filters.category:
        criteria.append(FileRecord.category == filters.category)
    if filters.department:
        criteria.append(FileRecord.department == filters.department)
    if filters.file_type:
        criteria.append(contains_ci(FileRecord.file_type, filters.file_type))
    if filters.date_from is not None:
        criteria.append(FileRecord.created_at >= filters.date_from)
    if filters.date_to is not None:
        criteria.append(FileRecord.created_at <= filters.date_to)
    if filters.min_size is not None:
        criteria.append(FileRecord.file_size >= filters.min_size)
    if filters.max_size is not None:
        criteria.append(FileRecord.file_size <= filters.max_size)
    if filters.tags:
        criteria.append(FileRecord.tag_rows.any(FileTag.tag.in_(filters.tags)))
    # a plain user is already pinned to their own uploads above
    if filters.uploaded_by is not None and identity.role != UserRole.USER:
        criteria.append(FileRecord.uploaded_by == filters.uploaded_by)
    if filters.query:
        criteria.append(text_match(filters.query))

    return criteria


def compile_audit_filters(filters: AuditFilters, identity) -> list:
    """Translate audit filters into role-scoped criteria over AuditLog."""
    criteria = []

    if identity.role == UserRole.USER:
        criteria.append(AuditLog.user_id == identity.user_id)
    elif filters.user_id is not None:
        criteria.append(AuditLog.user_id == filters.user_id)

    if filters.action is not None:
        criteria.append(AuditLog.action == filters.action.value)
    if filters.resource_type is not None:
        criteria.append(AuditLog.resource_type == filters.resource_type.value)
    if filters.resource_id is not None:
        criteria.append(AuditLog.resource_id == filters.resource_id)
    if filters.success is not None:
        criteria.append(AuditLog.success == filters.success)
    if filters.date_from is not None:
        criteria.append(AuditLog.timestamp >= filters.date_from)
    if filters.date_to is not None:
        criteria.append(AuditLog.timestamp <= filters.date_to)

    return criteria
