"""
Search module for FileTrack.
Role-scoped file search with relevance ranking, suggestions, saved searches
and search analytics.
"""
import logging
from typing import List

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload, selectinload

from filetrack.files import serialize_file
from filetrack.filters import SearchFilters, check_page, compile_file_filters, contains_ci, ownership_scope
from filetrack.models import FileRecord, FileTag, SavedSearch
from filetrack.scoring import relevance_score
from filetrack.utils import isoformat

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
SUGGESTION_MIN_LENGTH = 2
SUGGESTION_LIMIT = 10
SAVED_SEARCH_LIMIT = 10


def search_files(db: Session, filters: SearchFilters, identity, limit: int = DEFAULT_LIMIT,
                 offset: int = 0) -> dict:
    """
    Run a filtered, role-scoped file search.

    With a free-text query results are ranked by relevance score, then by
    creation time; otherwise by creation time only. ``total`` counts the whole
    filtered set, independent of limit/offset.
    """
    check_page(limit, offset)
    criteria = compile_file_filters(filters, identity)

    if filters.query:
        score = relevance_score(filters.query).label("relevance_score")
        query = db.query(FileRecord, score)
        ordering = [score.desc(), FileRecord.created_at.desc(), FileRecord.id.desc()]
    else:
        query = db.query(FileRecord)
        ordering = [FileRecord.created_at.desc(), FileRecord.id.desc()]

    query = query.filter(*criteria)
    total = query.order_by(None).count()

    rows = (
        query.options(joinedload(FileRecord.uploader), selectinload(FileRecord.tag_rows))
        .order_by(*ordering)
        .offset(offset)
        .limit(limit)
        .all()
    )

    results = []
    for row in rows:
        if filters.query:
            record, row_score = row
            item = serialize_file(record)
            item["relevance_score"] = int(row_score or 0)
        else:
            item = serialize_file(row)
        results.append(item)

    logger.debug("Search by user %s matched %d files", identity.user_id, total)
    return {"results": results, "total": total}


def get_suggestions(db: Session, query: str, identity) -> List[dict]:
    """
    Suggest file names, tags, categories and departments matching a partial query.
    Fewer than two characters yields no suggestions.
    """
    query = (query or "").strip()
    if len(query) < SUGGESTION_MIN_LENGTH:
        return []

    scope = ownership_scope(identity)
    suggestions = []

    files = (
        db.query(FileRecord.original_name)
        .filter(*scope, or_(contains_ci(FileRecord.original_name, query), contains_ci(FileRecord.file_name, query)))
        .order_by(FileRecord.created_at.desc())
        .limit(5)
        .all()
    )
    for (original_name,) in files:
        suggestions.append({"type": "file", "value": original_name, "count": 1})

    count = func.count(FileTag.id).label("count")
    tags = (
        db.query(FileTag.tag, count)
        .join(FileRecord, FileTag.file_id == FileRecord.id)
        .filter(*scope, contains_ci(FileTag.tag, query))
        .group_by(FileTag.tag)
        .order_by(count.desc(), FileTag.tag)
        .limit(5)
        .all()
    )
    for tag, tag_count in tags:
        suggestions.append({"type": "tag", "value": tag, "count": tag_count})

    for suggestion_type, column in (("category", FileRecord.category), ("department", FileRecord.department)):
        count = func.count(FileRecord.id).label("count")
        grouped = (
            db.query(column, count)
            .filter(*scope, contains_ci(column, query))
            .group_by(column)
            .order_by(count.desc(), column)
            .limit(3)
            .all()
        )
        for value, value_count in grouped:
            suggestions.append({"type": suggestion_type, "value": value, "count": value_count})

    return suggestions[:SUGGESTION_LIMIT]


def save_search(db: Session, identity, search_query: str, filters: dict) -> SavedSearch:
    saved = SavedSearch(user_id=identity.user_id, search_query=search_query or "", filters=filters or {})
    db.add(saved)
    db.commit()
    db.refresh(saved)
    return saved


def get_saved_searches(db: Session, identity, limit: int = SAVED_SEARCH_LIMIT) -> List[dict]:
    """Most recent saved searches of the caller, newest first."""
    saved = (
        db.query(SavedSearch)
        .filter(SavedSearch.user_id == identity.user_id)
        .order_by(SavedSearch.created_at.desc(), SavedSearch.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_saved_search(s) for s in saved]


def serialize_saved_search(saved: SavedSearch) -> dict:
    return {
        "id": saved.id,
        "search_query": saved.search_query,
        "filters": saved.filters or {},
        "created_at": isoformat(saved.created_at),
    }


def file_type_bucket(file_type: str) -> str:
    file_type = (file_type or "").lower()
    if file_type.startswith("image/"):
        return "Images"
    if file_type.startswith("video/"):
        return "Videos"
    if file_type.startswith("application/pdf"):
        return "PDFs"
    if file_type.startswith(("application/msword", "application/vnd.openxmlformats-officedocument.wordprocessingml")):
        return "Documents"
    return "Other"


def get_search_analytics(db: Session, identity) -> dict:
    """Overview figures, popular tags and file type distribution for the caller's scope."""
    scope = ownership_scope(identity)

    total_files, total_size, avg_size = (
        db.query(func.count(FileRecord.id), func.sum(FileRecord.file_size), func.avg(FileRecord.file_size))
        .filter(*scope)
        .one()
    )
    categories = [c for (c,) in db.query(FileRecord.category).filter(*scope).distinct().order_by(FileRecord.category)]
    departments = [d for (d,) in db.query(FileRecord.department).filter(*scope).distinct().order_by(FileRecord.department)]

    tag_count = func.count(FileTag.id).label("count")
    popular_tags = (
        db.query(FileTag.tag, tag_count)
        .join(FileRecord, FileTag.file_id == FileRecord.id)
        .filter(*scope)
        .group_by(FileTag.tag)
        .order_by(tag_count.desc(), FileTag.tag)
        .limit(10)
        .all()
    )

    type_rows = (
        db.query(FileRecord.file_type, func.count(FileRecord.id), func.sum(FileRecord.file_size))
        .filter(*scope)
        .group_by(FileRecord.file_type)
        .all()
    )
    buckets = {}
    for file_type, count, size in type_rows:
        entry = buckets.setdefault(file_type_bucket(file_type), {"count": 0, "total_size": 0})
        entry["count"] += count
        entry["total_size"] += int(size or 0)
    file_types = sorted(buckets.items(), key=lambda item: (-item[1]["count"], item[0]))

    return {
        "overview": {
            "total_files": total_files or 0,
            "total_size": int(total_size or 0),
            "avg_size": float(avg_size or 0),
            "categories": categories,
            "departments": departments,
        },
        "popular_tags": [{"tag": tag, "count": count} for tag, count in popular_tags],
        "file_types": [
            {"type": name, "count": entry["count"], "total_size": entry["total_size"]}
            for name, entry in file_types
        ],
    }
