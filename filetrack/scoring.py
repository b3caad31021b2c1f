"""
Keyword relevance scoring for file search.
The score is evaluated by the database as a sum of CASE expressions.
"""
from sqlalchemy import case, func, select

from filetrack.filters import contains_ci
from filetrack.models import FileRecord, FileTag

FIELD_WEIGHTS = {
    "original_name": 10,
    "file_name": 8,
    "tags": 7,
    "description": 5,
    "category": 3,
    "department": 2,
}


def relevance_score(query: str):
    """
    Build a SQL expression scoring a FileRecord row against ``query``.

    Each field containing a case-insensitive match adds its weight; tags only
    count on an exact (case-insensitive) tag match.
    """
    query = query.strip()
    exact_tag = (
        select(FileTag.id)
        .where(FileTag.file_id == FileRecord.id, func.lower(FileTag.tag) == query.lower())
        .exists()
    )
    parts = [
        case((contains_ci(FileRecord.original_name, query), FIELD_WEIGHTS["original_name"]), else_=0),
        case((contains_ci(FileRecord.file_name, query), FIELD_WEIGHTS["file_name"]), else_=0),
        case((exact_tag, FIELD_WEIGHTS["tags"]), else_=0),
        case((contains_ci(FileRecord.description, query), FIELD_WEIGHTS["description"]), else_=0),
        case((contains_ci(FileRecord.category, query), FIELD_WEIGHTS["category"]), else_=0),
        case((contains_ci(FileRecord.department, query), FIELD_WEIGHTS["department"]), else_=0),
    ]
    score = parts[0]
    for part in parts[1:]:
        score = score + part
    return score
