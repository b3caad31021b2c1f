from datetime import datetime

import pytest

from filetrack.errors import InvalidPageSize
from filetrack.filters import SearchFilters
from filetrack.models import FileStatus
from filetrack.search import (
    file_type_bucket, get_saved_searches, get_search_analytics, get_suggestions, save_search, search_files,
)


def test_total_is_independent_of_pagination(session, users, identities, make_file):
    for n in range(7):
        make_file(users["alice"], f"doc-{n}.pdf")

    pages = [search_files(session, SearchFilters(), identities["alice"], limit=3, offset=offset)
             for offset in (0, 3, 6)]

    assert [page["total"] for page in pages] == [7, 7, 7]
    assert [len(page["results"]) for page in pages] == [3, 3, 1]
    ids = [item["id"] for page in pages for item in page["results"]]
    assert len(set(ids)) == 7


def test_without_query_results_are_newest_first(session, users, identities, make_file):
    older = make_file(users["alice"], "older.pdf", created_at=datetime(2024, 1, 1))
    newer = make_file(users["alice"], "newer.pdf", created_at=datetime(2024, 6, 1))

    page = search_files(session, SearchFilters(), identities["alice"])

    assert [item["id"] for item in page["results"]] == [newer.id, older.id]
    assert "relevance_score" not in page["results"][0]


def test_plain_user_search_is_scoped_to_own_files(session, users, identities, make_file):
    make_file(users["alice"], "alice.pdf")
    make_file(users["bob"], "bob.pdf")

    bob_page = search_files(session, SearchFilters(), identities["bob"])
    admin_page = search_files(session, SearchFilters(), identities["admin"])

    assert [item["original_name"] for item in bob_page["results"]] == ["bob.pdf"]
    assert admin_page["total"] == 2


def test_query_results_are_ranked_by_relevance(session, users, identities, make_file):
    by_department = make_file(users["alice"], "plan.pdf", department="Budget Office")
    by_category = make_file(users["alice"], "notes.pdf", category="budget")
    by_name = make_file(users["alice"], "budget-2024.xlsx")
    by_tag = make_file(users["alice"], "summary.pdf", tags=["Budget"])
    make_file(users["alice"], "unrelated.pdf")

    page = search_files(session, SearchFilters(query="budget"), identities["admin"])

    assert page["total"] == 4
    assert [item["id"] for item in page["results"]] == [by_name.id, by_tag.id, by_category.id, by_department.id]
    scores = [item["relevance_score"] for item in page["results"]]
    assert scores == sorted(scores, reverse=True)
    # original_name and the generated storage name both contain the term
    assert scores[0] == 18


def test_query_matches_description_case_insensitively(session, users, identities, make_file):
    match = make_file(users["alice"], "a.pdf", description="Quarterly FORECAST for review")
    make_file(users["alice"], "b.pdf")

    page = search_files(session, SearchFilters(query="forecast"), identities["alice"])

    assert [item["id"] for item in page["results"]] == [match.id]
    assert page["results"][0]["relevance_score"] == 5


def test_status_and_size_filters(session, users, identities, make_file):
    make_file(users["alice"], "pending.pdf", status=FileStatus.PENDING_APPROVAL, file_size=10)
    wanted = make_file(users["alice"], "active.pdf", file_size=500)
    make_file(users["alice"], "huge.pdf", file_size=50000)

    filters = SearchFilters.from_params({"status": "active", "minSize": "100", "maxSize": "1000"})
    page = search_files(session, filters, identities["alice"])

    assert [item["id"] for item in page["results"]] == [wanted.id]


def test_date_bounds_are_inclusive(session, users, identities, make_file):
    edge = make_file(users["alice"], "edge.pdf", created_at=datetime(2024, 3, 1, 12, 0))
    make_file(users["alice"], "later.pdf", created_at=datetime(2024, 3, 2))

    filters = SearchFilters.from_params({"dateFrom": "2024-03-01T12:00:00", "dateTo": "2024-03-01T12:00:00"})
    page = search_files(session, filters, identities["alice"])

    assert [item["id"] for item in page["results"]] == [edge.id]


@pytest.mark.parametrize("limit,offset", [(0, 0), (-5, 0), (10, -1), (2 ** 63, 0), (10, 2 ** 63)])
def test_invalid_page_is_rejected(session, identities, limit, offset):
    with pytest.raises(InvalidPageSize):
        search_files(session, SearchFilters(), identities["admin"], limit=limit, offset=offset)


def test_serialized_result_carries_uploader_and_metadata(session, users, identities, make_file):
    make_file(users["alice"], "a.pdf", tags=["x", "y"])

    item = search_files(session, SearchFilters(), identities["alice"])["results"][0]

    assert item["uploaded_by"] == {"id": users["alice"].id, "name": "Alice", "email": "alice@example.com"}
    assert item["tags"] == ["x", "y"]
    assert item["metadata"]["checksum"] == "0" * 64


def test_short_queries_give_no_suggestions(session, users, identities, make_file):
    make_file(users["alice"], "report.pdf")

    assert get_suggestions(session, "r", identities["admin"]) == []
    assert get_suggestions(session, "  ", identities["admin"]) == []


def test_suggestions_are_capped_and_grouped(session, users, identities, make_file):
    for n in range(6):
        make_file(users["alice"], f"report-{n}.pdf", tags=[f"report-tag-{n}"],
                  category=f"reports-{n}", department=f"reporting-{n}")

    suggestions = get_suggestions(session, "report", identities["admin"])

    assert len(suggestions) == 10
    assert [s["type"] for s in suggestions] == ["file"] * 5 + ["tag"] * 5


def test_suggestions_include_categories_and_departments(session, users, identities, make_file):
    make_file(users["alice"], "a.pdf", category="invoices", department="Finance")
    make_file(users["alice"], "b.pdf", category="invoices", department="Finance")

    suggestions = get_suggestions(session, "inv", identities["alice"])

    assert suggestions == [{"type": "category", "value": "invoices", "count": 2}]


def test_suggestions_respect_ownership(session, users, identities, make_file):
    make_file(users["bob"], "secret-plan.pdf")

    assert get_suggestions(session, "secret", identities["alice"]) == []
    assert get_suggestions(session, "secret", identities["manager"])[0]["value"] == "secret-plan.pdf"


def test_saved_searches_are_per_user_and_limited(session, identities):
    for n in range(12):
        save_search(session, identities["alice"], f"q{n}", {"status": "active"})
    save_search(session, identities["bob"], "other", {})

    saved = get_saved_searches(session, identities["alice"])

    assert len(saved) == 10
    assert saved[0]["search_query"] == "q11"
    assert saved[0]["filters"] == {"status": "active"}


def test_file_type_buckets():
    assert file_type_bucket("image/png") == "Images"
    assert file_type_bucket("video/mp4") == "Videos"
    assert file_type_bucket("application/pdf") == "PDFs"
    assert file_type_bucket("application/msword") == "Documents"
    assert file_type_bucket("text/plain") == "Other"
    assert file_type_bucket(None) == "Other"


def test_search_analytics(session, users, identities, make_file):
    make_file(users["alice"], "a.pdf", tags=["finance"], file_size=100)
    make_file(users["alice"], "b.png", file_type="image/png", tags=["finance"], file_size=300)
    make_file(users["bob"], "c.pdf", file_size=1000)

    analytics = get_search_analytics(session, identities["alice"])

    assert analytics["overview"]["total_files"] == 2
    assert analytics["overview"]["total_size"] == 400
    assert analytics["popular_tags"] == [{"tag": "finance", "count": 2}]
    assert {entry["type"] for entry in analytics["file_types"]} == {"PDFs", "Images"}


def test_query_is_trimmed_when_built_directly(session, users, identities, make_file):
    match = make_file(users["alice"], "budget.pdf")
    make_file(users["alice"], "other.pdf")

    page = search_files(session, SearchFilters(query=" budget "), identities["alice"])

    assert [item["id"] for item in page["results"]] == [match.id]
    assert page["results"][0]["relevance_score"] > 0


def test_blank_query_is_no_query(session, users, identities, make_file):
    make_file(users["alice"], "a.pdf")
    make_file(users["alice"], "b.pdf")

    filters = SearchFilters(query="   ")
    page = search_files(session, filters, identities["alice"])

    assert filters.query is None
    assert page["total"] == 2
    assert "relevance_score" not in page["results"][0]
