"""seo_audit_etl.progress

Read-side queries behind the dashboard's progress widgets and the
redirect mapping list.  Counts go through count_where; listings through
query_page so totals come back with the page.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from seo_audit_etl.operator_actions import AUDIT_TABLE, STATUSES
from seo_audit_etl.store import Filter, Store

PAGE_SIZE = 25

REDIRECT_FILTERS: dict[str, Filter] = {
    "all": {},
    "verified": {"redirect_verified": True},
    "pending": {"redirect_verified": ("not_is", True)},
    "missing_dest": {"redirect_destination": None},
    "has_dest": {"redirect_destination": ("not_is", None)},
}


@dataclass
class IssueProgress:
    issue_type_id: int | None
    total: int
    pending: int
    fixed: int
    ignored: int

    @property
    def percent_fixed(self) -> int:
        return round(self.fixed / self.total * 100) if self.total else 0


def status_counts(store: Store, issue_type_id: int | None = None) -> IssueProgress:
    base: Filter = {} if issue_type_id is None else {"issue_type_id": issue_type_id}
    counts = {
        status: store.count_where(AUDIT_TABLE, {**base, "status": status})
        for status in STATUSES
    }
    return IssueProgress(
        issue_type_id=issue_type_id,
        total=store.count_where(AUDIT_TABLE, base),
        pending=counts["pending"],
        fixed=counts["fixed"],
        ignored=counts["ignored"],
    )


def list_issue_urls(
    store: Store,
    page: int = 1,
    issue_type_id: int | None = None,
    redirect_filter: str = "all",
    search: str | None = None,
    page_size: int = PAGE_SIZE,
) -> tuple[list[dict[str, Any]], int]:
    """One page of audit records, most urgent priority first, then by id."""
    if redirect_filter not in REDIRECT_FILTERS:
        raise ValueError(f"unknown redirect filter {redirect_filter!r}")
    if page < 1:
        raise ValueError("page starts at 1")
    filter: Filter = dict(REDIRECT_FILTERS[redirect_filter])
    if issue_type_id is not None:
        filter["issue_type_id"] = issue_type_id
    if search and search.strip():
        filter["url"] = ("ilike", f"%{search.strip()}%")
    start = (page - 1) * page_size
    rows, total = store.query_page(
        AUDIT_TABLE, filter, [("priority", False), ("id", True)],
        start, start + page_size - 1,
    )
    return rows, total or 0
