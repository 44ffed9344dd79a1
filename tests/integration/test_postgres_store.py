"""Integration tests for PostgresStore against a real PostgreSQL database."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from seo_audit_etl.shared import StoreWriteError


def _seed(store, rows):
    store.insert_batch("audit_urls", rows)


def _audit(store, record_id):
    rows, _ = store.query_page("audit_urls", {"id": record_id}, [], 0, 0)
    return rows[0]


class TestQueryPage:
    def test_filter_sort_range_and_total(self, pg_store):
        _seed(pg_store, [
            {"url": f"https://site.com/{i}", "issue_type_id": 15 if i % 2 else 16}
            for i in range(1, 8)
        ])
        rows, total = pg_store.query_page(
            "audit_urls", {"issue_type_id": 15}, [("id", False)], 1, 2, columns="id,url"
        )
        assert total == 4
        assert [r["id"] for r in rows] == [5, 3]
        assert set(rows[0]) == {"id", "url"}

    def test_null_and_operator_filters(self, pg_store):
        _seed(pg_store, [
            {"url": "https://site.com/blog/a", "issue_type_id": 3, "redirect_destination": "https://site.com/"},
            {"url": "https://site.com/shop", "issue_type_id": 3},
            {"url": "https://site.com/blog/b", "issue_type_id": 3, "status": "ignored"},
        ])
        assert pg_store.count_where("audit_urls", {"redirect_destination": None}) == 2
        assert pg_store.count_where("audit_urls", {"redirect_destination": ("not_is", None)}) == 1
        assert pg_store.count_where("audit_urls", {"redirect_verified": ("is", False)}) == 3
        assert pg_store.count_where("audit_urls", {"url": ("ilike", "%BLOG%")}) == 2
        assert pg_store.count_where("audit_urls", {"status": ("neq", "ignored")}) == 2
        assert pg_store.count_where("audit_urls", {"id": ("in", [1, 3, 99])}) == 2


class TestWrites:
    def test_update_batch_is_atomic(self, pg_store):
        _seed(pg_store, [
            {"url": "https://a.com", "issue_type_id": 15},
            {"url": "https://b.com", "issue_type_id": 15},
        ])
        with pytest.raises(StoreWriteError, match="CheckViolation"):
            pg_store.update_batch("audit_urls", [
                (1, {"toxicity_score": 45}),
                (2, {"status": "bogus"}),
            ])
        assert _audit(pg_store, 1)["toxicity_score"] is None
        assert _audit(pg_store, 2)["status"] == "pending"

    def test_update_by_id(self, pg_store):
        _seed(pg_store, [{"url": "https://a.com", "issue_type_id": 15}])
        pg_store.update_by_id("audit_urls", 1, {"traffic_percentage": 1234.56, "notes": None})
        assert _audit(pg_store, 1)["traffic_percentage"] == Decimal("1234.56")

    def test_insert_mixed_column_sets_keeps_defaults(self, pg_store):
        pg_store.insert_batch("ranking_traffic", [
            {"keyword": "spa", "market": "fr", "timestamp": datetime(2024, 3, 1, 12, 0)},
            {"keyword": "hotel"},
        ])
        rows, total = pg_store.query_page("ranking_traffic", {}, [("id", True)], 0, 9)
        assert total == 2
        assert rows[0]["timestamp"] == datetime(2024, 3, 1, 12, 0)
        assert rows[1]["market"] == "es"

    def test_upsert_on_conflict_key(self, pg_store):
        pg_store.upsert_batch("ref_domains", [
            {"domain": "foo.com", "backlinks": 10, "country": "ES", "first_seen": date(2024, 1, 15)},
        ], "domain")
        pg_store.upsert_batch("ref_domains", [{"domain": "foo.com", "backlinks": 12}], "domain")
        rows, total = pg_store.query_page("ref_domains", {}, [], 0, 9)
        assert total == 1
        assert rows[0]["backlinks"] == 12
        assert rows[0]["country"] == "ES"
        assert rows[0]["first_seen"] == date(2024, 1, 15)

    def test_upsert_key_only_rows(self, pg_store):
        pg_store.upsert_batch("ref_domains", [{"domain": "foo.com"}], "domain")
        pg_store.upsert_batch("ref_domains", [{"domain": "foo.com"}], "domain")
        assert pg_store.count_where("ref_domains", {}) == 1

    def test_jsonb_values_with_timestamps(self, pg_store):
        stamp = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
        pg_store.insert_batch("activity_log", [{
            "actor": "ana",
            "action_type": "toggle_fixed",
            "table_name": "audit_urls",
            "record_id": "1",
            "before_state": {"status": "pending", "fixed_at": None},
            "after_state": {"status": "fixed", "fixed_at": stamp},
        }])
        rows, _ = pg_store.query_page("activity_log", {}, [], 0, 0)
        assert rows[0]["after_state"] == {"status": "fixed", "fixed_at": stamp.isoformat()}
        assert rows[0]["before_state"]["fixed_at"] is None
