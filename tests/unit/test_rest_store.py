"""Unit tests for seo_audit_etl.store.RestStore (PostgREST over requests)."""

from __future__ import annotations

import json
from datetime import date
from unittest.mock import MagicMock

import pytest
import requests

from seo_audit_etl.config import ImportConfig
from seo_audit_etl.shared import StoreReadError, StoreWriteError
from seo_audit_etl.store import MemoryStore, RestStore, group_by_columns, open_store, split_condition


def _response(status=200, body=None, headers=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body if body is not None else []
    resp.headers = headers or {}
    resp.text = text
    return resp


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    s.request.return_value = _response()
    return s


@pytest.fixture
def store(session):
    return RestStore("https://proj.supabase.co/", "svc-key", timeout=12.5, session=session)


def _call(session, n=-1):
    return session.request.call_args_list[n]


class TestHeaders:
    def test_service_key_headers(self, store, session):
        assert session.headers["apikey"] == "svc-key"
        assert session.headers["Authorization"] == "Bearer svc-key"

    def test_base_url_and_timeout(self, store, session):
        store.query_page("audit_urls", {}, [], 0, 9)
        call = _call(session)
        assert call.args == ("GET", "https://proj.supabase.co/rest/v1/audit_urls")
        assert call.kwargs["timeout"] == 12.5


class TestQueryPage:
    def test_params_range_and_total(self, store, session):
        session.request.return_value = _response(
            body=[{"id": 1}], headers={"Content-Range": "0-0/5321"}
        )
        rows, total = store.query_page(
            "audit_urls",
            {"issue_type_id": 15, "toxicity_score": None},
            [("priority", False), ("id", True)],
            1000, 1999,
            columns="id,url",
        )
        assert rows == [{"id": 1}]
        assert total == 5321
        kwargs = _call(session).kwargs
        assert kwargs["params"] == [
            ("select", "id,url"),
            ("issue_type_id", "eq.15"),
            ("toxicity_score", "is.null"),
            ("order", "priority.desc,id.asc"),
        ]
        assert kwargs["headers"]["Range"] == "1000-1999"
        assert kwargs["headers"]["Prefer"] == "count=exact"

    def test_filter_operators(self, store, session):
        store.query_page(
            "audit_urls",
            {
                "redirect_destination": ("not_is", None),
                "redirect_verified": ("is", True),
                "status": ("neq", "ignored"),
                "url": ("ilike", "%blog%"),
                "id": ("in", [1, 2, 3]),
            },
            [], 0, 24,
        )
        params = dict(_call(session).kwargs["params"])
        assert params["redirect_destination"] == "not.is.null"
        assert params["redirect_verified"] == "is.true"
        assert params["status"] == "neq.ignored"
        assert params["url"] == "ilike.*blog*"
        assert params["id"] == "in.(1,2,3)"

    def test_unknown_total(self, store, session):
        session.request.return_value = _response(headers={"Content-Range": "0-9/*"})
        assert store.query_page("audit_urls", {}, [], 0, 9)[1] is None

    def test_http_error_is_read_error(self, store, session):
        session.request.return_value = _response(status=500, text="boom")
        with pytest.raises(StoreReadError, match="HTTP 500 boom"):
            store.query_page("audit_urls", {}, [], 0, 9)

    def test_timeout_is_read_error(self, store, session):
        session.request.side_effect = requests.Timeout("read timed out")
        with pytest.raises(StoreReadError, match="Timeout"):
            store.query_page("audit_urls", {}, [], 0, 9)


class TestWrites:
    def test_update_by_id(self, store, session):
        store.update_by_id("audit_urls", 7, {"toxicity_score": 45})
        call = _call(session)
        assert call.args[0] == "PATCH"
        assert call.kwargs["params"] == [("id", "eq.7")]
        assert json.loads(call.kwargs["data"]) == {"toxicity_score": 45}

    def test_update_batch_tries_every_row(self, store, session):
        session.request.side_effect = [
            _response(), _response(status=409, text="conflict"), _response(),
        ]
        with pytest.raises(StoreWriteError, match="1 of 3 updates failed; first: id=2"):
            store.update_batch("audit_urls", [(1, {"a": 1}), (2, {"a": 2}), (3, {"a": 3})])
        assert session.request.call_count == 3

    def test_insert_grouped_by_column_set(self, store, session):
        store.insert_batch("ranking_traffic", [
            {"keyword": "a", "position": 1},
            {"keyword": "b"},
            {"position": 2, "keyword": "c"},
        ])
        bodies = [json.loads(c.kwargs["data"]) for c in session.request.call_args_list]
        assert bodies == [
            [{"keyword": "a", "position": 1}, {"position": 2, "keyword": "c"}],
            [{"keyword": "b"}],
        ]

    def test_upsert_serializes_dates(self, store, session):
        store.upsert_batch("ref_domains", [{"domain": "foo.com", "first_seen": date(2024, 1, 15)}], "domain")
        call = _call(session)
        assert call.args[0] == "POST"
        assert call.kwargs["params"] == [("on_conflict", "domain")]
        assert "resolution=merge-duplicates" in call.kwargs["headers"]["Prefer"]
        assert json.loads(call.kwargs["data"]) == [{"domain": "foo.com", "first_seen": "2024-01-15"}]

    def test_connection_error_is_write_error(self, store, session):
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(StoreWriteError, match="ConnectionError"):
            store.insert_batch("backlink_urls", [{"source_url": "x"}])


class TestCountWhere:
    def test_count_from_content_range(self, store, session):
        session.request.return_value = _response(headers={"Content-Range": "0-0/42"})
        assert store.count_where("audit_urls", {"status": "fixed"}) == 42
        call = _call(session)
        assert call.args[0] == "HEAD"
        assert ("status", "eq.fixed") in call.kwargs["params"]

    def test_missing_count(self, store, session):
        session.request.return_value = _response(headers={})
        with pytest.raises(StoreReadError):
            store.count_where("audit_urls", {})


class TestHelpers:
    def test_split_condition(self):
        assert split_condition(None) == ("is", None)
        assert split_condition(15) == ("eq", 15)
        assert split_condition(("ilike", "%x%")) == ("ilike", "%x%")
        assert split_condition(("a", "b")) == ("eq", ("a", "b"))

    def test_group_by_columns_preserves_order(self):
        groups = group_by_columns([{"a": 1}, {"a": 2, "b": 1}, {"a": 3}])
        assert [cols for cols, _ in groups] == [("a",), ("a", "b")]
        assert [len(g) for _, g in groups] == [2, 1]


class TestOpenStore:
    def test_rest_without_dsn(self):
        config = ImportConfig(store_url="https://proj.supabase.co", service_key="k")
        assert isinstance(open_store(config), RestStore)


class TestMemoryStoreFilters:
    def test_filter_forms(self):
        store = MemoryStore({"audit_urls": [
            {"url": "https://a.com/blog", "redirect_destination": None, "status": "pending"},
            {"url": "https://a.com/shop", "redirect_destination": "https://a.com/", "status": "ignored"},
        ]})
        assert store.count_where("audit_urls", {"redirect_destination": None}) == 1
        assert store.count_where("audit_urls", {"redirect_destination": ("not_is", None)}) == 1
        assert store.count_where("audit_urls", {"status": ("neq", "ignored")}) == 1
        assert store.count_where("audit_urls", {"url": ("ilike", "%BLOG%")}) == 1
        assert store.count_where("audit_urls", {"id": ("in", [1, 2])}) == 2
