"""Unit tests for seo_audit_etl.csv_reader."""

from __future__ import annotations

import csv

import pytest

from seo_audit_etl import csv_reader
from seo_audit_etl.csv_reader import (
    COMMA_UTF8,
    SEMICOLON_UTF8,
    TAB_UTF16LE,
    SourceRow,
    iter_rows,
    read_header,
)
from seo_audit_etl.shared import ConfigError, MalformedRowError


def _write(tmp_path, text, name="in.csv", encoding="utf-8"):
    path = tmp_path / name
    path.write_bytes(text.encode(encoding))
    return path


class TestCommaUtf8:
    def test_quoted_field_with_delimiter_and_escaped_quote(self, tmp_path):
        path = _write(tmp_path, 'url,title\n"https://a.com/x","Hello, ""world"""\n')
        rows = list(iter_rows(path, COMMA_UTF8))
        assert len(rows) == 1
        assert rows[0].fields == {"url": "https://a.com/x", "title": 'Hello, "world"'}

    def test_bom_stripped_from_header(self, tmp_path):
        path = _write(tmp_path, "url,score\nhttps://a.com,1\n", encoding="utf-8-sig")
        rows = list(iter_rows(path))
        assert list(rows[0].fields) == ["url", "score"]

    def test_header_whitespace_and_quotes_stripped(self, tmp_path):
        path = _write(tmp_path, ' "url" , score \nhttps://a.com,1\n')
        assert read_header(path) == ["url", "score"]

    def test_blank_lines_skipped(self, tmp_path):
        path = _write(tmp_path, "url\n\nhttps://a.com\n\n")
        rows = list(iter_rows(path))
        assert [r.fields["url"] for r in rows] == ["https://a.com"]

    def test_line_numbers(self, tmp_path):
        path = _write(tmp_path, "url\nhttps://a.com\nhttps://b.com\n")
        assert [r.line_number for r in iter_rows(path)] == [2, 3]


class TestMalformedRows:
    def test_field_count_mismatch_yields_error_and_continues(self, tmp_path):
        path = _write(
            tmp_path,
            "url,score\nhttps://a.com,1\nhttps://b.com\nhttps://c.com,3\n",
        )
        rows = list(iter_rows(path))
        assert len(rows) == 3
        bad = rows[1]
        assert bad.fields is None
        assert isinstance(bad.error, MalformedRowError)
        assert bad.error.line_number == 3
        assert "expected 2 fields, got 1" in bad.error.reason
        assert rows[2].fields == {"url": "https://c.com", "score": "3"}

    def test_too_many_fields(self, tmp_path):
        path = _write(tmp_path, "url\nhttps://a.com,extra\n")
        (row,) = list(iter_rows(path))
        assert row.error is not None
        assert row.raw == ["https://a.com", "extra"]

    def test_oversized_field_is_read(self, tmp_path):
        long_url = "https://a.com/" + "x" * 200_000
        path = _write(tmp_path, f"url,score\n{long_url},1\nhttps://b.com,2\n")
        rows = list(iter_rows(path))
        assert [r.error for r in rows] == [None, None]
        assert rows[0].fields["url"] == long_url
        assert rows[1].fields == {"url": "https://b.com", "score": "2"}

    def test_unbalanced_quote_swallows_rest_into_one_row(self, tmp_path):
        path = _write(tmp_path, 'url,score\n"https://a.com,1\nhttps://b.com,2\nhttps://c.com,3\n')
        (row,) = list(iter_rows(path))
        assert row.error is not None
        assert "expected 2 fields" in row.error.reason

    def test_csv_error_yields_malformed_row_and_continues(self, tmp_path, monkeypatch):
        original = csv.field_size_limit()
        monkeypatch.setattr(csv_reader, "FIELD_SIZE_LIMIT", 20)
        try:
            path = _write(
                tmp_path,
                "url,score\nhttps://a.com,1\nhttps://example.com/" + "a" * 30 + ",2\nhttps://c.com,3\n",
            )
            rows = list(iter_rows(path))
        finally:
            csv.field_size_limit(original)
        assert len(rows) == 3
        bad = rows[1]
        assert bad.fields is None
        assert bad.error.line_number == 3
        assert "field larger than field limit" in bad.error.reason
        assert rows[2].line_number == 4
        assert rows[2].fields == {"url": "https://c.com", "score": "3"}

    def test_invalid_bytes_decoded_as_replacement_char(self, tmp_path):
        path = tmp_path / "in.csv"
        path.write_bytes(b"url\nhttps://a.com/caf\xe9\n")
        (row,) = list(iter_rows(path))
        assert row.fields["url"] == "https://a.com/caf\ufffd"


class TestOtherDialects:
    def test_tab_utf16le_with_bom(self, tmp_path):
        text = (
            "\ufeffReferring page URL\tTarget URL\tAnchor\n"
            "https://blog.example.org/p\thttps://site.com/\tclick, here\n"
        )
        path = _write(tmp_path, text, encoding="utf-16-le")
        assert read_header(path, TAB_UTF16LE) == ["Referring page URL", "Target URL", "Anchor"]
        (row,) = list(iter_rows(path, TAB_UTF16LE))
        assert row.fields["Referring page URL"] == "https://blog.example.org/p"
        assert row.fields["Anchor"] == "click, here"

    def test_semicolon(self, tmp_path):
        path = _write(tmp_path, "Dirección;% del total\nhttps://a.com;1,5\n")
        (row,) = list(iter_rows(path, SEMICOLON_UTF8))
        assert row.fields == {"Dirección": "https://a.com", "% del total": "1,5"}


class TestErrors:
    def test_missing_file_is_config_error(self, tmp_path):
        with pytest.raises(ConfigError):
            list(iter_rows(tmp_path / "nope.csv"))

    def test_read_header_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            read_header(tmp_path / "nope.csv")

    def test_unreadable_header_is_config_error(self, tmp_path, monkeypatch):
        original = csv.field_size_limit()
        monkeypatch.setattr(csv_reader, "FIELD_SIZE_LIMIT", 5)
        try:
            path = _write(tmp_path, "Source URL,score\nhttps://a.com,1\n")
            with pytest.raises(ConfigError, match="unreadable header row"):
                read_header(path)
        finally:
            csv.field_size_limit(original)

    def test_empty_file_has_no_header(self, tmp_path):
        path = _write(tmp_path, "")
        assert read_header(path) == []
        assert list(iter_rows(path)) == []


class TestSourceRow:
    def test_as_reject(self):
        row = SourceRow(7, {"url": "x"}, ["x"])
        assert row.as_reject() == {"_line": "7", "_raw": "x"}
