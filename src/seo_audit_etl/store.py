"""seo_audit_etl.store

Minimal data-access abstraction over the hosted backend.

Every importer, maintenance task and operator action talks to a Store:

  query_page(table, filter, sort, range_start, range_end) -> (rows, total)
  update_by_id(table, id, fields)
  update_batch(table, [(id, fields), ...])
  insert_batch(table, rows)
  upsert_batch(table, rows, conflict_key)
  count_where(table, filter) -> int

Filters are ``{column: condition}`` where a condition is a plain value
(equality), None (IS NULL) or an ``(op, value)`` tuple with op one of
eq, neq, is, not_is, ilike, in.  Sorts are ``[(column, ascending), ...]``.

Implementations:
  RestStore      PostgREST endpoint of the hosted backend (requests)
  PostgresStore  direct connection to the same database (psycopg)
  MemoryStore    in-process tables, used by tests
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Protocol

import psycopg
import requests
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from seo_audit_etl.shared import StoreReadError, StoreWriteError

log = logging.getLogger(__name__)

Filter = dict[str, Any]
Sort = list[tuple[str, bool]]

_OPS = {"eq", "neq", "is", "not_is", "ilike", "in"}


class Store(Protocol):
    def query_page(
        self,
        table: str,
        filter: Filter,
        sort: Sort,
        range_start: int,
        range_end: int,
        columns: str = "*",
    ) -> tuple[list[dict[str, Any]], int | None]:
        ...

    def update_by_id(self, table: str, record_id: Any, fields: dict[str, Any]) -> None:
        ...

    def update_batch(self, table: str, updates: list[tuple[Any, dict[str, Any]]]) -> None:
        ...

    def insert_batch(self, table: str, rows: list[dict[str, Any]]) -> None:
        ...

    def upsert_batch(self, table: str, rows: list[dict[str, Any]], conflict_key: str) -> None:
        ...

    def count_where(self, table: str, filter: Filter) -> int:
        ...

    def close(self) -> None:
        ...


def split_condition(cond: Any) -> tuple[str, Any]:
    """Normalize a filter condition to (op, value)."""
    if isinstance(cond, tuple) and len(cond) == 2 and cond[0] in _OPS:
        return cond[0], cond[1]
    if cond is None:
        return "is", None
    return "eq", cond


def group_by_columns(rows: Iterable[dict[str, Any]]) -> list[tuple[tuple[str, ...], list[dict[str, Any]]]]:
    """Group rows by their exact column set, preserving first-seen order.

    Bulk inserts/upserts need a uniform column list.  Rows are never
    padded with NULLs for columns they do not carry.
    """
    groups: dict[tuple[str, ...], list[dict[str, Any]]] = {}
    for row in rows:
        groups.setdefault(tuple(sorted(row)), []).append(row)
    return list(groups.items())


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


# ---------------------------------------------------------------------------
# RestStore (PostgREST over HTTP)
# ---------------------------------------------------------------------------

def _rest_literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _parse_content_range(header: str | None) -> int | None:
    # "0-999/5321" or "*/0"; "*" total means the server did not count
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class RestStore:
    """Store backed by the backend's PostgREST API using a service key."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base = base_url.rstrip("/") + "/rest/v1"
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        })

    def close(self) -> None:
        self._session.close()

    # -- helpers -------------------------------------------------------------

    def _request(
        self,
        method: str,
        table: str,
        *,
        read: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        err_cls = StoreReadError if read else StoreWriteError
        try:
            resp = self._session.request(
                method, f"{self._base}/{table}", timeout=self._timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise err_cls(f"{method} {table}: {type(exc).__name__}: {exc}") from exc
        if resp.status_code >= 400:
            raise err_cls(f"{method} {table}: HTTP {resp.status_code} {resp.text[:300]}")
        return resp

    @staticmethod
    def _filter_params(filter: Filter) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        for column, cond in filter.items():
            op, value = split_condition(cond)
            if op == "is":
                params.append((column, f"is.{_rest_literal(value)}"))
            elif op == "not_is":
                params.append((column, f"not.is.{_rest_literal(value)}"))
            elif op == "ilike":
                params.append((column, f"ilike.{str(value).replace('%', '*')}"))
            elif op == "in":
                params.append((column, "in.(" + ",".join(_rest_literal(v) for v in value) + ")"))
            else:
                params.append((column, f"{op}.{_rest_literal(value)}"))
        return params

    @staticmethod
    def _body(rows: Any) -> str:
        return json.dumps(rows, default=_json_default)

    # -- Store API -----------------------------------------------------------

    def query_page(
        self,
        table: str,
        filter: Filter,
        sort: Sort,
        range_start: int,
        range_end: int,
        columns: str = "*",
    ) -> tuple[list[dict[str, Any]], int | None]:
        params = [("select", columns)] + self._filter_params(filter)
        if sort:
            params.append((
                "order",
                ",".join(f"{col}.{'asc' if asc else 'desc'}" for col, asc in sort),
            ))
        resp = self._request(
            "GET", table, read=True, params=params,
            headers={
                "Range-Unit": "items",
                "Range": f"{range_start}-{range_end}",
                "Prefer": "count=exact",
            },
        )
        return resp.json(), _parse_content_range(resp.headers.get("Content-Range"))

    def update_by_id(self, table: str, record_id: Any, fields: dict[str, Any]) -> None:
        self._request(
            "PATCH", table,
            params=[("id", f"eq.{record_id}")],
            data=self._body(fields),
            headers={"Prefer": "return=minimal"},
        )

    def update_batch(self, table: str, updates: list[tuple[Any, dict[str, Any]]]) -> None:
        # PostgREST has no multi-row PATCH with per-row values; try every
        # row, then report the failures for the chunk as one error.
        failures: list[str] = []
        for record_id, fields in updates:
            try:
                self.update_by_id(table, record_id, fields)
            except StoreWriteError as exc:
                failures.append(f"id={record_id}: {exc}")
        if failures:
            raise StoreWriteError(
                f"{len(failures)} of {len(updates)} updates failed; first: {failures[0]}"
            )

    def insert_batch(self, table: str, rows: list[dict[str, Any]]) -> None:
        for _cols, group in group_by_columns(rows):
            self._request(
                "POST", table,
                data=self._body(group),
                headers={"Prefer": "return=minimal"},
            )

    def upsert_batch(self, table: str, rows: list[dict[str, Any]], conflict_key: str) -> None:
        for _cols, group in group_by_columns(rows):
            self._request(
                "POST", table,
                params=[("on_conflict", conflict_key)],
                data=self._body(group),
                headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            )

    def count_where(self, table: str, filter: Filter) -> int:
        resp = self._request(
            "HEAD", table, read=True,
            params=[("select", "id")] + self._filter_params(filter),
            headers={"Prefer": "count=exact", "Range-Unit": "items", "Range": "0-0"},
        )
        total = _parse_content_range(resp.headers.get("Content-Range"))
        if total is None:
            raise StoreReadError(f"HEAD {table}: no count in Content-Range")
        return total


# ---------------------------------------------------------------------------
# PostgresStore (psycopg)
# ---------------------------------------------------------------------------

def _dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default)


_IS_LITERALS = {None: "NULL", True: "TRUE", False: "FALSE"}


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value, dumps=_dumps)
    return value


class PostgresStore:
    """Store backed by a direct database connection.

    Each write call runs in its own transaction, so a failing chunk leaves
    no partial rows behind.  Calls are serialized on the one connection;
    transactions opened on it concurrently would nest as savepoints.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        conn.row_factory = dict_row
        self._conn = conn
        self._lock = threading.Lock()

    @classmethod
    def connect(cls, dsn: str, timeout: float = 30.0) -> PostgresStore:
        try:
            conn = psycopg.connect(
                dsn,
                autocommit=True,
                row_factory=dict_row,
                connect_timeout=max(1, int(timeout)),
                options=f"-c statement_timeout={int(timeout * 1000)}",
            )
        except psycopg.Error as exc:
            raise StoreReadError(f"connect failed: {exc}") from exc
        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _where(filter: Filter) -> tuple[sql.Composable, list[Any]]:
        clauses: list[sql.Composable] = []
        params: list[Any] = []
        for column, cond in filter.items():
            op, value = split_condition(cond)
            ident = sql.Identifier(column)
            if op in ("is", "not_is") or (op == "eq" and value is None):
                negate = " NOT" if op == "not_is" else ""
                clauses.append(sql.SQL("{} IS{} {}").format(
                    ident, sql.SQL(negate), sql.SQL(_IS_LITERALS[value]),
                ))
            elif op == "neq":
                clauses.append(sql.SQL("{} <> %s").format(ident))
                params.append(value)
            elif op == "ilike":
                clauses.append(sql.SQL("{} ILIKE %s").format(ident))
                params.append(value)
            elif op == "in":
                clauses.append(sql.SQL("{} = ANY(%s)").format(ident))
                params.append(list(value))
            else:
                clauses.append(sql.SQL("{} = %s").format(ident))
                params.append(value)
        if not clauses:
            return sql.SQL(""), params
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params

    @staticmethod
    def _select_list(columns: str) -> sql.Composable:
        if columns.strip() == "*":
            return sql.SQL("*")
        return sql.SQL(", ").join(
            sql.Identifier(c.strip()) for c in columns.split(",") if c.strip()
        )

    def _write(self, label: str, table: str, statements: list[tuple[sql.Composable, list[list[Any]]]]) -> None:
        try:
            with self._lock, self._conn.transaction():
                with self._conn.cursor() as cur:
                    for stmt, param_rows in statements:
                        cur.executemany(stmt, param_rows)
        except psycopg.Error as exc:
            raise StoreWriteError(f"{label} {table}: {type(exc).__name__}: {exc}") from exc

    # -- Store API -----------------------------------------------------------

    def query_page(
        self,
        table: str,
        filter: Filter,
        sort: Sort,
        range_start: int,
        range_end: int,
        columns: str = "*",
    ) -> tuple[list[dict[str, Any]], int | None]:
        where, params = self._where(filter)
        order = sql.SQL("")
        if sort:
            order = sql.SQL(" ORDER BY ") + sql.SQL(", ").join(
                sql.SQL("{} {}").format(sql.Identifier(col), sql.SQL("ASC" if asc else "DESC"))
                for col, asc in sort
            )
        query = sql.SQL("SELECT {} FROM {}{}{} LIMIT %s OFFSET %s").format(
            self._select_list(columns), sql.Identifier(table), where, order,
        )
        count_query = sql.SQL("SELECT count(*) AS n FROM {}{}").format(sql.Identifier(table), where)
        try:
            with self._lock:
                rows = self._conn.execute(
                    query, params + [range_end - range_start + 1, range_start]
                ).fetchall()
                total = self._conn.execute(count_query, params).fetchone()["n"]
        except psycopg.Error as exc:
            raise StoreReadError(f"SELECT {table}: {type(exc).__name__}: {exc}") from exc
        return [dict(r) for r in rows], int(total)

    def _update_statement(self, table: str, fields: dict[str, Any]) -> sql.Composable:
        return sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            sql.Identifier(table),
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(col)) for col in fields
            ),
        )

    def update_by_id(self, table: str, record_id: Any, fields: dict[str, Any]) -> None:
        self.update_batch(table, [(record_id, fields)])

    def update_batch(self, table: str, updates: list[tuple[Any, dict[str, Any]]]) -> None:
        statements = [
            (
                self._update_statement(table, fields),
                [[_adapt(v) for v in fields.values()] + [record_id]],
            )
            for record_id, fields in updates
            if fields
        ]
        self._write("UPDATE", table, statements)

    def _insert_statement(
        self, table: str, cols: tuple[str, ...], conflict_key: str | None = None
    ) -> sql.Composable:
        stmt = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            sql.SQL(", ").join(sql.Placeholder() for _ in cols),
        )
        if conflict_key is None:
            return stmt
        updates = [c for c in cols if c != conflict_key]
        if not updates:
            return stmt + sql.SQL(" ON CONFLICT ({}) DO NOTHING").format(sql.Identifier(conflict_key))
        return stmt + sql.SQL(" ON CONFLICT ({}) DO UPDATE SET {}").format(
            sql.Identifier(conflict_key),
            sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
            ),
        )

    def insert_batch(self, table: str, rows: list[dict[str, Any]]) -> None:
        statements = [
            (self._insert_statement(table, cols), [[_adapt(r[c]) for c in cols] for r in group])
            for cols, group in group_by_columns(rows)
        ]
        self._write("INSERT", table, statements)

    def upsert_batch(self, table: str, rows: list[dict[str, Any]], conflict_key: str) -> None:
        statements = [
            (
                self._insert_statement(table, cols, conflict_key),
                [[_adapt(r[c]) for c in cols] for r in group],
            )
            for cols, group in group_by_columns(rows)
        ]
        self._write("UPSERT", table, statements)

    def count_where(self, table: str, filter: Filter) -> int:
        where, params = self._where(filter)
        try:
            with self._lock:
                row = self._conn.execute(
                    sql.SQL("SELECT count(*) AS n FROM {}{}").format(sql.Identifier(table), where),
                    params,
                ).fetchone()
        except psycopg.Error as exc:
            raise StoreReadError(f"COUNT {table}: {type(exc).__name__}: {exc}") from exc
        return int(row["n"])


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

def _matches(row: dict[str, Any], filter: Filter) -> bool:
    for column, cond in filter.items():
        op, value = split_condition(cond)
        actual = row.get(column)
        if op == "is" and actual is not value and actual != value:
            return False
        if op == "not_is" and (actual is value or actual == value):
            return False
        if op == "eq" and actual != value:
            return False
        if op == "neq" and (actual is None or actual == value):
            return False
        if op == "in" and actual not in value:
            return False
        if op == "ilike":
            needle = str(value).strip("%").lower()
            if actual is None or needle not in str(actual).lower():
                return False
    return True


def _sort_key(value: Any) -> tuple:
    # NULLs last, like Postgres ascending order
    return (value is None, value if value is not None else 0)


class MemoryStore:
    """In-process tables with integer ids.  Used by tests."""

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self._next_id = 1
        self.write_calls: list[tuple[str, str, int]] = []
        for table, rows in (tables or {}).items():
            for row in rows:
                self._add(table, dict(row))

    def _add(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        if "id" not in row:
            row["id"] = self._next_id
        self._next_id = max(self._next_id, int(row["id"]) + 1)
        self.tables.setdefault(table, []).append(row)
        return row

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    def get(self, table: str, record_id: Any) -> dict[str, Any] | None:
        for row in self.rows(table):
            if row["id"] == record_id:
                return row
        return None

    def close(self) -> None:
        pass

    def query_page(
        self,
        table: str,
        filter: Filter,
        sort: Sort,
        range_start: int,
        range_end: int,
        columns: str = "*",
    ) -> tuple[list[dict[str, Any]], int | None]:
        rows = [r for r in self.rows(table) if _matches(r, filter)]
        for col, asc in reversed(sort):
            rows.sort(key=lambda r: _sort_key(r.get(col)), reverse=not asc)
        page = rows[range_start:range_end + 1]
        if columns.strip() != "*":
            wanted = [c.strip() for c in columns.split(",")]
            page = [{c: r.get(c) for c in wanted} for r in page]
        else:
            page = [dict(r) for r in page]
        return page, len(rows)

    def update_by_id(self, table: str, record_id: Any, fields: dict[str, Any]) -> None:
        self.update_batch(table, [(record_id, fields)])

    def update_batch(self, table: str, updates: list[tuple[Any, dict[str, Any]]]) -> None:
        self.write_calls.append(("update", table, len(updates)))
        for record_id, fields in updates:
            row = self.get(table, record_id)
            if row is not None:
                row.update(fields)

    def insert_batch(self, table: str, rows: list[dict[str, Any]]) -> None:
        self.write_calls.append(("insert", table, len(rows)))
        for row in rows:
            self._add(table, dict(row))

    def upsert_batch(self, table: str, rows: list[dict[str, Any]], conflict_key: str) -> None:
        self.write_calls.append(("upsert", table, len(rows)))
        for row in rows:
            existing = next(
                (r for r in self.rows(table) if r.get(conflict_key) == row[conflict_key]),
                None,
            )
            if existing is None:
                self._add(table, dict(row))
            else:
                existing.update(row)

    def count_where(self, table: str, filter: Filter) -> int:
        return sum(1 for r in self.rows(table) if _matches(r, filter))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def open_store(config: Any) -> Store:
    """Direct database connection when a DSN is configured, REST otherwise."""
    if config.db_dsn:
        log.info("Using direct database connection")
        return PostgresStore.connect(config.db_dsn, timeout=config.timeout_seconds)
    return RestStore(config.store_url, config.service_key, timeout=config.timeout_seconds)
