"""seo_audit_etl.key_index

Key Resolver: snapshot a table partition into an in-memory key → id index.

The partition is read with query_page in fixed windows ordered by id
ascending until a short page signals exhaustion.  When several existing
records share a normalized key the FIRST one seen (lowest id) wins; the
others are recorded in ``KeyIndex.duplicates`` and logged.  Shapes that
fan out (redirect mappings) read all of them back via ``lookup_all``.

The snapshot is not refreshed during a run.  A failed page read raises
StoreReadError: an incomplete index would turn real matches into
"unmatched" skips, so the run must stop instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from seo_audit_etl.store import Filter, Store

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000


@dataclass
class KeyIndex:
    ids: dict[tuple, Any] = field(default_factory=dict)
    records: dict[Any, dict[str, Any]] = field(default_factory=dict)
    # key -> ids that lost to the first-seen record
    duplicates: dict[tuple, list[Any]] = field(default_factory=dict)
    scanned: int = 0
    unkeyed: int = 0

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, key: tuple) -> bool:
        return key in self.ids

    def lookup(self, key: tuple | None) -> Any | None:
        if key is None:
            return None
        return self.ids.get(key)

    def lookup_all(self, key: tuple | None) -> list[Any]:
        """Every id sharing *key*, first-seen first."""
        if key is None or key not in self.ids:
            return []
        return [self.ids[key]] + self.duplicates.get(key, [])

    def record(self, record_id: Any) -> dict[str, Any] | None:
        return self.records.get(record_id)

    def add(self, key: tuple | None, row: dict[str, Any]) -> None:
        self.scanned += 1
        if key is None:
            self.unkeyed += 1
            return
        record_id = row["id"]
        if key in self.ids:
            self.duplicates.setdefault(key, []).append(record_id)
            return
        self.ids[key] = record_id
        self.records[record_id] = row


def fetch_all_pages(
    store: Store,
    table: str,
    filter: Filter,
    columns: str = "*",
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Iterator[dict[str, Any]]:
    """Yield every row of *table* matching *filter*, ordered by id ascending."""
    start = 0
    while True:
        rows, _total = store.query_page(
            table, filter, [("id", True)], start, start + page_size - 1, columns
        )
        yield from rows
        if len(rows) < page_size:
            return
        start += page_size


def build_key_index(
    store: Store,
    table: str,
    partition_filter: Filter,
    key_columns: list[str],
    key_fn: Callable[[dict[str, Any]], tuple | None],
    page_size: int = DEFAULT_PAGE_SIZE,
    fan_out: bool = False,
) -> KeyIndex:
    """Read the whole partition and index it by ``key_fn(row)``.

    *key_columns* are the columns key_fn needs; ``id`` is always fetched.
    With *fan_out* the caller writes to every record of a shared key, so
    shared keys are logged at info level rather than as ignored duplicates.
    """
    cols = ["id"] + [c for c in key_columns if c != "id"]
    index = KeyIndex()
    for row in fetch_all_pages(store, table, partition_filter, ",".join(cols), page_size):
        index.add(key_fn(row), row)

    for key, losers in index.duplicates.items():
        if fan_out:
            log.info("Key %r in %s shared by ids=%s", key, table, index.lookup_all(key))
            continue
        log.warning(
            "Duplicate key %r in %s: keeping id=%s, ignoring ids=%s",
            key, table, index.ids[key], losers,
        )
    log.info(
        "Indexed %d keys from %d %s rows (%d duplicate keys, %d unkeyed)",
        len(index), index.scanned, table, len(index.duplicates), index.unkeyed,
    )
    return index
