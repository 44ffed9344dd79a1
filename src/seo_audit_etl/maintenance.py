"""seo_audit_etl.maintenance

Follow-up tasks run after the backlink and ranking imports.

backfill_missing_toxicity
  Backlink records (issue type 15) the toxicity export did not score get
  the maximum score, so they sort with the critical ones.

enrich_backlink_targets
  For every page backlinks point at (audit_urls.linked_from on issue 15),
  sum the ranking_traffic traffic share of that page and store it with the
  page's top three keywords on every backlink record pointing there.

Both read their input set once, then write through BatchWriter, so chunk
failures are tolerated and counted the same way imports count them.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import defaultdict
from typing import Any, Callable

import click

from seo_audit_etl.batch_writer import BatchWriter
from seo_audit_etl.config import ImportConfig
from seo_audit_etl.key_index import fetch_all_pages
from seo_audit_etl.normalize import url_lookup_key
from seo_audit_etl.reconcile import Instruction, Op
from seo_audit_etl.row_shapes import BACKLINK_ISSUE_TYPE_ID
from seo_audit_etl.shared import RunCounters, format_summary
from seo_audit_etl.store import Store

log = logging.getLogger(__name__)

AUDIT_TABLE = "audit_urls"
RANKING_TABLE = "ranking_traffic"
MAX_TOXICITY = 100
TOP_KEYWORDS = 3
DEFAULT_CHUNK_SIZE = 50

EchoFn = Callable[[str], None]


def _write(
    store: Store,
    config: ImportConfig,
    instructions: list[Instruction],
    counters: RunCounters,
    run_id: str,
    echo: EchoFn,
    cancel_event: threading.Event | None,
) -> None:
    writer = BatchWriter(
        store,
        chunk_size=config.chunk_size or DEFAULT_CHUNK_SIZE,
        max_in_flight=config.max_in_flight,
        cancel_event=cancel_event,
        progress=lambda done, total: echo(f"[{run_id}] {done}/{total}"),
    )
    writer.write(AUDIT_TABLE, instructions).apply_to(counters)


# ---------------------------------------------------------------------------
# Toxicity backfill
# ---------------------------------------------------------------------------

def backfill_missing_toxicity(
    store: Store,
    config: ImportConfig,
    run_id: str | None = None,
    cancel_event: threading.Event | None = None,
    echo: EchoFn = click.echo,
) -> RunCounters:
    run_id = run_id or str(uuid.uuid4())
    counters = RunCounters()
    rows = list(fetch_all_pages(
        store,
        AUDIT_TABLE,
        {"issue_type_id": BACKLINK_ISSUE_TYPE_ID, "toxicity_score": None},
        columns="id,url",
        page_size=config.page_size,
    ))
    counters.rows_processed = counters.rows_matched = len(rows)
    echo(f"[{run_id}] {len(rows)} backlink record(s) without a toxicity score")

    instructions = [
        Instruction(Op.UPDATE, {"toxicity_score": MAX_TOXICITY}, n, record_id=row["id"])
        for n, row in enumerate(rows, start=1)
    ]
    if instructions:
        _write(store, config, instructions, counters, run_id, echo, cancel_event)
    echo(format_summary(run_id, counters))
    return counters


# ---------------------------------------------------------------------------
# Backlink target enrichment
# ---------------------------------------------------------------------------

def _number(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def summarize_keywords(keywords: list[dict[str, Any]]) -> dict[str, Any]:
    """traffic_percentage total and top keywords by traffic for one page."""
    total = sum(_number(k.get("traffic_percentage")) for k in keywords)
    top = sorted(keywords, key=lambda k: _number(k.get("traffic")), reverse=True)
    labels = [f"{k.get('keyword')} (#{k.get('position')})" for k in top[:TOP_KEYWORDS]]
    return {
        "traffic_percentage": round(total, 4),
        "target_keywords": json.dumps(labels, ensure_ascii=False),
    }


def enrich_backlink_targets(
    store: Store,
    config: ImportConfig,
    run_id: str | None = None,
    cancel_event: threading.Event | None = None,
    echo: EchoFn = click.echo,
) -> RunCounters:
    run_id = run_id or str(uuid.uuid4())
    counters = RunCounters()

    targets: dict[str, list[Any]] = defaultdict(list)
    for row in fetch_all_pages(
        store, AUDIT_TABLE, {"issue_type_id": BACKLINK_ISSUE_TYPE_ID},
        columns="id,linked_from", page_size=config.page_size,
    ):
        key = url_lookup_key(row.get("linked_from"))
        if key is not None:
            targets[key].append(row["id"])
    echo(f"[{run_id}] Found {len(targets)} unique backlink target(s)")

    keywords: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in fetch_all_pages(
        store, RANKING_TABLE, {},
        columns="id,url,keyword,position,traffic,traffic_percentage",
        page_size=config.page_size,
    ):
        key = url_lookup_key(row.get("url"))
        if key in targets:
            keywords[key].append(row)

    instructions: list[Instruction] = []
    for n, (key, ids) in enumerate(targets.items(), start=1):
        counters.rows_processed += 1
        if key not in keywords:
            counters.rows_skipped += 1
            continue
        counters.rows_matched += 1
        fields = summarize_keywords(keywords[key])
        instructions.extend(
            Instruction(Op.UPDATE, dict(fields), n, key=(key,), record_id=record_id)
            for record_id in ids
        )

    if instructions:
        _write(store, config, instructions, counters, run_id, echo, cancel_event)
    echo(format_summary(run_id, counters))
    return counters
