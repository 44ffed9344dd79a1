"""seo_audit_etl.pipeline

Runs one import job end to end:

  1. header validation (ConfigError before any store I/O)
  2. key index build for ENRICH / LOAD shapes (StoreReadError is fatal)
  3. streaming read + normalize + plan
  4. rejected rows written to artifacts/rejects/<job>_<run_id>.csv
  5. chunked writes, progress echoed as "[run_id] done/total"
  6. summary line and JSON run report
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import click

from seo_audit_etl.batch_writer import BatchWriter, WriteResult
from seo_audit_etl.config import ImportConfig
from seo_audit_etl.csv_reader import iter_rows, read_header
from seo_audit_etl.jobs import ImportJob
from seo_audit_etl.key_index import KeyIndex, build_key_index
from seo_audit_etl.reconcile import Plan, plan_rows
from seo_audit_etl.row_shapes import MatchMode, record_key
from seo_audit_etl.shared import (
    ConfigError,
    RejectWriter,
    RunCounters,
    format_summary,
    write_run_report,
)
from seo_audit_etl.store import Store

log = logging.getLogger(__name__)

EchoFn = Callable[[str], None]


@dataclass
class ImportResult:
    run_id: str
    counters: RunCounters
    plan: Plan
    write: WriteResult
    index: KeyIndex | None
    rejects_path: Path
    report_path: Path | None


def validate_headers(job: ImportJob, path: Path) -> list[str]:
    header = read_header(path, job.dialect)
    if not header:
        raise ConfigError(f"{path}: file has no header row")
    missing = job.spec.missing_headers(header)
    if missing:
        raise ConfigError(
            f"{path}: missing required column(s) for {job.name}: {', '.join(missing)}"
        )
    return header


def run_import(
    job: ImportJob,
    path: Path,
    store: Store,
    config: ImportConfig,
    run_id: str | None = None,
    cancel_event: threading.Event | None = None,
    echo: EchoFn = click.echo,
    write_report: bool = True,
) -> ImportResult:
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    path = Path(path)
    spec = job.spec
    counters = RunCounters()

    validate_headers(job, path)
    locale = config.number_locale or job.locale
    chunk_size = config.chunk_size or job.chunk_size
    echo(
        f"[{run_id}] Starting {job.name} import from {path} "
        f"(table={spec.table}, chunk_size={chunk_size}, locale={locale})"
    )

    # Key index
    index = None
    if spec.mode in (MatchMode.ENRICH, MatchMode.LOAD):
        index = build_key_index(
            store,
            spec.table,
            spec.partition_filter,
            list(spec.key_fields),
            lambda row: record_key(spec, row),
            page_size=config.page_size,
            fan_out=spec.fan_out,
        )
        counters.duplicate_keys = len(index.duplicates)
        policy = "all updated" if spec.fan_out else "first-seen kept"
        echo(
            f"[{run_id}] Indexed {len(index)} existing {spec.table} records"
            + (f" ({len(index.duplicates)} duplicate keys, {policy})"
               if index.duplicates else "")
        )

    # Plan
    plan = plan_rows(
        iter_rows(path, job.dialect), spec, index, locale,
        static_fields=job.fields_for(path),
    )
    counters.rows_processed = plan.processed
    counters.rows_matched = plan.matched
    counters.rows_skipped = plan.skipped
    counters.rows_rejected = plan.rejected
    if plan.unmatched:
        counters.warnings.append(
            f"{len(plan.unmatched)} unmatched row(s) skipped; first: {plan.unmatched[0]}"
        )
    echo(
        f"[{run_id}] Planned {len(plan.instructions)} write(s) from "
        f"{plan.processed} rows ({plan.skipped} skipped, {plan.rejected} rejected)"
    )

    rejects_path = config.rejects_dir / f"{job.name}_{run_id}.csv"
    rejects = RejectWriter(rejects_path)
    try:
        for row, reason in plan.rejects:
            rejects.write(row, reason)

        # Write
        writer = BatchWriter(
            store,
            chunk_size=chunk_size,
            max_in_flight=config.max_in_flight,
            cancel_event=cancel_event,
            progress=lambda done, total: echo(f"[{run_id}] {done}/{total}"),
        )
        result = writer.write(spec.table, plan.instructions, spec.conflict_key)
        result.apply_to(counters)
    finally:
        rejects.close()

    if result.failures:
        failed = RejectWriter(config.rejects_dir / f"{job.name}_{run_id}_failed_chunks.csv")
        try:
            for failure in result.failures:
                for ins in failure.instructions:
                    failed.write(
                        {
                            "_line": str(ins.line_number),
                            "_chunk": str(failure.index),
                            "_key": "" if ins.key is None else "|".join(ins.key),
                            "_record_id": "" if ins.record_id is None else str(ins.record_id),
                        },
                        failure.error,
                    )
        finally:
            failed.close()

    echo(format_summary(run_id, counters))

    report_path = None
    if write_report:
        report_path = write_run_report(
            run_id,
            started_at,
            job.name,
            {"source_path": str(path), "rejects_path": str(rejects_path)},
            counters,
            report_dir=config.reports_dir,
        )
        echo(f"[{run_id}] Report: {report_path}")

    return ImportResult(
        run_id=run_id,
        counters=counters,
        plan=plan,
        write=result,
        index=index,
        rejects_path=rejects_path,
        report_path=report_path,
    )
