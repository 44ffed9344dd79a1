"""seo_audit_etl.cli

One standalone command per import job.  Each takes a single optional
positional PATH (defaulting to the job's demo file) and reads store
credentials from SUPABASE_URL / SUPABASE_SERVICE_KEY.

Exit status is 0 when the run completes, even with rejected rows or
failed chunks (the summary and run report say so).  Only fatal errors
exit 1: missing credentials, missing file or required columns, or an
unreadable existing-record snapshot.

Ctrl-C stops the run at the next chunk boundary.
"""

from __future__ import annotations

import signal
import sys
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

import click

from seo_audit_etl.config import ImportConfig, load_env_files
from seo_audit_etl.jobs import JOBS, ImportJob
from seo_audit_etl.maintenance import backfill_missing_toxicity, enrich_backlink_targets
from seo_audit_etl.pipeline import run_import, validate_headers
from seo_audit_etl.progress import status_counts
from seo_audit_etl.shared import ConfigError, StoreReadError
from seo_audit_etl.store import Store, open_store


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _load_config(run_id: str) -> ImportConfig:
    load_env_files()
    try:
        return ImportConfig.from_env()
    except ConfigError as exc:
        _fatal(run_id, str(exc))


@contextmanager
def _cancel_on_interrupt(run_id: str) -> Iterator[threading.Event]:
    """Turn the first SIGINT into a cancel request; the second one aborts."""
    cancel = threading.Event()

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        click.echo(f"[{run_id}] Interrupt: stopping after the current chunk", err=True)
        cancel.set()

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # not the main thread (e.g. embedded runners); no handler
        yield cancel
        return
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _with_store(run_id: str, config: ImportConfig, fn: Callable[[Store], None]) -> None:
    try:
        store = open_store(config)
    except StoreReadError as exc:
        _fatal(run_id, str(exc))
    try:
        fn(store)
    except ConfigError as exc:
        _fatal(run_id, str(exc))
    except StoreReadError as exc:
        _fatal(run_id, f"could not read existing records: {exc}")
    finally:
        store.close()


def run_job(job: ImportJob, path: str) -> None:
    run_id = str(uuid.uuid4())
    config = _load_config(run_id)
    csv_path = Path(path)
    try:
        validate_headers(job, csv_path)
    except ConfigError as exc:
        _fatal(run_id, str(exc))

    def go(store: Store) -> None:
        with _cancel_on_interrupt(run_id) as cancel:
            run_import(job, csv_path, store, config, run_id=run_id, cancel_event=cancel)

    _with_store(run_id, config, go)


def _import_command(job_name: str, help_text: str) -> click.Command:
    job = JOBS[job_name]

    @click.command(help=help_text)
    @click.argument("path", required=False, default=job.default_path, type=click.Path())
    def command(path: str) -> None:
        run_job(job, path)

    return command


import_issues = _import_command(
    "issues", "Load issue rows (issue_type_id,url,linked_from) into audit_urls.")
import_backlinks = _import_command(
    "backlinks", "Enrich backlink records with toxicity and authority scores.")
import_deep_audit = _import_command(
    "deep_audit", "Enrich crawled URLs with crawler metrics (EU number format).")
import_traffic = _import_command(
    "traffic", "Enrich crawled URLs with their share of total traffic.")
import_refdomains = _import_command(
    "refdomains", "Upsert referring domains by domain.")
import_ranking = _import_command(
    "ranking", "Append keyword ranking snapshots; market taken from the file name.")
import_backlink_urls = _import_command(
    "backlink_urls", "Append backlink URLs from a UTF-16LE tab-separated export.")
import_redirects = _import_command(
    "redirects", "Apply a redirect mapping file to existing audit URLs.")


@click.command()
def backfill_toxicity() -> None:
    """Give unscored backlink records the maximum toxicity score."""
    run_id = str(uuid.uuid4())
    config = _load_config(run_id)

    def go(store: Store) -> None:
        with _cancel_on_interrupt(run_id) as cancel:
            backfill_missing_toxicity(store, config, run_id=run_id, cancel_event=cancel)

    _with_store(run_id, config, go)


@click.command()
def enrich_targets() -> None:
    """Copy ranking traffic and top keywords onto backlink target records."""
    run_id = str(uuid.uuid4())
    config = _load_config(run_id)

    def go(store: Store) -> None:
        with _cancel_on_interrupt(run_id) as cancel:
            enrich_backlink_targets(store, config, run_id=run_id, cancel_event=cancel)

    _with_store(run_id, config, go)


@click.command()
@click.argument("issue_type_id", required=False, type=int)
def progress(issue_type_id: int | None) -> None:
    """Print pending / fixed / ignored counts, optionally for one issue type."""
    run_id = str(uuid.uuid4())
    config = _load_config(run_id)

    def go(store: Store) -> None:
        p = status_counts(store, issue_type_id)
        scope = "all issue types" if issue_type_id is None else f"issue type {issue_type_id}"
        click.echo(
            f"{scope}: {p.total} total, {p.pending} pending, {p.fixed} fixed, "
            f"{p.ignored} ignored ({p.percent_fixed}% fixed)"
        )

    _with_store(run_id, config, go)
