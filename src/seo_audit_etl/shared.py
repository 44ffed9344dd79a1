"""seo_audit_etl.shared

Shared utilities used by every import job and maintenance task.
Includes the error taxonomy, RejectWriter, RunCounters and report-writing
support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(Exception):
    """Missing credentials, input file or required headers.  Fatal before any I/O."""


class MalformedRowError(Exception):
    """A data row that cannot be used: wrong field count or missing required field."""

    def __init__(self, line_number: int, reason: str) -> None:
        super().__init__(f"line {line_number}: {reason}")
        self.line_number = line_number
        self.reason = reason


class UnmatchedKeyError(Exception):
    """No existing record for a row's lookup key in an update-style job."""

    def __init__(self, line_number: int, key: tuple) -> None:
        super().__init__(f"line {line_number}: no existing record for key {key!r}")
        self.line_number = line_number
        self.key = key


class StoreError(Exception):
    """Base class for errors reported by the backing store."""


class StoreReadError(StoreError):
    """A read (page fetch / count) failed or timed out."""


class StoreWriteError(StoreError):
    """The store rejected a write call, or the call timed out."""


class OperatorActionError(Exception):
    """An operator action that cannot apply to the target record."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Planning
    rows_processed: int = 0
    rows_matched: int = 0
    rows_skipped: int = 0
    rows_rejected: int = 0
    duplicate_keys: int = 0
    # Writing
    rows_updated: int = 0
    rows_inserted: int = 0
    rows_upserted: int = 0
    chunks_written: int = 0
    chunks_failed: int = 0
    chunks_cancelled: int = 0
    activity_entries: int = 0
    cancelled: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.chunks_failed or self.rows_rejected:
            return "completed_with_errors"
        return "completed"

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["status"] = self.status
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    job: str,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "job": job,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


def format_summary(run_id: str, counters: RunCounters) -> str:
    """One-line end-of-run summary for operators."""
    return (
        f"[{run_id}] Done ({counters.status}): "
        f"{counters.rows_processed} processed, "
        f"{counters.rows_matched} matched, "
        f"{counters.rows_updated} updated, "
        f"{counters.rows_inserted + counters.rows_upserted} inserted/upserted, "
        f"{counters.rows_skipped} skipped, "
        f"{counters.rows_rejected} rejected, "
        f"{counters.chunks_failed} chunk(s) failed"
    )
