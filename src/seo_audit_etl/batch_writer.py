"""seo_audit_etl.batch_writer

Batch Writer: apply planned Instructions to the store in fixed-size chunks.

  - Instructions are split per op (UPDATE → update_batch, INSERT →
    insert_batch, UPSERT → upsert_batch) into chunks of ``chunk_size``.
    Chunks are numbered from 1 in submission order.
  - A chunk the store rejects (StoreWriteError, timeouts included) is
    logged with its boundaries and a sample key, its rows are counted
    rejected, and the remaining chunks are still attempted.
  - Up to ``max_in_flight`` chunks are written concurrently.  Chunks touch
    disjoint records, so completion order does not matter.
  - ``cancel_event`` is checked before each chunk starts; chunks not yet
    started when it is set are counted cancelled.
  - With ``activity_actor`` set (operator mode) one activity_log entry is
    appended per mutated record.  Bulk imports leave it unset.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from seo_audit_etl.reconcile import Instruction, Op
from seo_audit_etl.shared import RunCounters, StoreError, StoreWriteError
from seo_audit_etl.store import Store

log = logging.getLogger(__name__)

ACTIVITY_TABLE = "activity_log"

ProgressFn = Callable[[int, int], None]


@dataclass
class Chunk:
    index: int
    op: Op
    instructions: list[Instruction]

    @property
    def first_line(self) -> int:
        return self.instructions[0].line_number

    @property
    def last_line(self) -> int:
        return self.instructions[-1].line_number


@dataclass
class ChunkFailure:
    index: int
    op: Op
    size: int
    first_line: int
    last_line: int
    sample: str
    error: str
    instructions: list[Instruction] = field(default_factory=list, repr=False)


@dataclass
class WriteResult:
    updated: int = 0
    inserted: int = 0
    upserted: int = 0
    rejected: int = 0
    chunks_written: int = 0
    chunks_failed: int = 0
    chunks_cancelled: int = 0
    rows_cancelled: int = 0
    activity_entries: int = 0
    cancelled: bool = False
    failures: list[ChunkFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def apply_to(self, counters: RunCounters) -> None:
        counters.rows_updated += self.updated
        counters.rows_inserted += self.inserted
        counters.rows_upserted += self.upserted
        counters.rows_rejected += self.rejected
        counters.chunks_written += self.chunks_written
        counters.chunks_failed += self.chunks_failed
        counters.chunks_cancelled += self.chunks_cancelled
        counters.activity_entries += self.activity_entries
        counters.cancelled = counters.cancelled or self.cancelled
        counters.warnings.extend(self.warnings)


def make_chunks(instructions: list[Instruction], chunk_size: int) -> list[Chunk]:
    """Group by op (first-seen op order), then cut into chunk_size pieces."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    by_op: dict[Op, list[Instruction]] = {}
    for ins in instructions:
        by_op.setdefault(ins.op, []).append(ins)
    chunks: list[Chunk] = []
    for op, group in by_op.items():
        for start in range(0, len(group), chunk_size):
            chunks.append(Chunk(len(chunks) + 1, op, group[start:start + chunk_size]))
    return chunks


class BatchWriter:
    def __init__(
        self,
        store: Store,
        chunk_size: int = 50,
        max_in_flight: int = 1,
        cancel_event: threading.Event | None = None,
        activity_actor: str | None = None,
        progress: ProgressFn | None = None,
    ) -> None:
        self.store = store
        self.chunk_size = chunk_size
        self.max_in_flight = max(1, max_in_flight)
        self.cancel_event = cancel_event or threading.Event()
        self.activity_actor = activity_actor
        self.progress = progress

    # -- public --------------------------------------------------------------

    def write(
        self,
        table: str,
        instructions: list[Instruction],
        conflict_key: str | None = None,
    ) -> WriteResult:
        if any(i.op is Op.UPSERT for i in instructions) and not conflict_key:
            raise ValueError("UPSERT instructions need a conflict_key")

        chunks = make_chunks(instructions, self.chunk_size)
        result = WriteResult()
        total = len(instructions)
        done = 0

        if self.max_in_flight == 1:
            outcomes = (self._run_chunk(table, c, conflict_key) for c in chunks)
            for chunk, outcome in zip(chunks, outcomes):
                done += self._record(result, chunk, outcome)
                self._report(done, total)
        else:
            with ThreadPoolExecutor(max_workers=self.max_in_flight) as pool:
                futures = {
                    pool.submit(self._run_chunk, table, c, conflict_key): c
                    for c in chunks
                }
                for fut in as_completed(futures):
                    done += self._record(result, futures[fut], fut.result())
                    self._report(done, total)

        if result.chunks_cancelled:
            result.cancelled = True
            log.warning(
                "Cancelled: %d chunk(s) / %d row(s) of %s not written",
                result.chunks_cancelled, result.rows_cancelled, table,
            )
        return result

    # -- internals -----------------------------------------------------------

    def _report(self, done: int, total: int) -> None:
        if self.progress is not None:
            self.progress(done, total)

    def _run_chunk(
        self, table: str, chunk: Chunk, conflict_key: str | None
    ) -> tuple[str, Any]:
        """Write one chunk.  Returns ("ok", activity_count), ("failed", error)
        or ("cancelled", None).  Runs on worker threads; never touches the
        shared WriteResult."""
        if self.cancel_event.is_set():
            return "cancelled", None

        before: dict[Any, dict[str, Any]] = {}
        warnings: list[str] = []
        if self.activity_actor and chunk.op is Op.UPDATE:
            before, warn = self._fetch_before(table, chunk)
            if warn:
                warnings.append(warn)

        try:
            if chunk.op is Op.UPDATE:
                self.store.update_batch(
                    table, [(i.record_id, i.fields) for i in chunk.instructions]
                )
            elif chunk.op is Op.INSERT:
                self.store.insert_batch(table, [i.fields for i in chunk.instructions])
            else:
                self.store.upsert_batch(
                    table, [i.fields for i in chunk.instructions], conflict_key
                )
        except StoreWriteError as exc:
            return "failed", exc

        if not self.activity_actor:
            return "ok", (0, warnings)
        written, warn = self._log_activity(table, chunk, before)
        if warn:
            warnings.append(warn)
        return "ok", (written, warnings)

    def _record(self, result: WriteResult, chunk: Chunk, outcome: tuple[str, Any]) -> int:
        status, payload = outcome
        size = len(chunk.instructions)
        if status == "cancelled":
            result.chunks_cancelled += 1
            result.rows_cancelled += size
            return 0
        if status == "failed":
            failure = ChunkFailure(
                index=chunk.index,
                op=chunk.op,
                size=size,
                first_line=chunk.first_line,
                last_line=chunk.last_line,
                sample=chunk.instructions[0].sample(),
                error=str(payload),
                instructions=chunk.instructions,
            )
            result.failures.append(failure)
            result.chunks_failed += 1
            result.rejected += size
            msg = (
                f"chunk {failure.index} ({failure.op.value}, {size} rows, "
                f"lines {failure.first_line}-{failure.last_line}) failed: "
                f"{failure.error}; sample {failure.sample}"
            )
            result.warnings.append(msg)
            log.error(msg)
            return size

        written, warnings = payload
        result.chunks_written += 1
        result.activity_entries += written
        result.warnings.extend(warnings)
        if chunk.op is Op.UPDATE:
            result.updated += size
        elif chunk.op is Op.INSERT:
            result.inserted += size
        else:
            result.upserted += size
        return size

    # -- activity log (operator mode) -----------------------------------------

    def _fetch_before(self, table: str, chunk: Chunk) -> tuple[dict[Any, dict[str, Any]], str | None]:
        ids = [i.record_id for i in chunk.instructions]
        try:
            rows, _ = self.store.query_page(
                table, {"id": ("in", ids)}, [("id", True)], 0, len(ids) - 1
            )
        except StoreError as exc:
            msg = f"chunk {chunk.index}: could not read before-state: {exc}"
            log.warning(msg)
            return {}, msg
        return {r["id"]: r for r in rows}, None

    def _log_activity(
        self, table: str, chunk: Chunk, before: dict[Any, dict[str, Any]]
    ) -> tuple[int, str | None]:
        now = datetime.now(timezone.utc)
        entries = []
        for ins in chunk.instructions:
            prior = before.get(ins.record_id)
            entries.append({
                "actor": self.activity_actor,
                "action_type": ins.action or f"{ins.op.value}_{table}",
                "table_name": table,
                "record_id": None if ins.record_id is None else str(ins.record_id),
                "before_state": (
                    {k: prior.get(k) for k in ins.fields} if prior is not None else None
                ),
                "after_state": ins.fields,
                "created_at": now,
            })
        try:
            self.store.insert_batch(ACTIVITY_TABLE, entries)
        except StoreWriteError as exc:
            # the records themselves were written; only the trail is missing
            msg = f"chunk {chunk.index}: activity log write failed: {exc}"
            log.warning(msg)
            return 0, msg
        return len(entries), None
