"""seo_audit_etl.reconcile

Reconciler / upsert planner.

Turns a stream of SourceRows into an ordered list of write Instructions
plus per-row outcomes:

  matched key (ENRICH, LOAD)  → UPDATE carrying the record id and only the
                                fields the row actually supplied
  unmatched key, ENRICH       → UnmatchedKeyError outcome, counted skipped
  unmatched key, LOAD         → INSERT with the shape's insert defaults
  UPSERT shapes               → UPSERT on the natural key, no index needed
  APPEND shapes               → INSERT for every row
  malformed / missing required field → rejected

A key seen twice in one input is planned once; later rows are counted as
skipped duplicates so each record is touched by at most one row per run.
Fan-out shapes emit one UPDATE per existing record sharing the key.
Planning never touches the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from seo_audit_etl.csv_reader import SourceRow
from seo_audit_etl.key_index import KeyIndex
from seo_audit_etl.row_shapes import MatchMode, ShapeSpec, extract_fields, record_key
from seo_audit_etl.shared import MalformedRowError, UnmatchedKeyError

log = logging.getLogger(__name__)


class Op(Enum):
    UPDATE = "update"
    INSERT = "insert"
    UPSERT = "upsert"


@dataclass
class Instruction:
    op: Op
    fields: dict[str, Any]
    line_number: int
    key: tuple | None = None
    record_id: Any = None
    # activity_log action_type in operator mode
    action: str | None = None

    def sample(self) -> str:
        """Short identification of the row for log lines."""
        if self.key is not None:
            return f"line {self.line_number} key={self.key!r}"
        return f"line {self.line_number}"


@dataclass
class Plan:
    instructions: list[Instruction] = field(default_factory=list)
    processed: int = 0
    matched: int = 0
    skipped: int = 0
    rejected: int = 0
    duplicates: int = 0
    unchanged: int = 0
    unmatched: list[UnmatchedKeyError] = field(default_factory=list)
    # (row as read, reason) for the rejects file
    rejects: list[tuple[dict[str, str], str]] = field(default_factory=list)

    def by_op(self, op: Op) -> list[Instruction]:
        return [i for i in self.instructions if i.op is op]


# ---------------------------------------------------------------------------
# Field selection
# ---------------------------------------------------------------------------

def update_fields(spec: ShapeSpec, record: dict[str, Any]) -> dict[str, Any]:
    """Fields to SET on a matched record.

    Key and partition columns are never rewritten.  Absent values are
    dropped unless the shape declares the field clearable.
    """
    fixed = set(spec.key_fields) | set(spec.partition_filter)
    return {
        k: v for k, v in record.items()
        if k not in fixed and (v is not None or k in spec.clearable)
    }


def insert_fields(spec: ShapeSpec, record: dict[str, Any]) -> dict[str, Any]:
    out = dict(spec.insert_defaults)
    out.update(spec.partition_filter)
    out.update({k: v for k, v in record.items() if v is not None})
    return out


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

def plan_rows(
    rows: Iterable[SourceRow],
    spec: ShapeSpec,
    index: KeyIndex | None = None,
    locale: str = "us",
    mode: MatchMode | None = None,
    static_fields: dict[str, Any] | None = None,
) -> Plan:
    """Plan writes for *rows* against *index*.

    *static_fields* are merged into every extracted record (e.g. the
    market a ranking export belongs to).  ENRICH and LOAD need an index.
    """
    mode = mode or spec.mode
    if mode in (MatchMode.ENRICH, MatchMode.LOAD) and index is None:
        raise ValueError(f"{mode.value} planning needs a key index")

    plan = Plan()
    planned_keys: set[tuple] = set()

    for src in rows:
        plan.processed += 1

        if src.error is not None:
            plan.rejected += 1
            plan.rejects.append((src.as_reject(), src.error.reason))
            log.warning("Rejected %s", src.error)
            continue

        try:
            record = extract_fields(spec, src.fields, src.line_number, locale)
        except MalformedRowError as exc:
            plan.rejected += 1
            plan.rejects.append((src.as_reject(), exc.reason))
            log.warning("Rejected %s", exc)
            continue
        if static_fields:
            record.update(static_fields)

        if mode is MatchMode.APPEND:
            plan.instructions.append(
                Instruction(Op.INSERT, insert_fields(spec, record), src.line_number)
            )
            continue

        key = record_key(spec, record)
        if key is None:
            plan.rejected += 1
            plan.rejects.append((src.as_reject(), "lookup key does not normalize"))
            log.warning("Rejected line %d: lookup key does not normalize", src.line_number)
            continue
        if key in planned_keys:
            plan.skipped += 1
            plan.duplicates += 1
            log.info("Skipped line %d: key %r already planned in this run", src.line_number, key)
            continue
        planned_keys.add(key)

        if mode is MatchMode.UPSERT:
            plan.instructions.append(
                Instruction(Op.UPSERT, insert_fields(spec, record), src.line_number, key)
            )
            continue

        record_id = index.lookup(key)
        if record_id is None:
            if mode is MatchMode.LOAD:
                plan.instructions.append(
                    Instruction(Op.INSERT, insert_fields(spec, record), src.line_number, key)
                )
            else:
                plan.skipped += 1
                plan.unmatched.append(UnmatchedKeyError(src.line_number, key))
            continue

        plan.matched += 1
        fields = update_fields(spec, record)
        if not fields:
            plan.unchanged += 1
            continue
        targets = index.lookup_all(key) if spec.fan_out else [record_id]
        for target in targets:
            plan.instructions.append(
                Instruction(Op.UPDATE, dict(fields), src.line_number, key, target)
            )

    if plan.unmatched:
        log.info(
            "%d row(s) had no existing %s record (first: %s)",
            len(plan.unmatched), spec.table, plan.unmatched[0],
        )
    return plan
