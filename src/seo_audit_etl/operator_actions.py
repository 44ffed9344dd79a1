"""seo_audit_etl.operator_actions

Single-record write paths used by operators: mark fixed / pending, ignore,
attach a note, set a redirect mapping.

Each action is one UPDATE instruction written through BatchWriter in
operator mode, so every mutation leaves an activity_log entry with the
actor, the before-state and the after-state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from seo_audit_etl.batch_writer import BatchWriter
from seo_audit_etl.normalize import parse_bool, trim
from seo_audit_etl.reconcile import Instruction, Op
from seo_audit_etl.shared import OperatorActionError, StoreWriteError
from seo_audit_etl.store import Store

log = logging.getLogger(__name__)

AUDIT_TABLE = "audit_urls"

STATUS_PENDING = "pending"
STATUS_FIXED = "fixed"
STATUS_IGNORED = "ignored"
STATUSES = (STATUS_PENDING, STATUS_FIXED, STATUS_IGNORED)


def fetch_record(store: Store, record_id: Any) -> dict[str, Any]:
    rows, _ = store.query_page(AUDIT_TABLE, {"id": record_id}, [], 0, 0)
    if not rows:
        raise OperatorActionError(f"{AUDIT_TABLE} id={record_id} not found")
    return rows[0]


def _apply(
    store: Store,
    record_id: Any,
    fields: dict[str, Any],
    actor: str,
    action: str,
) -> dict[str, Any]:
    if not actor:
        raise OperatorActionError("operator actions need an actor")
    writer = BatchWriter(store, chunk_size=1, activity_actor=actor)
    ins = Instruction(Op.UPDATE, fields, line_number=0, record_id=record_id, action=action)
    result = writer.write(AUDIT_TABLE, [ins])
    if result.failures:
        raise StoreWriteError(result.failures[0].error)
    for warning in result.warnings:
        log.warning("%s id=%s: %s", action, record_id, warning)
    log.info("%s id=%s by %s: %s", action, record_id, actor, fields)
    return fields


def toggle_fixed(store: Store, record_id: Any, actor: str) -> dict[str, Any]:
    """fixed → pending, pending → fixed (stamping who and when).

    Ignored records cannot be toggled.
    """
    current = fetch_record(store, record_id)
    status = current.get("status") or STATUS_PENDING
    if status == STATUS_IGNORED:
        raise OperatorActionError(f"id={record_id} is ignored; restore it first")
    if status == STATUS_FIXED:
        fields = {"status": STATUS_PENDING, "fixed_by": None, "fixed_at": None}
    else:
        fields = {
            "status": STATUS_FIXED,
            "fixed_by": actor,
            "fixed_at": datetime.now(timezone.utc),
        }
    return _apply(store, record_id, fields, actor, "toggle_fixed")


def ignore_url(store: Store, record_id: Any, actor: str) -> dict[str, Any]:
    fetch_record(store, record_id)
    return _apply(store, record_id, {"status": STATUS_IGNORED}, actor, "ignore")


def restore_url(store: Store, record_id: Any, actor: str) -> dict[str, Any]:
    """Put an ignored record back to pending."""
    current = fetch_record(store, record_id)
    if current.get("status") != STATUS_IGNORED:
        raise OperatorActionError(f"id={record_id} is not ignored")
    return _apply(store, record_id, {"status": STATUS_PENDING}, actor, "restore")


def add_note(store: Store, record_id: Any, note: str | None, actor: str) -> dict[str, Any]:
    """Replace the record's note; a blank note clears it."""
    fetch_record(store, record_id)
    return _apply(store, record_id, {"notes": trim(note)}, actor, "note")


def update_redirect(
    store: Store,
    record_id: Any,
    destination: str | None,
    verified: bool | str | None,
    actor: str,
) -> dict[str, Any]:
    """Set the redirect mapping.  A blank destination clears it on purpose."""
    fetch_record(store, record_id)
    if isinstance(verified, str):
        verified = parse_bool(verified)
    fields = {
        "redirect_destination": trim(destination),
        "redirect_verified": bool(verified),
    }
    return _apply(store, record_id, fields, actor, "update_redirect")
