"""
Document State Machine — shared transition engine for reports and directives.

A Lifecycle binds a model, its history table and its transition table.
The engine never commits: callers lock the document, run
``apply_transition`` one or more times and commit once, so status,
history and audit rows land in a single transaction.

Sequence per transition:
    lock_document()        SELECT ... FOR UPDATE, refreshed from the DB
    check_precondition()   caller's from_status == stored status
    apply_transition()     compare-and-swap UPDATE + history row + audit row

Usage:
    from accountability.services.state_machine import REPORT_LIFECYCLE, lock_document

    report = lock_document(REPORT_LIFECYCLE, report_id)
    check_precondition(REPORT_LIFECYCLE, report, "submitted")
    event = apply_transition(REPORT_LIFECYCLE, report, "submitted", "approved", actor_id=7)
    db.session.commit()
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from accountability.core.exceptions import (
    IllegalTransitionError,
    NotFoundError,
    StaleStateError,
)
from accountability.models import db
from accountability.models.audit import write_audit
from accountability.models.directive import (
    DIRECTIVE_TRANSITIONS,
    Directive,
    DirectiveStatusHistory,
)
from accountability.models.report import (
    REPORT_TRANSITIONS,
    Report,
    ReportStatusHistory,
)
from accountability.services.events import TransitionCompleted

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lifecycle:
    """Static description of one document type's state machine."""
    document_type: str
    label: str
    model: type
    history_model: type
    history_fk: str
    transitions: dict

    def allowed_targets(self, from_status: str) -> list[str]:
        return list(self.transitions.get(from_status, []))

    def is_edge(self, from_status: str, to_status: str) -> bool:
        return to_status in self.transitions.get(from_status, [])


REPORT_LIFECYCLE = Lifecycle(
    document_type="report",
    label="Report",
    model=Report,
    history_model=ReportStatusHistory,
    history_fk="report_id",
    transitions=REPORT_TRANSITIONS,
)

DIRECTIVE_LIFECYCLE = Lifecycle(
    document_type="directive",
    label="Directive",
    model=Directive,
    history_model=DirectiveStatusHistory,
    history_fk="directive_id",
    transitions=DIRECTIVE_TRANSITIONS,
)


# ── Locking & preconditions ──────────────────────────────────────────────────

def lock_document(lifecycle: Lifecycle, document_id: int):
    """Load a document under a row lock, overwriting any stale identity-map state.

    SQLite ignores FOR UPDATE; its database-level write lock plus the
    compare-and-swap in ``apply_transition`` give the same guarantee.
    """
    stmt = (
        select(lifecycle.model)
        .where(lifecycle.model.id == document_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    doc = db.session.execute(stmt).scalar_one_or_none()
    if doc is None:
        raise NotFoundError(resource=lifecycle.label, resource_id=document_id)
    return doc


def check_precondition(lifecycle: Lifecycle, doc, from_status: str) -> None:
    """Raise StaleStateError when the caller's view of the status is out of date."""
    if doc.status != from_status:
        raise StaleStateError(lifecycle.document_type, doc.id, from_status, doc.status)


def check_edge(lifecycle: Lifecycle, doc, from_status: str, to_status: str,
               allowed: bool | None = None, reason: str | None = None) -> None:
    """Raise IllegalTransitionError unless the move is permitted.

    ``allowed`` overrides the plain table lookup for lifecycles with extra
    rules (skip-approval edges, authority jumps).
    """
    ok = lifecycle.is_edge(from_status, to_status) if allowed is None else allowed
    if not ok:
        raise IllegalTransitionError(
            lifecycle.document_type, doc.id, from_status, to_status, reason,
        )


# ── Mutation ─────────────────────────────────────────────────────────────────

def append_history(lifecycle: Lifecycle, doc, old_status: str, new_status: str,
                   actor_id: int, comment: str | None = None):
    """Append one immutable history row (old == new for informational notes)."""
    entry = lifecycle.history_model(
        old_status=old_status,
        new_status=new_status,
        changed_by_id=actor_id,
        comment=comment,
        **{lifecycle.history_fk: doc.id},
    )
    db.session.add(entry)
    return entry


def apply_transition(lifecycle: Lifecycle, doc, from_status: str, to_status: str,
                     actor_id: int, comment: str | None = None,
                     values: dict | None = None) -> TransitionCompleted:
    """Move *doc* from *from_status* to *to_status* inside the open transaction.

    The UPDATE matches on the expected status, so a concurrent writer that
    got there first leaves zero rows affected and the caller sees
    StaleStateError instead of a double transition.

    Returns the TransitionCompleted event to dispatch after commit.
    """
    now = datetime.now(timezone.utc)
    model = lifecycle.model
    changes = {"status": to_status, "updated_at": now}
    if values:
        changes.update(values)

    result = db.session.execute(
        update(model)
        .where(model.id == doc.id, model.status == from_status)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = db.session.execute(
            select(model.status).where(model.id == doc.id)
        ).scalar_one_or_none()
        raise StaleStateError(lifecycle.document_type, doc.id, from_status, current)

    # Keep the in-session object in step with the row without re-dirtying it
    for key, value in changes.items():
        set_committed_value(doc, key, value)

    append_history(lifecycle, doc, from_status, to_status, actor_id, comment)
    write_audit(
        entity_type=lifecycle.document_type,
        entity_id=doc.id,
        action=f"{lifecycle.document_type}.transition",
        actor_user_id=actor_id,
        diff={"status": {"old": from_status, "new": to_status}, "comment": comment},
    )

    logger.info(
        "%s %s: %s → %s",
        lifecycle.label, doc.id, from_status, to_status,
        extra={
            "document_type": lifecycle.document_type,
            "document_id": doc.id,
            "actor_id": actor_id,
            "old_status": from_status,
            "new_status": to_status,
        },
    )
    return TransitionCompleted(
        document_type=lifecycle.document_type,
        document_id=doc.id,
        old_status=from_status,
        new_status=to_status,
        actor_id=actor_id,
        comment=comment,
        occurred_at=now,
    )


def history_walk_is_valid(lifecycle: Lifecycle, entries, extra_edges=()) -> bool:
    """True when the transition entries (notes skipped) form a walk of the table."""
    extra = set(extra_edges)
    previous_new = None
    for entry in entries:
        if not entry.is_transition:
            continue
        if previous_new is not None and entry.old_status != previous_new:
            return False
        edge = (entry.old_status, entry.new_status)
        if not lifecycle.is_edge(*edge) and edge not in extra:
            return False
        previous_new = entry.new_status
    return True
