"""
Directive Workflow — directive lifecycle and the forwarding graph.

Status moves forward only. Ordinary participants follow DIRECTIVE_TRANSITIONS
one stage at a time; the issuer and users holding a DIRECTIVE_AUTHORITY_ROLES
system role may jump to any later stage (e.g. issuer closing directly).

Forwarding:
    forward(parent_id, data, actor_id) creates a child directive whose
    target committee is the parent's target or one of its descendants.

Closure gate:
    a directive with children reaches closed only after every child is
    closed (ChildrenNotClosedError otherwise). Parents never push status
    down to their children.
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_

from accountability.core.exceptions import (
    ChildrenNotClosedError,
    InvalidForwardingTargetError,
    NotFoundError,
    ValidationError,
)
from accountability.models import db
from accountability.models.audit import write_audit
from accountability.models.directive import (
    DIRECTIVE_PRIORITIES,
    DIRECTIVE_STATUSES,
    DIRECTIVE_TYPES,
    OPEN_FOR_DEADLINE,
    Directive,
    validate_directive_transition,
)
from accountability.models.organization import Committee, level_index
from accountability.services.events import resolve_dispatcher
from accountability.services.organization_directory import OrganizationDirectory
from accountability.services.state_machine import (
    DIRECTIVE_LIFECYCLE,
    append_history,
    apply_transition,
    check_edge,
    check_precondition,
    lock_document,
)
from accountability.utils.helpers import as_utc, parse_datetime, require_fields

logger = logging.getLogger(__name__)

# Timestamp columns stamped when a directive enters these statuses
_STATUS_TIMESTAMPS = {
    "acknowledged": "acknowledged_at",
    "implemented": "implemented_at",
}


class DirectiveWorkflow:
    """Stateless service class for directive operations."""

    # ── Read ──────────────────────────────────────────────────────────────

    @staticmethod
    def get_directive(directive_id: int) -> Directive:
        directive = db.session.get(Directive, directive_id)
        if directive is None:
            raise NotFoundError(resource="Directive", resource_id=directive_id)
        return directive

    @staticmethod
    def open_child_ids(directive_id: int) -> list[int]:
        rows = (
            db.session.query(Directive.id)
            .filter(Directive.parent_directive_id == directive_id, Directive.status != "closed")
            .order_by(Directive.id)
            .all()
        )
        return [r.id for r in rows]

    @staticmethod
    def has_authority(directive: Directive, actor_id: int) -> bool:
        """The issuer, or a user whose system role is an authority role."""
        if actor_id == directive.issuer_id:
            return True
        user = OrganizationDirectory.get_user(actor_id)
        return user.system_role in current_app.config.get(
            "DIRECTIVE_AUTHORITY_ROLES", ("chairman", "system_admin")
        )

    # ── Targeting ─────────────────────────────────────────────────────────

    @staticmethod
    def _ordered_committees(committee_ids) -> list[Committee]:
        ids = list(committee_ids)
        if not ids:
            return []
        committees = Committee.query.filter(Committee.id.in_(ids)).all()
        return sorted(committees, key=lambda c: (level_index(c.hierarchy_level), c.name, c.id))

    @staticmethod
    def _headed_committee_ids(user_id: int) -> set[int]:
        return {
            cid for cid in OrganizationDirectory.committees_of(user_id)
            if OrganizationDirectory.is_head(user_id, cid)
        }

    @staticmethod
    def can_issue(user_id: int) -> bool:
        """Issuer roles, or any user holding an active head seat."""
        user = OrganizationDirectory.get_user(user_id)
        if user.system_role in current_app.config.get("DIRECTIVE_ISSUER_ROLES", ()):
            return True
        return bool(DirectiveWorkflow._headed_committee_ids(user_id))

    @staticmethod
    def targetable_committees(user_id: int) -> list[Committee]:
        """Committees *user_id* may address a new directive to, top level first.

        Issuer roles reach every committee; a head reaches the committees
        they head and everything beneath them.
        """
        user = OrganizationDirectory.get_user(user_id)
        if user.system_role in current_app.config.get("DIRECTIVE_ISSUER_ROLES", ()):
            return DirectiveWorkflow._ordered_committees(
                [r.id for r in db.session.query(Committee.id).all()]
            )
        reachable = set()
        for committee_id in DirectiveWorkflow._headed_committee_ids(user_id):
            reachable |= OrganizationDirectory.descendant_committee_ids(committee_id)
        return DirectiveWorkflow._ordered_committees(reachable)

    @staticmethod
    def forwardable_committees(directive_id: int) -> list[Committee]:
        """Committees ``forward`` would accept for this directive; none once it is closed."""
        directive = DirectiveWorkflow.get_directive(directive_id)
        if directive.is_closed:
            return []
        return DirectiveWorkflow._ordered_committees(
            OrganizationDirectory.descendant_committee_ids(directive.target_committee_id)
        )

    # ── Issue ─────────────────────────────────────────────────────────────

    @staticmethod
    def _validate_payload(data: dict) -> dict:
        directive_type = data.get("directive_type", "instruction")
        if directive_type not in DIRECTIVE_TYPES:
            raise ValidationError(f"Unknown directive_type '{directive_type}'",
                                  details={"directive_type": directive_type})
        priority = data.get("priority", "normal")
        if priority not in DIRECTIVE_PRIORITIES:
            raise ValidationError(f"Unknown priority '{priority}'", details={"priority": priority})
        return {
            "directive_type": directive_type,
            "priority": priority,
            "deadline": parse_datetime(data.get("deadline")),
        }

    @staticmethod
    def issue_directive(data: dict, issuer_id: int) -> Directive:
        """Create a root directive in issued with a "Directive issued" note."""
        require_fields(data, "title", "target_committee_id")
        fields = DirectiveWorkflow._validate_payload(data)
        OrganizationDirectory.get_user(issuer_id)
        OrganizationDirectory.get_committee(data["target_committee_id"])
        if data.get("target_user_id") is not None:
            OrganizationDirectory.get_user(data["target_user_id"])

        try:
            directive = Directive(
                title=data["title"].strip(),
                body=data.get("body", ""),
                status="issued",
                issuer_id=issuer_id,
                target_committee_id=data["target_committee_id"],
                target_user_id=data.get("target_user_id"),
                related_report_id=data.get("related_report_id"),
                **fields,
            )
            db.session.add(directive)
            db.session.flush()
            append_history(DIRECTIVE_LIFECYCLE, directive, "issued", "issued", issuer_id,
                           "Directive issued")
            write_audit(
                entity_type="directive", entity_id=directive.id, action="directive.issue",
                actor_user_id=issuer_id,
                diff={"title": directive.title,
                      "target_committee_id": directive.target_committee_id},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Directive issued: %s", directive.title,
                    extra={"document_type": "directive", "document_id": directive.id,
                           "actor_id": issuer_id, "committee_id": directive.target_committee_id})
        return directive

    # ── Transitions ───────────────────────────────────────────────────────

    @staticmethod
    def request_transition(directive_id: int, from_status: str, to_status: str, actor_id: int,
                           comment: str | None = None, dispatcher=None) -> Directive:
        """
        Move a directive forward.

        Raises:
            StaleStateError, IllegalTransitionError, ChildrenNotClosedError, NotFoundError
        """
        if to_status not in DIRECTIVE_STATUSES:
            raise ValidationError(f"Unknown directive status '{to_status}'",
                                  details={"to_status": to_status})
        try:
            directive = lock_document(DIRECTIVE_LIFECYCLE, directive_id)
            check_precondition(DIRECTIVE_LIFECYCLE, directive, from_status)
            authority = DirectiveWorkflow.has_authority(directive, actor_id)
            check_edge(
                DIRECTIVE_LIFECYCLE, directive, from_status, to_status,
                allowed=validate_directive_transition(from_status, to_status, allow_jump=authority),
                reason=None if authority else "skipping stages requires issuer or authority role",
            )
            if to_status == "closed":
                open_children = DirectiveWorkflow.open_child_ids(directive.id)
                if open_children:
                    raise ChildrenNotClosedError(directive.id, open_children)

            now = datetime.now(timezone.utc)
            values = {}
            start = DIRECTIVE_STATUSES.index(from_status) + 1
            for status in DIRECTIVE_STATUSES[start:DIRECTIVE_STATUSES.index(to_status) + 1]:
                column = _STATUS_TIMESTAMPS.get(status)
                if column and getattr(directive, column) is None:
                    values[column] = now

            event = apply_transition(DIRECTIVE_LIFECYCLE, directive, from_status, to_status,
                                     actor_id, comment, values)
            db.session.commit()
        except ChildrenNotClosedError as exc:
            db.session.rollback()
            logger.warning("Closure blocked for directive %s by %d open child(ren)",
                           directive_id, len(exc.open_child_ids),
                           extra={"document_type": "directive", "document_id": directive_id,
                                  "actor_id": actor_id})
            raise
        except Exception:
            db.session.rollback()
            raise
        resolve_dispatcher(dispatcher).dispatch([event])
        return directive

    @staticmethod
    def _step(directive_id, to_status, actor_id, comment=None, dispatcher=None):
        current = DirectiveWorkflow.get_directive(directive_id).status
        return DirectiveWorkflow.request_transition(directive_id, current, to_status, actor_id,
                                                    comment, dispatcher)

    @staticmethod
    def mark_delivered(directive_id, actor_id, comment=None, dispatcher=None):
        return DirectiveWorkflow._step(directive_id, "delivered", actor_id, comment, dispatcher)

    @staticmethod
    def acknowledge(directive_id, actor_id, comment=None, dispatcher=None):
        return DirectiveWorkflow._step(directive_id, "acknowledged", actor_id, comment, dispatcher)

    @staticmethod
    def start_progress(directive_id, actor_id, comment=None, dispatcher=None):
        return DirectiveWorkflow._step(directive_id, "in_progress", actor_id, comment, dispatcher)

    @staticmethod
    def mark_implemented(directive_id, actor_id, comment=None, dispatcher=None):
        return DirectiveWorkflow._step(directive_id, "implemented", actor_id, comment, dispatcher)

    @staticmethod
    def verify(directive_id, actor_id, comment=None, dispatcher=None):
        return DirectiveWorkflow._step(directive_id, "verified", actor_id, comment, dispatcher)

    @staticmethod
    def close(directive_id, actor_id, comment=None, dispatcher=None):
        return DirectiveWorkflow._step(directive_id, "closed", actor_id, comment, dispatcher)

    # ── Forwarding ────────────────────────────────────────────────────────

    @staticmethod
    def forward(parent_directive_id: int, data: dict, actor_id: int) -> Directive:
        """
        Re-issue a directive to the parent's target committee or one below it.

        Unset fields are copied from the parent; ``forwarding_annotation``
        carries the forwarder's note.

        Raises:
            InvalidForwardingTargetError, NotFoundError, ValidationError
        """
        require_fields(data, "target_committee_id")
        target_id = data["target_committee_id"]
        parent = DirectiveWorkflow.get_directive(parent_directive_id)
        OrganizationDirectory.get_committee(target_id)

        if parent.is_closed:
            raise InvalidForwardingTargetError(parent.id, target_id, "the parent directive is closed")
        if not OrganizationDirectory.is_descendant(target_id, parent.target_committee_id):
            raise InvalidForwardingTargetError(
                parent.id, target_id,
                f"committee {target_id} is not within committee {parent.target_committee_id}",
            )
        if data.get("target_user_id") is not None:
            OrganizationDirectory.get_user(data["target_user_id"])

        fields = DirectiveWorkflow._validate_payload({
            "directive_type": data.get("directive_type", parent.directive_type),
            "priority": data.get("priority", parent.priority),
            "deadline": data.get("deadline", parent.deadline),
        })
        created_at = max(datetime.now(timezone.utc), as_utc(parent.created_at))

        try:
            child = Directive(
                title=data.get("title") or parent.title,
                body=data.get("body", parent.body),
                status="issued",
                issuer_id=actor_id,
                target_committee_id=target_id,
                target_user_id=data.get("target_user_id"),
                related_report_id=parent.related_report_id,
                parent_directive_id=parent.id,
                forwarding_annotation=data.get("forwarding_annotation"),
                is_confidential=parent.is_confidential,
                created_at=created_at,
                **fields,
            )
            db.session.add(child)
            db.session.flush()
            append_history(DIRECTIVE_LIFECYCLE, child, "issued", "issued", actor_id,
                           f"Forwarded from directive #{parent.id}")
            write_audit(
                entity_type="directive", entity_id=child.id, action="directive.forward",
                actor_user_id=actor_id,
                diff={"parent_directive_id": parent.id, "target_committee_id": target_id},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Directive %s forwarded as %s", parent.id, child.id,
                    extra={"document_type": "directive", "document_id": child.id,
                           "actor_id": actor_id, "committee_id": target_id})
        return child

    @staticmethod
    def on_transition_completed(event) -> None:
        """Forwarding-graph subscriber: tell the parent's issuer when a child closes."""
        if getattr(event, "document_type", None) != "directive" or event.new_status != "closed":
            return
        child = db.session.get(Directive, event.document_id)
        if child is None or child.parent is None:
            return
        from accountability.services.notification import NotificationService
        NotificationService.notify_child_directive_closed(child.parent, child)

    @staticmethod
    def get_root(directive_id: int) -> Directive:
        directive = DirectiveWorkflow.get_directive(directive_id)
        seen = {directive.id}
        while directive.parent is not None and directive.parent.id not in seen:
            directive = directive.parent
            seen.add(directive.id)
        return directive

    @staticmethod
    def get_propagation_tree(directive_id: int) -> dict:
        """Whole forwarding tree containing *directive_id*, from its root down.

        Siblings are ordered by target committee level, then creation time.
        """
        root = DirectiveWorkflow.get_root(directive_id)

        def _sort_key(d):
            return (level_index(d.target_committee.hierarchy_level), as_utc(d.created_at), d.id)

        def _node(d, depth):
            return {
                "directive": d.to_dict(),
                "depth": depth,
                "is_focus": d.id == directive_id,
                "children": [_node(c, depth + 1) for c in sorted(d.children, key=_sort_key)],
            }

        return _node(root, 0)

    # ── Queries ───────────────────────────────────────────────────────────

    @staticmethod
    def get_overdue_directives(now=None) -> list[Directive]:
        now = now or datetime.now(timezone.utc)
        candidates = (
            Directive.query
            .filter(Directive.deadline.isnot(None), Directive.status.in_(OPEN_FOR_DEADLINE))
            .order_by(Directive.deadline, Directive.id)
            .all()
        )
        return [d for d in candidates if d.is_overdue(now)]

    @staticmethod
    def get_approaching_deadline_directives(days=None, now=None) -> list[Directive]:
        """Open directives due within the warning window and not yet overdue."""
        now = now or datetime.now(timezone.utc)
        days = days if days is not None else current_app.config.get(
            "DIRECTIVE_DEADLINE_WARNING_DAYS", 3
        )
        horizon = now + timedelta(days=days)
        candidates = (
            Directive.query
            .filter(Directive.deadline.isnot(None), Directive.status.in_(OPEN_FOR_DEADLINE))
            .order_by(Directive.deadline, Directive.id)
            .all()
        )
        return [d for d in candidates if now <= as_utc(d.deadline) <= horizon]

    @staticmethod
    def send_overdue_reminders(now=None) -> int:
        """Notify the recipient of every overdue directive; returns the count."""
        from accountability.services.notification import NotificationService
        overdue = DirectiveWorkflow.get_overdue_directives(now)
        for directive in overdue:
            NotificationService.notify_directive_overdue(directive)
        if overdue:
            logger.info("Sent %d overdue directive reminder(s)", len(overdue))
        return len(overdue)

    @staticmethod
    def directives_for_user(user_id: int) -> list[Directive]:
        """Directives issued by, addressed to, or targeting a committee of the user."""
        committee_ids = OrganizationDirectory.committees_of(user_id)
        clauses = [Directive.issuer_id == user_id, Directive.target_user_id == user_id]
        if committee_ids:
            clauses.append(Directive.target_committee_id.in_(committee_ids))
        return Directive.query.filter(or_(*clauses)).order_by(Directive.id).all()

    @staticmethod
    def directive_stats(committee_id=None, now=None) -> dict:
        q = db.session.query(Directive.status, db.func.count(Directive.id))
        if committee_id is not None:
            q = q.filter(Directive.target_committee_id == committee_id)
        counts = dict(q.group_by(Directive.status).all())
        by_status = {s: counts.get(s, 0) for s in DIRECTIVE_STATUSES}
        overdue = [
            d for d in DirectiveWorkflow.get_overdue_directives(now)
            if committee_id is None or d.target_committee_id == committee_id
        ]
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "overdue": len(overdue),
        }

    @staticmethod
    def close_blockers(directive_id: int) -> list[int]:
        """Ids of open children that block closing *directive_id*."""
        DirectiveWorkflow.get_directive(directive_id)
        return DirectiveWorkflow.open_child_ids(directive_id)

