"""
Accountability Workflow Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only compliance trail for engine mutations.
"""

import json
from datetime import datetime, timezone

from accountability.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"report", "directive", "committee", "membership"}

AUDIT_ACTIONS = {
    # Report lifecycle
    "report.create",
    "report.transition",
    "report.approve",
    "report.resubmit",
    "report.link_source",
    "report.attach",
    "report.detach",
    # Directive lifecycle
    "directive.issue",
    "directive.transition",
    "directive.forward",
    # Confidentiality
    "confidentiality.mark",
    "confidentiality.unmark",
    "confidentiality.grant",
    "confidentiality.revoke",
    # Organization
    "committee.create",
    "membership.add",
    "membership.end",
}


class AuditLog(db.Model):
    """
    One row per committed mutation.

    ``diff_json`` carries the old → new snapshot for status changes and
    the relevant identifiers for approvals, links, markings and grants.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="report | directive | committee | membership",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="report.transition | report.approve | confidentiality.grant | …",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so the caller's commit
    covers the audit row together with the mutation it records.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log


def audit_trail(entity_type: str, entity_id) -> list[AuditLog]:
    """Return the audit rows of one entity, oldest first."""
    return (
        AuditLog.query
        .filter_by(entity_type=entity_type, entity_id=str(entity_id))
        .order_by(AuditLog.id)
        .all()
    )
