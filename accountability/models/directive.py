"""
Accountability Workflow Engine
Directive domain models.

Models:
    - Directive:               top-down instruction, forwardable down the hierarchy
    - DirectiveStatusHistory:  append-only status log (owned by Directive)

Architecture:
    Committee ──1:N──▶ Directive (target)
    Directive ──1:N──▶ Directive (forwarding tree via parent_directive_id)
    Directive ──1:N──▶ DirectiveStatusHistory

Lifecycle states (monotonic, no regression):
    issued → delivered → acknowledged → in_progress → implemented → verified → closed
"""

from datetime import datetime, timezone

from accountability.models import db
from accountability.models.base import StatusHistoryModel


# ── Constants ────────────────────────────────────────────────────────────────

DIRECTIVE_STATUSES = (
    "issued", "delivered", "acknowledged", "in_progress",
    "implemented", "verified", "closed",
)

DIRECTIVE_PRIORITIES = ("normal", "high", "urgent")

DIRECTIVE_TYPES = {
    "instruction", "corrective_action", "approval", "feedback", "information_notice",
}

# Ordinary edges open to any participant. Actors with authority (the issuer
# or an authority role) may jump to any later status instead.
DIRECTIVE_TRANSITIONS = {
    "issued":       ["delivered", "acknowledged"],
    "delivered":    ["acknowledged"],
    "acknowledged": ["in_progress", "implemented"],
    "in_progress":  ["implemented"],
    "implemented":  ["verified", "closed"],
    "verified":     ["closed"],
    "closed":       [],
}

# Statuses in which a deadline can still be missed
OPEN_FOR_DEADLINE = ("issued", "delivered", "acknowledged", "in_progress", "implemented")


def validate_directive_transition(old_status, new_status, allow_jump=False):
    """Return True if the Directive status transition is valid.

    With ``allow_jump`` any strictly forward move is accepted.
    """
    if new_status in DIRECTIVE_TRANSITIONS.get(old_status, []):
        return True
    if allow_jump and old_status in DIRECTIVE_STATUSES and new_status in DIRECTIVE_STATUSES:
        return DIRECTIVE_STATUSES.index(new_status) > DIRECTIVE_STATUSES.index(old_status)
    return False


# ═════════════════════════════════════════════════════════════════════════════
# 1. Directive
# ═════════════════════════════════════════════════════════════════════════════


class Directive(db.Model):
    """
    Instruction issued to a committee (optionally a specific user).

    Forwarding creates a child directive with parent_directive_id set; a
    child is never older than its parent. A directive with children only
    closes once every child is closed.
    """

    __tablename__ = "directives"
    __table_args__ = (
        db.Index("ix_directive_status_deadline", "status", "deadline"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")
    directive_type = db.Column(
        db.String(30), nullable=False, default="instruction",
        comment="instruction | corrective_action | approval | feedback | information_notice",
    )
    priority = db.Column(db.String(10), nullable=False, default="normal", comment="normal | high | urgent")
    status = db.Column(
        db.String(30), nullable=False, default="issued",
        comment="issued | delivered | acknowledged | in_progress | implemented | verified | closed",
    )

    issuer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    target_committee_id = db.Column(
        db.Integer, db.ForeignKey("committees.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    target_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True, comment="Optional specific recipient inside the target committee",
    )
    related_report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="RESTRICT"),
        nullable=True, comment="Report that prompted this directive",
    )
    parent_directive_id = db.Column(
        db.Integer, db.ForeignKey("directives.id"),
        nullable=True, index=True, comment="Forwarding parent; NULL for root directives",
    )
    forwarding_annotation = db.Column(db.String(2000), nullable=True)

    deadline = db.Column(db.DateTime(timezone=True), nullable=True)
    is_confidential = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        onupdate=lambda: datetime.now(timezone.utc),
    )
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    implemented_at = db.Column(db.DateTime(timezone=True), nullable=True)

    issuer = db.relationship("User", foreign_keys=[issuer_id])
    target_user = db.relationship("User", foreign_keys=[target_user_id])
    target_committee = db.relationship("Committee", foreign_keys=[target_committee_id])
    related_report = db.relationship("Report", foreign_keys=[related_report_id])
    parent = db.relationship(
        "Directive", remote_side=[id], back_populates="children",
    )
    children = db.relationship(
        "Directive", back_populates="parent", order_by="Directive.id",
    )
    status_history = db.relationship(
        "DirectiveStatusHistory", back_populates="directive",
        cascade="all, delete-orphan",
        order_by="DirectiveStatusHistory.id",
    )

    @property
    def has_parent(self) -> bool:
        return self.parent_directive_id is not None

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"

    def is_overdue(self, now=None) -> bool:
        if self.deadline is None or self.status not in OPEN_FOR_DEADLINE:
            return False
        now = now or datetime.now(timezone.utc)
        deadline = self.deadline
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        return deadline < now

    def to_dict(self, include_history=False):
        data = {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "directive_type": self.directive_type,
            "priority": self.priority,
            "status": self.status,
            "issuer_id": self.issuer_id,
            "target_committee_id": self.target_committee_id,
            "target_user_id": self.target_user_id,
            "related_report_id": self.related_report_id,
            "parent_directive_id": self.parent_directive_id,
            "forwarding_annotation": self.forwarding_annotation,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "is_confidential": self.is_confidential,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "implemented_at": self.implemented_at.isoformat() if self.implemented_at else None,
        }
        if include_history:
            data["status_history"] = [h.to_dict() for h in self.status_history]
            data["child_ids"] = [c.id for c in self.children]
        return data

    def __repr__(self):
        return f"<Directive {self.id}: {self.title[:40]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. DirectiveStatusHistory
# ═════════════════════════════════════════════════════════════════════════════


class DirectiveStatusHistory(StatusHistoryModel):
    """Append-only status log entry for a directive."""

    __tablename__ = "directive_status_history"

    directive_id = db.Column(
        db.Integer, db.ForeignKey("directives.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    directive = db.relationship("Directive", back_populates="status_history")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["directive_id"] = self.directive_id
        return data

    def __repr__(self):
        return f"<DirectiveStatusHistory directive={self.directive_id} {self.old_status}→{self.new_status}>"
