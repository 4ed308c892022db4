"""
Accountability Workflow Engine
Notification domain model.

Models:
    - Notification: one inbox row per recipient per committed workflow event

A notification always points back at the report or directive it is about
(``item_type`` / ``item_id``) and, when a person caused it, at that actor.
Rows are written by the post-commit event consumer, never inside the
workflow transaction itself.
"""

from datetime import datetime, timezone

from accountability.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = ("report", "directive", "approval", "confidentiality", "deadline", "system")
# Drives inbox styling: approvals land as success, feedback and overdue as warning
NOTIFICATION_SEVERITIES = ("info", "warning", "success")
NOTIFICATION_ITEM_TYPES = ("report", "directive")


def _in_clause(column, values):
    return f"{column} IN (" + ",".join(f"'{v}'" for v in values) + ")"


class Notification(db.Model):
    """Inbox entry for a single user."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    actor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="User whose action produced the event; NULL for scheduled reminders",
    )
    category = db.Column(db.String(30), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="info")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    item_type = db.Column(db.String(20), nullable=True)
    item_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint(_in_clause("category", NOTIFICATION_CATEGORIES), name="ck_notification_category"),
        db.CheckConstraint(_in_clause("severity", NOTIFICATION_SEVERITIES), name="ck_notification_severity"),
        db.CheckConstraint(
            "item_type IS NULL OR " + _in_clause("item_type", NOTIFICATION_ITEM_TYPES),
            name="ck_notification_item_type",
        ),
        db.Index("idx_notification_inbox", "recipient_id", "is_read"),
        db.Index("idx_notification_item", "item_type", "item_id"),
    )

    @property
    def item_ref(self):
        """``report#12`` style reference, or None for system messages."""
        if not self.item_type:
            return None
        return f"{self.item_type}#{self.item_id}"

    def mark_read(self):
        if not self.is_read:
            self.is_read = True
            self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "actor_id": self.actor_id,
            "category": self.category,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "item_type": self.item_type,
            "item_id": self.item_id,
            "item_ref": self.item_ref,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id} to user {self.recipient_id}: {self.category}>"
