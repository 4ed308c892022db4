"""
StatusHistoryModel — abstract base class for append-only status logs.

Report and Directive each own a history table. Both share:
  - old_status / new_status pair (equal for informational notes)
  - changed_by_id FK to users (RESTRICT: history must keep its actor)
  - changed_at timestamp and free-text comment
  - an update guard: rows are written once and never modified
"""

from datetime import datetime, timezone

from sqlalchemy import event

from accountability.models import db


class StatusHistoryModel(db.Model):
    """Abstract base for *_status_history tables."""
    __abstract__ = True

    id = db.Column(db.Integer, primary_key=True)
    old_status = db.Column(db.String(30), nullable=False)
    new_status = db.Column(db.String(30), nullable=False)
    changed_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    changed_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    comment = db.Column(db.String(2000), nullable=True)

    @property
    def is_transition(self) -> bool:
        """False for notes such as "Report created" where old == new."""
        return self.old_status != self.new_status

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "changed_by_id": self.changed_by_id,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
            "comment": self.comment,
        }


@event.listens_for(StatusHistoryModel, "before_update", propagate=True)
def _reject_history_update(mapper, connection, target):
    raise ValueError(f"{type(target).__name__} rows are append-only")
