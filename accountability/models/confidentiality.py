"""
Accountability Workflow Engine
Confidentiality domain models.

Models:
    - ConfidentialityMarking:  access-restriction overlay on a report or directive
    - AccessGrant:             per-user exception to a marking

Items are referenced polymorphically by (item_type, item_id) so the same
tables cover reports and directives. At most one marking per item is
active at a time; superseded markings stay as history.
"""

from datetime import datetime, timezone

from accountability.models import db


# ── Constants ────────────────────────────────────────────────────────────────

CONFIDENTIAL_ITEM_TYPES = ("report", "directive")


# ═════════════════════════════════════════════════════════════════════════════
# 1. ConfidentialityMarking
# ═════════════════════════════════════════════════════════════════════════════


class ConfidentialityMarking(db.Model):
    """
    Marks one item confidential.

    ``min_chairman_office_rank`` is an optional rank gate: Chairman's Office
    users with a rank number at or below it may view. The partial unique
    index keeps a single active marking per item.
    """

    __tablename__ = "confidentiality_markings"
    __table_args__ = (
        db.Index(
            "uq_marking_active_item", "item_type", "item_id",
            unique=True,
            sqlite_where=db.text("is_active = 1"),
            postgresql_where=db.text("is_active = true"),
        ),
        db.Index("ix_marking_item", "item_type", "item_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_type = db.Column(db.String(20), nullable=False, comment="report | directive")
    item_id = db.Column(db.Integer, nullable=False)

    marked_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )
    marker_committee_id = db.Column(
        db.Integer, db.ForeignKey("committees.id", ondelete="RESTRICT"), nullable=False,
    )
    marker_committee_level = db.Column(
        db.String(20), nullable=False,
        comment="Hierarchy level of the marker committee at marking time",
    )
    min_chairman_office_rank = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(2000), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    marked_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    marked_by = db.relationship("User", foreign_keys=[marked_by_id])
    marker_committee = db.relationship("Committee", foreign_keys=[marker_committee_id])

    def to_dict(self, include_reason=True):
        data = {
            "id": self.id,
            "item_type": self.item_type,
            "item_id": self.item_id,
            "marked_by_id": self.marked_by_id,
            "marker_committee_id": self.marker_committee_id,
            "marker_committee_level": self.marker_committee_level,
            "min_chairman_office_rank": self.min_chairman_office_rank,
            "is_active": self.is_active,
            "marked_at": self.marked_at.isoformat() if self.marked_at else None,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }
        if include_reason:
            data["reason"] = self.reason
        return data

    def __repr__(self):
        state = "active" if self.is_active else "inactive"
        return f"<ConfidentialityMarking {self.item_type}/{self.item_id} [{state}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. AccessGrant
# ═════════════════════════════════════════════════════════════════════════════


class AccessGrant(db.Model):
    """Explicit per-user visibility exception. One row per (item, grantee)."""

    __tablename__ = "access_grants"
    __table_args__ = (
        db.UniqueConstraint(
            "item_type", "item_id", "granted_to_user_id", name="uq_access_grant_user",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_type = db.Column(db.String(20), nullable=False, comment="report | directive")
    item_id = db.Column(db.Integer, nullable=False)

    granted_to_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    granted_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )
    reason = db.Column(db.String(2000), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    granted_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    granted_to = db.relationship("User", foreign_keys=[granted_to_user_id])
    granted_by = db.relationship("User", foreign_keys=[granted_by_id])

    def to_dict(self):
        return {
            "id": self.id,
            "item_type": self.item_type,
            "item_id": self.item_id,
            "granted_to_user_id": self.granted_to_user_id,
            "granted_by_id": self.granted_by_id,
            "reason": self.reason,
            "is_active": self.is_active,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }

    def __repr__(self):
        return f"<AccessGrant {self.item_type}/{self.item_id} → user {self.granted_to_user_id}>"
