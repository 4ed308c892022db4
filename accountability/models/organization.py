"""
Accountability Workflow Engine
Organization domain models.

Models:
    - User:                 person acting on reports and directives
    - Committee:            organizational unit in the four-level hierarchy
    - CommitteeMembership:  user ↔ committee binding with a head/member role

Architecture:
    Committee (top_level) ──1:N──▶ Committee (directors) ──1:N──▶ ... (processes)
    User ──N:M──▶ Committee   (via CommitteeMembership, time-bounded)

A membership is active while ``effective_to`` is NULL. Memberships are
ended, never deleted, so approval records keep a valid history.
"""

from datetime import datetime, timezone

from accountability.models import db


# ── Constants ────────────────────────────────────────────────────────────────

# Ordered from the root downward; a child sits exactly one step below its parent.
HIERARCHY_LEVELS = ("top_level", "directors", "functions", "processes")

COMMITTEE_ROLES = {"head", "member"}

SYSTEM_ROLES = {"user", "chairman", "chairman_office", "system_admin"}


def level_index(level: str) -> int:
    """Return the depth of a hierarchy level (0 = top_level)."""
    return HIERARCHY_LEVELS.index(level)


# ═════════════════════════════════════════════════════════════════════════════
# 1. User
# ═════════════════════════════════════════════════════════════════════════════


class User(db.Model):
    """
    A person who authors reports, issues directives and signs off.

    ``chairman_office_rank`` is only meaningful for chairman_office users:
    1 is the most senior rank, larger numbers are more junior.
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    full_name = db.Column(db.String(150), nullable=False)
    system_role = db.Column(
        db.String(30), nullable=False, default="user",
        comment="user | chairman | chairman_office | system_admin",
    )
    chairman_office_rank = db.Column(
        db.Integer, nullable=True,
        comment="1 = most senior; NULL for users outside the Chairman's Office",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    memberships = db.relationship(
        "CommitteeMembership", back_populates="user", lazy="dynamic",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "system_role": self.system_role,
            "chairman_office_rank": self.chairman_office_rank,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Committee
# ═════════════════════════════════════════════════════════════════════════════


class Committee(db.Model):
    """
    Organizational unit. Exactly one parent (NULL only for the root) and a
    hierarchy level one step below the parent's level.
    """

    __tablename__ = "committees"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    hierarchy_level = db.Column(
        db.String(20), nullable=False,
        comment="top_level | directors | functions | processes",
    )
    parent_committee_id = db.Column(
        db.Integer, db.ForeignKey("committees.id"),
        nullable=True, index=True,
    )
    sector = db.Column(db.String(100), nullable=True)
    description = db.Column(db.String(500), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    parent = db.relationship("Committee", remote_side=[id], back_populates="sub_committees")
    sub_committees = db.relationship("Committee", back_populates="parent", lazy="dynamic")
    memberships = db.relationship(
        "CommitteeMembership", back_populates="committee", lazy="dynamic",
    )

    @property
    def has_parent(self) -> bool:
        return self.parent_committee_id is not None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "hierarchy_level": self.hierarchy_level,
            "parent_committee_id": self.parent_committee_id,
            "sector": self.sector,
            "description": self.description,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Committee {self.id}: {self.name} [{self.hierarchy_level}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. CommitteeMembership
# ═════════════════════════════════════════════════════════════════════════════


class CommitteeMembership(db.Model):
    """Binds a user to a committee. Heads are members with role='head'."""

    __tablename__ = "committee_memberships"
    __table_args__ = (
        db.Index("ix_membership_committee_active", "committee_id", "effective_to"),
        db.Index("ix_membership_user_active", "user_id", "effective_to"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )
    committee_id = db.Column(
        db.Integer, db.ForeignKey("committees.id", ondelete="RESTRICT"), nullable=False,
    )
    role = db.Column(db.String(10), nullable=False, default="member", comment="head | member")
    effective_from = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    effective_to = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="NULL while the membership is active",
    )

    user = db.relationship("User", back_populates="memberships")
    committee = db.relationship("Committee", back_populates="memberships")

    @property
    def is_active(self) -> bool:
        return self.effective_to is None

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "committee_id": self.committee_id,
            "role": self.role,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "effective_to": self.effective_to.isoformat() if self.effective_to else None,
        }

    def __repr__(self):
        return f"<CommitteeMembership user={self.user_id} committee={self.committee_id} {self.role}>"
