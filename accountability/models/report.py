"""
Accountability Workflow Engine
Report domain models.

Models:
    - Report:               versioned bottom-up accountability document
    - ReportStatusHistory:  append-only status log (owned by Report)
    - ReportApproval:       one sign-off per (report, approving member)
    - ReportSourceLink:     summary → source edge for roll-up reporting
    - Attachment:           file reference owned by a Report

Architecture:
    Committee ──1:N──▶ Report ──1:N──▶ ReportStatusHistory
                       Report ──1:N──▶ ReportApproval
                       Report ──1:N──▶ Attachment
                       Report ──N:M──▶ Report   (via ReportSourceLink, summary → source)
                       Report ──0..1──▶ Report  (original_report_id revision chain)

Lifecycle states:
    draft → submitted → approved → summarized
    submitted → feedback_requested → submitted   (as a new version)
    draft → approved                             (skip_approvals only)
"""

from datetime import datetime, timezone

from accountability.models import db
from accountability.models.base import StatusHistoryModel


# ── Constants ────────────────────────────────────────────────────────────────

REPORT_STATUSES = ("draft", "submitted", "feedback_requested", "approved", "summarized")

REPORT_TYPES = {"detailed", "summary", "executive_summary"}

REPORT_TRANSITIONS = {
    "draft":              ["submitted", "approved"],
    "submitted":          ["approved", "feedback_requested"],
    "feedback_requested": ["submitted"],
    "approved":           ["summarized"],
    "summarized":         [],
}

# Edges that only exist for reports flagged skip_approvals
SKIP_APPROVAL_EDGES = {("draft", "approved")}


def validate_report_transition(old_status, new_status, skip_approvals=False):
    """Return True if the Report status transition is an edge of the table."""
    if (old_status, new_status) in SKIP_APPROVAL_EDGES and not skip_approvals:
        return False
    return new_status in REPORT_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Report
# ═════════════════════════════════════════════════════════════════════════════


class Report(db.Model):
    """
    Accountability report owned by a committee.

    Created in draft by its author and only mutated through legal
    transitions. Reports are archived (summarized), never deleted. A
    resubmission after feedback is a new row whose original_report_id
    points at the fed-back version.
    """

    __tablename__ = "reports"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")
    report_type = db.Column(
        db.String(30), nullable=False, default="detailed",
        comment="detailed | summary | executive_summary",
    )
    status = db.Column(
        db.String(30), nullable=False, default="draft",
        comment="draft | submitted | feedback_requested | approved | summarized",
    )

    author_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    committee_id = db.Column(
        db.Integer, db.ForeignKey("committees.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )

    is_confidential = db.Column(db.Boolean, nullable=False, default=False)
    skip_approvals = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Bypass collective sign-off; any authorized actor may approve directly",
    )

    version = db.Column(db.Integer, nullable=False, default=1)
    original_report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id"),
        nullable=True, index=True,
        comment="Previous version that received feedback; NULL for first versions",
    )

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        onupdate=lambda: datetime.now(timezone.utc),
    )

    author = db.relationship("User", foreign_keys=[author_id])
    committee = db.relationship("Committee", foreign_keys=[committee_id])
    original_report = db.relationship(
        "Report", remote_side=[id], foreign_keys=[original_report_id],
        back_populates="revisions",
    )
    revisions = db.relationship(
        "Report", foreign_keys=[original_report_id], back_populates="original_report",
        lazy="dynamic",
    )

    # Owned collections cascade with the report
    status_history = db.relationship(
        "ReportStatusHistory", back_populates="report",
        cascade="all, delete-orphan",
        order_by="ReportStatusHistory.id",
    )
    approvals = db.relationship(
        "ReportApproval", back_populates="report",
        cascade="all, delete-orphan",
        order_by="ReportApproval.id",
    )
    attachments = db.relationship(
        "Attachment", back_populates="report",
        cascade="all, delete-orphan",
    )
    source_links = db.relationship(
        "ReportSourceLink", foreign_keys="ReportSourceLink.summary_report_id",
        back_populates="summary_report", cascade="all, delete-orphan",
        order_by="ReportSourceLink.id",
    )
    summary_links = db.relationship(
        "ReportSourceLink", foreign_keys="ReportSourceLink.source_report_id",
        back_populates="source_report", passive_deletes=True,
    )

    @property
    def is_revision(self) -> bool:
        """True when this report supersedes an earlier fed-back version."""
        return self.original_report_id is not None

    @property
    def is_editable(self) -> bool:
        return self.status == "draft"

    def to_dict(self, include_history=False):
        data = {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "report_type": self.report_type,
            "status": self.status,
            "author_id": self.author_id,
            "committee_id": self.committee_id,
            "is_confidential": self.is_confidential,
            "skip_approvals": self.skip_approvals,
            "version": self.version,
            "original_report_id": self.original_report_id,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_history:
            data["status_history"] = [h.to_dict() for h in self.status_history]
            data["approvals"] = [a.to_dict() for a in self.approvals]
        return data

    def __repr__(self):
        return f"<Report {self.id}: v{self.version} {self.title[:40]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ReportStatusHistory
# ═════════════════════════════════════════════════════════════════════════════


class ReportStatusHistory(StatusHistoryModel):
    """Append-only status log entry for a report."""

    __tablename__ = "report_status_history"

    report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    report = db.relationship("Report", back_populates="status_history")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["report_id"] = self.report_id
        return data

    def __repr__(self):
        return f"<ReportStatusHistory report={self.report_id} {self.old_status}→{self.new_status}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. ReportApproval
# ═════════════════════════════════════════════════════════════════════════════


class ReportApproval(db.Model):
    """
    One member's sign-off on a submitted report.

    The unique constraint is the last line of defence against two
    concurrent approvals by the same user.
    """

    __tablename__ = "report_approvals"
    __table_args__ = (
        db.UniqueConstraint("report_id", "user_id", name="uq_report_approval_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )
    comment = db.Column(db.String(2000), nullable=True)
    approved_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    report = db.relationship("Report", back_populates="approvals")
    user = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "report_id": self.report_id,
            "user_id": self.user_id,
            "comment": self.comment,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }

    def __repr__(self):
        return f"<ReportApproval report={self.report_id} user={self.user_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. ReportSourceLink
# ═════════════════════════════════════════════════════════════════════════════


class ReportSourceLink(db.Model):
    """Directed summary → source edge. The graph is kept acyclic by the service layer."""

    __tablename__ = "report_source_links"
    __table_args__ = (
        db.UniqueConstraint(
            "summary_report_id", "source_report_id", name="uq_source_link_pair",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    summary_report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    annotation = db.Column(db.String(2000), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    summary_report = db.relationship(
        "Report", foreign_keys=[summary_report_id], back_populates="source_links",
    )
    source_report = db.relationship(
        "Report", foreign_keys=[source_report_id], back_populates="summary_links",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "summary_report_id": self.summary_report_id,
            "source_report_id": self.source_report_id,
            "annotation": self.annotation,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ReportSourceLink {self.summary_report_id} → {self.source_report_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. Attachment
# ═════════════════════════════════════════════════════════════════════════════


class Attachment(db.Model):
    """File reference owned by a report; storage itself is external."""

    __tablename__ = "report_attachments"

    id = db.Column(db.Integer, primary_key=True)
    report_id = db.Column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    file_name = db.Column(db.String(255), nullable=False)
    storage_path = db.Column(db.String(500), nullable=False)
    content_type = db.Column(db.String(100), nullable=True)
    size_bytes = db.Column(db.Integer, nullable=True)
    uploaded_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )
    uploaded_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    report = db.relationship("Report", back_populates="attachments")

    def to_dict(self):
        return {
            "id": self.id,
            "report_id": self.report_id,
            "file_name": self.file_name,
            "storage_path": self.storage_path,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "uploaded_by_id": self.uploaded_by_id,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

    def __repr__(self):
        return f"<Attachment {self.id}: {self.file_name}>"
