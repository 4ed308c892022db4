"""
Report Workflow — report lifecycle on top of the Document State Machine.

Transitions:
    draft → submitted                 author submits
    submitted → approved              via the Approval Aggregator (quorum)
    draft|submitted → approved        directly, only when skip_approvals is set
    submitted → feedback_requested    a committee member other than the author
    feedback_requested → submitted    resubmission as a new version
    approved → summarized             when rolled up into a summary report

Every committed call writes status, history and audit in one transaction
and dispatches TransitionCompleted after the commit.
"""

import logging
from datetime import datetime, timezone

from accountability.core.exceptions import (
    IllegalTransitionError,
    NotAMemberError,
    NotFoundError,
    ValidationError,
)
from accountability.models import db
from accountability.models.audit import write_audit
from accountability.models.report import (
    REPORT_STATUSES,
    REPORT_TYPES,
    SKIP_APPROVAL_EDGES,
    Attachment,
    Report,
    validate_report_transition,
)
from accountability.services.approval_aggregator import ApprovalAggregator
from accountability.services.events import TransitionCompleted, resolve_dispatcher
from accountability.services.organization_directory import OrganizationDirectory
from accountability.services.state_machine import (
    REPORT_LIFECYCLE,
    append_history,
    apply_transition,
    check_edge,
    check_precondition,
    history_walk_is_valid,
    lock_document,
)
from accountability.utils.helpers import require_fields

logger = logging.getLogger(__name__)


class ReportWorkflow:
    """Stateless service class for report operations."""

    # ── Read ──────────────────────────────────────────────────────────────

    @staticmethod
    def get_report(report_id: int) -> Report:
        report = db.session.get(Report, report_id)
        if report is None:
            raise NotFoundError(resource="Report", resource_id=report_id)
        return report

    @staticmethod
    def list_reports(committee_id=None, status=None, author_id=None) -> list[Report]:
        q = Report.query
        if committee_id is not None:
            q = q.filter_by(committee_id=committee_id)
        if status is not None:
            q = q.filter_by(status=status)
        if author_id is not None:
            q = q.filter_by(author_id=author_id)
        return q.order_by(Report.id).all()

    @staticmethod
    def history_is_valid(report: Report) -> bool:
        return history_walk_is_valid(REPORT_LIFECYCLE, report.status_history, SKIP_APPROVAL_EDGES)

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create_report(data: dict, author_id: int) -> Report:
        """Create a version-1 draft with a "Report created" history note."""
        require_fields(data, "title", "committee_id")
        report_type = data.get("report_type", "detailed")
        if report_type not in REPORT_TYPES:
            raise ValidationError(
                f"Unknown report_type '{report_type}'", details={"report_type": report_type},
            )
        OrganizationDirectory.get_user(author_id)
        OrganizationDirectory.get_committee(data["committee_id"])

        try:
            report = Report(
                title=data["title"].strip(),
                body=data.get("body", ""),
                report_type=report_type,
                status="draft",
                author_id=author_id,
                committee_id=data["committee_id"],
                skip_approvals=bool(data.get("skip_approvals", False)),
                version=1,
            )
            db.session.add(report)
            db.session.flush()
            append_history(REPORT_LIFECYCLE, report, "draft", "draft", author_id, "Report created")
            write_audit(
                entity_type="report", entity_id=report.id, action="report.create",
                actor_user_id=author_id,
                diff={"title": report.title, "committee_id": report.committee_id,
                      "skip_approvals": report.skip_approvals},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Report created: %s", report.title,
                    extra={"document_type": "report", "document_id": report.id,
                           "actor_id": author_id})
        return report

    @staticmethod
    def update_draft(report_id: int, data: dict, user_id: int) -> Report:
        """Edit title/body/type while the report is still a draft."""
        report = ReportWorkflow.get_report(report_id)
        if user_id != report.author_id:
            raise ValidationError("Only the author can edit a draft", details={"user_id": user_id})
        if not report.is_editable:
            raise IllegalTransitionError("report", report.id, report.status, report.status,
                                         "only drafts can be edited")
        if data.get("report_type", report.report_type) not in REPORT_TYPES:
            raise ValidationError(f"Unknown report_type '{data['report_type']}'",
                                  details={"report_type": data["report_type"]})
        changes = {f: data[f] for f in ("title", "body", "report_type") if f in data}
        if "skip_approvals" in data:
            changes["skip_approvals"] = bool(data["skip_approvals"])

        try:
            for field, value in changes.items():
                setattr(report, field, value)
            write_audit(
                entity_type="report", entity_id=report.id, action="report.update",
                actor_user_id=user_id, diff=changes,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Report %s draft updated", report.id,
                    extra={"document_type": "report", "document_id": report.id,
                           "actor_id": user_id})
        return report

    # ── Transitions ───────────────────────────────────────────────────────

    @staticmethod
    def request_transition(report_id: int, from_status: str, to_status: str, actor_id: int,
                           comment: str | None = None, dispatcher=None):
        """
        Generic transition entry point.

        Returns the Report (or, for feedback_requested → submitted, the new
        version; for a quorum-bound approval, the updated report after the
        approval was recorded).

        Raises:
            StaleStateError, IllegalTransitionError, NotAMemberError, NotFoundError
        """
        if to_status not in REPORT_STATUSES:
            raise ValidationError(f"Unknown report status '{to_status}'",
                                  details={"to_status": to_status})

        if from_status == "feedback_requested" and to_status == "submitted":
            return ReportWorkflow.resubmit(report_id, actor_id, comment=comment,
                                           dispatcher=dispatcher)

        if to_status == "approved" and from_status == "submitted":
            report = ReportWorkflow.get_report(report_id)
            if not report.skip_approvals:
                # Status is re-checked under the aggregator's row lock
                ApprovalAggregator.record_approval(report_id, actor_id, comment,
                                                   dispatcher=dispatcher,
                                                   expected_status=from_status)
                db.session.refresh(report)
                return report

        try:
            report = lock_document(REPORT_LIFECYCLE, report_id)
            check_precondition(REPORT_LIFECYCLE, report, from_status)
            check_edge(
                REPORT_LIFECYCLE, report, from_status, to_status,
                allowed=validate_report_transition(from_status, to_status, report.skip_approvals),
            )
            ReportWorkflow._authorize(report, to_status, actor_id)

            values = {}
            if to_status == "submitted":
                values["submitted_at"] = datetime.now(timezone.utc)
            event = apply_transition(REPORT_LIFECYCLE, report, from_status, to_status,
                                     actor_id, comment, values)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        resolve_dispatcher(dispatcher).dispatch([event])
        return report

    @staticmethod
    def _authorize(report: Report, to_status: str, actor_id: int) -> None:
        if to_status == "submitted":
            if actor_id != report.author_id:
                raise IllegalTransitionError("report", report.id, report.status, to_status,
                                             "only the author can submit")
        elif to_status == "feedback_requested":
            if not OrganizationDirectory.is_member(actor_id, report.committee_id):
                raise NotAMemberError(actor_id, report.committee_id)
            if actor_id == report.author_id:
                raise IllegalTransitionError("report", report.id, report.status, to_status,
                                             "the author cannot request feedback on their own report")
        elif to_status == "approved":
            # skip_approvals path: the author or any committee member
            if actor_id != report.author_id and not OrganizationDirectory.is_member(
                actor_id, report.committee_id
            ):
                raise NotAMemberError(actor_id, report.committee_id)

    @staticmethod
    def submit_report(report_id: int, actor_id: int, comment=None, dispatcher=None):
        return ReportWorkflow.request_transition(report_id, "draft", "submitted", actor_id,
                                                 comment, dispatcher)

    @staticmethod
    def request_feedback(report_id: int, actor_id: int, comment: str, dispatcher=None):
        if not comment:
            raise ValidationError("A feedback comment is required", details={"comment": "required"})
        return ReportWorkflow.request_transition(report_id, "submitted", "feedback_requested",
                                                 actor_id, comment, dispatcher)

    @staticmethod
    def resubmit(report_id: int, actor_id: int, data: dict | None = None,
                 comment: str | None = None, dispatcher=None) -> Report:
        """
        Answer feedback with a new version.

        The fed-back report keeps its status; the new row starts in
        submitted with original_report_id pointing back and version + 1.
        """
        data = data or {}
        try:
            original = lock_document(REPORT_LIFECYCLE, report_id)
            check_precondition(REPORT_LIFECYCLE, original, "feedback_requested")
            if actor_id != original.author_id:
                raise IllegalTransitionError("report", original.id, original.status, "submitted",
                                             "only the author can resubmit")
            if original.revisions.first() is not None:
                raise IllegalTransitionError("report", original.id, original.status, "submitted",
                                             "this version was already resubmitted")

            now = datetime.now(timezone.utc)
            revision = Report(
                title=data.get("title", original.title),
                body=data.get("body", original.body),
                report_type=original.report_type,
                status="submitted",
                author_id=original.author_id,
                committee_id=original.committee_id,
                is_confidential=original.is_confidential,
                skip_approvals=original.skip_approvals,
                version=original.version + 1,
                original_report_id=original.id,
                submitted_at=now,
            )
            db.session.add(revision)
            db.session.flush()
            note = comment or f"Resubmitted as version {revision.version} of report #{original.id}"
            append_history(REPORT_LIFECYCLE, revision, "feedback_requested", "submitted",
                           actor_id, note)
            write_audit(
                entity_type="report", entity_id=revision.id, action="report.resubmit",
                actor_user_id=actor_id,
                diff={"original_report_id": original.id, "version": revision.version},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        event = TransitionCompleted(
            document_type="report", document_id=revision.id,
            old_status="feedback_requested", new_status="submitted",
            actor_id=actor_id, comment=note,
        )
        logger.info("Report %s resubmitted as %s (v%s)", report_id, revision.id, revision.version,
                    extra={"document_type": "report", "document_id": revision.id,
                           "actor_id": actor_id, "old_status": "feedback_requested",
                           "new_status": "submitted"})
        resolve_dispatcher(dispatcher).dispatch([event])
        return revision

    @staticmethod
    def approve_directly(report_id: int, actor_id: int, comment=None, dispatcher=None):
        """Approve a skip_approvals report from draft or submitted in one step."""
        report = ReportWorkflow.get_report(report_id)
        return ReportWorkflow.request_transition(report_id, report.status, "approved",
                                                 actor_id, comment, dispatcher)

    # ── Revisions ─────────────────────────────────────────────────────────

    @staticmethod
    def get_revision_chain(report_id: int) -> list[Report]:
        """All versions of a report, oldest first, whichever version is passed."""
        report = ReportWorkflow.get_report(report_id)
        root = report
        seen = {root.id}
        while root.original_report is not None and root.original_report.id not in seen:
            root = root.original_report
            seen.add(root.id)

        chain = [root]
        current = root
        while True:
            nxt = current.revisions.order_by(Report.id).first()
            if nxt is None or nxt.id in {r.id for r in chain}:
                break
            chain.append(nxt)
            current = nxt
        return chain

    # ── Attachments ───────────────────────────────────────────────────────

    @staticmethod
    def add_attachment(report_id: int, data: dict, user_id: int) -> Attachment:
        require_fields(data, "file_name", "storage_path")
        report = ReportWorkflow.get_report(report_id)
        if report.status == "summarized":
            raise IllegalTransitionError("report", report.id, report.status, report.status,
                                         "archived reports cannot change attachments")
        attachment = Attachment(
            report_id=report.id,
            file_name=data["file_name"],
            storage_path=data["storage_path"],
            content_type=data.get("content_type"),
            size_bytes=data.get("size_bytes"),
            uploaded_by_id=user_id,
        )
        try:
            db.session.add(attachment)
            db.session.flush()
            write_audit(entity_type="report", entity_id=report.id, action="report.attach",
                        actor_user_id=user_id,
                        diff={"attachment_id": attachment.id, "file_name": attachment.file_name})
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return attachment

    @staticmethod
    def remove_attachment(report_id: int, attachment_id: int, user_id: int) -> None:
        attachment = db.session.get(Attachment, attachment_id)
        if attachment is None or attachment.report_id != report_id:
            raise NotFoundError(resource="Attachment", resource_id=attachment_id)
        if attachment.report.status == "summarized":
            raise IllegalTransitionError("report", report_id, "summarized", "summarized",
                                         "archived reports cannot change attachments")
        try:
            write_audit(entity_type="report", entity_id=report_id, action="report.detach",
                        actor_user_id=user_id,
                        diff={"attachment_id": attachment.id, "file_name": attachment.file_name})
            db.session.delete(attachment)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    # ── Stats ─────────────────────────────────────────────────────────────

    @staticmethod
    def report_stats(committee_id=None) -> dict:
        """Count reports per status, optionally for one committee."""
        q = db.session.query(Report.status, db.func.count(Report.id))
        if committee_id is not None:
            q = q.filter(Report.committee_id == committee_id)
        counts = dict(q.group_by(Report.status).all())
        by_status = {s: counts.get(s, 0) for s in REPORT_STATUSES}
        return {"total": sum(by_status.values()), "by_status": by_status}
