"""
Approval Aggregator — collective sign-off on submitted reports.

Each active member of the owning committee records one approval. After
every new approval the quorum is recomputed inside the same locked
transaction; once every member of the quorum population has approved,
the report moves to approved as the system actor with the comment
"All members approved".

Quorum population:
    active memberships of the owning committee whose role is in
    APPROVAL_QUORUM_ROLES, minus the author when APPROVAL_EXCLUDE_AUTHOR.

Usage:
    from accountability.services.approval_aggregator import ApprovalAggregator

    approval = ApprovalAggregator.record_approval(report_id=12, user_id=5)
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from accountability.core.exceptions import (
    IllegalTransitionError,
    NotAMemberError,
    NotFoundError,
    SelfApprovalError,
)
from accountability.models import db
from accountability.models.audit import write_audit
from accountability.models.report import Report, ReportApproval
from accountability.services.events import resolve_dispatcher
from accountability.services.organization_directory import OrganizationDirectory
from accountability.services.state_machine import (
    REPORT_LIFECYCLE,
    append_history,
    apply_transition,
    check_precondition,
    lock_document,
)
from accountability.utils.helpers import as_utc

logger = logging.getLogger(__name__)

AUTO_APPROVE_COMMENT = "All members approved"
HEAD_FINALIZE_COMMENT = "Finalized by committee head"


class ApprovalAggregator:
    """Stateless service class for report approvals."""

    # ── Quorum ────────────────────────────────────────────────────────────

    @staticmethod
    def quorum_population(report: Report) -> set[int]:
        roles = current_app.config.get("APPROVAL_QUORUM_ROLES", ("head", "member"))
        population = OrganizationDirectory.active_members(report.committee_id, roles)
        if current_app.config.get("APPROVAL_EXCLUDE_AUTHOR", False):
            population.discard(report.author_id)
        return population

    @staticmethod
    def approver_ids(report_id: int) -> set[int]:
        rows = db.session.query(ReportApproval.user_id).filter_by(report_id=report_id).all()
        return {r.user_id for r in rows}

    @staticmethod
    def quorum_reached(report: Report) -> bool:
        """True when the population is non-empty and fully covered by approvals."""
        population = ApprovalAggregator.quorum_population(report)
        return bool(population) and population <= ApprovalAggregator.approver_ids(report.id)

    @staticmethod
    def pending_approvers(report_id: int) -> set[int]:
        report = db.session.get(Report, report_id)
        if report is None:
            raise NotFoundError(resource="Report", resource_id=report_id)
        return ApprovalAggregator.quorum_population(report) - ApprovalAggregator.approver_ids(report_id)

    @staticmethod
    def list_approvals(report_id: int) -> list[ReportApproval]:
        return (
            ReportApproval.query.filter_by(report_id=report_id)
            .order_by(ReportApproval.id)
            .all()
        )

    # ── Record ────────────────────────────────────────────────────────────

    @staticmethod
    def record_approval(report_id: int, user_id: int, comment: str | None = None,
                        dispatcher=None, expected_status: str | None = None) -> ReportApproval:
        """
        Record one member's approval and auto-approve on quorum.

        A repeated call by the same user returns the existing approval and
        writes nothing, so retries never double-count or double-audit.
        ``expected_status`` is checked against the locked row, so a caller
        that read a stale status gets StaleStateError.

        Raises:
            NotFoundError, StaleStateError, IllegalTransitionError (report not
            submitted, or it skips collective approval), NotAMemberError,
            SelfApprovalError
        """
        events = []
        try:
            report = lock_document(REPORT_LIFECYCLE, report_id)

            existing = ReportApproval.query.filter_by(report_id=report_id, user_id=user_id).first()
            if existing is not None:
                db.session.rollback()
                logger.info("Duplicate approval ignored for report %s by user %s",
                            report_id, user_id,
                            extra={"document_type": "report", "document_id": report_id,
                                   "actor_id": user_id})
                return existing

            if expected_status is not None:
                check_precondition(REPORT_LIFECYCLE, report, expected_status)
            if report.status != "submitted":
                raise IllegalTransitionError(
                    "report", report.id, report.status, "approved",
                    "approvals are only recorded on submitted reports",
                )
            if report.skip_approvals:
                raise IllegalTransitionError(
                    "report", report.id, report.status, "approved",
                    "report skips collective approval",
                )
            if not OrganizationDirectory.is_member(user_id, report.committee_id):
                raise NotAMemberError(user_id, report.committee_id)
            if (current_app.config.get("APPROVAL_EXCLUDE_AUTHOR", False)
                    and user_id == report.author_id):
                raise SelfApprovalError(user_id, report.id)

            approval = ReportApproval(report_id=report.id, user_id=user_id, comment=comment)
            db.session.add(approval)
            db.session.flush()

            population = ApprovalAggregator.quorum_population(report)
            approved = ApprovalAggregator.approver_ids(report.id)
            counted = len(population & approved)
            append_history(
                REPORT_LIFECYCLE, report, "submitted", "submitted", user_id,
                f"Approval recorded ({counted} of {len(population)})",
            )
            write_audit(
                entity_type="report", entity_id=report.id, action="report.approve",
                actor_user_id=user_id,
                diff={"approval_id": approval.id, "counted": counted, "quorum": len(population)},
            )

            if population and population <= approved:
                system = OrganizationDirectory.system_actor(
                    current_app.config["SYSTEM_ACTOR_EMAIL"]
                )
                check_precondition(REPORT_LIFECYCLE, report, "submitted")
                events.append(apply_transition(
                    REPORT_LIFECYCLE, report, "submitted", "approved",
                    actor_id=system.id, comment=AUTO_APPROVE_COMMENT,
                ))

            db.session.commit()
        except IntegrityError:
            # Lost a race against the same user's concurrent approval
            db.session.rollback()
            existing = ReportApproval.query.filter_by(report_id=report_id, user_id=user_id).first()
            if existing is None:
                raise
            return existing
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "Approval recorded on report %s by user %s", report_id, user_id,
            extra={"document_type": "report", "document_id": report_id, "actor_id": user_id},
        )
        resolve_dispatcher(dispatcher).dispatch(events)
        return approval

    # ── Head finalize ─────────────────────────────────────────────────────

    @staticmethod
    def can_head_finalize(report: Report, user_id: int, now=None) -> bool:
        """A head may force-approve once the report has waited HEAD_FINALIZE_AFTER_DAYS."""
        if report.status != "submitted" or report.submitted_at is None:
            return False
        if not OrganizationDirectory.is_head(user_id, report.committee_id):
            return False
        days = current_app.config.get("HEAD_FINALIZE_AFTER_DAYS", 3)
        now = now or datetime.now(timezone.utc)
        return as_utc(report.submitted_at) + timedelta(days=days) <= now

    @staticmethod
    def finalize_by_head(report_id: int, user_id: int, comment: str | None = None,
                         dispatcher=None) -> Report:
        """Approve a stalled report on the head's authority without the full quorum."""
        try:
            report = lock_document(REPORT_LIFECYCLE, report_id)
            check_precondition(REPORT_LIFECYCLE, report, "submitted")
            if not OrganizationDirectory.is_head(user_id, report.committee_id):
                raise NotAMemberError(user_id, report.committee_id)
            if not ApprovalAggregator.can_head_finalize(report, user_id):
                raise IllegalTransitionError(
                    "report", report.id, "submitted", "approved",
                    "the head finalize waiting period has not elapsed",
                )
            event = apply_transition(
                REPORT_LIFECYCLE, report, "submitted", "approved",
                actor_id=user_id, comment=comment or HEAD_FINALIZE_COMMENT,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        resolve_dispatcher(dispatcher).dispatch([event])
        return report
