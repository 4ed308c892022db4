"""
Source-Link Aggregation — summary → source report graph.

Edges point from a summary report to each lower-level report it rolls up.
The graph stays acyclic: linking S as a source of M is refused when M is
already reachable from S by following source links.

Usage:
    from accountability.services.source_links import SourceLinks

    SourceLinks.link_source(summary_id, source_id, "Q3 figures")
    for source in SourceLinks.resolve_sources(summary_id):
        ...
"""

import logging

from accountability.core.exceptions import (
    CycleError,
    DuplicateLinkError,
    NotFoundError,
    ValidationError,
)
from accountability.models import db
from accountability.models.audit import write_audit
from accountability.models.report import Report, ReportSourceLink
from accountability.services.events import resolve_dispatcher
from accountability.services.organization_directory import OrganizationDirectory
from accountability.services.state_machine import (
    REPORT_LIFECYCLE,
    append_history,
    apply_transition,
    lock_document,
)
from accountability.utils.helpers import require_fields

logger = logging.getLogger(__name__)

SUMMARIZABLE_STATUSES = ("approved", "summarized")


def reaches(session, start_report_id, target_report_id):
    """
    True if *target* is reachable from *start* along summary → source edges.

    Iterative DFS; a report reaches itself.
    """
    visited = set()
    stack = [start_report_id]

    while stack:
        current = stack.pop()
        if current == target_report_id:
            return True
        if current in visited:
            continue
        visited.add(current)

        sources = (
            session.query(ReportSourceLink.source_report_id)
            .filter(ReportSourceLink.summary_report_id == current)
            .all()
        )
        for (source_id,) in sources:
            stack.append(source_id)

    return False


class SourceSequence:
    """Directly linked source reports of one summary, in link-creation order.

    Nothing is loaded until iteration; every ``iter()`` re-reads the links,
    so the sequence can be walked any number of times.
    """

    def __init__(self, summary_report_id: int):
        self.summary_report_id = summary_report_id

    def _query(self):
        return (
            db.session.query(Report)
            .join(ReportSourceLink, ReportSourceLink.source_report_id == Report.id)
            .filter(ReportSourceLink.summary_report_id == self.summary_report_id)
            .order_by(ReportSourceLink.id)
        )

    def __iter__(self):
        return iter(self._query().all())

    def __len__(self):
        return self._query().count()

    def __repr__(self):
        return f"<SourceSequence summary={self.summary_report_id}>"


class SourceLinks:
    """Stateless service class for summary/source links."""

    @staticmethod
    def _get_report(report_id: int) -> Report:
        report = db.session.get(Report, report_id)
        if report is None:
            raise NotFoundError(resource="Report", resource_id=report_id)
        return report

    @staticmethod
    def _add_link(summary: Report, source_id: int, annotation, actor_id) -> ReportSourceLink:
        """Validate and stage one link inside the caller's transaction."""
        SourceLinks._get_report(source_id)
        if source_id == summary.id:
            raise CycleError(summary.id, source_id)

        duplicate = ReportSourceLink.query.filter_by(
            summary_report_id=summary.id, source_report_id=source_id,
        ).first()
        if duplicate is not None:
            raise DuplicateLinkError(summary.id, source_id)

        if reaches(db.session, source_id, summary.id):
            raise CycleError(summary.id, source_id)

        link = ReportSourceLink(
            summary_report_id=summary.id,
            source_report_id=source_id,
            annotation=annotation,
        )
        db.session.add(link)
        db.session.flush()
        write_audit(
            entity_type="report", entity_id=summary.id, action="report.link_source",
            actor_user_id=actor_id,
            diff={"source_report_id": source_id, "link_id": link.id},
        )
        return link

    @staticmethod
    def link_source(summary_report_id: int, source_report_id: int,
                    annotation: str | None = None, actor_id: int | None = None) -> ReportSourceLink:
        """
        Record that *source* feeds *summary*.

        Raises:
            NotFoundError, CycleError, DuplicateLinkError
        """
        try:
            summary = lock_document(REPORT_LIFECYCLE, summary_report_id)
            link = SourceLinks._add_link(summary, source_report_id, annotation, actor_id)
            db.session.commit()
        except (CycleError, DuplicateLinkError) as exc:
            db.session.rollback()
            logger.warning("Source link refused: %s", exc,
                           extra={"document_type": "report", "document_id": summary_report_id})
            raise
        except Exception:
            db.session.rollback()
            raise
        logger.info("Report %s linked as source of %s", source_report_id, summary_report_id,
                    extra={"document_type": "report", "document_id": summary_report_id,
                           "actor_id": actor_id})
        return link

    @staticmethod
    def unlink_source(summary_report_id: int, source_report_id: int) -> None:
        link = ReportSourceLink.query.filter_by(
            summary_report_id=summary_report_id, source_report_id=source_report_id,
        ).first()
        if link is None:
            raise NotFoundError(resource="ReportSourceLink")
        db.session.delete(link)
        db.session.commit()

    @staticmethod
    def resolve_sources(summary_report_id: int) -> SourceSequence:
        SourceLinks._get_report(summary_report_id)
        return SourceSequence(summary_report_id)

    @staticmethod
    def list_links(summary_report_id: int) -> list[ReportSourceLink]:
        return (
            ReportSourceLink.query.filter_by(summary_report_id=summary_report_id)
            .order_by(ReportSourceLink.id)
            .all()
        )

    @staticmethod
    def get_summaries_of(report_id: int) -> list[Report]:
        """Summaries that list *report_id* as a direct source."""
        SourceLinks._get_report(report_id)
        return (
            db.session.query(Report)
            .join(ReportSourceLink, ReportSourceLink.summary_report_id == Report.id)
            .filter(ReportSourceLink.source_report_id == report_id)
            .order_by(ReportSourceLink.id)
            .all()
        )

    # ── Roll-up ───────────────────────────────────────────────────────────

    @staticmethod
    def summarizable_reports(committee_id: int) -> list[Report]:
        """Approved (or already summarized) reports from committees below *committee_id*."""
        below = OrganizationDirectory.descendant_committee_ids(committee_id) - {committee_id}
        if not below:
            return []
        return (
            Report.query
            .filter(Report.committee_id.in_(below), Report.status.in_(SUMMARIZABLE_STATUSES))
            .order_by(Report.id)
            .all()
        )

    @staticmethod
    def create_summary(data: dict, source_ids, author_id: int,
                       annotations: dict | None = None, dispatcher=None) -> Report:
        """
        Create a draft summary report linked to every source in one transaction.

        Approved sources move to summarized; sources already summarized stay
        as they are. Any other source status is rejected.
        """
        require_fields(data, "title", "committee_id")
        source_ids = list(dict.fromkeys(source_ids or []))
        if not source_ids:
            raise ValidationError("A summary needs at least one source report",
                                  details={"source_ids": "required"})
        annotations = annotations or {}
        OrganizationDirectory.get_user(author_id)
        OrganizationDirectory.get_committee(data["committee_id"])

        events = []
        try:
            summary = Report(
                title=data["title"].strip(),
                body=data.get("body", ""),
                report_type=data.get("report_type", "summary"),
                status="draft",
                author_id=author_id,
                committee_id=data["committee_id"],
                version=1,
            )
            db.session.add(summary)
            db.session.flush()
            append_history(REPORT_LIFECYCLE, summary, "draft", "draft", author_id,
                           f"Summary created from {len(source_ids)} report(s)")
            write_audit(
                entity_type="report", entity_id=summary.id, action="report.create",
                actor_user_id=author_id,
                diff={"title": summary.title, "source_ids": source_ids},
            )

            for source_id in source_ids:
                source = lock_document(REPORT_LIFECYCLE, source_id)
                if source.status not in SUMMARIZABLE_STATUSES:
                    raise ValidationError(
                        f"Report {source_id} is '{source.status}'; only approved reports can be summarized",
                        details={"source_id": source_id, "status": source.status},
                    )
                SourceLinks._add_link(summary, source_id,
                                      annotations.get(source_id) or annotations.get(str(source_id)),
                                      author_id)
                if source.status == "approved":
                    events.append(apply_transition(
                        REPORT_LIFECYCLE, source, "approved", "summarized", author_id,
                        f"Summarized into report #{summary.id}",
                    ))

            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Summary report %s created from %d source(s)", summary.id, len(source_ids),
                    extra={"document_type": "report", "document_id": summary.id,
                           "actor_id": author_id})
        resolve_dispatcher(dispatcher).dispatch(events)
        return summary

    @staticmethod
    def get_drill_down_tree(report_id: int) -> dict:
        """Nested source tree under a summary; each report appears once per path."""
        root = SourceLinks._get_report(report_id)

        def _node(report, path):
            links = SourceLinks.list_links(report.id)
            children = []
            for link in links:
                if link.source_report_id in path:
                    continue
                children.append({
                    "annotation": link.annotation,
                    **_node(link.source_report, path | {link.source_report_id}),
                })
            return {"report": report.to_dict(), "sources": children}

        return _node(root, {root.id})

    @staticmethod
    def summarization_depth(report_id: int) -> int:
        """Longest chain of source links below a report (0 for a leaf)."""
        SourceLinks._get_report(report_id)
        memo = {}

        def _depth(rid, path):
            if rid in memo:
                return memo[rid]
            children = [
                sid for (sid,) in db.session.query(ReportSourceLink.source_report_id)
                .filter(ReportSourceLink.summary_report_id == rid).all()
                if sid not in path
            ]
            value = 0 if not children else 1 + max(_depth(c, path | {c}) for c in children)
            memo[rid] = value
            return value

        return _depth(report_id, {report_id})
