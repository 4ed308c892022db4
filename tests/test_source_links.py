"""
Source-link aggregation tests.

Tests cover:
  - Self links, two-node and longer cycles are refused
  - Duplicate links are refused
  - Source resolution order and re-iteration
  - create_summary roll-up (approved → summarized, all-or-nothing)
  - Drill-down tree and depth
"""
import pytest

from accountability.core.exceptions import CycleError, DuplicateLinkError, NotFoundError, ValidationError
from accountability.models import db
from accountability.models.report import Report, ReportSourceLink
from accountability.services.source_links import SourceLinks, reaches
from accountability.services.report_workflow import ReportWorkflow


def _report(org, title, committee=None, skip=True, approve=False):
    report = ReportWorkflow.create_report(
        {"title": title, "committee_id": (committee or org.ops).id, "skip_approvals": skip},
        author_id=org.author.id,
    )
    if approve:
        ReportWorkflow.approve_directly(report.id, org.author.id)
    return db.session.get(Report, report.id)


class TestLinkGraph:
    def test_two_node_cycle_refused(self, org):
        a = _report(org, "A")
        b = _report(org, "B")
        SourceLinks.link_source(a.id, b.id)
        with pytest.raises(CycleError):
            SourceLinks.link_source(b.id, a.id)
        assert ReportSourceLink.query.count() == 1

    def test_self_link_refused(self, org):
        a = _report(org, "A")
        with pytest.raises(CycleError):
            SourceLinks.link_source(a.id, a.id)

    def test_long_cycle_refused(self, org):
        a, b, c = (_report(org, t) for t in "ABC")
        SourceLinks.link_source(a.id, b.id)
        SourceLinks.link_source(b.id, c.id)
        assert reaches(db.session, a.id, c.id)
        with pytest.raises(CycleError):
            SourceLinks.link_source(c.id, a.id)

    def test_diamond_is_allowed(self, org):
        top, left, right, base = (_report(org, t) for t in ("Top", "Left", "Right", "Base"))
        SourceLinks.link_source(top.id, left.id)
        SourceLinks.link_source(top.id, right.id)
        SourceLinks.link_source(left.id, base.id)
        SourceLinks.link_source(right.id, base.id)
        assert len(SourceLinks.get_summaries_of(base.id)) == 2

    def test_duplicate_refused(self, org):
        a = _report(org, "A")
        b = _report(org, "B")
        SourceLinks.link_source(a.id, b.id, "first")
        with pytest.raises(DuplicateLinkError):
            SourceLinks.link_source(a.id, b.id, "again")

    def test_missing_report(self, org):
        a = _report(org, "A")
        with pytest.raises(NotFoundError):
            SourceLinks.link_source(a.id, 9999)

    def test_unlink(self, org):
        a = _report(org, "A")
        b = _report(org, "B")
        SourceLinks.link_source(a.id, b.id)
        SourceLinks.unlink_source(a.id, b.id)
        SourceLinks.link_source(b.id, a.id)
        assert [r.id for r in SourceLinks.resolve_sources(b.id)] == [a.id]


class TestResolveSources:
    def test_order_and_reiteration(self, org):
        summary = _report(org, "Summary")
        second = _report(org, "Second")
        first = _report(org, "First")
        SourceLinks.link_source(summary.id, second.id)
        SourceLinks.link_source(summary.id, first.id)

        sources = SourceLinks.resolve_sources(summary.id)
        assert [r.id for r in sources] == [second.id, first.id]
        # Re-iterating walks the same sequence again
        assert [r.id for r in sources] == [second.id, first.id]
        assert len(sources) == 2

    def test_sequence_sees_later_links(self, org):
        summary = _report(org, "Summary")
        a = _report(org, "A")
        sources = SourceLinks.resolve_sources(summary.id)
        assert list(sources) == []
        SourceLinks.link_source(summary.id, a.id)
        assert [r.id for r in sources] == [a.id]


class TestCreateSummary:
    def test_roll_up(self, org):
        s1 = _report(org, "Payroll Q3", committee=org.finance, approve=True)
        s2 = _report(org, "Treasury Q3", committee=org.finance, approve=True)
        assert [r.id for r in SourceLinks.summarizable_reports(org.ops.id)] == [s1.id, s2.id]

        summary = SourceLinks.create_summary(
            {"title": "Ops Q3 summary", "committee_id": org.ops.id},
            [s1.id, s2.id], org.head_ops.id, annotations={s1.id: "Headcount flat"},
        )
        assert summary.status == "draft"
        assert summary.report_type == "summary"
        assert [r.id for r in SourceLinks.resolve_sources(summary.id)] == [s1.id, s2.id]
        assert SourceLinks.list_links(summary.id)[0].annotation == "Headcount flat"

        for source_id in (s1.id, s2.id):
            source = db.session.get(Report, source_id)
            assert source.status == "summarized"
            assert source.status_history[-1].comment == f"Summarized into report #{summary.id}"
            assert ReportWorkflow.history_is_valid(source)

    def test_unapproved_source_rolls_back(self, org):
        ok = _report(org, "Approved", committee=org.finance, approve=True)
        draft = _report(org, "Draft", committee=org.finance)
        before = Report.query.count()

        with pytest.raises(ValidationError):
            SourceLinks.create_summary({"title": "Bad summary", "committee_id": org.ops.id},
                                       [ok.id, draft.id], org.head_ops.id)
        assert Report.query.count() == before
        assert ReportSourceLink.query.count() == 0
        assert db.session.get(Report, ok.id).status == "approved"

    def test_needs_sources(self, org):
        with pytest.raises(ValidationError):
            SourceLinks.create_summary({"title": "Empty", "committee_id": org.ops.id}, [], org.head_ops.id)

    def test_summary_of_summaries(self, org):
        leaf = _report(org, "Leaf", committee=org.payroll, approve=True)
        mid = SourceLinks.create_summary({"title": "Mid", "committee_id": org.finance.id},
                                         [leaf.id], org.head_fin.id)
        ReportWorkflow.update_draft(mid.id, {"skip_approvals": True}, org.head_fin.id)
        ReportWorkflow.approve_directly(mid.id, org.head_fin.id)
        top = SourceLinks.create_summary({"title": "Top", "committee_id": org.ops.id},
                                         [mid.id], org.head_ops.id)

        assert SourceLinks.summarization_depth(top.id) == 2
        tree = SourceLinks.get_drill_down_tree(top.id)
        assert tree["report"]["id"] == top.id
        assert tree["sources"][0]["report"]["id"] == mid.id
        assert tree["sources"][0]["sources"][0]["report"]["id"] == leaf.id
