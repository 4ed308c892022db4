"""
Post-commit event dispatch and notification tests.

Tests cover:
  - Events are dispatched once per committed transition
  - A failing subscriber does not break the workflow call
  - Notification fan-out for report and directive transitions
  - Notification read state
"""
import logging
from datetime import datetime, timedelta, timezone

import pytest

from accountability.core.exceptions import IllegalTransitionError
from accountability.models.notification import Notification
from accountability.services.approval_aggregator import ApprovalAggregator
from accountability.services.confidentiality import ConfidentialityGate
from accountability.services.directive_workflow import DirectiveWorkflow
from accountability.services.events import (
    AccessGranted,
    ConfidentialityMarked,
    EventDispatcher,
    TransitionCompleted,
    resolve_dispatcher,
)
from accountability.services.notification import NotificationService
from accountability.services.report_workflow import ReportWorkflow


def _report(org, **extra):
    data = {"title": "Monthly KPI pack", "committee_id": org.ops.id}
    data.update(extra)
    return ReportWorkflow.create_report(data, author_id=org.author.id)


class TestDispatch:
    def test_submit_dispatches_one_event(self, org):
        seen = []
        report = _report(org)
        ReportWorkflow.submit_report(report.id, org.author.id, dispatcher=EventDispatcher([seen.append]))

        assert len(seen) == 1
        event = seen[0]
        assert isinstance(event, TransitionCompleted)
        assert (event.document_type, event.document_id) == ("report", report.id)
        assert (event.old_status, event.new_status) == ("draft", "submitted")
        assert event.to_dict()["event_type"] == TransitionCompleted.event_type

    def test_failed_transition_dispatches_nothing(self, org):
        seen = []
        report = _report(org)
        with pytest.raises(IllegalTransitionError):
            ReportWorkflow.submit_report(report.id, org.member_1.id,
                                         dispatcher=EventDispatcher([seen.append]))
        assert seen == []

    def test_only_quorum_approval_emits(self, org):
        seen = []
        dispatcher = EventDispatcher([seen.append])
        report = _report(org)
        ReportWorkflow.submit_report(report.id, org.author.id)
        ApprovalAggregator.record_approval(report.id, org.member_1.id, dispatcher=dispatcher)
        ApprovalAggregator.record_approval(report.id, org.member_2.id, dispatcher=dispatcher)
        assert seen == []
        ApprovalAggregator.record_approval(report.id, org.head_ops.id, dispatcher=dispatcher)
        assert [e.new_status for e in seen] == ["approved"]

    def test_failing_subscriber_is_logged(self, org, caplog):
        seen = []

        def _boom(event):
            raise RuntimeError("mail server down")

        report = _report(org)
        with caplog.at_level(logging.ERROR, logger="accountability.services.events"):
            result = ReportWorkflow.submit_report(
                report.id, org.author.id, dispatcher=EventDispatcher([_boom, seen.append]),
            )
        assert result.status == "submitted"
        assert len(seen) == 1
        assert any("subscriber" in r.getMessage() for r in caplog.records)

    def test_confidentiality_events(self, org):
        seen = []
        dispatcher = EventDispatcher([seen.append])
        report = _report(org)
        ConfidentialityGate.mark("report", report.id, org.author.id, org.ops.id, dispatcher=dispatcher)
        ConfidentialityGate.grant("report", report.id, org.outsider.id, org.author.id,
                                  dispatcher=dispatcher)
        assert [type(e) for e in seen] == [ConfidentialityMarked, AccessGranted]

    def test_installed_dispatcher_is_used(self, app):
        assert resolve_dispatcher() is app.extensions["accountability.events"]
        explicit = EventDispatcher()
        assert resolve_dispatcher(explicit) is explicit


class TestNotifications:
    def test_submit_notifies_members_except_author(self, org):
        report = _report(org, committee_id=org.ops.id)
        ReportWorkflow.submit_report(report.id, org.author.id)
        recipients = {n.recipient_id for n in Notification.query.filter_by(item_id=report.id)}
        assert recipients == {org.head_ops.id, org.member_1.id, org.member_2.id}

    def test_feedback_notifies_author(self, org):
        report = _report(org)
        ReportWorkflow.submit_report(report.id, org.author.id)
        ReportWorkflow.request_feedback(report.id, org.member_1.id, "Please add sources")
        items, total = NotificationService.list_for_recipient(org.author.id)
        assert total == 1
        assert items[0].severity == "warning"
        assert items[0].message == "Please add sources"
        assert items[0].actor_id == org.member_1.id
        assert items[0].to_dict()["item_ref"] == f"report#{report.id}"

    def test_marking_notifies_owner_when_marked_by_admin(self, org):
        report = _report(org)
        ConfidentialityGate.mark("report", report.id, org.admin.id, org.ops.id)
        assert NotificationService.unread_count(org.author.id) == 1

    def test_mark_read(self, org):
        report = _report(org)
        ReportWorkflow.submit_report(report.id, org.author.id)
        notif = Notification.query.filter_by(recipient_id=org.member_1.id).first()
        NotificationService.mark_read(notif.id)
        assert NotificationService.unread_count(org.member_1.id) == 0
        assert NotificationService.mark_all_read(org.member_2.id) == 1

    def test_overdue_reminder_has_no_actor(self, org):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        directive = DirectiveWorkflow.issue_directive(
            {"title": "File the audit", "target_committee_id": org.ops.id, "deadline": past},
            issuer_id=org.chairman.id,
        )
        DirectiveWorkflow.send_overdue_reminders()
        reminder = Notification.query.filter_by(category="deadline").one()
        assert reminder.actor_id is None
        assert (reminder.item_type, reminder.item_id) == ("directive", directive.id)
