"""
Directive lifecycle and forwarding graph tests.

Tests cover:
  - Monotonic status progression and authority jumps
  - Forwarding target validation (own subtree only)
  - The D1 → D2 → D3 closure gate scenario
  - Parent-issuer notification when a child closes
  - Propagation tree ordering and deadline queries
"""
from datetime import datetime, timedelta, timezone

import pytest

from accountability.core.exceptions import (
    ChildrenNotClosedError,
    IllegalTransitionError,
    InvalidForwardingTargetError,
    StaleStateError,
    ValidationError,
)
from accountability.models import db
from accountability.models.directive import Directive
from accountability.models.notification import Notification
from accountability.services.directive_workflow import DirectiveWorkflow
from accountability.utils.helpers import as_utc


def _issue(org, target=None, issuer=None, **extra):
    data = {"title": "Cut travel spend by 10%", "target_committee_id": (target or org.ops).id}
    data.update(extra)
    return DirectiveWorkflow.issue_directive(data, issuer_id=(issuer or org.chairman).id)


def _status(directive_id):
    return db.session.get(Directive, directive_id).status


# ═════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_issue_writes_note(self, org):
        directive = _issue(org)
        assert directive.status == "issued"
        note = directive.status_history[0]
        assert (note.old_status, note.new_status, note.comment) == ("issued", "issued", "Directive issued")

    def test_participant_steps_forward(self, org):
        directive = _issue(org)
        DirectiveWorkflow.mark_delivered(directive.id, org.head_ops.id)
        DirectiveWorkflow.acknowledge(directive.id, org.head_ops.id)
        DirectiveWorkflow.start_progress(directive.id, org.member_1.id)
        DirectiveWorkflow.mark_implemented(directive.id, org.member_1.id)
        directive = db.session.get(Directive, directive.id)
        assert directive.status == "implemented"
        assert directive.acknowledged_at is not None
        assert directive.implemented_at is not None

    def test_participant_cannot_skip_stages(self, org):
        directive = _issue(org)
        with pytest.raises(IllegalTransitionError):
            DirectiveWorkflow.request_transition(directive.id, "issued", "implemented", org.member_1.id)
        assert _status(directive.id) == "issued"

    def test_issuer_may_jump(self, org):
        directive = _issue(org)
        DirectiveWorkflow.request_transition(directive.id, "issued", "implemented", org.chairman.id)
        directive = db.session.get(Directive, directive.id)
        assert directive.status == "implemented"
        assert directive.acknowledged_at is not None

    def test_no_regression_even_for_issuer(self, org):
        directive = _issue(org)
        DirectiveWorkflow.acknowledge(directive.id, org.chairman.id)
        with pytest.raises(IllegalTransitionError):
            DirectiveWorkflow.request_transition(directive.id, "acknowledged", "issued", org.chairman.id)

    def test_closed_is_terminal(self, org):
        directive = _issue(org)
        DirectiveWorkflow.close(directive.id, org.chairman.id)
        with pytest.raises(IllegalTransitionError):
            DirectiveWorkflow.request_transition(directive.id, "closed", "verified", org.chairman.id)

    def test_stale_from_status(self, org):
        directive = _issue(org)
        DirectiveWorkflow.mark_delivered(directive.id, org.head_ops.id)
        with pytest.raises(StaleStateError):
            DirectiveWorkflow.request_transition(directive.id, "issued", "delivered", org.head_ops.id)

    def test_unknown_status(self, org):
        directive = _issue(org)
        with pytest.raises(ValidationError):
            DirectiveWorkflow.request_transition(directive.id, "issued", "archived", org.chairman.id)

    def test_invalid_deadline(self, org):
        with pytest.raises(ValidationError):
            _issue(org, deadline="next tuesday")


# ═════════════════════════════════════════════════════════════════════════
# FORWARDING
# ═════════════════════════════════════════════════════════════════════════

class TestForwarding:
    def test_forward_to_descendant(self, org):
        parent = _issue(org, priority="high")
        child = DirectiveWorkflow.forward(
            parent.id,
            {"target_committee_id": org.finance.id, "forwarding_annotation": "Finance owns this"},
            org.head_ops.id,
        )
        assert child.parent_directive_id == parent.id
        assert child.issuer_id == org.head_ops.id
        assert child.priority == "high"
        assert child.title == parent.title
        assert child.forwarding_annotation == "Finance owns this"
        assert as_utc(child.created_at) >= as_utc(parent.created_at)
        assert child.status_history[0].comment == f"Forwarded from directive #{parent.id}"

    def test_forward_within_same_committee(self, org):
        parent = _issue(org)
        child = DirectiveWorkflow.forward(parent.id, {"target_committee_id": org.ops.id}, org.head_ops.id)
        assert child.target_committee_id == org.ops.id

    def test_forward_to_sibling_rejected(self, org):
        parent = _issue(org)
        with pytest.raises(InvalidForwardingTargetError):
            DirectiveWorkflow.forward(parent.id, {"target_committee_id": org.legal.id}, org.head_ops.id)
        assert Directive.query.count() == 1

    def test_forward_upwards_rejected(self, org):
        parent = _issue(org, target=org.finance)
        with pytest.raises(InvalidForwardingTargetError):
            DirectiveWorkflow.forward(parent.id, {"target_committee_id": org.ops.id}, org.head_fin.id)

    def test_forward_closed_parent_rejected(self, org):
        parent = _issue(org)
        DirectiveWorkflow.close(parent.id, org.chairman.id)
        with pytest.raises(InvalidForwardingTargetError):
            DirectiveWorkflow.forward(parent.id, {"target_committee_id": org.finance.id}, org.head_ops.id)

    def test_forwardable_committees(self, org):
        parent = _issue(org)
        names = [c.name for c in DirectiveWorkflow.forwardable_committees(parent.id)]
        assert names == ["Operations", "Finance", "Payroll"]
        for committee in DirectiveWorkflow.forwardable_committees(parent.id):
            DirectiveWorkflow.forward(parent.id, {"target_committee_id": committee.id}, org.head_ops.id)

        closed = _issue(org)
        DirectiveWorkflow.close(closed.id, org.chairman.id)
        assert DirectiveWorkflow.forwardable_committees(closed.id) == []


class TestIssuing:
    def test_issuer_roles_target_everything(self, org):
        assert DirectiveWorkflow.can_issue(org.chairman.id)
        assert DirectiveWorkflow.can_issue(org.office_3.id)
        names = [c.name for c in DirectiveWorkflow.targetable_committees(org.admin.id)]
        assert names == ["Board", "Legal", "Operations", "Finance", "Payroll"]

    def test_head_targets_own_subtree(self, org):
        assert DirectiveWorkflow.can_issue(org.head_fin.id)
        names = [c.name for c in DirectiveWorkflow.targetable_committees(org.head_fin.id)]
        assert names == ["Finance", "Payroll"]

    def test_plain_member_cannot_issue(self, org):
        assert not DirectiveWorkflow.can_issue(org.member_1.id)
        assert DirectiveWorkflow.targetable_committees(org.member_1.id) == []


class TestClosureGate:
    def test_three_level_chain(self, org):
        d1 = _issue(org)
        d2 = DirectiveWorkflow.forward(d1.id, {"target_committee_id": org.finance.id}, org.head_ops.id)
        d3 = DirectiveWorkflow.forward(d2.id, {"target_committee_id": org.payroll.id}, org.head_fin.id)

        with pytest.raises(ChildrenNotClosedError) as exc:
            DirectiveWorkflow.close(d1.id, org.chairman.id)
        assert exc.value.open_child_ids == [d2.id]
        assert _status(d1.id) == "issued"

        with pytest.raises(ChildrenNotClosedError) as exc:
            DirectiveWorkflow.close(d2.id, org.head_ops.id)
        assert exc.value.open_child_ids == [d3.id]

        DirectiveWorkflow.close(d3.id, org.head_fin.id)
        DirectiveWorkflow.close(d2.id, org.head_ops.id)
        DirectiveWorkflow.close(d1.id, org.chairman.id)
        assert [_status(d.id) for d in (d1, d2, d3)] == ["closed", "closed", "closed"]

    def test_parent_close_does_not_propagate(self, org):
        d1 = _issue(org)
        d2 = DirectiveWorkflow.forward(d1.id, {"target_committee_id": org.finance.id}, org.head_ops.id)
        DirectiveWorkflow.close(d2.id, org.head_ops.id)
        DirectiveWorkflow.close(d1.id, org.chairman.id)
        d3 = _issue(org, target=org.finance)
        assert _status(d3.id) == "issued"
        assert DirectiveWorkflow.close_blockers(d1.id) == []

    def test_child_close_notifies_parent_issuer(self, org):
        d1 = _issue(org)
        d2 = DirectiveWorkflow.forward(d1.id, {"target_committee_id": org.finance.id}, org.head_ops.id)
        DirectiveWorkflow.close(d2.id, org.head_ops.id)

        notes = Notification.query.filter_by(recipient_id=org.chairman.id, item_id=d1.id).all()
        assert any(n.title.startswith("Forwarded directive closed") for n in notes)


class TestTreeAndDeadlines:
    def test_propagation_tree(self, org):
        root = _issue(org)
        a = DirectiveWorkflow.forward(root.id, {"target_committee_id": org.finance.id}, org.head_ops.id)
        b = DirectiveWorkflow.forward(root.id, {"target_committee_id": org.ops.id}, org.head_ops.id)
        leaf = DirectiveWorkflow.forward(a.id, {"target_committee_id": org.payroll.id}, org.head_fin.id)

        tree = DirectiveWorkflow.get_propagation_tree(leaf.id)
        assert tree["directive"]["id"] == root.id
        # directors-level child sorts before the functions-level one
        assert [c["directive"]["id"] for c in tree["children"]] == [b.id, a.id]
        finance_node = tree["children"][1]
        assert finance_node["children"][0]["directive"]["id"] == leaf.id
        assert finance_node["children"][0]["is_focus"] is True

    def test_overdue_and_reminders(self, org):
        past = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
        soon = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        late = _issue(org, deadline=past, target_user_id=org.member_1.id)
        upcoming = _issue(org, deadline=soon)
        done = _issue(org, deadline=past)
        DirectiveWorkflow.close(done.id, org.chairman.id)

        assert [d.id for d in DirectiveWorkflow.get_overdue_directives()] == [late.id]
        assert [d.id for d in DirectiveWorkflow.get_approaching_deadline_directives()] == [upcoming.id]

        assert DirectiveWorkflow.send_overdue_reminders() == 1
        assert Notification.query.filter_by(recipient_id=org.member_1.id, category="deadline").count() == 1

    def test_directives_for_user(self, org):
        to_ops = _issue(org)
        _issue(org, target=org.legal)
        ids = [d.id for d in DirectiveWorkflow.directives_for_user(org.member_1.id)]
        assert ids == [to_ops.id]

    def test_stats(self, org):
        d = _issue(org)
        DirectiveWorkflow.close(d.id, org.chairman.id)
        _issue(org)
        stats = DirectiveWorkflow.directive_stats(org.ops.id)
        assert stats["total"] == 2
        assert stats["by_status"]["closed"] == 1
        assert stats["by_status"]["issued"] == 1
