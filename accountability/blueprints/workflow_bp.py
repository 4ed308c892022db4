"""Workflow engine blueprint.

Thin JSON API over the workflow services.

Endpoint groups:
  Organization        POST /api/v1/users, /committees, /committees/<id>/members
                      DELETE /api/v1/memberships/<id>
  Reports             POST/GET /api/v1/reports, GET /api/v1/reports/<id>
                      POST /api/v1/reports/<id>/{submit,transition,approvals,feedback,
                                                 resubmit,finalize,attachments,sources}
                      GET  /api/v1/reports/<id>/{approvals,revisions,sources,summaries,drill-down}
                      POST /api/v1/reports/summaries
  Directives          POST/GET /api/v1/directives, GET /api/v1/directives/<id>
                      POST /api/v1/directives/<id>/{transition,forward}
                      GET  /api/v1/directives/<id>/{tree,forwardable-committees},
                           /directives/{overdue,approaching,stats}
                      GET  /api/v1/users/<id>/targetable-committees
  Confidentiality     POST/DELETE /api/v1/confidential/<type>/<id>/mark
                      POST /api/v1/confidential/<type>/<id>/grants
                      DELETE /api/v1/confidential/<type>/<id>/grants/<user_id>
                      GET  /api/v1/confidential/<type>/<id>/{can-view,impact}
  Notifications       GET /api/v1/notifications

The acting user is read from ``user_id`` in the JSON body or query string
(``viewer_id`` on read endpoints). Services own all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from accountability.core.exceptions import (
    AccessDeniedError,
    ChildrenNotClosedError,
    ConflictError,
    CycleError,
    DuplicateLinkError,
    IllegalTransitionError,
    InvalidForwardingTargetError,
    NotAMemberError,
    NotFoundError,
    SelfApprovalError,
    StaleStateError,
    ValidationError,
)
from accountability.models import db
from accountability.services.approval_aggregator import ApprovalAggregator
from accountability.services.confidentiality import ConfidentialityGate
from accountability.services.directive_workflow import DirectiveWorkflow
from accountability.services.notification import NotificationService
from accountability.services.organization_directory import OrganizationDirectory
from accountability.services.report_workflow import ReportWorkflow
from accountability.services.source_links import SourceLinks
from accountability.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


@workflow_bp.errorhandler(IllegalTransitionError)
def _handle_illegal_transition(error: IllegalTransitionError):
    return api_error(E.ILLEGAL_TRANSITION, str(error), details={
        "from_status": error.from_status, "to_status": error.to_status,
    })


@workflow_bp.errorhandler(StaleStateError)
def _handle_stale(error: StaleStateError):
    return api_error(E.STALE_STATE, str(error), details={
        "expected_status": error.expected_status, "actual_status": error.actual_status,
    })


@workflow_bp.errorhandler(NotAMemberError)
def _handle_not_member(error: NotAMemberError):
    return api_error(E.NOT_A_MEMBER, str(error))


@workflow_bp.errorhandler(SelfApprovalError)
def _handle_self_approval(error: SelfApprovalError):
    return api_error(E.SELF_APPROVAL, str(error))


@workflow_bp.errorhandler(ChildrenNotClosedError)
def _handle_children_open(error: ChildrenNotClosedError):
    return api_error(E.CHILDREN_OPEN, str(error), details={"open_child_ids": error.open_child_ids})


@workflow_bp.errorhandler(InvalidForwardingTargetError)
def _handle_invalid_forward(error: InvalidForwardingTargetError):
    return api_error(E.INVALID_FORWARD, str(error))


@workflow_bp.errorhandler(CycleError)
def _handle_cycle(error: CycleError):
    return api_error(E.LINK_CYCLE, str(error))


@workflow_bp.errorhandler(DuplicateLinkError)
def _handle_duplicate_link(error: DuplicateLinkError):
    return api_error(E.LINK_DUPLICATE, str(error))


@workflow_bp.errorhandler(AccessDeniedError)
def _handle_access_denied(error: AccessDeniedError):
    return api_error(E.ACCESS_DENIED, str(error))


@workflow_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.error("Database error on %s: %s", request.path, error, exc_info=True)
    return api_error(E.DATABASE, "Database error")


# ── Request helpers ───────────────────────────────────────────────────────────


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _int_param(name: str) -> int | None:
    value = _body().get(name)
    if value is None:
        value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer", details={name: value}) from exc


def _actor_id() -> int:
    """Acting user from the body or query string."""
    actor = _int_param("user_id")
    if actor is None:
        raise ValidationError("user_id is required", details={"user_id": "required"})
    return actor


def _viewer_id() -> int:
    viewer = _int_param("viewer_id")
    if viewer is None:
        viewer = _int_param("user_id")
    if viewer is None:
        raise ValidationError("viewer_id is required", details={"viewer_id": "required"})
    return viewer


def _report_view(report, include_history=False):
    data = report.to_dict(include_history=include_history)
    if include_history:
        data["pending_approvers"] = sorted(ApprovalAggregator.pending_approvers(report.id))
    return data


# ═════════════════════════════════════════════════════════════════════════
# Organization
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/users", methods=["POST"])
def create_user():
    """Body: {email, full_name, system_role?, chairman_office_rank?}"""
    user = OrganizationDirectory.create_user(_body())
    return jsonify(user.to_dict()), 201


@workflow_bp.route("/committees", methods=["POST"])
def create_committee():
    """Body: {name, hierarchy_level, parent_committee_id?, sector?, description?, user_id?}"""
    committee = OrganizationDirectory.create_committee(_body(), actor_id=_int_param("user_id"))
    return jsonify(committee.to_dict()), 201


@workflow_bp.route("/committees/<int:committee_id>/members", methods=["POST"])
def add_member(committee_id):
    """Body: {member_id, role?, user_id?}"""
    data = _body()
    member_id = _int_param("member_id")
    if member_id is None:
        raise ValidationError("member_id is required", details={"member_id": "required"})
    membership = OrganizationDirectory.add_membership(
        member_id, committee_id, data.get("role", "member"), actor_id=_int_param("user_id"),
    )
    return jsonify(membership.to_dict()), 201


@workflow_bp.route("/committees/<int:committee_id>/members", methods=["GET"])
def list_members(committee_id):
    OrganizationDirectory.get_committee(committee_id)
    return jsonify({"user_ids": sorted(OrganizationDirectory.active_members(committee_id))}), 200


@workflow_bp.route("/memberships/<int:membership_id>", methods=["DELETE"])
def end_membership(membership_id):
    membership = OrganizationDirectory.end_membership(membership_id, actor_id=_int_param("user_id"))
    return jsonify(membership.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Reports
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/reports", methods=["POST"])
def create_report():
    """Body: {user_id, title, committee_id, body?, report_type?, skip_approvals?}"""
    report = ReportWorkflow.create_report(_body(), author_id=_actor_id())
    return jsonify(report.to_dict()), 201


@workflow_bp.route("/reports", methods=["GET"])
def list_reports():
    """Query: viewer_id, committee_id?, status?  Confidential reports are filtered out."""
    viewer = _viewer_id()
    reports = ReportWorkflow.list_reports(
        committee_id=request.args.get("committee_id", type=int),
        status=request.args.get("status"),
    )
    visible = ConfidentialityGate.filter_visible_reports(reports, viewer)
    return jsonify({"items": [r.to_dict() for r in visible], "total": len(visible)}), 200


@workflow_bp.route("/reports/stats", methods=["GET"])
def report_stats():
    return jsonify(ReportWorkflow.report_stats(request.args.get("committee_id", type=int))), 200


@workflow_bp.route("/reports/<int:report_id>", methods=["GET"])
def get_report(report_id):
    report = ConfidentialityGate.authorize_view("report", report_id, _viewer_id())
    return jsonify(_report_view(report, include_history=True)), 200


@workflow_bp.route("/reports/<int:report_id>", methods=["PUT"])
def update_report(report_id):
    report = ReportWorkflow.update_draft(report_id, _body(), _actor_id())
    return jsonify(report.to_dict()), 200


@workflow_bp.route("/reports/<int:report_id>/submit", methods=["POST"])
def submit_report(report_id):
    report = ReportWorkflow.submit_report(report_id, _actor_id(), _body().get("comment"))
    return jsonify(report.to_dict()), 200


@workflow_bp.route("/reports/<int:report_id>/transition", methods=["POST"])
def transition_report(report_id):
    """Body: {user_id, from_status, to_status, comment?}"""
    data = _body()
    for field in ("from_status", "to_status"):
        if not data.get(field):
            raise ValidationError(f"{field} is required", details={field: "required"})
    report = ReportWorkflow.request_transition(
        report_id, data["from_status"], data["to_status"], _actor_id(), data.get("comment"),
    )
    return jsonify(report.to_dict()), 200


@workflow_bp.route("/reports/<int:report_id>/approvals", methods=["POST"])
def approve_report(report_id):
    """Body: {user_id, comment?}. Repeating the call returns the same approval."""
    approval = ApprovalAggregator.record_approval(report_id, _actor_id(), _body().get("comment"))
    report = ReportWorkflow.get_report(report_id)
    return jsonify({"approval": approval.to_dict(), "report_status": report.status}), 201


@workflow_bp.route("/reports/<int:report_id>/approvals", methods=["GET"])
def list_approvals(report_id):
    """Query: viewer_id."""
    ConfidentialityGate.authorize_view("report", report_id, _viewer_id())
    return jsonify({
        "items": [a.to_dict() for a in ApprovalAggregator.list_approvals(report_id)],
        "pending_user_ids": sorted(ApprovalAggregator.pending_approvers(report_id)),
    }), 200


@workflow_bp.route("/reports/<int:report_id>/feedback", methods=["POST"])
def request_feedback(report_id):
    report = ReportWorkflow.request_feedback(report_id, _actor_id(), _body().get("comment"))
    return jsonify(report.to_dict()), 200


@workflow_bp.route("/reports/<int:report_id>/resubmit", methods=["POST"])
def resubmit_report(report_id):
    data = _body()
    revision = ReportWorkflow.resubmit(report_id, _actor_id(), data, data.get("comment"))
    return jsonify(revision.to_dict()), 201


@workflow_bp.route("/reports/<int:report_id>/finalize", methods=["POST"])
def finalize_report(report_id):
    report = ApprovalAggregator.finalize_by_head(report_id, _actor_id(), _body().get("comment"))
    return jsonify(report.to_dict()), 200


@workflow_bp.route("/reports/<int:report_id>/revisions", methods=["GET"])
def revision_chain(report_id):
    """Query: viewer_id. Versions the viewer may not see are left out."""
    viewer = _viewer_id()
    ConfidentialityGate.authorize_view("report", report_id, viewer)
    chain = ConfidentialityGate.filter_visible_reports(ReportWorkflow.get_revision_chain(report_id), viewer)
    return jsonify({"items": [r.to_dict() for r in chain]}), 200


@workflow_bp.route("/reports/<int:report_id>/attachments", methods=["POST"])
def add_attachment(report_id):
    attachment = ReportWorkflow.add_attachment(report_id, _body(), _actor_id())
    return jsonify(attachment.to_dict()), 201


@workflow_bp.route("/reports/<int:report_id>/attachments/<int:attachment_id>", methods=["DELETE"])
def remove_attachment(report_id, attachment_id):
    ReportWorkflow.remove_attachment(report_id, attachment_id, _actor_id())
    return "", 204


# ── Source links ──────────────────────────────────────────────────────────


@workflow_bp.route("/reports/<int:report_id>/sources", methods=["POST"])
def link_source(report_id):
    """Body: {user_id, source_report_id, annotation?}"""
    source_id = _int_param("source_report_id")
    if source_id is None:
        raise ValidationError("source_report_id is required",
                              details={"source_report_id": "required"})
    link = SourceLinks.link_source(report_id, source_id, _body().get("annotation"), _actor_id())
    return jsonify(link.to_dict()), 201


@workflow_bp.route("/reports/<int:report_id>/sources", methods=["GET"])
def list_sources(report_id):
    viewer = _viewer_id()
    ConfidentialityGate.authorize_view("report", report_id, viewer)
    sources = ConfidentialityGate.filter_visible_reports(SourceLinks.resolve_sources(report_id), viewer)
    return jsonify({"items": [r.to_dict() for r in sources]}), 200


@workflow_bp.route("/reports/<int:report_id>/summaries", methods=["GET"])
def list_summaries(report_id):
    viewer = _viewer_id()
    ConfidentialityGate.authorize_view("report", report_id, viewer)
    summaries = ConfidentialityGate.filter_visible_reports(SourceLinks.get_summaries_of(report_id), viewer)
    return jsonify({"items": [r.to_dict() for r in summaries]}), 200


@workflow_bp.route("/reports/<int:report_id>/drill-down", methods=["GET"])
def drill_down(report_id):
    ConfidentialityGate.authorize_view("report", report_id, _viewer_id())
    return jsonify({
        "tree": SourceLinks.get_drill_down_tree(report_id),
        "depth": SourceLinks.summarization_depth(report_id),
    }), 200


@workflow_bp.route("/reports/summaries", methods=["POST"])
def create_summary():
    """Body: {user_id, title, committee_id, source_ids, annotations?}"""
    data = _body()
    summary = SourceLinks.create_summary(
        data, data.get("source_ids") or [], _actor_id(), annotations=data.get("annotations"),
    )
    return jsonify(summary.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Directives
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/directives", methods=["POST"])
def issue_directive():
    """Body: {user_id, title, target_committee_id, body?, directive_type?, priority?,
    deadline?, target_user_id?, related_report_id?}"""
    directive = DirectiveWorkflow.issue_directive(_body(), issuer_id=_actor_id())
    return jsonify(directive.to_dict()), 201


@workflow_bp.route("/directives", methods=["GET"])
def list_directives():
    """Query: viewer_id. Directives that involve the viewer, confidential ones filtered."""
    viewer = _viewer_id()
    directives = DirectiveWorkflow.directives_for_user(viewer)
    visible = ConfidentialityGate.filter_visible_directives(directives, viewer)
    return jsonify({"items": [d.to_dict() for d in visible], "total": len(visible)}), 200


@workflow_bp.route("/directives/overdue", methods=["GET"])
def overdue_directives():
    """Query: viewer_id. Confidential directives are filtered out."""
    viewer = _viewer_id()
    items = ConfidentialityGate.filter_visible_directives(
        DirectiveWorkflow.get_overdue_directives(), viewer,
    )
    return jsonify({"items": [d.to_dict() for d in items]}), 200


@workflow_bp.route("/directives/approaching", methods=["GET"])
def approaching_directives():
    """Query: viewer_id, days?"""
    viewer = _viewer_id()
    items = ConfidentialityGate.filter_visible_directives(
        DirectiveWorkflow.get_approaching_deadline_directives(days=request.args.get("days", type=int)),
        viewer,
    )
    return jsonify({"items": [d.to_dict() for d in items]}), 200


@workflow_bp.route("/directives/stats", methods=["GET"])
def directive_stats():
    return jsonify(DirectiveWorkflow.directive_stats(request.args.get("committee_id", type=int))), 200


@workflow_bp.route("/directives/<int:directive_id>", methods=["GET"])
def get_directive(directive_id):
    directive = ConfidentialityGate.authorize_view("directive", directive_id, _viewer_id())
    return jsonify(directive.to_dict(include_history=True)), 200


@workflow_bp.route("/directives/<int:directive_id>/transition", methods=["POST"])
def transition_directive(directive_id):
    """Body: {user_id, from_status, to_status, comment?}"""
    data = _body()
    for field in ("from_status", "to_status"):
        if not data.get(field):
            raise ValidationError(f"{field} is required", details={field: "required"})
    directive = DirectiveWorkflow.request_transition(
        directive_id, data["from_status"], data["to_status"], _actor_id(), data.get("comment"),
    )
    return jsonify(directive.to_dict()), 200


@workflow_bp.route("/directives/<int:directive_id>/forward", methods=["POST"])
def forward_directive(directive_id):
    """Body: {user_id, target_committee_id, forwarding_annotation?, title?, deadline?, ...}"""
    child = DirectiveWorkflow.forward(directive_id, _body(), _actor_id())
    return jsonify(child.to_dict()), 201


@workflow_bp.route("/directives/<int:directive_id>/tree", methods=["GET"])
def directive_tree(directive_id):
    ConfidentialityGate.authorize_view("directive", directive_id, _viewer_id())
    return jsonify(DirectiveWorkflow.get_propagation_tree(directive_id)), 200


@workflow_bp.route("/directives/<int:directive_id>/forwardable-committees", methods=["GET"])
def forwardable_committees(directive_id):
    ConfidentialityGate.authorize_view("directive", directive_id, _viewer_id())
    committees = DirectiveWorkflow.forwardable_committees(directive_id)
    return jsonify({"items": [c.to_dict() for c in committees]}), 200


@workflow_bp.route("/users/<int:user_id>/targetable-committees", methods=["GET"])
def targetable_committees(user_id):
    return jsonify({
        "can_issue": DirectiveWorkflow.can_issue(user_id),
        "items": [c.to_dict() for c in DirectiveWorkflow.targetable_committees(user_id)],
    }), 200


# ═════════════════════════════════════════════════════════════════════════
# Confidentiality
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/confidential/<item_type>/<int:item_id>/mark", methods=["POST"])
def mark_confidential(item_type, item_id):
    """Body: {user_id, marker_committee_id, reason?, min_chairman_office_rank?}"""
    committee_id = _int_param("marker_committee_id")
    if committee_id is None:
        raise ValidationError("marker_committee_id is required",
                              details={"marker_committee_id": "required"})
    data = _body()
    marking = ConfidentialityGate.mark(
        item_type, item_id, _actor_id(), committee_id,
        reason=data.get("reason"),
        min_chairman_office_rank=_int_param("min_chairman_office_rank"),
        marker_committee_level=data.get("marker_committee_level"),
    )
    return jsonify(marking.to_dict()), 201


@workflow_bp.route("/confidential/<item_type>/<int:item_id>/mark", methods=["DELETE"])
def unmark_confidential(item_type, item_id):
    marking = ConfidentialityGate.remove_marking(item_type, item_id, _actor_id())
    return jsonify(marking.to_dict(include_reason=False)), 200


@workflow_bp.route("/confidential/<item_type>/<int:item_id>/grants", methods=["POST"])
def grant_access(item_type, item_id):
    """Body: {user_id, granted_to_user_id, reason?}"""
    grantee = _int_param("granted_to_user_id")
    if grantee is None:
        raise ValidationError("granted_to_user_id is required",
                              details={"granted_to_user_id": "required"})
    grant = ConfidentialityGate.grant(item_type, item_id, grantee, _actor_id(),
                                      _body().get("reason"))
    return jsonify(grant.to_dict()), 201


@workflow_bp.route("/confidential/<item_type>/<int:item_id>/grants/<int:grantee_id>",
                   methods=["DELETE"])
def revoke_access(item_type, item_id, grantee_id):
    grant = ConfidentialityGate.revoke_grant(item_type, item_id, grantee_id, _actor_id())
    return jsonify(grant.to_dict()), 200


@workflow_bp.route("/confidential/<item_type>/<int:item_id>/can-view", methods=["GET"])
def can_view(item_type, item_id):
    allowed = ConfidentialityGate.can_view(item_type, item_id, _viewer_id())
    return jsonify({"can_view": allowed}), 200


@workflow_bp.route("/confidential/<item_type>/<int:item_id>/impact", methods=["GET"])
def access_impact(item_type, item_id):
    """Query: user_id, committee_id, min_chairman_office_rank?  Only a user who may mark."""
    actor = _actor_id()
    committee_id = _int_param("committee_id")
    if committee_id is None:
        raise ValidationError("committee_id is required", details={"committee_id": "required"})
    item = ConfidentialityGate.get_item(item_type, item_id)
    if not ConfidentialityGate.can_mark(item_type, item, actor):
        raise AccessDeniedError(item_type, item_id, actor)
    preview = ConfidentialityGate.access_impact_preview(
        item_type, item_id, committee_id, _int_param("min_chairman_office_rank"),
    )
    return jsonify({
        "retain_access": [u.id for u in preview["retain_access"]],
        "lose_access": [u.id for u in preview["lose_access"]],
    }), 200


# ═════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/notifications", methods=["GET"])
def list_notifications():
    items, total = NotificationService.list_for_recipient(
        _actor_id(),
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200


@workflow_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id)
    if notif is None:
        raise NotFoundError(resource="Notification", resource_id=notification_id)
    return jsonify(notif.to_dict()), 200
