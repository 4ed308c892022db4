"""
Notification Service — in-app notification store.

Default consumer of workflow events: turns TransitionCompleted,
ConfidentialityMarked and AccessGranted into per-user notification rows.
Delivery channels (email, push) are outside this package.
"""

import logging
from datetime import datetime, timezone

from accountability.models import db
from accountability.models.directive import Directive
from accountability.models.notification import Notification
from accountability.models.report import Report
from accountability.services.events import (
    AccessGranted,
    ConfidentialityMarked,
    TransitionCompleted,
)
from accountability.services.organization_directory import OrganizationDirectory

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient_id, title, message="", category="system", severity="info",
               item_type=None, item_id=None, actor_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            category=category,
            severity=severity,
            item_type=item_type,
            item_id=item_id,
            actor_id=actor_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, recipient_ids, title, message="", category="system", severity="info",
                  item_type=None, item_id=None, actor_id=None):
        """
        Send the same notification to several users in one commit.

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for rid in sorted(set(recipient_ids)):
            notif = Notification(
                recipient_id=rid,
                title=title,
                message=message,
                category=category,
                severity=severity,
                item_type=item_type,
                item_id=item_id,
                actor_id=actor_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        if notifications:
            db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a user, newest first."""
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient_id=recipient_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a user as read."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count

    # ── Event consumer ────────────────────────────────────────────────────

    @staticmethod
    def handle_event(event):
        """Route a committed workflow event to the matching notifier."""
        try:
            if isinstance(event, TransitionCompleted):
                if event.document_type == "report":
                    return NotificationService.notify_report_transition(event)
                return NotificationService.notify_directive_transition(event)
            if isinstance(event, ConfidentialityMarked):
                return NotificationService.notify_marked(event)
            if isinstance(event, AccessGranted):
                return NotificationService.notify_access_granted(event)
        except Exception:
            db.session.rollback()
            raise
        return None

    @staticmethod
    def notify_report_transition(event):
        report = db.session.get(Report, event.document_id)
        if report is None:
            return []
        if event.new_status == "submitted":
            # Everyone who signs off, minus the author
            recipients = OrganizationDirectory.active_members(report.committee_id) - {report.author_id}
            return NotificationService.broadcast(
                recipient_ids=recipients,
                title=f"Report awaiting your approval: {report.title}",
                message=f"Version {report.version} was submitted for committee sign-off.",
                category="approval",
                item_type="report",
                item_id=report.id,
                actor_id=event.actor_id,
            )
        severity = {"approved": "success", "feedback_requested": "warning"}.get(event.new_status, "info")
        if report.author_id == event.actor_id:
            return []
        return NotificationService.broadcast(
            recipient_ids=[report.author_id],
            title=f"Report {event.new_status.replace('_', ' ')}: {report.title}",
            message=event.comment or "",
            category="report",
            severity=severity,
            item_type="report",
            item_id=report.id,
            actor_id=event.actor_id,
        )

    @staticmethod
    def notify_directive_transition(event):
        directive = db.session.get(Directive, event.document_id)
        if directive is None or directive.issuer_id == event.actor_id:
            return []
        return NotificationService.broadcast(
            recipient_ids=[directive.issuer_id],
            title=f"Directive {event.new_status.replace('_', ' ')}: {directive.title}",
            message=event.comment or "",
            category="directive",
            item_type="directive",
            item_id=directive.id,
            actor_id=event.actor_id,
        )

    @staticmethod
    def notify_child_directive_closed(parent, child):
        """Tell the parent's issuer that one forwarded child has closed."""
        open_children = [c.id for c in parent.children if c.status != "closed"]
        suffix = "all forwarded directives are closed" if not open_children else (
            f"{len(open_children)} forwarded directive(s) still open"
        )
        return NotificationService.broadcast(
            recipient_ids=[parent.issuer_id],
            title=f"Forwarded directive closed: {child.title}",
            message=f"Directive {child.id} closed; {suffix}.",
            category="directive",
            severity="success" if not open_children else "info",
            item_type="directive",
            item_id=parent.id,
        )

    @staticmethod
    def notify_marked(event):
        model = Report if event.item_type == "report" else Directive
        item = db.session.get(model, event.item_id)
        if item is None:
            return []
        owner_id = item.author_id if event.item_type == "report" else item.issuer_id
        if owner_id == event.marked_by_id:
            return []
        return NotificationService.broadcast(
            recipient_ids=[owner_id],
            title=f"{event.item_type.capitalize()} marked confidential: {item.title}",
            category="confidentiality",
            severity="warning",
            item_type=event.item_type,
            item_id=item.id,
            actor_id=event.marked_by_id,
        )

    @staticmethod
    def notify_access_granted(event):
        return NotificationService.broadcast(
            recipient_ids=[event.granted_to_user_id],
            title=f"You were granted access to confidential {event.item_type} #{event.item_id}",
            category="confidentiality",
            item_type=event.item_type,
            item_id=event.item_id,
            actor_id=event.granted_by_id,
        )

    @staticmethod
    def notify_directive_overdue(directive):
        """Warn the target user (or the issuer when none is set) about a missed deadline."""
        recipient = directive.target_user_id or directive.issuer_id
        return NotificationService.broadcast(
            recipient_ids=[recipient],
            title=f"Directive overdue: {directive.title}",
            message=f"Deadline was {directive.deadline.date().isoformat() if directive.deadline else '—'}.",
            category="deadline",
            severity="warning",
            item_type="directive",
            item_id=directive.id,
        )
