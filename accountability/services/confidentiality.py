"""
Confidentiality Gate — markings, access grants and visibility resolution.

can_view(item_type, item_id, viewer_id):
    no active marking                          → visible (membership rules apply elsewhere)
    otherwise visible if any of:
        active AccessGrant for the viewer
        viewer is the report author / directive issuer
        viewer's Chairman's Office rank passes min_chairman_office_rank
        viewer is a head of the marker committee
    else                                       → hidden

Denials never reveal the marking reason.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from accountability.core.exceptions import AccessDeniedError, NotFoundError, ValidationError
from accountability.models import db
from accountability.models.audit import write_audit
from accountability.models.confidentiality import (
    CONFIDENTIAL_ITEM_TYPES,
    AccessGrant,
    ConfidentialityMarking,
)
from accountability.models.organization import User
from accountability.services.events import AccessGranted, ConfidentialityMarked, resolve_dispatcher
from accountability.services.organization_directory import OrganizationDirectory
from accountability.services.state_machine import (
    DIRECTIVE_LIFECYCLE,
    REPORT_LIFECYCLE,
    lock_document,
)

logger = logging.getLogger(__name__)

_LIFECYCLES = {"report": REPORT_LIFECYCLE, "directive": DIRECTIVE_LIFECYCLE}


def _check_item_type(item_type: str) -> None:
    if item_type not in CONFIDENTIAL_ITEM_TYPES:
        raise ValidationError(f"Unknown item_type '{item_type}'", details={"item_type": item_type})


def _owner_id(item_type: str, item) -> int:
    return item.author_id if item_type == "report" else item.issuer_id


class ConfidentialityGate:
    """Stateless service class for confidentiality operations."""

    # ── Lookup ────────────────────────────────────────────────────────────

    @staticmethod
    def get_item(item_type: str, item_id: int):
        _check_item_type(item_type)
        lifecycle = _LIFECYCLES[item_type]
        item = db.session.get(lifecycle.model, item_id)
        if item is None:
            raise NotFoundError(resource=lifecycle.label, resource_id=item_id)
        return item

    @staticmethod
    def get_active_marking(item_type: str, item_id: int) -> ConfidentialityMarking | None:
        return ConfidentialityMarking.query.filter_by(
            item_type=item_type, item_id=item_id, is_active=True,
        ).first()

    @staticmethod
    def get_marking_history(item_type: str, item_id: int) -> list[ConfidentialityMarking]:
        return (
            ConfidentialityMarking.query.filter_by(item_type=item_type, item_id=item_id)
            .order_by(ConfidentialityMarking.id)
            .all()
        )

    @staticmethod
    def list_grants(item_type: str, item_id: int, active_only=True) -> list[AccessGrant]:
        q = AccessGrant.query.filter_by(item_type=item_type, item_id=item_id)
        if active_only:
            q = q.filter_by(is_active=True)
        return q.order_by(AccessGrant.id).all()

    @staticmethod
    def has_active_grant(item_type: str, item_id: int, user_id: int) -> bool:
        return AccessGrant.query.filter_by(
            item_type=item_type, item_id=item_id, granted_to_user_id=user_id, is_active=True,
        ).first() is not None

    # ── Visibility ────────────────────────────────────────────────────────

    @staticmethod
    def rank_passes(viewer_rank, min_rank) -> bool:
        """Lower rank number = higher authority."""
        if min_rank is None or viewer_rank is None:
            return False
        if current_app.config.get("CONFIDENTIALITY_RANK_INCLUSIVE", True):
            return viewer_rank <= min_rank
        return viewer_rank < min_rank

    @staticmethod
    def _passes(item_type, item, viewer_id, marker_committee_id, min_rank) -> bool:
        if ConfidentialityGate.has_active_grant(item_type, item.id, viewer_id):
            return True
        if _owner_id(item_type, item) == viewer_id:
            return True
        rank = OrganizationDirectory.chairman_office_rank(viewer_id)
        if ConfidentialityGate.rank_passes(rank, min_rank):
            return True
        return OrganizationDirectory.is_head(viewer_id, marker_committee_id)

    @staticmethod
    def _passes_marking(item_type, item, marking, viewer_id) -> bool:
        return ConfidentialityGate._passes(
            item_type, item, viewer_id,
            marking.marker_committee_id, marking.min_chairman_office_rank,
        )

    @staticmethod
    def can_view(item_type: str, item_id: int, viewer_id: int) -> bool:
        item = ConfidentialityGate.get_item(item_type, item_id)
        marking = ConfidentialityGate.get_active_marking(item_type, item_id)
        if marking is None:
            return True
        return ConfidentialityGate._passes_marking(item_type, item, marking, viewer_id)

    @staticmethod
    def authorize_view(item_type: str, item_id: int, viewer_id: int):
        """Return the item, or raise AccessDeniedError without naming the reason."""
        item = ConfidentialityGate.get_item(item_type, item_id)
        marking = ConfidentialityGate.get_active_marking(item_type, item_id)
        if marking is not None and not ConfidentialityGate._passes_marking(
            item_type, item, marking, viewer_id
        ):
            logger.warning("Confidential %s %s withheld from user %s", item_type, item_id, viewer_id,
                           extra={"item_type": item_type, "item_id": item_id, "actor_id": viewer_id})
            raise AccessDeniedError(item_type, item_id, viewer_id)
        return item

    @staticmethod
    def _filter_visible(item_type: str, items, viewer_id: int) -> list:
        items = list(items)
        if not items:
            return []
        ids = [i.id for i in items]
        markings = {
            m.item_id: m
            for m in ConfidentialityMarking.query.filter(
                ConfidentialityMarking.item_type == item_type,
                ConfidentialityMarking.item_id.in_(ids),
                ConfidentialityMarking.is_active.is_(True),
            )
        }
        return [
            i for i in items
            if i.id not in markings
            or ConfidentialityGate._passes_marking(item_type, i, markings[i.id], viewer_id)
        ]

    @staticmethod
    def filter_visible_reports(reports, viewer_id: int) -> list:
        return ConfidentialityGate._filter_visible("report", reports, viewer_id)

    @staticmethod
    def filter_visible_directives(directives, viewer_id: int) -> list:
        return ConfidentialityGate._filter_visible("directive", directives, viewer_id)

    @staticmethod
    def access_impact_preview(item_type: str, item_id: int, committee_id: int,
                              min_chairman_office_rank: int | None = None) -> dict:
        """
        Who would still see the item under a marking by *committee_id*.

        Evaluates every user against the visibility rules as if the marking
        were already active. Nothing is written.

        Returns:
            {"retain_access": [User, ...], "lose_access": [User, ...]}, each by id
        """
        item = ConfidentialityGate.get_item(item_type, item_id)
        OrganizationDirectory.get_committee(committee_id)

        retain, lose = [], []
        for user in User.query.order_by(User.id).all():
            if ConfidentialityGate._passes(item_type, item, user.id,
                                           committee_id, min_chairman_office_rank):
                retain.append(user)
            else:
                lose.append(user)
        return {"retain_access": retain, "lose_access": lose}

    # ── Marking ───────────────────────────────────────────────────────────

    @staticmethod
    def can_mark(item_type: str, item, user_id: int) -> bool:
        """The author / issuer, or a system admin."""
        if _owner_id(item_type, item) == user_id:
            return True
        user = OrganizationDirectory.get_user(user_id)
        return user.system_role == "system_admin"

    @staticmethod
    def mark(item_type: str, item_id: int, marked_by_id: int, marker_committee_id: int,
             reason: str | None = None, min_chairman_office_rank: int | None = None,
             marker_committee_level: str | None = None, dispatcher=None) -> ConfidentialityMarking:
        """
        Mark an item confidential, superseding any active marking.

        Raises:
            NotFoundError, ValidationError, AccessDeniedError
        """
        _check_item_type(item_type)
        committee = OrganizationDirectory.get_committee(marker_committee_id)
        if marker_committee_level is not None and marker_committee_level != committee.hierarchy_level:
            raise ValidationError(
                "marker_committee_level does not match the marker committee",
                details={"marker_committee_level": marker_committee_level},
            )
        if min_chairman_office_rank is not None and min_chairman_office_rank < 1:
            raise ValidationError("min_chairman_office_rank must be 1 or greater",
                                  details={"min_chairman_office_rank": min_chairman_office_rank})

        try:
            item = lock_document(_LIFECYCLES[item_type], item_id)
            if not ConfidentialityGate.can_mark(item_type, item, marked_by_id):
                raise AccessDeniedError(item_type, item_id, marked_by_id)

            now = datetime.now(timezone.utc)
            previous = ConfidentialityGate.get_active_marking(item_type, item_id)
            if previous is not None:
                previous.is_active = False
                previous.deactivated_at = now
                db.session.flush()

            marking = ConfidentialityMarking(
                item_type=item_type,
                item_id=item_id,
                marked_by_id=marked_by_id,
                marker_committee_id=committee.id,
                marker_committee_level=committee.hierarchy_level,
                min_chairman_office_rank=min_chairman_office_rank,
                reason=reason,
            )
            db.session.add(marking)
            item.is_confidential = True
            db.session.flush()
            write_audit(
                entity_type=item_type, entity_id=item_id, action="confidentiality.mark",
                actor_user_id=marked_by_id,
                diff={"marking_id": marking.id,
                      "superseded_marking_id": previous.id if previous else None,
                      "marker_committee_id": committee.id,
                      "min_chairman_office_rank": min_chairman_office_rank},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("%s %s marked confidential", item_type, item_id,
                    extra={"item_type": item_type, "item_id": item_id, "actor_id": marked_by_id,
                           "committee_id": committee.id})
        resolve_dispatcher(dispatcher).dispatch([ConfidentialityMarked(
            item_type=item_type, item_id=item_id,
            marked_by_id=marked_by_id, marker_committee_id=committee.id,
        )])
        return marking

    @staticmethod
    def remove_marking(item_type: str, item_id: int, user_id: int) -> ConfidentialityMarking:
        """Lift the active marking. Only the original marker or a system admin may."""
        _check_item_type(item_type)
        try:
            item = lock_document(_LIFECYCLES[item_type], item_id)
            marking = ConfidentialityGate.get_active_marking(item_type, item_id)
            if marking is None:
                raise NotFoundError(resource="ConfidentialityMarking")
            user = OrganizationDirectory.get_user(user_id)
            if marking.marked_by_id != user_id and user.system_role != "system_admin":
                raise AccessDeniedError(item_type, item_id, user_id)

            marking.is_active = False
            marking.deactivated_at = datetime.now(timezone.utc)
            item.is_confidential = False
            write_audit(
                entity_type=item_type, entity_id=item_id, action="confidentiality.unmark",
                actor_user_id=user_id, diff={"marking_id": marking.id},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("%s %s unmarked", item_type, item_id,
                    extra={"item_type": item_type, "item_id": item_id, "actor_id": user_id})
        return marking

    # ── Grants ────────────────────────────────────────────────────────────

    @staticmethod
    def grant(item_type: str, item_id: int, granted_to_user_id: int, granted_by_id: int,
              reason: str | None = None, dispatcher=None) -> AccessGrant:
        """
        Give one user visibility of an item. Re-granting refreshes the
        reason and timestamp (and reactivates a revoked grant) instead of
        adding a row.

        The granter must be able to see the item themselves.
        """
        ConfidentialityGate.get_item(item_type, item_id)
        OrganizationDirectory.get_user(granted_to_user_id)
        if not ConfidentialityGate.can_view(item_type, item_id, granted_by_id):
            raise AccessDeniedError(item_type, item_id, granted_by_id)

        def _upsert():
            now = datetime.now(timezone.utc)
            existing = AccessGrant.query.filter_by(
                item_type=item_type, item_id=item_id, granted_to_user_id=granted_to_user_id,
            ).first()
            if existing is None:
                existing = AccessGrant(
                    item_type=item_type, item_id=item_id,
                    granted_to_user_id=granted_to_user_id,
                    granted_by_id=granted_by_id, reason=reason, granted_at=now,
                )
                db.session.add(existing)
            else:
                existing.reason = reason
                existing.granted_by_id = granted_by_id
                existing.granted_at = now
                existing.is_active = True
                existing.revoked_at = None
            db.session.flush()
            write_audit(
                entity_type=item_type, entity_id=item_id, action="confidentiality.grant",
                actor_user_id=granted_by_id,
                diff={"grant_id": existing.id, "granted_to_user_id": granted_to_user_id},
            )
            db.session.commit()
            return existing

        try:
            grant = _upsert()
        except IntegrityError:
            # A concurrent grant for the same pair won; update that row instead
            db.session.rollback()
            try:
                grant = _upsert()
            except Exception:
                db.session.rollback()
                raise
        except Exception:
            db.session.rollback()
            raise

        logger.info("Access to %s %s granted to user %s", item_type, item_id, granted_to_user_id,
                    extra={"item_type": item_type, "item_id": item_id, "actor_id": granted_by_id})
        resolve_dispatcher(dispatcher).dispatch([AccessGranted(
            item_type=item_type, item_id=item_id,
            granted_to_user_id=granted_to_user_id, granted_by_id=granted_by_id,
        )])
        return grant

    @staticmethod
    def revoke_grant(item_type: str, item_id: int, granted_to_user_id: int,
                     revoked_by_id: int) -> AccessGrant:
        grant = AccessGrant.query.filter_by(
            item_type=item_type, item_id=item_id,
            granted_to_user_id=granted_to_user_id, is_active=True,
        ).first()
        if grant is None:
            raise NotFoundError(resource="AccessGrant")
        item = ConfidentialityGate.get_item(item_type, item_id)
        revoker = OrganizationDirectory.get_user(revoked_by_id)
        if revoked_by_id not in (grant.granted_by_id, _owner_id(item_type, item)) \
                and revoker.system_role != "system_admin":
            raise AccessDeniedError(item_type, item_id, revoked_by_id)
        try:
            grant.is_active = False
            grant.revoked_at = datetime.now(timezone.utc)
            write_audit(
                entity_type=item_type, entity_id=item_id, action="confidentiality.revoke",
                actor_user_id=revoked_by_id,
                diff={"grant_id": grant.id, "granted_to_user_id": granted_to_user_id},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("Access to %s %s revoked for user %s", item_type, item_id, granted_to_user_id,
                    extra={"item_type": item_type, "item_id": item_id, "actor_id": revoked_by_id})
        return grant
