"""
Organization Directory — committees, memberships and hierarchy queries.

Read operations answer the three questions the workflow engine asks:
    active_members(committee_id)              → set of user ids
    is_descendant(child_id, ancestor_id)      → bool (self counts)
    chairman_office_rank(user_id)             → int | None

Write operations keep the hierarchy invariant: a committee sits exactly
one level below its parent, and only the root has no parent.
"""

import logging
from datetime import datetime, timezone

from accountability.core.exceptions import NotFoundError, ValidationError
from accountability.models import db
from accountability.models.audit import write_audit
from accountability.models.organization import (
    COMMITTEE_ROLES,
    HIERARCHY_LEVELS,
    SYSTEM_ROLES,
    Committee,
    CommitteeMembership,
    User,
    level_index,
)
from accountability.utils.helpers import require_fields

logger = logging.getLogger(__name__)


class OrganizationDirectory:
    """Stateless service class for organization queries and membership changes."""

    # ── Users ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_user(user_id: int) -> User:
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError(resource="User", resource_id=user_id)
        return user

    @staticmethod
    def create_user(data: dict) -> User:
        require_fields(data, "email", "full_name")
        role = data.get("system_role", "user")
        if role not in SYSTEM_ROLES:
            raise ValidationError(f"Unknown system_role '{role}'", details={"system_role": role})
        rank = data.get("chairman_office_rank")
        if rank is not None and role != "chairman_office":
            raise ValidationError(
                "chairman_office_rank is only valid for chairman_office users",
                details={"chairman_office_rank": rank},
            )
        user = User(
            email=data["email"].strip().lower(),
            full_name=data["full_name"].strip(),
            system_role=role,
            chairman_office_rank=rank,
        )
        db.session.add(user)
        db.session.commit()
        return user

    @staticmethod
    def system_actor(email: str) -> User:
        """Return the user that authors automatic transitions, creating it on first use.

        Flushes only; the caller's transaction commits it.
        """
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(email=email, full_name="System", system_role="system_admin")
            db.session.add(user)
            db.session.flush()
            logger.info("Created system actor %s", email)
        return user

    @staticmethod
    def chairman_office_rank(user_id: int) -> int | None:
        user = db.session.get(User, user_id)
        if user is None or user.system_role != "chairman_office":
            return None
        return user.chairman_office_rank

    # ── Committees ────────────────────────────────────────────────────────

    @staticmethod
    def get_committee(committee_id: int) -> Committee:
        committee = db.session.get(Committee, committee_id)
        if committee is None:
            raise NotFoundError(resource="Committee", resource_id=committee_id)
        return committee

    @staticmethod
    def create_committee(data: dict, actor_id: int | None = None) -> Committee:
        """Create a committee one level below its parent (or a top_level root)."""
        require_fields(data, "name", "hierarchy_level")
        level = data["hierarchy_level"]
        if level not in HIERARCHY_LEVELS:
            raise ValidationError(
                f"Unknown hierarchy_level '{level}'", details={"hierarchy_level": level},
            )

        parent_id = data.get("parent_committee_id")
        if parent_id is None:
            if level != HIERARCHY_LEVELS[0]:
                raise ValidationError(
                    "Only top_level committees may have no parent",
                    details={"hierarchy_level": level},
                )
        else:
            parent = OrganizationDirectory.get_committee(parent_id)
            if level_index(level) != level_index(parent.hierarchy_level) + 1:
                raise ValidationError(
                    f"A {level} committee cannot sit under a {parent.hierarchy_level} committee",
                    details={"hierarchy_level": level, "parent_level": parent.hierarchy_level},
                )

        committee = Committee(
            name=data["name"].strip(),
            hierarchy_level=level,
            parent_committee_id=parent_id,
            sector=data.get("sector"),
            description=data.get("description"),
        )
        db.session.add(committee)
        db.session.flush()
        write_audit(
            entity_type="committee", entity_id=committee.id, action="committee.create",
            actor_user_id=actor_id,
            diff={"name": committee.name, "hierarchy_level": level, "parent_committee_id": parent_id},
        )
        db.session.commit()
        logger.info("Committee created: %s", committee.name, extra={"committee_id": committee.id})
        return committee

    @staticmethod
    def descendant_committee_ids(committee_id: int) -> set[int]:
        """Return the committee and every committee below it."""
        found = {committee_id}
        frontier = [committee_id]
        while frontier:
            rows = (
                db.session.query(Committee.id)
                .filter(Committee.parent_committee_id.in_(frontier))
                .all()
            )
            frontier = [r.id for r in rows if r.id not in found]
            found.update(frontier)
        return found

    @staticmethod
    def is_descendant(child_committee_id: int, ancestor_committee_id: int) -> bool:
        """True when *child* equals *ancestor* or sits anywhere beneath it."""
        current = db.session.get(Committee, child_committee_id)
        seen = set()
        while current is not None and current.id not in seen:
            if current.id == ancestor_committee_id:
                return True
            seen.add(current.id)
            current = current.parent
        return False

    # ── Memberships ───────────────────────────────────────────────────────

    @staticmethod
    def _active_memberships(committee_id: int, roles=None):
        q = CommitteeMembership.query.filter(
            CommitteeMembership.committee_id == committee_id,
            CommitteeMembership.effective_to.is_(None),
        )
        if roles is not None:
            q = q.filter(CommitteeMembership.role.in_(tuple(roles)))
        return q

    @staticmethod
    def active_members(committee_id: int, roles=None) -> set[int]:
        """User ids of active members; *roles* narrows to head and/or member."""
        rows = OrganizationDirectory._active_memberships(committee_id, roles).all()
        return {m.user_id for m in rows}

    @staticmethod
    def is_member(user_id: int, committee_id: int) -> bool:
        return (
            OrganizationDirectory._active_memberships(committee_id)
            .filter(CommitteeMembership.user_id == user_id)
            .first()
            is not None
        )

    @staticmethod
    def is_head(user_id: int, committee_id: int) -> bool:
        return (
            OrganizationDirectory._active_memberships(committee_id, roles=("head",))
            .filter(CommitteeMembership.user_id == user_id)
            .first()
            is not None
        )

    @staticmethod
    def committees_of(user_id: int) -> set[int]:
        rows = CommitteeMembership.query.filter(
            CommitteeMembership.user_id == user_id,
            CommitteeMembership.effective_to.is_(None),
        ).all()
        return {m.committee_id for m in rows}

    @staticmethod
    def add_membership(user_id: int, committee_id: int, role: str = "member",
                       actor_id: int | None = None) -> CommitteeMembership:
        """Bind a user to a committee. A user holds at most one active membership per committee."""
        if role not in COMMITTEE_ROLES:
            raise ValidationError(f"Unknown committee role '{role}'", details={"role": role})
        OrganizationDirectory.get_user(user_id)
        OrganizationDirectory.get_committee(committee_id)
        existing = (
            OrganizationDirectory._active_memberships(committee_id)
            .filter(CommitteeMembership.user_id == user_id)
            .first()
        )
        if existing is not None:
            if existing.role == role:
                return existing
            raise ValidationError(
                f"User {user_id} is already an active {existing.role} of committee {committee_id}",
                details={"role": existing.role},
            )

        membership = CommitteeMembership(user_id=user_id, committee_id=committee_id, role=role)
        db.session.add(membership)
        db.session.flush()
        write_audit(
            entity_type="membership", entity_id=membership.id, action="membership.add",
            actor_user_id=actor_id,
            diff={"user_id": user_id, "committee_id": committee_id, "role": role},
        )
        db.session.commit()
        logger.info("User %s joined committee %s as %s", user_id, committee_id, role,
                    extra={"committee_id": committee_id, "actor_id": actor_id})
        return membership

    @staticmethod
    def end_membership(membership_id: int, actor_id: int | None = None) -> CommitteeMembership:
        """Close a membership. Rows are kept so past approvals keep their context."""
        membership = db.session.get(CommitteeMembership, membership_id)
        if membership is None:
            raise NotFoundError(resource="CommitteeMembership", resource_id=membership_id)
        if membership.effective_to is not None:
            return membership
        membership.effective_to = datetime.now(timezone.utc)
        write_audit(
            entity_type="membership", entity_id=membership.id, action="membership.end",
            actor_user_id=actor_id,
            diff={"user_id": membership.user_id, "committee_id": membership.committee_id},
        )
        db.session.commit()
        logger.info("Membership %s ended", membership_id,
                    extra={"committee_id": membership.committee_id, "actor_id": actor_id})
        return membership
