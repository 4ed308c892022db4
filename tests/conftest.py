"""
Shared pytest fixtures for the workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: a small committee hierarchy with users and memberships
"""

from types import SimpleNamespace

import pytest

from accountability import create_app
from accountability.models import db as _db
from accountability.services.organization_directory import OrganizationDirectory


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Organization fixture ─────────────────────────────────────────────────


def _user(name, role="user", rank=None):
    return OrganizationDirectory.create_user({
        "email": f"{name}@example.org",
        "full_name": name.replace("_", " ").title(),
        "system_role": role,
        "chairman_office_rank": rank,
    })


def _committee(name, level, parent=None):
    return OrganizationDirectory.create_committee({
        "name": name,
        "hierarchy_level": level,
        "parent_committee_id": parent.id if parent else None,
    })


@pytest.fixture()
def org():
    """
    Hierarchy:
        board (top_level)
        ├── ops (directors)        head_ops, member_1, member_2
        │   └── finance (functions)  head_fin, clerk
        │       └── payroll (processes)
        └── legal (directors)      head_legal

    ``author`` belongs to no committee; ``office_1`` / ``office_3`` are
    Chairman's Office users with ranks 1 and 3.
    """
    ns = SimpleNamespace()
    ns.chairman = _user("chairman", role="chairman")
    ns.admin = _user("admin", role="system_admin")
    ns.head_ops = _user("head_ops")
    ns.member_1 = _user("member_1")
    ns.member_2 = _user("member_2")
    ns.head_fin = _user("head_fin")
    ns.clerk = _user("clerk")
    ns.head_legal = _user("head_legal")
    ns.author = _user("author")
    ns.outsider = _user("outsider")
    ns.office_1 = _user("office_1", role="chairman_office", rank=1)
    ns.office_3 = _user("office_3", role="chairman_office", rank=3)

    ns.board = _committee("Board", "top_level")
    ns.ops = _committee("Operations", "directors", ns.board)
    ns.legal = _committee("Legal", "directors", ns.board)
    ns.finance = _committee("Finance", "functions", ns.ops)
    ns.payroll = _committee("Payroll", "processes", ns.finance)

    OrganizationDirectory.add_membership(ns.chairman.id, ns.board.id, "head")
    OrganizationDirectory.add_membership(ns.head_ops.id, ns.ops.id, "head")
    OrganizationDirectory.add_membership(ns.member_1.id, ns.ops.id, "member")
    OrganizationDirectory.add_membership(ns.member_2.id, ns.ops.id, "member")
    OrganizationDirectory.add_membership(ns.head_fin.id, ns.finance.id, "head")
    OrganizationDirectory.add_membership(ns.clerk.id, ns.finance.id, "member")
    OrganizationDirectory.add_membership(ns.head_legal.id, ns.legal.id, "head")
    return ns
