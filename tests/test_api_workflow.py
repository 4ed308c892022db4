"""
Workflow API tests (Flask test client).

Tests cover:
  - Organization setup through the API
  - Report submit → approvals → approved over HTTP
  - Error code / status mapping for every workflow error
  - Confidential item filtering on read endpoints
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from accountability.services.report_workflow import ReportWorkflow

BASE = "/api/v1"


def _post(client, path, **body):
    return client.post(f"{BASE}{path}", json=body)


@pytest.fixture()
def setup(client):
    """Two committees (ops under board) and four users; ops has head + 2 members."""
    ids = {}
    for name in ("chair", "head", "m1", "m2", "author", "outsider"):
        res = _post(client, "/users", email=f"{name}@example.org", full_name=name.title())
        assert res.status_code == 201
        ids[name] = res.get_json()["id"]

    res = _post(client, "/committees", name="Board", hierarchy_level="top_level")
    assert res.status_code == 201
    ids["board"] = res.get_json()["id"]
    res = _post(client, "/committees", name="Ops", hierarchy_level="directors",
                parent_committee_id=ids["board"])
    ids["ops"] = res.get_json()["id"]
    res = _post(client, "/committees", name="Finance", hierarchy_level="functions",
                parent_committee_id=ids["ops"])
    ids["finance"] = res.get_json()["id"]
    res = _post(client, "/committees", name="Legal", hierarchy_level="directors",
                parent_committee_id=ids["board"])
    ids["legal"] = res.get_json()["id"]

    for user, role in (("head", "head"), ("m1", "member"), ("m2", "member")):
        res = _post(client, f"/committees/{ids['ops']}/members", member_id=ids[user], role=role)
        assert res.status_code == 201
    return ids


def _report(client, ids, **extra):
    body = {"user_id": ids["author"], "title": "Weekly ops", "committee_id": ids["ops"]}
    body.update(extra)
    res = client.post(f"{BASE}/reports", json=body)
    assert res.status_code == 201
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# ORGANIZATION
# ═════════════════════════════════════════════════════════════════════════

class TestOrganizationAPI:
    def test_bad_level_is_422(self, client, setup):
        res = _post(client, "/committees", name="X", hierarchy_level="processes",
                    parent_committee_id=setup["board"])
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_list_members(self, client, setup):
        res = client.get(f"{BASE}/committees/{setup['ops']}/members")
        assert res.status_code == 200
        assert res.get_json()["user_ids"] == sorted([setup["head"], setup["m1"], setup["m2"]])

    def test_health(self, client):
        assert client.get(f"{BASE}/health").get_json()["status"] == "ok"

    def test_database_error_is_500(self, client, monkeypatch):
        def _broken(committee_id=None):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(ReportWorkflow, "report_stats", staticmethod(_broken))
        res = client.get(f"{BASE}/reports/stats")
        assert res.status_code == 500
        body = res.get_json()
        assert body["code"] == "ERR_DATABASE"
        assert "locked" not in body["error"]


# ═════════════════════════════════════════════════════════════════════════
# REPORTS
# ═════════════════════════════════════════════════════════════════════════

class TestReportAPI:
    def test_full_approval_flow(self, client, setup):
        report = _report(client, setup)
        res = _post(client, f"/reports/{report['id']}/submit", user_id=setup["author"])
        assert res.status_code == 200
        assert res.get_json()["status"] == "submitted"

        for user in ("m1", "m2"):
            res = _post(client, f"/reports/{report['id']}/approvals", user_id=setup[user])
            assert res.status_code == 201
            assert res.get_json()["report_status"] == "submitted"
        res = _post(client, f"/reports/{report['id']}/approvals", user_id=setup["head"])
        assert res.get_json()["report_status"] == "approved"

        res = client.get(f"{BASE}/reports/{report['id']}?viewer_id={setup['author']}")
        data = res.get_json()
        assert data["status"] == "approved"
        assert len(data["approvals"]) == 3
        assert data["pending_approvers"] == []

    def test_approvals_listing(self, client, setup):
        report = _report(client, setup)
        _post(client, f"/reports/{report['id']}/submit", user_id=setup["author"])
        _post(client, f"/reports/{report['id']}/approvals", user_id=setup["m1"])
        res = client.get(f"{BASE}/reports/{report['id']}/approvals?viewer_id={setup['author']}")
        data = res.get_json()
        assert [a["user_id"] for a in data["items"]] == [setup["m1"]]
        assert data["pending_user_ids"] == sorted([setup["head"], setup["m2"]])

    def test_missing_user_id(self, client, setup):
        res = client.post(f"{BASE}/reports", json={"title": "x", "committee_id": setup["ops"]})
        assert res.status_code == 422
        assert res.get_json()["details"] == {"user_id": "required"}

    def test_not_found(self, client, setup):
        res = client.get(f"{BASE}/reports/9999?viewer_id={setup['author']}")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_illegal_transition(self, client, setup):
        report = _report(client, setup)
        res = _post(client, f"/reports/{report['id']}/transition", user_id=setup["author"],
                    from_status="draft", to_status="summarized")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "WF_ILLEGAL_TRANSITION"
        assert body["details"] == {"from_status": "draft", "to_status": "summarized"}

    def test_stale_state(self, client, setup):
        report = _report(client, setup)
        _post(client, f"/reports/{report['id']}/submit", user_id=setup["author"])
        res = _post(client, f"/reports/{report['id']}/transition", user_id=setup["author"],
                    from_status="draft", to_status="submitted")
        assert res.status_code == 409
        assert res.get_json()["details"]["actual_status"] == "submitted"

    def test_not_a_member(self, client, setup):
        report = _report(client, setup)
        _post(client, f"/reports/{report['id']}/submit", user_id=setup["author"])
        res = _post(client, f"/reports/{report['id']}/approvals", user_id=setup["outsider"])
        assert res.status_code == 403
        assert res.get_json()["code"] == "WF_NOT_A_MEMBER"

    def test_feedback_and_resubmit(self, client, setup):
        report = _report(client, setup)
        _post(client, f"/reports/{report['id']}/submit", user_id=setup["author"])
        res = _post(client, f"/reports/{report['id']}/feedback", user_id=setup["m1"],
                    comment="Add the budget table")
        assert res.get_json()["status"] == "feedback_requested"

        res = _post(client, f"/reports/{report['id']}/resubmit", user_id=setup["author"],
                    body="Budget table added")
        assert res.status_code == 201
        revision = res.get_json()
        assert revision["version"] == 2
        assert revision["original_report_id"] == report["id"]

        res = client.get(f"{BASE}/reports/{revision['id']}/revisions?viewer_id={setup['author']}")
        assert [r["id"] for r in res.get_json()["items"]] == [report["id"], revision["id"]]

    def test_skip_approvals(self, client, setup):
        report = _report(client, setup, skip_approvals=True)
        res = _post(client, f"/reports/{report['id']}/transition", user_id=setup["author"],
                    from_status="draft", to_status="approved")
        assert res.status_code == 200
        assert res.get_json()["status"] == "approved"
        res = client.get(f"{BASE}/reports/{report['id']}/approvals?viewer_id={setup['author']}")
        assert res.get_json()["items"] == []


# ═════════════════════════════════════════════════════════════════════════
# DIRECTIVES
# ═════════════════════════════════════════════════════════════════════════

class TestDirectiveAPI:
    def test_forward_and_closure_gate(self, client, setup):
        res = _post(client, "/directives", user_id=setup["chair"], title="Freeze hiring",
                    target_committee_id=setup["ops"], deadline="2030-01-31")
        assert res.status_code == 201
        parent = res.get_json()

        res = _post(client, f"/directives/{parent['id']}/forward", user_id=setup["head"],
                    target_committee_id=setup["finance"], forwarding_annotation="Finance to execute")
        assert res.status_code == 201
        child = res.get_json()
        assert child["parent_directive_id"] == parent["id"]

        res = _post(client, f"/directives/{parent['id']}/transition", user_id=setup["chair"],
                    from_status="issued", to_status="closed")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "WF_CHILDREN_NOT_CLOSED"
        assert body["details"]["open_child_ids"] == [child["id"]]

        res = _post(client, f"/directives/{child['id']}/transition", user_id=setup["head"],
                    from_status="issued", to_status="closed")
        assert res.status_code == 200
        res = _post(client, f"/directives/{parent['id']}/transition", user_id=setup["chair"],
                    from_status="issued", to_status="closed")
        assert res.get_json()["status"] == "closed"

        res = client.get(f"{BASE}/directives/{child['id']}/tree?viewer_id={setup['chair']}")
        assert res.get_json()["directive"]["id"] == parent["id"]

        res = client.get(f"{BASE}/notifications?user_id={setup['chair']}")
        assert res.get_json()["total"] >= 1

    def test_invalid_forward_target(self, client, setup):
        parent = _post(client, "/directives", user_id=setup["chair"], title="Audit",
                       target_committee_id=setup["ops"]).get_json()
        res = _post(client, f"/directives/{parent['id']}/forward", user_id=setup["head"],
                    target_committee_id=setup["legal"])
        assert res.status_code == 422
        assert res.get_json()["code"] == "WF_INVALID_FORWARDING_TARGET"

    def test_forwardable_and_targetable_committees(self, client, setup):
        parent = _post(client, "/directives", user_id=setup["chair"], title="Audit",
                       target_committee_id=setup["ops"]).get_json()
        res = client.get(f"{BASE}/directives/{parent['id']}/forwardable-committees"
                         f"?viewer_id={setup['head']}")
        assert res.status_code == 200
        assert [c["id"] for c in res.get_json()["items"]] == [setup["ops"], setup["finance"]]

        res = client.get(f"{BASE}/users/{setup['head']}/targetable-committees")
        body = res.get_json()
        assert body["can_issue"] is True
        assert [c["id"] for c in body["items"]] == [setup["ops"], setup["finance"]]

        res = client.get(f"{BASE}/users/{setup['m1']}/targetable-committees")
        assert res.get_json() == {"can_issue": False, "items": []}


# ═════════════════════════════════════════════════════════════════════════
# CONFIDENTIALITY & SOURCE LINKS
# ═════════════════════════════════════════════════════════════════════════

class TestConfidentialityAPI:
    def test_marked_report_hidden(self, client, setup):
        report = _report(client, setup)
        res = _post(client, f"/confidential/report/{report['id']}/mark", user_id=setup["author"],
                    marker_committee_id=setup["ops"], reason="HR matter")
        assert res.status_code == 201

        res = client.get(f"{BASE}/reports/{report['id']}?viewer_id={setup['m1']}")
        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "WF_ACCESS_DENIED"
        assert "HR" not in body["error"]

        res = client.get(f"{BASE}/reports?viewer_id={setup['m1']}")
        assert res.get_json()["items"] == []

        res = _post(client, f"/confidential/report/{report['id']}/grants", user_id=setup["author"],
                    granted_to_user_id=setup["m1"])
        assert res.status_code == 201
        res = client.get(f"{BASE}/confidential/report/{report['id']}/can-view?viewer_id={setup['m1']}")
        assert res.get_json()["can_view"] is True

        res = client.delete(
            f"{BASE}/confidential/report/{report['id']}/grants/{setup['m1']}?user_id={setup['author']}"
        )
        assert res.status_code == 200
        res = client.get(f"{BASE}/confidential/report/{report['id']}/can-view?viewer_id={setup['m1']}")
        assert res.get_json()["can_view"] is False

    def test_head_of_marker_committee_sees(self, client, setup):
        report = _report(client, setup)
        _post(client, f"/confidential/report/{report['id']}/mark", user_id=setup["author"],
              marker_committee_id=setup["ops"])
        res = client.get(f"{BASE}/reports/{report['id']}?viewer_id={setup['head']}")
        assert res.status_code == 200


    def test_revisions_and_approvals_gated(self, client, setup):
        report = _report(client, setup)
        _post(client, f"/reports/{report['id']}/submit", user_id=setup["author"])
        _post(client, f"/reports/{report['id']}/feedback", user_id=setup["m1"], comment="Redo")
        revision = _post(client, f"/reports/{report['id']}/resubmit",
                         user_id=setup["author"]).get_json()
        _post(client, f"/confidential/report/{revision['id']}/mark", user_id=setup["author"],
              marker_committee_id=setup["ops"], reason="Board only")

        for path in ("revisions", "approvals"):
            res = client.get(f"{BASE}/reports/{revision['id']}/{path}?viewer_id={setup['outsider']}")
            assert res.status_code == 403
            assert res.get_json()["code"] == "WF_ACCESS_DENIED"

        # The unmarked first version stays readable, the marked revision drops out
        res = client.get(f"{BASE}/reports/{report['id']}/revisions?viewer_id={setup['outsider']}")
        assert res.status_code == 200
        assert [r["id"] for r in res.get_json()["items"]] == [report["id"]]

        res = client.get(f"{BASE}/reports/{revision['id']}/revisions?viewer_id={setup['author']}")
        assert [r["id"] for r in res.get_json()["items"]] == [report["id"], revision["id"]]

    def test_access_impact_preview(self, client, setup):
        report = _report(client, setup)
        res = client.get(f"{BASE}/confidential/report/{report['id']}/impact"
                         f"?user_id={setup['author']}&committee_id={setup['ops']}")
        assert res.status_code == 200
        body = res.get_json()
        assert body["retain_access"] == sorted([setup["head"], setup["author"]])
        assert setup["m1"] in body["lose_access"]

        res = client.get(f"{BASE}/confidential/report/{report['id']}/impact"
                         f"?user_id={setup['m1']}&committee_id={setup['ops']}")
        assert res.status_code == 403

    def test_revisions_require_viewer(self, client, setup):
        report = _report(client, setup)
        res = client.get(f"{BASE}/reports/{report['id']}/revisions")
        assert res.status_code == 422
        assert res.get_json()["details"] == {"viewer_id": "required"}

    def test_deadline_lists_filtered(self, client, setup):
        soon = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
        overdue = _post(client, "/directives", user_id=setup["chair"], title="Secret overdue",
                        target_committee_id=setup["ops"], deadline="2020-01-31").get_json()
        approaching = _post(client, "/directives", user_id=setup["chair"], title="Secret soon",
                            target_committee_id=setup["ops"], deadline=soon).get_json()
        for directive in (overdue, approaching):
            res = _post(client, f"/confidential/directive/{directive['id']}/mark",
                        user_id=setup["chair"], marker_committee_id=setup["board"])
            assert res.status_code == 201

        for path, directive in (("overdue", overdue), ("approaching", approaching)):
            res = client.get(f"{BASE}/directives/{path}?viewer_id={setup['outsider']}")
            assert res.status_code == 200
            assert res.get_json()["items"] == []

            res = client.get(f"{BASE}/directives/{path}?viewer_id={setup['chair']}")
            assert [d["id"] for d in res.get_json()["items"]] == [directive["id"]]


class TestSourceLinkAPI:
    def test_cycle_and_duplicate(self, client, setup):
        a = _report(client, setup, title="A")
        b = _report(client, setup, title="B")
        res = _post(client, f"/reports/{a['id']}/sources", user_id=setup["author"],
                    source_report_id=b["id"], annotation="feeds A")
        assert res.status_code == 201

        res = _post(client, f"/reports/{a['id']}/sources", user_id=setup["author"],
                    source_report_id=b["id"])
        assert res.status_code == 409
        assert res.get_json()["code"] == "WF_LINK_DUPLICATE"

        res = _post(client, f"/reports/{b['id']}/sources", user_id=setup["author"],
                    source_report_id=a["id"])
        assert res.status_code == 422
        assert res.get_json()["code"] == "WF_LINK_CYCLE"

        res = client.get(f"{BASE}/reports/{a['id']}/sources?viewer_id={setup['author']}")
        assert [r["id"] for r in res.get_json()["items"]] == [b["id"]]

        res = client.get(f"{BASE}/reports/{a['id']}/drill-down?viewer_id={setup['author']}")
        assert res.get_json()["depth"] == 1
