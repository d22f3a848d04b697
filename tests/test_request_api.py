"""
Request & approval action API tests.

Tests cover:
  - POST /api/v1/requests/<entity_type> (validation, identity, duplicates)
  - GET request detail, list, timeline and next approvers
  - POST /api/v1/requests/<id>/actions (preview, 409 on illegal transitions)
  - End-to-end: overseas travel request from submission to flight booking
"""

import pytest

from app.models.notification import UserNotification
from app.models.scheduling import EmailLog
from app.services import dedup_guard


def _create(client, requestor_id, entity_type="trf", **fields):
    body = {"requestor_id": requestor_id, "title": "Regional conference", "department": "Finance"}
    body.update(fields)
    return client.post(f"/api/v1/requests/{entity_type}", json=body)


def _act(client, entity_id, action, role, name="Actor", **fields):
    body = {"action": action, "actor_role": role, "actor_name": name}
    body.update(fields)
    return client.post(f"/api/v1/requests/{entity_id}/actions", json=body)


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateRequest:
    def test_create_and_submit(self, client, org):
        res = _create(client, org["requestor"].id, "claims", amount="88.20", currency="USD")
        assert res.status_code == 201
        data = res.get_json()
        assert data["request"]["current_status"] == "Pending Department Focal"
        assert data["request"]["amount"] == pytest.approx(88.2)
        assert data["notifications"]["templates"] == ["claims_submitted_to_focal"]
        assert {s["email"] for s in data["notifications"]["sent"]} == {
            "focal@corp.test", "requestor@corp.test",
        }

    def test_create_draft(self, client, org):
        res = _create(client, org["requestor"].id, "visa", submit=False)
        assert res.status_code == 201
        data = res.get_json()
        assert data["request"]["current_status"] == "Draft"
        assert data["notifications"] is None

    def test_requestor_from_header(self, client, org):
        res = client.post("/api/v1/requests/transport", json={"title": "Airport pickup"},
                          headers={"X-User-Id": str(org["requestor"].id)})
        assert res.status_code == 201
        assert res.get_json()["request"]["requestor_name"] == "Rita Requestor"

    def test_missing_requestor(self, client, org):
        res = client.post("/api/v1/requests/trf", json={"title": "x"})
        assert res.status_code == 400

    def test_inactive_requestor(self, client, seeded, make_user):
        gone = make_user("gone@corp.test", ["Requestor"], status="inactive")
        assert _create(client, gone.id).status_code == 400

    def test_unknown_entity_type(self, client, org):
        assert _create(client, org["requestor"].id, "loans").status_code == 404

    def test_missing_title(self, client, org):
        res = _create(client, org["requestor"].id, title="")
        assert res.status_code == 422
        assert res.get_json()["details"] == {"title": "required"}

    def test_non_json_body_rejected(self, client, org):
        res = client.post("/api/v1/requests/trf", data="title=x", content_type="text/plain")
        assert res.status_code == 415

    def test_duplicate_submission_in_flight(self, app, client, org, monkeypatch):
        monkeypatch.setitem(app.config, "DEDUP_FINGERPRINT_GRANULARITY", 3600)
        payload = {"title": "Regional conference", "department": "Finance"}
        fingerprint = dedup_guard.generate_fingerprint(org["requestor"].id, "create_trf", payload)
        dedup_guard.check_and_mark(fingerprint, ttl=30)

        res = _create(client, org["requestor"].id)
        assert res.status_code == 409
        data = res.get_json()
        assert data["code"] == "WF_DUPLICATE_REQUEST"
        assert 1 <= data["details"]["remaining_seconds"] <= 30
        assert res.headers["Retry-After"] == str(data["details"]["remaining_seconds"])

    def test_sequential_resubmission_allowed(self, client, org):
        assert _create(client, org["requestor"].id).status_code == 201
        assert _create(client, org["requestor"].id).status_code == 201


# ═════════════════════════════════════════════════════════════════════════
# READ
# ═════════════════════════════════════════════════════════════════════════

class TestReadRequest:
    def test_get_with_steps(self, client, org):
        entity_id = _create(client, org["requestor"].id).get_json()["request"]["id"]
        res = client.get(f"/api/v1/requests/{entity_id}")
        assert res.status_code == 200
        data = res.get_json()
        assert data["steps"][0]["action"] == "Submitted"

    def test_get_missing(self, client, app):
        res = client.get("/api/v1/requests/TRF-NOPE")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_list_filters(self, client, org):
        _create(client, org["requestor"].id, "trf")
        _create(client, org["requestor"].id, "claims", title="Taxi")
        res = client.get("/api/v1/requests?entity_type=claims")
        data = res.get_json()
        assert data["total"] == 1
        assert data["items"][0]["title"] == "Taxi"

    def test_next_approvers(self, client, org):
        entity_id = _create(client, org["requestor"].id).get_json()["request"]["id"]
        data = client.get(f"/api/v1/requests/{entity_id}/next-approvers").get_json()
        assert data["permission"] == "approve_trf_focal"
        assert [a["email"] for a in data["approvers"]] == ["focal@corp.test"]

    def test_timeline(self, client, org):
        entity_id = _create(client, org["requestor"].id).get_json()["request"]["id"]
        data = client.get(f"/api/v1/requests/{entity_id}/timeline").get_json()
        assert [row["status"] for row in data["timeline"]] == ["Completed", "Pending", "Not Started", "Not Started"]


# ═════════════════════════════════════════════════════════════════════════
# ACTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestActions:
    @pytest.fixture()
    def entity_id(self, client, org):
        return _create(client, org["requestor"].id).get_json()["request"]["id"]

    def test_preview_does_not_change_status(self, client, entity_id):
        res = _act(client, entity_id, "approve", "Department Focal", preview=True)
        assert res.get_json() == {"valid": True, "from": "Pending Department Focal",
                                  "to": "Pending Line Manager", "reason": None}
        assert client.get(f"/api/v1/requests/{entity_id}").get_json()["current_status"] == "Pending Department Focal"

    def test_illegal_transition_is_409(self, client, entity_id):
        res = _act(client, entity_id, "approve", "HOD")
        assert res.status_code == 409
        data = res.get_json()
        assert data["code"] == "WF_INVALID_TRANSITION"
        assert data["details"]["current_status"] == "Pending Department Focal"

    def test_reject_without_comments_is_422(self, client, entity_id):
        res = _act(client, entity_id, "reject", "Department Focal")
        assert res.status_code == 422

    def test_stale_expected_status_is_409(self, client, entity_id):
        res = _act(client, entity_id, "approve", "Department Focal", expected_status="Pending HOD")
        assert res.status_code == 409

    def test_actor_name_from_actor_id(self, client, org, entity_id):
        res = client.post(f"/api/v1/requests/{entity_id}/actions", json={
            "action": "approve", "actor_role": "Department Focal", "actor_id": org["focal"].id,
        })
        assert res.status_code == 200
        assert res.get_json()["step"]["actor_name"] == "Fiona Focal"

    def test_missing_fields(self, client, entity_id):
        assert client.post(f"/api/v1/requests/{entity_id}/actions",
                           json={"actor_role": "HOD"}).status_code == 400
        assert client.post(f"/api/v1/requests/{entity_id}/actions",
                           json={"action": "approve"}).status_code == 400
        assert client.post(f"/api/v1/requests/{entity_id}/actions",
                           json={"action": "approve", "actor_role": "Department Focal"}).status_code == 400


# ═════════════════════════════════════════════════════════════════════════
# END TO END
# ═════════════════════════════════════════════════════════════════════════

class TestOverseasTravelFlow:
    def test_submission_to_flight_booking(self, client, org):
        res = _create(client, org["requestor"].id, "trf", title="Partner summit",
                      travel_type="Overseas", start_date="2026-05-10", end_date="2026-05-14",
                      segments=[{"segment_type": "flight", "origin": "KUL", "destination": "SIN"}])
        entity_id = res.get_json()["request"]["id"]

        steps = [
            ("Department Focal", "Fiona Focal", "Pending Line Manager", "trf_focal_approved_to_manager",
             "manager@corp.test"),
            ("Line Manager", "Mark Manager", "Pending HOD", "trf_manager_approved_to_hod", "hod@corp.test"),
            ("HOD", "Helen Hod", "Approved", "trf_hod_approved_to_admin", "tickets@corp.test"),
        ]
        for role, name, status, template, next_email in steps:
            data = _act(client, entity_id, "approve", role, name).get_json()
            assert data["new_status"] == status
            assert data["notifications"]["templates"] == [template]
            to = [s["email"] for s in data["notifications"]["sent"] if s["kind"] == "to"]
            cc = [s["email"] for s in data["notifications"]["sent"] if s["kind"] == "cc"]
            assert to == [next_email]
            assert cc == ["requestor@corp.test"]

        booking = UserNotification.query.filter_by(user_id=org["ticketing"].id).one()
        assert booking.action_required is True
        assert booking.action_url == f"https://portal.test/trf/process/{entity_id}"

        first = _act(client, entity_id, "process", "Ticketing Admin", "Tom Tickets").get_json()
        assert first["new_status"] == "Processing with Ticketing Admin"
        assert first["notifications"] is None

        done = _act(client, entity_id, "process", "Ticketing Admin", "Tom Tickets").get_json()
        assert done["new_status"] == "Completed"
        assert done["notifications"]["templates"] == ["trf_admin_completed_to_requestor"]
        assert [s["email"] for s in done["notifications"]["sent"]] == ["requestor@corp.test"]

        timeline = client.get(f"/api/v1/requests/{entity_id}/timeline").get_json()["timeline"]
        assert [row["status"] for row in timeline] == [
            "Completed", "Approved", "Approved", "Approved", "Processed", "Processed",
        ]
        assert EmailLog.query.filter_by(entity_id=entity_id, status="failed").count() == 0
