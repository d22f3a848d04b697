"""
Notification, template, email log, scheduler and health API tests.

Tests cover:
  - In-app notifications: create, list, counts, read, read-all, dismiss
  - Ownership: other users' notifications are 404
  - Notification template CRUD (409 on duplicate name, invalid recipient type)
  - Email log filtering after a real workflow dispatch
  - Scheduler job listing, manual run and enable/disable toggle
  - Health probes
"""

import pytest


def _notify(client, user_id, title="Heads up", **fields):
    body = {"user_id": user_id, "title": title}
    body.update(fields)
    return client.post("/api/v1/notifications", json=body)


# ═════════════════════════════════════════════════════════════════════════
# IN-APP NOTIFICATIONS
# ═════════════════════════════════════════════════════════════════════════

class TestNotifications:
    def test_create_and_list(self, client, org):
        uid = org["requestor"].id
        assert _notify(client, uid, message="Body").status_code == 201
        data = client.get("/api/v1/notifications", headers={"X-User-Id": str(uid)}).get_json()
        assert data["total"] == 1
        assert data["items"][0]["title"] == "Heads up"

    def test_create_requires_fields(self, client, org):
        assert client.post("/api/v1/notifications", json={"title": "x"}).status_code == 400
        assert _notify(client, org["requestor"].id, title=" ").status_code == 400

    def test_invalid_type_is_422(self, client, org):
        res = _notify(client, org["requestor"].id, type="gossip")
        assert res.status_code == 422

    def test_list_requires_user(self, client, org):
        assert client.get("/api/v1/notifications").status_code == 400

    def test_counts_and_read_flow(self, client, org):
        uid = org["requestor"].id
        first = _notify(client, uid, type="approval_request", category="workflow_approval",
                        action_required=True).get_json()["id"]
        _notify(client, uid, title="Second")

        counts = client.get(f"/api/v1/notifications/counts?user_id={uid}").get_json()
        assert (counts["unread"], counts["pending_actions"], counts["approval_requests"]) == (2, 1, 1)

        res = client.put(f"/api/v1/notifications/{first}/read", headers={"X-User-Id": str(uid)})
        assert res.get_json()["is_read"] is True

        res = client.post("/api/v1/notifications/read-all", json={"user_id": uid})
        assert res.get_json() == {"updated": 1}
        assert client.get(f"/api/v1/notifications/counts?user_id={uid}").get_json()["unread"] == 0

    def test_mark_many_read(self, client, org):
        uid = org["requestor"].id
        ids = [_notify(client, uid, title=f"N{i}").get_json()["id"] for i in range(3)]
        res = client.post("/api/v1/notifications/read", json={"user_id": uid, "ids": ids[:2]})
        assert res.get_json() == {"updated": 2}
        assert client.post("/api/v1/notifications/read", json={"user_id": uid, "ids": []}).status_code == 400

    def test_dismiss_hides(self, client, org):
        uid = org["requestor"].id
        nid = _notify(client, uid).get_json()["id"]
        client.put(f"/api/v1/notifications/{nid}/dismiss", headers={"X-User-Id": str(uid)})
        data = client.get(f"/api/v1/notifications?user_id={uid}").get_json()
        assert data["total"] == 0

    def test_other_users_notification_is_404(self, client, org):
        nid = _notify(client, org["requestor"].id).get_json()["id"]
        res = client.put(f"/api/v1/notifications/{nid}/read", headers={"X-User-Id": str(org["hod"].id)})
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════

class TestNotificationTemplates:
    def test_list_by_entity_prefix(self, client, seeded):
        data = client.get("/api/v1/notification-templates?entity_type=visa").get_json()
        assert data["total"] > 0
        assert all(t["name"].startswith("visa_") for t in data["items"])

    def test_create_and_duplicate(self, client, seeded):
        body = {"name": "trf_reminder", "subject": "Reminder {{requestId}}", "body": "<p>Ping</p>",
                "recipient_type": "approver"}
        res = client.post("/api/v1/notification-templates", json=body)
        assert res.status_code == 201
        assert res.get_json()["recipient_type"] == "approver"

        dup = client.post("/api/v1/notification-templates", json=body)
        assert dup.status_code == 409
        assert dup.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_create_missing_fields(self, client, seeded):
        res = client.post("/api/v1/notification-templates", json={"name": "x"})
        assert res.status_code == 400
        assert "subject" in res.get_json()["error"]

    def test_update(self, client, seeded):
        tid = client.post("/api/v1/notification-templates",
                          json={"name": "t1", "subject": "s", "body": "b"}).get_json()["id"]
        res = client.put(f"/api/v1/notification-templates/{tid}", json={"is_active": False, "subject": "New"})
        assert res.get_json()["is_active"] is False
        assert res.get_json()["subject"] == "New"

        bad = client.put(f"/api/v1/notification-templates/{tid}", json={"recipient_type": "everyone"})
        assert bad.status_code == 400

    def test_update_missing(self, client, seeded):
        assert client.put("/api/v1/notification-templates/9999", json={"subject": "x"}).status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# EMAIL LOG
# ═════════════════════════════════════════════════════════════════════════

class TestEmailLogs:
    def test_filter_by_entity_and_kind(self, client, org, submit):
        entity = submit("claims")
        data = client.get(f"/api/v1/email-logs?entity_id={entity.id}").get_json()
        assert data["total"] == 2

        cc = client.get(f"/api/v1/email-logs?entity_id={entity.id}&recipient_kind=cc").get_json()
        assert [e["recipient_email"] for e in cc["items"]] == ["requestor@corp.test"]
        assert cc["items"][0]["status"] == "sent"


# ═════════════════════════════════════════════════════════════════════════
# SCHEDULER & HEALTH
# ═════════════════════════════════════════════════════════════════════════

class TestSchedulerJobs:
    def test_list(self, client, app):
        names = {j["job_name"] for j in client.get("/api/v1/scheduler/jobs").get_json()["jobs"]}
        assert {"workflow_timeout_sweep", "dedup_fingerprint_sweep", "stale_notification_cleanup"} <= names

    def test_run(self, client, app):
        res = client.post("/api/v1/scheduler/jobs/dedup_fingerprint_sweep/run", json={})
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "success"
        assert data["result"] == {"removed": 0, "pending": 0}

    def test_unknown_job(self, client, app):
        assert client.post("/api/v1/scheduler/jobs/nope/run", json={}).status_code == 404
        assert client.patch("/api/v1/scheduler/jobs/nope/toggle", json={"enabled": False}).status_code == 404

    def test_disabled_job_skipped_unless_forced(self, client, app):
        res = client.patch("/api/v1/scheduler/jobs/stale_notification_cleanup/toggle", json={"enabled": False})
        assert res.get_json()["status"] == "paused"

        url = "/api/v1/scheduler/jobs/stale_notification_cleanup/run"
        assert client.post(url, json={}).get_json()["status"] == "skipped"
        assert client.post(url, json={"force": True}).get_json()["status"] == "success"

    def test_toggle_requires_flag(self, client, app):
        assert client.patch("/api/v1/scheduler/jobs/workflow_timeout_sweep/toggle", json={}).status_code == 400


class TestHealth:
    def test_ready(self, client):
        assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}

    @pytest.mark.parametrize("check", ["database", "dedup_store", "scheduler"])
    def test_live(self, client, check):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"][check]["status"] == "ok"
