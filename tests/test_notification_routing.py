"""
Notification routing tests.

Tests cover:
  - Template selection from (event type, current status)
  - Placeholder and conditional-block rendering, HTML stripping
  - TO/CC partitioning (requestor always CC'd on approver templates)
  - dispatch(): in-app + email per recipient, skip reasons, final-notice
    fallback and per-recipient failure isolation
"""

from datetime import date
from unittest.mock import patch

import pytest

from app.core.exceptions import NoRecipientsFound, TemplateNotFound
from app.models import db
from app.models.notification import UserNotification
from app.models.request import ENTITY_TYPES
from app.models.scheduling import EmailLog
from app.services import template_renderer as renderer
from app.services import workflow_state_machine as sm
from app.services.recipient_builder import Recipient, build_recipients
from app.services.template_router import load_template, templates_for
from app.services.workflow_notification import dispatch


def _logs(entity_id, template=None):
    q = EmailLog.query.filter_by(entity_id=entity_id)
    if template:
        q = q.filter_by(template_name=template)
    return q.order_by(EmailLog.id).all()


# ═════════════════════════════════════════════════════════════════════════
# TEMPLATE ROUTER
# ═════════════════════════════════════════════════════════════════════════

class TestTemplateRouter:
    @pytest.mark.parametrize("event,status,expected", [
        ("trf_submitted", "Pending Department Focal", "trf_submitted_to_focal"),
        ("claims_approved", "Pending Line Manager", "claims_focal_approved_to_manager"),
        ("visa_approved", "Pending HOD", "visa_manager_approved_to_hod"),
        ("trf_approved", "Approved", "trf_hod_approved_to_admin"),
        ("claims_processing", "Processing with Claims Admin", "claims_hod_approved_to_admin"),
        ("trf_completed", "Completed", "trf_admin_completed_to_requestor"),
        ("visa_completed", "Processed", "visa_admin_completed_to_requestor"),
        ("transport_rejected", "Rejected", "transport_rejected_requestor"),
    ])
    def test_consolidated_names(self, event, status, expected):
        assert templates_for(event, status) == [expected]

    def test_unknown_event_falls_through(self):
        assert templates_for("trf_reminder", "Draft") == ["trf_reminder"]

    def test_load_template_inactive(self, seeded):
        tpl = load_template("trf_submitted_to_focal")
        tpl.is_active = False
        db.session.commit()
        with pytest.raises(TemplateNotFound):
            load_template("trf_submitted_to_focal")


# ═════════════════════════════════════════════════════════════════════════
# RENDERER
# ═════════════════════════════════════════════════════════════════════════

class TestRenderer:
    def test_placeholders(self):
        assert renderer.render("Hi {name}, see {url}", {"name": "Ana", "url": "x"}) == "Hi Ana, see x"

    def test_unknown_placeholder_is_blank(self):
        assert renderer.render("[{missing}]", {}) == "[]"

    def test_conditional_block(self):
        tpl = "A{comments && <p>Comments: {comments}</p>}B"
        assert renderer.render(tpl, {"comments": "looks fine"}) == "A<p>Comments: looks fine</p>B"
        assert renderer.render(tpl, {"comments": ""}) == "AB"
        assert renderer.render(tpl, {"comments": "   "}) == "AB"

    def test_braces_in_values_are_printed_as_typed(self):
        assert renderer.render("{c && Comments: {c}}", {"c": "see {x"}) == "Comments: see {x"
        assert renderer.render("Note: {c}", {"c": "{x && leak}", "x": "1"}) == "Note: {x && leak}"
        assert renderer.render("{c && [{c}]}", {"c": "{c}"}) == "[{c}]"

    def test_strip_html(self):
        assert renderer.strip_html("<p>Tom &amp; <b>Jerry</b></p>\n\n<p>x</p>") == "Tom & Jerry x"
        long = renderer.strip_html("<p>" + "a" * 600 + "</p>", limit=20)
        assert len(long) == 20
        assert long.endswith("...")

    def test_action_url(self, app):
        assert renderer.action_url("trf", "approve", "TRF-1") == "https://portal.test/trf/approve/TRF-1"

    def test_build_variables_defaults(self, submit):
        entity = submit("claims", notify=False, amount="1500", currency="MYR",
                        start_date="2026-03-01", end_date="2026-03-04")
        entity.department = None
        variables = renderer.build_variables(entity, approver_name="Fiona Focal")
        assert variables["entityAmount"] == "MYR 1,500.00"
        assert variables["entityDates"] == "2026-03-01 to 2026-03-04"
        assert variables["department"] == "Unknown"
        assert variables["staffId"] == "S-100"
        assert variables["approverName"] == "Fiona Focal"
        assert variables["processingUrl"].endswith(f"/claims/process/{entity.id}")
        assert all(isinstance(v, str) for v in variables.values())

    def test_dates_and_amount_not_specified(self, submit):
        entity = submit("visa", notify=False)
        variables = renderer.build_variables(entity)
        assert variables["entityAmount"] == "Not specified"
        assert variables["entityDates"] == "Not specified"
        assert renderer._format_dates(date(2026, 1, 2), None) == "2026-01-02"


# ═════════════════════════════════════════════════════════════════════════
# RECIPIENT BUILDER
# ═════════════════════════════════════════════════════════════════════════

def _r(email, role="Line Manager", uid=None):
    return Recipient(user_id=uid, name=email, email=email, role=role)


class TestRecipientBuilder:
    def test_approver_template(self):
        requestor = _r("req@corp.test", role="Requestor")
        result = build_recipients("approver", [_r("a@corp.test"), _r("A@corp.test"), _r("")], requestor)
        assert [r.email for r in result.to] == ["a@corp.test"]
        assert [r.email for r in result.cc] == ["req@corp.test"]
        assert result.cc[0].membership == "cc"

    def test_requestor_who_is_also_approver_still_cc(self):
        requestor = _r("boss@corp.test", role="Requestor")
        result = build_recipients("approver", [_r("boss@corp.test", role="HOD")], requestor)
        assert [r.email for r in result.to] == ["boss@corp.test"]
        assert [r.email for r in result.cc] == ["boss@corp.test"]

    def test_missing_requestor_email_is_a_warning(self):
        result = build_recipients("approver", [_r("a@corp.test")], None, template_name="t")
        assert result.cc == []
        assert result.warnings

    def test_requestor_template(self):
        result = build_recipients("requestor", [_r("a@corp.test")], _r("req@corp.test", role="Requestor"))
        assert [r.email for r in result.to] == ["req@corp.test"]
        assert result.cc == []

    def test_both_template(self):
        requestor = _r("req@corp.test", role="Requestor")
        result = build_recipients("both", [_r("a@corp.test"), _r("req@corp.test")], requestor)
        assert [r.email for r in result.to] == ["a@corp.test", "req@corp.test"]
        assert result.cc == []

    def test_empty_to_raises(self):
        with pytest.raises(NoRecipientsFound):
            build_recipients("approver", [], _r("req@corp.test", role="Requestor"), template_name="x")
        with pytest.raises(NoRecipientsFound):
            build_recipients("requestor", [], None)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            build_recipients("everyone", [], None)


# ═════════════════════════════════════════════════════════════════════════
# DISPATCH
# ═════════════════════════════════════════════════════════════════════════

class TestDispatch:
    def test_submission_notifies_focal_and_ccs_requestor(self, org, submit):
        entity = submit("trf")
        logs = _logs(entity.id, "trf_submitted_to_focal")
        assert [(l.recipient_email, l.recipient_kind, l.status) for l in logs] == [
            ("focal@corp.test", "to", "sent"),
            ("requestor@corp.test", "cc", "sent"),
        ]
        assert entity.id in logs[0].subject

        focal_note = UserNotification.query.filter_by(user_id=org["focal"].id).one()
        assert focal_note.type == "approval_request"
        assert focal_note.action_required is True
        assert focal_note.priority == "high"
        assert focal_note.action_url == f"https://portal.test/trf/approve/{entity.id}"
        assert "<" not in focal_note.message

        requestor_note = UserNotification.query.filter_by(user_id=org["requestor"].id).one()
        assert requestor_note.type == "status_update"
        assert requestor_note.action_required is False
        assert requestor_note.action_url.endswith(f"/trf/view/{entity.id}")

    @pytest.mark.parametrize("entity_type", ENTITY_TYPES)
    def test_every_entity_type_routes_submission_to_department_focal(self, org, submit, entity_type):
        entity = submit(entity_type)
        logs = _logs(entity.id, f"{entity_type}_submitted_to_focal")
        assert [(l.recipient_email, l.recipient_kind) for l in logs] == [
            ("focal@corp.test", "to"),
            ("requestor@corp.test", "cc"),
        ]

    def test_inactive_requestor_still_copied(self, org, submit):
        entity = submit("claims", notify=False)
        org["requestor"].status = "inactive"
        db.session.commit()

        result = sm.apply(entity.id, "approve", "Department Focal", "Fiona Focal")
        sent = {(s["email"], s["kind"]) for s in result.notifications["sent"]}
        assert sent == {("manager@corp.test", "to"), ("requestor@corp.test", "cc")}
        assert UserNotification.query.filter_by(user_id=org["requestor"].id).count() == 0

    def test_each_stage_notifies_next_approver(self, org, submit):
        entity = submit("claims", notify=False)
        result = sm.apply(entity.id, "approve", "Department Focal", "Fiona Focal", comments="ok")
        assert result.notifications["templates"] == ["claims_focal_approved_to_manager"]
        sent = {(s["email"], s["kind"]) for s in result.notifications["sent"]}
        assert sent == {("manager@corp.test", "to"), ("requestor@corp.test", "cc")}

        log = _logs(entity.id, "claims_focal_approved_to_manager")[0]
        assert log.subject == f"Expense Claim {entity.id} approved by Department Focal"

    def test_rejection_goes_to_requestor_only(self, org, submit):
        entity = submit("visa", notify=False)
        result = sm.apply(entity.id, "reject", "Department Focal", "Fiona Focal", comments="Missing passport")
        assert [s["email"] for s in result.notifications["sent"]] == ["requestor@corp.test"]
        note = UserNotification.query.filter_by(user_id=org["requestor"].id).one()
        assert "Missing passport" in note.message

    def test_trf_without_flights_gets_final_notice(self, org, submit):
        entity = submit("trf", notify=False, travel_type="Local")
        sm.apply(entity.id, "approve", "Department Focal", "F", notify=False)
        sm.apply(entity.id, "approve", "Line Manager", "M", notify=False)
        result = sm.apply(entity.id, "approve", "HOD", "Helen Hod")

        report = result.notifications
        assert report["skipped"][0]["template"] == "trf_hod_approved_to_admin"
        assert report["skipped"][0]["error"] == "NoPermissionMapping"
        assert "trf_admin_completed_to_requestor" in report["templates"]
        assert [s["email"] for s in report["sent"]] == ["requestor@corp.test"]
        assert not _logs(entity.id, "trf_hod_approved_to_admin")

    def test_missing_template_is_skipped(self, org, submit):
        entity = submit(notify=False)
        report = dispatch(entity, "trf_reminder")
        assert report.skipped[0]["error"] == "TemplateNotFound"
        assert report.sent == []
        assert report.ok

    def test_no_approvers_is_skipped(self, seeded, make_user):
        requestor = make_user("lonely@corp.test", ["Requestor"])
        entity, report = sm.submit_new_request("transport", requestor, {"title": "Shuttle"})
        assert report["sent"] == []
        assert report["skipped"][0]["error"] == "NoRecipientsFound"

    def test_one_failing_recipient_does_not_block_others(self, org, submit, make_user):
        make_user("focal2@corp.test", ["Department Focal"], full_name="Second Focal")
        entity = submit(notify=False)

        from app.services.email_service import EmailService
        real_send = EmailService.send.__func__

        def flaky_send(cls, **kwargs):
            if kwargs["to_email"] == "focal@corp.test":
                raise RuntimeError("mailbox exploded")
            return real_send(cls, **kwargs)

        with patch.object(EmailService, "send", classmethod(flaky_send)):
            report = dispatch(entity, "trf_submitted")

        assert [e["email"] for e in report.errors] == ["focal@corp.test"]
        assert sorted(s["email"] for s in report.sent) == ["focal2@corp.test", "requestor@corp.test"]
        assert [l.recipient_email for l in _logs(entity.id)] == ["focal2@corp.test", "requestor@corp.test"]
        assert UserNotification.query.filter_by(user_id=org["focal"].id).count() == 0

    def test_dispatch_failure_never_fails_transition(self, org, submit):
        entity = submit(notify=False)
        with patch("app.services.workflow_notification.dispatch", side_effect=RuntimeError("boom")):
            result = sm.apply(entity.id, "approve", "Department Focal", "F")
        assert result.new_status == "Pending Line Manager"
        assert result.notifications == {"errors": [{"error": "DispatchFailed"}]}

    def test_delegation_notifies_delegate(self, org, submit, make_user):
        deputy = make_user("deputy@corp.test", ["Line Manager"], full_name="Dana Deputy")
        entity = submit(notify=False)
        result = sm.apply(entity.id, "delegate", "Department Focal", "Fiona Focal", delegate_to=deputy.id)
        assert result.notifications["templates"] == ["trf_delegated"]
        assert ("deputy@corp.test", "to") in {(s["email"], s["kind"]) for s in result.notifications["sent"]}

    def test_cancel_uses_cancelled_template(self, org, submit):
        entity = submit(notify=False)
        result = sm.apply(entity.id, "cancel", "Requestor", "Rita Requestor")
        assert result.notifications["templates"] == ["trf_cancelled"]
        assert [s["email"] for s in result.notifications["sent"]] == ["requestor@corp.test"]

    def test_intermediate_processing_is_silent(self, org, submit):
        entity = submit("visa", notify=False)
        for role in ("Department Focal", "Line Manager", "HOD"):
            sm.apply(entity.id, "approve", role, "X", notify=False)
        result = sm.apply(entity.id, "process", "Visa Clerk", "Vera Visa")
        assert result.notifications is None
