"""
Configurable workflow engine & timeout escalation tests.

Tests cover:
  - Starting an execution from the module's active template
  - Assignee resolution (explicit user, department preference, HOD)
  - Approve / reject / delegate step actions and actor checks
  - Conditional (non-mandatory) steps
  - Completion writing the request status and an ApprovalStepRecord
  - Timeout sweep: escalation, auto-approval, skips and compare-and-set claims
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import InvalidStateTransition, NotFoundError, ValidationError
from app.models import db
from app.models.notification import UserNotification
from app.models.workflow import StepTimeout, WorkflowExecution
from app.services import entity_status_store as store
from app.services import timeout_escalator
from app.services import workflow_engine as engine
from app.services import workflow_state_machine as sm
from app.services.scheduler_service import SchedulerService


def _template(module="trf", steps=None, name="Engine test"):
    steps = steps or [
        {"step_number": 1, "step_name": "Focal review", "required_role": "Department Focal",
         "timeout_days": 2, "escalation_role": "HOD", "can_delegate": True},
        {"step_number": 2, "step_name": "Manager review", "required_role": "Line Manager", "timeout_days": 3},
        {"step_number": 3, "step_name": "Finance check", "required_role": "Finance Admin",
         "is_mandatory": False, "conditions": {"type": "depends_on_step", "step": 2, "outcome": "approved"}},
    ]
    template, _ = engine.create_template({"name": name, "module": module, "steps": steps})
    return template


def _pending(execution):
    return [se for se in execution.step_executions if se.status in ("pending", "escalated", "delegated")]


@pytest.fixture()
def started(org, submit):
    _template()
    entity = submit("trf", notify=False)
    execution = engine.start_workflow(entity.id, created_by=org["requestor"].id)
    return entity, execution


# ═════════════════════════════════════════════════════════════════════════
# START
# ═════════════════════════════════════════════════════════════════════════

class TestStart:
    def test_no_active_template(self, submit):
        entity = submit("visa", notify=False)
        with pytest.raises(NotFoundError):
            engine.start_workflow(entity.id)

    def test_first_step_assigned_in_department(self, org, started):
        entity, execution = started
        assert execution.status == "active"
        assert execution.current_step_number == 1
        step = execution.step_executions[0]
        assert step.status == "pending"
        assert step.assigned_user_id == org["focal"].id
        assert step.assigned_role == "Department Focal"

        timeout = StepTimeout.query.filter_by(step_execution_id=step.id).one()
        assert timeout.escalation_role == "HOD"
        assert timeout.processed_at is None

        note = UserNotification.query.filter_by(user_id=org["focal"].id).one()
        assert note.type == "approval_request"
        assert entity.id in note.message

    def test_second_start_rejected(self, started):
        entity, _ = started
        with pytest.raises(ValidationError):
            engine.start_workflow(entity.id)

    @pytest.mark.parametrize("action,role", [("cancel", "Requestor"), ("reject", "Department Focal")])
    def test_terminal_request_cannot_start(self, submit, action, role):
        _template()
        entity = submit("trf", notify=False)
        sm.apply(entity.id, action, role, role, comments="closed", notify=False)
        final = store.get_status(entity.id)

        with pytest.raises(InvalidStateTransition):
            engine.start_workflow(entity.id)
        assert WorkflowExecution.query.count() == 0
        assert store.get_status(entity.id) == final

    def test_latest_active_template_wins(self, org, submit):
        _template(name="Old")
        newer = _template(steps=[{"step_number": 1, "step_name": "HOD only", "required_role": "HOD"}], name="New")
        entity = submit("trf", notify=False)
        execution = engine.start_workflow(entity.id)
        assert execution.template_id == newer.id
        assert execution.step_executions[0].assigned_user_id == org["hod"].id


class TestFindUserByRole:
    def test_department_preference_and_fallback(self, org):
        assert engine.find_user_by_role("Department Focal", "operations") == org["other_focal"].id
        assert engine.find_user_by_role("Department Focal", "Legal") == org["focal"].id

    def test_hod_is_department_agnostic(self, org, make_user):
        make_user("hod.fin@corp.test", ["HOD"], department="Finance")
        assert engine.find_user_by_role("HOD", "Finance") == org["hod"].id

    def test_inactive_holders_ignored(self, seeded, make_user):
        make_user("old@corp.test", ["Visa Clerk"], status="inactive")
        assert engine.find_user_by_role("Visa Clerk") is None


# ═════════════════════════════════════════════════════════════════════════
# STEP ACTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestStepActions:
    def test_full_approval(self, org, started):
        entity, execution = started
        engine.process_step_action(execution.id, 1, "approve", org["focal"].id, comments="ok")
        assert execution.current_step_number == 2
        engine.process_step_action(execution.id, 2, "approve", org["manager"].id)
        assert execution.current_step_number == 3
        assert _pending(execution)[0].assigned_user_id == org["finance_admin"].id

        engine.process_step_action(execution.id, 3, "approve", org["finance_admin"].id)
        assert execution.status == "completed"
        assert execution.completed_at is not None
        assert store.get_status(entity.id) == "Approved"

        last = store.list_steps(entity.id)[-1]
        assert (last.action, last.actor_name, last.to_status) == ("Approved", "Fred Finance", "Approved")
        note = UserNotification.query.filter_by(user_id=org["requestor"].id).one()
        assert note.title == "Request Approved: TRF"

    def test_reject_cancels_execution(self, org, started):
        entity, execution = started
        engine.process_step_action(execution.id, 1, "reject", org["focal"].id, comments="Not budgeted")
        assert execution.status == "cancelled"
        assert store.get_status(entity.id) == "Rejected"
        note = UserNotification.query.filter_by(user_id=org["requestor"].id).one()
        assert note.message.endswith("Not budgeted")

    def test_only_assignee_may_act(self, org, started):
        _, execution = started
        with pytest.raises(InvalidStateTransition):
            engine.process_step_action(execution.id, 1, "approve", org["manager"].id)

    def test_step_must_be_pending(self, org, started):
        _, execution = started
        engine.process_step_action(execution.id, 1, "approve", org["focal"].id)
        with pytest.raises(InvalidStateTransition):
            engine.process_step_action(execution.id, 1, "approve", org["focal"].id)

    def test_finished_execution_rejects_actions(self, org, started):
        _, execution = started
        engine.process_step_action(execution.id, 1, "reject", org["focal"].id, comments="no")
        with pytest.raises(InvalidStateTransition):
            engine.process_step_action(execution.id, 1, "approve", org["focal"].id)

    def test_request_closed_elsewhere_is_left_alone(self, org, started):
        entity, execution = started
        sm.apply(entity.id, "cancel", "Requestor", "Rita Requestor", notify=False)
        steps_before = len(store.list_steps(entity.id))

        with pytest.raises(InvalidStateTransition):
            engine.process_step_action(execution.id, 1, "approve", org["focal"].id)
        assert store.get_status(entity.id) == "Cancelled"
        assert len(store.list_steps(entity.id)) == steps_before
        assert execution.step_executions[0].status == "pending"

    def test_completion_rechecks_status_under_lock(self, org, submit):
        _template(steps=[{"step_number": 1, "step_name": "Only", "required_role": "HOD"}])
        entity = submit("trf", notify=False)
        execution = engine.start_workflow(entity.id)
        sm.apply(entity.id, "cancel", "Requestor", "Rita Requestor", notify=False)

        step = execution.step_executions[0]
        step.status = "approved"
        with pytest.raises(InvalidStateTransition):
            engine.advance(execution, step, org["hod"].id)
        db.session.rollback()
        assert store.get_status(entity.id) == "Cancelled"
        assert store.list_steps(entity.id)[-1].action == "Cancelled"

    def test_unknown_action(self, org, started):
        _, execution = started
        with pytest.raises(ValidationError):
            engine.process_step_action(execution.id, 1, "escalate", org["focal"].id)

    def test_unknown_step(self, org, started):
        _, execution = started
        with pytest.raises(NotFoundError):
            engine.process_step_action(execution.id, 9, "approve", org["focal"].id)

    def test_delegate_then_delegate_approves(self, org, started, make_user):
        deputy = make_user("deputy@corp.test", ["Department Focal"], full_name="Dana Deputy")
        _, execution = started
        engine.process_step_action(execution.id, 1, "delegate", org["focal"].id, delegate_to=deputy.id)
        step = execution.step_executions[0]
        assert (step.status, step.delegated_to, step.assigned_user_id) == ("delegated", deputy.id, deputy.id)

        engine.process_step_action(execution.id, 1, "approve", deputy.id)
        assert execution.current_step_number == 2

    def test_delegate_not_allowed(self, org, started, make_user):
        deputy = make_user("deputy@corp.test", ["Line Manager"])
        _, execution = started
        engine.process_step_action(execution.id, 1, "approve", org["focal"].id)
        with pytest.raises(ValidationError):
            engine.process_step_action(execution.id, 2, "delegate", org["manager"].id, delegate_to=deputy.id)
        assert execution.step_executions[1].status == "pending"

    def test_unmet_condition_skips_step(self, org, submit):
        _template(steps=[
            {"step_number": 1, "step_name": "Focal", "required_role": "Department Focal"},
            {"step_number": 2, "step_name": "Only after rejection", "required_role": "HOD",
             "is_mandatory": False, "conditions": {"type": "depends_on_step", "step": 1, "outcome": "rejected"}},
        ])
        entity = submit("trf", notify=False)
        execution = engine.start_workflow(entity.id)
        engine.process_step_action(execution.id, 1, "approve", org["focal"].id)
        assert execution.status == "completed"
        assert [se.step_number for se in execution.step_executions] == [1]
        assert store.get_status(entity.id) == "Approved"


# ═════════════════════════════════════════════════════════════════════════
# TIMEOUTS
# ═════════════════════════════════════════════════════════════════════════

def _later(days):
    return datetime.now(timezone.utc) + timedelta(days=days)


class TestTimeouts:
    def test_nothing_due_yet(self, started):
        counts = timeout_escalator.process_due_timeouts()
        assert counts["due"] == 0

    def test_escalation_reassigns(self, org, started):
        _, execution = started
        counts = timeout_escalator.process_due_timeouts(now=_later(3))
        assert counts["escalated"] == 1

        step = execution.step_executions[0]
        db.session.refresh(step)
        assert step.status == "escalated"
        assert step.assigned_role == "HOD"
        assert step.escalated_to == org["hod"].id
        assert StepTimeout.query.one().outcome == "escalated"

        # the claimed row is not processed again
        assert timeout_escalator.process_due_timeouts(now=_later(3))["due"] == 0

        engine.process_step_action(execution.id, 1, "approve", org["hod"].id)
        assert execution.current_step_number == 2

    def test_auto_approve_without_escalation_role(self, org, started):
        entity, execution = started
        engine.process_step_action(execution.id, 1, "approve", org["focal"].id)

        counts = timeout_escalator.process_due_timeouts(now=_later(10))
        assert counts["auto_approved"] == 1
        manager_step = execution.step_executions[1]
        db.session.refresh(manager_step)
        assert manager_step.status == "approved"
        assert manager_step.comments == engine.TIMEOUT_COMMENT
        db.session.refresh(execution)
        assert execution.current_step_number == 3

    def test_auto_approve_on_last_step_completes(self, org, submit):
        _template(steps=[{"step_number": 1, "step_name": "Only", "required_role": "HOD", "timeout_days": 1}])
        entity = submit("trf", notify=False)
        execution = engine.start_workflow(entity.id)

        timeout_escalator.process_due_timeouts(now=_later(2))
        db.session.refresh(execution)
        assert execution.status == "completed"
        assert store.get_status(entity.id) == "Approved"
        assert store.list_steps(entity.id)[-1].actor_name == "System"

    def test_closed_step_is_skipped(self, org, started):
        _, execution = started
        engine.process_step_action(execution.id, 1, "reject", org["focal"].id, comments="no")
        counts = timeout_escalator.process_due_timeouts(now=_later(3))
        assert counts["skipped"] == 1
        assert StepTimeout.query.one().outcome == "skipped"

    def test_escalation_without_holder_keeps_assignee(self, org, started, caplog):
        _, execution = started
        org["hod"].status = "inactive"
        db.session.commit()

        with caplog.at_level(logging.WARNING, logger="app.services.timeout_escalator"):
            counts = timeout_escalator.process_due_timeouts(now=_later(3))
        assert counts["escalated"] == 1

        step = execution.step_executions[0]
        db.session.refresh(step)
        assert step.status == "escalated"
        assert step.escalated_to is None
        assert step.assigned_user_id == org["focal"].id
        assert any("no active user holds escalation role 'HOD'" in r.getMessage() for r in caplog.records)

    def test_timeout_on_closed_request_is_skipped(self, org, started):
        entity, _ = started
        sm.apply(entity.id, "cancel", "Requestor", "Rita Requestor", notify=False)

        counts = timeout_escalator.process_due_timeouts(now=_later(3))
        assert (counts["skipped"], counts["errors"]) == (1, 0)
        assert StepTimeout.query.one().outcome == "skipped"
        assert store.get_status(entity.id) == "Cancelled"

    def test_claim_is_compare_and_set(self, started):
        timeout = StepTimeout.query.one()
        now = _later(3)
        assert timeout_escalator._claim(timeout.id, now) is True
        assert timeout_escalator._claim(timeout.id, now) is False

    def test_sweep_runs_as_scheduled_job(self, app, started):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("workflow_timeout_sweep")
        assert result["status"] == "success"
        assert result["result"]["due"] == 0
