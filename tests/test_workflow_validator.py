"""
Workflow template validation tests.

Tests cover:
  - Basic field rules (name, description, module, step count)
  - Step rules: approver XOR, contiguous numbering, timeouts, conditions
  - Database references: roles, users, active members, duplicate names
  - Warnings vs errors, and the typed errors raised on create
"""

import pytest

from app.core.exceptions import MissingApprover, RoleOrUserNotFound, SequenceGap, WorkflowDefinitionError
from app.models.workflow import WorkflowTemplate
from app.services import workflow_engine
from app.services.workflow_validator import validate_workflow


def _payload(**overrides):
    data = {
        "name": "Standard travel approval",
        "description": "Focal then manager",
        "module": "trf",
        "steps": [
            {"step_number": 1, "step_name": "Focal review", "required_role": "Department Focal"},
            {"step_number": 2, "step_name": "Manager review", "required_role": "Line Manager"},
        ],
    }
    data.update(overrides)
    return data


def _codes(entries):
    return {e["code"] for e in entries}


# ═════════════════════════════════════════════════════════════════════════
# BASIC FIELDS
# ═════════════════════════════════════════════════════════════════════════

class TestBasics:
    def test_valid_payload(self, org):
        result = validate_workflow(_payload())
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    @pytest.mark.parametrize("overrides,code", [
        ({"name": "  "}, "NAME_REQUIRED"),
        ({"name": "x" * 101}, "NAME_TOO_LONG"),
        ({"description": "d" * 501}, "DESCRIPTION_TOO_LONG"),
        ({"module": "payroll"}, "INVALID_MODULE"),
        ({"steps": []}, "NO_STEPS"),
        ({"steps": "one"}, "NO_STEPS"),
    ])
    def test_basic_errors(self, org, overrides, code):
        result = validate_workflow(_payload(**overrides))
        assert not result.is_valid
        assert code in _codes(result.errors)

    def test_too_many_steps(self, org):
        steps = [{"step_number": i, "step_name": f"S{i}", "required_role": "HOD"} for i in range(1, 22)]
        assert "TOO_MANY_STEPS" in _codes(validate_workflow(_payload(steps=steps)).errors)


# ═════════════════════════════════════════════════════════════════════════
# STEPS
# ═════════════════════════════════════════════════════════════════════════

class TestSteps:
    def test_missing_approver(self, org):
        result = validate_workflow(_payload(steps=[{"step_number": 1, "step_name": "Nobody"}]))
        assert "MISSING_APPROVER" in _codes(result.errors)

    def test_role_and_user_is_warning(self, org):
        steps = [{"step_number": 1, "step_name": "Both", "required_role": "HOD",
                  "assigned_user_id": org["hod"].id}]
        result = validate_workflow(_payload(steps=steps))
        assert result.is_valid
        assert "ROLE_AND_USER" in _codes(result.warnings)

    def test_sequence_gap(self, org):
        steps = [
            {"step_number": 1, "step_name": "A", "required_role": "HOD"},
            {"step_number": 3, "step_name": "B", "required_role": "HOD"},
        ]
        assert _codes(validate_workflow(_payload(steps=steps)).errors) == {"SEQUENCE_GAP"}

    def test_duplicate_and_invalid_numbers(self, org):
        steps = [
            {"step_number": 1, "step_name": "A", "required_role": "HOD"},
            {"step_number": 1, "step_name": "B", "required_role": "HOD"},
            {"step_number": 0, "step_name": "C", "required_role": "HOD"},
        ]
        codes = _codes(validate_workflow(_payload(steps=steps)).errors)
        assert {"DUPLICATE_STEP_NUMBER", "INVALID_STEP_NUMBER", "SEQUENCE_GAP"} <= codes

    def test_escalation_requires_timeout(self, org):
        steps = [{"step_number": 1, "step_name": "A", "required_role": "Line Manager", "escalation_role": "HOD"}]
        assert "TIMEOUT_REQUIRED" in _codes(validate_workflow(_payload(steps=steps)).errors)

    def test_timeout_rules(self, org):
        bad = [{"step_number": 1, "step_name": "A", "required_role": "HOD", "timeout_days": -1}]
        assert "INVALID_TIMEOUT" in _codes(validate_workflow(_payload(steps=bad)).errors)

        long = [{"step_number": 1, "step_name": "A", "required_role": "HOD", "timeout_days": 45}]
        result = validate_workflow(_payload(steps=long))
        assert result.is_valid
        assert "LONG_TIMEOUT" in _codes(result.warnings)

    def test_no_mandatory_and_duplicate_names_warn(self, org):
        steps = [
            {"step_number": 1, "step_name": "Review", "required_role": "HOD", "is_mandatory": False},
            {"step_number": 2, "step_name": "review", "required_role": "HOD", "is_mandatory": False},
        ]
        result = validate_workflow(_payload(steps=steps))
        assert result.is_valid
        assert {"NO_MANDATORY_STEPS", "DUPLICATE_STEP_NAME"} <= _codes(result.warnings)


class TestConditions:
    def _steps(self, condition):
        return [
            {"step_number": 1, "step_name": "A", "required_role": "Department Focal"},
            {"step_number": 2, "step_name": "B", "required_role": "HOD", "is_mandatory": False,
             "conditions": condition},
        ]

    def test_valid_dependency(self, org):
        cond = {"type": "depends_on_step", "step": 1, "outcome": "approved"}
        assert validate_workflow(_payload(steps=self._steps(cond))).is_valid

    def test_forward_reference_is_circular(self, org):
        cond = {"type": "depends_on_step", "step": 2, "outcome": "approved"}
        assert "CIRCULAR_DEPENDENCY" in _codes(validate_workflow(_payload(steps=self._steps(cond))).errors)

    @pytest.mark.parametrize("cond", [
        {"type": "when_amount_over"},
        {"type": "depends_on_step", "step": "one", "outcome": "approved"},
        {"type": "depends_on_step", "step": 1, "outcome": "maybe"},
        "step 1 approved",
    ])
    def test_invalid_conditions(self, org, cond):
        assert "INVALID_CONDITION" in _codes(validate_workflow(_payload(steps=self._steps(cond))).errors)


# ═════════════════════════════════════════════════════════════════════════
# REFERENCES
# ═════════════════════════════════════════════════════════════════════════

class TestReferences:
    def test_unknown_role(self, org):
        steps = [{"step_number": 1, "step_name": "A", "required_role": "Chief Wizard"}]
        assert "ROLE_NOT_FOUND" in _codes(validate_workflow(_payload(steps=steps)).errors)

    def test_unknown_escalation_role(self, org):
        steps = [{"step_number": 1, "step_name": "A", "required_role": "HOD",
                  "timeout_days": 2, "escalation_role": "Nobody"}]
        assert "ROLE_NOT_FOUND" in _codes(validate_workflow(_payload(steps=steps)).errors)

    def test_users_must_exist_and_be_active(self, org, make_user):
        gone = make_user("gone@corp.test", [], status="inactive")
        steps = [
            {"step_number": 1, "step_name": "A", "assigned_user_id": 99999},
            {"step_number": 2, "step_name": "B", "assigned_user_id": gone.id},
        ]
        codes = _codes(validate_workflow(_payload(steps=steps)).errors)
        assert {"USER_NOT_FOUND", "USER_INACTIVE"} <= codes

    def test_role_without_members_warns(self, org):
        steps = [{"step_number": 1, "step_name": "A", "required_role": "Transport Admin"}]
        result = validate_workflow(_payload(steps=steps))
        assert result.is_valid
        assert "ROLE_WITHOUT_MEMBERS" in _codes(result.warnings)

    def test_duplicate_active_name_per_module(self, org):
        workflow_engine.create_template(_payload())
        dup = validate_workflow(_payload(name="STANDARD travel approval"))
        assert "DUPLICATE_WORKFLOW_NAME" in _codes(dup.errors)
        assert validate_workflow(_payload(module="claims")).is_valid


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateTemplate:
    def test_create_persists_sorted_steps(self, org):
        steps = list(reversed(_payload()["steps"]))
        template, warnings = workflow_engine.create_template(_payload(steps=steps), created_by=org["hod"].id)
        assert warnings == []
        assert [s.step_number for s in template.steps] == [1, 2]
        assert template.created_by == org["hod"].id

    @pytest.mark.parametrize("steps,exc_class", [
        ([{"step_number": 1, "step_name": "A", "required_role": "HOD"},
          {"step_number": 3, "step_name": "B", "required_role": "HOD"}], SequenceGap),
        ([{"step_number": 1, "step_name": "A"}], MissingApprover),
        ([{"step_number": 1, "step_name": "A", "required_role": "Ghost"}], RoleOrUserNotFound),
    ])
    def test_typed_errors_and_nothing_saved(self, org, steps, exc_class):
        with pytest.raises(exc_class) as exc:
            workflow_engine.create_template(_payload(steps=steps))
        assert isinstance(exc.value, WorkflowDefinitionError)
        assert exc.value.errors
        assert WorkflowTemplate.query.count() == 0
