"""
Employee Request Portal
Configurable workflow engine models.

Models:
    - WorkflowTemplate: admin-authored approval chain for one module
    - WorkflowStep: ordered step (1..N) with role XOR user, timeout, escalation
    - WorkflowExecution: a running template bound to one RequestEntity
    - StepExecution: persisted state of every visited step
    - StepTimeout: scheduled timeout row, claimed exactly once by the sweep

Unlike the fixed per-entity sequences (where pending stages are derived on
read), this engine stores every step's state explicitly.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

EXECUTION_STATUSES = {"active", "completed", "cancelled", "failed"}
STEP_STATUSES = {"pending", "approved", "rejected", "delegated", "escalated", "timeout"}
STEP_ACTIONS = {"approve", "reject", "delegate"}
CONDITION_TYPES = {"always", "depends_on_step"}
CONDITION_OUTCOMES = {"approved", "rejected"}

MAX_STEPS = 20
MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500


class WorkflowTemplate(db.Model):
    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(MAX_NAME_LENGTH), nullable=False)
    description = db.Column(db.String(MAX_DESCRIPTION_LENGTH), default="")
    module = db.Column(db.String(30), nullable=False, index=True, comment="Entity type")
    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    steps = db.relationship(
        "WorkflowStep", back_populates="template", cascade="all, delete-orphan",
        order_by="WorkflowStep.step_number",
    )

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "module": self.module,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name} ({self.module})>"


class WorkflowStep(db.Model):
    __tablename__ = "workflow_steps"
    __table_args__ = (
        db.UniqueConstraint("template_id", "step_number", name="uq_workflow_step_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False, comment="1-based, contiguous")
    step_name = db.Column(db.String(150), nullable=False)
    required_role = db.Column(db.String(100), nullable=True)
    assigned_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_mandatory = db.Column(db.Boolean, default=True)
    can_delegate = db.Column(db.Boolean, default=False)
    timeout_days = db.Column(db.Integer, nullable=True)
    escalation_role = db.Column(db.String(100), nullable=True)
    conditions = db.Column(db.JSON, nullable=True,
                           comment='{"type": "always"} or {"type": "depends_on_step", "step": n, "outcome": ...}')

    template = db.relationship("WorkflowTemplate", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "step_number": self.step_number,
            "step_name": self.step_name,
            "required_role": self.required_role,
            "assigned_user_id": self.assigned_user_id,
            "is_mandatory": self.is_mandatory,
            "can_delegate": self.can_delegate,
            "timeout_days": self.timeout_days,
            "escalation_role": self.escalation_role,
            "conditions": self.conditions,
        }


class WorkflowExecution(db.Model):
    __tablename__ = "workflow_executions"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="RESTRICT"), nullable=False,
    )
    request_id = db.Column(
        db.String(40), db.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    current_step_number = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), default="active", comment="active, completed, cancelled, failed")
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    template = db.relationship("WorkflowTemplate")
    step_executions = db.relationship(
        "StepExecution", back_populates="execution", cascade="all, delete-orphan",
        order_by="StepExecution.step_number",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "request_id": self.request_id,
            "current_step_number": self.current_step_number,
            "status": self.status,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [s.to_dict() for s in self.step_executions],
        }

    def __repr__(self):
        return f"<WorkflowExecution {self.id} {self.request_id} [{self.status}]>"


class StepExecution(db.Model):
    __tablename__ = "step_executions"

    id = db.Column(db.Integer, primary_key=True)
    execution_id = db.Column(
        db.Integer, db.ForeignKey("workflow_executions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_id = db.Column(db.Integer, db.ForeignKey("workflow_steps.id", ondelete="RESTRICT"), nullable=False)
    step_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), default="pending",
                       comment="pending, approved, rejected, delegated, escalated, timeout")
    assigned_user_id = db.Column(db.Integer, nullable=True)
    assigned_role = db.Column(db.String(100), nullable=True)
    action_taken_by = db.Column(db.Integer, nullable=True)
    action_taken_at = db.Column(db.DateTime(timezone=True), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    delegated_to = db.Column(db.Integer, nullable=True)
    escalated_to = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    execution = db.relationship("WorkflowExecution", back_populates="step_executions")
    step = db.relationship("WorkflowStep")

    def to_dict(self):
        return {
            "id": self.id,
            "step_number": self.step_number,
            "step_name": self.step.step_name if self.step else None,
            "status": self.status,
            "assigned_user_id": self.assigned_user_id,
            "assigned_role": self.assigned_role,
            "action_taken_by": self.action_taken_by,
            "action_taken_at": self.action_taken_at.isoformat() if self.action_taken_at else None,
            "comments": self.comments,
            "delegated_to": self.delegated_to,
            "escalated_to": self.escalated_to,
        }


class StepTimeout(db.Model):
    __tablename__ = "step_timeouts"

    id = db.Column(db.Integer, primary_key=True)
    step_execution_id = db.Column(
        db.Integer, db.ForeignKey("step_executions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    timeout_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    escalation_role = db.Column(db.String(100), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True,
                             comment="Set once, by compare-and-set, when the sweep claims the row")
    outcome = db.Column(db.String(20), nullable=True, comment="escalated, auto_approved, skipped")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    step_execution = db.relationship("StepExecution")

    def to_dict(self):
        return {
            "id": self.id,
            "step_execution_id": self.step_execution_id,
            "timeout_at": self.timeout_at.isoformat() if self.timeout_at else None,
            "escalation_role": self.escalation_role,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "outcome": self.outcome,
        }
