"""
Employee Request Portal
Configurable Workflow Blueprint.

Endpoints:
    POST /api/v1/workflows/validate                              dry-run validation
    GET  /api/v1/workflows                                       list templates
    POST /api/v1/workflows                                       create template
    GET  /api/v1/workflows/<id>                                  template detail
    POST /api/v1/workflow-executions                             start for a request
    GET  /api/v1/workflow-executions/<id>                        execution detail
    POST /api/v1/workflow-executions/<id>/steps/<n>/action       approve/reject/delegate
"""

import logging

from flask import Blueprint, jsonify, request

from app.core.exceptions import (
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
    WorkflowDefinitionError,
)
from app.services import workflow_engine
from app.services.workflow_validator import validate_workflow
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@workflow_bp.errorhandler(WorkflowDefinitionError)
def _handle_definition(error):
    return api_error(E.INVALID_DEFINITION, str(error), details={
        "type": type(error).__name__,
        "errors": error.errors,
        "warnings": error.warnings,
    })


@workflow_bp.errorhandler(InvalidStateTransition)
def _handle_transition(error):
    return api_error(E.INVALID_TRANSITION, str(error), details={
        "execution": error.entity_id,
        "action": error.action,
        "current_status": error.current_status,
    })


def _actor_id(data):
    value = data.get("actor_id") or request.headers.get("X-User-Id")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ── Templates ────────────────────────────────────────────────────────────────


@workflow_bp.route("/workflows/validate", methods=["POST"])
def validate_template():
    """Validate a definition without saving it. Always 200."""
    result = validate_workflow(request.get_json(silent=True) or {})
    return jsonify(result.to_dict())


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    templates = workflow_engine.list_templates(
        module=request.args.get("module"),
        active_only=request.args.get("active_only", "false").lower() == "true",
    )
    return jsonify({"items": [t.to_dict(include_steps=False) for t in templates], "total": len(templates)})


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    data = request.get_json(silent=True) or {}
    template, warnings = workflow_engine.create_template(data, created_by=_actor_id(data))
    return jsonify({"template": template.to_dict(), "warnings": warnings}), 201


@workflow_bp.route("/workflows/<int:template_id>", methods=["GET"])
def get_workflow(template_id):
    return jsonify(workflow_engine.get_template(template_id).to_dict())


# ── Executions ───────────────────────────────────────────────────────────────


@workflow_bp.route("/workflow-executions", methods=["POST"])
def start_execution():
    data = request.get_json(silent=True) or {}
    request_id = (data.get("request_id") or "").strip()
    if not request_id:
        return api_error(E.VALIDATION_REQUIRED, "request_id is required")
    execution = workflow_engine.start_workflow(request_id, created_by=_actor_id(data))
    return jsonify(execution.to_dict()), 201


@workflow_bp.route("/workflow-executions/<int:execution_id>", methods=["GET"])
def get_execution(execution_id):
    return jsonify(workflow_engine.get_execution(execution_id).to_dict())


@workflow_bp.route("/workflow-executions/<int:execution_id>/steps/<int:step_number>/action",
                   methods=["POST"])
def step_action(execution_id, step_number):
    """Body: {"action": "approve|reject|delegate", "actor_id", "comments"?, "delegate_to"?}"""
    data = request.get_json(silent=True) or {}
    actor_id = _actor_id(data)
    if actor_id is None:
        return api_error(E.VALIDATION_REQUIRED, "actor_id is required")
    action = (data.get("action") or "").strip().lower()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")

    execution = workflow_engine.process_step_action(
        execution_id, step_number, action, actor_id,
        comments=data.get("comments"),
        delegate_to=data.get("delegate_to"),
    )
    return jsonify(execution.to_dict())
