"""
File Blueprint — file creation, reads and workflow actions.

Endpoints:
    POST   /api/v1/files
           Body: { "subject", "department_id", "document_type", "priority"? }
           Returns: 201 with the file detail (levels, audit trail, …).

    GET    /api/v1/files/workflow-preview?department_id=&document_type=
           Returns: 200 with the template a new file would get and the
           per-level skip plan for the caller.

    GET    /api/v1/files/in-tray?department_id=
           Returns: 200 with IN_REVIEW files waiting on the caller's roles.

    GET    /api/v1/files/<id>                  file detail + allowed_actions
    PUT    /api/v1/files/<id>                  edit subject/priority (DRAFT/RETURNED)
    GET    /api/v1/files/<id>/levels           per-file approval levels
    GET    /api/v1/files/<id>/allowed-actions  actions the caller may perform
    POST   /api/v1/files/<id>/actions
           Body: { "action": "SUBMIT|APPROVE|RETURN|…", "remarks"? }

Layer contract:
    - Blueprint: resolve caller, parse input, call service, return JSON.
    - NO db.session calls here; all writes owned by the services.
    - NO ownership or role checks here; the workflow engine decides.
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from app.blueprints import get_client_ip, require_caller
from app.core.exceptions import (
    ConfigurationConflictError,
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    NoWorkflowConfiguredError,
    UnknownActionError,
    ValidationError,
)
from app.services import file_service, workflow_engine
from app.services.template_selector import preview_workflow
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

file_bp = Blueprint("files", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@file_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@file_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


@file_bp.errorhandler(IllegalTransitionError)
def _handle_illegal_transition(error: IllegalTransitionError):
    return api_error(
        E.WORKFLOW_ILLEGAL_TRANSITION, str(error),
        details={"action": error.action, "current_state": error.state},
    )


@file_bp.errorhandler(UnknownActionError)
def _handle_unknown_action(error: UnknownActionError):
    return api_error(E.WORKFLOW_UNKNOWN_ACTION, str(error), details={"action": error.action})


@file_bp.errorhandler(ConfigurationConflictError)
def _handle_config_conflict(error: ConfigurationConflictError):
    return api_error(
        E.WORKFLOW_CONFLICT, str(error),
        details={"tier": error.tier, "template_ids": error.template_ids},
    )


@file_bp.errorhandler(NoWorkflowConfiguredError)
def _handle_not_configured(error: NoWorkflowConfiguredError):
    return api_error(
        E.WORKFLOW_NOT_CONFIGURED, str(error),
        details={"tiers_checked": error.tiers_checked},
    )


@file_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@file_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in file_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Creation & preview
# ═════════════════════════════════════════════════════════════════════════


@file_bp.route("/files", methods=["POST"])
def create_file():
    """Create a DRAFT file; the workflow template is resolved and locked in."""
    uid, err = require_caller()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    if not data.get("department_id"):
        return api_error(E.VALIDATION_REQUIRED, "Field 'department_id' is required.")

    detail = file_service.create_file(uid, data, origin_ip=get_client_ip())
    return jsonify(detail), 201


@file_bp.route("/files/workflow-preview", methods=["GET"])
def workflow_preview():
    """Preview the workflow a new file would get. Nothing is persisted."""
    uid, err = require_caller()
    if err:
        return err

    department_id = request.args.get("department_id", type=int)
    if not department_id:
        return api_error(E.VALIDATION_REQUIRED, "Query param 'department_id' is required.")
    document_type = request.args.get("document_type")

    return jsonify(preview_workflow(department_id, document_type, uid)), 200


@file_bp.route("/files/in-tray", methods=["GET"])
def in_tray():
    uid, err = require_caller()
    if err:
        return err

    department_id = request.args.get("department_id", type=int)
    if not department_id:
        return api_error(E.VALIDATION_REQUIRED, "Query param 'department_id' is required.")

    items = file_service.list_in_tray(uid, department_id)
    return jsonify({"items": items, "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Single file
# ═════════════════════════════════════════════════════════════════════════


@file_bp.route("/files/<int:file_id>", methods=["GET"])
def get_file(file_id: int):
    uid, err = require_caller()
    if err:
        return err
    file = file_service.get_file(file_id)
    return jsonify(file_service.file_detail(file, caller_id=uid)), 200


@file_bp.route("/files/<int:file_id>", methods=["PUT"])
def update_file(file_id: int):
    uid, err = require_caller()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    return jsonify(file_service.update_file(file_id, uid, data, origin_ip=get_client_ip())), 200


@file_bp.route("/files/<int:file_id>/levels", methods=["GET"])
def get_levels(file_id: int):
    _, err = require_caller()
    if err:
        return err
    return jsonify({"file_id": file_id, "levels": file_service.get_file_levels(file_id)}), 200


@file_bp.route("/files/<int:file_id>/allowed-actions", methods=["GET"])
def get_allowed_actions(file_id: int):
    uid, err = require_caller()
    if err:
        return err
    file = file_service.get_file(file_id)
    return jsonify({
        "file_id": file.id,
        "current_state": file.current_state,
        "current_level": file.current_level,
        "allowed_actions": workflow_engine.allowed_actions(file, uid),
    }), 200


@file_bp.route("/files/<int:file_id>/actions", methods=["POST"])
def perform_action(file_id: int):
    """Execute a workflow action.

    Returns 200 with the updated file, 400 unknown action, 403 not permitted,
    404 missing file, 409 action not legal in the current state.
    """
    uid, err = require_caller()
    if err:
        return err

    data = request.get_json(silent=True) or {}
    action = (data.get("action") or "").strip()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "Field 'action' is required.")

    detail = file_service.perform_action(
        file_id,
        uid,
        action,
        remarks=data.get("remarks") or "",
        origin_ip=get_client_ip(),
    )
    return jsonify(detail), 200
