"""
Workflow Template Blueprint — administration of approval-chain templates.

Endpoints:
    GET    /api/v1/workflow-templates?department_id=&active_only=
    POST   /api/v1/workflow-templates
           Body: { "name", "description"?, "department_id"?, "document_type"?,
                   "is_active"?, "levels": [{"role", "description"?}, …] }
    GET    /api/v1/workflow-templates/<id>
    PUT    /api/v1/workflow-templates/<id>
    DELETE /api/v1/workflow-templates/<id>
    POST   /api/v1/workflow-templates/<id>/activate
    POST   /api/v1/workflow-templates/<id>/deactivate

is_default is always derived from scope; an incoming value is ignored.

Every endpoint requires the Admin role. Writes to a department-scoped
template also require Admin in that department, for both the current and
the requested scope.
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from app.blueprints import require_caller
from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.middleware.jwt_auth import current_user_id
from app.services import workflow_template_service as wts
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_template_bp = Blueprint("workflow_templates", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_template_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_template_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


@workflow_template_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})


@workflow_template_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@workflow_template_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in workflow_template_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


@workflow_template_bp.before_request
def _require_admin():
    uid, err = require_caller()
    if err:
        return err
    wts.require_template_admin(uid)
    return None


def _authorize_scope(*department_ids):
    uid = current_user_id()
    for department_id in department_ids:
        wts.require_template_admin(uid, department_id or None)


# ── Routes ─────────────────────────────────────────────────────────────────────


@workflow_template_bp.route("/workflow-templates", methods=["GET"])
def list_templates():
    department_id = request.args.get("department_id", type=int)
    active_only = request.args.get("active_only", "false").lower() == "true"
    items = wts.list_templates(department_id=department_id, include_inactive=not active_only)
    return jsonify({"items": items, "total": len(items)}), 200


@workflow_template_bp.route("/workflow-templates", methods=["POST"])
def create_template():
    data = request.get_json(silent=True) or {}
    if not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "Field 'name' is required.")
    _authorize_scope(data.get("department_id"))
    return jsonify(wts.create_template(data)), 201


@workflow_template_bp.route("/workflow-templates/<int:template_id>", methods=["GET"])
def get_template(template_id: int):
    return jsonify(wts.get_template(template_id)), 200


@workflow_template_bp.route("/workflow-templates/<int:template_id>", methods=["PUT"])
def update_template(template_id: int):
    data = request.get_json(silent=True) or {}
    targets = [wts.get_template(template_id)["department_id"]]
    if "department_id" in data:
        targets.append(data.get("department_id"))
    _authorize_scope(*targets)
    return jsonify(wts.update_template(template_id, data)), 200


@workflow_template_bp.route("/workflow-templates/<int:template_id>", methods=["DELETE"])
def delete_template(template_id: int):
    _authorize_scope(wts.get_template(template_id)["department_id"])
    wts.delete_template(template_id)
    return jsonify({"deleted": True, "id": template_id}), 200


@workflow_template_bp.route("/workflow-templates/<int:template_id>/activate", methods=["POST"])
def activate_template(template_id: int):
    _authorize_scope(wts.get_template(template_id)["department_id"])
    return jsonify(wts.set_template_active(template_id, True)), 200


@workflow_template_bp.route("/workflow-templates/<int:template_id>/deactivate", methods=["POST"])
def deactivate_template(template_id: int):
    _authorize_scope(wts.get_template(template_id)["department_id"])
    return jsonify(wts.set_template_active(template_id, False)), 200
