"""
Workflow Template Administration.

Templates are the shared configuration the Template Selector reads. The
rules below keep that configuration resolvable:

    - is_default is derived from scope, never taken from input:
          department + document type → SPECIFIC            (is_default False)
          department only            → DEPARTMENT_DEFAULT  (is_default True)
          neither                    → GLOBAL_DEFAULT      (is_default True)
    - A document-type template must be bound to a department.
    - One active template per scope.
    - An active template needs ≥1 level, every level a known workflow role,
      and (department scope) at least one user holding each level's role.
    - Level authority is derived from the role when the level is saved.
    - Default templates cannot be deleted, deactivated or moved to another scope.
    - A template referenced by files cannot be deleted.

Only Administrators manage templates. A department-scoped template needs
Admin in that department; a global template accepts Admin of any department.

Files copy their levels at creation, so edits here never alter an
existing file's chain.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.models import db
from app.models.file import File
from app.models.organization import Department, UserDepartmentRole
from app.models.workflow import WorkflowTemplate, WorkflowTemplateLevel
from app.services.authority import WORKFLOW_ROLES, admin_department_ids, authority_of, parse_role, role_label

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_TYPES = ("GLOBAL_DEFAULT", "DEPARTMENT_DEFAULT")


# ── Scope helpers ──────────────────────────────────────────────────────────────


def workflow_type(department_id: int | None, document_type: str | None) -> str:
    if department_id and document_type:
        return "SPECIFIC"
    if department_id:
        return "DEPARTMENT_DEFAULT"
    return "GLOBAL_DEFAULT"


def derive_is_default(department_id: int | None, document_type: str | None) -> bool:
    return workflow_type(department_id, document_type) != "SPECIFIC"


def _scope_label(department_id: int | None, document_type: str | None) -> str:
    dept = db.session.get(Department, department_id) if department_id else None
    name = dept.name if dept else "Department"
    if department_id and document_type:
        return f"{name} + {document_type}"
    if department_id:
        return f"{name} Default"
    return "Global Default"


def _get_template(template_id: int) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


# ── Authorization ──────────────────────────────────────────────────────────────


def require_template_admin(user_id: int, department_id: int | None = None) -> None:
    """Raise ForbiddenError unless *user_id* may manage templates of *department_id*."""
    admin_of = admin_department_ids(user_id)
    if not admin_of:
        raise ForbiddenError(
            "Only Administrators can manage workflow templates",
            user_id=user_id,
            action="MANAGE_TEMPLATES",
        )
    if department_id is not None and department_id not in admin_of:
        dept = db.session.get(Department, department_id)
        raise ForbiddenError(
            f"You are not an Administrator of {dept.name if dept else 'this department'}",
            user_id=user_id,
            action="MANAGE_TEMPLATES",
        )


# ── Validation ─────────────────────────────────────────────────────────────────


def _normalize_scope(data: dict, current: WorkflowTemplate | None = None) -> tuple[int | None, str | None]:
    if "department_id" in data:
        department_id = data.get("department_id") or None
    else:
        department_id = current.department_id if current else None
    if "document_type" in data:
        document_type = (data.get("document_type") or "").strip() or None
    else:
        document_type = current.document_type if current else None

    if department_id is not None and db.session.get(Department, department_id) is None:
        raise NotFoundError(resource="Department", resource_id=department_id)
    if document_type and not department_id:
        raise ValidationError(
            "A document-type workflow must be bound to a department",
            details={"department_id": "required_with_document_type"},
        )
    return department_id, document_type


def _normalize_levels(raw_levels) -> list[dict]:
    """Order, renumber 1..n, and canonicalize roles of the submitted levels."""
    if raw_levels is None:
        return []
    if not isinstance(raw_levels, list) or not all(isinstance(i, dict) for i in raw_levels):
        raise ValidationError("levels must be a list of objects", details={"levels": "invalid"})

    indexed = list(enumerate(raw_levels))
    indexed.sort(key=lambda pair: (pair[1].get("level") or pair[0] + 1, pair[0]))

    levels, errors = [], []
    for position, (_, item) in enumerate(indexed, start=1):
        raw_role = item.get("role_required") or item.get("role")
        if not raw_role:
            errors.append(f"Level {position}: No role assigned.")
            continue
        role = parse_role(raw_role)
        if role is None or role not in WORKFLOW_ROLES:
            errors.append(f"Level {position}: '{raw_role}' is not a workflow role.")
            continue
        levels.append({
            "level": position,
            "role_required": role.value,
            "authority_required": authority_of(role),
            "description": item.get("description") or None,
        })
    if errors:
        raise ValidationError("Invalid workflow levels:\n" + "\n".join(errors), details={"levels": errors})
    return levels


def validate_unique_scope(department_id, document_type, exclude_id: int | None = None) -> None:
    """One active template per (department, document type) scope."""
    stmt = select(WorkflowTemplate).where(WorkflowTemplate.is_active.is_(True))
    if department_id:
        stmt = stmt.where(WorkflowTemplate.department_id == department_id)
    else:
        stmt = stmt.where(WorkflowTemplate.department_id.is_(None))
    if document_type:
        stmt = stmt.where(WorkflowTemplate.document_type == document_type)
    else:
        stmt = stmt.where(WorkflowTemplate.document_type.is_(None))
    if exclude_id:
        stmt = stmt.where(WorkflowTemplate.id != exclude_id)

    existing = db.session.execute(stmt.limit(1)).scalar_one_or_none()
    if existing is not None:
        scope = _scope_label(department_id, document_type)
        raise ConflictError(
            resource="WorkflowTemplate",
            field="scope",
            value=scope,
            message=f"{existing.name} ({scope}) workflow already exists.",
        )


def validate_completeness(levels: list[dict], department_id: int | None) -> None:
    """An active template must be routable: levels exist and each role is staffed."""
    if not levels:
        raise ValidationError(
            "Workflow must have at least one approval level.",
            details={"levels": "required"},
        )
    if not department_id:
        return

    dept = db.session.get(Department, department_id)
    errors = []
    for lvl in levels:
        staffed = db.session.execute(
            select(func.count(UserDepartmentRole.id)).where(
                UserDepartmentRole.department_id == department_id,
                UserDepartmentRole.role == lvl["role_required"],
            )
        ).scalar() or 0
        if not staffed:
            errors.append(
                f"Level {lvl['level']} ({role_label(lvl['role_required'])}): "
                f"No user assigned for this role in {dept.name if dept else 'department'}."
            )
    if errors:
        raise ValidationError(
            "Workflow cannot be activated:\n" + "\n".join(errors),
            details={"levels": errors},
        )


def _protect_default(template: WorkflowTemplate, operation: str) -> None:
    kind = template.workflow_type
    if kind not in DEFAULT_WORKFLOW_TYPES:
        return
    label = kind.replace("_", " ")
    if operation == "RESCOPE":
        raise ValidationError(
            f'Cannot change the scope of "{template.name}": This is a {label}. '
            f"Default workflows must keep their scope to ensure file routing. "
            f"Create a new workflow for the other scope instead.",
            details={"scope": "default_protected"},
        )
    if operation == "DELETE":
        raise ValidationError(
            f'Cannot delete "{template.name}": This is a {label}. '
            f"Default workflows are system-protected. "
            f"You may edit it or create a more specific workflow."
        )
    raise ValidationError(
        f'Cannot deactivate "{template.name}": This is a {label}. '
        f"Default workflows must remain active to ensure file routing. "
        f"You may edit it or create a more specific workflow to override it."
    )


def _levels_as_dicts(template: WorkflowTemplate) -> list[dict]:
    return [
        {
            "level": lvl.level,
            "role_required": lvl.role_required,
            "authority_required": lvl.authority_required,
            "description": lvl.description,
        }
        for lvl in template.levels
    ]


def _replace_levels(template: WorkflowTemplate, levels: list[dict]) -> None:
    template.levels.clear()
    db.session.flush()
    for lvl in levels:
        template.levels.append(WorkflowTemplateLevel(**lvl))


# ── CRUD ───────────────────────────────────────────────────────────────────────


def list_templates(department_id: int | None = None, include_inactive: bool = True) -> list[dict]:
    stmt = select(WorkflowTemplate)
    if department_id is not None:
        stmt = stmt.where(WorkflowTemplate.department_id == department_id)
    if not include_inactive:
        stmt = stmt.where(WorkflowTemplate.is_active.is_(True))
    templates = db.session.execute(
        stmt.order_by(WorkflowTemplate.department_id, WorkflowTemplate.document_type, WorkflowTemplate.id)
    ).scalars().all()
    return [t.to_dict() for t in templates]


def get_template(template_id: int) -> dict:
    return _get_template(template_id).to_dict()


def create_template(data: dict) -> dict:
    """Create a template. Any incoming is_default is ignored."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    department_id, document_type = _normalize_scope(data)
    levels = _normalize_levels(data.get("levels"))
    is_active = bool(data.get("is_active", True))

    if is_active:
        validate_unique_scope(department_id, document_type)
        validate_completeness(levels, department_id)

    template = WorkflowTemplate(
        name=name,
        description=data.get("description") or None,
        department_id=department_id,
        document_type=document_type,
        is_default=derive_is_default(department_id, document_type),
        is_active=is_active,
    )
    for lvl in levels:
        template.levels.append(WorkflowTemplateLevel(**lvl))

    try:
        db.session.add(template)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow template %s created (%s, %d levels)", template.id, template.workflow_type, len(levels),
        extra={"template_id": template.id, "department_id": department_id},
    )
    return template.to_dict()


def update_template(template_id: int, data: dict) -> dict:
    """Update name/description/scope/levels/is_active; is_default is re-derived."""
    template = _get_template(template_id)

    if data.get("is_active") is False and template.is_active:
        _protect_default(template, "DEACTIVATE")

    department_id, document_type = _normalize_scope(data, current=template)
    scope_changed = department_id != template.department_id or document_type != template.document_type
    if scope_changed and template.is_active:
        _protect_default(template, "RESCOPE")

    new_levels = _normalize_levels(data["levels"]) if "levels" in data else None
    is_active = bool(data["is_active"]) if "is_active" in data else template.is_active

    if is_active:
        if scope_changed or not template.is_active:
            validate_unique_scope(department_id, document_type, exclude_id=template.id)
        validate_completeness(
            new_levels if new_levels is not None else _levels_as_dicts(template),
            department_id,
        )

    try:
        if data.get("name"):
            template.name = data["name"].strip()
        if "description" in data:
            template.description = data.get("description") or None
        template.department_id = department_id
        template.document_type = document_type
        template.is_default = derive_is_default(department_id, document_type)
        template.is_active = is_active
        if new_levels is not None:
            _replace_levels(template, new_levels)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow template %s updated", template.id,
        extra={"template_id": template.id, "department_id": department_id},
    )
    return template.to_dict()


def set_template_active(template_id: int, is_active: bool) -> dict:
    template = _get_template(template_id)
    if is_active:
        validate_unique_scope(template.department_id, template.document_type, exclude_id=template.id)
        validate_completeness(_levels_as_dicts(template), template.department_id)
    else:
        _protect_default(template, "DEACTIVATE")

    template.is_active = is_active
    db.session.commit()
    logger.info(
        "Workflow template %s %s", template.id, "activated" if is_active else "deactivated",
        extra={"template_id": template.id},
    )
    return template.to_dict()


def delete_template(template_id: int) -> None:
    template = _get_template(template_id)
    _protect_default(template, "DELETE")

    in_use = db.session.execute(
        select(func.count(File.id)).where(File.workflow_template_id == template.id)
    ).scalar() or 0
    if in_use:
        raise ConflictError(
            resource="WorkflowTemplate",
            field="id",
            value=str(template.id),
            message=(
                f'Cannot delete workflow "{template.name}": {in_use} file(s) are using this workflow. '
                f"Existing files continue with their original workflow."
            ),
        )

    db.session.delete(template)
    db.session.commit()
    logger.info("Workflow template %s deleted", template_id, extra={"template_id": template_id})
