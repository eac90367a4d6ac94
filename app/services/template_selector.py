"""
Workflow Template Selector.

Picks exactly one active WorkflowTemplate for a (department, document type)
pair. Resolution order, first match wins:

    1. DEPARTMENT_FILETYPE_MATCH  department + document type
    2. DEPARTMENT_DEFAULT         department, no document type
    3. GLOBAL_DEFAULT             no department, no document type, is_default

Every tier counts *all* of its active candidates before accepting one. Two
or more at the same tier is a ConfigurationConflictError: silently picking
one would make approval chains non-reproducible. No candidate at any tier
is a NoWorkflowConfiguredError. Both block file creation.

The resolved template is copied into frozen dataclasses so instantiation
never works against live, mutable ORM rows.

Usage:
    from app.services.template_selector import resolve_template, preview_workflow

    resolved = resolve_template(department_id=3, document_type="Budget")
    preview = preview_workflow(3, "Budget", user_id=7)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import select

from app.core.exceptions import (
    ConfigurationConflictError,
    NoWorkflowConfiguredError,
    NotFoundError,
)
from app.models import db
from app.models.organization import Department, User
from app.models.workflow import WorkflowTemplate
from app.services.authority import authority_of, creator_authority, role_label

logger = logging.getLogger(__name__)


class ScopeReason(str, Enum):
    DEPARTMENT_FILETYPE_MATCH = "DEPARTMENT_FILETYPE_MATCH"
    DEPARTMENT_DEFAULT = "DEPARTMENT_DEFAULT"
    GLOBAL_DEFAULT = "GLOBAL_DEFAULT"


TIER_ORDER = (
    ScopeReason.DEPARTMENT_FILETYPE_MATCH,
    ScopeReason.DEPARTMENT_DEFAULT,
    ScopeReason.GLOBAL_DEFAULT,
)


# ═════════════════════════════════════════════════════════════════════════════
# Value objects
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TemplateLevelSpec:
    """Immutable copy of one WorkflowTemplateLevel."""
    level: int
    role_required: str
    authority_required: int
    description: str | None = None

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "role_required": self.role_required,
            "authority_required": self.authority_required,
            "description": self.description,
        }


@dataclass(frozen=True)
class ResolvedTemplate:
    """The template that governs a new file, plus why it was chosen."""
    template_id: int
    name: str
    department_id: int | None
    document_type: str | None
    scope_reason: ScopeReason
    selection_reason: str
    levels: tuple[TemplateLevelSpec, ...] = field(default_factory=tuple)

    @property
    def max_levels(self) -> int:
        return len(self.levels)

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "name": self.name,
            "department_id": self.department_id,
            "document_type": self.document_type,
            "scope_reason": self.scope_reason.value,
            "selection_reason": self.selection_reason,
            "max_levels": self.max_levels,
            "levels": [lvl.to_dict() for lvl in self.levels],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Resolution
# ═════════════════════════════════════════════════════════════════════════════

def _tier_statement(tier: ScopeReason, department_id: int | None, document_type: str | None):
    stmt = select(WorkflowTemplate).where(WorkflowTemplate.is_active.is_(True))
    if tier is ScopeReason.DEPARTMENT_FILETYPE_MATCH:
        return stmt.where(
            WorkflowTemplate.department_id == department_id,
            WorkflowTemplate.document_type == document_type,
        )
    if tier is ScopeReason.DEPARTMENT_DEFAULT:
        return stmt.where(
            WorkflowTemplate.department_id == department_id,
            WorkflowTemplate.document_type.is_(None),
        )
    return stmt.where(
        WorkflowTemplate.department_id.is_(None),
        WorkflowTemplate.document_type.is_(None),
        WorkflowTemplate.is_default.is_(True),
    )


def _selection_reason(tier: ScopeReason, template: WorkflowTemplate,
                      department: Department | None, document_type: str | None) -> str:
    dept_label = department.name if department else "department"
    if tier is ScopeReason.DEPARTMENT_FILETYPE_MATCH:
        return f"Matched {dept_label} workflow for document type '{document_type}': {template.name}"
    if tier is ScopeReason.DEPARTMENT_DEFAULT:
        return f"Using {dept_label} default workflow: {template.name}"
    return f"No department-specific workflow for {dept_label}; using global default: {template.name}"


def _freeze(template: WorkflowTemplate, tier: ScopeReason, reason: str) -> ResolvedTemplate:
    levels = tuple(
        TemplateLevelSpec(
            level=lvl.level,
            role_required=lvl.role_required,
            authority_required=(
                lvl.authority_required
                if lvl.authority_required is not None
                else authority_of(lvl.role_required)
            ),
            description=lvl.description,
        )
        for lvl in sorted(template.levels, key=lambda row: row.level)
    )
    return ResolvedTemplate(
        template_id=template.id,
        name=template.name,
        department_id=template.department_id,
        document_type=template.document_type,
        scope_reason=tier,
        selection_reason=reason,
        levels=levels,
    )


def resolve_template(department_id: int, document_type: str | None) -> ResolvedTemplate:
    """Resolve the single template that governs (department, document type).

    Raises:
        ConfigurationConflictError: ≥2 active candidates at the first matching tier.
        NoWorkflowConfiguredError: no tier yields a candidate.
    """
    document_type = (document_type or "").strip() or None
    department = db.session.get(Department, department_id)

    for tier in TIER_ORDER:
        if tier is ScopeReason.DEPARTMENT_FILETYPE_MATCH and document_type is None:
            continue

        candidates = db.session.execute(
            _tier_statement(tier, department_id, document_type).order_by(WorkflowTemplate.id)
        ).scalars().all()

        if len(candidates) > 1:
            logger.error(
                "Ambiguous workflow configuration at tier %s", tier.value,
                extra={
                    "department_id": department_id,
                    "event_type": "workflow_config_conflict",
                },
            )
            raise ConfigurationConflictError(
                department_id, document_type, tier.value, [t.id for t in candidates],
            )
        if candidates:
            template = candidates[0]
            reason = _selection_reason(tier, template, department, document_type)
            logger.info(
                "Workflow template %s selected via %s", template.id, tier.value,
                extra={"department_id": department_id, "template_id": template.id},
            )
            return _freeze(template, tier, reason)

    raise NoWorkflowConfiguredError(
        department_id, document_type, [tier.value for tier in TIER_ORDER],
    )


# ═════════════════════════════════════════════════════════════════════════════
# Preview
# ═════════════════════════════════════════════════════════════════════════════

def preview_workflow(department_id: int, document_type: str | None, user_id: int) -> dict:
    """Return the template a new file would get and its per-level skip plan.

    Read-only: nothing is persisted. Uses the same planning function as
    workflow_instantiator.instantiate, so preview and instantiation agree
    for the same (template, creator authority) input.
    """
    from app.services.workflow_instantiator import plan_levels

    if db.session.get(Department, department_id) is None:
        raise NotFoundError(resource="Department", resource_id=department_id)
    if db.session.get(User, user_id) is None:
        raise NotFoundError(resource="User", resource_id=user_id)

    resolved = resolve_template(department_id, document_type)
    role, authority = creator_authority(user_id, department_id)
    plan = plan_levels(resolved.levels, authority, creator_role=role)

    first_active = next((p.level for p in plan if not p.skipped), None)
    return {
        "template": resolved.to_dict(),
        "scope_reason": resolved.scope_reason.value,
        "selection_reason": resolved.selection_reason,
        "creator_role": role,
        "creator_role_label": role_label(role),
        "creator_authority": authority,
        "levels": [p.to_dict() for p in plan],
        "first_active_level": first_active,
        "skipped_count": sum(1 for p in plan if p.skipped),
        "auto_approve": first_active is None,
    }
