"""
Workflow Instantiator — materialises a file's own approval chain.

Given the resolved template and the creator's authority, one
FileWorkflowLevel row is written per template level:

    creator_authority >= level.authority_required  → SKIPPED
    otherwise                                       → PENDING

The first non-skipped level becomes ACTIVE on SUBMIT (workflow_engine).
When every level is skipped the SUBMIT fast-tracks the file to APPROVED.

instantiate() runs inside the caller's transaction (flush only) together
with the file insert, so the WORKFLOW_ASSIGNED audit entry can never
disagree with the level rows it describes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.models import db
from app.models.file import (
    AUDIT_WORKFLOW_ASSIGNED,
    File,
    FileWorkflowLevel,
    LevelStatus,
    write_file_audit,
)
from app.services.authority import role_label
from app.services.template_selector import ResolvedTemplate, TemplateLevelSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelPlan:
    """Skip decision for one level; shared by preview and instantiation."""
    level: int
    role_required: str
    authority_required: int
    description: str | None
    skipped: bool
    skip_reason: str | None

    @property
    def status(self) -> LevelStatus:
        return LevelStatus.SKIPPED if self.skipped else LevelStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "role_required": self.role_required,
            "role_label": role_label(self.role_required),
            "authority_required": self.authority_required,
            "description": self.description,
            "status": self.status.value,
            "will_skip": self.skipped,
            "skip_reason": self.skip_reason,
        }


def plan_levels(
    levels: tuple[TemplateLevelSpec, ...] | list[TemplateLevelSpec],
    creator_authority: int,
    creator_role: str | None = None,
) -> list[LevelPlan]:
    """Compute the skip/pending decision for each level, ascending by level."""
    plan = []
    for spec in sorted(levels, key=lambda s: s.level):
        skipped = creator_authority >= spec.authority_required
        reason = None
        if skipped:
            reason = (
                f"Creator has {role_label(creator_role)} (authority {creator_authority}) "
                f">= required {role_label(spec.role_required)} (authority {spec.authority_required})"
            )
        plan.append(LevelPlan(
            level=spec.level,
            role_required=spec.role_required,
            authority_required=spec.authority_required,
            description=spec.description,
            skipped=skipped,
            skip_reason=reason,
        ))
    return plan


def instantiate(
    file: File,
    resolved: ResolvedTemplate,
    creator_role: str | None,
    creator_authority: int,
) -> list[FileWorkflowLevel]:
    """Write the per-file level rows and the WORKFLOW_ASSIGNED audit entry.

    The file must already be flushed (it needs an id). Does not commit.
    """
    plan = plan_levels(resolved.levels, creator_authority, creator_role=creator_role)

    rows = []
    for item in plan:
        row = FileWorkflowLevel(
            level=item.level,
            role_required=item.role_required,
            authority_required=item.authority_required,
            description=item.description,
            status=item.status.value,
            skipped_reason=item.skip_reason,
        )
        file.levels.append(row)
        rows.append(row)

    file.workflow_template_id = resolved.template_id
    file.max_levels = len(rows)
    file.creator_authority_level = creator_authority
    file.workflow_selection_reason = resolved.selection_reason
    db.session.flush()

    skipped = [p for p in plan if p.skipped]
    first_active = next((p.level for p in plan if not p.skipped), None)
    write_file_audit(
        file_id=file.id,
        action=AUDIT_WORKFLOW_ASSIGNED,
        performed_by=file.created_by,
        details=(
            f"Workflow '{resolved.name}' assigned ({resolved.scope_reason.value}); "
            f"{len(skipped)} of {len(plan)} level(s) skipped"
        ),
        metadata={
            "templateId": resolved.template_id,
            "templateName": resolved.name,
            "scopeReason": resolved.scope_reason.value,
            "selectionReason": resolved.selection_reason,
            "creatorRole": creator_role,
            "creatorAuthority": creator_authority,
            "maxLevels": len(plan),
            "firstActiveLevel": first_active,
            "skippedLevels": [
                {"level": p.level, "roleRequired": p.role_required, "reason": p.skip_reason}
                for p in skipped
            ],
        },
    )

    logger.info(
        "Workflow instantiated: %d levels, %d skipped", len(plan), len(skipped),
        extra={
            "file_id": file.id,
            "template_id": resolved.template_id,
            "department_id": file.department_id,
        },
    )
    return rows
