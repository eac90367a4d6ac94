"""
File Service — creation, metadata edits, reads and the in-tray.

Rules:
  - db.session.commit() happens only in service modules.
  - create_file() resolves the workflow template *before* anything is
    written; a configuration conflict or missing workflow blocks creation.
  - The file row, its level rows and the CREATED / WORKFLOW_ASSIGNED audit
    entries are committed together.
  - Workflow actions are delegated to workflow_engine.execute().

Usage:
    from app.services import file_service

    detail = file_service.create_file(user_id=3, data={
        "subject": "FY25 capex", "department_id": 2, "document_type": "Budget",
    })
    file_service.perform_action(detail["id"], user_id=3, action="SUBMIT")
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from app.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from app.models import db
from app.models.file import (
    AUDIT_CREATED,
    AUDIT_UPDATED,
    EDITABLE_STATES,
    File,
    FileAttributeHistory,
    FileAuditTrail,
    FileState,
    FileWorkflowLevel,
    FileWorkflowParticipant,
    LevelStatus,
    write_file_audit,
)
from app.models.organization import Department, User
from app.services import workflow_engine
from app.services.authority import creator_authority, department_roles, parse_role, role_label
from app.services.template_selector import resolve_template
from app.services.workflow_instantiator import instantiate

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = (
    "Budget",
    "Policy",
    "Correspondence",
    "Proposal",
    "Report",
    "Contract",
    "Memo",
    "Circular",
    "General",
)

PRIORITIES = ("High", "Medium", "Low")

FILE_NUMBER_FORMAT = "FLM/{prefix}/{year}/{seq:04d}"

SUBJECT_MAX_LENGTH = 500

EDITABLE_FIELDS = ("subject", "priority")


# ── Private helpers ────────────────────────────────────────────────────────────


def _get_department(department_id) -> Department:
    dept = db.session.get(Department, department_id) if department_id else None
    if dept is None:
        raise NotFoundError(resource="Department", resource_id=department_id)
    return dept


def lock_department(department_id: int) -> Department:
    """Load *department_id* under a row lock; serialises file-number allocation."""
    dept = db.session.execute(
        select(Department)
        .where(Department.id == department_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if dept is None:
        raise NotFoundError(resource="Department", resource_id=department_id)
    return dept


def _get_user(user_id) -> User:
    user = db.session.get(User, user_id) if user_id else None
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _clean_subject(value) -> str:
    subject = (value or "").strip()
    if not subject:
        raise ValidationError("subject is required", details={"subject": "required"})
    if len(subject) > SUBJECT_MAX_LENGTH:
        raise ValidationError(
            f"subject must be at most {SUBJECT_MAX_LENGTH} characters",
            details={"subject": "too_long"},
        )
    return subject


def _clean_priority(value) -> str:
    priority = (value or "Medium").strip()
    if priority not in PRIORITIES:
        raise ValidationError(
            f"priority must be one of: {', '.join(PRIORITIES)}",
            details={"priority": "invalid"},
        )
    return priority


def _clean_document_type(value) -> str:
    document_type = (value or "").strip()
    if not document_type:
        raise ValidationError("document_type is required", details={"document_type": "required"})
    if document_type not in DOCUMENT_TYPES:
        raise ValidationError(
            f"document_type must be one of: {', '.join(DOCUMENT_TYPES)}",
            details={"document_type": "invalid"},
        )
    return document_type


# ── File numbers ───────────────────────────────────────────────────────────────


def generate_file_number(department: Department, year: int | None = None) -> str:
    """Next number in the department's yearly sequence: FLM/<prefix>/<year>/<nnnn>.

    Callers must hold lock_department() for *department* until commit.
    """
    year = year or datetime.now(timezone.utc).year
    stem = f"FLM/{department.file_prefix}/{year}/"
    count = db.session.execute(
        select(func.count(File.id)).where(File.file_number.like(f"{stem}%"))
    ).scalar() or 0

    seq = count + 1
    while db.session.execute(
        select(File.id).where(File.file_number == FILE_NUMBER_FORMAT.format(
            prefix=department.file_prefix, year=year, seq=seq,
        ))
    ).first() is not None:
        seq += 1
    return FILE_NUMBER_FORMAT.format(prefix=department.file_prefix, year=year, seq=seq)


# ── Create / update ────────────────────────────────────────────────────────────


def create_file(user_id: int, data: dict, origin_ip: str | None = None) -> dict:
    """Create a DRAFT file with its workflow instantiated.

    Args:
        user_id:   Creator.
        data:      {subject, department_id, document_type, priority?}
        origin_ip: Stored on the audit entries.

    Returns:
        file_detail() of the new file.

    Raises:
        ValidationError: bad input or inactive department.
        ForbiddenError: creator holds no role in the department.
        NotFoundError: department or user missing.
        ConfigurationConflictError / NoWorkflowConfiguredError: from template resolution.
    """
    subject = _clean_subject(data.get("subject"))
    document_type = _clean_document_type(data.get("document_type"))
    priority = _clean_priority(data.get("priority"))

    creator = _get_user(user_id)
    dept = _get_department(data.get("department_id"))
    if not dept.is_active:
        raise ValidationError(f"Department {dept.code} is inactive")

    role, authority = creator_authority(creator.id, dept.id)
    if role is None:
        raise ForbiddenError(
            f"You do not have any role in {dept.name}. Files can only be created "
            f"in a department where you hold a role.",
            user_id=creator.id,
            action="CREATE",
        )

    resolved = resolve_template(dept.id, document_type)

    try:
        dept = lock_department(dept.id)
        file = File(
            file_number=generate_file_number(dept),
            subject=subject,
            document_type=document_type,
            department_id=dept.id,
            priority=priority,
            created_by=creator.id,
            current_state=FileState.DRAFT.value,
            current_level=0,
            max_levels=0,
            creator_authority_level=authority,
        )
        db.session.add(file)
        db.session.flush()

        write_file_audit(
            file_id=file.id,
            action=AUDIT_CREATED,
            performed_by=creator.id,
            details="File created as draft",
            metadata={
                "fileNumber": file.file_number,
                "documentType": document_type,
                "creatorRole": role,
            },
            ip_address=origin_ip,
        )
        instantiate(file, resolved, role, authority)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "File %s created by %s (%s, authority %d)",
        file.file_number, creator.id, role, authority,
        extra={"file_id": file.id, "user_id": creator.id, "department_id": dept.id},
    )
    return file_detail(file)


def update_file(file_id: int, user_id: int, data: dict, origin_ip: str | None = None) -> dict:
    """Edit subject/priority of a DRAFT or RETURNED file (creator only).

    document_type is fixed at creation: it chose the file's workflow.
    """
    file = get_file(file_id)
    if file.created_by != user_id:
        raise ForbiddenError("Only the creator can update this file", user_id=user_id, action="UPDATE")
    if FileState(file.current_state) not in EDITABLE_STATES:
        raise ValidationError(
            f"File cannot be updated in state {file.current_state}",
            details={"current_state": file.current_state},
        )
    if "document_type" in data and data["document_type"] != file.document_type:
        raise ValidationError(
            "document_type cannot be changed after creation",
            details={"document_type": "immutable"},
        )

    changes = {}
    if data.get("subject") is not None:
        subject = _clean_subject(data["subject"])
        if subject != file.subject:
            changes["subject"] = subject
    if data.get("priority") is not None:
        priority = _clean_priority(data["priority"])
        if priority != file.priority:
            changes["priority"] = priority

    if not changes:
        return file_detail(file)

    try:
        for field in EDITABLE_FIELDS:
            if field not in changes:
                continue
            db.session.add(FileAttributeHistory(
                file_id=file.id,
                field=field,
                old_value=getattr(file, field),
                new_value=changes[field],
                changed_by=user_id,
            ))
            setattr(file, field, changes[field])

        write_file_audit(
            file_id=file.id,
            action=AUDIT_UPDATED,
            performed_by=user_id,
            details="Updated " + ", ".join(sorted(changes)),
            metadata={"fields": sorted(changes)},
            ip_address=origin_ip,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "File %s updated: %s", file.file_number, ", ".join(sorted(changes)),
        extra={"file_id": file.id, "user_id": user_id},
    )
    return file_detail(file)


# ── Reads ──────────────────────────────────────────────────────────────────────


def get_file(file_id: int) -> File:
    file = db.session.get(File, file_id)
    if file is None:
        raise NotFoundError(resource="File", resource_id=file_id)
    return file


def get_file_levels(file_id: int) -> list[dict]:
    file = get_file(file_id)
    return [row.to_dict() | {"role_label": role_label(row.role_required)} for row in file.levels]


def file_detail(file: File, caller_id: int | None = None) -> dict:
    """Serialize a file with its levels, participants, audit trail and history."""
    participants = db.session.execute(
        select(FileWorkflowParticipant)
        .where(FileWorkflowParticipant.file_id == file.id)
        .order_by(FileWorkflowParticipant.id.asc())
    ).scalars().all()
    audit = db.session.execute(
        select(FileAuditTrail)
        .where(FileAuditTrail.file_id == file.id)
        .order_by(FileAuditTrail.id.asc())
    ).scalars().all()
    history = db.session.execute(
        select(FileAttributeHistory)
        .where(FileAttributeHistory.file_id == file.id)
        .order_by(FileAttributeHistory.id.asc())
    ).scalars().all()

    d = file.to_dict()
    d["department"] = file.department.to_dict() if file.department else None
    d["creator"] = file.creator.to_dict() if file.creator else None
    d["workflow"] = {
        "template_id": file.workflow_template_id,
        "selection_reason": file.workflow_selection_reason,
        "current_level": file.current_level,
        "max_levels": file.max_levels,
        "levels": [row.to_dict() for row in file.levels],
        "participants": [p.to_dict() for p in participants],
    }
    d["audit_trail"] = [a.to_dict() for a in audit]
    d["attribute_history"] = [h.to_dict() for h in history]
    if caller_id is not None:
        d["allowed_actions"] = workflow_engine.allowed_actions(file, caller_id)
    return d


# ── Actions ────────────────────────────────────────────────────────────────────


def perform_action(
    file_id: int,
    user_id: int,
    action: str,
    remarks: str | None = "",
    origin_ip: str | None = None,
) -> dict:
    """Run a workflow action and return the refreshed file detail."""
    file = workflow_engine.execute(file_id, user_id, action, remarks=remarks, origin_ip=origin_ip)
    return file_detail(file, caller_id=user_id)


def list_in_tray(user_id: int, department_id: int) -> list[dict]:
    """IN_REVIEW files in *department_id* whose active level needs one of the user's roles."""
    held = department_roles(user_id, department_id)
    if not held:
        return []
    roles = set(held) | {parsed.value for parsed in map(parse_role, held) if parsed is not None}

    files = db.session.execute(
        select(File)
        .join(
            FileWorkflowLevel,
            (FileWorkflowLevel.file_id == File.id)
            & (FileWorkflowLevel.level == File.current_level),
        )
        .where(
            File.department_id == department_id,
            File.current_state == FileState.IN_REVIEW.value,
            FileWorkflowLevel.status == LevelStatus.ACTIVE.value,
            FileWorkflowLevel.role_required.in_(roles),
        )
        .order_by(File.updated_at.desc(), File.id.desc())
    ).scalars().all()
    return [f.to_dict() for f in files]
