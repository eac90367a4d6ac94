"""
File domain models — the case dossier and its per-file workflow instance.

Models:
    - File: the dossier row; current_state/current_level are the source of truth.
    - FileWorkflowLevel: per-file copy of a template level with its status.
    - FileWorkflowParticipant: append-only log of approval-chain actions.
    - FileAuditTrail: append-only log of every action on a file.
    - FileAttributeHistory: field-level history of metadata edits.

State machine (STATE_TRANSITIONS, action allowed from state):
    DRAFT     → SAVE_DRAFT, SUBMIT
    IN_REVIEW → APPROVE, RETURN, HOLD, REJECT
    RETURNED  → RESUBMIT
    CABINET   → RESUME
    APPROVED  → ARCHIVE
    REJECTED  → (terminal)
    ARCHIVED  → (terminal)
"""

import json
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import event as _sa_event

from app.models import db


# ── Enums & constants ────────────────────────────────────────────────────────

class FileState(str, Enum):
    DRAFT = "DRAFT"
    IN_REVIEW = "IN_REVIEW"
    RETURNED = "RETURNED"
    CABINET = "CABINET"      # on hold
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ARCHIVED = "ARCHIVED"


class WorkflowAction(str, Enum):
    SAVE_DRAFT = "SAVE_DRAFT"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    RETURN = "RETURN"
    RESUBMIT = "RESUBMIT"
    HOLD = "HOLD"
    RESUME = "RESUME"
    REJECT = "REJECT"
    ARCHIVE = "ARCHIVE"


class LevelStatus(str, Enum):
    PENDING = "PENDING"        # not yet reached
    ACTIVE = "ACTIVE"          # current level
    COMPLETED = "COMPLETED"    # approved at this level
    SKIPPED = "SKIPPED"        # skipped due to creator authority
    RETURNED = "RETURNED"      # returned (or rejected) from this level


STATE_TRANSITIONS = {
    FileState.DRAFT: [WorkflowAction.SAVE_DRAFT, WorkflowAction.SUBMIT],
    FileState.IN_REVIEW: [
        WorkflowAction.APPROVE, WorkflowAction.RETURN,
        WorkflowAction.HOLD, WorkflowAction.REJECT,
    ],
    FileState.RETURNED: [WorkflowAction.RESUBMIT],
    FileState.CABINET: [WorkflowAction.RESUME],
    FileState.APPROVED: [WorkflowAction.ARCHIVE],
    FileState.REJECTED: [],
    FileState.ARCHIVED: [],
}

TERMINAL_STATES = frozenset({FileState.REJECTED, FileState.ARCHIVED})
EDITABLE_STATES = frozenset({FileState.DRAFT, FileState.RETURNED})

# Actions that are recorded in file_workflow_participants
APPROVAL_CHAIN_ACTIONS = frozenset({
    WorkflowAction.APPROVE,
    WorkflowAction.RETURN,
    WorkflowAction.REJECT,
    WorkflowAction.HOLD,
    WorkflowAction.RESUME,
})

# Audit actions that are not workflow transitions
AUDIT_CREATED = "CREATED"
AUDIT_WORKFLOW_ASSIGNED = "WORKFLOW_ASSIGNED"
AUDIT_UPDATED = "UPDATED"
AUDIT_AUTO_APPROVED = "AUTO_APPROVED"


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# FILE
# ═════════════════════════════════════════════════════════════════════════════

class File(db.Model):
    __tablename__ = "files"
    __table_args__ = (
        db.Index("ix_files_department_state", "department_id", "current_state"),
        db.Index("ix_files_created_by", "created_by"),
    )

    id = db.Column(db.Integer, primary_key=True)
    file_number = db.Column(db.String(100), unique=True, nullable=False)
    subject = db.Column(db.String(500), nullable=False)
    document_type = db.Column(db.String(100), nullable=False)
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False,
    )
    priority = db.Column(db.String(20), nullable=False, default="Medium")
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )

    # Workflow binding (locked in at creation)
    workflow_template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="SET NULL"), nullable=True,
    )
    creator_authority_level = db.Column(db.Integer, nullable=False, default=0)
    workflow_selection_reason = db.Column(db.String(500), nullable=True)

    # Workflow position
    current_state = db.Column(
        db.String(20), nullable=False, default=FileState.DRAFT.value,
        comment="DRAFT | IN_REVIEW | RETURNED | CABINET | APPROVED | REJECTED | ARCHIVED",
    )
    current_level = db.Column(db.Integer, nullable=False, default=0)
    max_levels = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    department = db.relationship("Department")
    creator = db.relationship("User", foreign_keys=[created_by])
    workflow_template = db.relationship("WorkflowTemplate")
    levels = db.relationship(
        "FileWorkflowLevel",
        back_populates="file",
        order_by="FileWorkflowLevel.level",
        cascade="all, delete-orphan",
    )

    def level_row(self, level: int):
        """Return the FileWorkflowLevel for *level*, or None."""
        for row in self.levels:
            if row.level == level:
                return row
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_number": self.file_number,
            "subject": self.subject,
            "document_type": self.document_type,
            "department_id": self.department_id,
            "priority": self.priority,
            "created_by": self.created_by,
            "workflow_template_id": self.workflow_template_id,
            "creator_authority_level": self.creator_authority_level,
            "workflow_selection_reason": self.workflow_selection_reason,
            "current_state": self.current_state,
            "current_level": self.current_level,
            "max_levels": self.max_levels,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<File {self.file_number} {self.current_state}@L{self.current_level}>"


# ═════════════════════════════════════════════════════════════════════════════
# PER-FILE WORKFLOW LEVELS
# ═════════════════════════════════════════════════════════════════════════════

class FileWorkflowLevel(db.Model):
    __tablename__ = "file_workflow_levels"
    __table_args__ = (
        db.UniqueConstraint("file_id", "level", name="uq_file_level"),
        db.Index("ix_fwl_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(
        db.Integer, db.ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    level = db.Column(db.Integer, nullable=False)
    role_required = db.Column(db.String(100), nullable=False)
    authority_required = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=LevelStatus.PENDING.value,
        comment="PENDING | ACTIVE | COMPLETED | SKIPPED | RETURNED",
    )
    skipped_reason = db.Column(db.String(255), nullable=True)
    completed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    remarks = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    file = db.relationship("File", back_populates="levels")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "level": self.level,
            "role_required": self.role_required,
            "authority_required": self.authority_required,
            "description": self.description,
            "status": self.status,
            "skipped_reason": self.skipped_reason,
            "completed_by": self.completed_by,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "remarks": self.remarks,
        }


# ═════════════════════════════════════════════════════════════════════════════
# APPEND-ONLY LOGS
# ═════════════════════════════════════════════════════════════════════════════

class FileWorkflowParticipant(db.Model):
    """Immutable record of one approval-chain action (APPROVE/RETURN/REJECT/HOLD/RESUME)."""

    __tablename__ = "file_workflow_participants"
    __table_args__ = (
        db.Index("ix_fwp_file_level", "file_id", "level"),
    )

    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(
        db.Integer, db.ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    level = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(100), nullable=False)
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True,
    )
    action = db.Column(db.String(50), nullable=False)
    action_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    action_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    remarks = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "level": self.level,
            "role": self.role,
            "department_id": self.department_id,
            "action": self.action,
            "action_by": self.action_by,
            "action_at": self.action_at.isoformat() if self.action_at else None,
            "remarks": self.remarks,
        }


class FileAuditTrail(db.Model):
    """
    Immutable audit trail for every action on a file.

    ``metadata_json`` carries the structured payload: from/to state and
    level for transitions, the full selection decision for WORKFLOW_ASSIGNED.
    """

    __tablename__ = "file_audit_trail"
    __table_args__ = (
        db.Index("ix_fat_file", "file_id"),
        db.Index("ix_fat_action", "action"),
        db.Index("ix_fat_performed_at", "performed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(
        db.Integer, db.ForeignKey("files.id", ondelete="CASCADE"), nullable=False,
    )
    action = db.Column(
        db.String(100), nullable=False,
        comment="CREATED | WORKFLOW_ASSIGNED | UPDATED | AUTO_APPROVED | <WorkflowAction>",
    )
    performed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    performed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    details = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", db.Text, default="{}")
    ip_address = db.Column(db.String(45), nullable=True)

    @property
    def meta(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "action": self.action,
            "performed_by": self.performed_by,
            "performed_at": self.performed_at.isoformat() if self.performed_at else None,
            "details": self.details,
            "metadata": self.meta,
            "ip_address": self.ip_address,
        }

    def __repr__(self):
        return f"<FileAuditTrail {self.id}: {self.action} on file {self.file_id}>"


class FileAttributeHistory(db.Model):
    __tablename__ = "file_attribute_history"

    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(
        db.Integer, db.ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    field = db.Column(db.String(50), nullable=False)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    changed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False,
    )
    changed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }


# ── Append-only guards ───────────────────────────────────────────────────────

def _block_mutation(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(
        f"{type(target).__name__} rows are append-only and cannot be updated or deleted."
    )


for _append_only in (FileWorkflowParticipant, FileAuditTrail):
    _sa_event.listen(_append_only, "before_update", _block_mutation)
    _sa_event.listen(_append_only, "before_delete", _block_mutation)


# ── Convenience writer ───────────────────────────────────────────────────────

def write_file_audit(
    *,
    file_id: int,
    action: str,
    performed_by: int,
    details: str | None = None,
    metadata: dict | None = None,
    ip_address: str | None = None,
) -> FileAuditTrail:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) FileAuditTrail instance.
    """
    entry = FileAuditTrail(
        file_id=file_id,
        action=action,
        performed_by=performed_by,
        details=details,
        metadata_json=json.dumps(metadata or {}, default=str),
        ip_address=ip_address,
    )
    db.session.add(entry)
    db.session.flush()
    return entry
