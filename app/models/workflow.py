"""
Workflow Template Models — reusable approval-chain definitions.

Models:
    - WorkflowTemplate: scope (department / document type) + flags.
    - WorkflowTemplateLevel: one ordered approval step of a template.

Scope rules:
    department_id + document_type  → SPECIFIC (highest priority)
    department_id only             → DEPARTMENT_DEFAULT
    neither                        → GLOBAL_DEFAULT (is_default=True)

Templates are shared configuration. A file copies the levels into its own
FileWorkflowLevel rows at creation time, so later template edits never alter
a file's locked-in chain.
"""

from datetime import datetime, timezone

from app.models import db

# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_TYPES = ("SPECIFIC", "DEPARTMENT_DEFAULT", "GLOBAL_DEFAULT")


class WorkflowTemplate(db.Model):
    __tablename__ = "workflow_templates"
    __table_args__ = (
        db.Index("ix_wft_scope", "department_id", "document_type"),
        db.Index("ix_wft_active", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL = global template",
    )
    document_type = db.Column(
        db.String(100), nullable=True,
        comment="NULL = department-wide default",
    )
    is_default = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Derived from scope by workflow_template_service, never from input",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    department = db.relationship("Department")
    levels = db.relationship(
        "WorkflowTemplateLevel",
        back_populates="template",
        order_by="WorkflowTemplateLevel.level",
        cascade="all, delete-orphan",
    )

    @property
    def workflow_type(self) -> str:
        if self.department_id and self.document_type:
            return "SPECIFIC"
        if self.department_id:
            return "DEPARTMENT_DEFAULT"
        return "GLOBAL_DEFAULT"

    @property
    def scope_description(self) -> str:
        dept_name = self.department.name if self.department else "Department"
        if self.department_id and self.document_type:
            return f"{dept_name} + {self.document_type}"
        if self.department_id:
            return f"{dept_name} Default"
        return "Global Default"

    def to_dict(self, include_levels=True) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "department_id": self.department_id,
            "document_type": self.document_type,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "workflow_type": self.workflow_type,
            "scope_description": self.scope_description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_levels:
            d["levels"] = [lvl.to_dict() for lvl in self.levels]
        return d

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name} ({self.workflow_type})>"


class WorkflowTemplateLevel(db.Model):
    __tablename__ = "workflow_template_levels"
    __table_args__ = (
        db.UniqueConstraint("template_id", "level", name="uq_wft_level"),
        db.CheckConstraint("level >= 1", name="ck_wft_level_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    level = db.Column(db.Integer, nullable=False)
    role_required = db.Column(db.String(100), nullable=False)
    authority_required = db.Column(
        db.Integer, nullable=False,
        comment="Seniority rank of role_required at the time the level was saved",
    )
    description = db.Column(db.Text, nullable=True)

    template = db.relationship("WorkflowTemplate", back_populates="levels")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "level": self.level,
            "role_required": self.role_required,
            "authority_required": self.authority_required,
            "description": self.description,
        }
