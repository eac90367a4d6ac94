"""file_workflow_schema

Creates the file-workflow tables:
  - departments, users, user_department_roles   — organisation & role bindings
  - workflow_templates, workflow_template_levels — approval-chain configuration
  - files, file_workflow_levels                  — dossiers & their level instances
  - file_workflow_participants, file_audit_trail — append-only action logs
  - file_attribute_history                       — metadata edit history

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7c1e4b9a2d10
Revises:
Create Date: 2026-10-19 09:12:40.118203
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e4b9a2d10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Organisation ──────────────────────────────────────────────────────
    if "departments" not in existing:
        op.create_table(
            "departments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("file_prefix", sa.String(length=20), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "user_department_roles" not in existing:
        op.create_table(
            "user_department_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("department_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=100), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "department_id", "role", name="uq_user_dept_role"),
        )
        op.create_index("ix_user_department_roles_user_id", "user_department_roles", ["user_id"])
        op.create_index("ix_user_department_roles_department_id", "user_department_roles", ["department_id"])
        op.create_index("ix_udr_department_role", "user_department_roles", ["department_id", "role"])

    # ── Workflow templates ────────────────────────────────────────────────
    if "workflow_templates" not in existing:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("department_id", sa.Integer(), nullable=True),
            sa.Column("document_type", sa.String(length=100), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_wft_scope", "workflow_templates", ["department_id", "document_type"])
        op.create_index("ix_wft_active", "workflow_templates", ["is_active"])

    if "workflow_template_levels" not in existing:
        op.create_table(
            "workflow_template_levels",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("level", sa.Integer(), nullable=False),
            sa.Column("role_required", sa.String(length=100), nullable=False),
            sa.Column("authority_required", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("template_id", "level", name="uq_wft_level"),
            sa.CheckConstraint("level >= 1", name="ck_wft_level_positive"),
        )
        op.create_index("ix_workflow_template_levels_template_id", "workflow_template_levels", ["template_id"])

    # ── Files ─────────────────────────────────────────────────────────────
    if "files" not in existing:
        op.create_table(
            "files",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("file_number", sa.String(length=100), nullable=False),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("document_type", sa.String(length=100), nullable=False),
            sa.Column("department_id", sa.Integer(), nullable=False),
            sa.Column("priority", sa.String(length=20), nullable=False),
            sa.Column("created_by", sa.Integer(), nullable=False),
            sa.Column("workflow_template_id", sa.Integer(), nullable=True),
            sa.Column("creator_authority_level", sa.Integer(), nullable=False),
            sa.Column("workflow_selection_reason", sa.String(length=500), nullable=True),
            sa.Column("current_state", sa.String(length=20), nullable=False),
            sa.Column("current_level", sa.Integer(), nullable=False),
            sa.Column("max_levels", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["workflow_template_id"], ["workflow_templates.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("file_number"),
        )
        op.create_index("ix_files_department_state", "files", ["department_id", "current_state"])
        op.create_index("ix_files_created_by", "files", ["created_by"])

    if "file_workflow_levels" not in existing:
        op.create_table(
            "file_workflow_levels",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("file_id", sa.Integer(), nullable=False),
            sa.Column("level", sa.Integer(), nullable=False),
            sa.Column("role_required", sa.String(length=100), nullable=False),
            sa.Column("authority_required", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("skipped_reason", sa.String(length=255), nullable=True),
            sa.Column("completed_by", sa.Integer(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("remarks", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["file_id"], ["files.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["completed_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("file_id", "level", name="uq_file_level"),
        )
        op.create_index("ix_file_workflow_levels_file_id", "file_workflow_levels", ["file_id"])
        op.create_index("ix_fwl_status", "file_workflow_levels", ["status"])

    # ── Append-only logs ──────────────────────────────────────────────────
    if "file_workflow_participants" not in existing:
        op.create_table(
            "file_workflow_participants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("file_id", sa.Integer(), nullable=False),
            sa.Column("level", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=100), nullable=False),
            sa.Column("department_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=50), nullable=False),
            sa.Column("action_by", sa.Integer(), nullable=False),
            sa.Column("action_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("remarks", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["file_id"], ["files.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["action_by"], ["users.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_file_workflow_participants_file_id", "file_workflow_participants", ["file_id"])
        op.create_index("ix_file_workflow_participants_action_by", "file_workflow_participants", ["action_by"])
        op.create_index("ix_fwp_file_level", "file_workflow_participants", ["file_id", "level"])

    if "file_audit_trail" not in existing:
        op.create_table(
            "file_audit_trail",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("file_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("performed_by", sa.Integer(), nullable=False),
            sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("metadata", sa.Text(), nullable=True),
            sa.Column("ip_address", sa.String(length=45), nullable=True),
            sa.ForeignKeyConstraint(["file_id"], ["files.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["performed_by"], ["users.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_fat_file", "file_audit_trail", ["file_id"])
        op.create_index("ix_fat_action", "file_audit_trail", ["action"])
        op.create_index("ix_fat_performed_at", "file_audit_trail", ["performed_at"])
        op.create_index("ix_file_audit_trail_performed_by", "file_audit_trail", ["performed_by"])

    if "file_attribute_history" not in existing:
        op.create_table(
            "file_attribute_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("file_id", sa.Integer(), nullable=False),
            sa.Column("field", sa.String(length=50), nullable=False),
            sa.Column("old_value", sa.Text(), nullable=True),
            sa.Column("new_value", sa.Text(), nullable=True),
            sa.Column("changed_by", sa.Integer(), nullable=False),
            sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["file_id"], ["files.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["changed_by"], ["users.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_file_attribute_history_file_id", "file_attribute_history", ["file_id"])


def downgrade():
    for table in (
        "file_attribute_history",
        "file_audit_trail",
        "file_workflow_participants",
        "file_workflow_levels",
        "files",
        "workflow_template_levels",
        "workflow_templates",
        "user_department_roles",
        "users",
        "departments",
    ):
        op.drop_table(table)
