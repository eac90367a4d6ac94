"""
Startup diagnostics — runs once when the Flask app starts.

Checks the database and the workflow configuration, and logs a summary
banner. Ambiguous template scopes are reported here so administrators
see them before the first file creation fails on them.
"""

import logging
import sys

from flask import Flask
from sqlalchemy import func, select

from app.models import db

logger = logging.getLogger(__name__)


def find_ambiguous_scopes() -> list[dict]:
    """Active-template scopes with more than one candidate."""
    from app.models.workflow import WorkflowTemplate

    rows = db.session.execute(
        select(
            WorkflowTemplate.department_id,
            WorkflowTemplate.document_type,
            func.count(WorkflowTemplate.id),
        )
        .where(WorkflowTemplate.is_active.is_(True))
        .group_by(WorkflowTemplate.department_id, WorkflowTemplate.document_type)
        .having(func.count(WorkflowTemplate.id) > 1)
    ).all()
    return [
        {"department_id": dept, "document_type": doc_type, "active_templates": count}
        for dept, doc_type, count in rows
    ]


def run_startup_diagnostics(app: Flask):
    """Run diagnostic checks during app startup (inside app context)."""
    if app.config.get("TESTING"):
        return  # skip during tests for speed

    from app.models.workflow import WorkflowTemplate

    issues: list[str] = []

    with app.app_context():
        py = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

        # ── Database connectivity ────────────────────────────────────
        db_status = "ok"
        db_uri = str(app.config.get("SQLALCHEMY_DATABASE_URI", ""))
        db_type = "PostgreSQL" if "postgresql" in db_uri else "SQLite" if "sqlite" in db_uri else "unknown"
        try:
            db.session.execute(db.text("SELECT 1"))
        except Exception as exc:
            db_status = f"FAILED ({exc})"
            issues.append(f"Database unreachable: {exc}")

        # ── Workflow configuration ───────────────────────────────────
        active_templates = "?"
        global_default = "?"
        try:
            active_templates = db.session.execute(
                select(func.count(WorkflowTemplate.id)).where(WorkflowTemplate.is_active.is_(True))
            ).scalar()
            has_global = db.session.execute(
                select(WorkflowTemplate.id).where(
                    WorkflowTemplate.is_active.is_(True),
                    WorkflowTemplate.department_id.is_(None),
                    WorkflowTemplate.document_type.is_(None),
                    WorkflowTemplate.is_default.is_(True),
                ).limit(1)
            ).first() is not None
            global_default = "present" if has_global else "MISSING"
            if not has_global:
                issues.append(
                    "No active global default workflow — departments without their own "
                    "template cannot create files"
                )
            for scope in find_ambiguous_scopes():
                issues.append(
                    f"Ambiguous workflow scope department={scope['department_id']} "
                    f"document_type={scope['document_type']!r}: "
                    f"{scope['active_templates']} active templates"
                )
        except Exception as exc:
            db.session.rollback()
            issues.append(f"Workflow configuration check failed: {exc} (run 'flask db upgrade')")

        banner = f"""
╔══════════════════════════════════════════════════════════════╗
║  File Workflow Platform — Startup Diagnostics                ║
╠══════════════════════════════════════════════════════════════╣
║  Python      : {py:<46s}║
║  Debug       : {str(app.debug):<46s}║
║  Database    : {db_type} ({db_status}){' ' * max(0, 46 - len(db_type) - len(str(db_status)) - 3)}║
║  Templates   : {str(active_templates) + ' active':<46s}║
║  Global dflt : {global_default:<46s}║
╚══════════════════════════════════════════════════════════════╝"""
        logger.info(banner)

        if issues:
            logger.warning("Startup issues detected:")
            for issue in issues:
                logger.warning("  ⚠ %s", issue, extra={"event_type": "config_warning"})
        else:
            logger.info("✅ All startup checks passed")
