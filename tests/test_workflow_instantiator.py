"""
Workflow instantiation: per-file level rows, authority-based skipping and
the WORKFLOW_ASSIGNED audit entry.
"""

from sqlalchemy import select

from app.models import db
from app.models.file import AUDIT_WORKFLOW_ASSIGNED, File, FileAuditTrail, LevelStatus
from app.models.workflow import WorkflowTemplateLevel
from app.services import file_service
from app.services.template_selector import TemplateLevelSpec, preview_workflow
from app.services.workflow_engine import execute
from app.services.workflow_instantiator import plan_levels


def _spec(level, role, authority):
    return TemplateLevelSpec(level=level, role_required=role, authority_required=authority)


def _create(user, dept, document_type="Memo"):
    return file_service.create_file(user.id, {
        "subject": "Test file",
        "department_id": dept.id,
        "document_type": document_type,
    })


def test_plan_skips_levels_at_or_below_creator_authority():
    """Authorities [2, 3, 5] with creator authority 3: levels 1-2 skipped, level 3 pending."""
    levels = [_spec(1, "Section Officer", 2), _spec(2, "Under Secretary", 3), _spec(3, "Joint Secretary", 5)]
    plan = plan_levels(levels, 3, creator_role="Under Secretary")

    assert [p.status for p in plan] == [LevelStatus.SKIPPED, LevelStatus.SKIPPED, LevelStatus.PENDING]
    assert plan[1].skip_reason == (
        "Creator has Under Secretary (authority 3) >= required Under Secretary (authority 3)"
    )
    assert plan[2].skip_reason is None


def test_plan_orders_by_level():
    plan = plan_levels([_spec(2, "Under Secretary", 3), _spec(1, "Section Officer", 2)], 1)
    assert [p.level for p in plan] == [1, 2]


def test_instantiate_copies_levels_into_file(org):
    detail = _create(org.clerk, org.fin, "Budget")
    file = db.session.get(File, detail["id"])

    assert file.max_levels == len(file.levels) == 4
    assert file.workflow_template_id == org.fin_budget.id
    assert file.creator_authority_level == 1
    assert file.current_level == 0
    assert [row.status for row in file.levels] == ["PENDING"] * 4
    assert [row.role_required for row in file.levels] == [
        "Section Officer", "Under Secretary", "Deputy Secretary", "Joint Secretary",
    ]


def test_senior_creator_skips_lower_levels(org, make_template):
    """Under Secretary creating on SO → US → JS: only the Joint Secretary level remains."""
    make_template("FIN Contract", org.fin, "Contract", ["Section Officer", "Under Secretary", "Joint Secretary"])
    detail = _create(org.us, org.fin, "Contract")
    file = db.session.get(File, detail["id"])

    assert file.creator_authority_level == 3
    assert [row.status for row in file.levels] == ["SKIPPED", "SKIPPED", "PENDING"]
    assert file.levels[0].skipped_reason is not None

    file = execute(detail["id"], org.us.id, "SUBMIT")
    assert file.current_level == 3
    assert [row.status for row in file.levels] == ["SKIPPED", "SKIPPED", "ACTIVE"]


def test_workflow_assigned_audit_records_decision(org):
    detail = _create(org.ds, org.fin, "Budget")
    entry = db.session.execute(
        select(FileAuditTrail).where(
            FileAuditTrail.file_id == detail["id"],
            FileAuditTrail.action == AUDIT_WORKFLOW_ASSIGNED,
        )
    ).scalar_one()

    meta = entry.meta
    assert meta["templateId"] == org.fin_budget.id
    assert meta["scopeReason"] == "DEPARTMENT_FILETYPE_MATCH"
    assert meta["creatorAuthority"] == 4
    assert meta["maxLevels"] == 4
    assert meta["firstActiveLevel"] == 4
    assert [s["level"] for s in meta["skippedLevels"]] == [1, 2, 3]


def test_preview_matches_instantiation(org):
    preview = preview_workflow(org.fin.id, "Budget", org.us.id)
    detail = _create(org.us, org.fin, "Budget")

    assert [lvl["status"] for lvl in preview["levels"]] == [
        lvl["status"] for lvl in detail["workflow"]["levels"]
    ]
    assert preview["template"]["template_id"] == detail["workflow"]["template_id"]
    assert preview["selection_reason"] == detail["workflow"]["selection_reason"]


def test_template_edits_do_not_touch_existing_files(org):
    detail = _create(org.clerk, org.fin, "Memo")

    level = db.session.execute(
        select(WorkflowTemplateLevel).where(
            WorkflowTemplateLevel.template_id == org.fin_default.id,
            WorkflowTemplateLevel.level == 1,
        )
    ).scalar_one()
    level.role_required = "Joint Secretary"
    level.authority_required = 5
    db.session.commit()

    file = db.session.get(File, detail["id"])
    assert file.levels[0].role_required == "Section Officer"
    assert file.levels[0].authority_required == 2
