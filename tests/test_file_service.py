"""
File service: numbering, creation rules, metadata edits and the in-tray.
"""

import os
import threading
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    ConfigurationConflictError,
    ForbiddenError,
    NotFoundError,
    NoWorkflowConfiguredError,
    ValidationError,
)
from app.models import db
from app.models.file import File, FileAttributeHistory
from app.models.organization import Department
from app.models.workflow import WorkflowTemplate
from app.services import file_service


_ON_POSTGRES = os.environ.get("TEST_DATABASE_URL", "").startswith("postgresql")


def _payload(dept, **overrides):
    data = {"subject": "FY25 capex", "department_id": dept.id, "document_type": "Memo"}
    data.update(overrides)
    return data


def _file_count():
    return db.session.execute(select(func.count(File.id))).scalar()


# ═════════════════════════════════════════════════════════════════════════════
# File numbers
# ═════════════════════════════════════════════════════════════════════════════


def test_file_numbers_follow_department_sequence(org):
    year = datetime.now(timezone.utc).year
    first = file_service.create_file(org.clerk.id, _payload(org.fin))
    second = file_service.create_file(org.clerk.id, _payload(org.fin))
    hr = file_service.create_file(org.hr_clerk.id, _payload(org.hr))

    assert first["file_number"] == f"FLM/FIN/{year}/0001"
    assert second["file_number"] == f"FLM/FIN/{year}/0002"
    assert hr["file_number"] == f"FLM/HR/{year}/0001"


def test_file_number_for_explicit_year(org):
    assert file_service.generate_file_number(org.fin, year=2020) == "FLM/FIN/2020/0001"


def test_department_is_locked_before_numbering(org, monkeypatch):
    calls = []
    real_lock, real_number = file_service.lock_department, file_service.generate_file_number

    def _lock(department_id):
        calls.append(("lock", department_id))
        return real_lock(department_id)

    def _number(department, year=None):
        calls.append(("number", department.id))
        return real_number(department, year)

    monkeypatch.setattr(file_service, "lock_department", _lock)
    monkeypatch.setattr(file_service, "generate_file_number", _number)
    file_service.create_file(org.clerk.id, _payload(org.fin))

    assert calls == [("lock", org.fin.id), ("number", org.fin.id)]


@pytest.mark.skipif(not _ON_POSTGRES, reason="row locks need a server database")
def test_concurrent_creates_get_distinct_numbers(app, org):
    creators = (org.clerk.id, org.so.id, org.us.id)
    dept_id = org.fin.id

    numbers, errors = [], []
    barrier = threading.Barrier(len(creators))

    def _create(user_id):
        with app.app_context():
            barrier.wait()
            try:
                numbers.append(file_service.create_file(user_id, {
                    "subject": "Parallel", "department_id": dept_id, "document_type": "Memo",
                })["file_number"])
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=_create, args=(uid,)) for uid in creators]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(set(numbers)) == len(creators)


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


def test_create_file_returns_detail(org):
    detail = file_service.create_file(org.clerk.id, _payload(org.fin, priority="High"), origin_ip="10.1.1.1")

    assert detail["current_state"] == "DRAFT"
    assert detail["current_level"] == 0
    assert detail["priority"] == "High"
    assert detail["department"]["code"] == "FIN"
    assert detail["creator"]["id"] == org.clerk.id
    assert detail["workflow"]["max_levels"] == 3
    assert [a["action"] for a in detail["audit_trail"]] == ["CREATED", "WORKFLOW_ASSIGNED"]
    assert detail["audit_trail"][0]["ip_address"] == "10.1.1.1"
    assert "allowed_actions" not in detail


def test_priority_defaults_to_medium(org):
    assert file_service.create_file(org.clerk.id, _payload(org.fin))["priority"] == "Medium"


@pytest.mark.parametrize("overrides, field", [
    ({"subject": "  "}, "subject"),
    ({"subject": "x" * 501}, "subject"),
    ({"document_type": ""}, "document_type"),
    ({"document_type": "Poem"}, "document_type"),
    ({"priority": "Urgent"}, "priority"),
])
def test_create_file_validation(org, overrides, field):
    with pytest.raises(ValidationError) as exc:
        file_service.create_file(org.clerk.id, _payload(org.fin, **overrides))
    assert field in exc.value.details
    assert _file_count() == 0


def test_create_requires_role_in_department(org):
    with pytest.raises(ForbiddenError):
        file_service.create_file(org.outsider.id, _payload(org.fin))
    with pytest.raises(ForbiddenError):
        file_service.create_file(org.clerk.id, _payload(org.hr))


def test_create_in_inactive_department(org):
    db.session.get(Department, org.fin.id).is_active = False
    db.session.commit()
    with pytest.raises(ValidationError):
        file_service.create_file(org.clerk.id, _payload(org.fin))


def test_create_in_unknown_department(org):
    with pytest.raises(NotFoundError):
        file_service.create_file(org.clerk.id, {"subject": "x", "department_id": 9999, "document_type": "Memo"})


def test_configuration_conflict_blocks_creation(org, make_template):
    make_template("Second FIN default", org.fin, None, ["Section Officer"])
    with pytest.raises(ConfigurationConflictError):
        file_service.create_file(org.clerk.id, _payload(org.fin))
    assert _file_count() == 0


def test_missing_workflow_blocks_creation(org):
    db.session.get(WorkflowTemplate, org.global_default.id).is_active = False
    db.session.commit()
    with pytest.raises(NoWorkflowConfiguredError):
        file_service.create_file(org.eng_clerk.id, _payload(org.eng))
    assert _file_count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Updates
# ═════════════════════════════════════════════════════════════════════════════


def test_update_records_attribute_history(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    detail = file_service.update_file(fid, org.clerk.id, {"subject": "FY26 capex", "priority": "Low"})

    assert detail["subject"] == "FY26 capex"
    assert detail["priority"] == "Low"
    history = {h["field"]: (h["old_value"], h["new_value"]) for h in detail["attribute_history"]}
    assert history == {"subject": ("FY25 capex", "FY26 capex"), "priority": ("Medium", "Low")}
    assert detail["audit_trail"][-1]["details"] == "Updated priority, subject"


def test_update_without_changes_writes_nothing(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    detail = file_service.update_file(fid, org.clerk.id, {"subject": "FY25 capex"})
    assert detail["attribute_history"] == []
    assert len(detail["audit_trail"]) == 2


def test_only_creator_can_update(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    with pytest.raises(ForbiddenError):
        file_service.update_file(fid, org.so.id, {"subject": "Hijacked"})


def test_update_blocked_while_in_review(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    file_service.perform_action(fid, org.clerk.id, "SUBMIT")
    with pytest.raises(ValidationError):
        file_service.update_file(fid, org.clerk.id, {"subject": "Late edit"})


def test_update_allowed_after_return(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    file_service.perform_action(fid, org.clerk.id, "SUBMIT")
    file_service.perform_action(fid, org.so.id, "RETURN", remarks="Fix subject")
    detail = file_service.update_file(fid, org.clerk.id, {"subject": "Fixed subject"})
    assert detail["subject"] == "Fixed subject"


def test_document_type_is_immutable(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    with pytest.raises(ValidationError) as exc:
        file_service.update_file(fid, org.clerk.id, {"document_type": "Budget"})
    assert exc.value.details == {"document_type": "immutable"}
    assert db.session.execute(select(func.count(FileAttributeHistory.id))).scalar() == 0


# ═════════════════════════════════════════════════════════════════════════════
# Reads & in-tray
# ═════════════════════════════════════════════════════════════════════════════


def test_get_missing_file():
    with pytest.raises(NotFoundError):
        file_service.get_file(31337)


def test_file_levels_carry_role_labels(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    levels = file_service.get_file_levels(fid)
    assert [lvl["role_label"] for lvl in levels] == ["Section Officer", "Under Secretary", "Deputy Secretary"]


def test_perform_action_returns_allowed_actions(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    detail = file_service.perform_action(fid, org.clerk.id, "SUBMIT")
    assert detail["current_state"] == "IN_REVIEW"
    assert detail["allowed_actions"] == []
    assert file_service.file_detail(file_service.get_file(fid), caller_id=org.so.id)["allowed_actions"] == [
        "APPROVE", "RETURN", "HOLD", "REJECT",
    ]


def test_in_tray_follows_active_level(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    assert file_service.list_in_tray(org.so.id, org.fin.id) == []

    file_service.perform_action(fid, org.clerk.id, "SUBMIT")
    assert [f["id"] for f in file_service.list_in_tray(org.so.id, org.fin.id)] == [fid]
    assert file_service.list_in_tray(org.us.id, org.fin.id) == []

    file_service.perform_action(fid, org.so.id, "APPROVE")
    assert file_service.list_in_tray(org.so.id, org.fin.id) == []
    assert [f["id"] for f in file_service.list_in_tray(org.us.id, org.fin.id)] == [fid]
    assert [f["id"] for f in file_service.list_in_tray(org.us2.id, org.fin.id)] == [fid]


def test_in_tray_excludes_held_files_and_other_departments(org):
    fid = file_service.create_file(org.clerk.id, _payload(org.fin))["id"]
    file_service.perform_action(fid, org.clerk.id, "SUBMIT")

    assert file_service.list_in_tray(org.hr_so.id, org.fin.id) == []
    assert file_service.list_in_tray(org.so.id, org.hr.id) == []

    file_service.perform_action(fid, org.so.id, "HOLD")
    assert file_service.list_in_tray(org.so.id, org.fin.id) == []
