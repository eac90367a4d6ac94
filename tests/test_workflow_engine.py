"""
Workflow engine: state transitions, role authorization, level bookkeeping,
the append-only logs and atomicity of each action.
"""

import os
import threading

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    ForbiddenError,
    IllegalTransitionError,
    NotFoundError,
    UnknownActionError,
)
from app.models import db
from app.models.file import (
    File,
    FileAuditTrail,
    FileState,
    FileWorkflowParticipant,
    WorkflowAction,
)
from app.services import file_service, workflow_engine
from app.services.workflow_engine import allowed_actions, check_consistency, execute

_ON_POSTGRES = os.environ.get("TEST_DATABASE_URL", "").startswith("postgresql")


def _create(user, dept, document_type="Memo", subject="Test file"):
    detail = file_service.create_file(user.id, {
        "subject": subject,
        "department_id": dept.id,
        "document_type": document_type,
    })
    return detail["id"]


def _file(file_id):
    return db.session.get(File, file_id)


def _statuses(file_id):
    return [row.status for row in _file(file_id).levels]


def _audit(file_id):
    return db.session.execute(
        select(FileAuditTrail).where(FileAuditTrail.file_id == file_id).order_by(FileAuditTrail.id)
    ).scalars().all()


def _participants(file_id):
    return db.session.execute(
        select(FileWorkflowParticipant)
        .where(FileWorkflowParticipant.file_id == file_id)
        .order_by(FileWorkflowParticipant.id)
    ).scalars().all()


# ═════════════════════════════════════════════════════════════════════════════
# Happy path
# ═════════════════════════════════════════════════════════════════════════════


def test_submit_activates_first_level(org):
    fid = _create(org.clerk, org.fin)
    file = execute(fid, org.clerk.id, "SUBMIT")

    assert file.current_state == FileState.IN_REVIEW.value
    assert file.current_level == 1
    assert _statuses(fid) == ["ACTIVE", "PENDING", "PENDING"]
    assert _audit(fid)[-1].details == "File submitted, moved to Level 1 approval"


def test_full_approval_chain(org):
    """Clerk submits; SO, US and DS approve in turn; the file ends APPROVED."""
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")

    file = execute(fid, org.so.id, "APPROVE", remarks="Looks fine")
    assert (file.current_state, file.current_level) == ("IN_REVIEW", 2)
    assert _statuses(fid) == ["COMPLETED", "ACTIVE", "PENDING"]
    assert file.levels[0].completed_by == org.so.id
    assert file.levels[0].remarks == "Looks fine"

    execute(fid, org.us.id, "APPROVE")
    file = execute(fid, org.ds.id, "APPROVE")
    assert file.current_state == FileState.APPROVED.value
    assert file.current_level == 3
    assert _statuses(fid) == ["COMPLETED", "COMPLETED", "COMPLETED"]

    details = [a.details for a in _audit(fid)]
    assert "Approved at Level 1, moved to Level 2 | Remarks: Looks fine" in details
    assert details[-1] == "Final approval granted - File APPROVED"

    parts = _participants(fid)
    assert [(p.level, p.role, p.action) for p in parts] == [
        (1, "Section Officer", "APPROVE"),
        (2, "Under Secretary", "APPROVE"),
        (3, "Deputy Secretary", "APPROVE"),
    ]
    assert all(p.department_id == org.fin.id for p in parts)
    assert check_consistency(file) == []


def test_scenario_senior_creator_goes_straight_to_final_level(org):
    """Deputy Secretary creates a Budget file: levels 1-3 skipped, submit lands on level 4."""
    fid = _create(org.ds, org.fin, "Budget")
    file = execute(fid, org.ds.id, "SUBMIT")

    assert file.current_level == 4
    assert _statuses(fid) == ["SKIPPED", "SKIPPED", "SKIPPED", "ACTIVE"]

    file = execute(fid, org.js.id, "APPROVE")
    assert file.current_state == FileState.APPROVED.value


def test_action_name_is_case_insensitive(org):
    fid = _create(org.clerk, org.fin)
    assert execute(fid, org.clerk.id, " submit ").current_state == "IN_REVIEW"


def test_save_draft_keeps_draft(org):
    fid = _create(org.clerk, org.fin)
    file = execute(fid, org.clerk.id, WorkflowAction.SAVE_DRAFT)
    assert file.current_state == "DRAFT"
    assert file.current_level == 0
    assert _audit(fid)[-1].details == "File saved as draft"


# ═════════════════════════════════════════════════════════════════════════════
# Return / hold / reject / archive
# ═════════════════════════════════════════════════════════════════════════════


def test_return_and_resubmit(org):
    """Return from level 2 hands the file back; resubmit reactivates level 2."""
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    execute(fid, org.so.id, "APPROVE")

    file = execute(fid, org.us.id, "RETURN", remarks="Missing annex")
    assert file.current_state == FileState.RETURNED.value
    assert file.current_level == 2
    assert _statuses(fid) == ["COMPLETED", "RETURNED", "PENDING"]
    assert _audit(fid)[-1].details == "Returned from Level 2 for corrections | Remarks: Missing annex"

    file = execute(fid, org.clerk.id, "RESUBMIT")
    assert (file.current_state, file.current_level) == ("IN_REVIEW", 2)
    assert _statuses(fid) == ["COMPLETED", "ACTIVE", "PENDING"]
    assert check_consistency(file) == []


def test_hold_and_resume_keep_level(org):
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")

    file = execute(fid, org.so.id, "HOLD")
    assert (file.current_state, file.current_level) == ("CABINET", 1)
    assert _statuses(fid) == ["ACTIVE", "PENDING", "PENDING"]
    assert check_consistency(file) == []

    file = execute(fid, org.so.id, "RESUME")
    assert (file.current_state, file.current_level) == ("IN_REVIEW", 1)
    assert [p.action for p in _participants(fid)] == ["HOLD", "RESUME"]


def test_reject_is_terminal(org):
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    file = execute(fid, org.so.id, "REJECT", remarks="Out of scope")

    assert file.current_state == FileState.REJECTED.value
    assert _statuses(fid)[0] == "RETURNED"
    for user in (org.clerk, org.so, org.admin):
        assert allowed_actions(file, user.id) == []
    for action in WorkflowAction:
        with pytest.raises(IllegalTransitionError):
            execute(fid, org.clerk.id, action)


def test_archive_by_creator(org):
    fid = _create(org.js, org.fin)          # auto-approved on submit
    execute(fid, org.js.id, "SUBMIT")
    file = execute(fid, org.js.id, "ARCHIVE")
    assert file.current_state == FileState.ARCHIVED.value
    assert _audit(fid)[-1].meta["performedAs"] == "Creator"


def test_archive_by_department_admin(org):
    fid = _create(org.js, org.fin)
    execute(fid, org.js.id, "SUBMIT")
    assert "ARCHIVE" in allowed_actions(_file(fid), org.admin.id)

    execute(fid, org.admin.id, "ARCHIVE")
    assert _audit(fid)[-1].meta["performedAs"] == "Admin"


def test_archive_forbidden_for_other_users(org):
    fid = _create(org.js, org.fin)
    execute(fid, org.js.id, "SUBMIT")
    with pytest.raises(ForbiddenError):
        execute(fid, org.ds.id, "ARCHIVE")
    assert _file(fid).current_state == FileState.APPROVED.value


# ═════════════════════════════════════════════════════════════════════════════
# Auto-approval
# ═════════════════════════════════════════════════════════════════════════════


def test_submit_with_all_levels_skipped_auto_approves(org):
    """Joint Secretary on SO → US → DS: nothing left to review."""
    fid = _create(org.js, org.fin)
    assert _statuses(fid) == ["SKIPPED", "SKIPPED", "SKIPPED"]

    file = execute(fid, org.js.id, "SUBMIT")
    assert file.current_state == FileState.APPROVED.value
    assert file.current_level == file.max_levels == 3

    actions = [a.action for a in _audit(fid)]
    assert actions[-2:] == ["SUBMIT", "AUTO_APPROVED"]
    assert _audit(fid)[-1].details == workflow_engine.AUTO_APPROVED_DETAIL
    assert _participants(fid) == []


# ═════════════════════════════════════════════════════════════════════════════
# Authorization
# ═════════════════════════════════════════════════════════════════════════════


def test_only_creator_can_submit(org):
    fid = _create(org.clerk, org.fin)
    with pytest.raises(ForbiddenError) as exc:
        execute(fid, org.so.id, "SUBMIT")
    assert "creator" in str(exc.value)
    assert _file(fid).current_state == "DRAFT"


def test_wrong_role_cannot_approve(org):
    """Under Secretary cannot act while level 1 (Section Officer) is active."""
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    with pytest.raises(ForbiddenError) as exc:
        execute(fid, org.us.id, "APPROVE")
    assert 'requires "Section Officer"' in str(exc.value)
    assert _file(fid).current_level == 1


def test_cross_department_role_is_rejected(org):
    """An HR Section Officer cannot approve a FIN file at a Section Officer level."""
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    with pytest.raises(ForbiddenError) as exc:
        execute(fid, org.hr_so.id, "APPROVE")
    assert "Cross-department" in str(exc.value)


def test_admin_cannot_approve(org):
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    with pytest.raises(ForbiddenError):
        execute(fid, org.admin.id, "APPROVE")


def test_creator_cannot_approve_own_level(org):
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    assert allowed_actions(_file(fid), org.clerk.id) == []
    with pytest.raises(ForbiddenError):
        execute(fid, org.clerk.id, "APPROVE")


def test_legacy_role_spelling_still_authorizes(org):
    from app.models.organization import UserDepartmentRole

    db.session.add(UserDepartmentRole(user_id=org.outsider.id, department_id=org.fin.id, role="Section_Officer"))
    db.session.commit()

    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    assert execute(fid, org.outsider.id, "APPROVE").current_level == 2


# ═════════════════════════════════════════════════════════════════════════════
# Errors
# ═════════════════════════════════════════════════════════════════════════════


def test_unknown_action(org):
    fid = _create(org.clerk, org.fin)
    with pytest.raises(UnknownActionError):
        execute(fid, org.clerk.id, "ESCALATE")


def test_missing_file():
    with pytest.raises(NotFoundError):
        execute(424242, 1, "SUBMIT")


def test_illegal_transition_from_draft(org):
    fid = _create(org.clerk, org.fin)
    with pytest.raises(IllegalTransitionError) as exc:
        execute(fid, org.so.id, "APPROVE")
    assert exc.value.state == "DRAFT"


def _hr_file_at_final_level(org):
    """HR file (SO → US) approved at level 1, with a second HR Under Secretary on hand."""
    from app.models.organization import UserDepartmentRole

    db.session.add(UserDepartmentRole(user_id=org.us2.id, department_id=org.hr.id, role="Under Secretary"))
    db.session.commit()

    fid = _create(org.hr_clerk, org.hr)
    execute(fid, org.hr_clerk.id, "SUBMIT")
    execute(fid, org.hr_so.id, "APPROVE")
    return fid


def test_concurrent_final_approval_has_one_winner(org):
    """Two Under Secretaries approve the last level; the second sees an illegal transition."""
    fid = _hr_file_at_final_level(org)

    execute(fid, org.hr_us.id, "APPROVE")
    with pytest.raises(IllegalTransitionError):
        execute(fid, org.us2.id, "APPROVE")

    assert _file(fid).current_state == FileState.APPROVED.value
    approvals = [p for p in _participants(fid) if p.level == 2]
    assert len(approvals) == 1
    assert approvals[0].action_by == org.hr_us.id


def test_failure_rolls_back_everything(org, monkeypatch):
    """An audit write failure leaves state, levels and participants untouched."""
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    audit_before = len(_audit(fid))

    def _boom(**kwargs):
        raise RuntimeError("audit store down")

    monkeypatch.setattr(workflow_engine, "write_file_audit", _boom)
    with pytest.raises(RuntimeError):
        execute(fid, org.so.id, "APPROVE")

    file = _file(fid)
    assert (file.current_state, file.current_level) == ("IN_REVIEW", 1)
    assert _statuses(fid) == ["ACTIVE", "PENDING", "PENDING"]
    assert _participants(fid) == []
    assert len(_audit(fid)) == audit_before


# ═════════════════════════════════════════════════════════════════════════════
# allowed_actions / consistency / append-only logs
# ═════════════════════════════════════════════════════════════════════════════


def test_allowed_actions_per_caller(org):
    fid = _create(org.clerk, org.fin)
    file = _file(fid)
    assert allowed_actions(file, org.clerk.id) == ["SAVE_DRAFT", "SUBMIT"]
    assert allowed_actions(file, org.so.id) == []

    execute(fid, org.clerk.id, "SUBMIT")
    file = _file(fid)
    assert allowed_actions(file, org.so.id) == ["APPROVE", "RETURN", "HOLD", "REJECT"]
    assert allowed_actions(file, org.us.id) == []
    assert allowed_actions(file, org.hr_so.id) == []


def test_allowed_actions_is_read_only_and_matches_execute(org):
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT")
    file = _file(fid)
    audit_before = len(_audit(fid))

    users = (org.clerk, org.so, org.us, org.admin, org.hr_so, org.outsider)
    first = {u.id: allowed_actions(file, u.id) for u in users}
    assert first == {u.id: allowed_actions(file, u.id) for u in users}
    assert len(_audit(fid)) == audit_before

    for user in users:
        for action in ("APPROVE", "RETURN", "HOLD", "REJECT"):
            if action not in first[user.id]:
                with pytest.raises(ForbiddenError):
                    execute(fid, user.id, action)


def test_at_most_one_active_level_throughout(org):
    fid = _create(org.clerk, org.fin, "Budget")
    steps = [
        (org.clerk, "SUBMIT"), (org.so, "APPROVE"), (org.us, "RETURN"),
        (org.clerk, "RESUBMIT"), (org.us, "HOLD"), (org.us, "RESUME"),
        (org.us, "APPROVE"), (org.ds, "APPROVE"), (org.js, "APPROVE"),
    ]
    for user, action in steps:
        file = execute(fid, user.id, action)
        assert check_consistency(file) == [], action
    assert file.current_state == "APPROVED"


def test_audit_metadata_captures_transition(org):
    fid = _create(org.clerk, org.fin)
    execute(fid, org.clerk.id, "SUBMIT", origin_ip="10.0.0.7")
    entry = _audit(fid)[-1]

    assert entry.action == "SUBMIT"
    assert entry.performed_by == org.clerk.id
    assert entry.ip_address == "10.0.0.7"
    assert entry.meta == {
        "fromState": "DRAFT",
        "toState": "IN_REVIEW",
        "fromLevel": 0,
        "toLevel": 1,
        "performedAs": "Creator",
    }


def test_audit_rows_are_append_only(org):
    fid = _create(org.clerk, org.fin)
    entry = _audit(fid)[0]
    entry.details = "tampered"
    with pytest.raises(RuntimeError):
        db.session.flush()
    db.session.rollback()


@pytest.mark.skipif(not _ON_POSTGRES, reason="row locks need a server database")
def test_threaded_final_approval_race(app, org):
    """Real concurrency against PostgreSQL: exactly one approval wins."""
    fid = _hr_file_at_final_level(org)
    approvers = (org.hr_us.id, org.us2.id)

    results = []
    barrier = threading.Barrier(len(approvers))

    def _approve(user_id):
        with app.app_context():
            barrier.wait()
            try:
                execute(fid, user_id, "APPROVE")
                results.append("ok")
            except IllegalTransitionError:
                results.append("illegal")
            finally:
                db.session.remove()

    threads = [threading.Thread(target=_approve, args=(uid,)) for uid in approvers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["illegal", "ok"]
    assert len([p for p in _participants(fid) if p.level == 2]) == 1
