"""
Demo seeding: produces a routable configuration and is safe to rerun.
"""

from sqlalchemy import select

from app.middleware.diagnostics import find_ambiguous_scopes
from app.models import db
from app.models.organization import Department, User
from app.services import file_service
from app.services.seed_service import TEMPLATES, USERS, seed_demo_data
from app.services.template_selector import ScopeReason, resolve_template


def _user(email):
    return db.session.execute(select(User).where(User.email == email)).scalar_one()


def _department(code):
    return db.session.execute(select(Department).where(Department.code == code)).scalar_one()


def _seed():
    seed_demo_data()
    db.session.commit()


def test_seed_is_idempotent():
    first = seed_demo_data()
    db.session.commit()
    second = seed_demo_data()
    db.session.commit()

    assert first["users"] == len(USERS)
    assert first["templates"] == len(TEMPLATES)
    assert second == {"departments": 0, "users": 0, "roles": 0, "templates": 0}


def test_seeded_configuration_is_unambiguous():
    _seed()
    assert find_ambiguous_scopes() == []
    assert resolve_template(_department("FIN").id, "Budget").scope_reason is ScopeReason.DEPARTMENT_FILETYPE_MATCH
    assert resolve_template(_department("ADM").id, "Memo").scope_reason is ScopeReason.GLOBAL_DEFAULT


def test_seeded_budget_file_runs_to_approval():
    _seed()
    fin = _department("FIN")
    clerk = _user("ramesh@flm.local")

    fid = file_service.create_file(clerk.id, {
        "subject": "Seeded budget", "department_id": fin.id, "document_type": "Budget",
    })["id"]
    file_service.perform_action(fid, clerk.id, "SUBMIT")
    for email in ("suresh@flm.local", "mahesh@flm.local", "dinesh@flm.local", "rajesh@flm.local"):
        detail = file_service.perform_action(fid, _user(email).id, "APPROVE")

    assert detail["current_state"] == "APPROVED"
    assert len(detail["workflow"]["participants"]) == 4
