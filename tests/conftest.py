"""
Shared pytest fixtures for the File Workflow Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: Departments, users, role bindings and templates (committed)
    - make_template: Factory for ad-hoc workflow templates
    - auth_headers: Bearer-token headers for a user
"""

from types import SimpleNamespace

import pytest

from app import create_app
from app.models import db as _db
from app.models.organization import Department, User, UserDepartmentRole
from app.models.workflow import WorkflowTemplate, WorkflowTemplateLevel
from app.services.authority import authority_of, parse_role
from app.services.jwt_service import generate_access_token


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Builders ─────────────────────────────────────────────────────────────


def _make_department(code, name=None, prefix=None, is_active=True):
    dept = Department(code=code, name=name or code, file_prefix=prefix or code, is_active=is_active)
    _db.session.add(dept)
    _db.session.flush()
    return dept


def _make_user(name, *bindings):
    """Create a user holding (department, role) *bindings*."""
    user = User(name=name, email=f"{name.lower().replace(' ', '.')}@flm.test")
    _db.session.add(user)
    _db.session.flush()
    for dept, role in bindings:
        _db.session.add(UserDepartmentRole(user_id=user.id, department_id=dept.id, role=role))
    _db.session.flush()
    return user


def _make_template(name, department=None, document_type=None, roles=(), is_active=True, is_default=None):
    """Insert a template directly, bypassing service validation.

    is_default defaults to the scope-derived value.
    """
    if is_default is None:
        is_default = not (department is not None and document_type)
    template = WorkflowTemplate(
        name=name,
        department_id=department.id if department is not None else None,
        document_type=document_type,
        is_default=is_default,
        is_active=is_active,
    )
    for position, role in enumerate(roles, start=1):
        template.levels.append(WorkflowTemplateLevel(
            level=position,
            role_required=parse_role(role).value,
            authority_required=authority_of(role),
            description=f"{role} review",
        ))
    _db.session.add(template)
    _db.session.flush()
    return template


@pytest.fixture()
def make_template():
    """Return a committing template factory."""
    def _factory(*args, **kwargs):
        template = _make_template(*args, **kwargs)
        _db.session.commit()
        return template
    return _factory


@pytest.fixture()
def org():
    """Standard organization, committed so service rollbacks never wipe it.

    FIN: Clerk, Section Officer, two Under Secretaries, Deputy Secretary,
         Joint Secretary; default SO → US → DS, Budget SO → US → DS → JS.
    HR:  Clerk, Section Officer, Under Secretary; default SO → US.
    ENG: Clerk only, no templates (falls back to the global default).
    Global default: SO → US.
    """
    fin = _make_department("FIN", "Finance")
    hr = _make_department("HR", "Human Resources")
    eng = _make_department("ENG", "Engineering")

    ns = SimpleNamespace(fin=fin, hr=hr, eng=eng)
    ns.admin = _make_user("Admin", (fin, "Admin"), (hr, "Admin"), (eng, "Admin"))
    ns.clerk = _make_user("Fin Clerk", (fin, "Clerk"))
    ns.so = _make_user("Fin SO", (fin, "Section Officer"))
    ns.us = _make_user("Fin US", (fin, "Under Secretary"))
    ns.us2 = _make_user("Fin US Two", (fin, "Under Secretary"))
    ns.ds = _make_user("Fin DS", (fin, "Deputy Secretary"))
    ns.js = _make_user("Fin JS", (fin, "Joint Secretary"))
    ns.hr_clerk = _make_user("HR Clerk", (hr, "Clerk"))
    ns.hr_so = _make_user("HR SO", (hr, "Section Officer"))
    ns.hr_us = _make_user("HR US", (hr, "Under Secretary"))
    ns.eng_clerk = _make_user("Eng Clerk", (eng, "Clerk"))
    ns.outsider = _make_user("Outsider")

    ns.fin_default = _make_template(
        "Finance 3-Level Approval", fin, None,
        ["Section Officer", "Under Secretary", "Deputy Secretary"],
    )
    ns.fin_budget = _make_template(
        "Finance Budget Approval", fin, "Budget",
        ["Section Officer", "Under Secretary", "Deputy Secretary", "Joint Secretary"],
    )
    ns.hr_default = _make_template(
        "HR Standard Approval", hr, None, ["Section Officer", "Under Secretary"],
    )
    ns.global_default = _make_template(
        "Default 2-Level Approval", None, None, ["Section Officer", "Under Secretary"],
    )
    _db.session.commit()
    return ns


@pytest.fixture()
def auth_headers():
    """Return a function mapping a user to Authorization headers."""
    def _headers(user):
        return {"Authorization": f"Bearer {generate_access_token(user.id)}"}
    return _headers
