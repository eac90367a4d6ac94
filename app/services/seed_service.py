"""
Demo seed data — departments, users, department roles and workflow templates.

Finance carries the full hierarchy so authority-based skipping can be
exercised end to end:

    Finance default      SO → US → DS
    Finance + Budget     SO → US → DS → JS
    HR default           SO → US
    Global default       SO → US

Safe to run multiple times: rows are matched on natural keys (department
code, user email, template name) and only missing rows are inserted. Uses
flush only; the caller commits.
"""

import logging

from sqlalchemy import select

from app.models import db
from app.models.organization import Department, User, UserDepartmentRole
from app.models.workflow import WorkflowTemplate, WorkflowTemplateLevel
from app.services.authority import Role

logger = logging.getLogger(__name__)

DEPARTMENTS = [
    ("HR", "Human Resources", "HR"),
    ("FIN", "Finance", "FIN"),
    ("ENG", "Engineering", "ENG"),
    ("ADM", "Administration", "ADM"),
]

# (name, email, [(department code, role)])
USERS = [
    ("System Admin", "admin@flm.local",
     [("FIN", Role.ADMIN), ("HR", Role.ADMIN), ("ENG", Role.ADMIN), ("ADM", Role.ADMIN)]),
    ("Ramesh Kumar", "ramesh@flm.local", [("FIN", Role.CLERK)]),
    ("Suresh Singh", "suresh@flm.local", [("FIN", Role.SECTION_OFFICER)]),
    ("Mahesh Gupta", "mahesh@flm.local", [("FIN", Role.UNDER_SECRETARY)]),
    ("Dinesh Sharma", "dinesh@flm.local", [("FIN", Role.DEPUTY_SECRETARY)]),
    ("Rajesh Verma", "rajesh@flm.local", [("FIN", Role.JOINT_SECRETARY)]),
    ("Priya Sharma", "priya@flm.local", [("HR", Role.CLERK)]),
    ("Neha Patel", "neha@flm.local", [("HR", Role.SECTION_OFFICER)]),
    ("Anita Singh", "anita@flm.local", [("HR", Role.UNDER_SECRETARY)]),
]

# (name, description, department code | None, document type | None, [(role, level description)])
TEMPLATES = [
    (
        "Finance 3-Level Approval",
        "Standard approval for Finance: Section Officer → Under Secretary → Deputy Secretary",
        "FIN", None,
        [
            (Role.SECTION_OFFICER, "Section Officer Review"),
            (Role.UNDER_SECRETARY, "Under Secretary Verification"),
            (Role.DEPUTY_SECRETARY, "Deputy Secretary Final Approval"),
        ],
    ),
    (
        "Finance Budget Approval",
        "Budget files: Section Officer → Under Secretary → Deputy Secretary → Joint Secretary",
        "FIN", "Budget",
        [
            (Role.SECTION_OFFICER, "Section Officer Initial Check"),
            (Role.UNDER_SECRETARY, "Under Secretary Budget Review"),
            (Role.DEPUTY_SECRETARY, "Deputy Secretary Financial Approval"),
            (Role.JOINT_SECRETARY, "Joint Secretary Final Sign-off"),
        ],
    ),
    (
        "HR Standard Approval",
        "HR: Section Officer → Under Secretary",
        "HR", None,
        [
            (Role.SECTION_OFFICER, "Section Officer Review"),
            (Role.UNDER_SECRETARY, "Under Secretary Final Approval"),
        ],
    ),
    (
        "Default 2-Level Approval",
        "Any department without a specific workflow: Section Officer → Under Secretary",
        None, None,
        [
            (Role.SECTION_OFFICER, "Initial Approval"),
            (Role.UNDER_SECRETARY, "Final Approval"),
        ],
    ),
]


def _get_or_create_department(code, name, prefix):
    dept = db.session.execute(select(Department).where(Department.code == code)).scalar_one_or_none()
    if dept:
        return dept, False
    dept = Department(code=code, name=name, file_prefix=prefix)
    db.session.add(dept)
    db.session.flush()
    return dept, True


def _get_or_create_user(name, email):
    user = db.session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user:
        return user, False
    user = User(name=name, email=email)
    db.session.add(user)
    db.session.flush()
    return user, True


def seed_demo_data() -> dict:
    """Insert missing demo rows. Returns per-entity created counts."""
    counts = {"departments": 0, "users": 0, "roles": 0, "templates": 0}

    depts = {}
    for code, name, prefix in DEPARTMENTS:
        depts[code], created = _get_or_create_department(code, name, prefix)
        counts["departments"] += created

    for name, email, bindings in USERS:
        user, created = _get_or_create_user(name, email)
        counts["users"] += created
        for code, role in bindings:
            exists = db.session.execute(
                select(UserDepartmentRole.id).where(
                    UserDepartmentRole.user_id == user.id,
                    UserDepartmentRole.department_id == depts[code].id,
                    UserDepartmentRole.role == role.value,
                )
            ).first()
            if exists is None:
                db.session.add(UserDepartmentRole(
                    user_id=user.id, department_id=depts[code].id, role=role.value,
                ))
                counts["roles"] += 1
    db.session.flush()

    for name, description, dept_code, document_type, levels in TEMPLATES:
        exists = db.session.execute(
            select(WorkflowTemplate.id).where(WorkflowTemplate.name == name)
        ).first()
        if exists is not None:
            continue
        department_id = depts[dept_code].id if dept_code else None
        template = WorkflowTemplate(
            name=name,
            description=description,
            department_id=department_id,
            document_type=document_type,
            is_default=not (department_id and document_type),
            is_active=True,
        )
        for position, (role, level_description) in enumerate(levels, start=1):
            template.levels.append(WorkflowTemplateLevel(
                level=position,
                role_required=role.value,
                authority_required=role.authority,
                description=level_description,
            ))
        db.session.add(template)
        counts["templates"] += 1
    db.session.flush()

    logger.info("Seeded demo data: %s", counts)
    return counts
