"""
Organization Models — departments, users, department-role bindings.

These rows are maintained by plain CRUD outside the workflow engine; the
engine only reads them (file-number prefix, creator authority, role checks).
"""

from datetime import datetime, timezone

from app.models import db


# ═══════════════════════════════════════════════════════════════
# 1. DEPARTMENTS
# ═══════════════════════════════════════════════════════════════
class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    file_prefix = db.Column(
        db.String(20), nullable=False,
        comment="Segment used in generated file numbers: FLM/<prefix>/<year>/<seq>",
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    role_bindings = db.relationship(
        "UserDepartmentRole", back_populates="department", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "file_prefix": self.file_prefix,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Department {self.code}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    department_roles = db.relationship(
        "UserDepartmentRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "is_active": self.is_active,
        }
        if include_roles:
            d["department_roles"] = [
                {"department_id": b.department_id, "role": b.role}
                for b in self.department_roles.all()
            ]
        return d

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 3. USER ↔ DEPARTMENT ROLES
# ═══════════════════════════════════════════════════════════════
class UserDepartmentRole(db.Model):
    """A user may hold several roles, in several departments."""

    __tablename__ = "user_department_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "department_id", "role", name="uq_user_dept_role"),
        db.Index("ix_udr_department_role", "department_id", "role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    role = db.Column(
        db.String(100), nullable=False,
        comment="Clerk | Section Officer | Under Secretary | … | Admin",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = db.relationship("User", back_populates="department_roles")
    department = db.relationship("Department", back_populates="role_bindings")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "department_id": self.department_id,
            "role": self.role,
        }
