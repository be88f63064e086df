import os
import sys
from decimal import Decimal
from pathlib import Path

from sqlalchemy import select

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.eservices.identity import normalize_email, register_user
from app.eservices.models import Department, User
from app.eservices.modules.catalog.models import Service
from app.eservices.rbac import Role
from scripts._db_utils import script_session

DEPARTMENTS = [
    ("Ministry of Health", "Healthcare services and medical certificates"),
    ("Ministry of Education", "Educational services and document verification"),
    ("Ministry of Interior", "Civil status and identification services"),
    ("Ministry of Transportation", "Vehicle registration and driving licenses"),
]

# (department, name, description, fee, processing_time, required_documents, form_fields)
SERVICES = [
    (
        "Ministry of Health",
        "Medical Certificate",
        "Official medical certificate for employment or legal purposes",
        "25.00",
        "2-3 business days",
        ["ID Copy", "Medical Report"],
        [
            {"name": "purpose", "type": "text", "label": "Purpose of Certificate", "required": True},
            {"name": "doctor_name", "type": "text", "label": "Attending Doctor", "required": False},
        ],
    ),
    (
        "Ministry of Health",
        "Health Insurance Registration",
        "Register for national health insurance program",
        "0.00",
        "5-7 business days",
        ["ID Copy", "Income Statement"],
        [
            {"name": "employment_status", "type": "select", "label": "Employment Status", "required": True},
            {"name": "dependents", "type": "number", "label": "Number of Dependents", "required": True},
        ],
    ),
    (
        "Ministry of Education",
        "Academic Transcript",
        "Official academic transcript and grade report",
        "15.00",
        "3-5 business days",
        ["ID Copy", "Student ID"],
        [
            {"name": "institution", "type": "text", "label": "Educational Institution", "required": True},
            {"name": "graduation_year", "type": "number", "label": "Graduation Year", "required": True},
        ],
    ),
    (
        "Ministry of Interior",
        "Birth Certificate",
        "Official birth certificate for legal documentation",
        "20.00",
        "1-2 business days",
        ["ID Copy", "Hospital Birth Record"],
        [
            {"name": "birth_place", "type": "text", "label": "Place of Birth", "required": True},
            {"name": "parents_names", "type": "text", "label": "Parents Full Names", "required": True},
        ],
    ),
    (
        "Ministry of Transportation",
        "Driving License Renewal",
        "Renew expired or expiring driving license",
        "50.00",
        "1 business day",
        ["Current License", "ID Copy", "Medical Certificate"],
        [
            {"name": "license_type", "type": "select", "label": "License Type", "required": True},
            {"name": "violations", "type": "checkbox", "label": "Any Recent Violations?", "required": False},
        ],
    ),
]


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the admin user and the sample catalog in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = normalize_email(os.environ.get("ADMIN_EMAIL") or "admin@government.gov")
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///eservices.db").strip()

    with script_session(db_url) as s:
        depts: dict[str, Department] = {}
        for name, description in DEPARTMENTS:
            d = s.execute(select(Department).where(Department.name == name)).scalar_one_or_none()
            if not d:
                d = Department(name=name, description=description, is_active=True)
                s.add(d)
                s.flush()
            depts[name] = d

        for dept_name, name, description, fee, processing_time, documents, fields in SERVICES:
            dept = depts[dept_name]
            exists = s.execute(
                select(Service.id).where(Service.department_id == dept.id).where(Service.name == name)
            ).first()
            if exists:
                continue
            s.add(
                Service(
                    department_id=dept.id,
                    name=name,
                    description=description,
                    fee=Decimal(fee),
                    processing_time=processing_time,
                    required_documents=documents,
                    form_fields=fields,
                    is_active=True,
                )
            )

        user = s.execute(select(User).where(User.email == admin_email)).scalar_one_or_none()
        if not user:
            register_user(
                s,
                name="System Administrator",
                email=admin_email,
                password=admin_password,
                role=Role.ADMIN,
            )
        elif user.role != Role.ADMIN.value:
            user.role = Role.ADMIN.value

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
