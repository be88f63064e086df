from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select

from app.eservices.audit import record_event
from app.eservices.errors import NotFound, ValidationFailed
from app.eservices.models import Department
from app.eservices.utils import parse_fee

from .models import Service

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.eservices.models import User


def get_active_service(s: "Session", service_id: object) -> Service:
    """Active service in an active department, or NotFound."""
    try:
        sid = int(service_id)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationFailed("Valid service_id required") from None
    service = s.get(Service, sid)
    if service is None or not service.is_active:
        raise NotFound("Service not found")
    if service.department is not None and not service.department.is_active:
        raise NotFound("Service not found")
    return service


def list_services(
    s: "Session",
    *,
    department_id: int | None = None,
    search: str | None = None,
    include_inactive: bool = False,
) -> list[Service]:
    q = select(Service).join(Department, Department.id == Service.department_id)
    if not include_inactive:
        q = q.where(Service.is_active.is_(True)).where(Department.is_active.is_(True))
    if department_id is not None:
        q = q.where(Service.department_id == department_id)
    if search:
        q = q.where(Service.name.ilike(f"%{search}%"))
    return list(s.execute(q.order_by(Service.name.asc())).scalars().all())


def list_departments(s: "Session", *, active_only: bool = True) -> list[Department]:
    q = select(Department)
    if active_only:
        q = q.where(Department.is_active.is_(True))
    return list(s.execute(q.order_by(Department.name.asc())).scalars().all())


def _non_text_fields(payload: dict, keys: tuple[str, ...]) -> list[str]:
    return [k for k in keys if payload.get(k) is not None and not isinstance(payload.get(k), str)]


def validate_department_payload(payload: dict, *, partial: bool = False) -> list[str]:
    bad = _non_text_fields(payload, ("name", "description"))
    errors = [f"{k} must be a string." for k in bad]
    if "name" not in bad and (not partial or "name" in payload):
        name = (payload.get("name") or "").strip()
        if not 2 <= len(name) <= 100:
            errors.append("Name must be 2-100 characters.")
    return errors


def _department_name_taken(s: "Session", name: str, *, exclude_id: int | None = None) -> bool:
    q = select(Department.id).where(Department.name == name)
    if exclude_id is not None:
        q = q.where(Department.id != exclude_id)
    return s.execute(q).first() is not None


def create_department(s: "Session", payload: dict, user: "User") -> Department:
    errors = validate_department_payload(payload)
    if errors:
        raise ValidationFailed(" ".join(errors), errors=errors)
    name = payload["name"].strip()
    if _department_name_taken(s, name):
        raise ValidationFailed("Department name already exists.")
    dept = Department(
        name=name,
        description=(payload.get("description") or "").strip() or None,
        is_active=True,
    )
    s.add(dept)
    s.flush()
    record_event(
        s,
        actor=user,
        action="DEPARTMENT_CREATED",
        target_type="department",
        target_id=dept.id,
        metadata={"name": dept.name},
    )
    return dept


def update_department(s: "Session", dept: Department, payload: dict, user: "User") -> Department:
    """
    Rename, describe or (de)activate a department. Deactivating hides its services
    from citizens; staff assignments and existing requests are left alone.
    """
    errors = validate_department_payload(payload, partial=True)
    if errors:
        raise ValidationFailed(" ".join(errors), errors=errors)
    changes = {}

    if "name" in payload:
        new_name = payload["name"].strip()
        if new_name != dept.name:
            if _department_name_taken(s, new_name, exclude_id=dept.id):
                raise ValidationFailed("Department name already exists.")
            changes["name"] = {"old": dept.name, "new": new_name}
            dept.name = new_name

    if "description" in payload:
        new_desc = (payload.get("description") or "").strip() or None
        if new_desc != dept.description:
            changes["description"] = {"old": dept.description, "new": new_desc}
            dept.description = new_desc

    if "is_active" in payload:
        new_active = bool(payload.get("is_active"))
        if new_active != dept.is_active:
            changes["is_active"] = {"old": dept.is_active, "new": new_active}
            dept.is_active = new_active

    if changes:
        record_event(
            s,
            actor=user,
            action="DEPARTMENT_UPDATED",
            target_type="department",
            target_id=dept.id,
            metadata={"name": dept.name, "changes": changes},
        )
    return dept


def validate_service_payload(payload: dict, *, partial: bool = False) -> list[str]:
    bad = _non_text_fields(payload, ("name", "description", "processing_time"))
    errors = [f"{k} must be a string." for k in bad]
    if "name" not in bad and (not partial or "name" in payload):
        name = (payload.get("name") or "").strip()
        if not 2 <= len(name) <= 200:
            errors.append("Name must be 2-200 characters.")
    if "description" not in bad and not partial and not (payload.get("description") or "").strip():
        errors.append("Description is required.")
    if "fee" in payload and parse_fee(payload.get("fee")) is None:
        errors.append("Fee must be a non-negative number.")
    for key in ("form_fields", "required_documents"):
        if payload.get(key) is not None and not isinstance(payload.get(key), list):
            errors.append(f"{key} must be a list.")
    return errors


def create_service(s: "Session", payload: dict, user: "User") -> Service:
    errors = validate_service_payload(payload)
    try:
        department_id = int(payload.get("department_id"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        department_id = None
        errors.append("Valid department ID required.")
    if errors:
        raise ValidationFailed(" ".join(errors), errors=errors)
    dept = s.get(Department, department_id)
    if dept is None or not dept.is_active:
        raise NotFound("Department not found")

    service = Service(
        department_id=dept.id,
        name=payload["name"].strip(),
        description=payload["description"].strip(),
        fee=parse_fee(payload.get("fee")),
        processing_time=(payload.get("processing_time") or "").strip() or None,
        required_documents=payload.get("required_documents") or [],
        form_fields=payload.get("form_fields") or [],
        is_active=True,
    )
    s.add(service)
    s.flush()
    record_event(
        s,
        actor=user,
        action="SERVICE_CREATED",
        target_type="service",
        target_id=service.id,
        metadata={"name": service.name, "fee": str(service.fee), "department_id": dept.id},
    )
    return service


def update_service(s: "Session", service: Service, payload: dict, user: "User") -> Service:
    """Edit name/description/fee/is_active. Existing payments keep their amounts."""
    errors = validate_service_payload(payload, partial=True)
    if errors:
        raise ValidationFailed(" ".join(errors), errors=errors)
    changes = {}

    if "name" in payload:
        new_name = payload["name"].strip()
        if new_name != service.name:
            changes["name"] = {"old": service.name, "new": new_name}
            service.name = new_name

    if "description" in payload:
        new_desc = (payload.get("description") or "").strip()
        if new_desc and new_desc != service.description:
            changes["description"] = {"old": service.description, "new": new_desc}
            service.description = new_desc

    if "fee" in payload:
        new_fee = parse_fee(payload.get("fee"))
        if new_fee != service.fee:
            changes["fee"] = {"old": str(service.fee), "new": str(new_fee)}
            service.fee = new_fee  # type: ignore[assignment]

    if "is_active" in payload:
        new_active = bool(payload.get("is_active"))
        if new_active != service.is_active:
            changes["is_active"] = {"old": service.is_active, "new": new_active}
            service.is_active = new_active

    record_event(
        s,
        actor=user,
        action="SERVICE_UPDATED",
        target_type="service",
        target_id=service.id,
        metadata={"name": service.name, "changes": changes},
    )
    return service
