"""
Identity provider: builds actors and turns bearer credentials back into them.

Password hashing happens in ``register_user`` itself, never in a persistence hook.
Bearer tokens are signed and time-limited (itsdangerous) and carry only the user id;
the user row is re-read on every request so deactivation takes effect immediately.
"""
from __future__ import annotations

import logging

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.eservices.errors import ValidationFailed
from app.eservices.models import Department, User
from app.eservices.rbac import Role, parse_role
from app.eservices.utils import utcnow

logger = logging.getLogger(__name__)

_TOKEN_SALT = "eservices.bearer"
MIN_PASSWORD_LENGTH = 6


def _serializer(secret_key: str | None = None) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key or current_app.config["SECRET_KEY"], salt=_TOKEN_SALT)


def normalize_email(email: object) -> str:
    return email.strip().lower() if isinstance(email, str) else ""


def validate_registration(name: object, email: object, password: object, national_id: object = None) -> list[str]:
    errors = []
    if not isinstance(name, str) or not 2 <= len(name.strip()) <= 100:
        errors.append("Name must be 2-100 characters.")
    email = normalize_email(email)
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        errors.append("A valid email is required.")
    if national_id is not None and not isinstance(national_id, str):
        errors.append("National ID must be a string.")
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return errors


def register_user(
    s: Session,
    *,
    name: str,
    email: str,
    password: str,
    role: Role | str = Role.CITIZEN,
    national_id: str | None = None,
    department_id: int | None = None,
) -> User:
    """Build and add a fully formed user (password already hashed)."""
    errors = validate_registration(name, email, password, national_id)
    parsed_role = parse_role(role)
    if parsed_role is None:
        errors.append(f"Unknown role: {role}")
    if errors:
        raise ValidationFailed(" ".join(errors), errors=errors)

    email = normalize_email(email)
    if s.execute(select(User.id).where(User.email == email)).first() is not None:
        raise ValidationFailed("Email is already registered.")
    national_id = (national_id or "").strip() or None
    if national_id and s.execute(select(User.id).where(User.national_id == national_id)).first() is not None:
        raise ValidationFailed("National ID is already registered.")
    if department_id is not None and s.get(Department, department_id) is None:
        raise ValidationFailed("Department does not exist.")

    now = utcnow()
    user = User(
        name=name.strip(),
        email=email,
        password_hash=generate_password_hash(password),
        role=parsed_role.value,  # type: ignore[union-attr]
        national_id=national_id,
        department_id=department_id,
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    return user


def verify_credentials(s: Session, email: object, password: object) -> User | None:
    user = s.execute(select(User).where(User.email == normalize_email(email))).scalar_one_or_none()
    if not isinstance(password, str):
        password = ""
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        return None
    user.last_login_at = utcnow()
    return user


def issue_token(user: User, *, secret_key: str | None = None) -> str:
    return _serializer(secret_key).dumps({"uid": user.id})


def authenticate_token(
    s: Session,
    token: str | None,
    *,
    max_age: int | None = None,
    secret_key: str | None = None,
) -> User | None:
    """Active user behind a bearer token, or None for anything invalid."""
    if not token:
        return None
    if max_age is None:
        max_age = int(current_app.config.get("TOKEN_MAX_AGE_SECONDS") or 86400)
    try:
        payload = _serializer(secret_key).loads(token, max_age=max_age)
    except SignatureExpired:
        logger.info("Expired bearer token presented")
        return None
    except BadSignature:
        logger.info("Invalid bearer token presented")
        return None
    user_id = payload.get("uid") if isinstance(payload, dict) else None
    if not isinstance(user_id, int):
        return None
    user = s.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


def bearer_token_from_header(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
