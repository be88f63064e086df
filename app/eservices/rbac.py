"""
Role ranks and the authorization guard.

Every check here is a pure function of its inputs plus the static rank table and
returns an ``AccessDecision``; nothing is written. Callers combine decisions with
``enforce()`` in a fixed order before touching any lifecycle operation:

    authenticate -> role rank -> department scope -> resource ownership

``enforce()`` logs each denial (actor, action, outcome) and raises it as
``Unauthenticated`` or ``Forbidden``.
"""
from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from functools import wraps
from types import MappingProxyType
from typing import Any

from flask import g, request

from app.eservices.errors import Forbidden, Unauthenticated
from app.eservices.models import User

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    CITIZEN = "citizen"
    OFFICER = "officer"
    DEPARTMENT_HEAD = "department_head"
    ADMIN = "admin"


ROLE_RANK: Mapping[Role, int] = MappingProxyType(
    {
        Role.CITIZEN: 1,
        Role.OFFICER: 2,
        Role.DEPARTMENT_HEAD: 3,
        Role.ADMIN: 4,
    }
)

DEPARTMENT_SCOPED_ROLES = frozenset({Role.OFFICER, Role.DEPARTMENT_HEAD})


def parse_role(value: object) -> Role | None:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value))
    except ValueError:
        return None


def rank(role: object) -> int:
    """Rank of a role; unknown roles rank 0 and satisfy nothing."""
    r = parse_role(role)
    return ROLE_RANK[r] if r is not None else 0


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    reason: str = ""
    kind: str = "forbidden"  # unauthenticated | forbidden

    def __bool__(self) -> bool:
        return self.granted


GRANT = AccessDecision(True, "granted", "")


def _deny(reason: str, kind: str = "forbidden") -> AccessDecision:
    return AccessDecision(False, reason, kind)


def _is_authenticated(actor: User | None) -> bool:
    return actor is not None and bool(actor.is_active)


def _same_id(a: object, b: object) -> bool:
    # Path/query params arrive as strings; stored ids are ints.
    return str(a) == str(b)


def _parse_allowed(allowed_roles: Iterable[Role | str]) -> list[Role]:
    roles = []
    for r in allowed_roles:
        parsed = parse_role(r)
        if parsed is None:
            raise ValueError(f"Unknown role in allowed_roles: {r!r}")
        roles.append(parsed)
    if not roles:
        raise ValueError("authorize() needs at least one allowed role")
    return roles


def authorize(actor: User | None, allowed_roles: Iterable[Role | str]) -> AccessDecision:
    """
    Grant iff rank(actor) >= the lowest rank among ``allowed_roles``.
    A higher role always satisfies a lower requirement. An empty or unknown
    ``allowed_roles`` entry is a caller bug and raises ``ValueError``.
    """
    required = [ROLE_RANK[r] for r in _parse_allowed(allowed_roles)]
    if not _is_authenticated(actor):
        return _deny("Authentication required", "unauthenticated")
    if rank(actor.role) >= min(required):  # type: ignore[union-attr]
        return GRANT
    return _deny("Insufficient permissions")


def check_department_access(actor: User | None, target_department_id: object = None) -> AccessDecision:
    if not _is_authenticated(actor):
        return _deny("Authentication required", "unauthenticated")
    role = parse_role(actor.role)  # type: ignore[union-attr]
    if role is Role.ADMIN:
        return GRANT
    if role not in DEPARTMENT_SCOPED_ROLES:
        # Citizens carry no department.
        return GRANT
    if target_department_id is None or target_department_id == "":
        return GRANT
    if actor.department_id is not None and _same_id(target_department_id, actor.department_id):  # type: ignore[union-attr]
        return GRANT
    return _deny("You can only access your department resources")


def resolve_owner_id(
    field: str = "user_id",
    *,
    resource: object = None,
    path_params: Mapping[str, Any] | None = None,
    body: Mapping[str, Any] | None = None,
    query: Mapping[str, Any] | None = None,
) -> object:
    """First owner id found in: loaded resource, path params, body, query."""
    if resource is not None:
        value = resource.get(field) if isinstance(resource, Mapping) else getattr(resource, field, None)
        if value not in (None, ""):
            return value
    for source in (path_params, body, query):
        if source:
            value = source.get(field)
            if value not in (None, ""):
                return value
    return None


def check_resource_ownership(
    actor: User | None,
    field: str = "user_id",
    *,
    resource: object = None,
    path_params: Mapping[str, Any] | None = None,
    body: Mapping[str, Any] | None = None,
    query: Mapping[str, Any] | None = None,
) -> AccessDecision:
    """
    Admin always passes. Otherwise the resolved owner id must equal ``actor.id``.
    When no owner id can be resolved at all the check passes; callers that care
    about ownership must hand in the loaded resource.
    """
    if not _is_authenticated(actor):
        return _deny("Authentication required", "unauthenticated")
    if parse_role(actor.role) is Role.ADMIN:  # type: ignore[union-attr]
        return GRANT
    owner_id = resolve_owner_id(field, resource=resource, path_params=path_params, body=body, query=query)
    if owner_id is None:
        return GRANT
    if _same_id(owner_id, actor.id):  # type: ignore[union-attr]
        return GRANT
    return _deny("You can only access your own resources")


def enforce(*decisions: AccessDecision, actor: User | None = None, action: str = "") -> None:
    """Raise the first denial, in the order given."""
    for decision in decisions:
        if decision.granted:
            continue
        logger.warning(
            "Access denied: actor=%s role=%s action=%s outcome=%s reason=%s",
            getattr(actor, "id", None),
            getattr(actor, "role", None),
            action or "-",
            decision.kind,
            decision.reason,
        )
        if decision.kind == "unauthenticated":
            raise Unauthenticated(decision.reason)
        raise Forbidden(decision.reason)


def require_role(*roles: Role | str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Flask view guard: authenticated actor whose rank meets the lowest of ``roles``."""
    allowed = _parse_allowed(roles)

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            enforce(authorize(user, allowed), actor=user, action=f"{request.method} {request.path}")
            return fn(*args, **kwargs)

        return wrapped

    return decorator
