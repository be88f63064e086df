"""Tests for role ranks and the authorization guard (no database needed)."""
import itertools

import pytest

from app.eservices.errors import Forbidden, Unauthenticated
from app.eservices.models import User
from app.eservices.rbac import (
    ROLE_RANK,
    Role,
    authorize,
    check_department_access,
    check_resource_ownership,
    enforce,
    rank,
    require_role,
    resolve_owner_id,
)


def _actor(role: Role, *, uid: int = 1, department_id: int | None = None, active: bool = True) -> User:
    return User(id=uid, name="Test", email=f"u{uid}@example.com", role=role.value, department_id=department_id, is_active=active)


def _role_sets():
    roles = list(Role)
    for n in range(1, len(roles) + 1):
        yield from itertools.combinations(roles, n)


def test_rank_table():
    assert [ROLE_RANK[r] for r in (Role.CITIZEN, Role.OFFICER, Role.DEPARTMENT_HEAD, Role.ADMIN)] == [1, 2, 3, 4]
    assert rank("admin") == 4
    assert rank("janitor") == 0


def test_rank_table_is_read_only():
    with pytest.raises(TypeError):
        ROLE_RANK[Role.CITIZEN] = 9  # type: ignore[index]


@pytest.mark.parametrize("role", list(Role))
def test_authorize_is_rank_based_for_every_role_set(role):
    actor = _actor(role)
    for allowed in _role_sets():
        expected = ROLE_RANK[role] >= min(ROLE_RANK[r] for r in allowed)
        assert bool(authorize(actor, allowed)) is expected, (role, allowed)


def test_authorize_higher_role_satisfies_lower_requirement():
    assert authorize(_actor(Role.ADMIN), [Role.CITIZEN])
    assert authorize(_actor(Role.DEPARTMENT_HEAD), [Role.OFFICER])
    assert not authorize(_actor(Role.CITIZEN), [Role.OFFICER])


def test_authorize_accepts_role_strings():
    assert authorize(_actor(Role.OFFICER), ["officer", "admin"])


def test_authorize_requires_an_active_actor():
    d = authorize(None, [Role.CITIZEN])
    assert not d and d.kind == "unauthenticated"
    d = authorize(_actor(Role.ADMIN, active=False), [Role.CITIZEN])
    assert not d and d.kind == "unauthenticated"


def test_authorize_rejects_empty_role_list():
    with pytest.raises(ValueError):
        authorize(_actor(Role.ADMIN), [])


def test_authorize_rejects_unknown_allowed_role():
    with pytest.raises(ValueError):
        authorize(_actor(Role.CITIZEN), ["admn"])
    with pytest.raises(ValueError):
        authorize(None, [Role.ADMIN, "superuser"])


def test_require_role_rejects_unknown_role_at_decoration():
    with pytest.raises(ValueError):
        require_role("admn")


def test_unknown_actor_role_satisfies_nothing():
    actor = User(id=5, name="X", email="x@example.com", role="superuser", is_active=True)
    assert not authorize(actor, [Role.CITIZEN])


def test_department_access_for_scoped_roles():
    officer = _actor(Role.OFFICER, department_id=1)
    assert check_department_access(officer, 1)
    assert check_department_access(officer, "1")
    d = check_department_access(officer, 2)
    assert not d and d.kind == "forbidden"
    assert check_department_access(officer, None)

    head = _actor(Role.DEPARTMENT_HEAD, department_id=3)
    assert check_department_access(head, 3)
    assert not check_department_access(head, 1)


def test_department_access_admin_and_citizen_always_pass():
    assert check_department_access(_actor(Role.ADMIN), 42)
    assert check_department_access(_actor(Role.CITIZEN), 42)


def test_department_access_officer_without_department_is_denied_targets():
    officer = _actor(Role.OFFICER, department_id=None)
    assert not check_department_access(officer, 1)


def test_ownership_resource_takes_precedence():
    actor = _actor(Role.CITIZEN, uid=7)
    resource = {"user_id": 8}
    d = check_resource_ownership(actor, resource=resource, path_params={"user_id": "7"})
    assert not d and d.kind == "forbidden"
    assert check_resource_ownership(actor, resource={"user_id": 7}, body={"user_id": 8})


def test_ownership_falls_back_through_path_body_query():
    actor = _actor(Role.CITIZEN, uid=7)
    assert resolve_owner_id(path_params={"user_id": "9"}, body={"user_id": 7}) == "9"
    assert resolve_owner_id(body={"user_id": 7}, query={"user_id": "9"}) == 7
    assert resolve_owner_id(query={"user_id": "9"}) == "9"
    assert check_resource_ownership(actor, query={"user_id": "7"})
    assert not check_resource_ownership(actor, body={"user_id": 3})


def test_ownership_custom_field_and_no_owner():
    actor = _actor(Role.CITIZEN, uid=2)
    assert check_resource_ownership(actor, "owner_id", resource={"owner_id": 2})
    assert not check_resource_ownership(actor, "owner_id", resource={"owner_id": 3})
    assert check_resource_ownership(actor)


def test_ownership_admin_override_and_unauthenticated():
    assert check_resource_ownership(_actor(Role.ADMIN, uid=1), resource={"user_id": 99})
    d = check_resource_ownership(None, resource={"user_id": 1})
    assert not d and d.kind == "unauthenticated"


def test_enforce_raises_first_denial_in_order():
    citizen = _actor(Role.CITIZEN, uid=1)
    with pytest.raises(Forbidden):
        enforce(
            authorize(citizen, [Role.OFFICER]),
            check_department_access(citizen, 1),
            actor=citizen,
            action="test",
        )
    with pytest.raises(Unauthenticated):
        enforce(authorize(None, [Role.CITIZEN]), actor=None, action="test")
    enforce(authorize(citizen, [Role.CITIZEN]), check_resource_ownership(citizen, resource={"user_id": 1}))


def test_enforce_logs_denials(caplog):
    officer = _actor(Role.OFFICER, uid=3, department_id=1)
    with caplog.at_level("WARNING", logger="app.eservices.rbac"):
        with pytest.raises(Forbidden):
            enforce(check_department_access(officer, 2), actor=officer, action="request.decide")
    assert "request.decide" in caplog.text
    assert "actor=3" in caplog.text
