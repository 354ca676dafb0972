import pytest

from access_service.services import gate
from access_service.services.resolver import Principal


def make_principal(roles=(), permissions=()):
    return Principal(
        id=1,
        username="agent",
        email="agent@isp.net",
        full_name="Support Agent",
        phone=None,
        is_active=True,
        roles=frozenset(roles),
        permissions=frozenset(permissions),
    )


def test_permission_held_allows():
    principal = make_principal(permissions={"tickets.view"})

    decision = gate.require_permission(principal, "tickets.view")

    assert decision.allowed
    assert decision.reason is None
    assert decision.required == ("tickets.view",)


def test_any_of_several_permissions_is_enough():
    principal = make_principal(permissions={"tickets.update"})

    assert gate.require_permission(principal, ["tickets.view", "tickets.update"])


def test_missing_permission_denies_with_requirement_list():
    principal = make_principal(permissions={"customers.view"})

    decision = gate.require_permission(principal, ["tickets.view", "tickets.update"])

    assert not decision
    assert decision.reason == gate.INSUFFICIENT_PERMISSIONS
    assert decision.required == ("tickets.view", "tickets.update")


def test_manage_does_not_imply_view():
    principal = make_principal(permissions={"tickets.manage"})

    decision = gate.require_permission(principal, "tickets.view")

    assert decision.reason == gate.INSUFFICIENT_PERMISSIONS


@pytest.mark.parametrize("check", [gate.require_permission, gate.require_role])
def test_absent_principal_is_unauthenticated(check):
    decision = check(None, "anything")

    assert not decision.allowed
    assert decision.reason == gate.UNAUTHENTICATED


def test_empty_requirement_never_allows():
    principal = make_principal(roles={"admin"}, permissions={"tickets.view"})

    assert not gate.require_permission(principal, [])
    assert not gate.require_role(principal, [])


def test_role_gate_matches_any_role():
    principal = make_principal(roles={"staff"})

    assert gate.require_role(principal, ["admin", "staff"])
    decision = gate.require_role(principal, "admin")
    assert decision.reason == gate.INSUFFICIENT_ROLE
    assert decision.required == ("admin",)


def test_role_gate_ignores_permissions():
    principal = make_principal(permissions={"admin"})

    assert not gate.require_role(principal, "admin")
