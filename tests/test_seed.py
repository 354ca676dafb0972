from sqlalchemy import func, select

from access_service import models
from access_service.seed import seed_defaults
from access_service.services.credentials import CredentialStore
from access_service.services.resolver import PrincipalResolver


async def test_seed_is_idempotent(session):
    first = await seed_defaults(session, admin_email="admin@isp.net", admin_password="admin123456")
    second = await seed_defaults(session, admin_email="admin@isp.net", admin_password="admin123456")

    assert first == {"roles": 3, "permissions": 32, "grants": 32 + 5, "users": 1}
    assert second == {"roles": 0, "permissions": 0, "grants": 0, "users": 0}
    assert (await session.execute(select(func.count(models.User.id)))).scalar_one() == 1


async def test_seeded_roles(session):
    await seed_defaults(session, admin_email="admin@isp.net", admin_password="admin123456")

    admin = await CredentialStore(session).verify("admin@isp.net", "admin123456")
    principal = await PrincipalResolver(session).resolve(admin.id)

    assert principal.roles == {"admin"}
    assert len(principal.permissions) == 32
    assert {"roles.delete", "permissions.create", "users.update"} <= principal.permissions


async def test_staff_only_views_operational_data(session):
    await seed_defaults(session)

    result = await session.execute(
        select(models.Permission.name)
        .join(models.RolePermission, models.RolePermission.permission_id == models.Permission.id)
        .join(models.Role, models.Role.id == models.RolePermission.role_id)
        .filter(models.Role.name == "staff")
        .order_by(models.Permission.name)
    )

    assert list(result.scalars().all()) == [
        "customers.view",
        "service_packages.view",
        "subscriptions.view",
        "ticket_categories.view",
        "tickets.view",
    ]
