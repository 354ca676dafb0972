"""Default roles, permission catalog and administrator account.

Safe to run repeatedly: existing rows are left untouched and only missing
roles, permissions, grants and the admin user are inserted.
"""

from typing import Dict, Optional

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import models
from access_service.config import get_settings
from access_service.database import transaction
from access_service.logger import logger
from access_service.services.credentials import hash_password

RESOURCES = (
    "customers",
    "subscriptions",
    "tickets",
    "service_packages",
    "ticket_categories",
    "users",
    "roles",
    "permissions",
)
OPERATIONAL_RESOURCES = ("customers", "subscriptions", "tickets", "service_packages", "ticket_categories")
SEED_ACTIONS = ("view", "create", "update", "delete")

ROLE_DESCRIPTIONS = {
    "admin": "Full access to every resource",
    "staff": "Support staff with read access to operational data",
    "customer": "Self-service customer account",
}


def default_permissions():
    for resource in RESOURCES:
        for action in SEED_ACTIONS:
            yield {
                "name": f"{resource}.{action}",
                "description": f"{action.capitalize()} {resource.replace('_', ' ')}",
                "resource": resource,
                "action": action,
            }


def default_grants() -> Dict[str, set]:
    every = {f"{resource}.{action}" for resource in RESOURCES for action in SEED_ACTIONS}
    return {
        "admin": every,
        "staff": {f"{resource}.view" for resource in OPERATIONAL_RESOURCES},
        "customer": set(),
    }


async def _ids_by_name(session: AsyncSession, model) -> Dict[str, int]:
    result = await session.execute(select(model.name, model.id))
    return {name: id_ for name, id_ in result.all()}


async def seed_defaults(
    session: AsyncSession,
    admin_email: Optional[str] = None,
    admin_password: Optional[str] = None,
) -> Dict[str, int]:
    settings = get_settings()
    admin_email = admin_email or settings.admin_email
    admin_password = admin_password or settings.admin_password
    created = {"roles": 0, "permissions": 0, "grants": 0, "users": 0}

    async with transaction(session):
        roles = await _ids_by_name(session, models.Role)
        missing_roles = [
            {"name": name, "description": description}
            for name, description in ROLE_DESCRIPTIONS.items() if name not in roles
        ]
        if missing_roles:
            await session.execute(insert(models.Role), missing_roles)
            created["roles"] = len(missing_roles)
            roles = await _ids_by_name(session, models.Role)

        permissions = await _ids_by_name(session, models.Permission)
        missing_permissions = [row for row in default_permissions() if row["name"] not in permissions]
        if missing_permissions:
            await session.execute(insert(models.Permission), missing_permissions)
            created["permissions"] = len(missing_permissions)
            permissions = await _ids_by_name(session, models.Permission)

        result = await session.execute(select(models.RolePermission.role_id, models.RolePermission.permission_id))
        held = {tuple(row) for row in result.all()}
        grants = [
            {"role_id": roles[role_name], "permission_id": permissions[permission_name]}
            for role_name, names in default_grants().items()
            for permission_name in sorted(names)
            if (roles[role_name], permissions[permission_name]) not in held
        ]
        if grants:
            await session.execute(insert(models.RolePermission), grants)
            created["grants"] = len(grants)

        if admin_email and admin_password:
            existing = await session.execute(select(models.User.id).filter(models.User.email == admin_email))
            if existing.first() is None:
                db_user = models.User(
                    username="admin",
                    email=admin_email,
                    password=hash_password(admin_password),
                    full_name="System Administrator",
                    is_active=True,
                )
                session.add(db_user)
                await session.flush()
                await session.execute(
                    insert(models.UserRole).values(user_id=db_user.id, role_id=roles["admin"])
                )
                created["users"] = 1

    logger.info("Default access data seeded", extra=created)
    return created
