from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import models
from access_service.database import read_retry
from access_service.errors import NotFound


@dataclass(frozen=True)
class Principal:
    """A user's identity plus the role and permission names it currently holds.

    Never carries the password hash.
    """

    id: int
    username: str
    email: str
    full_name: str
    phone: Optional[str]
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "phone": self.phone,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "roles": sorted(self.roles),
            "permissions": sorted(self.permissions),
        }


USER_COLUMNS = (
    models.User.id,
    models.User.username,
    models.User.email,
    models.User.full_name,
    models.User.phone,
    models.User.is_active,
    models.User.created_at,
    models.User.updated_at,
)


class PrincipalResolver:
    """Single source of truth for what a user can do.

    Recomputed on every call; nothing is cached between resolutions, so a
    role or permission edit is visible on the user's next request.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @read_retry
    async def resolve(self, user_id: int) -> Principal:
        # User -> role_user -> roles -> permission_role -> permissions, in one query.
        stmt = (
            select(
                *USER_COLUMNS,
                models.Role.name.label("role_name"),
                models.Permission.name.label("permission_name"),
            )
            .select_from(models.User)
            .outerjoin(models.UserRole, models.UserRole.user_id == models.User.id)
            .outerjoin(models.Role, models.Role.id == models.UserRole.role_id)
            .outerjoin(models.RolePermission, models.RolePermission.role_id == models.Role.id)
            .outerjoin(models.Permission, models.Permission.id == models.RolePermission.permission_id)
            .filter(models.User.id == user_id)
        )
        rows = (await self._read(stmt)).all()
        if not rows:
            raise NotFound("User", user_id)

        roles = frozenset(row.role_name for row in rows if row.role_name is not None)
        permissions = frozenset(row.permission_name for row in rows if row.permission_name is not None)
        user_fields = tuple(rows[0])[:len(USER_COLUMNS)]
        return Principal(*user_fields, roles=roles, permissions=permissions)

    @read_retry
    async def roles_of(self, user_id: int) -> List[models.Role]:
        await self._require_user(user_id)
        result = await self._read(
            select(models.Role)
            .join(models.UserRole, models.UserRole.role_id == models.Role.id)
            .filter(models.UserRole.user_id == user_id)
            .order_by(models.Role.name)
        )
        return list(result.scalars().all())

    @read_retry
    async def permissions_of(self, user_id: int) -> List[models.Permission]:
        await self._require_user(user_id)
        result = await self._read(
            select(models.Permission)
            .join(models.RolePermission, models.RolePermission.permission_id == models.Permission.id)
            .join(models.UserRole, models.UserRole.role_id == models.RolePermission.role_id)
            .filter(models.UserRole.user_id == user_id)
            .distinct()
            .order_by(models.Permission.name)
        )
        return list(result.scalars().all())

    async def _read(self, stmt):
        try:
            return await self.session.execute(stmt)
        except DBAPIError:
            # The session must be rolled back before a retry can reuse it.
            await self.session.rollback()
            raise

    async def _require_user(self, user_id: int) -> None:
        found = await self._read(select(models.User.id).filter(models.User.id == user_id))
        if found.first() is None:
            raise NotFound("User", user_id)
