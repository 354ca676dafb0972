from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, distinct, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from access_service import models, schemas
from access_service.config import SYSTEM_ROLES
from access_service.database import transaction
from access_service.errors import Conflict, Forbidden, NotFound
from access_service.events import send_event
from access_service.logger import logger
from access_service.services.queries import (
    PageParams, PageResult, apply_filters, build_conditions, search_in,
)

ROLE_FILTERS = {
    "search": search_in(models.Role.name, models.Role.description),
}


def is_system_role(name: str) -> bool:
    return name in SYSTEM_ROLES


class RoleRegistry:
    """Named bundles of permissions.

    Permission membership changes either wholesale (``update`` with
    ``permission_ids``) or incrementally (``assign_permissions`` /
    ``remove_permissions``). Every write runs in a single transaction that
    also performs its own uniqueness and reference checks.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_with_permissions(self, role_id: int) -> models.Role:
        result = await self.session.execute(
            select(models.Role)
            .options(selectinload(models.Role.permissions))
            .filter(models.Role.id == role_id)
            .execution_options(populate_existing=True)
        )
        db_role = result.scalar_one_or_none()
        if db_role is None:
            raise NotFound("Role", role_id)
        return db_role

    async def get_permissions(self, role_id: int) -> List[models.Permission]:
        return list((await self.get_with_permissions(role_id)).permissions)

    async def _lock_role(self, role_id: int) -> models.Role:
        result = await self.session.execute(
            select(models.Role).filter(models.Role.id == role_id).with_for_update()
        )
        db_role = result.scalar_one_or_none()
        if db_role is None:
            raise NotFound("Role", role_id)
        return db_role

    async def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(models.Role.id).filter(models.Role.name == name)
        if exclude_id is not None:
            stmt = stmt.filter(models.Role.id != exclude_id)
        return (await self.session.execute(stmt)).first() is not None

    async def _check_permissions_exist(self, permission_ids: Iterable[int]) -> List[int]:
        wanted = sorted(set(permission_ids))
        if not wanted:
            return wanted
        # FOR SHARE: a concurrent permission delete waits for this transaction.
        result = await self.session.execute(
            select(models.Permission.id)
            .filter(models.Permission.id.in_(wanted))
            .with_for_update(read=True)
        )
        found = set(result.scalars().all())
        missing = [pid for pid in wanted if pid not in found]
        if missing:
            raise NotFound("Permission", missing[0] if len(missing) == 1 else missing)
        return wanted

    async def _held_permission_ids(self, role_id: int) -> set:
        result = await self.session.execute(
            select(models.RolePermission.permission_id)
            .filter(models.RolePermission.role_id == role_id)
        )
        return set(result.scalars().all())

    async def _insert_permissions(self, role_id: int, permission_ids: Iterable[int]) -> None:
        rows = [{"role_id": role_id, "permission_id": pid} for pid in permission_ids]
        if rows:
            await self.session.execute(insert(models.RolePermission), rows)

    async def _replace_permissions(self, role_id: int, permission_ids: List[int]) -> None:
        # Runs inside the caller's transaction: readers see the old set or the
        # new one, never the empty intermediate state.
        await self.session.execute(
            delete(models.RolePermission).where(models.RolePermission.role_id == role_id)
        )
        await self._insert_permissions(role_id, permission_ids)

    async def create(self, role: schemas.RoleCreate, actor_id: Optional[int] = None) -> models.Role:
        try:
            async with transaction(self.session):
                if await self._name_taken(role.name):
                    raise Conflict.duplicate_name("Role")
                permission_ids = await self._check_permissions_exist(role.permission_ids)

                db_role = models.Role(name=role.name, description=role.description)
                self.session.add(db_role)
                await self.session.flush()
                role_id = db_role.id
                await self._insert_permissions(role_id, permission_ids)
        except IntegrityError:
            raise Conflict.duplicate_name("Role")

        logger.info("Role created", extra={"role_id": role_id, "role_name": role.name})
        await send_event("ROLE_CREATED", role_id=role_id, name=role.name,
                         permission_ids=permission_ids, actor_id=actor_id)
        return await self.get_with_permissions(role_id)

    async def update(self, role_id: int, role: schemas.RoleUpdate, actor_id: Optional[int] = None) -> models.Role:
        role_data = role.model_dump(exclude_unset=True)
        permission_ids = role_data.pop("permission_ids", None)
        replace = "permission_ids" in role.model_fields_set

        try:
            async with transaction(self.session):
                db_role = await self._lock_role(role_id)

                name = role_data.get("name")
                if name and name != db_role.name:
                    if is_system_role(db_role.name):
                        raise Forbidden.system_role(db_role.name, "renamed")
                    if is_system_role(name) or await self._name_taken(name, exclude_id=role_id):
                        raise Conflict.duplicate_name("Role")

                for field, value in role_data.items():
                    setattr(db_role, field, value)

                if replace:
                    checked = await self._check_permissions_exist(permission_ids)
                    await self._replace_permissions(role_id, checked)
        except IntegrityError:
            raise Conflict.duplicate_name("Role")

        logger.info(
            "Role updated",
            extra={"role_id": role_id, "fields": sorted(role_data), "permissions_replaced": replace}
        )
        await send_event("ROLE_UPDATED", role_id=role_id, fields=sorted(role_data),
                         permission_ids=permission_ids if replace else None, actor_id=actor_id)
        return await self.get_with_permissions(role_id)

    async def assign_permissions(
        self, role_id: int, permission_ids: List[int], actor_id: Optional[int] = None
    ) -> models.Role:
        async with transaction(self.session):
            await self._lock_role(role_id)
            wanted = await self._check_permissions_exist(permission_ids)
            held = await self._held_permission_ids(role_id)
            added = [pid for pid in wanted if pid not in held]
            await self._insert_permissions(role_id, added)

        logger.info("Permissions assigned to role", extra={"role_id": role_id, "added": added})
        await send_event("ROLE_PERMISSIONS_ASSIGNED", role_id=role_id, permission_ids=added, actor_id=actor_id)
        return await self.get_with_permissions(role_id)

    async def remove_permissions(
        self, role_id: int, permission_ids: List[int], actor_id: Optional[int] = None
    ) -> models.Role:
        wanted = sorted(set(permission_ids))
        async with transaction(self.session):
            await self._lock_role(role_id)
            if wanted:
                await self.session.execute(
                    delete(models.RolePermission).where(
                        models.RolePermission.role_id == role_id,
                        models.RolePermission.permission_id.in_(wanted),
                    )
                )

        logger.info("Permissions removed from role", extra={"role_id": role_id, "removed": wanted})
        await send_event("ROLE_PERMISSIONS_REMOVED", role_id=role_id, permission_ids=wanted, actor_id=actor_id)
        return await self.get_with_permissions(role_id)

    async def delete(self, role_id: int, actor_id: Optional[int] = None) -> None:
        async with transaction(self.session):
            db_role = await self._lock_role(role_id)
            role_name = db_role.name

            if is_system_role(role_name):
                logger.warning("System role delete rejected", extra={"role_id": role_id, "role_name": role_name})
                raise Forbidden.system_role(role_name)

            user_count = await self.user_count(role_id)
            if user_count > 0:
                logger.warning("Role delete blocked", extra={"role_id": role_id, "user_count": user_count})
                raise Conflict.in_use("Role", user_count, "user")

            await self.session.execute(
                delete(models.RolePermission).where(models.RolePermission.role_id == role_id)
            )
            await self.session.execute(delete(models.Role).where(models.Role.id == role_id))

        logger.info("Role deleted", extra={"role_id": role_id, "role_name": role_name})
        await send_event("ROLE_DELETED", role_id=role_id, name=role_name, actor_id=actor_id)

    async def user_count(self, role_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(models.UserRole)
            .filter(models.UserRole.role_id == role_id)
        )
        return result.scalar_one()

    async def list(
        self, filters: Optional[Mapping[str, Any]] = None, params: PageParams = PageParams()
    ) -> PageResult:
        conditions = build_conditions(ROLE_FILTERS, filters)

        total = (await self.session.execute(
            apply_filters(select(func.count(models.Role.id)), conditions)
        )).scalar_one()

        user_count = func.count(distinct(models.UserRole.user_id)).label("user_count")
        permission_count = func.count(distinct(models.RolePermission.permission_id)).label("permission_count")
        stmt = (
            select(models.Role, user_count, permission_count)
            .outerjoin(models.UserRole, models.UserRole.role_id == models.Role.id)
            .outerjoin(models.RolePermission, models.RolePermission.role_id == models.Role.id)
            .group_by(models.Role.id)
            .order_by(models.Role.created_at.desc(), models.Role.id.desc())
            .limit(params.limit)
            .offset(params.offset)
        )
        rows = (await self.session.execute(apply_filters(stmt, conditions))).all()

        items = [
            schemas.RoleWithCounts.model_validate(role).model_copy(
                update={"user_count": users, "permission_count": permissions}
            )
            for role, users, permissions in rows
        ]
        return PageResult(items=items, page=params.page, limit=params.limit, total=total)

    async def stats(self) -> Dict[str, Any]:
        total_roles = (await self.session.execute(select(func.count(models.Role.id)))).scalar_one()
        system_roles = (await self.session.execute(
            select(func.count(models.Role.id)).filter(models.Role.name.in_(sorted(SYSTEM_ROLES)))
        )).scalar_one()

        user_count = func.count(distinct(models.UserRole.user_id)).label("user_count")
        permission_count = func.count(distinct(models.RolePermission.permission_id)).label("permission_count")
        result = await self.session.execute(
            select(models.Role.name, user_count, permission_count)
            .outerjoin(models.UserRole, models.UserRole.role_id == models.Role.id)
            .outerjoin(models.RolePermission, models.RolePermission.role_id == models.Role.id)
            .group_by(models.Role.id, models.Role.name)
            .order_by(user_count.desc(), models.Role.name)
        )

        return {
            "total_roles": total_roles,
            "system_roles": system_roles,
            "custom_roles": total_roles - system_roles,
            "role_details": [
                {"name": name, "user_count": users, "permission_count": permissions}
                for name, users, permissions in result.all()
            ],
        }
