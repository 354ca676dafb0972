from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import models, schemas
from access_service.database import transaction
from access_service.errors import Conflict, NotFound
from access_service.events import send_event
from access_service.logger import logger
from access_service.services.queries import (
    PageParams, PageResult, apply_filters, build_conditions, equals, search_in,
)

PERMISSION_FILTERS = {
    "search": search_in(models.Permission.name, models.Permission.description),
    "resource": equals(models.Permission.resource),
    "action": equals(models.Permission.action),
}


class PermissionCatalog:
    """The universe of named permissions, each tagged with a resource and an action."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def actions() -> List[str]:
        return list(models.PERMISSION_ACTIONS)

    async def get(self, permission_id: int) -> models.Permission:
        result = await self.session.execute(
            select(models.Permission)
            .filter(models.Permission.id == permission_id)
            .execution_options(populate_existing=True)
        )
        db_permission = result.scalar_one_or_none()
        if db_permission is None:
            raise NotFound("Permission", permission_id)
        return db_permission

    async def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(models.Permission.id).filter(models.Permission.name == name)
        if exclude_id is not None:
            stmt = stmt.filter(models.Permission.id != exclude_id)
        return (await self.session.execute(stmt)).first() is not None

    async def create(self, permission: schemas.PermissionCreate, actor_id: Optional[int] = None) -> models.Permission:
        try:
            async with transaction(self.session):
                if await self._name_taken(permission.name):
                    raise Conflict.duplicate_name("Permission")
                db_permission = models.Permission(**permission.model_dump(mode="json"))
                self.session.add(db_permission)
                await self.session.flush()
                permission_id = db_permission.id
        except IntegrityError:
            # Lost a race with a concurrent insert of the same name.
            raise Conflict.duplicate_name("Permission")

        logger.info("Permission created", extra={"permission_id": permission_id, "permission_name": permission.name})
        await send_event("PERMISSION_CREATED", permission_id=permission_id, name=permission.name, actor_id=actor_id)
        return await self.get(permission_id)

    async def update(
        self, permission_id: int, permission: schemas.PermissionUpdate, actor_id: Optional[int] = None
    ) -> models.Permission:
        permission_data = permission.model_dump(mode="json", exclude_unset=True)
        try:
            async with transaction(self.session):
                result = await self.session.execute(
                    select(models.Permission)
                    .filter(models.Permission.id == permission_id)
                    .with_for_update()
                )
                db_permission = result.scalar_one_or_none()
                if db_permission is None:
                    raise NotFound("Permission", permission_id)

                name = permission_data.get("name")
                if name and await self._name_taken(name, exclude_id=permission_id):
                    raise Conflict.duplicate_name("Permission")

                for field, value in permission_data.items():
                    setattr(db_permission, field, value)
        except IntegrityError:
            raise Conflict.duplicate_name("Permission")

        logger.info("Permission updated", extra={"permission_id": permission_id, "fields": sorted(permission_data)})
        await send_event("PERMISSION_UPDATED", permission_id=permission_id, fields=sorted(permission_data), actor_id=actor_id)
        return await self.get(permission_id)

    async def delete(self, permission_id: int, actor_id: Optional[int] = None) -> None:
        async with transaction(self.session):
            # Locking the permission row serializes this check against
            # concurrent deletes and against role assignments (FOR SHARE).
            result = await self.session.execute(
                select(models.Permission)
                .filter(models.Permission.id == permission_id)
                .with_for_update()
            )
            db_permission = result.scalar_one_or_none()
            if db_permission is None:
                raise NotFound("Permission", permission_id)

            role_count = await self.role_count(permission_id)
            if role_count > 0:
                logger.warning(
                    "Permission delete blocked",
                    extra={"permission_id": permission_id, "role_count": role_count}
                )
                raise Conflict.in_use("Permission", role_count, "role")

            await self.session.execute(
                delete(models.Permission).where(models.Permission.id == permission_id)
            )

        logger.info("Permission deleted", extra={"permission_id": permission_id})
        await send_event("PERMISSION_DELETED", permission_id=permission_id, actor_id=actor_id)

    async def role_count(self, permission_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(models.RolePermission)
            .filter(models.RolePermission.permission_id == permission_id)
        )
        return result.scalar_one()

    async def list_by_resource(self, resource: str) -> List[models.Permission]:
        result = await self.session.execute(
            select(models.Permission)
            .filter(models.Permission.resource == resource)
            .order_by(models.Permission.action, models.Permission.name)
        )
        return list(result.scalars().all())

    async def distinct_resources(self) -> List[str]:
        result = await self.session.execute(
            select(models.Permission.resource).distinct().order_by(models.Permission.resource)
        )
        return list(result.scalars().all())

    async def list(
        self, filters: Optional[Mapping[str, Any]] = None, params: PageParams = PageParams()
    ) -> PageResult:
        conditions = build_conditions(PERMISSION_FILTERS, filters)

        total = (await self.session.execute(
            apply_filters(select(func.count(models.Permission.id)), conditions)
        )).scalar_one()

        role_count = func.count(distinct(models.RolePermission.role_id)).label("role_count")
        stmt = (
            select(models.Permission, role_count)
            .outerjoin(models.RolePermission, models.RolePermission.permission_id == models.Permission.id)
            .group_by(models.Permission.id)
            .order_by(models.Permission.name)
            .limit(params.limit)
            .offset(params.offset)
        )
        rows = (await self.session.execute(apply_filters(stmt, conditions))).all()

        items = [
            schemas.PermissionWithCount.model_validate(permission).model_copy(update={"role_count": count})
            for permission, count in rows
        ]
        return PageResult(items=items, page=params.page, limit=params.limit, total=total)

    async def stats(self) -> Dict[str, Any]:
        total_permissions = (await self.session.execute(
            select(func.count(models.Permission.id))
        )).scalar_one()
        total_resources = (await self.session.execute(
            select(func.count(distinct(models.Permission.resource)))
        )).scalar_one()
        total_actions = (await self.session.execute(
            select(func.count(distinct(models.Permission.action)))
        )).scalar_one()

        return {
            "total_permissions": total_permissions,
            "total_resources": total_resources,
            "total_actions": total_actions,
            "by_resource": await self._grouped_counts(models.Permission.resource, "resource"),
            "by_action": await self._grouped_counts(models.Permission.action, "action"),
        }

    async def _grouped_counts(self, column, key: str) -> List[Dict[str, Any]]:
        permission_count = func.count(distinct(models.Permission.id)).label("permission_count")
        assigned = func.count(distinct(models.RolePermission.role_id)).label("assigned_to_roles")
        result = await self.session.execute(
            select(column, permission_count, assigned)
            .outerjoin(models.RolePermission, models.RolePermission.permission_id == models.Permission.id)
            .group_by(column)
            .order_by(permission_count.desc(), column)
        )
        return [
            {key: value, "permission_count": count, "assigned_to_roles": roles}
            for value, count, roles in result.all()
        ]
