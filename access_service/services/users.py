from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import models, schemas
from access_service.config import DEFAULT_ROLE
from access_service.database import transaction
from access_service.errors import Conflict, Forbidden, NotFound
from access_service.events import send_event
from access_service.logger import logger
from access_service.services.credentials import CredentialStore
from access_service.services.queries import (
    PageParams, PageResult, apply_filters, build_conditions, equals, search_in,
)

USER_FILTERS = {
    "search": search_in(models.User.username, models.User.email, models.User.full_name),
    "is_active": equals(models.User.is_active),
}


class UserService:
    def __init__(self, session: AsyncSession, credentials: Optional[CredentialStore] = None):
        self.session = session
        self.credentials = credentials or CredentialStore(session)

    async def get(self, user_id: int) -> models.User:
        result = await self.session.execute(
            select(models.User)
            .filter(models.User.id == user_id)
            .execution_options(populate_existing=True)
        )
        db_user = result.scalar_one_or_none()
        if db_user is None:
            raise NotFound("User", user_id)
        return db_user

    async def _check_unique(self, username: Optional[str], email: Optional[str],
                            exclude_id: Optional[int] = None) -> None:
        for column, value, label in (
            (models.User.email, email, "Email"),
            (models.User.username, username, "Username"),
        ):
            if not value:
                continue
            stmt = select(models.User.id).filter(column == value)
            if exclude_id is not None:
                stmt = stmt.filter(models.User.id != exclude_id)
            if (await self.session.execute(stmt)).first() is not None:
                raise Conflict(Conflict.DUPLICATE_NAME, f"{label} already exists")

    async def _lock_roles(self, role_ids: Iterable[int]) -> list:
        wanted = sorted(set(role_ids))
        if not wanted:
            return wanted
        # FOR SHARE: serializes against a concurrent role delete.
        result = await self.session.execute(
            select(models.Role.id).filter(models.Role.id.in_(wanted)).with_for_update(read=True)
        )
        found = set(result.scalars().all())
        missing = [rid for rid in wanted if rid not in found]
        if missing:
            raise NotFound("Role", missing[0] if len(missing) == 1 else missing)
        return wanted

    async def _insert_user(self, data: schemas.UserBase, password: str, role_ids: Iterable[int]) -> int:
        await self._check_unique(data.username, data.email)
        db_user = models.User(
            username=data.username,
            email=data.email,
            full_name=data.full_name,
            phone=data.phone,
            is_active=True,
        )
        self.credentials.set_password(db_user, password)
        self.session.add(db_user)
        await self.session.flush()
        rows = [{"user_id": db_user.id, "role_id": rid} for rid in role_ids]
        if rows:
            await self.session.execute(insert(models.UserRole), rows)
        return db_user.id

    async def create(self, user: schemas.UserCreate, actor_id: Optional[int] = None) -> models.User:
        try:
            async with transaction(self.session):
                role_ids = await self._lock_roles(user.role_ids)
                user_id = await self._insert_user(user, user.password, role_ids)
        except IntegrityError:
            raise Conflict(Conflict.DUPLICATE_NAME, "Username or email already exists")

        logger.info("User created", extra={"user_id": user_id, "actor_id": actor_id})
        await send_event("USER_CREATED", user_id=user_id, role_ids=role_ids, actor_id=actor_id)
        return await self.get(user_id)

    async def register(self, user: schemas.UserRegister) -> models.User:
        try:
            async with transaction(self.session):
                result = await self.session.execute(
                    select(models.Role.id).filter(models.Role.name == DEFAULT_ROLE).with_for_update(read=True)
                )
                default_role_id = result.scalar_one_or_none()
                if default_role_id is None:
                    logger.warning("Default role missing, registering user without roles",
                                   extra={"role_name": DEFAULT_ROLE})
                role_ids = [default_role_id] if default_role_id is not None else []
                user_id = await self._insert_user(user, user.password, role_ids)
        except IntegrityError:
            raise Conflict(Conflict.DUPLICATE_NAME, "Username or email already exists")

        logger.info("User registered", extra={"user_id": user_id})
        await send_event("USER_REGISTERED", user_id=user_id, email=user.email)
        return await self.get(user_id)

    async def update(self, user_id: int, user: schemas.UserUpdate, actor_id: Optional[int] = None) -> models.User:
        user_data = user.model_dump(exclude_unset=True)
        if user_data.get("is_active") is False and user_id == actor_id:
            raise Forbidden("self_deactivation", "You cannot deactivate your own account")
        try:
            async with transaction(self.session):
                result = await self.session.execute(
                    select(models.User).filter(models.User.id == user_id).with_for_update()
                )
                db_user = result.scalar_one_or_none()
                if db_user is None:
                    raise NotFound("User", user_id)
                await self._check_unique(user_data.get("username"), user_data.get("email"), exclude_id=user_id)
                for field, value in user_data.items():
                    setattr(db_user, field, value)
        except IntegrityError:
            raise Conflict(Conflict.DUPLICATE_NAME, "Username or email already exists")

        logger.info("User updated", extra={"user_id": user_id, "fields": sorted(user_data), "actor_id": actor_id})
        await send_event("USER_UPDATED", user_id=user_id, fields=sorted(user_data), actor_id=actor_id)
        return await self.get(user_id)

    async def deactivate(self, user_id: int, actor_id: Optional[int] = None) -> models.User:
        return await self.update(user_id, schemas.UserUpdate(is_active=False), actor_id=actor_id)

    async def assign_role(self, user_id: int, role_id: int, actor_id: Optional[int] = None) -> None:
        async with transaction(self.session):
            await self._require_user(user_id)
            await self._lock_roles([role_id])
            exists = await self.session.execute(
                select(models.UserRole).filter(
                    models.UserRole.user_id == user_id,
                    models.UserRole.role_id == role_id,
                )
            )
            added = exists.first() is None
            if added:
                await self.session.execute(insert(models.UserRole).values(user_id=user_id, role_id=role_id))

        logger.info("Role assigned", extra={"user_id": user_id, "role_id": role_id, "added": added})
        if added:
            await send_event("USER_ROLE_ASSIGNED", user_id=user_id, role_id=role_id, actor_id=actor_id)

    async def remove_role(self, user_id: int, role_id: int, actor_id: Optional[int] = None) -> None:
        async with transaction(self.session):
            await self._require_user(user_id)
            await self.session.execute(
                delete(models.UserRole).where(
                    models.UserRole.user_id == user_id,
                    models.UserRole.role_id == role_id,
                )
            )

        logger.info("Role removed", extra={"user_id": user_id, "role_id": role_id})
        await send_event("USER_ROLE_REMOVED", user_id=user_id, role_id=role_id, actor_id=actor_id)

    async def _require_user(self, user_id: int) -> None:
        found = await self.session.execute(
            select(models.User.id).filter(models.User.id == user_id).with_for_update()
        )
        if found.first() is None:
            raise NotFound("User", user_id)

    async def list(
        self, filters: Optional[Mapping[str, Any]] = None, params: PageParams = PageParams()
    ) -> PageResult:
        conditions = build_conditions(USER_FILTERS, filters)
        total = (await self.session.execute(
            apply_filters(select(func.count(models.User.id)), conditions)
        )).scalar_one()
        result = await self.session.execute(
            apply_filters(select(models.User), conditions)
            .order_by(models.User.full_name, models.User.id)
            .limit(params.limit)
            .offset(params.offset)
        )
        items = [schemas.User.model_validate(db_user) for db_user in result.scalars().all()]
        return PageResult(items=items, page=params.page, limit=params.limit, total=total)
