from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import schemas
from access_service.auth_services import require_permission
from access_service.database import get_session
from access_service.logger import logger
from access_service.services.queries import PageParams
from access_service.services.resolver import Principal, PrincipalResolver
from access_service.services.users import UserService

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/", response_model=schemas.Page[schemas.User])
async def get_users(
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("users.view")),
):
    filters = {"search": search, "is_active": is_active}
    result = await UserService(db).list(filters, PageParams(page=page, limit=limit))
    return result.as_dict()


@router.get("/{user_id}", response_model=schemas.User)
async def get_user(
    user_id: int,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("users.view")),
):
    return await UserService(db).get(user_id)


@router.get("/{user_id}/roles", response_model=List[schemas.Role])
async def get_user_roles(
    user_id: int,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("users.view")),
):
    return await PrincipalResolver(db).roles_of(user_id)


@router.get("/{user_id}/permissions", response_model=List[schemas.Permission])
async def get_user_permissions(
    user_id: int,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("users.view")),
):
    return await PrincipalResolver(db).permissions_of(user_id)


@router.post("/", response_model=schemas.User, status_code=status.HTTP_201_CREATED)
async def create_user(
    user: schemas.UserCreate,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("users.create")),
):
    try:
        return await UserService(db).create(user, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("User create failed", extra={"error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to create user")


@router.put("/{user_id}", response_model=schemas.User)
async def edit_user(
    user_id: int,
    user: schemas.UserUpdate,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("users.update")),
):
    try:
        return await UserService(db).update(user_id, user, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("User update failed", extra={"user_id": user_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to update user")


@router.delete("/{user_id}", response_model=schemas.User)
async def deactivate_user(
    user_id: int,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("users.delete")),
):
    try:
        return await UserService(db).deactivate(user_id, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("User deactivation failed", extra={"user_id": user_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to deactivate user")


@router.post("/{user_id}/roles", response_model=schemas.Message)
async def assign_role(
    user_id: int,
    assignment: schemas.RoleAssignment,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("users.update")),
):
    try:
        await UserService(db).assign_role(user_id, assignment.role_id, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Role assignment failed", extra={"user_id": user_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to assign role")
    return {"message": "Role assigned"}


@router.delete("/{user_id}/roles/{role_id}", response_model=schemas.Message)
async def remove_role(
    user_id: int,
    role_id: int,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("users.update")),
):
    try:
        await UserService(db).remove_role(user_id, role_id, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Role removal failed", extra={"user_id": user_id, "role_id": role_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to remove role")
    return {"message": "Role removed"}
