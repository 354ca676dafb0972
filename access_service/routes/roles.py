from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import schemas
from access_service.auth_services import require_permission
from access_service.database import get_session
from access_service.logger import logger
from access_service.services.queries import PageParams
from access_service.services.registry import RoleRegistry
from access_service.services.resolver import Principal

router = APIRouter(prefix="/roles", tags=["Roles"])


@router.get("/", response_model=schemas.Page[schemas.RoleWithCounts])
async def get_roles(
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("roles.view")),
):
    result = await RoleRegistry(db).list({"search": search}, PageParams(page=page, limit=limit))
    return result.as_dict()


@router.get("/stats")
async def get_role_stats(
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("roles.view")),
):
    return await RoleRegistry(db).stats()


@router.get("/{role_id}", response_model=schemas.RoleDetail)
async def get_role(
    role_id: int,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("roles.view")),
):
    return await RoleRegistry(db).get_with_permissions(role_id)


@router.post("/", response_model=schemas.RoleDetail, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: schemas.RoleCreate,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("roles.create")),
):
    try:
        return await RoleRegistry(db).create(role, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Role create failed", extra={"error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to create role")


@router.put("/{role_id}", response_model=schemas.RoleDetail)
async def edit_role(
    role_id: int,
    role: schemas.RoleUpdate,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("roles.update")),
):
    try:
        return await RoleRegistry(db).update(role_id, role, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Role update failed", extra={"role_id": role_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to update role")


@router.delete("/{role_id}", response_model=schemas.Message)
async def delete_role(
    role_id: int,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("roles.delete")),
):
    try:
        await RoleRegistry(db).delete(role_id, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Role delete failed", extra={"role_id": role_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to delete role")
    return {"message": "Role deleted"}


@router.get("/{role_id}/permissions", response_model=schemas.RolePermissions)
async def get_role_permissions(
    role_id: int,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("roles.view")),
):
    db_role = await RoleRegistry(db).get_with_permissions(role_id)
    return {"role_id": db_role.id, "role_name": db_role.name, "permissions": db_role.permissions}


@router.post("/{role_id}/permissions", response_model=schemas.RoleDetail)
async def assign_permissions(
    role_id: int,
    change: schemas.RolePermissionsChange,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("roles.update")),
):
    try:
        return await RoleRegistry(db).assign_permissions(role_id, change.permission_ids, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Permission assignment failed", extra={"role_id": role_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to assign permissions")


@router.delete("/{role_id}/permissions", response_model=schemas.RoleDetail)
async def remove_permissions(
    role_id: int,
    change: schemas.RolePermissionsChange,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("roles.update")),
):
    try:
        return await RoleRegistry(db).remove_permissions(role_id, change.permission_ids, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Permission removal failed", extra={"role_id": role_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to remove permissions")
