from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import schemas
from access_service.auth_services import require_permission
from access_service.database import get_session
from access_service.logger import logger
from access_service.services.catalog import PermissionCatalog
from access_service.services.queries import PageParams
from access_service.services.resolver import Principal

router = APIRouter(prefix="/permissions", tags=["Permissions"])


@router.get("/", response_model=schemas.Page[schemas.PermissionWithCount])
async def get_permissions(
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    resource: Optional[str] = None,
    action: Optional[schemas.PermissionAction] = None,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("permissions.view")),
):
    filters = {"search": search, "resource": resource, "action": action.value if action else None}
    result = await PermissionCatalog(db).list(filters, PageParams(page=page, limit=limit))
    return result.as_dict()


@router.get("/resources", response_model=List[str])
async def get_resources(
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("permissions.view")),
):
    return await PermissionCatalog(db).distinct_resources()


@router.get("/actions", response_model=List[str])
async def get_actions(_: Principal = Depends(require_permission("permissions.view"))):
    return PermissionCatalog.actions()


@router.get("/stats")
async def get_permission_stats(
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("permissions.view")),
):
    return await PermissionCatalog(db).stats()


@router.get("/by-resource/{resource}", response_model=List[schemas.Permission])
async def get_permissions_by_resource(
    resource: str,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("permissions.view")),
):
    return await PermissionCatalog(db).list_by_resource(resource)


@router.get("/{permission_id}", response_model=schemas.PermissionWithCount)
async def get_permission(
    permission_id: int,
    db: AsyncSession = Depends(get_session),
    _: Principal = Depends(require_permission("permissions.view")),
):
    catalog = PermissionCatalog(db)
    db_permission = await catalog.get(permission_id)
    role_count = await catalog.role_count(permission_id)
    return schemas.PermissionWithCount.model_validate(db_permission).model_copy(update={"role_count": role_count})


@router.post("/", response_model=schemas.Permission, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: schemas.PermissionCreate,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("permissions.create")),
):
    try:
        return await PermissionCatalog(db).create(permission, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Permission create failed", extra={"error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to create permission")


@router.put("/{permission_id}", response_model=schemas.Permission)
async def edit_permission(
    permission_id: int,
    permission: schemas.PermissionUpdate,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("permissions.update")),
):
    try:
        return await PermissionCatalog(db).update(permission_id, permission, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Permission update failed", extra={"permission_id": permission_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to update permission")


@router.delete("/{permission_id}", response_model=schemas.Message)
async def delete_permission(
    permission_id: int,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_permission("permissions.delete")),
):
    try:
        await PermissionCatalog(db).delete(permission_id, actor_id=principal.id)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Permission delete failed", extra={"permission_id": permission_id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to delete permission")
    return {"message": "Permission deleted"}
