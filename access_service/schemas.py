from datetime import datetime
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, EmailStr, Field, computed_field, field_validator

from access_service.config import SYSTEM_ROLES

ROLE_NAME_PATTERN = r"^[a-zA-Z_]+$"
PERMISSION_NAME_PATTERN = r"^[a-zA-Z_.:]+$"
USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"
PHONE_PATTERN = r"^\+?[0-9]{6,20}$"

T = TypeVar("T")


class PermissionAction(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    manage = "manage"
    view = "view"


def _reject_null(value, info):
    if value is None:
        raise ValueError(f"{info.field_name} cannot be null")
    return value


class PermissionBase(BaseModel):
    name: str = Field(..., min_length=2, max_length=100, pattern=PERMISSION_NAME_PATTERN,
                      examples=["tickets.view"])
    description: Optional[str] = Field(None, max_length=255)
    resource: str = Field(..., min_length=2, max_length=50, examples=["tickets"])
    action: PermissionAction


class PermissionCreate(PermissionBase):
    pass


class PermissionUpdate(BaseModel):
    """Partial update: only fields present in the payload are applied.

    ``description: null`` clears the description; ``name``, ``resource`` and
    ``action`` cannot be cleared.
    """

    name: Optional[str] = Field(None, min_length=2, max_length=100, pattern=PERMISSION_NAME_PATTERN)
    description: Optional[str] = Field(None, max_length=255)
    resource: Optional[str] = Field(None, min_length=2, max_length=50)
    action: Optional[PermissionAction] = None

    @field_validator("name", "resource", "action", mode="before")
    @classmethod
    def not_null(cls, value, info):
        return _reject_null(value, info)


class Permission(PermissionBase):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PermissionWithCount(Permission):
    role_count: int = 0


class RoleBase(BaseModel):
    name: str = Field(..., min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN,
                      description="Letters and underscores only")
    description: Optional[str] = Field(None, max_length=255)


class RoleCreate(RoleBase):
    permission_ids: List[int] = Field(default_factory=list)

    @field_validator("permission_ids")
    @classmethod
    def positive_ids(cls, value):
        return _check_ids(value)


class RoleUpdate(BaseModel):
    """Partial update. Presence of ``permission_ids`` (even ``[]``) replaces
    the role's whole permission set."""

    name: Optional[str] = Field(None, min_length=2, max_length=50, pattern=ROLE_NAME_PATTERN)
    description: Optional[str] = Field(None, max_length=255)
    permission_ids: Optional[List[int]] = None

    @field_validator("name", "permission_ids", mode="before")
    @classmethod
    def not_null(cls, value, info):
        return _reject_null(value, info)

    @field_validator("permission_ids")
    @classmethod
    def positive_ids(cls, value):
        return _check_ids(value)


class RolePermissionsChange(BaseModel):
    permission_ids: List[int] = Field(..., min_length=1)

    @field_validator("permission_ids")
    @classmethod
    def positive_ids(cls, value):
        return _check_ids(value)


def _check_ids(value):
    if any(item < 1 for item in value):
        raise ValueError("Permission IDs must be positive integers")
    return value


class Role(RoleBase):
    id: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @computed_field
    @property
    def is_system(self) -> bool:
        return self.name in SYSTEM_ROLES


class RoleDetail(Role):
    permissions: List[Permission] = Field(default_factory=list)


class RoleWithCounts(Role):
    user_count: int = 0
    permission_count: int = 0


class RolePermissions(BaseModel):
    role_id: int
    role_name: str
    permissions: List[Permission]


class Page(BaseModel, Generic[T]):
    items: List[T]
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class UserBase(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: EmailStr = Field(..., examples=["user@example.com"])
    full_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class UserCreate(UserBase):
    password: str = Field(..., min_length=6)
    role_ids: List[int] = Field(default_factory=list)


class UserRegister(UserBase):
    password: str = Field(..., min_length=6)


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    is_active: Optional[bool] = None

    @field_validator("username", "email", "full_name", "is_active", mode="before")
    @classmethod
    def not_null(cls, value, info):
        return _reject_null(value, info)


class UserLogin(BaseModel):
    email: EmailStr = Field(..., examples=["user@example.com"])
    password: str = Field(..., min_length=1)


class ChangePassword(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class RoleAssignment(BaseModel):
    role_id: int = Field(..., ge=1)


class User(BaseModel):
    id: int
    username: str
    email: EmailStr
    full_name: str
    phone: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Principal(User):
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)


class LoginResponse(BaseModel):
    user: Principal
    token: str
    token_type: str = "bearer"
    expires_in: int


class Message(BaseModel):
    message: str
