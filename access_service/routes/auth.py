from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from access_service import schemas
from access_service.auth_services import ACCESS_COOKIE, get_token_service, require_user
from access_service.database import get_session
from access_service.errors import InvalidCredentials
from access_service.events import send_event
from access_service.logger import logger
from access_service.services.credentials import CredentialStore
from access_service.services.resolver import Principal, PrincipalResolver
from access_service.services.tokens import TokenService
from access_service.services.users import UserService

router = APIRouter(prefix="/auth", tags=["Auth"])


def clear_access_token(response: Response) -> Response:
    response.delete_cookie(
        key=ACCESS_COOKIE,
        path="/",
        secure=True,
        httponly=True,
        samesite="lax"
    )
    return response


@router.post("/login", response_model=schemas.LoginResponse)
async def login(
    creds: schemas.UserLogin,
    response: Response,
    db: AsyncSession = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
):
    try:
        db_user = await CredentialStore(db).verify(creds.email, creds.password)
    except InvalidCredentials as e:
        logger.warning("Failed authorization attempt", extra={"email": creds.email, "reason": e.reason})
        raise

    principal = await PrincipalResolver(db).resolve(db_user.id)
    access_token = tokens.issue(principal.id, {"email": principal.email})

    response.set_cookie(
        key=ACCESS_COOKIE,
        value=f"Bearer {access_token}",
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=tokens.ttl_seconds
    )

    logger.info("User logged in", extra={"user_id": principal.id, "email": principal.email})
    await send_event("USER_LOGGED_IN", user_id=principal.id, email=principal.email)

    return {
        "user": principal.as_dict(),
        "token": access_token,
        "token_type": "bearer",
        "expires_in": tokens.ttl_seconds,
    }


@router.post("/register", response_model=schemas.User, status_code=status.HTTP_201_CREATED)
async def register(user: schemas.UserRegister, db: AsyncSession = Depends(get_session)):
    try:
        return await UserService(db).register(user)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Registration failed", extra={"email": user.email, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to register user")


@router.get("/me", response_model=schemas.Principal)
async def me(principal: Principal = Depends(require_user)):
    return principal.as_dict()


@router.post("/change-password", response_model=schemas.Message)
async def change_password(
    payload: schemas.ChangePassword,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_user),
):
    try:
        await CredentialStore(db).change_password(principal.id, payload.current_password, payload.new_password)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Password change failed", extra={"user_id": principal.id, "error": str(e)})
        raise HTTPException(status_code=500, detail="Failed to change password")
    await send_event("USER_PASSWORD_CHANGED", user_id=principal.id)
    return {"message": "Password changed"}


@router.post("/logout", response_model=schemas.Message)
async def logout(response: Response):
    # Tokens are stateless: logging out only drops the client's cookie.
    clear_access_token(response)
    return {"message": "Logged out"}
