from functools import lru_cache
from typing import Optional

import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_service.config import get_settings
from access_service.database import transaction
from access_service.errors import InvalidCredentials, NotFound, WrongCurrentPassword
from access_service.logger import logger
from access_service import models


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode('utf-8'), salt).decode('utf-8')


def check_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # Not a bcrypt hash.
        return False


@lru_cache()
def _dummy_hash() -> str:
    # Unknown emails still pay for one bcrypt check.
    return hash_password("not-a-real-password")


class CredentialStore:
    """Owns password hashes; nothing outside this class reads ``User.password``."""

    def __init__(self, session: AsyncSession, rounds: Optional[int] = None):
        self.session = session
        self.rounds = rounds

    async def verify(self, email: str, password: str) -> models.User:
        result = await self.session.execute(
            select(models.User).filter(models.User.email == email)
        )
        db_user = result.scalar_one_or_none()

        if db_user is None:
            check_password(password, _dummy_hash())
            raise InvalidCredentials("unknown_user")
        if not db_user.is_active:
            check_password(password, db_user.password)
            raise InvalidCredentials("inactive")
        if not check_password(password, db_user.password):
            raise InvalidCredentials("bad_password")
        return db_user

    def set_password(self, db_user: models.User, plain: str) -> None:
        db_user.password = hash_password(plain, self.rounds)

    async def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        async with transaction(self.session):
            result = await self.session.execute(
                select(models.User).filter(models.User.id == user_id).with_for_update()
            )
            db_user = result.scalar_one_or_none()
            if db_user is None:
                raise NotFound("User", user_id)
            if not check_password(current_password, db_user.password):
                logger.warning("Password change rejected", extra={"user_id": user_id})
                raise WrongCurrentPassword()
            self.set_password(db_user, new_password)
        logger.info("Password changed", extra={"user_id": user_id})
