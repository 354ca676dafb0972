from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from jose import JWTError, jwt

from access_service.config import get_settings
from access_service.errors import TokenError

RESERVED_CLAIMS = ("sub", "iat", "exp")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenPayload:
    principal_id: int
    claims: Dict[str, Any] = field(default_factory=dict)


class TokenService:
    """Issues and verifies signed, time-bound access tokens.

    Stateless: there is no revocation list, so a token stays valid until its
    ``exp`` claim passes. Logout is a client-side discard.
    """

    def __init__(
        self,
        secret: str,
        ttl: timedelta,
        algorithm: str = "HS256",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not secret:
            raise ValueError("Token signing secret is not configured")
        self.secret = secret
        self.ttl = ttl
        self.algorithm = algorithm
        self.clock = clock or utcnow

    @classmethod
    def from_settings(cls, settings=None) -> "TokenService":
        settings = settings or get_settings()
        return cls(
            secret=settings.jwt_secret_key,
            ttl=timedelta(minutes=settings.access_token_expire_minutes),
            algorithm=settings.jwt_algorithm,
        )

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def issue(self, principal_id: int, claims: Optional[Dict[str, Any]] = None) -> str:
        now = self.clock()
        to_encode = {k: v for k, v in (claims or {}).items() if k not in RESERVED_CLAIMS}
        to_encode.update({
            "sub": str(principal_id),
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
        })
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> TokenPayload:
        try:
            jwt.get_unverified_claims(token)
        except JWTError:
            raise TokenError(TokenError.MALFORMED)

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError:
            raise TokenError(TokenError.BAD_SIGNATURE)

        exp = payload.get("exp")
        if not isinstance(exp, int):
            raise TokenError(TokenError.MALFORMED)
        # Hard deadline, no leeway.
        if int(self.clock().timestamp()) >= exp:
            raise TokenError(TokenError.EXPIRED)

        try:
            principal_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise TokenError(TokenError.MALFORMED)

        claims = {k: v for k, v in payload.items() if k not in RESERVED_CLAIMS}
        return TokenPayload(principal_id=principal_id, claims=claims)
