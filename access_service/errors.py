"""Domain errors raised by the access-control services.

The HTTP layer maps each class to a status code in one place
(``main.register_error_handlers``). Authorization decisions are not
represented here: the gate returns them as values.
"""

from typing import Any, Dict, Optional


class AccessError(Exception):
    status_code = 400
    code = "access_error"

    def __init__(self, message: str, **payload: Any):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "code": self.code, "message": self.message}
        body.update({key: value for key, value in self.payload.items() if value is not None})
        return body


class InvalidCredentials(AccessError):
    """Unknown email, inactive account or wrong password.

    ``reason`` is kept off the response body and only used for logging.
    """

    status_code = 401
    code = "invalid_credentials"

    def __init__(self, reason: str):
        super().__init__("Invalid credentials")
        self.reason = reason


class WrongCurrentPassword(AccessError):
    status_code = 400
    code = "wrong_current_password"

    def __init__(self):
        super().__init__("Current password is incorrect")


class Unauthenticated(AccessError):
    status_code = 401
    code = "unauthenticated"

    def __init__(self):
        super().__init__("Authentication required")


class TokenError(Unauthenticated):
    EXPIRED = "expired"
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"

    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind


class NotFound(AccessError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.identifier = identifier


class Conflict(AccessError):
    DUPLICATE_NAME = "duplicate_name"
    IN_USE = "in_use"

    status_code = 409

    def __init__(self, code: str, message: str, count: Optional[int] = None):
        super().__init__(message, count=count)
        self.code = code
        self.count = count

    @classmethod
    def duplicate_name(cls, entity: str) -> "Conflict":
        return cls(cls.DUPLICATE_NAME, f"{entity} name already exists")

    @classmethod
    def in_use(cls, entity: str, count: int, holder: str) -> "Conflict":
        return cls(
            cls.IN_USE,
            f"Cannot delete {entity.lower()}. It is assigned to {count} {holder}(s)",
            count=count,
        )


class Forbidden(AccessError):
    SYSTEM_ROLE = "system_role"

    status_code = 403

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code

    @classmethod
    def system_role(cls, name: str, verb: str = "deleted") -> "Forbidden":
        return cls(cls.SYSTEM_ROLE, f"System role '{name}' cannot be {verb}")


class PermissionDenied(AccessError):
    """A gate denial; the body lists what would have been accepted."""

    status_code = 403
    code = "insufficient_permissions"


class ValidationFailed(AccessError):
    status_code = 422
    code = "validation_failed"
