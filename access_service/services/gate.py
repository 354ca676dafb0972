"""Authorization decisions over an already-resolved principal.

Pure functions: no I/O and no exceptions for a deny. A requirement list is an
OR: holding any one entry is enough. Names are matched exactly, so
``tickets.manage`` does not satisfy ``tickets.view``.
"""

from dataclasses import dataclass
from typing import AbstractSet, Iterable, Optional, Tuple, Union

from access_service.services.resolver import Principal

UNAUTHENTICATED = "unauthenticated"
INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
INSUFFICIENT_ROLE = "insufficient_role"

Requirement = Union[str, Iterable[str]]


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    required: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, required: Tuple[str, ...] = ()) -> "Decision":
        return cls(True, None, required)

    @classmethod
    def deny(cls, reason: str, required: Tuple[str, ...]) -> "Decision":
        return cls(False, reason, required)


def _normalize(required: Requirement) -> Tuple[str, ...]:
    if isinstance(required, str):
        return (required,)
    return tuple(required)


def _any_held(held: AbstractSet[str], required: Tuple[str, ...]) -> bool:
    return any(name in held for name in required)


def require_permission(principal: Optional[Principal], required: Requirement) -> Decision:
    names = _normalize(required)
    if principal is None:
        return Decision.deny(UNAUTHENTICATED, names)
    if _any_held(principal.permissions, names):
        return Decision.allow(names)
    return Decision.deny(INSUFFICIENT_PERMISSIONS, names)


def require_role(principal: Optional[Principal], required: Requirement) -> Decision:
    names = _normalize(required)
    if principal is None:
        return Decision.deny(UNAUTHENTICATED, names)
    if _any_held(principal.roles, names):
        return Decision.allow(names)
    return Decision.deny(INSUFFICIENT_ROLE, names)
