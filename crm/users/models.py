from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of actor roles."""

    CLIENT = "CLIENT"
    EMPLOYEE = "EMPLOYEE"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).upper())
        except ValueError as exc:
            raise ValueError(f"Unknown role: {value!r}") from exc

    @property
    def is_staff(self) -> bool:
        return self is not Role.CLIENT


STAFF_ROLES: frozenset[Role] = frozenset({Role.EMPLOYEE, Role.MANAGER, Role.ADMIN})
ELEVATED_ROLES: frozenset[Role] = frozenset({Role.MANAGER, Role.ADMIN})


@dataclass(slots=True)
class User:
    """Authenticated actor, passed explicitly into every service call."""

    id: int
    phone: str
    role: Role
    created_at: datetime
    updated_at: datetime
    name: str | None = None
    is_active: bool = True
    last_login_at: datetime | None = None

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles
