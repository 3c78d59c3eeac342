from __future__ import annotations

from enum import IntEnum
from typing import Any, Mapping


PRIVILEGE_KEY = "privilege"


class PrivilegeLevel(IntEnum):
    NONE = 0
    GUEST = 1
    ADMIN = 2

    @classmethod
    def parse(cls, value: Any) -> "PrivilegeLevel":
        """Map a stored or configured value onto a level, falling back to ``NONE``."""
        if isinstance(value, PrivilegeLevel):
            return value
        if isinstance(value, str):
            name = value.strip().upper()
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                value = int(name)
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                return cls.NONE
        return cls.NONE

    @property
    def label(self) -> str:
        return self.name.lower()


def resolve_privilege(session: Mapping[str, Any] | None) -> PrivilegeLevel:
    if not session or not session.get("user"):
        return PrivilegeLevel.NONE
    return PrivilegeLevel.parse(session.get(PRIVILEGE_KEY))


def has_privilege(session: Mapping[str, Any] | None, minimum: PrivilegeLevel) -> bool:
    return resolve_privilege(session) >= minimum


def privilege_for_user(username: str, admins: list[str]) -> PrivilegeLevel:
    if username in admins:
        return PrivilegeLevel.ADMIN
    return PrivilegeLevel.GUEST
