# src/identity/domain/value_objects/role.py
"""Role value object: a closed set of roles, each owning a fixed capability set."""

from enum import StrEnum
from types import MappingProxyType
from typing import Self

from .capability import Capability


class UnknownRoleError(ValueError):
    """Raised for role strings outside the closed set; never defaulted."""


class Role(StrEnum):
    ADMIN = "admin"
    STANDARD = "standard"

    @property
    def capabilities(self) -> frozenset[Capability]:
        return _ROLE_CAPABILITIES[self]

    def is_admin(self) -> bool:
        return self is Role.ADMIN

    @classmethod
    def from_string(cls, role_str: str) -> Self:
        """
        Resolve a role claim, accepting the historical spellings tokens were issued with.

        `user` was the original name of the standard role.
        """
        key = (role_str or "").strip().lower()
        try:
            return cls(_ALIASES.get(key, key))
        except ValueError:
            raise UnknownRoleError(f"Invalid role: {role_str!r}. Valid roles: {[r.value for r in cls]}")


_ALIASES = {
    "administrator": "admin",
    "user": "standard",
}

_ROLE_CAPABILITIES = MappingProxyType({
    Role.ADMIN: frozenset({
        Capability.READ_OWN,
        Capability.WRITE_OWN,
        Capability.READ_ALL,
        Capability.WRITE_ALL,
    }),
    Role.STANDARD: frozenset({
        Capability.READ_OWN,
        Capability.WRITE_OWN,
    }),
})
