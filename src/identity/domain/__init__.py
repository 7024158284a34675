"""
Identity Domain Layer
Pure domain logic with no framework dependencies
"""
from src.identity.domain.identity import Identity
from src.identity.domain.value_objects.capability import Capability
from src.identity.domain.value_objects.role import Role, UnknownRoleError

__all__ = [
    "Identity",
    "Capability",
    "Role",
    "UnknownRoleError",
]
