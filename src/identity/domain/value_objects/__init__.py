# src/identity/domain/value_objects/__init__.py
"""Value objects for the identity domain."""

from .capability import Capability
from .role import Role, UnknownRoleError

__all__ = [
    'Capability',
    'Role',
    'UnknownRoleError',
]
