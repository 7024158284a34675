from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from src.identity.domain.value_objects.capability import Capability
from src.identity.domain.value_objects.role import Role


@dataclass(frozen=True, slots=True)
class Identity:
    """
    Who is making the request.

    Produced once per request by the token resolver and never persisted.
    `capabilities` is always a subset of the role's capability set; when left
    unset it is the role's full set.
    """

    subject_id: int
    role: Role
    tenant_id: Optional[int] = None
    capabilities: Optional[frozenset[Capability]] = None

    def __post_init__(self) -> None:
        if isinstance(self.subject_id, bool) or not isinstance(self.subject_id, int) or self.subject_id <= 0:
            raise ValueError(f"subject_id must be a positive integer, got {self.subject_id!r}")
        if self.tenant_id is not None and (isinstance(self.tenant_id, bool) or not isinstance(self.tenant_id, int)):
            raise ValueError(f"tenant_id must be an integer or None, got {self.tenant_id!r}")
        if not isinstance(self.role, Role):
            raise ValueError(f"role must be a Role, got {self.role!r}")
        if self.capabilities is None:
            object.__setattr__(self, "capabilities", self.role.capabilities)
        elif not frozenset(self.capabilities) <= self.role.capabilities:
            raise ValueError("capabilities exceed the role's capability set")
        else:
            object.__setattr__(self, "capabilities", frozenset(self.capabilities))

    @classmethod
    def for_role(
        cls,
        subject_id: int,
        role: Role,
        *,
        tenant_id: Optional[int] = None,
        granted: Optional[Iterable[Capability]] = None,
    ) -> "Identity":
        """Build an identity whose capabilities are the role's set, narrowed by `granted` if given."""
        caps = role.capabilities
        if granted is not None:
            caps = caps & frozenset(granted)
        return cls(subject_id=subject_id, role=role, tenant_id=tenant_id, capabilities=caps)

    @property
    def is_admin(self) -> bool:
        return self.role.is_admin()

    def has_capability(self, capability: Capability | str) -> bool:
        try:
            return Capability(capability) in self.capabilities
        except ValueError:
            return False
