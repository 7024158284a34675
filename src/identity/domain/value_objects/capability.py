# src/identity/domain/value_objects/capability.py
from enum import StrEnum


class Capability(StrEnum):
    """Named permission carried in the signed token. Advisory; row policies are authoritative."""

    READ_OWN = "read-own"
    WRITE_OWN = "write-own"
    READ_ALL = "read-all"
    WRITE_ALL = "write-all"

    @classmethod
    def parse_many(cls, values) -> frozenset["Capability"]:
        """Parse a claim list, silently ignoring names this service does not know."""
        known = {c.value: c for c in cls}
        return frozenset(known[v] for v in values if isinstance(v, str) and v in known)
