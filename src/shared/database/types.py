from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from src.shared.exceptions import PolicyViolationError

if TYPE_CHECKING:
    from src.identity.domain.identity import Identity


@dataclass(slots=True, eq=False)
class SessionContext:
    """
    One request's claim on one pooled connection.

    Owned by the request's task for its whole lifetime. The connection is
    only reachable through `connection`, which refuses to hand it out before
    the identity has been written to it or after it has been released.
    """

    handle: Any
    identity: "Identity"
    request_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    identity_applied: bool = False
    released: bool = False

    @property
    def connection(self) -> Any:
        if self.released:
            raise PolicyViolationError(
                "session context already released",
                details={"request_id": self.request_id},
            )
        if not self.identity_applied:
            raise PolicyViolationError(
                "query attempted before identity was applied",
                details={"request_id": self.request_id},
            )
        return self.handle

    @property
    def elapsed_ms(self) -> int:
        return int((datetime.now(timezone.utc) - self.started_at).total_seconds() * 1000)
