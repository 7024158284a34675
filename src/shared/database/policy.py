"""
policy.py: Row policy model for tenant-scoped tables.

The database enforces visibility with native row-level security; this module
is the single definition of that rule. `RowPolicy.visible` is the rule as a
plain function of (session variables, row), and `RowPolicy.ddl` renders the
same rule as the Postgres policy the migrations install. Keeping both in one
place lets the fail-secure property be tested without a live database.

Rule:
    visible(row) := present AND (row.owner == subject OR role == 'admin')

`present` means `app.current_user_id` is set to a non-empty value on the
connection. When it is not, every row is invisible. NULLIF(..., '') turns an
unset or cleared variable into NULL, and any comparison with NULL is not
true, so the SQL form denies by construction rather than by convention.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from src.identity.domain.identity import Identity

CURRENT_USER_VAR = "app.current_user_id"
CURRENT_ROLE_VAR = "app.current_role"
CURRENT_TENANT_VAR = "app.current_tenant_id"
SESSION_VARIABLES = (CURRENT_USER_VAR, CURRENT_ROLE_VAR, CURRENT_TENANT_VAR)

ADMIN_ROLE = "admin"

_IDENT = re.compile(r"^[a-z_][a-z0-9_]*$")


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        # Postgres would raise on the cast; either way no row becomes visible.
        return None


@dataclass(frozen=True)
class SessionVariables:
    """The identity values a connection exposes to row policies."""

    subject_id: Optional[int] = None
    role: Optional[str] = None
    tenant_id: Optional[int] = None

    @classmethod
    def from_identity(cls, identity: "Identity") -> "SessionVariables":
        return cls(subject_id=identity.subject_id, role=identity.role.value, tenant_id=identity.tenant_id)

    @classmethod
    def cleared(cls) -> "SessionVariables":
        return cls()

    @classmethod
    def from_settings(cls, settings: Mapping[str, Optional[str]]) -> "SessionVariables":
        """Interpret raw `current_setting(name, true)` values the way the policy SQL does."""
        role = (settings.get(CURRENT_ROLE_VAR) or "").strip() or None
        return cls(
            subject_id=_parse_int(settings.get(CURRENT_USER_VAR)),
            role=role,
            tenant_id=_parse_int(settings.get(CURRENT_TENANT_VAR)),
        )

    def as_settings(self) -> Dict[str, str]:
        """Values for set_config(); absent values become '' so every variable is overwritten."""
        return {
            CURRENT_USER_VAR: "" if self.subject_id is None else str(self.subject_id),
            CURRENT_ROLE_VAR: self.role or "",
            CURRENT_TENANT_VAR: "" if self.tenant_id is None else str(self.tenant_id),
        }

    @property
    def present(self) -> bool:
        return self.subject_id is not None

    @property
    def is_admin(self) -> bool:
        return self.present and self.role == ADMIN_ROLE


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class RowPolicy:
    table: str
    owner_column: str = "user_id"
    name: str = "tenant_isolation"

    def __post_init__(self) -> None:
        for ident in (self.table, self.owner_column, self.name):
            if not _IDENT.match(ident):
                raise ValueError(f"Invalid SQL identifier: {ident!r}")

    def visible(self, session: SessionVariables, row: Mapping[str, Any]) -> bool:
        if not session.present:
            return False
        if session.is_admin:
            return True
        owner = row.get(self.owner_column)
        if isinstance(owner, bool) or not isinstance(owner, int):
            return False
        return owner == session.subject_id

    def filter_rows(self, session: SessionVariables, rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        return [row for row in rows if self.visible(session, row)]

    def predicate_sql(self) -> str:
        subject = f"NULLIF(current_setting('{CURRENT_USER_VAR}', true), '')"
        role = f"NULLIF(current_setting('{CURRENT_ROLE_VAR}', true), '')"
        return (
            f"({subject} IS NOT NULL AND ("
            f"{self.owner_column} = {subject}::integer"
            f" OR {role} = '{ADMIN_ROLE}'"
            f"))"
        )

    def ddl(self, existing_policies: Iterable[str] = ()) -> List[str]:
        """
        Statements that install the policy.

        FORCE makes the policy apply to the table owner too; without it the
        role that owns the table silently sees every row.

        `existing_policies` are the names already on the table (pg_policies).
        Every one of them is dropped: permissive policies are OR-ed together,
        so any leftover would widen what this one allows.
        """
        predicate = self.predicate_sql()
        drops = [
            f"DROP POLICY IF EXISTS {_quote_ident(name)} ON {self.table}"
            for name in dict.fromkeys(existing_policies)
            if name != self.name
        ]
        return [
            f"ALTER TABLE {self.table} ENABLE ROW LEVEL SECURITY",
            f"ALTER TABLE {self.table} FORCE ROW LEVEL SECURITY",
            *drops,
            f"DROP POLICY IF EXISTS {self.name} ON {self.table}",
            (
                f"CREATE POLICY {self.name} ON {self.table} AS PERMISSIVE FOR ALL "
                f"USING {predicate} WITH CHECK {predicate}"
            ),
        ]

    def drop_ddl(self) -> List[str]:
        return [
            f"DROP POLICY IF EXISTS {self.name} ON {self.table}",
            f"ALTER TABLE {self.table} NO FORCE ROW LEVEL SECURITY",
        ]


TENANT_SCOPED_POLICIES: tuple[RowPolicy, ...] = (
    RowPolicy("assets"),
    RowPolicy("licenses"),
    RowPolicy("consumables"),
    RowPolicy("devices"),
    RowPolicy("device_usage"),
    RowPolicy("installed_apps"),
    RowPolicy("security_alerts"),
    RowPolicy("receipts"),
)


def policy_for(table: str) -> RowPolicy:
    for policy in TENANT_SCOPED_POLICIES:
        if policy.table == table:
            return policy
    raise KeyError(f"{table} is not a tenant-scoped table")
