from .engine import (
    create_database_engine as init_database,
    close_database_engine as close_database,
    get_engine,
    verify_database,
)
from .types import SessionContext
from .policy import RowPolicy, SessionVariables, TENANT_SCOPED_POLICIES, policy_for
from .rls import apply_identity, clear_identity, read_session_identity
from .sessions import RequestSessionBinder, current_session, tenant_db_session

__all__ = [
    "init_database",
    "close_database",
    "get_engine",
    "verify_database",
    "SessionContext",
    "RowPolicy",
    "SessionVariables",
    "TENANT_SCOPED_POLICIES",
    "policy_for",
    "apply_identity",
    "clear_identity",
    "read_session_identity",
    "RequestSessionBinder",
    "current_session",
    "tenant_db_session",
]
