# src/identity/api/routes/session.py
"""
Session diagnostics.

Shows the caller's resolved identity next to what the database actually sees
on the connection bound to this request. The two must agree; a mismatch
would have failed the request before it got here.
"""
from fastapi import APIRouter, Depends

from src.identity.domain.identity import Identity
from src.shared.database.rls import read_session_identity
from src.shared.database.sessions import current_session
from src.shared.http.dependencies import current_identity
from src.shared.http.models import IdentityOut, SessionContextOut, SessionVariablesOut
from src.shared.http.responses import ok

router = APIRouter(prefix="/api/session", tags=["Identity:Session"])


@router.get("/context")
async def session_context(identity: Identity = Depends(current_identity)):
    ctx = current_session()
    seen = await read_session_identity(ctx.connection)
    body = SessionContextOut(
        request_id=ctx.request_id,
        identity=IdentityOut(
            subject_id=identity.subject_id,
            tenant_id=identity.tenant_id,
            role=identity.role.value,
            capabilities=sorted(c.value for c in identity.capabilities),
        ),
        database=SessionVariablesOut(
            subject_id=seen.subject_id,
            role=seen.role,
            tenant_id=seen.tenant_id,
        ),
    )
    return ok(body)
