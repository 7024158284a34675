from __future__ import annotations
from typing import List, Optional
from pydantic import BaseModel


class IdentityOut(BaseModel):
    subject_id: int
    tenant_id: Optional[int] = None
    role: str
    capabilities: List[str] = []


class SessionVariablesOut(BaseModel):
    subject_id: Optional[int] = None
    role: Optional[str] = None
    tenant_id: Optional[int] = None


class SessionContextOut(BaseModel):
    request_id: str
    identity: IdentityOut
    database: SessionVariablesOut
