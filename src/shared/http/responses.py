# /src/shared/http/responses.py
"""
Success envelope: {"data": ...}.

Errors never go through here; they are rendered as {code, message,
correlation_id} by src.shared.exceptions.domain_error_response.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel
from starlette.responses import JSONResponse


def ok(data: Any, status: int = 200, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return JSONResponse({"data": data}, status_code=status, headers=headers)
