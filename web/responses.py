"""
JSON response envelope shared by every API route.

Success: {"success": true, "message": ..., "data": ...}
Error:   {"success": false, "message": ..., "details": ...}
"""

from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def ok(data: Any = None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


def error_response(status_code: int, message: str, details: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "message": message, "details": details or {}}),
    )
