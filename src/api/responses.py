"""
Response envelope shared by every endpoint.

Success: {"success": true, "message": ..., "data": ..., "meta": ...}
Error:   {"success": false, "message": ..., "errors": [...]}
"""
from typing import Any, Optional, List

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success(data: Any = None, message: str = None, meta: Optional[dict] = None,
            status_code: int = 200) -> JSONResponse:
    content = {
        "success": True,
        "message": message,
        "data": jsonable_encoder(data),
    }
    if meta is not None:
        content["meta"] = jsonable_encoder(meta)
    return JSONResponse(content=content, status_code=status_code)


def created(data: Any = None, message: str = None) -> JSONResponse:
    return success(data, message, status_code=201)


def error(message: str, errors: List[str] = None, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        content={
            "success": False,
            "message": message,
            "errors": jsonable_encoder(errors or [])
        },
        status_code=status_code
    )
