"""
api/responses.py -- Envelope and refresh-cookie helpers shared by the routers.

Every JSON response body is {success, message, data?, error?}. Route handlers
call success_response(); the exception handlers in api/main.py call
error_response(). Keys that are None are omitted from the body.

The refresh token travels in an httpOnly cookie so page scripts cannot read it.
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.models import ApiResponse
from core.config import get_settings

REFRESH_COOKIE = "refreshToken"
REFRESH_HEADER = "X-Refresh-Token"


def _dump(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(by_alias=True)
    if isinstance(data, list):
        return [_dump(item) for item in data]
    return data


def success_response(message: str, data: Any = None, status_code: int = 200, no_store: bool = False) -> JSONResponse:
    body = ApiResponse(success=True, message=message, data=_dump(data))
    resp = JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))
    if no_store:
        resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def error_response(status_code: int, message: str, error: Any = None) -> JSONResponse:
    body = ApiResponse(success=False, message=message, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def set_refresh_cookie(resp: JSONResponse, token: str) -> None:
    settings = get_settings()
    resp.set_cookie(
        key=REFRESH_COOKIE,
        value=token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite.lower(),
        max_age=settings.refresh_cookie_max_age,
        path="/",
    )


def clear_refresh_cookie(resp: JSONResponse) -> None:
    settings = get_settings()
    resp.delete_cookie(
        key=REFRESH_COOKIE,
        httponly=True,
        secure=settings.secure_cookies,
        samesite=settings.cookie_samesite.lower(),
        path="/",
    )
