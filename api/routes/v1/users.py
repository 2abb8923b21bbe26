"""
api/routes/v1/users.py -- Self-service profile endpoints.

Routes:
  PATCH /api/v1/users/me                  -- update names and avatar (verified email required)
  POST  /api/v1/users/me/change-password  -- change password; revokes every session
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.models import ChangePasswordRequest, ProfileUpdate, UserOut
from api.responses import clear_refresh_cookie, success_response
from auth.dependencies import get_auth_service, get_current_user, require_verified_email
from auth.models import User
from auth.service import AuthService

router = APIRouter()


@router.patch("/users/me")
def update_profile(
    body: ProfileUpdate,
    current_user: User = Depends(require_verified_email),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    user = service.update_profile(
        current_user,
        first_name=body.first_name,
        last_name=body.last_name,
        avatar=body.avatar,
    )
    return success_response("Profile updated successfully", {"user": UserOut.from_user(user).model_dump(by_alias=True)})


@router.post("/users/me/change-password")
def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Change the caller's password.

    Every refresh token is revoked, so other devices must sign in again.
    """
    service.change_password(current_user, body.current_password, body.new_password)
    resp = success_response("Password changed successfully. Please log in again.")
    clear_refresh_cookie(resp)
    return resp
