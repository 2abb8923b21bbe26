"""
api/routes/v1/admin.py -- User management endpoints (admin only).

Routes:
  GET    /api/v1/admin/users        -- paginated list; ?page&limit&query searches email and names
  GET    /api/v1/admin/users/{id}   -- one user
  PATCH  /api/v1/admin/users/{id}   -- update role, verification flag or names
  DELETE /api/v1/admin/users/{id}   -- delete the account and its sessions

Security:
  [M4] The service blocks self-demotion, self-deletion and removing the
       last admin, so there is always a recovery path without DB access.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from api.models import AdminUserOut, AdminUserUpdate, Pagination, UserListData
from api.responses import success_response
from auth.dependencies import get_auth_service, require_admin
from auth.models import User
from auth.service import AuthService

router = APIRouter()


@router.get("/admin/users")
def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    query: Optional[str] = Query(default=None, min_length=1, max_length=100),
    current_user: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    users, total = service.list_users(page=page, limit=limit, query=query)
    data = UserListData(
        users=[AdminUserOut.from_user(u) for u in users],
        pagination=Pagination.build(page, limit, total),
    )
    return success_response("Users retrieved successfully", data)


@router.get("/admin/users/{user_id}")
def get_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    user = service.get_user(user_id)
    return success_response(
        "User retrieved successfully", {"user": AdminUserOut.from_user(user).model_dump(by_alias=True)}
    )


@router.patch("/admin/users/{user_id}")
def update_user(
    user_id: int,
    body: AdminUserUpdate,
    current_user: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    user = service.admin_update_user(
        current_user,
        user_id,
        role=body.role.value if body.role is not None else None,
        is_email_verified=body.is_email_verified,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return success_response(
        "User updated successfully", {"user": AdminUserOut.from_user(user).model_dump(by_alias=True)}
    )


@router.delete("/admin/users/{user_id}")
def delete_user(
    user_id: int,
    current_user: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    service.admin_delete_user(current_user, user_id)
    return success_response("User deleted successfully")
