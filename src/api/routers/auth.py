from fastapi import APIRouter, Depends, Query
from typing import Optional

from api import responses
from api.auth import get_current_user, require_admin
from api.schemas import CreateUserRequest, UpdateProfileRequest, UpdateRoleRequest
from core.dependencies import get_user_service
from models.user import AuthenticatedUser
from services.user_service import UserService, present_user

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/create-user")
def create_user(body: CreateUserRequest, user_service: UserService = Depends(get_user_service)):
    user = user_service.create_user(body.model_dump())
    return responses.created(present_user(user), "User created successfully")


@router.get("/verify-token")
def verify_token(
    user: AuthenticatedUser = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service)
):
    return responses.success(user_service.verify(user), "Token is valid")


@router.get("/profile/{user_id}")
def get_profile(
    user_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service)
):
    return responses.success(user_service.get_profile(user, user_id))


@router.put("/profile/{user_id}")
def update_profile(
    user_id: str,
    body: UpdateProfileRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service)
):
    profile = user_service.update_profile(user, user_id, body.model_dump(exclude_unset=True))
    return responses.success(profile, "Profile updated successfully")


@router.delete("/profile/{user_id}")
def delete_profile(
    user_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service)
):
    user_service.delete_self(user, user_id)
    return responses.success(message="Profile deleted successfully")


@router.get("/users")
def list_users(
    role: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_admin),
    user_service: UserService = Depends(get_user_service)
):
    users, meta = user_service.list_users(admin, role=role, search=search, page=page, limit=limit)
    return responses.success(users, meta=meta)


@router.put("/users/{user_id}/role")
def update_role(
    user_id: str,
    body: UpdateRoleRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    user_service: UserService = Depends(get_user_service)
):
    return responses.success(user_service.update_role(admin, user_id, body.role), "User role updated successfully")
