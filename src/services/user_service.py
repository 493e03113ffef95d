import logging
from typing import Any

from pydantic import ValidationError

from core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationFailedError
from data_access.dynamodb import DynamoDataAccess
from models.user import USER_ROLES, AuthenticatedUser, User
from services.common import ensure_owner_or_admin, paginate

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "phone_number", "avatar")


def present_user(user: User) -> dict:
    data = user.model_dump(mode="json")
    data["avatar_url"] = user.avatar_url
    return data


class UserService:
    def __init__(self, data_access: DynamoDataAccess):
        self.data_access = data_access

    def _get_or_404(self, user_id: str) -> User:
        user = self.data_access.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def create_user(self, data: dict[str, Any]) -> User:
        """Store the profile for a freshly signed-up Cognito user. New users always start with the user role."""
        try:
            user = User(
                user_id=data.get("user_id"),
                name=data.get("name"),
                email=data.get("email"),
                phone_number=data.get("phone_number"),
                avatar=data.get("avatar"),
                is_verified=data.get("is_verified", True),
            )
        except ValidationError as e:
            raise ValidationFailedError("Invalid user data", [err["msg"] for err in e.errors()])

        if not self.data_access.create_user(user):
            raise ConflictError("User already exists")
        logger.info(f"Created profile for user {user.user_id}")
        return user

    def verify(self, actor: AuthenticatedUser) -> dict:
        user = self.data_access.get_user(actor.user_id)
        return {
            "valid": True,
            "user_id": actor.user_id,
            "email": actor.email,
            "role": user.role if user else actor.role,
            "profile": present_user(user) if user else None,
        }

    def get_profile(self, actor: AuthenticatedUser, user_id: str) -> dict:
        ensure_owner_or_admin(actor, user_id)
        return present_user(self._get_or_404(user_id))

    def update_profile(self, actor: AuthenticatedUser, user_id: str, data: dict[str, Any]) -> dict:
        ensure_owner_or_admin(actor, user_id)
        user = self._get_or_404(user_id)

        fields = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}
        if not fields:
            return present_user(user)
        try:
            merged = User.model_validate({**user.model_dump(), **fields})
        except ValidationError as e:
            raise ValidationFailedError("Invalid profile data", [err["msg"] for err in e.errors()])

        updated = self.data_access.update_user(user_id, {k: getattr(merged, k) for k in fields})
        if not updated:
            raise NotFoundError("User not found")
        return present_user(updated)

    def delete_self(self, actor: AuthenticatedUser, user_id: str) -> None:
        ensure_owner_or_admin(actor, user_id)
        self._get_or_404(user_id)
        self.data_access.delete_user(user_id)
        logger.info(f"User {user_id} deleted by {actor.user_id}")

    def list_users(self, actor: AuthenticatedUser, role: str | None = None, search: str | None = None,
                   page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
        if not actor.is_admin:
            raise PermissionDeniedError("Admin access required")
        users = self.data_access.list_users()
        if role:
            users = [u for u in users if u.role == role]
        if search:
            needle = search.lower()
            users = [u for u in users if needle in u.name.lower() or needle in u.email.lower()]
        users.sort(key=lambda u: u.created_at, reverse=True)
        page_items, meta = paginate(users, page, limit)
        return [present_user(u) for u in page_items], meta

    def update_role(self, admin: AuthenticatedUser, user_id: str, role: str) -> dict:
        if not admin.is_admin:
            raise PermissionDeniedError("Admin access required")
        if role not in USER_ROLES:
            raise ValidationFailedError("Invalid role")
        self._get_or_404(user_id)
        updated = self.data_access.update_user(user_id, {"role": role})
        logger.info(f"User {user_id} role set to {role} by {admin.user_id}")
        return present_user(updated)

    def delete_user(self, admin: AuthenticatedUser, user_id: str) -> None:
        if not admin.is_admin:
            raise PermissionDeniedError("Admin access required")
        user = self._get_or_404(user_id)
        if user.is_admin:
            raise ValidationFailedError("Cannot delete admin users")
        if self.data_access.list_projects_by_creator(user_id):
            raise ValidationFailedError("Cannot delete a user who still owns projects")
        self.data_access.delete_user(user_id)
        logger.info(f"User {user_id} deleted by admin {admin.user_id}")
