import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer

from core.exceptions import AuthenticationError, PermissionDeniedError
from models.user import USER_ROLES, AuthenticatedUser

security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


def _claims_from_request(request: Request) -> dict:
    auth = request.scope.get("aws.event", {}).get("requestContext", {}).get("authorizer", {})
    return auth.get("claims", {}) or {}


def _user_from_claims(claims: dict) -> AuthenticatedUser:
    role = claims.get("custom:role", "user")
    if role not in USER_ROLES:
        logger.warning(f"Unknown role claim '{role}' for {claims.get('sub')}; treating as user")
        role = "user"
    return AuthenticatedUser(
        user_id=claims["sub"],
        email=claims.get("email"),
        name=claims.get("name"),
        role=role,
    )


async def get_current_user(request: Request, token: Optional[str] = Depends(security)) -> AuthenticatedUser:
    """Identity from the Cognito authorizer claims that API Gateway put on the Lambda event."""
    claims = _claims_from_request(request)
    if not claims or not claims.get("sub"):
        raise AuthenticationError("Could not find user claims")

    if str(claims.get("email_verified", "true")).lower() == "false":
        raise PermissionDeniedError("Email not verified")

    return _user_from_claims(claims)


async def get_optional_user(request: Request) -> Optional[AuthenticatedUser]:
    claims = _claims_from_request(request)
    if not claims or not claims.get("sub"):
        return None
    return _user_from_claims(claims)


def require_roles(*roles: str):
    async def dependency(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if user.role not in roles:
            raise PermissionDeniedError("Insufficient permissions")
        return user
    return dependency


require_admin = require_roles("admin")
require_creator = require_roles("creator", "admin")
