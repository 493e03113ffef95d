import math
from typing import Sequence, TypeVar

from core.exceptions import PermissionDeniedError
from models.user import AuthenticatedUser

T = TypeVar("T")

MAX_PAGE_SIZE = 100


def pagination_meta(total: int, page: int, limit: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def paginate(items: Sequence[T], page: int, limit: int) -> tuple[list[T], dict]:
    page = max(page, 1)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    start = (page - 1) * limit
    return list(items[start:start + limit]), pagination_meta(len(items), page, limit)


def ensure_owner_or_admin(actor: AuthenticatedUser, owner_id: str, message: str = "Access denied") -> None:
    if actor.is_admin or actor.user_id == owner_id:
        return
    raise PermissionDeniedError(message)
