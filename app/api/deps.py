import uuid
from typing import Optional

from fastapi import Header

from app.core.errors import InvalidArgument


# NOTE: Replace these with real session / API-key auth in production.
async def get_optional_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[uuid.UUID]:
    if not x_user_id:
        return None
    try:
        return uuid.UUID(x_user_id)
    except ValueError as exc:
        raise InvalidArgument("X-User-Id must be a UUID") from exc


async def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> uuid.UUID:
    user_id = await get_optional_user(x_user_id)
    if user_id is None:
        raise InvalidArgument("X-User-Id header is required")
    return user_id


async def get_current_admin(x_admin_id: Optional[str] = Header(default=None)) -> str:
    if not x_admin_id:
        raise InvalidArgument("X-Admin-Id header is required")
    return x_admin_id
