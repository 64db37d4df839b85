"""
Dependency injection utilities for FastAPI.
"""
from fastapi import Header

from ..utils.exceptions import ValidationError

MAX_USER_ID_LENGTH = 128


async def get_user_id(x_user_id: str = Header(default="", alias="X-User-ID")) -> str:
    """
    Identify the caller from the ``X-User-ID`` header.

    Authentication happens upstream; this only checks the header is usable
    as a document path segment.
    """
    user_id = x_user_id.strip()
    if not user_id:
        raise ValidationError(message="Missing X-User-ID header")
    if len(user_id) > MAX_USER_ID_LENGTH or "/" in user_id:
        raise ValidationError(message="Invalid X-User-ID header", details=[f"user_id: {user_id!r}"])
    return user_id
