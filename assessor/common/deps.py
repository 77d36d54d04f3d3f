"""Shared FastAPI dependencies for identity and authorization.

Authentication happens upstream; the gateway forwards the resolved identity
in ``X-User-Id`` and ``X-User-Role``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

logger = logging.getLogger("auth.deps")


class CurrentUser(BaseModel):
    """Minimal user identity shared across endpoints."""
    id: str
    role: str = "student"


@lru_cache()
def _staff_roles() -> set[str]:
    return {"instructor", "admin"}


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_user_identity")
    current = CurrentUser(id=x_user_id.strip(), role=(x_user_role or "student").strip().lower())
    request.state.current_user = current
    return current


def require_role(*roles: str) -> Callable[[CurrentUser], CurrentUser]:
    allowed = {r.lower() for r in roles}

    async def _checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role == "admin" or current_user.role in allowed:
            return current_user
        logger.warning("role_denied user_id=%s role=%s required=%s", current_user.id, current_user.role, sorted(allowed))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")

    return _checker


def is_staff(user: CurrentUser) -> bool:
    return user.role in _staff_roles()


__all__ = ["CurrentUser", "get_current_user", "require_role", "is_staff"]
