"""
Request principals.

Credentials are checked upstream by the auth gateway, which forwards the
authenticated user in X-User-* headers. Admin routes use a shared API key.
"""
import os
from typing import Optional

from fastapi import Depends, Header, HTTPException

from schemas import Principal


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    admin_key = os.getenv("ADMIN_API_KEY")
    if not admin_key:
        # If not set, allow for development convenience
        return True
    if x_admin_key != admin_key:
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return True


def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[Principal]:
    if not x_user_id:
        return None
    return Principal(id=x_user_id, email=x_user_email, role=x_user_role or "user")


def require_user(principal: Optional[Principal] = Depends(get_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return principal
