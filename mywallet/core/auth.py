"""
Caller identity for MyWallet API routes.

Token validation happens in the upstream auth layer, which stores the
caller on request.state. The X-User-Id / X-Profile-Id headers are accepted
as a fallback (internal callers, tests).
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from mywallet.core.errors import UnauthorizedError


@dataclass(frozen=True)
class Owner:
    """The user/profile pair that owns subscriptions and accounts."""
    user_id: str
    profile_id: Optional[str] = None


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None),
) -> str:
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id:
        raise UnauthorizedError("Authentication required")
    return user_id


def get_current_owner(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_profile_id: Optional[str] = Header(None),
) -> Owner:
    user_id = get_current_user_id(request, x_user_id)
    profile_id = getattr(request.state, "profile_id", None) or x_profile_id
    return Owner(user_id=user_id, profile_id=profile_id)
