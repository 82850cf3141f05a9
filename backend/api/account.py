"""
Account settings API.

- GET   /api/account: Signed-in user's profile
- PATCH /api/account: Update name and email
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.core.auth import AuthenticatedUser, get_current_user
from backend.core.errors import NotFoundError
from backend.features.users.service import get_user, update_account
from backend.models.user import User


router = APIRouter(prefix="/account", tags=["account"])


class AccountUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class AccountResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: datetime


def _to_response(user: User) -> AccountResponse:
    return AccountResponse(
        user_id=user.user_id,
        email=user.email,
        name=user.display_name,
        created_at=user.created_at,
    )


@router.get("", response_model=AccountResponse)
def get_account(user: AuthenticatedUser = Depends(get_current_user)):
    account = get_user(user.user_id)
    if account is None:
        raise NotFoundError("Account not found")
    return _to_response(account)


@router.patch("", response_model=AccountResponse)
def patch_account(
    request: AccountUpdateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
):
    """
    Update the signed-in user's name and email.

    Errors:
        400: Missing name/email or malformed email
        409: Email already in use
    """
    return _to_response(update_account(user.user_id, request.name, request.email))
